"""Layered approval policy evaluated before every tool call.

Rules run in a fixed order and the first match wins:

1. ``session_cache``          tool already granted ALLOW_SESSION      -> ALLOW_SESSION
2. ``safe_internal``          tool annotated safe_internal            -> ALLOW_ONCE
3. ``disable_all_tools``      global kill switch                      -> DENY
4. ``disable_tools``          tool on the disable list                -> DENY
5. ``disable_guardrails``     guardrails off                          -> ALLOW_ONCE
6. ``auto_approve``           tool on the auto-approve list           -> ALLOW_ONCE
7. ``allow_non_destructive``  flag set and tool annotated read_only   -> ALLOW_ONCE
8. ``interface_callback``     whatever the front end answers; ALLOW_SESSION is cached

With no interface callback, rule 8 becomes ``no_callback`` -> DENY.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from threadloom.settings import ApprovalSettings

if TYPE_CHECKING:
    from threadloom.tools import ToolAnnotations

log = logging.getLogger(__name__)


class ApprovalDecision(enum.StrEnum):
    ALLOW_ONCE = "allow_once"
    ALLOW_SESSION = "allow_session"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is not ApprovalDecision.DENY


class ApprovalCallback(Protocol):
    async def request_approval(self, tool_name: str, input: dict[str, Any]) -> ApprovalDecision: ...


class DenyAllCallback:
    """Fail-closed callback for contexts with nobody to ask."""

    async def request_approval(self, tool_name: str, input: dict[str, Any]) -> ApprovalDecision:
        return ApprovalDecision.DENY


@dataclass(frozen=True)
class Verdict:
    decision: ApprovalDecision
    rule: str

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


AnnotationsLookup = Callable[[str], "ToolAnnotations | None"]


class ApprovalPolicyEngine:
    """One engine per process/session; owns the ALLOW_SESSION cache."""

    def __init__(
        self,
        policy: ApprovalSettings | None = None,
        fallback: ApprovalCallback | None = None,
        annotations: AnnotationsLookup | None = None,
    ) -> None:
        self.policy = policy or ApprovalSettings()
        self.fallback = fallback
        self._annotations = annotations
        self._session_grants: set[str] = set()

    def bind_annotations(self, annotations: AnnotationsLookup) -> None:
        self._annotations = annotations

    def is_session_approved(self, tool_name: str) -> bool:
        return tool_name in self._session_grants

    def clear_session_grants(self) -> None:
        self._session_grants.clear()

    def _lookup(self, tool_name: str) -> ToolAnnotations | None:
        return self._annotations(tool_name) if self._annotations else None

    def _static_verdict(self, tool_name: str) -> Verdict | None:
        policy = self.policy
        annotations = self._lookup(tool_name)
        if tool_name in self._session_grants:
            return Verdict(ApprovalDecision.ALLOW_SESSION, "session_cache")
        if annotations is not None and annotations.safe_internal:
            return Verdict(ApprovalDecision.ALLOW_ONCE, "safe_internal")
        if policy.disable_all_tools:
            return Verdict(ApprovalDecision.DENY, "disable_all_tools")
        if tool_name in policy.disable_tools:
            return Verdict(ApprovalDecision.DENY, "disable_tools")
        if policy.disable_guardrails:
            return Verdict(ApprovalDecision.ALLOW_ONCE, "disable_guardrails")
        if tool_name in policy.auto_approve:
            return Verdict(ApprovalDecision.ALLOW_ONCE, "auto_approve")
        if policy.allow_non_destructive and annotations is not None and annotations.read_only:
            return Verdict(ApprovalDecision.ALLOW_ONCE, "allow_non_destructive")
        return None

    async def evaluate(self, tool_name: str, input: dict[str, Any]) -> Verdict:
        verdict = self._static_verdict(tool_name)
        if verdict is None:
            if self.fallback is None:
                verdict = Verdict(ApprovalDecision.DENY, "no_callback")
            else:
                decision = ApprovalDecision(await self.fallback.request_approval(tool_name, input))
                if decision is ApprovalDecision.ALLOW_SESSION:
                    self._session_grants.add(tool_name)
                verdict = Verdict(decision, "interface_callback")
        if verdict.allowed:
            log.debug("Tool %s: %s (%s)", tool_name, verdict.decision, verdict.rule)
        else:
            log.info("Tool %s denied by rule %s", tool_name, verdict.rule)
        return verdict

    async def request_approval(self, tool_name: str, input: dict[str, Any]) -> ApprovalDecision:
        """:class:`ApprovalCallback` contract, so an engine can back another executor."""
        return (await self.evaluate(tool_name, input)).decision

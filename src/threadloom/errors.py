"""Error taxonomy shared by the store, task, approval and delegation layers.

Library code raises these; the tool boundary and the CLI turn them into the
structured payload returned by :meth:`ThreadloomError.to_payload`.
"""

from __future__ import annotations

from typing import Any

VALIDATION = "validation"
NOT_FOUND = "not_found"
CONTENTION = "contention"
TIMEOUT = "timeout"
BLOCKED = "blocked"
POLICY_DENIED = "policy_denied"
CANCELLED = "cancelled"


class ThreadloomError(Exception):
    """Base class for every error with a machine-readable ``kind``."""

    kind = "internal"

    def fields(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": False, "kind": self.kind, "error": str(self)}
        payload.update(self.fields())
        return payload


class ValidationError(ThreadloomError, ValueError):
    """Malformed input, detected before anything is written."""

    kind = VALIDATION

    def __init__(self, message: str, fields: list[str] | tuple[str, ...] | str = ()) -> None:
        super().__init__(message)
        self.invalid_fields = [fields] if isinstance(fields, str) else list(fields)

    def fields(self) -> dict[str, Any]:
        return {"fields": self.invalid_fields}


class NotFoundError(ThreadloomError, LookupError):
    kind = NOT_FOUND

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity.capitalize()} '{entity_id}' not found")
        self.entity = entity
        self.entity_id = entity_id

    def fields(self) -> dict[str, Any]:
        return {"entity": self.entity, "id": self.entity_id}


class ContentionError(ThreadloomError):
    """The database stayed busy after every retry."""

    kind = CONTENTION

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts

    def fields(self) -> dict[str, Any]:
        return {"attempts": self.attempts}


class DelegationTimeoutError(ThreadloomError, TimeoutError):
    """A delegation wait outlived its bound. The task is left as it was."""

    kind = TIMEOUT

    def __init__(self, task_id: str, timeout: float) -> None:
        super().__init__(f"Task '{task_id}' did not finish within {timeout:g}s")
        self.task_id = task_id
        self.timeout = timeout

    def fields(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "timeout": self.timeout}


class BlockedTaskError(ThreadloomError):
    kind = BLOCKED

    def __init__(self, task_id: str, reason: str | None = None) -> None:
        message = f"Task '{task_id}' is blocked"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.task_id = task_id
        self.reason = reason

    def fields(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "reason": self.reason}


class PolicyDenied(ThreadloomError):
    """The approval engine refused a tool call. ``rule`` names the deciding rule."""

    kind = POLICY_DENIED

    def __init__(self, tool: str, rule: str) -> None:
        super().__init__(f"Tool '{tool}' denied by approval rule '{rule}'")
        self.tool = tool
        self.rule = rule

    def fields(self) -> dict[str, Any]:
        return {"tool": self.tool, "rule": self.rule}


class OperationCancelledError(ThreadloomError):
    kind = CANCELLED

    def __init__(self, what: str) -> None:
        super().__init__(f"{what} was cancelled")
        self.what = what

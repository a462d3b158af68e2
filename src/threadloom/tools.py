"""Tool contract and the executor that gates every call through approval."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, ClassVar

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from jsonschema.exceptions import ValidationError as SchemaValidationError

from threadloom.approval import ApprovalPolicyEngine, DenyAllCallback
from threadloom.errors import (
    NotFoundError,
    OperationCancelledError,
    PolicyDenied,
    ThreadloomError,
    ValidationError,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolAnnotations:
    read_only: bool = False
    # Internal bookkeeping tools (tasks) that never need a human to approve them.
    safe_internal: bool = False
    destructive: bool = False
    open_world: bool = False


@dataclass
class ToolContext:
    thread_id: str
    working_directory: str = field(default_factory=os.getcwd)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    parent_thread_id: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class ToolResult:
    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False
    error: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def text(cls, text: str, **metadata: Any) -> ToolResult:
        return cls(content=[{"type": "text", "text": text}], metadata=metadata)

    @classmethod
    def failure(cls, exc: ThreadloomError) -> ToolResult:
        return cls(
            content=[{"type": "text", "text": str(exc)}],
            is_error=True,
            error=exc.to_payload(),
        )

    @property
    def output(self) -> str:
        return "\n".join(block.get("text", "") for block in self.content if block.get("type") == "text")


class Tool:
    """Base class for tools. Subclasses set the class attributes and ``execute``."""

    name: ClassVar[str]
    description: ClassVar[str] = ""
    input_schema: ClassVar[dict[str, Any]] = {"type": "object"}
    annotations: ClassVar[ToolAnnotations] = ToolAnnotations()

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        raise NotImplementedError

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def _schema_errors(validator: Draft202012Validator, args: dict[str, Any]) -> ValidationError | None:
    errors: list[SchemaValidationError] = sorted(
        validator.iter_errors(args), key=lambda e: [str(p) for p in e.absolute_path]
    )
    if not errors:
        return None
    fields: list[str] = []
    for error in errors:
        if error.validator == "required" and isinstance(error.instance, dict):
            fields.extend(name for name in error.validator_value if name not in error.instance)
        elif error.absolute_path:
            fields.append(".".join(str(part) for part in error.absolute_path))
        else:
            fields.append("$")
    message = "; ".join(error.message for error in errors)
    return ValidationError(f"Invalid arguments: {message}", list(dict.fromkeys(fields)))


class ToolExecutor:
    """A validated registry of tools plus the approval gate in front of them.

    Without an approval engine every call is denied.
    """

    def __init__(
        self,
        approval: ApprovalPolicyEngine | None = None,
        tools: Iterable[Tool] = (),
        *,
        bind_annotations: bool = True,
    ) -> None:
        self.approval = approval
        self._tools: dict[str, Tool] = {}
        self._validators: dict[str, Draft202012Validator] = {}
        if approval is not None and bind_annotations:
            approval.bind_annotations(self.annotations_for)
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        name = getattr(tool, "name", "")
        if not name:
            raise ValidationError("Tool name is required", "name")
        if name in self._tools:
            raise ValidationError(f"Tool '{name}' is already registered", "name")
        try:
            Draft202012Validator.check_schema(tool.input_schema)
        except SchemaError as exc:
            raise ValidationError(
                f"Tool '{name}' has an invalid input schema: {exc.message}", "input_schema"
            ) from exc
        self._tools[name] = tool
        self._validators[name] = Draft202012Validator(tool.input_schema)

    @property
    def names(self) -> set[str]:
        return set(self._tools)

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def annotations_for(self, name: str) -> ToolAnnotations | None:
        tool = self._tools.get(name)
        return tool.annotations if tool is not None else None

    async def execute(
        self, name: str, args: dict[str, Any], context: ToolContext
    ) -> ToolResult:
        """Cancellation check, argument validation, approval, then the tool itself.

        Every refusal comes back as an error :class:`ToolResult`; nothing runs
        unless approval allowed it.
        """
        if context.cancelled:
            return ToolResult.failure(OperationCancelledError(f"Tool '{name}'"))
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult.failure(NotFoundError("tool", name))
        invalid = _schema_errors(self._validators[name], args)
        if invalid is not None:
            return ToolResult.failure(invalid)

        if self.approval is None:
            return ToolResult.failure(PolicyDenied(name, "no_approval_engine"))
        verdict = await self.approval.evaluate(name, args)
        if not verdict.allowed:
            return ToolResult.failure(PolicyDenied(name, verdict.rule))
        if context.cancelled:
            return ToolResult.failure(OperationCancelledError(f"Tool '{name}'"))

        try:
            result = await tool.execute(args, context)
        except ThreadloomError as exc:
            return ToolResult.failure(exc)
        except Exception as exc:
            log.exception("Tool %s failed", name)
            return ToolResult(
                content=[{"type": "text", "text": f"Tool '{name}' failed: {exc}"}],
                is_error=True,
                error={"ok": False, "kind": "tool_error", "error": str(exc), "tool": name},
            )
        result.metadata.setdefault("approval_rule", verdict.rule)
        return result

    def restricted_copy(self, exclude: Iterable[str]) -> ToolExecutor:
        """Same tools minus *exclude*, behind the same approval engine.

        With no engine here, the copy gets one that denies anything the
        policy does not allow by itself.
        """
        excluded = set(exclude)
        if self.approval is not None:
            child = ToolExecutor(self.approval, bind_annotations=False)
        else:
            child = ToolExecutor(ApprovalPolicyEngine(fallback=DenyAllCallback()))
        for name, tool in self._tools.items():
            if name not in excluded:
                child._tools[name] = tool
                child._validators[name] = self._validators[name]
        return child

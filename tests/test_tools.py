"""Tests for tool registration and the approval-gated executor."""

import asyncio
import logging

import pytest

from threadloom.approval import ApprovalDecision, ApprovalPolicyEngine
from threadloom.errors import ValidationError
from threadloom.settings import ApprovalSettings
from threadloom.tools import Tool, ToolAnnotations, ToolContext, ToolExecutor, ToolResult


class EchoTool(Tool):
    name = "echo"
    input_schema = {
        "type": "object",
        "properties": {"text": {"type": "string"}, "times": {"type": "integer", "minimum": 1}},
        "required": ["text"],
        "additionalProperties": False,
    }
    annotations = ToolAnnotations(read_only=True)

    def __init__(self):
        self.calls = 0

    async def execute(self, args, context):
        self.calls += 1
        return ToolResult.text(args["text"] * args.get("times", 1))


class ShellTool(Tool):
    name = "shell"
    input_schema = {"type": "object", "properties": {"command": {"type": "string"}}}
    annotations = ToolAnnotations(destructive=True)

    async def execute(self, args, context):
        raise RuntimeError("exploded")


class BookkeepingTool(Tool):
    name = "bookkeeping"
    annotations = ToolAnnotations(safe_internal=True)

    async def execute(self, args, context):
        return ToolResult.text("noted")


class Answer:
    def __init__(self, decision, on_ask=None):
        self.decision = decision
        self.on_ask = on_ask
        self.asked = []

    async def request_approval(self, tool_name, input):
        self.asked.append(tool_name)
        if self.on_ask is not None:
            self.on_ask()
        return self.decision


def _executor(callback=None, **policy):
    engine = ApprovalPolicyEngine(ApprovalSettings(**policy), callback)
    return ToolExecutor(engine, [EchoTool(), ShellTool(), BookkeepingTool()])


def _context():
    return ToolContext(thread_id="tl_test")


# -- registration --


def test_register_rejects_duplicates_and_bad_schemas():
    executor = ToolExecutor(None, [EchoTool()])
    with pytest.raises(ValidationError):
        executor.register(EchoTool())

    class BadSchema(Tool):
        name = "bad"
        input_schema = {"type": "not-a-type"}

    with pytest.raises(ValidationError) as exc_info:
        executor.register(BadSchema())
    assert exc_info.value.invalid_fields == ["input_schema"]
    assert executor.names == {"echo"}


def test_register_requires_a_name():
    class Nameless(Tool):
        pass

    with pytest.raises(ValidationError):
        ToolExecutor().register(Nameless())


# -- execution --


@pytest.mark.asyncio
async def test_allowed_call_runs_and_records_rule():
    executor = _executor(allow_non_destructive=True)
    result = await executor.execute("echo", {"text": "ab", "times": 2}, _context())
    assert not result.is_error
    assert result.output == "abab"
    assert result.metadata["approval_rule"] == "allow_non_destructive"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("args", "fields"),
    [
        ({}, ["text"]),
        ({"text": 3}, ["text"]),
        ({"text": "x", "times": 0}, ["times"]),
        ({"text": "x", "extra": True}, ["$"]),
    ],
)
async def test_invalid_arguments_are_rejected_before_approval(args, fields):
    callback = Answer(ApprovalDecision.ALLOW_ONCE)
    executor = _executor(callback)
    result = await executor.execute("echo", args, _context())
    assert result.is_error
    assert result.error["kind"] == "validation"
    assert result.error["fields"] == fields
    assert callback.asked == []


@pytest.mark.asyncio
async def test_unknown_tool():
    result = await _executor().execute("nope", {}, _context())
    assert result.error["kind"] == "not_found"


@pytest.mark.asyncio
async def test_denied_call_never_runs():
    echo = EchoTool()
    engine = ApprovalPolicyEngine(ApprovalSettings(), Answer(ApprovalDecision.DENY))
    executor = ToolExecutor(engine, [echo])
    result = await executor.execute("echo", {"text": "x"}, _context())
    assert result.error["kind"] == "policy_denied"
    assert result.error["rule"] == "interface_callback"
    assert echo.calls == 0


@pytest.mark.asyncio
async def test_executor_without_engine_denies_everything():
    executor = ToolExecutor(None, [BookkeepingTool()])
    result = await executor.execute("bookkeeping", {}, _context())
    assert result.error["kind"] == "policy_denied"
    assert result.error["rule"] == "no_approval_engine"


@pytest.mark.asyncio
async def test_cancelled_before_start():
    context = _context()
    context.cancel_event.set()
    result = await _executor(disable_guardrails=True).execute("echo", {"text": "x"}, context)
    assert result.error["kind"] == "cancelled"


@pytest.mark.asyncio
async def test_cancelled_while_waiting_for_approval():
    context = _context()
    echo = EchoTool()
    engine = ApprovalPolicyEngine(
        ApprovalSettings(), Answer(ApprovalDecision.ALLOW_ONCE, on_ask=context.cancel_event.set)
    )
    executor = ToolExecutor(engine, [echo])
    result = await executor.execute("echo", {"text": "x"}, context)
    assert result.error["kind"] == "cancelled"
    assert echo.calls == 0


@pytest.mark.asyncio
async def test_unexpected_tool_exception_becomes_error_result(caplog):
    executor = _executor(disable_guardrails=True)
    with caplog.at_level(logging.ERROR, logger="threadloom.tools"):
        result = await executor.execute("shell", {"command": "ls"}, _context())
    assert result.is_error
    assert result.error["kind"] == "tool_error"
    assert "exploded" in result.output
    assert "Tool shell failed" in caplog.text


# -- restricted copies --


@pytest.mark.asyncio
async def test_restricted_copy_excludes_names_and_shares_engine():
    callback = Answer(ApprovalDecision.ALLOW_SESSION)
    parent = _executor(callback)
    child = parent.restricted_copy({"shell"})

    assert child.names == parent.names - {"shell"}
    assert child.approval is parent.approval
    await child.execute("echo", {"text": "x"}, _context())
    assert parent.approval.is_session_approved("echo")
    result = await child.execute("shell", {}, _context())
    assert result.error["kind"] == "not_found"


@pytest.mark.asyncio
async def test_restricted_copy_of_unguarded_executor_denies_by_default():
    parent = ToolExecutor(None, [EchoTool(), ShellTool(), BookkeepingTool()])
    child = parent.restricted_copy(())

    allowed = await child.execute("bookkeeping", {}, _context())
    denied = await child.execute("shell", {}, _context())

    assert allowed.output == "noted"
    assert denied.error["rule"] == "interface_callback"


def test_tool_context_cancel_flag():
    context = ToolContext(thread_id="tl_x", cancel_event=asyncio.Event())
    assert not context.cancelled
    context.cancel_event.set()
    assert context.cancelled

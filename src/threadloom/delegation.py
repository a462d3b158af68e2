"""Delegate a task to another agent and wait for its answer.

The caller creates a task assigned to ``new:<provider>/<model>`` (or to an
existing agent), subscribes to ``task:updated`` for that task, and waits until
the task is completed or blocked, the optional timeout elapses, or the
caller is cancelled. The subscription is always released.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from threadloom.errors import (
    BlockedTaskError,
    DelegationTimeoutError,
    OperationCancelledError,
    ValidationError,
)
from threadloom.events import TaskUpdatedEvent
from threadloom.tasks import Task, TaskContext, TaskManager
from threadloom.tools import Tool, ToolAnnotations, ToolContext, ToolExecutor, ToolResult

log = logging.getLogger(__name__)

DELEGATE_TOOL_NAME = "delegate"
DEFAULT_MODEL = "anthropic:claude-3-5-haiku-latest"

SUBAGENT_INSTRUCTIONS = """\
You are a focused task assistant. Another agent delegated this task to you.

- Complete ONLY the task described below
- Return results in the expected response format
- Be concise and direct, with no pleasantries or meta-commentary
- Use tools as needed, but stop once you have enough information to answer
- If you cannot complete the task, say why briefly and mark the task blocked
- Finish by completing the task with your answer as the completion message"""


def parse_model(value: str) -> tuple[str, str]:
    provider, sep, model = value.partition(":")
    if not sep or not provider or not model or ":" in model:
        raise ValidationError(
            f"Invalid model '{value}'. Use 'provider:model', "
            "e.g. 'anthropic:claude-3-5-haiku-latest'",
            "model",
        )
    return provider, model


def compose_prompt(title: str, prompt: str, expected_response: str) -> str:
    return (
        f"{SUBAGENT_INSTRUCTIONS}\n\n"
        f"Task: {title}\n\n{prompt}\n\n"
        f"Expected response format: {expected_response}"
    )


def extract_response(task: Task) -> str:
    """Notes written by anyone but the task's creator, in order, blank-line separated."""
    return "\n\n".join(note.content for note in task.notes if note.author != task.created_by)


@dataclass(frozen=True)
class DelegationResult:
    task: Task
    content: str

    @property
    def task_id(self) -> str:
        return self.task.id

    @property
    def assignee(self) -> str | None:
        return self.task.assigned_to


class Delegator:
    def __init__(
        self,
        tasks: TaskManager,
        *,
        default_model: str = DEFAULT_MODEL,
        default_timeout: float | None = None,
    ) -> None:
        parse_model(default_model)
        self.tasks = tasks
        self.default_model = default_model
        self.default_timeout = default_timeout

    async def delegate(
        self,
        context: TaskContext,
        *,
        title: str,
        prompt: str,
        expected_response: str,
        model: str | None = None,
        assignee: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        tools: ToolExecutor | None = None,
        manager: TaskManager | None = None,
    ) -> DelegationResult:
        """Create the task and wait for its outcome.

        Raises :class:`DelegationTimeoutError` (task left as it was),
        :class:`BlockedTaskError`, or :class:`OperationCancelledError`.
        """
        manager = manager or self.tasks
        provider, model_name = parse_model(model or self.default_model)
        for name, value in (("prompt", prompt), ("expected_response", expected_response)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"'{name}' must be a non-empty string", name)
        timeout = timeout if timeout is not None else self.default_timeout
        if timeout is not None and timeout <= 0:
            raise ValidationError("'timeout' must be positive", "timeout")
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Delegation")

        task = await manager.create_task(
            title,
            compose_prompt(title, prompt, expected_response),
            context,
            description=expected_response[:1000],
            assigned_to=assignee or f"new:{provider}/{model_name}",
            spawn_tools=tools,
        )
        loop = asyncio.get_running_loop()
        outcome: asyncio.Future[Task] = loop.create_future()

        def _settle(current: Task) -> None:
            if outcome.done():
                return
            if current.status == "completed":
                outcome.set_result(current)
            elif current.status == "blocked":
                reason = current.notes[-1].content if current.notes else None
                outcome.set_exception(BlockedTaskError(current.id, reason))

        def _on_update(event: TaskUpdatedEvent) -> None:
            _settle(event.task)

        subscription = manager.channel.subscribe(
            _on_update,
            lambda event: event.task.id == task.id and event.creator_thread_id == context.actor,
        )
        cancel_waiter: asyncio.Future[Any] | None = None
        try:
            # The task may have finished before the subscription existed.
            current = await manager.get_task(task.id, context)
            if current is not None:
                _settle(current)
            waiters: set[asyncio.Future[Any]] = {outcome}
            if cancel_event is not None:
                cancel_waiter = asyncio.ensure_future(cancel_event.wait())
                waiters.add(cancel_waiter)
            finished, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if outcome in finished:
                final = outcome.result()
            elif cancel_waiter is not None and cancel_waiter in finished:
                log.info("Delegation of task %s cancelled", task.id)
                raise OperationCancelledError(f"Delegation of task '{task.id}'")
            else:
                log.warning("Delegation of task %s timed out after %ss", task.id, timeout)
                raise DelegationTimeoutError(task.id, timeout or 0)
        finally:
            subscription.unsubscribe()
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not outcome.done():
                outcome.cancel()
        return DelegationResult(task=final, content=extract_response(final))


class DelegateTool(Tool):
    name = DELEGATE_TOOL_NAME
    description = (
        "Delegate a focused task to a subagent, usually on a cheaper model. "
        "The subagent starts fresh with only your instructions and cannot delegate further. "
        "Waits for the subagent to complete the task and returns its answer."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "minLength": 1, "maxLength": 200},
            "prompt": {"type": "string", "minLength": 1},
            "expected_response": {"type": "string", "minLength": 1},
            "model": {"type": "string", "pattern": "^[^:]+:[^:]+$"},
            "assignee": {"type": "string", "minLength": 1},
            "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
        },
        "required": ["title", "prompt", "expected_response"],
        "additionalProperties": False,
    }
    annotations = ToolAnnotations(open_world=True)

    def __init__(self, delegator: Delegator, parent: ToolExecutor | None = None) -> None:
        self.delegator = delegator
        self.parent = parent

    def bind(self, parent: ToolExecutor) -> None:
        self.parent = parent

    def subagent_tools(self) -> ToolExecutor | None:
        """The parent's tools minus this one, computed once per delegation."""
        if self.parent is None:
            return None
        return self.parent.restricted_copy({self.name})

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        manager = self.delegator.tasks
        if manager.thread_id != context.thread_id:
            manager = manager.for_thread(context.thread_id)
        result = await self.delegator.delegate(
            TaskContext(context.thread_id),
            title=args["title"],
            prompt=args["prompt"],
            expected_response=args["expected_response"],
            model=args.get("model"),
            assignee=args.get("assignee"),
            timeout=args.get("timeout_seconds"),
            cancel_event=context.cancel_event,
            tools=self.subagent_tools(),
            manager=manager,
        )
        return ToolResult.text(
            result.content or "Subagent completed without response",
            task_id=result.task_id,
            assignee=result.assignee,
        )

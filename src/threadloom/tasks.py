"""Task lifecycle for cooperating agents.

Tasks live in one thread and may be assigned to another agent. An assignee is
either an existing thread id or ``new:<provider>/<model>``, a deferred spawn
resolved through the injected :data:`AgentSpawner` once the task is created.

Status transitions::

    pending     -> in_progress | blocked | completed
    in_progress -> blocked | completed
    blocked     -> in_progress | completed
    completed   (terminal; any other status is rejected)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import secrets
import sqlite3
import string
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from threadloom import db
from threadloom.errors import NotFoundError, ValidationError
from threadloom.events import EventChannel, TaskUpdatedEvent

if TYPE_CHECKING:
    from threadloom.db import Store, TaskNoteRow, TaskRow
    from threadloom.tools import ToolExecutor

log = logging.getLogger(__name__)

ASSIGNEE_RE = re.compile(r"^(new:)?[a-zA-Z0-9_.-]+(/[a-zA-Z0-9_.-]+)?$")
NEW_AGENT_PREFIX = "new:"

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000

TASK_FILTERS = ("mine", "created", "thread", "all")
SYSTEM_AUTHOR = "system"

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"pending", "in_progress", "blocked", "completed"}),
    "in_progress": frozenset({"in_progress", "blocked", "completed"}),
    "blocked": frozenset({"blocked", "in_progress", "completed"}),
    "completed": frozenset({"completed"}),
}
_UPDATABLE_FIELDS = frozenset(
    {"title", "description", "prompt", "status", "priority", "assigned_to"}
)
_ID_ALPHABET = string.ascii_lowercase + string.digits


# -- assignees --


@dataclass(frozen=True)
class ExistingAgent:
    id: str

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True)
class NewAgent:
    provider: str
    model: str

    def __str__(self) -> str:
        return f"{NEW_AGENT_PREFIX}{self.provider}/{self.model}"


Assignee = ExistingAgent | NewAgent


def parse_assignee(value: str) -> Assignee:
    """Parse the wire form of an assignee once, at the edge."""
    if not isinstance(value, str) or not ASSIGNEE_RE.match(value):
        raise ValidationError(
            f"Invalid assignee '{value}'. Use a thread id or 'new:provider/model'",
            "assigned_to",
        )
    if value.startswith(NEW_AGENT_PREFIX):
        provider, _, model = value[len(NEW_AGENT_PREFIX) :].partition("/")
        if not model:
            raise ValidationError(
                f"Invalid assignee '{value}': 'new:' needs a model, as in 'new:{provider}/<model>'",
                "assigned_to",
            )
        return NewAgent(provider, model)
    return ExistingAgent(value)


# -- read models --


@dataclass(frozen=True)
class TaskNote:
    id: int
    author: str
    content: str
    timestamp: str

    @classmethod
    def from_row(cls, row: TaskNoteRow) -> TaskNote:
        return cls(row["id"], row["author"], row["content"], row["timestamp"])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "content": self.content,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    description: str | None
    prompt: str
    status: str
    priority: str
    assigned_to: str | None
    created_by: str
    thread_id: str
    created_at: str
    updated_at: str
    notes: tuple[TaskNote, ...] = ()

    @classmethod
    def from_row(cls, row: TaskRow, notes: list[TaskNoteRow] | None = None) -> Task:
        return cls(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            prompt=row["prompt"],
            status=row["status"],
            priority=row["priority"],
            assigned_to=row["assigned_to"],
            created_by=row["created_by"],
            thread_id=row["thread_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            notes=tuple(TaskNote.from_row(n) for n in notes or ()),
        )

    @property
    def assignee(self) -> Assignee | None:
        return parse_assignee(self.assigned_to) if self.assigned_to else None

    @property
    def is_terminal(self) -> bool:
        return self.status in db.TASK_TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "prompt": self.prompt,
            "status": self.status,
            "priority": self.priority,
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "thread_id": self.thread_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "notes": [note.to_dict() for note in self.notes],
        }


@dataclass(frozen=True)
class TaskContext:
    """Who is acting: an agent thread id, or a human at a front end."""

    actor: str
    is_human: bool = False


@dataclass
class SpawnRequest:
    provider: str
    model: str
    task: Task
    # Capability set for the new agent, fixed at spawn time.
    tools: ToolExecutor | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


AgentSpawner = Callable[[SpawnRequest], "str | Awaitable[str]"]


def generate_task_id(now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"task_{stamp}_{suffix}"


# -- validation --


def _require_text(value: Any, field_name: str, max_length: int | None = None) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field_name}' must be a non-empty string", field_name)
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"'{field_name}' must be at most {max_length} characters", field_name
        )
    return value


def _optional_description(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("'description' must be a string", "description")
    if len(value) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(
            f"'description' must be at most {MAX_DESCRIPTION_LENGTH} characters", "description"
        )
    return value


def _check_priority(value: Any) -> str:
    if value not in db.VALID_TASK_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{value}'. Must be one of: {', '.join(db.VALID_TASK_PRIORITIES)}",
            "priority",
        )
    return value


def _check_status(value: Any) -> str:
    if value not in db.VALID_TASK_STATUSES:
        raise ValidationError(
            f"Invalid status '{value}'. Must be one of: {', '.join(db.VALID_TASK_STATUSES)}",
            "status",
        )
    return value


def check_transition(current: str, new: str) -> None:
    if new not in _ALLOWED_TRANSITIONS[current]:
        if current == "completed":
            message = "Task is completed; its status can no longer change"
        else:
            message = f"Cannot move task from '{current}' to '{new}'"
        raise ValidationError(message, "status")


class TaskManager:
    """Task CRUD scoped to one thread, emitting ``task:updated`` on every mutation."""

    def __init__(
        self,
        store: Store,
        thread_id: str,
        channel: EventChannel[TaskUpdatedEvent] | None = None,
        spawner: AgentSpawner | None = None,
        *,
        max_note_length: int = 10_000,
    ) -> None:
        self.store = store
        self.thread_id = thread_id
        self.channel = channel if channel is not None else EventChannel()
        self.spawner = spawner
        self.max_note_length = max_note_length
        self._pending_spawns: set[asyncio.Task[None]] = set()

    def for_thread(self, thread_id: str) -> TaskManager:
        """A manager for another thread sharing this store, channel and spawner."""
        manager = TaskManager(
            self.store,
            thread_id,
            self.channel,
            self.spawner,
            max_note_length=self.max_note_length,
        )
        manager._pending_spawns = self._pending_spawns
        return manager

    # -- reads --

    def _load(self, conn: sqlite3.Connection, task_id: str) -> Task | None:
        row = db.get_task(conn, task_id)
        if row is None:
            return None
        return Task.from_row(row, db.list_task_notes(conn, [task_id])[task_id])

    def _visible(self, task: Task, context: TaskContext | None) -> bool:
        if task.thread_id == self.thread_id:
            return True
        if context is None:
            return False
        return context.is_human or context.actor in (task.assigned_to, task.created_by)

    def _load_visible(
        self, conn: sqlite3.Connection, task_id: str, context: TaskContext | None
    ) -> Task:
        task = self._load(conn, task_id)
        if task is None or not self._visible(task, context):
            raise NotFoundError("task", task_id)
        return task

    async def get_task(self, task_id: str, context: TaskContext | None = None) -> Task | None:
        """The task if it exists and *context* may see it, else None."""

        def _get(conn: sqlite3.Connection) -> Task | None:
            task = self._load(conn, task_id)
            return task if task is not None and self._visible(task, context) else None

        return self.store.read(_get, None)

    async def list_tasks(
        self,
        filter: str = "thread",
        context: TaskContext | None = None,
        *,
        include_completed: bool = True,
    ) -> list[Task]:
        """Tasks by *filter*, high priority first, then oldest first.

        ``mine``: assigned to the actor. ``created``: created by the actor.
        ``thread``: in this manager's thread. ``all``: in this thread or
        assigned to the actor (everything, for a human).
        """
        if filter not in TASK_FILTERS:
            raise ValidationError(
                f"Invalid filter '{filter}'. Must be one of: {', '.join(TASK_FILTERS)}", "filter"
            )
        actor = context.actor if context is not None else self.thread_id
        query: dict[str, Any] = {}
        if filter == "mine":
            query["assigned_to"] = actor
        elif filter == "created":
            query["created_by"] = actor
        elif filter == "thread":
            query["thread_id"] = self.thread_id
        elif not (context is not None and context.is_human):
            query["visible_to"] = (self.thread_id, actor)
        if not include_completed:
            query["statuses"] = [s for s in db.VALID_TASK_STATUSES if s != "completed"]

        def _list(conn: sqlite3.Connection) -> list[Task]:
            rows = db.list_tasks(conn, **query)
            notes = db.list_task_notes(conn, [row["id"] for row in rows])
            return [Task.from_row(row, notes[row["id"]]) for row in rows]

        return self.store.read(_list, [])

    # -- writes --

    async def create_task(
        self,
        title: str,
        prompt: str,
        context: TaskContext,
        *,
        description: str | None = None,
        priority: str = "medium",
        assigned_to: str | None = None,
        spawn_tools: ToolExecutor | None = None,
    ) -> Task:
        """Create a task; a ``new:provider/model`` assignee is spawned right after.

        A spawner that returns a thread id directly is applied before this
        returns, so the caller sees the concrete assignee. An awaitable result
        is resolved in the background (see :meth:`drain_spawns`).
        """
        title = _require_text(title, "title", MAX_TITLE_LENGTH).strip()
        prompt = _require_text(prompt, "prompt")
        description = _optional_description(description)
        priority = _check_priority(priority)
        assignee = parse_assignee(assigned_to) if assigned_to is not None else None

        now = db.utcnow()
        row: db.TaskRow = {
            "id": generate_task_id(),
            "title": title,
            "description": description,
            "prompt": prompt,
            "status": "pending",
            "priority": priority,
            "assigned_to": str(assignee) if assignee is not None else None,
            "created_by": context.actor,
            "thread_id": self.thread_id,
            "created_at": now,
            "updated_at": now,
        }
        await self.store.write_async(lambda conn: db.insert_task(conn, row))
        task = Task.from_row(row)
        log.debug("Created task %s in %s", task.id, self.thread_id)
        self._emit(task, None, context.actor)

        if isinstance(assignee, NewAgent):
            task = await self._start_spawn(task, assignee, spawn_tools) or task
        return task

    async def update_task(
        self,
        task_id: str,
        updates: dict[str, Any],
        context: TaskContext,
        *,
        spawn_tools: ToolExecutor | None = None,
    ) -> Task:
        """Partial update. Everything is validated before anything is written."""
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown task fields: {sorted(unknown)}", sorted(unknown))
        fields: dict[str, Any] = {}
        if "title" in updates:
            fields["title"] = _require_text(updates["title"], "title", MAX_TITLE_LENGTH).strip()
        if "prompt" in updates:
            fields["prompt"] = _require_text(updates["prompt"], "prompt")
        if "description" in updates:
            fields["description"] = _optional_description(updates["description"])
        if "priority" in updates:
            fields["priority"] = _check_priority(updates["priority"])
        if "status" in updates:
            fields["status"] = _check_status(updates["status"])
        assignee: Assignee | None = None
        if updates.get("assigned_to") is not None:
            assignee = parse_assignee(updates["assigned_to"])
            fields["assigned_to"] = str(assignee)
        elif "assigned_to" in updates:
            fields["assigned_to"] = None

        def _update(conn: sqlite3.Connection) -> tuple[Task, str]:
            current = self._load_visible(conn, task_id, context)
            if "status" in fields:
                check_transition(current.status, fields["status"])
            if isinstance(assignee, NewAgent) and current.is_terminal:
                raise ValidationError(
                    f"Task is {current.status}; no agent can be spawned for it", "assigned_to"
                )
            db.update_task_fields(conn, task_id, fields, db.utcnow())
            return _require_task(self._load(conn, task_id)), current.status

        task, previous = await self._write(_update, task_id)
        self._emit(task, previous, context.actor)
        if isinstance(assignee, NewAgent) and task.assigned_to == str(assignee):
            task = await self._start_spawn(task, assignee, spawn_tools) or task
        return task

    async def add_note(self, task_id: str, content: str, context: TaskContext) -> Task:
        """Append a note; the status is left alone."""
        content = _require_text(content, "note", self.max_note_length)

        def _note(conn: sqlite3.Connection) -> Task:
            current = self._load_visible(conn, task_id, context)
            db.add_task_note(
                conn, task_id, author=context.actor, content=content, timestamp=db.utcnow()
            )
            return _require_task(self._load(conn, current.id))

        task = await self._write(_note, task_id)
        self._emit(task, task.status, context.actor)
        return task

    async def complete_task(self, task_id: str, message: str, context: TaskContext) -> Task:
        """Add *message* as the final note and mark the task completed, atomically."""
        message = _require_text(message, "message", self.max_note_length)

        def _complete(conn: sqlite3.Connection) -> tuple[Task, str]:
            current = self._load_visible(conn, task_id, context)
            check_transition(current.status, "completed")
            now = db.utcnow()
            db.add_task_note(conn, task_id, author=context.actor, content=message, timestamp=now)
            db.update_task_fields(conn, task_id, {"status": "completed"}, now)
            return _require_task(self._load(conn, task_id)), current.status

        task, previous = await self._write(_complete, task_id)
        log.debug("Task %s completed by %s", task_id, context.actor)
        self._emit(task, previous, context.actor)
        return task

    async def delete_task(self, task_id: str, context: TaskContext) -> None:
        def _delete(conn: sqlite3.Connection) -> bool:
            self._load_visible(conn, task_id, context)
            return db.delete_task(conn, task_id)

        await self.store.write_async(_delete, False)

    async def drain_spawns(self) -> None:
        """Wait for background spawn resolutions started by this manager."""
        while self._pending_spawns:
            await asyncio.gather(*list(self._pending_spawns))

    # -- internals --

    async def _write(self, operation: Callable[[sqlite3.Connection], Any], task_id: str) -> Any:
        if not self.store.available:
            raise NotFoundError("task", task_id)
        return await self.store.write_async(operation)

    def _emit(self, task: Task, previous: str | None, actor: str | None) -> None:
        self.channel.publish(
            TaskUpdatedEvent(
                task=task, creator_thread_id=task.created_by, previous_status=previous, actor=actor
            )
        )

    async def _start_spawn(
        self, task: Task, agent: NewAgent, tools: ToolExecutor | None
    ) -> Task | None:
        if self.spawner is None:
            log.debug("No spawner configured; task %s keeps assignee %s", task.id, agent)
            return None
        request = SpawnRequest(agent.provider, agent.model, task, tools)
        try:
            outcome = self.spawner(request)
        except Exception as exc:
            return await self._spawn_failed(task.id, agent, exc)
        if inspect.isawaitable(outcome):
            pending = asyncio.ensure_future(self._await_spawn(task.id, agent, outcome))
            self._pending_spawns.add(pending)
            pending.add_done_callback(self._pending_spawns.discard)
            return None
        return await self._spawned(task.id, agent, outcome)

    async def _await_spawn(self, task_id: str, agent: NewAgent, outcome: Awaitable[str]) -> None:
        try:
            thread_id = await outcome
        except Exception as exc:
            await self._spawn_failed(task_id, agent, exc)
            return
        await self._spawned(task_id, agent, thread_id)

    async def _spawned(self, task_id: str, agent: NewAgent, thread_id: Any) -> Task | None:
        if not isinstance(thread_id, str) or not ASSIGNEE_RE.match(thread_id):
            return await self._spawn_failed(
                task_id, agent, ValueError(f"spawner returned invalid thread id {thread_id!r}")
            )

        def _reassign(conn: sqlite3.Connection) -> Task | None:
            if not db.reassign_task_if(conn, task_id, str(agent), thread_id, db.utcnow()):
                return None
            return self._load(conn, task_id)

        task = await self.store.write_async(_reassign)
        if task is None:
            log.debug("Task %s was reassigned before spawn of %s finished", task_id, agent)
            return None
        log.info("Spawned %s as %s for task %s", agent, thread_id, task_id)
        self._emit(task, task.status, SYSTEM_AUTHOR)
        return task

    async def _spawn_failed(self, task_id: str, agent: NewAgent, exc: Exception) -> Task | None:
        log.warning("Failed to spawn %s for task %s: %s", agent, task_id, exc)

        def _block(conn: sqlite3.Connection) -> tuple[Task, str] | None:
            current = self._load(conn, task_id)
            if current is None:
                return None
            now = db.utcnow()
            db.add_task_note(
                conn,
                task_id,
                author=SYSTEM_AUTHOR,
                content=f"Failed to spawn agent {agent}: {exc}",
                timestamp=now,
            )
            if current.status != "completed":
                db.update_task_fields(conn, task_id, {"status": "blocked"}, now)
            return _require_task(self._load(conn, task_id)), current.status

        outcome = await self.store.write_async(_block)
        if outcome is None:
            return None
        task, previous = outcome
        self._emit(task, previous, SYSTEM_AUTHOR)
        return task


def _require_task(task: Task | None) -> Task:
    if task is None:
        raise RuntimeError("task vanished inside its own transaction")
    return task

"""Task tools exposed to agents.

All are ``safe_internal``: they only touch task bookkeeping, so the approval
engine lets them through without asking anyone.
"""

from __future__ import annotations

from typing import Any

from threadloom.errors import NotFoundError, ValidationError
from threadloom.tasks import (
    MAX_DESCRIPTION_LENGTH,
    MAX_TITLE_LENGTH,
    TASK_FILTERS,
    Task,
    TaskContext,
    TaskManager,
)
from threadloom.tools import Tool, ToolAnnotations, ToolContext, ToolResult

_STATUSES = ["pending", "in_progress", "completed", "blocked"]
_PRIORITIES = ["high", "medium", "low"]
_TASK_ID = {"type": "string", "minLength": 1}


def _format_task(task: Task, *, with_notes: bool = False) -> str:
    lines = [f"{task.id} [{task.status}] ({task.priority}) {task.title}"]
    if task.assigned_to:
        lines.append(f"  assigned to: {task.assigned_to}")
    if with_notes:
        lines.append(f"  created by: {task.created_by} in {task.thread_id}")
        if task.description:
            lines.append(f"  description: {task.description}")
        lines.append(f"  prompt: {task.prompt}")
        for note in task.notes:
            lines.append(f"  - {note.author} @ {note.timestamp}: {note.content}")
    return "\n".join(lines)


class TaskTool(Tool):
    annotations = ToolAnnotations(safe_internal=True)

    def __init__(self, tasks: TaskManager) -> None:
        self.tasks = tasks

    def manager_for(self, context: ToolContext) -> TaskManager:
        if context.thread_id == self.tasks.thread_id:
            return self.tasks
        return self.tasks.for_thread(context.thread_id)

    async def execute(self, args: dict[str, Any], context: ToolContext) -> ToolResult:
        try:
            return await self.run(self.manager_for(context), args, TaskContext(context.thread_id))
        except (ValidationError, NotFoundError) as exc:
            return ToolResult.failure(exc)

    async def run(
        self, manager: TaskManager, args: dict[str, Any], actor: TaskContext
    ) -> ToolResult:
        raise NotImplementedError


class TaskAddTool(TaskTool):
    name = "task_add"
    description = (
        "Create a task. Assign it to a thread id, or to 'new:provider/model' to spawn a new agent."
    )
    input_schema = {
        "type": "object",
        "properties": {
            "title": {"type": "string", "minLength": 1, "maxLength": MAX_TITLE_LENGTH},
            "prompt": {"type": "string", "minLength": 1},
            "description": {"type": "string", "maxLength": MAX_DESCRIPTION_LENGTH},
            "priority": {"enum": _PRIORITIES},
            "assigned_to": {"type": "string"},
        },
        "required": ["title", "prompt"],
        "additionalProperties": False,
    }

    async def run(self, manager, args, actor):
        task = await manager.create_task(
            args["title"],
            args["prompt"],
            actor,
            description=args.get("description"),
            priority=args.get("priority", "medium"),
            assigned_to=args.get("assigned_to"),
        )
        message = f"Created task {task.id}: {task.title}"
        if task.assigned_to:
            message += f" (assigned to {task.assigned_to})"
        return ToolResult.text(message, task=task.to_dict())


class TaskListTool(TaskTool):
    name = "task_list"
    description = "List tasks: mine, created (by me), thread (this thread) or all."
    input_schema = {
        "type": "object",
        "properties": {
            "filter": {"enum": list(TASK_FILTERS)},
            "include_completed": {"type": "boolean"},
        },
        "additionalProperties": False,
    }

    async def run(self, manager, args, actor):
        tasks = await manager.list_tasks(
            args.get("filter", "thread"),
            actor,
            include_completed=args.get("include_completed", False),
        )
        if not tasks:
            return ToolResult.text("No tasks found", tasks=[])
        body = "\n".join(_format_task(task) for task in tasks)
        return ToolResult.text(
            f"Tasks ({len(tasks)}):\n\n{body}", tasks=[task.to_dict() for task in tasks]
        )


class TaskViewTool(TaskTool):
    name = "task_view"
    description = "Show one task with its notes."
    input_schema = {
        "type": "object",
        "properties": {"task_id": _TASK_ID},
        "required": ["task_id"],
        "additionalProperties": False,
    }

    async def run(self, manager, args, actor):
        task = await manager.get_task(args["task_id"], actor)
        if task is None:
            raise NotFoundError("task", args["task_id"])
        return ToolResult.text(_format_task(task, with_notes=True), task=task.to_dict())


class TaskUpdateTool(TaskTool):
    name = "task_update"
    description = "Change a task's status, priority, text or assignee."
    input_schema = {
        "type": "object",
        "properties": {
            "task_id": _TASK_ID,
            "status": {"enum": _STATUSES},
            "priority": {"enum": _PRIORITIES},
            "title": {"type": "string", "minLength": 1, "maxLength": MAX_TITLE_LENGTH},
            "description": {"type": "string", "maxLength": MAX_DESCRIPTION_LENGTH},
            "prompt": {"type": "string", "minLength": 1},
            "assigned_to": {"type": "string"},
        },
        "required": ["task_id"],
        "minProperties": 2,
        "additionalProperties": False,
    }

    async def run(self, manager, args, actor):
        updates = {key: value for key, value in args.items() if key != "task_id"}
        task = await manager.update_task(args["task_id"], updates, actor)
        changed = ", ".join(f"{key}={value}" for key, value in updates.items())
        return ToolResult.text(f"Updated task {task.id}: {changed}", task=task.to_dict())


class TaskAddNoteTool(TaskTool):
    name = "task_add_note"
    description = "Add a note to a task (progress, findings, questions)."
    input_schema = {
        "type": "object",
        "properties": {"task_id": _TASK_ID, "note": {"type": "string", "minLength": 1}},
        "required": ["task_id", "note"],
        "additionalProperties": False,
    }

    async def run(self, manager, args, actor):
        task = await manager.add_note(args["task_id"], args["note"], actor)
        return ToolResult.text(f"Added note to task {task.id}", task=task.to_dict())


class TaskCompleteTool(TaskTool):
    name = "task_complete"
    description = "Complete a task. The message is your final answer to whoever created it."
    input_schema = {
        "type": "object",
        "properties": {"task_id": _TASK_ID, "message": {"type": "string", "minLength": 1}},
        "required": ["task_id", "message"],
        "additionalProperties": False,
    }

    async def run(self, manager, args, actor):
        task = await manager.complete_task(args["task_id"], args["message"], actor)
        return ToolResult.text(f"Completed task {task.id}: {task.title}", task=task.to_dict())


TASK_TOOL_CLASSES: tuple[type[TaskTool], ...] = (
    TaskAddTool,
    TaskListTool,
    TaskViewTool,
    TaskUpdateTool,
    TaskAddNoteTool,
    TaskCompleteTool,
)


def task_tools(tasks: TaskManager) -> list[TaskTool]:
    return [cls(tasks) for cls in TASK_TOOL_CLASSES]

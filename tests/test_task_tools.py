"""Tests for the task tools as an agent sees them through the executor."""

import pytest

from threadloom.approval import ApprovalPolicyEngine
from threadloom.settings import ApprovalSettings
from threadloom.task_tools import TASK_TOOL_CLASSES, task_tools
from threadloom.tools import ToolContext, ToolExecutor

from conftest import PARENT_THREAD


@pytest.fixture()
def executor(task_manager):
    # Guarded by the strictest policy: task tools must still go through.
    engine = ApprovalPolicyEngine(ApprovalSettings(disable_all_tools=True))
    return ToolExecutor(engine, task_tools(task_manager))


def _ctx(thread_id=PARENT_THREAD):
    return ToolContext(thread_id=thread_id)


async def _add(executor, **args):
    result = await executor.execute("task_add", {"title": "t", "prompt": "p", **args}, _ctx())
    assert not result.is_error, result.output
    return result.metadata["task"]


def test_every_task_tool_is_safe_internal():
    names = {cls.name for cls in TASK_TOOL_CLASSES}
    assert names == {
        "task_add",
        "task_list",
        "task_view",
        "task_update",
        "task_add_note",
        "task_complete",
    }
    assert all(cls.annotations.safe_internal for cls in TASK_TOOL_CLASSES)


@pytest.mark.asyncio
async def test_add_then_view(executor):
    task = await _add(executor, priority="high", assigned_to="tl_helper")
    result = await executor.execute("task_view", {"task_id": task["id"]}, _ctx())
    assert result.metadata["approval_rule"] == "safe_internal"
    assert f"{task['id']} [pending] (high) t" in result.output
    assert "assigned to: tl_helper" in result.output


@pytest.mark.asyncio
async def test_list_hides_completed_by_default(executor):
    done = await _add(executor)
    await _add(executor)
    await executor.execute("task_complete", {"task_id": done["id"], "message": "ok"}, _ctx())

    active = await executor.execute("task_list", {}, _ctx())
    everything = await executor.execute("task_list", {"include_completed": True}, _ctx())

    assert len(active.metadata["tasks"]) == 1
    assert len(everything.metadata["tasks"]) == 2
    assert everything.output.startswith("Tasks (2):")


@pytest.mark.asyncio
async def test_empty_list(executor):
    result = await executor.execute("task_list", {"filter": "mine"}, _ctx())
    assert result.output == "No tasks found"


@pytest.mark.asyncio
async def test_update_needs_a_change(executor):
    task = await _add(executor)
    result = await executor.execute("task_update", {"task_id": task["id"]}, _ctx())
    assert result.error["kind"] == "validation"


@pytest.mark.asyncio
async def test_update_note_and_complete(executor):
    task = await _add(executor)
    updated = await executor.execute(
        "task_update", {"task_id": task["id"], "status": "in_progress"}, _ctx()
    )
    noted = await executor.execute(
        "task_add_note", {"task_id": task["id"], "note": "halfway"}, _ctx()
    )
    completed = await executor.execute(
        "task_complete", {"task_id": task["id"], "message": "answer"}, _ctx()
    )

    assert updated.output == f"Updated task {task['id']}: status=in_progress"
    assert noted.metadata["task"]["notes"][0]["content"] == "halfway"
    assert completed.metadata["task"]["status"] == "completed"
    assert [n["content"] for n in completed.metadata["task"]["notes"]] == ["halfway", "answer"]


@pytest.mark.asyncio
async def test_reopening_completed_task_fails(executor):
    task = await _add(executor)
    await executor.execute("task_complete", {"task_id": task["id"], "message": "done"}, _ctx())
    result = await executor.execute(
        "task_update", {"task_id": task["id"], "status": "pending"}, _ctx()
    )
    assert result.error["kind"] == "validation"
    assert result.error["fields"] == ["status"]


@pytest.mark.asyncio
async def test_view_missing_task(executor):
    result = await executor.execute("task_view", {"task_id": "task_nope"}, _ctx())
    assert result.error["kind"] == "not_found"


@pytest.mark.asyncio
async def test_tools_act_as_the_calling_thread(executor):
    result = await executor.execute(
        "task_add", {"title": "from helper", "prompt": "p"}, _ctx("tl_helper")
    )
    task = result.metadata["task"]
    assert task["thread_id"] == "tl_helper"
    assert task["created_by"] == "tl_helper"

    # Invisible from the parent thread's own listing, visible to the helper.
    parent_view = await executor.execute("task_list", {"filter": "thread"}, _ctx())
    helper_view = await executor.execute("task_list", {"filter": "created"}, _ctx("tl_helper"))
    assert parent_view.metadata["tasks"] == []
    assert [t["id"] for t in helper_view.metadata["tasks"]] == [task["id"]]

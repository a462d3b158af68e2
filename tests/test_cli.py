"""Tests for the CLI commands."""

from __future__ import annotations

import asyncio
import json

import pytest
from click.testing import CliRunner

from threadloom.cli import main
from threadloom.db import SCHEMA_VERSION, Store
from threadloom.tasks import TaskContext, TaskManager
from threadloom.threads import ThreadStore


@pytest.fixture()
def run(db_path):
    runner = CliRunner()

    def _run(*args):
        return runner.invoke(main, ["--db", str(db_path), *args])

    return _run


@pytest.fixture()
def seeded(db_path):
    """A canonical thread with two compactions and one task."""
    store = Store.open(db_path)
    try:
        threads = ThreadStore(store)
        threads.create_thread("tl_main")
        threads.append("tl_main", "USER_MESSAGE", "hello")
        events = threads.load("tl_main").events
        threads.create_shadow_thread("tl_main", events, "first", shadow_id="tl_v1")
        threads.create_shadow_thread("tl_main", events, "second", shadow_id="tl_v2")
        threads.create_delegate_thread_for("tl_main")
        manager = TaskManager(store, "tl_main")
        task = asyncio.run(manager.create_task("Review", "Review it", TaskContext("tl_main")))
    finally:
        store.close()
    return task


# ---------------------------------------------------------------------------
# JSON error handling (group-level)
# ---------------------------------------------------------------------------


def test_unknown_command_suggests_close_match(run):
    result = run("thred")
    assert result.exit_code != 0
    payload = json.loads(result.output)
    assert payload["ok"] is False
    assert payload["kind"] == "usage"
    assert "Did you mean: thread" in payload["error"]


def test_not_found_is_reported_as_json(run):
    result = run("thread", "show", "tl_missing")
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload == {
        "ok": False,
        "kind": "not_found",
        "error": "Thread 'tl_missing' not found",
        "entity": "thread",
        "id": "tl_missing",
    }


def test_invalid_config_is_reported_as_json(db_path, tmp_path):
    config = tmp_path / "config.toml"
    config.write_text('log_level = "LOUD"\n')
    result = CliRunner().invoke(main, ["--db", str(db_path), "--config", str(config), "db", "status"])
    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["kind"] == "validation"
    assert payload["fields"] == ["log_level"]


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------


def test_db_status(run):
    result = run("db", "status")
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["schema_version"] == SCHEMA_VERSION
    assert payload["disabled"] is False
    assert payload["counts"]["projects"] == 1


def test_db_migrate_is_idempotent(run):
    payload = json.loads(run("db", "migrate").output)
    assert payload["ok"] is True
    assert payload["applied"] == []
    assert payload["schema_version"] == SCHEMA_VERSION


# ---------------------------------------------------------------------------
# thread
# ---------------------------------------------------------------------------


def test_thread_show_follows_current_version(run, seeded):
    payload = json.loads(run("thread", "show", "tl_main").output)
    assert payload["id"] == "tl_main"
    assert payload["version_id"] == "tl_v2"
    assert [e["data"] for e in payload["events"]] == ["hello"]


def test_thread_history_and_delegates(run, seeded):
    history = json.loads(run("thread", "history", "tl_v1").output)
    assert history["canonical_id"] == "tl_main"
    assert history["current_version_id"] == "tl_v2"
    assert [v["version_id"] for v in history["versions"]] == ["tl_v2", "tl_v1"]

    delegates = json.loads(run("thread", "delegates", "tl_main").output)
    assert delegates == ["tl_main.1"]


def test_thread_cleanup(run, seeded):
    payload = json.loads(run("thread", "cleanup", "tl_main", "--keep-last", "1").output)
    assert payload == {"canonical_id": "tl_main", "keep_last": 1, "removed": ["tl_v1"]}
    result = run("thread", "cleanup", "tl_main", "--keep-last", "0")
    assert result.exit_code != 0


# ---------------------------------------------------------------------------
# task
# ---------------------------------------------------------------------------


def test_task_list_and_show(run, seeded):
    listed = json.loads(run("task", "list").output)
    assert [t["id"] for t in listed] == [seeded.id]
    in_thread = json.loads(run("task", "list", "--thread", "tl_other").output)
    assert in_thread == []

    shown = json.loads(run("task", "show", seeded.id).output)
    assert shown["title"] == "Review"


def test_task_note_and_complete(run, seeded):
    noted = json.loads(run("task", "note", seeded.id, "looking now").output)
    assert noted["notes"][0]["author"] == "human"

    result = run("task", "complete", seeded.id, "approved", "--author", "reviewer")
    assert result.exit_code == 0, result.output
    done = json.loads(result.output)
    assert done["status"] == "completed"
    assert [(n["author"], n["content"]) for n in done["notes"]] == [
        ("human", "looking now"),
        ("reviewer", "approved"),
    ]

    active = json.loads(run("task", "list", "--active-only").output)
    assert active == []


def test_task_show_missing(run):
    result = run("task", "show", "task_nope")
    assert result.exit_code == 1
    assert json.loads(result.output)["kind"] == "not_found"


# ---------------------------------------------------------------------------
# sessions and projects
# ---------------------------------------------------------------------------


def test_project_and_session_lists(run):
    projects = json.loads(run("project", "list").output)
    assert [p["id"] for p in projects] == ["historical"]
    assert json.loads(run("session", "list").output) == []

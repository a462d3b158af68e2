"""threadloom command line: inspection and maintenance of the durable store.

Every command prints JSON on stdout. Logs go to stderr.
"""

from __future__ import annotations

import asyncio
import contextlib
import difflib
import json
import logging
import sys
from collections.abc import Iterator
from dataclasses import asdict
from pathlib import Path
from typing import Any

import click

from threadloom import __version__, db
from threadloom.db import Store
from threadloom.errors import NotFoundError, ThreadloomError
from threadloom.paths import CONFIG_PATH, DEFAULT_DB_PATH
from threadloom.settings import VALID_LOG_LEVELS, Settings, load_settings
from threadloom.tasks import TASK_FILTERS, TaskContext, TaskManager
from threadloom.threads import ThreadStore

log = logging.getLogger(__name__)

HUMAN_ACTOR = "human"
CLI_THREAD = "cli"


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors.

    Click usage errors and :class:`ThreadloomError` alike become a JSON error
    object on stdout with a non-zero exit code. Unknown commands get
    fuzzy-matched suggestions.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except ThreadloomError as e:
            click.echo(json.dumps(e.to_payload(), default=str))
            if standalone_mode:
                raise SystemExit(1) from None
            return 1
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "kind": "usage", "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _settings(ctx: click.Context) -> Settings:
    obj = ctx.ensure_object(dict)
    if "settings" not in obj:
        obj["settings"] = load_settings(obj.get("config_path"))
    return obj["settings"]


@contextlib.contextmanager
def _open_store(ctx: click.Context) -> Iterator[Store]:
    settings = _settings(ctx)
    with db.connect(ctx.obj["db_path"], busy_timeout_ms=settings.store.busy_timeout_ms) as store:
        yield store


def _human() -> TaskContext:
    return TaskContext(HUMAN_ACTOR, is_human=True)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_DB_PATH,
    show_default=True,
    help="SQLite database file.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"Config file (default: {CONFIG_PATH}).",
)
@click.option(
    "--log-level",
    type=click.Choice(VALID_LOG_LEVELS, case_sensitive=False),
    envvar="THREADLOOM_LOG_LEVEL",
    default="WARNING",
    show_default=True,
)
@click.pass_context
def main(ctx: click.Context, db_path: Path, config_path: Path | None, log_level: str):
    """Inspect and maintain threadloom threads, tasks, sessions and projects.

    \b
    Quick start:
      threadloom db status                    Schema version and row counts
      threadloom thread show THREAD_ID        Replay a thread (follows compaction)
      threadloom task list                    Every task, high priority first
      threadloom task complete TASK_ID MSG    Finish a task by hand
    """
    logging.basicConfig(
        level=log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path
    ctx.obj["config_path"] = config_path


# -- db --


@main.group("db")
def db_group():
    """Database status and migrations."""


@db_group.command("status")
@click.pass_context
def db_status(ctx: click.Context):
    """Schema version, persistence state and row counts."""
    with _open_store(ctx) as store:
        _echo(db.inspect_store(store))


@db_group.command("migrate")
@click.pass_context
def db_migrate(ctx: click.Context):
    """Apply pending schema migrations."""
    with _open_store(ctx) as store:
        applied = store.migrate()
        _echo(
            {
                "ok": not store.disabled,
                "applied": applied,
                "schema_version": store.schema_version(),
                "latest_schema_version": db.SCHEMA_VERSION,
            }
        )


# -- thread --


@main.group()
def thread():
    """Threads, versions and delegates."""


@thread.command("show")
@click.argument("thread_id")
@click.pass_context
def thread_show(ctx: click.Context, thread_id: str):
    """Replay a thread. Canonical ids show their current version."""
    with _open_store(ctx) as store:
        loaded = ThreadStore(store).load(thread_id)
    if loaded is None:
        raise NotFoundError("thread", thread_id)
    _echo(loaded.to_dict())


@thread.command("history")
@click.argument("thread_id")
@click.pass_context
def thread_history(ctx: click.Context, thread_id: str):
    """Compaction history, newest first."""
    with _open_store(ctx) as store:
        threads = ThreadStore(store)
        canonical_id = threads.get_canonical_id(thread_id)
        _echo(
            {
                "canonical_id": canonical_id,
                "current_version_id": threads.get_current_version(canonical_id),
                "versions": [asdict(entry) for entry in threads.get_version_history(canonical_id)],
            }
        )


@thread.command("delegates")
@click.argument("thread_id")
@click.pass_context
def thread_delegates(ctx: click.Context, thread_id: str):
    """Delegate threads (``THREAD_ID.n``) under a thread."""
    with _open_store(ctx) as store:
        _echo(ThreadStore(store).get_delegate_threads_for(thread_id))


@thread.command("cleanup")
@click.argument("thread_id")
@click.option("--keep-last", type=click.IntRange(min=1), default=None, help="Versions to keep.")
@click.pass_context
def thread_cleanup(ctx: click.Context, thread_id: str, keep_last: int | None):
    """Delete old compacted versions of a thread."""
    settings = _settings(ctx)
    keep = keep_last or settings.threads.keep_last_shadows
    with _open_store(ctx) as store:
        threads = ThreadStore(store, keep_last_shadows=keep)
        canonical_id = threads.get_canonical_id(thread_id)
        removed = threads.cleanup_old_shadows(canonical_id)
    _echo({"canonical_id": canonical_id, "keep_last": keep, "removed": removed})


# -- task --


@main.group()
def task():
    """Inspect and finish tasks."""


@task.command("list")
@click.option("--thread", "thread_id", default=None, help="Only tasks in this thread.")
@click.option(
    "--filter",
    "task_filter",
    type=click.Choice(TASK_FILTERS),
    default=None,
    help="Filter relative to --thread (default: thread if given, else all).",
)
@click.option("--active-only", is_flag=True, help="Hide completed tasks.")
@click.pass_context
def task_list(ctx: click.Context, thread_id: str | None, task_filter: str | None, active_only: bool):
    """List tasks, high priority first."""
    task_filter = task_filter or ("thread" if thread_id else "all")
    context = TaskContext(thread_id, is_human=False) if thread_id else _human()
    with _open_store(ctx) as store:
        manager = TaskManager(store, thread_id or CLI_THREAD)
        tasks = asyncio.run(
            manager.list_tasks(task_filter, context, include_completed=not active_only)
        )
    _echo([t.to_dict() for t in tasks])


@task.command("show")
@click.argument("task_id")
@click.pass_context
def task_show(ctx: click.Context, task_id: str):
    """Show one task with its notes."""
    with _open_store(ctx) as store:
        found = asyncio.run(TaskManager(store, CLI_THREAD).get_task(task_id, _human()))
    if found is None:
        raise NotFoundError("task", task_id)
    _echo(found.to_dict())


@task.command("note")
@click.argument("task_id")
@click.argument("content")
@click.option("--author", default=HUMAN_ACTOR, show_default=True)
@click.pass_context
def task_note(ctx: click.Context, task_id: str, content: str, author: str):
    """Add a note to a task."""
    settings = _settings(ctx)
    with _open_store(ctx) as store:
        manager = TaskManager(store, CLI_THREAD, max_note_length=settings.tasks.max_note_length)
        updated = asyncio.run(manager.add_note(task_id, content, TaskContext(author, is_human=True)))
    _echo(updated.to_dict())


@task.command("complete")
@click.argument("task_id")
@click.argument("message")
@click.option("--author", default=HUMAN_ACTOR, show_default=True)
@click.pass_context
def task_complete(ctx: click.Context, task_id: str, message: str, author: str):
    """Complete a task with a final message."""
    settings = _settings(ctx)
    with _open_store(ctx) as store:
        manager = TaskManager(store, CLI_THREAD, max_note_length=settings.tasks.max_note_length)
        updated = asyncio.run(
            manager.complete_task(task_id, message, TaskContext(author, is_human=True))
        )
    _echo(updated.to_dict())


# -- session / project --


@main.group()
def session():
    """Sessions."""


@session.command("list")
@click.option("--project", "project_id", default=None, help="Only sessions of this project.")
@click.pass_context
def session_list(ctx: click.Context, project_id: str | None):
    """List sessions, most recently updated first."""
    with _open_store(ctx) as store:
        rows = store.read(lambda conn: db.list_sessions(conn, project_id=project_id), [])
    _echo(rows)


@main.group()
def project():
    """Projects."""


@project.command("list")
@click.option("--active-only", is_flag=True, help="Hide archived projects.")
@click.pass_context
def project_list(ctx: click.Context, active_only: bool):
    """List projects, most recently used first."""
    with _open_store(ctx) as store:
        rows = store.read(
            lambda conn: db.list_projects(conn, include_archived=not active_only), []
        )
    _echo(rows)

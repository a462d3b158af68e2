"""SQLite database for threadloom state.

All SQL lives here. Higher layers (:mod:`threadloom.threads`,
:mod:`threadloom.tasks`) never touch rows except through these functions, and
every mutation runs inside :meth:`Store.write`, which wraps it in a single
``BEGIN IMMEDIATE`` transaction and retries it as a whole while the database
is busy. Coroutines use :meth:`Store.write_async`, whose backoff waits yield to
the event loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypedDict, TypeVar, cast

from threadloom.errors import ContentionError, NotFoundError, ValidationError
from threadloom.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

T = TypeVar("T")

VALID_TASK_STATUSES = ("pending", "in_progress", "completed", "blocked")
TASK_TERMINAL_STATUSES = frozenset({"completed"})
VALID_TASK_PRIORITIES = ("high", "medium", "low")
VALID_SESSION_STATUSES = ("active", "archived", "completed")

HISTORICAL_PROJECT_ID = "historical"

# Bump when adding migrations.
SCHEMA_VERSION = 6


def utcnow() -> str:
    """ISO 8601 UTC timestamp with microseconds; sorts lexically in time order."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# -- Row TypedDicts matching table schemas --


class ThreadRow(TypedDict):
    id: str
    session_id: str | None
    project_id: str | None
    created_at: str
    updated_at: str
    metadata: str | None


class EventRow(TypedDict):
    id: str
    thread_id: str
    type: str
    timestamp: str
    data: str


class VersionHistoryRow(TypedDict):
    id: int
    canonical_id: str
    version_id: str
    created_at: str
    reason: str | None


class TaskRow(TypedDict):
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


class TaskNoteRow(TypedDict):
    id: int
    task_id: str
    author: str
    content: str
    timestamp: str


class ProjectRow(TypedDict):
    id: str
    name: str
    description: str | None
    working_directory: str
    configuration: str
    is_archived: int
    created_at: str
    last_used_at: str


class SessionRow(TypedDict):
    id: str
    project_id: str
    name: str
    description: str | None
    configuration: str
    status: str
    created_at: str
    updated_at: str


# -- retry --


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for busy-database retries.

    ``max_retries`` counts retries after the first attempt. Delays run
    ``base_delay * 2**n`` capped at ``max_delay``.
    """

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 1.0

    def delay_for(self, retry_index: int) -> float:
        return min(self.base_delay * (2**retry_index), self.max_delay)


def is_busy_error(exc: BaseException) -> bool:
    """True for SQLITE_BUSY / SQLITE_LOCKED style operational errors."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if isinstance(code, int) and code & 0xFF in (sqlite3.SQLITE_BUSY, sqlite3.SQLITE_LOCKED):
        return True
    message = str(exc).lower()
    return "database is locked" in message or "database is busy" in message


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], object] = time.sleep,
) -> T:
    """Run *operation*, retrying on busy errors; other errors propagate untouched.

    Raises :class:`ContentionError` once ``policy.max_retries`` retries are spent.
    """
    policy = policy or RetryPolicy()
    retries = 0
    while True:
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            delay = _backoff(exc, retries, policy)
        sleep(delay)
        retries += 1


async def with_retry_async(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Like :func:`with_retry`, but the backoff yields to the event loop."""
    policy = policy or RetryPolicy()
    retries = 0
    while True:
        try:
            return operation()
        except sqlite3.OperationalError as exc:
            delay = _backoff(exc, retries, policy)
        await sleep(delay)
        retries += 1


def _backoff(exc: sqlite3.OperationalError, retries: int, policy: RetryPolicy) -> float:
    if not is_busy_error(exc):
        raise exc
    if retries >= policy.max_retries:
        log.error("Database still busy after %d attempts: %s", retries + 1, exc)
        raise ContentionError(
            f"Database busy after {retries + 1} attempts", attempts=retries + 1
        ) from exc
    delay = policy.delay_for(retries)
    log.warning(
        "Database busy (attempt %d/%d), retrying in %.2fs",
        retries + 1,
        policy.max_retries + 1,
        delay,
    )
    return delay


@contextlib.contextmanager
def _transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Explicit BEGIN IMMEDIATE / COMMIT; a failed COMMIT is rolled back too."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise


# -- migrations --


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _add_column_if_missing(
    conn: sqlite3.Connection, table: str, column: str, col_def: str, cols: set[str]
) -> None:
    if column not in cols:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_def}")


def _run(conn: sqlite3.Connection, *statements: str) -> None:
    for statement in statements:
        conn.execute(statement)


def _migrate_to_v1(conn: sqlite3.Connection) -> None:
    """Threads and their append-only event log."""
    _run(
        conn,
        """CREATE TABLE IF NOT EXISTS threads (
            id TEXT PRIMARY KEY,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            thread_id TEXT NOT NULL REFERENCES threads(id),
            type TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            data TEXT NOT NULL
        )""",
        "CREATE INDEX IF NOT EXISTS idx_events_thread_timestamp ON events(thread_id, timestamp)",
        "CREATE INDEX IF NOT EXISTS idx_threads_updated ON threads(updated_at DESC)",
    )


def _migrate_to_v2(conn: sqlite3.Connection) -> None:
    """Canonical -> version pointer plus the append-only compaction audit trail."""
    _run(
        conn,
        """CREATE TABLE IF NOT EXISTS thread_versions (
            canonical_id TEXT PRIMARY KEY,
            current_version_id TEXT NOT NULL REFERENCES threads(id),
            created_at TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS version_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            canonical_id TEXT NOT NULL REFERENCES thread_versions(canonical_id),
            version_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            reason TEXT
        )""",
        "CREATE INDEX IF NOT EXISTS idx_version_history_canonical "
        "ON version_history(canonical_id, id DESC)",
        "CREATE INDEX IF NOT EXISTS idx_version_history_version ON version_history(version_id)",
    )


def _migrate_to_v3(conn: sqlite3.Connection) -> None:
    _run(
        conn,
        """CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            description TEXT,
            prompt TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'in_progress', 'completed', 'blocked')),
            priority TEXT NOT NULL DEFAULT 'medium'
                CHECK (priority IN ('high', 'medium', 'low')),
            assigned_to TEXT,
            created_by TEXT NOT NULL,
            thread_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""",
        """CREATE TABLE IF NOT EXISTS task_notes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
            author TEXT NOT NULL,
            content TEXT NOT NULL,
            timestamp TEXT NOT NULL
        )""",
        "CREATE INDEX IF NOT EXISTS idx_tasks_thread_id ON tasks(thread_id)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_assigned_to ON tasks(assigned_to)",
        "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)",
        "CREATE INDEX IF NOT EXISTS idx_task_notes_task_id ON task_notes(task_id, timestamp)",
    )


def _migrate_to_v4(conn: sqlite3.Connection) -> None:
    cols = _table_columns(conn, "threads")
    _add_column_if_missing(conn, "threads", "metadata", "TEXT DEFAULT NULL", cols)


def _migrate_to_v5(conn: sqlite3.Connection) -> None:
    """Projects, seeded with the ``historical`` project that owns legacy sessions."""
    _run(
        conn,
        """CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            description TEXT,
            working_directory TEXT NOT NULL,
            configuration TEXT NOT NULL DEFAULT '{}',
            is_archived INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            last_used_at TEXT NOT NULL
        )""",
    )
    now = utcnow()
    conn.execute(
        "INSERT OR IGNORE INTO projects "
        "(id, name, description, working_directory, configuration, is_archived, "
        "created_at, last_used_at) VALUES (?, 'Historical', ?, ?, '{}', 0, ?, ?)",
        (
            HISTORICAL_PROJECT_ID,
            "Legacy sessions before project support",
            os.getcwd(),
            now,
            now,
        ),
    )


def _migrate_to_v6(conn: sqlite3.Connection) -> None:
    """First-class sessions; backfill them from threads flagged ``isSession``."""
    _run(
        conn,
        """CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id),
            name TEXT NOT NULL,
            description TEXT,
            configuration TEXT NOT NULL DEFAULT '{}',
            status TEXT NOT NULL DEFAULT 'active'
                CHECK (status IN ('active', 'archived', 'completed')),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )""",
        "CREATE INDEX IF NOT EXISTS idx_sessions_project_id ON sessions(project_id)",
    )
    cols = _table_columns(conn, "threads")
    _add_column_if_missing(conn, "threads", "session_id", "TEXT", cols)
    _add_column_if_missing(conn, "threads", "project_id", "TEXT", cols)
    conn.execute("CREATE INDEX IF NOT EXISTS idx_threads_session_id ON threads(session_id)")

    rows = conn.execute(
        "SELECT id, created_at, updated_at, metadata FROM threads WHERE metadata IS NOT NULL"
    ).fetchall()
    for row in rows:
        try:
            metadata = json.loads(row["metadata"])
        except (TypeError, json.JSONDecodeError):
            log.warning("Skipping thread %s with unparseable metadata", row["id"])
            continue
        if not isinstance(metadata, dict) or not metadata.get("isSession"):
            continue
        conn.execute(
            "INSERT OR IGNORE INTO sessions "
            "(id, project_id, name, description, configuration, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                row["id"],
                HISTORICAL_PROJECT_ID,
                metadata.get("name") or "Untitled Session",
                metadata.get("description") or "",
                json.dumps(metadata.get("configuration") or {}),
                row["created_at"],
                row["updated_at"],
            ),
        )
        remaining = {
            key: value
            for key, value in metadata.items()
            if key not in ("isSession", "name", "description", "configuration")
        }
        conn.execute(
            "UPDATE threads SET session_id = ?, metadata = ? WHERE id = ?",
            (row["id"], json.dumps(remaining) if remaining else None, row["id"]),
        )


_MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migrate_to_v1),
    (2, _migrate_to_v2),
    (3, _migrate_to_v3),
    (4, _migrate_to_v4),
    (5, _migrate_to_v5),
    (6, _migrate_to_v6),
]


def get_schema_version(conn: sqlite3.Connection) -> int:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_version ("
        "version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def apply_migrations(conn: sqlite3.Connection) -> list[int]:
    """Replay every pending migration in order, one transaction per step.

    Each step is idempotent and records exactly one ``schema_version`` row,
    so an interrupted upgrade resumes from the last committed step.
    Returns the versions applied by this call.
    """
    current = get_schema_version(conn)
    applied: list[int] = []
    for version, migration_fn in _MIGRATIONS:
        if current >= version:
            continue
        with _transaction(conn):
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, utcnow()),
            )
        log.debug("Applied schema migration v%d", version)
        applied.append(version)
    return applied


# -- connection + store handle --


def get_connection(db_path: Path | str = DEFAULT_DB_PATH, *, busy_timeout_ms: int = 5000):
    """Open, configure and migrate a connection (autocommit; transactions are explicit)."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(
        str(db_path), isolation_level=None, timeout=max(busy_timeout_ms, 0) / 1000
    )
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        apply_migrations(conn)
    except BaseException:
        conn.close()
        raise
    return conn


class Store:
    """Explicit handle to the durable store.

    When the database cannot be opened the store runs disabled: writes are
    no-ops returning their default and reads return their default (empty or
    None). This keeps local tooling usable without persistence.
    """

    def __init__(
        self,
        conn: sqlite3.Connection | None,
        *,
        path: Path | str | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], object] = time.sleep,
        async_sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self._conn = conn
        self.path = path
        self.retry = retry or RetryPolicy()
        self._sleep = sleep
        self._async_sleep = async_sleep
        self._closed = False
        self._explicit_depth = 0

    @classmethod
    def open(
        cls,
        db_path: Path | str = DEFAULT_DB_PATH,
        *,
        busy_timeout_ms: int = 5000,
        retry: RetryPolicy | None = None,
    ) -> Store:
        try:
            conn = get_connection(db_path, busy_timeout_ms=busy_timeout_ms)
        except (sqlite3.Error, OSError) as exc:
            log.error("Failed to initialize database at %s: %s", db_path, exc)
            log.warning("Database persistence disabled - data will only be kept in memory")
            return cls(None, path=db_path, retry=retry)
        return cls(conn, path=db_path, retry=retry)

    @property
    def disabled(self) -> bool:
        return self._conn is None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def available(self) -> bool:
        return self._conn is not None and not self._closed

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None or self._closed:
            raise RuntimeError("Store is not available")
        return self._conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several writes atomically (not retried; prefer :meth:`write`).

        Writes issued inside join this transaction; nesting joins the outer one.
        """
        conn = self.conn
        if self._explicit_depth:
            self._explicit_depth += 1
            try:
                yield conn
            finally:
                self._explicit_depth -= 1
            return
        with _transaction(self._fresh()):
            self._explicit_depth = 1
            try:
                yield conn
            finally:
                self._explicit_depth = 0

    def write(self, operation: Callable[[sqlite3.Connection], T], default: T = None) -> T:  # type: ignore[assignment]
        """Run *operation* in one transaction, retrying the whole unit while busy."""
        if not self.available:
            return default
        if self._explicit_depth:
            return operation(self.conn)
        return with_retry(self._attempt(operation), self.retry, sleep=self._sleep)

    async def write_async(
        self, operation: Callable[[sqlite3.Connection], T], default: T = None  # type: ignore[assignment]
    ) -> T:
        """:meth:`write` for coroutines: backoff waits suspend instead of blocking the loop."""
        if not self.available:
            return default
        if self._explicit_depth:
            return operation(self.conn)
        return await with_retry_async(
            self._attempt(operation), self.retry, sleep=self._async_sleep
        )

    def _attempt(self, operation: Callable[[sqlite3.Connection], T]) -> Callable[[], T]:
        def attempt() -> T:
            with _transaction(self._fresh()) as conn:
                return operation(conn)

        return attempt

    def _fresh(self) -> sqlite3.Connection:
        # Never join a transaction nobody owns: whatever it holds is abandoned.
        conn = self.conn
        if conn.in_transaction:
            log.warning("Rolling back a stray open transaction on %s", self.path)
            conn.execute("ROLLBACK")
        return conn

    def read(self, operation: Callable[[sqlite3.Connection], T], default: T) -> T:
        if not self.available:
            return default
        return operation(self.conn)

    def schema_version(self) -> int:
        return self.read(get_schema_version, 0)

    def migrate(self) -> list[int]:
        return self.read(apply_migrations, [])

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            self._conn.close()

    def __enter__(self) -> Store:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@contextlib.contextmanager
def connect(db_path: Path | str = DEFAULT_DB_PATH, *, busy_timeout_ms: int = 5000):
    """Context manager wrapper for Store.open().

    Usage:
        with connect() as store:
            do_stuff(store)
    # store.close() is guaranteed even on exceptions.
    """
    store = Store.open(db_path, busy_timeout_ms=busy_timeout_ms)
    try:
        yield store
    finally:
        store.close()


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def _dump(value: Any) -> str:
    return json.dumps(value, default=str)


# -- threads --


def insert_thread(
    conn: sqlite3.Connection,
    *,
    thread_id: str,
    created_at: str,
    updated_at: str,
    session_id: str | None = None,
    project_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    conn.execute(
        "INSERT INTO threads (id, session_id, project_id, created_at, updated_at, metadata) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (
            thread_id,
            session_id,
            project_id,
            created_at,
            updated_at,
            _dump(metadata) if metadata else None,
        ),
    )


def get_thread(conn: sqlite3.Connection, thread_id: str) -> ThreadRow | None:
    row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
    return cast(ThreadRow, dict(row)) if row else None


def thread_exists(conn: sqlite3.Connection, thread_id: str) -> bool:
    return conn.execute("SELECT 1 FROM threads WHERE id = ?", (thread_id,)).fetchone() is not None


def touch_thread(conn: sqlite3.Connection, thread_id: str, updated_at: str) -> None:
    conn.execute("UPDATE threads SET updated_at = ? WHERE id = ?", (updated_at, thread_id))


def list_threads(conn: sqlite3.Connection, *, session_id: str | None = None) -> list[ThreadRow]:
    query = "SELECT * FROM threads"
    params: list[str] = []
    if session_id is not None:
        query += " WHERE session_id = ?"
        params.append(session_id)
    query += " ORDER BY updated_at DESC, id"
    return [cast(ThreadRow, dict(row)) for row in conn.execute(query, params).fetchall()]


def get_latest_thread_id(conn: sqlite3.Connection) -> str | None:
    row = conn.execute("SELECT id FROM threads ORDER BY updated_at DESC LIMIT 1").fetchone()
    return row["id"] if row else None


def list_thread_ids_with_prefix(conn: sqlite3.Connection, prefix: str) -> list[str]:
    """Thread ids starting with *prefix*, sorted lexicographically.

    Uses ``substr`` rather than ``LIKE`` because thread ids contain ``_``.
    """
    rows = conn.execute(
        "SELECT id FROM threads WHERE length(id) > ? AND substr(id, 1, ?) = ? ORDER BY id",
        (len(prefix), len(prefix), prefix),
    ).fetchall()
    return [row["id"] for row in rows]


def delete_thread(conn: sqlite3.Connection, thread_id: str) -> int:
    """Delete a thread and its events. Returns the number of events removed."""
    cursor = conn.execute("DELETE FROM events WHERE thread_id = ?", (thread_id,))
    conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
    return cursor.rowcount


# -- events --


def insert_event(
    conn: sqlite3.Connection,
    *,
    event_id: str,
    thread_id: str,
    event_type: str,
    timestamp: str,
    data: Any,
) -> None:
    conn.execute(
        "INSERT INTO events (id, thread_id, type, timestamp, data) VALUES (?, ?, ?, ?, ?)",
        (event_id, thread_id, event_type, timestamp, _dump(data)),
    )


def list_events(conn: sqlite3.Connection, thread_id: str) -> list[EventRow]:
    """Events in timestamp order; ties keep insertion order."""
    rows = conn.execute(
        "SELECT * FROM events WHERE thread_id = ? ORDER BY timestamp, rowid", (thread_id,)
    ).fetchall()
    return [cast(EventRow, dict(row)) for row in rows]


def count_events(conn: sqlite3.Connection, thread_id: str) -> int:
    row = conn.execute("SELECT COUNT(*) FROM events WHERE thread_id = ?", (thread_id,)).fetchone()
    return row[0]


# -- versions --


def get_current_version(conn: sqlite3.Connection, canonical_id: str) -> str | None:
    row = conn.execute(
        "SELECT current_version_id FROM thread_versions WHERE canonical_id = ?", (canonical_id,)
    ).fetchone()
    return row["current_version_id"] if row else None


def set_current_version(
    conn: sqlite3.Connection, canonical_id: str, version_id: str, created_at: str
) -> None:
    conn.execute(
        "INSERT INTO thread_versions (canonical_id, current_version_id, created_at) "
        "VALUES (?, ?, ?) "
        "ON CONFLICT(canonical_id) DO UPDATE SET "
        "current_version_id = excluded.current_version_id, created_at = excluded.created_at",
        (canonical_id, version_id, created_at),
    )


def add_version_history(
    conn: sqlite3.Connection,
    canonical_id: str,
    version_id: str,
    created_at: str,
    reason: str | None,
) -> int:
    cursor = conn.execute(
        "INSERT INTO version_history (canonical_id, version_id, created_at, reason) "
        "VALUES (?, ?, ?, ?)",
        (canonical_id, version_id, created_at, reason),
    )
    return cast(int, cursor.lastrowid)


def list_version_history(conn: sqlite3.Connection, canonical_id: str) -> list[VersionHistoryRow]:
    """Newest first, by the auto-incrementing id."""
    rows = conn.execute(
        "SELECT * FROM version_history WHERE canonical_id = ? ORDER BY id DESC", (canonical_id,)
    ).fetchall()
    return [cast(VersionHistoryRow, dict(row)) for row in rows]


def find_canonical_id_for_version(conn: sqlite3.Connection, version_id: str) -> str | None:
    row = conn.execute(
        "SELECT canonical_id FROM version_history WHERE version_id = ? ORDER BY id LIMIT 1",
        (version_id,),
    ).fetchone()
    return row["canonical_id"] if row else None


def delete_version_history(conn: sqlite3.Connection, canonical_id: str, version_id: str) -> None:
    conn.execute(
        "DELETE FROM version_history WHERE canonical_id = ? AND version_id = ?",
        (canonical_id, version_id),
    )


# -- tasks --

_TASK_ORDER = (
    "CASE tasks.priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END, "
    "tasks.created_at, tasks.rowid"
)
_TASK_UPDATABLE = frozenset({"title", "description", "prompt", "status", "priority", "assigned_to"})


def insert_task(conn: sqlite3.Connection, task: TaskRow) -> None:
    conn.execute(
        "INSERT INTO tasks (id, title, description, prompt, status, priority, assigned_to, "
        "created_by, thread_id, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            task["id"],
            task["title"],
            task["description"],
            task["prompt"],
            task["status"],
            task["priority"],
            task["assigned_to"],
            task["created_by"],
            task["thread_id"],
            task["created_at"],
            task["updated_at"],
        ),
    )


def get_task(
    conn: sqlite3.Connection, task_id: str, *, thread_id: str | None = None
) -> TaskRow | None:
    query = "SELECT * FROM tasks WHERE id = ?"
    params: list[str] = [task_id]
    if thread_id is not None:
        query += " AND thread_id = ?"
        params.append(thread_id)
    row = conn.execute(query, params).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection,
    *,
    thread_id: str | None = None,
    assigned_to: str | None = None,
    created_by: str | None = None,
    visible_to: tuple[str, str] | None = None,
    statuses: Sequence[str] | None = None,
    priority: str | None = None,
) -> list[TaskRow]:
    """Tasks ordered high -> medium -> low, then by creation time.

    ``visible_to=(thread_id, actor)`` selects tasks in that thread OR assigned
    to that actor.
    """
    conditions: list[str] = []
    params: list[str] = []
    if thread_id is not None:
        conditions.append("tasks.thread_id = ?")
        params.append(thread_id)
    if assigned_to is not None:
        conditions.append("tasks.assigned_to = ?")
        params.append(assigned_to)
    if created_by is not None:
        conditions.append("tasks.created_by = ?")
        params.append(created_by)
    if visible_to is not None:
        conditions.append("(tasks.thread_id = ? OR tasks.assigned_to = ?)")
        params.extend(visible_to)
    if statuses is not None:
        placeholders = ",".join("?" for _ in statuses) or "NULL"
        conditions.append(f"tasks.status IN ({placeholders})")
        params.extend(statuses)
    if priority is not None:
        conditions.append("tasks.priority = ?")
        params.append(priority)
    query = "SELECT tasks.* FROM tasks"
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += f" ORDER BY {_TASK_ORDER}"
    return [cast(TaskRow, dict(row)) for row in conn.execute(query, params).fetchall()]


def update_task_fields(
    conn: sqlite3.Connection, task_id: str, fields: dict[str, Any], updated_at: str
) -> bool:
    """Partial update; ``updated_at`` always changes. Unknown columns are rejected."""
    unknown = set(fields) - _TASK_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update task columns: {sorted(unknown)}")
    assignments = [f"{column} = ?" for column in fields]
    assignments.append("updated_at = ?")
    params = [*fields.values(), updated_at, task_id]
    cursor = conn.execute(f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?", params)
    return cursor.rowcount > 0


def reassign_task_if(
    conn: sqlite3.Connection, task_id: str, expected: str, assigned_to: str, updated_at: str
) -> bool:
    """Swap ``assigned_to`` only if it still holds *expected* (compare-and-set)."""
    cursor = conn.execute(
        "UPDATE tasks SET assigned_to = ?, updated_at = ? WHERE id = ? AND assigned_to = ?",
        (assigned_to, updated_at, task_id, expected),
    )
    return cursor.rowcount > 0


def delete_task(conn: sqlite3.Connection, task_id: str) -> bool:
    cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    return cursor.rowcount > 0


def add_task_note(
    conn: sqlite3.Connection, task_id: str, *, author: str, content: str, timestamp: str
) -> int:
    """Append a note and bump the task's ``updated_at``. The task must exist."""
    if conn.execute("SELECT 1 FROM tasks WHERE id = ?", (task_id,)).fetchone() is None:
        raise NotFoundError("task", task_id)
    cursor = conn.execute(
        "INSERT INTO task_notes (task_id, author, content, timestamp) VALUES (?, ?, ?, ?)",
        (task_id, author, content, timestamp),
    )
    conn.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (timestamp, task_id))
    return cast(int, cursor.lastrowid)


def list_task_notes(
    conn: sqlite3.Connection, task_ids: Sequence[str]
) -> dict[str, list[TaskNoteRow]]:
    """Notes for many tasks in one query, each list in timestamp order."""
    notes: dict[str, list[TaskNoteRow]] = {task_id: [] for task_id in task_ids}
    if not task_ids:
        return notes
    placeholders = ",".join("?" for _ in task_ids)
    rows = conn.execute(
        f"SELECT * FROM task_notes WHERE task_id IN ({placeholders}) "
        "ORDER BY task_id, timestamp, id",
        list(task_ids),
    ).fetchall()
    for row in rows:
        notes[row["task_id"]].append(cast(TaskNoteRow, dict(row)))
    return notes


# -- projects --

_PROJECT_UPDATABLE = frozenset(
    {"name", "description", "working_directory", "configuration", "is_archived"}
)
_SESSION_UPDATABLE = frozenset({"name", "description", "configuration", "status"})


def create_project(
    conn: sqlite3.Connection,
    *,
    name: str,
    working_directory: str,
    description: str = "",
    configuration: dict[str, Any] | None = None,
    project_id: str | None = None,
) -> ProjectRow:
    if not name.strip():
        raise ValidationError("Project name is required", "name")
    if not working_directory.strip():
        raise ValidationError("Project working directory is required", "working_directory")
    now = utcnow()
    row: ProjectRow = {
        "id": project_id or new_id(),
        "name": name.strip(),
        "description": description,
        "working_directory": working_directory,
        "configuration": _dump(configuration or {}),
        "is_archived": 0,
        "created_at": now,
        "last_used_at": now,
    }
    conn.execute(
        "INSERT INTO projects (id, name, description, working_directory, configuration, "
        "is_archived, created_at, last_used_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        tuple(row.values()),
    )
    return row


def get_project(conn: sqlite3.Connection, project_id: str) -> ProjectRow | None:
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def list_projects(conn: sqlite3.Connection, *, include_archived: bool = True) -> list[ProjectRow]:
    query = "SELECT * FROM projects"
    if not include_archived:
        query += " WHERE is_archived = 0"
    query += " ORDER BY last_used_at DESC, id"
    return [cast(ProjectRow, dict(row)) for row in conn.execute(query).fetchall()]


def update_project(conn: sqlite3.Connection, project_id: str, **fields: Any) -> bool:
    """Partial update; ``last_used_at`` always changes."""
    unknown = set(fields) - _PROJECT_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update project columns: {sorted(unknown)}")
    if "configuration" in fields:
        fields["configuration"] = _dump(fields["configuration"] or {})
    if "is_archived" in fields:
        fields["is_archived"] = int(bool(fields["is_archived"]))
    assignments = [f"{column} = ?" for column in fields] + ["last_used_at = ?"]
    cursor = conn.execute(
        f"UPDATE projects SET {', '.join(assignments)} WHERE id = ?",
        [*fields.values(), utcnow(), project_id],
    )
    return cursor.rowcount > 0


def delete_project(conn: sqlite3.Connection, project_id: str) -> bool:
    cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
    return cursor.rowcount > 0


# -- sessions --


def create_session(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    name: str,
    description: str = "",
    configuration: dict[str, Any] | None = None,
    status: str = "active",
    session_id: str | None = None,
) -> SessionRow:
    if status not in VALID_SESSION_STATUSES:
        raise ValidationError(
            f"Invalid session status '{status}'. Must be one of: {VALID_SESSION_STATUSES}",
            "status",
        )
    if not name.strip():
        raise ValidationError("Session name is required", "name")
    if get_project(conn, project_id) is None:
        raise NotFoundError("project", project_id)
    now = utcnow()
    row: SessionRow = {
        "id": session_id or new_id(),
        "project_id": project_id,
        "name": name.strip(),
        "description": description,
        "configuration": _dump(configuration or {}),
        "status": status,
        "created_at": now,
        "updated_at": now,
    }
    conn.execute(
        "INSERT INTO sessions (id, project_id, name, description, configuration, status, "
        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        tuple(row.values()),
    )
    return row


def get_session(conn: sqlite3.Connection, session_id: str) -> SessionRow | None:
    row = conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
    return cast(SessionRow, dict(row)) if row else None


def list_sessions(conn: sqlite3.Connection, *, project_id: str | None = None) -> list[SessionRow]:
    query = "SELECT * FROM sessions"
    params: list[str] = []
    if project_id is not None:
        query += " WHERE project_id = ?"
        params.append(project_id)
    query += " ORDER BY updated_at DESC, id"
    return [cast(SessionRow, dict(row)) for row in conn.execute(query, params).fetchall()]


def update_session(conn: sqlite3.Connection, session_id: str, **fields: Any) -> bool:
    unknown = set(fields) - _SESSION_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update session columns: {sorted(unknown)}")
    if "status" in fields and fields["status"] not in VALID_SESSION_STATUSES:
        raise ValidationError(
            f"Invalid session status '{fields['status']}'. "
            f"Must be one of: {VALID_SESSION_STATUSES}",
            "status",
        )
    if "configuration" in fields:
        fields["configuration"] = _dump(fields["configuration"] or {})
    assignments = [f"{column} = ?" for column in fields] + ["updated_at = ?"]
    cursor = conn.execute(
        f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?",
        [*fields.values(), utcnow(), session_id],
    )
    return cursor.rowcount > 0


def delete_session(conn: sqlite3.Connection, session_id: str) -> bool:
    cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
    return cursor.rowcount > 0


# -- inspection --

_COUNTED_TABLES = (
    "threads",
    "events",
    "thread_versions",
    "version_history",
    "tasks",
    "task_notes",
    "projects",
    "sessions",
)


def inspect_store(store: Store) -> dict[str, Any]:
    """Summary used by ``threadloom db status``."""
    summary: dict[str, Any] = {
        "path": str(store.path) if store.path is not None else None,
        "disabled": store.disabled,
        "schema_version": store.schema_version(),
        "latest_schema_version": SCHEMA_VERSION,
    }

    def _counts(conn: sqlite3.Connection) -> dict[str, int]:
        return {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in _COUNTED_TABLES
        }

    summary["counts"] = store.read(_counts, {})
    return summary

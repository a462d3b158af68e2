"""Shared test fixtures: a template DB copied per test for fast isolation."""

import os
import shutil
import sqlite3
import tempfile
from pathlib import Path

import pytest

from threadloom.db import Store, get_connection
from threadloom.events import EventChannel
from threadloom.tasks import TaskManager
from threadloom.threads import ThreadStore

PARENT_THREAD = "tl_20250101_parent"


class FlakyConnection:
    """Wraps a connection so the first *failures* runs of *statement* fail busy."""

    def __init__(self, conn: sqlite3.Connection, statement: str, failures: int = 1) -> None:
        self._conn = conn
        self.statement = statement
        self.failures = failures
        self.failed = 0

    def execute(self, sql: str, *args):
        if sql == self.statement and self.failed < self.failures:
            self.failed += 1
            raise sqlite3.OperationalError("database is locked")
        return self._conn.execute(sql, *args)

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema applied.

    Copying this file is much cheaper than replaying every migration in every
    test function.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_path(tmp_path: Path, _db_template_path: Path) -> Path:
    path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, path)
    return path


@pytest.fixture()
def store(db_path: Path) -> Store:
    s = Store.open(db_path)
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def thread_store(store: Store) -> ThreadStore:
    return ThreadStore(store)


@pytest.fixture()
def bus() -> EventChannel:
    return EventChannel()


@pytest.fixture()
def parent_thread(thread_store: ThreadStore) -> str:
    return thread_store.create_thread(PARENT_THREAD).id


@pytest.fixture()
def task_manager(store: Store, bus: EventChannel, parent_thread: str) -> TaskManager:
    return TaskManager(store, parent_thread, bus)

"""Event-sourced thread store with canonical -> version indirection.

A canonical thread id can be repointed at a "shadow" thread holding a
compacted copy of its history. Readers and writers keep using the canonical
id; :meth:`ThreadStore.load` and :meth:`ThreadStore.append` follow the pointer.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import sqlite3
import string
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from threadloom import db
from threadloom.errors import NotFoundError, ValidationError

if TYPE_CHECKING:
    from threadloom.db import EventRow, Store, ThreadRow, VersionHistoryRow

log = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits
_CHILD_SUFFIX_RE = re.compile(r"^\d+$")


@dataclass(frozen=True)
class ThreadEvent:
    id: str
    thread_id: str
    type: str
    timestamp: str
    data: Any

    @classmethod
    def from_row(cls, row: EventRow) -> ThreadEvent:
        return cls(
            id=row["id"],
            thread_id=row["thread_id"],
            type=row["type"],
            timestamp=row["timestamp"],
            data=json.loads(row["data"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "type": self.type,
            "timestamp": self.timestamp,
            "data": self.data,
        }


@dataclass
class Thread:
    id: str
    created_at: str
    updated_at: str
    session_id: str | None = None
    project_id: str | None = None
    metadata: dict[str, Any] | None = None
    events: list[ThreadEvent] = field(default_factory=list)
    # Thread actually read when ``id`` is redirected to a compacted version.
    version_id: str | None = None

    @classmethod
    def from_row(cls, row: ThreadRow, events: list[ThreadEvent]) -> Thread:
        return cls(
            id=row["id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            session_id=row.get("session_id"),
            project_id=row.get("project_id"),
            metadata=json.loads(row["metadata"]) if row.get("metadata") else None,
            events=events,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "version_id": self.version_id,
            "session_id": self.session_id,
            "project_id": self.project_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "metadata": self.metadata,
            "events": [event.to_dict() for event in self.events],
        }


@dataclass(frozen=True)
class VersionHistoryEntry:
    id: int
    canonical_id: str
    version_id: str
    created_at: str
    reason: str | None

    @classmethod
    def from_row(cls, row: VersionHistoryRow) -> VersionHistoryEntry:
        return cls(
            id=row["id"],
            canonical_id=row["canonical_id"],
            version_id=row["version_id"],
            created_at=row["created_at"],
            reason=row["reason"],
        )


class CompactionStrategy(Protocol):
    def compact(self, events: Sequence[ThreadEvent]) -> list[ThreadEvent]: ...


def generate_thread_id(now: datetime | None = None) -> str:
    """``tl_YYYYMMDD_xxxxxx`` with a random base36 suffix."""
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%d")
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"tl_{stamp}_{suffix}"


def generate_event_id() -> str:
    return db.new_id("evt_")


def next_delegate_id(parent_id: str, existing: Sequence[str]) -> str:
    """``<parent>.<n>`` where n is one past the highest immediate child."""
    prefix = f"{parent_id}."
    highest = 0
    for thread_id in existing:
        suffix = thread_id[len(prefix) :] if thread_id.startswith(prefix) else ""
        if _CHILD_SUFFIX_RE.match(suffix):
            highest = max(highest, int(suffix))
    return f"{prefix}{highest + 1}"


class ThreadStore:
    """Append, replay, version and compact threads on top of a :class:`Store`."""

    def __init__(
        self,
        store: Store,
        *,
        keep_last_shadows: int = 3,
        strategy: CompactionStrategy | None = None,
    ) -> None:
        if keep_last_shadows < 1:
            raise ValidationError("keep_last_shadows must be at least 1", "keep_last_shadows")
        self.store = store
        self.keep_last_shadows = keep_last_shadows
        if strategy is None:
            from threadloom.compaction import SummarizeStrategy

            strategy = SummarizeStrategy()
        self.strategy = strategy
        # Delegate ids handed out while the store is disabled, per parent.
        self._offline_delegates: dict[str, list[str]] = {}

    # -- threads --

    def create_thread(
        self,
        thread_id: str | None = None,
        *,
        session_id: str | None = None,
        project_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Thread:
        thread_id = thread_id or generate_thread_id()
        now = db.utcnow()

        def _create(conn: sqlite3.Connection) -> None:
            if db.thread_exists(conn, thread_id):
                raise ValidationError(f"Thread '{thread_id}' already exists", "thread_id")
            db.insert_thread(
                conn,
                thread_id=thread_id,
                created_at=now,
                updated_at=now,
                session_id=session_id,
                project_id=project_id,
                metadata=metadata,
            )

        self.store.write(_create)
        return Thread(
            id=thread_id,
            created_at=now,
            updated_at=now,
            session_id=session_id,
            project_id=project_id,
            metadata=metadata,
        )

    def create_delegate_thread_for(self, parent_id: str) -> Thread:
        """Create ``<parent>.<n>`` inheriting the parent's session and project."""
        now = db.utcnow()

        def _create(conn: sqlite3.Connection) -> Thread:
            parent = db.get_thread(conn, parent_id)
            if parent is None:
                raise NotFoundError("thread", parent_id)
            existing = db.list_thread_ids_with_prefix(conn, f"{parent_id}.")
            delegate_id = next_delegate_id(parent_id, existing)
            db.insert_thread(
                conn,
                thread_id=delegate_id,
                created_at=now,
                updated_at=now,
                session_id=parent["session_id"],
                project_id=parent["project_id"],
            )
            return Thread(
                id=delegate_id,
                created_at=now,
                updated_at=now,
                session_id=parent["session_id"],
                project_id=parent["project_id"],
            )

        if not self.store.available:
            issued = self._offline_delegates.setdefault(parent_id, [])
            issued.append(next_delegate_id(parent_id, issued))
            return Thread(id=issued[-1], created_at=now, updated_at=now)
        return self.store.write(_create)

    def get_current_version(self, canonical_id: str) -> str | None:
        return self.store.read(lambda conn: db.get_current_version(conn, canonical_id), None)

    def load(self, thread_id: str) -> Thread | None:
        """Replay a thread. Returns None when it does not exist."""

        def _load(conn: sqlite3.Connection) -> Thread | None:
            version_id = db.get_current_version(conn, thread_id)
            target_id = version_id or thread_id
            row = db.get_thread(conn, target_id)
            if row is None:
                return None
            events = [ThreadEvent.from_row(r) for r in db.list_events(conn, target_id)]
            thread = Thread.from_row(row, events)
            if version_id is not None:
                thread.id = thread_id
                thread.version_id = version_id
            return thread

        return self.store.read(_load, None)

    def list_threads(self, *, session_id: str | None = None) -> list[db.ThreadRow]:
        return self.store.read(lambda conn: db.list_threads(conn, session_id=session_id), [])

    def get_latest_thread_id(self) -> str | None:
        return self.store.read(db.get_latest_thread_id, None)

    # -- events --

    def append(
        self, thread_id: str, event_type: str, data: Any, *, timestamp: str | None = None
    ) -> ThreadEvent:
        """Append one event, following the version pointer if there is one.

        The thread must already exist. ``updated_at`` is bumped on both the
        written thread and the canonical id.
        """
        if not event_type:
            raise ValidationError("Event type is required", "type")
        event_id = generate_event_id()
        timestamp = timestamp or db.utcnow()

        def _append(conn: sqlite3.Connection) -> ThreadEvent:
            target_id = db.get_current_version(conn, thread_id) or thread_id
            if not db.thread_exists(conn, target_id):
                raise NotFoundError("thread", thread_id)
            db.insert_event(
                conn,
                event_id=event_id,
                thread_id=target_id,
                event_type=event_type,
                timestamp=timestamp,
                data=data,
            )
            db.touch_thread(conn, target_id, timestamp)
            if target_id != thread_id:
                db.touch_thread(conn, thread_id, timestamp)
            return ThreadEvent(event_id, target_id, event_type, timestamp, data)

        return self.store.write(
            _append, ThreadEvent(event_id, thread_id, event_type, timestamp, data)
        )

    def load_all_events(self, main_id: str) -> list[ThreadEvent]:
        """Events of a thread and all of its delegates, merged in timestamp order."""
        ids = [main_id, *self.get_delegate_threads_for(main_id)]
        events: list[ThreadEvent] = []
        for thread_id in ids:
            thread = self.load(thread_id)
            if thread is not None:
                events.extend(thread.events)
        return sorted(events, key=lambda event: event.timestamp)

    def get_delegate_threads_for(self, parent_id: str) -> list[str]:
        return self.store.read(
            lambda conn: db.list_thread_ids_with_prefix(conn, f"{parent_id}."), []
        )

    # -- versions --

    def create_version(self, canonical_id: str, version_id: str, reason: str | None) -> None:
        """Repoint *canonical_id* at *version_id* and record it in the history."""
        now = db.utcnow()

        def _create(conn: sqlite3.Connection) -> None:
            if not db.thread_exists(conn, version_id):
                raise NotFoundError("thread", version_id)
            db.set_current_version(conn, canonical_id, version_id, now)
            db.add_version_history(conn, canonical_id, version_id, now, reason)

        self.store.write(_create)

    def create_shadow_thread(
        self,
        canonical_id: str,
        events: Sequence[ThreadEvent],
        reason: str | None,
        *,
        shadow_id: str | None = None,
    ) -> Thread:
        """Write a shadow thread with *events* and point *canonical_id* at it, atomically.

        Events are copied with fresh ids; the originals stay with their own thread.
        """
        if not events:
            raise ValidationError("A shadow thread needs at least one event", "events")
        shadow_id = shadow_id or generate_thread_id()
        now = db.utcnow()
        copies = [
            ThreadEvent(generate_event_id(), shadow_id, event.type, event.timestamp, event.data)
            for event in events
        ]

        def _create(conn: sqlite3.Connection) -> Thread:
            canonical = db.get_thread(conn, canonical_id)
            session_id = canonical["session_id"] if canonical else None
            project_id = canonical["project_id"] if canonical else None
            db.insert_thread(
                conn,
                thread_id=shadow_id,
                created_at=now,
                updated_at=now,
                session_id=session_id,
                project_id=project_id,
            )
            for event in copies:
                db.insert_event(
                    conn,
                    event_id=event.id,
                    thread_id=shadow_id,
                    event_type=event.type,
                    timestamp=event.timestamp,
                    data=event.data,
                )
            db.set_current_version(conn, canonical_id, shadow_id, now)
            db.add_version_history(conn, canonical_id, shadow_id, now, reason)
            return Thread(
                id=shadow_id,
                created_at=now,
                updated_at=now,
                session_id=session_id,
                project_id=project_id,
                events=copies,
            )

        shadow = self.store.write(_create, Thread(shadow_id, now, now, events=copies))
        log.info(
            "Created shadow thread %s for %s with %d events", shadow_id, canonical_id, len(copies)
        )
        return shadow

    def compact(self, thread_id: str, reason: str = "Manual compaction") -> Thread:
        """Summarize the current history into a new shadow, then prune old shadows."""
        canonical_id = self.get_canonical_id(thread_id)
        thread = self.load(canonical_id)
        if thread is None:
            raise NotFoundError("thread", thread_id)
        compacted = self.strategy.compact(thread.events)
        if not compacted:
            raise ValidationError(f"Thread '{thread_id}' has no events to compact", "thread_id")
        shadow = self.create_shadow_thread(canonical_id, compacted, reason)
        self.cleanup_old_shadows(canonical_id)
        return shadow

    def get_canonical_id(self, thread_id: str) -> str:
        """The canonical id behind *thread_id*; a plain thread is its own canonical."""

        def _canonical(conn: sqlite3.Connection) -> str:
            if db.get_current_version(conn, thread_id) is not None:
                return thread_id
            return db.find_canonical_id_for_version(conn, thread_id) or thread_id

        return self.store.read(_canonical, thread_id)

    def find_canonical_id_for_version(self, version_id: str) -> str | None:
        return self.store.read(lambda conn: db.find_canonical_id_for_version(conn, version_id), None)

    def get_version_history(self, canonical_id: str) -> list[VersionHistoryEntry]:
        """Compactions of *canonical_id*, newest first. Empty if never compacted."""
        rows = self.store.read(lambda conn: db.list_version_history(conn, canonical_id), [])
        return [VersionHistoryEntry.from_row(row) for row in rows]

    def cleanup_old_shadows(self, canonical_id: str, keep_last: int | None = None) -> list[str]:
        """Delete all but the *keep_last* most recent versions of *canonical_id*.

        Recency follows history insertion order. The current pointer target
        always survives. Returns the deleted version ids.
        """
        keep_last = self.keep_last_shadows if keep_last is None else keep_last
        if keep_last < 1:
            raise ValidationError("keep_last must be at least 1", "keep_last")

        def _cleanup(conn: sqlite3.Connection) -> tuple[list[str], int]:
            current = db.get_current_version(conn, canonical_id)
            ordered: list[str] = []
            for row in db.list_version_history(conn, canonical_id):
                if row["version_id"] not in ordered:
                    ordered.append(row["version_id"])
            keep = set(ordered[:keep_last])
            if current is not None:
                keep.add(current)
            removed: list[str] = []
            removed_events = 0
            for version_id in ordered:
                if version_id in keep or version_id == canonical_id:
                    continue
                removed_events += db.delete_thread(conn, version_id)
                db.delete_version_history(conn, canonical_id, version_id)
                removed.append(version_id)
            return removed, removed_events

        removed, removed_events = self.store.write(_cleanup, ([], 0))
        if removed:
            log.info(
                "Cleaned up %d old shadow(s) of %s (%d events removed)",
                len(removed),
                canonical_id,
                removed_events,
            )
        return removed

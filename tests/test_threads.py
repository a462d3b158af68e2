"""Tests for the thread store: replay, versions, shadows and delegates."""

import logging
import re
import sqlite3

import pytest

from threadloom.db import Store
from threadloom.errors import NotFoundError, ValidationError
from threadloom.threads import (
    ThreadEvent,
    ThreadStore,
    generate_thread_id,
    next_delegate_id,
)


def _seed(thread_store: ThreadStore, thread_id: str, count: int) -> None:
    for i in range(count):
        thread_store.append(thread_id, "USER_MESSAGE", f"message {i}")


def test_generate_thread_id_format():
    assert re.fullmatch(r"tl_\d{8}_[a-z0-9]{6}", generate_thread_id())


def test_next_delegate_id_counts_only_immediate_children():
    assert next_delegate_id("tl_a", []) == "tl_a.1"
    assert next_delegate_id("tl_a", ["tl_a.1", "tl_a.3", "tl_a.3.7", "tl_a.x"]) == "tl_a.4"


def test_load_missing_thread_returns_none(thread_store):
    assert thread_store.load("tl_nope") is None


def test_append_requires_existing_thread(thread_store):
    with pytest.raises(NotFoundError):
        thread_store.append("tl_nope", "USER_MESSAGE", "hi")


def test_create_thread_rejects_duplicates(thread_store):
    thread_store.create_thread("tl_dup")
    with pytest.raises(ValidationError):
        thread_store.create_thread("tl_dup")


def test_append_bumps_updated_at_and_replay_is_stable(thread_store):
    created = thread_store.create_thread("tl_main")
    thread_store.append("tl_main", "USER_MESSAGE", "hello")
    thread_store.append("tl_main", "AGENT_MESSAGE", {"text": "hi", "tokens": 2})

    first = thread_store.load("tl_main")
    second = thread_store.load("tl_main")
    assert [e.to_dict() for e in first.events] == [e.to_dict() for e in second.events]
    assert [e.type for e in first.events] == ["USER_MESSAGE", "AGENT_MESSAGE"]
    assert first.events[1].data == {"text": "hi", "tokens": 2}
    assert first.updated_at > created.updated_at


def test_events_with_equal_timestamps_keep_insertion_order(thread_store):
    thread_store.create_thread("tl_ties")
    for i in range(5):
        thread_store.append("tl_ties", "USER_MESSAGE", i, timestamp="2025-01-01T00:00:00.000000Z")
    assert [e.data for e in thread_store.load("tl_ties").events] == [0, 1, 2, 3, 4]


def test_version_indirection_is_transparent(thread_store):
    thread_store.create_thread("tl_canon")
    _seed(thread_store, "tl_canon", 3)
    thread_store.create_thread("tl_v1")
    thread_store.append("tl_v1", "LOCAL_SYSTEM_MESSAGE", "summary")

    thread_store.create_version("tl_canon", "tl_v1", "compaction")

    via_canonical = thread_store.load("tl_canon")
    direct = thread_store.load("tl_v1")
    assert via_canonical.id == "tl_canon"
    assert via_canonical.version_id == "tl_v1"
    assert [e.id for e in via_canonical.events] == [e.id for e in direct.events]
    assert [e.data for e in direct.events] == ["summary"]


def test_append_to_canonical_writes_to_current_version(thread_store):
    thread_store.create_thread("tl_canon")
    thread_store.create_thread("tl_v1")
    thread_store.create_version("tl_canon", "tl_v1", "compaction")

    event = thread_store.append("tl_canon", "USER_MESSAGE", "after compaction")

    assert event.thread_id == "tl_v1"
    assert [e.data for e in thread_store.load("tl_canon").events] == ["after compaction"]


def test_create_version_requires_version_thread(thread_store):
    thread_store.create_thread("tl_canon")
    with pytest.raises(NotFoundError):
        thread_store.create_version("tl_canon", "tl_missing", "nope")
    assert thread_store.get_current_version("tl_canon") is None


def test_version_history_empty_without_compaction(thread_store):
    thread_store.create_thread("tl_plain")
    assert thread_store.get_version_history("tl_plain") == []
    assert thread_store.get_canonical_id("tl_plain") == "tl_plain"


def test_shadow_thread_transaction_is_atomic(thread_store):
    thread_store.create_thread("tl_canon")
    _seed(thread_store, "tl_canon", 2)
    original = thread_store.load("tl_canon").events

    shadow = thread_store.create_shadow_thread("tl_canon", original, "manual", shadow_id="tl_s1")

    assert thread_store.get_current_version("tl_canon") == "tl_s1"
    loaded = thread_store.load("tl_canon")
    assert [e.data for e in loaded.events] == ["message 0", "message 1"]
    # fresh ids, so the originals still belong to the canonical thread
    assert {e.id for e in shadow.events}.isdisjoint({e.id for e in original})
    history = thread_store.get_version_history("tl_canon")
    assert [(h.version_id, h.reason) for h in history] == [("tl_s1", "manual")]
    assert thread_store.get_canonical_id("tl_s1") == "tl_canon"
    assert thread_store.find_canonical_id_for_version("tl_s1") == "tl_canon"


def test_shadow_thread_rejects_empty_history(thread_store):
    thread_store.create_thread("tl_canon")
    with pytest.raises(ValidationError):
        thread_store.create_shadow_thread("tl_canon", [], "empty")
    assert thread_store.get_current_version("tl_canon") is None


def test_shadow_thread_failure_leaves_no_pointer(thread_store):
    thread_store.create_thread("tl_canon")
    thread_store.create_thread("tl_taken")
    events = [ThreadEvent("evt_x", "tl_canon", "USER_MESSAGE", "2025-01-01T00:00:00.000000Z", "x")]
    with pytest.raises(sqlite3.IntegrityError):
        thread_store.create_shadow_thread("tl_canon", events, "clash", shadow_id="tl_taken")
    assert thread_store.get_current_version("tl_canon") is None
    assert thread_store.get_version_history("tl_canon") == []


def test_cleanup_keeps_last_three_of_five_compactions(thread_store, caplog):
    thread_store.create_thread("tl_canon")
    _seed(thread_store, "tl_canon", 4)
    shadows = []
    for i in range(5):
        events = thread_store.load("tl_canon").events
        shadows.append(
            thread_store.create_shadow_thread(
                "tl_canon", events, f"compaction {i}", shadow_id=f"tl_s{i}"
            ).id
        )

    with caplog.at_level(logging.INFO, logger="threadloom.threads"):
        removed = thread_store.cleanup_old_shadows("tl_canon", keep_last=3)

    assert sorted(removed) == ["tl_s0", "tl_s1"]
    history = thread_store.get_version_history("tl_canon")
    assert [h.version_id for h in history] == ["tl_s4", "tl_s3", "tl_s2"]
    for version_id in ("tl_s2", "tl_s3", "tl_s4"):
        assert len(thread_store.load(version_id).events) == 4
    for version_id in ("tl_s0", "tl_s1"):
        assert thread_store.load(version_id) is None
    assert thread_store.get_current_version("tl_canon") == "tl_s4"
    assert "Cleaned up 2 old shadow(s)" in caplog.text


def test_cleanup_never_deletes_current_target(thread_store):
    thread_store.create_thread("tl_canon")
    _seed(thread_store, "tl_canon", 1)
    events = thread_store.load("tl_canon").events
    for i in range(3):
        thread_store.create_shadow_thread("tl_canon", events, "c", shadow_id=f"tl_s{i}")
    # point back at the oldest shadow; it is now current and must survive
    thread_store.create_version("tl_canon", "tl_s0", "rollback")

    removed = thread_store.cleanup_old_shadows("tl_canon", keep_last=1)

    assert removed == ["tl_s2", "tl_s1"]
    assert thread_store.load("tl_canon").version_id == "tl_s0"


def test_cleanup_rejects_non_positive_keep_last(thread_store):
    with pytest.raises(ValidationError):
        thread_store.cleanup_old_shadows("tl_canon", keep_last=0)


def test_compact_builds_shadow_and_prunes(store):
    thread_store = ThreadStore(store, keep_last_shadows=2)
    thread_store.create_thread("tl_canon")
    for i in range(15):
        thread_store.append("tl_canon", "METADATA", {"step": i})

    for _ in range(3):
        thread_store.compact("tl_canon", "too long")

    loaded = thread_store.load("tl_canon")
    assert loaded.version_id is not None
    assert len(thread_store.get_version_history("tl_canon")) == 2
    assert loaded.events[0].type == "LOCAL_SYSTEM_MESSAGE"


def test_compact_missing_thread(thread_store):
    with pytest.raises(NotFoundError):
        thread_store.compact("tl_missing")


def test_delegate_threads(thread_store):
    thread_store.create_thread("tl_parent", session_id="sess_1")
    first = thread_store.create_delegate_thread_for("tl_parent")
    second = thread_store.create_delegate_thread_for("tl_parent")
    nested = thread_store.create_delegate_thread_for(first.id)

    assert (first.id, second.id, nested.id) == ("tl_parent.1", "tl_parent.2", "tl_parent.1.1")
    assert first.session_id == "sess_1"
    assert thread_store.get_delegate_threads_for("tl_parent") == [
        "tl_parent.1",
        "tl_parent.1.1",
        "tl_parent.2",
    ]
    with pytest.raises(NotFoundError):
        thread_store.create_delegate_thread_for("tl_missing")


def test_load_all_events_merges_delegates(thread_store):
    thread_store.create_thread("tl_parent")
    delegate = thread_store.create_delegate_thread_for("tl_parent")
    thread_store.append("tl_parent", "USER_MESSAGE", "a", timestamp="2025-01-01T00:00:01.000000Z")
    thread_store.append(delegate.id, "USER_MESSAGE", "b", timestamp="2025-01-01T00:00:02.000000Z")
    thread_store.append("tl_parent", "USER_MESSAGE", "c", timestamp="2025-01-01T00:00:03.000000Z")

    assert [e.data for e in thread_store.load_all_events("tl_parent")] == ["a", "b", "c"]


def test_disabled_store_is_fail_open():
    thread_store = ThreadStore(Store(None))
    thread = thread_store.create_thread("tl_mem")
    event = thread_store.append("tl_mem", "USER_MESSAGE", "kept nowhere")

    assert thread.id == "tl_mem"
    assert event.data == "kept nowhere"
    assert thread_store.load("tl_mem") is None
    assert thread_store.get_version_history("tl_mem") == []
    assert thread_store.get_delegate_threads_for("tl_mem") == []


def test_disabled_store_hands_out_distinct_delegate_ids():
    thread_store = ThreadStore(Store(None))
    first = thread_store.create_delegate_thread_for("tl_mem")
    second = thread_store.create_delegate_thread_for("tl_mem")
    other = thread_store.create_delegate_thread_for("tl_else")

    assert (first.id, second.id, other.id) == ("tl_mem.1", "tl_mem.2", "tl_else.1")


def test_list_threads_by_session_and_latest(thread_store):
    thread_store.create_thread("tl_a", session_id="sess_1")
    thread_store.create_thread("tl_b", session_id="sess_2")
    thread_store.append("tl_a", "USER_MESSAGE", "most recent")

    assert [row["id"] for row in thread_store.list_threads(session_id="sess_1")] == ["tl_a"]
    assert {row["id"] for row in thread_store.list_threads()} == {"tl_a", "tl_b"}
    assert thread_store.get_latest_thread_id() == "tl_a"

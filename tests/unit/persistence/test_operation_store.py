"""
trunkline — unit tests for the operation state store

File: tests/unit/persistence/test_operation_store.py
Last updated: 2026-10-19

Purpose
- Validate document creation, batched reads, compare-and-set updates and the
  segmented event log.

What this test file should cover
- A rejected ``apply`` leaves the document byte-identical and logs nothing.
- Event sequence numbers stay monotonic across rotation.
- Corrupt documents surface as ``StateStoreError``.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from trunkline.domain.errors import StateStoreError, UnknownOperationError, ValidationError
from trunkline.domain.models import Phase
from trunkline.persistence.operation_store import DocumentChange, EventLog, OperationStore

if TYPE_CHECKING:
    from pathlib import Path

    from tests import SteppingClock


def test_create_writes_document_and_created_event(store: OperationStore) -> None:
    operation = store.create("auth", op_type="feature", external_ref="wk-1", branch="feature/auth")

    assert operation.phase is Phase.INIT
    assert store.exists("auth")
    assert store.names() == ["auth"]
    assert store.load("auth") == operation

    events = store.read_events("auth")
    assert [(record.seq, record.event) for record in events] == [(1, "operation:created")]
    assert events[0].detail == "type=feature"


def test_create_rejects_live_duplicate_but_allows_recreating_terminal(
    store: OperationStore,
) -> None:
    first = store.create("auth", op_type="feature")
    with pytest.raises(ValidationError, match="already exists"):
        store.create("auth", op_type="fix")

    store.bulk_write("auth", {"phase": Phase.CANCELLED})
    second = store.create("auth", op_type="fix")
    assert second.created_at > first.created_at
    assert store.load("auth").type.value == "fix"


def test_exists_is_false_for_invalid_names(store: OperationStore) -> None:
    assert not store.exists("../escape")
    assert not store.exists("missing")


def test_batched_read_returns_fields_in_request_order(store: OperationStore) -> None:
    store.create("auth", op_type="feature", external_ref="wk-9")

    phase, ref, merge_commit = store.read("auth", "phase", "external_ref", "merge_commit")
    assert (phase, ref, merge_commit) == ("init", "wk-9", None)

    with pytest.raises(ValidationError, match="unknown operation fields"):
        store.read("auth", "nonsense")


def test_bulk_write_updates_fields_and_timestamp(store: OperationStore) -> None:
    created = store.create("auth", op_type="feature")

    document = store.bulk_write("auth", {"held": True, "session": "tmux-auth"})
    loaded = store.load("auth")

    assert document["held"] is True
    assert loaded.session == "tmux-auth"
    assert loaded.updated_at > created.updated_at


def test_bulk_write_rejects_values_that_break_the_schema(store: OperationStore) -> None:
    store.create("auth", op_type="feature")
    before = store.document_path("auth").read_bytes()

    with pytest.raises(ValidationError, match="rejected update"):
        store.bulk_write("auth", {"phase": "blocked"})
    assert store.document_path("auth").read_bytes() == before


def test_rejected_apply_leaves_document_byte_identical(store: OperationStore) -> None:
    store.create("auth", op_type="feature")
    path = store.document_path("auth")
    before = path.read_bytes()
    events_before = store.read_events("auth")

    document, change = store.apply("auth", lambda _doc: None)

    assert change is None
    assert document["phase"] == "init"
    assert path.read_bytes() == before
    assert store.read_events("auth") == events_before


def test_apply_writes_updates_and_events_together(store: OperationStore) -> None:
    store.create("auth", op_type="feature")

    _, change = store.apply(
        "auth",
        lambda _doc: DocumentChange(
            updates={"phase": Phase.PLANNED, "plan_file": "plan.md"},
            events=(("plan:created", "plan.md"),),
        ),
    )

    assert change is not None
    assert store.load("auth").plan_file == "plan.md"
    assert [record.event for record in store.read_events("auth")] == [
        "operation:created",
        "plan:created",
    ]


def test_unknown_operation_raises(store: OperationStore) -> None:
    with pytest.raises(UnknownOperationError):
        store.load("ghost")
    with pytest.raises(UnknownOperationError):
        store.read_events("ghost")
    with pytest.raises(UnknownOperationError):
        store.append_event("ghost", "x:y", "detail")


def test_corrupt_document_raises_state_store_error(store: OperationStore) -> None:
    store.create("auth", op_type="feature")
    store.document_path("auth").write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError, match="invalid JSON"):
        store.load("auth")


def test_document_that_parses_but_violates_schema_is_corrupt(store: OperationStore) -> None:
    store.create("auth", op_type="feature")
    path = store.document_path("auth")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["phase"] = "exploded"
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(StateStoreError, match="corrupt operation document"):
        store.load("auth")


def test_event_log_rotates_and_keeps_sequence_monotonic(
    state_dir: Path, clock: SteppingClock
) -> None:
    store = OperationStore(
        state_dir, clock=clock, event_log_max_bytes=200, event_log_keep_segments=2
    )
    store.create("auth", op_type="feature")
    for index in range(30):
        store.append_event("auth", "hold:set", f"detail number {index}")

    log = store.event_log("auth")
    segments = log.segments()
    assert len(segments) == 3
    assert segments[-1] == log.current
    assert not log.segment(3).exists()

    records = store.read_events("auth")
    seqs = [record.seq for record in records]
    assert seqs == sorted(seqs)
    assert seqs[-1] == 31
    assert len(seqs) < 31

    tail = store.read_events("auth", limit=3)
    assert [record.seq for record in tail] == [29, 30, 31]


def test_event_log_skips_garbage_lines(tmp_path: Path, clock: SteppingClock) -> None:
    log = EventLog(tmp_path / "logs")
    log.append("a:b", "first", now=clock())
    with log.current.open("a", encoding="utf-8") as handle:
        handle.write("garbage line\n")
    log.append("a:c", "second", now=clock())

    assert [record.seq for record in log.records()] == [1, 2]


def test_event_log_rejects_invalid_bounds(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        EventLog(tmp_path, max_bytes=0)
    with pytest.raises(ValueError):
        EventLog(tmp_path, keep_segments=0)

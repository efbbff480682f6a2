"""
trunkline — unit tests for the merge queue store

File: tests/unit/persistence/test_queue_store.py
Last updated: 2026-10-19

Purpose
- Validate enqueue/claim/status/removal semantics of the queue document.

What this test file should cover
- Enqueue is a no-op for active entries and a reset for inactive ones.
- At most one entry is ever ``processing``, across any sequence of mutations and across
  processes contending for the queue lock.
- Corrupt or unsupported queue files raise ``StateStoreError``.
"""

from __future__ import annotations

import hashlib
import json
import shutil
import subprocess
import sys
import textwrap
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from trunkline.domain.errors import (
    LockUnavailableError,
    QueueInvariantError,
    StateStoreError,
    UnknownQueueEntryError,
    ValidationError,
)
from trunkline.domain.models import EntryKind, QueueStatus
from trunkline.persistence.locks import FileLock
from trunkline.persistence.queue_store import EnqueueAction, QueueStore

if TYPE_CHECKING:
    from pathlib import Path

    from tests import SteppingClock


def test_enqueue_adds_then_reports_already_queued(queue: QueueStore) -> None:
    first = queue.enqueue("feature/auth", kind=EntryKind.BRANCH, priority=2)
    second = queue.enqueue("feature/auth", kind=EntryKind.BRANCH, priority=0)

    assert first.action is EnqueueAction.ADDED
    assert second.action is EnqueueAction.ALREADY_QUEUED
    assert second.entry.priority == 2
    assert len(queue.snapshot().entries) == 1


def test_enqueue_of_terminal_entry_resets_it_to_pending(queue: QueueStore) -> None:
    queue.enqueue("auth", kind=EntryKind.OPERATION, external_ref="wk-1")
    queue.set_status("auth", QueueStatus.FAILED, note="boom")

    result = queue.enqueue("auth", kind=EntryKind.OPERATION, priority=4)

    assert result.action is EnqueueAction.REENQUEUED
    assert result.entry.status is QueueStatus.PENDING
    assert result.entry.priority == 4
    assert result.entry.external_ref == "wk-1"
    assert result.entry.note is None


def test_pending_is_ordered_by_priority_then_age(queue: QueueStore) -> None:
    queue.enqueue("low-old", kind=EntryKind.BRANCH, priority=5)
    queue.enqueue("high-new", kind=EntryKind.BRANCH, priority=1)
    queue.enqueue("high-newer", kind=EntryKind.BRANCH, priority=1)

    pending = [entry.subject for entry in queue.snapshot().pending()]
    assert pending == ["high-new", "high-newer", "low-old"]


def test_claim_allows_a_single_processing_entry(queue: QueueStore) -> None:
    queue.enqueue("a", kind=EntryKind.BRANCH)
    queue.enqueue("b", kind=EntryKind.BRANCH)

    claimed = queue.claim("a")
    assert claimed is not None
    assert claimed.status is QueueStatus.PROCESSING
    assert queue.claim("b") is None
    assert queue.claim("a") is None

    with pytest.raises(QueueInvariantError):
        queue.set_status("b", QueueStatus.PROCESSING)
    assert queue.snapshot().processing() == claimed


def test_remove_refuses_processing_and_unknown_entries(queue: QueueStore) -> None:
    queue.enqueue("a", kind=EntryKind.BRANCH)
    queue.enqueue("b", kind=EntryKind.BRANCH)
    queue.claim("a")

    with pytest.raises(ValidationError, match="processing"):
        queue.remove("a")
    with pytest.raises(UnknownQueueEntryError):
        queue.remove("missing")

    removed = queue.remove("b")
    assert removed.subject == "b"
    assert queue.snapshot().get("b") is None


def test_recover_stuck_processing_resets_to_pending(queue: QueueStore) -> None:
    queue.enqueue("a", kind=EntryKind.BRANCH)
    queue.claim("a")

    assert queue.recover_stuck_processing() == ["a"]
    entry = queue.snapshot().get("a")
    assert entry is not None
    assert entry.status is QueueStatus.PENDING
    assert entry.note == "recovered"
    assert queue.recover_stuck_processing() == []


def test_history_lists_terminal_entries_newest_first(queue: QueueStore) -> None:
    for subject in ("a", "b", "c", "d"):
        queue.enqueue(subject, kind=EntryKind.BRANCH)
    queue.set_status("a", QueueStatus.COMPLETED)
    queue.set_status("b", QueueStatus.CONFLICT)
    queue.set_status("c", QueueStatus.FAILED)

    assert [entry.subject for entry in queue.history()] == ["c", "b", "a"]
    assert [entry.subject for entry in queue.history(limit=1)] == ["c"]


def test_transaction_is_rejected_before_write_when_two_would_process(
    queue: QueueStore,
) -> None:
    queue.enqueue("a", kind=EntryKind.BRANCH)
    queue.enqueue("b", kind=EntryKind.BRANCH)
    before = queue.path.read_bytes()

    with pytest.raises(QueueInvariantError), queue.transaction() as txn:
        for subject in ("a", "b"):
            entry = txn.require(subject)
            txn.put(entry.with_status(QueueStatus.PROCESSING, now=txn.now))

    assert queue.path.read_bytes() == before
    assert not queue.lock_path.exists()


def test_mutations_fail_while_another_process_holds_the_lock(
    queue: QueueStore,
) -> None:
    holder = FileLock(queue.lock_path, label="other")
    holder.acquire()
    try:
        with pytest.raises(LockUnavailableError):
            queue.enqueue("a", kind=EntryKind.BRANCH)
        assert queue.snapshot().entries == ()
    finally:
        holder.release()


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ("{broken", "invalid JSON"),
        ("[]", "root must be an object"),
        ('{"schema_version": 1}', "missing required keys"),
        ('{"schema_version": 99, "entries": []}', "unsupported queue schema"),
        ('{"schema_version": 1, "entries": {}}', "must be a list"),
    ],
)
def test_corrupt_queue_file_raises(queue: QueueStore, payload: str, message: str) -> None:
    queue.path.parent.mkdir(parents=True, exist_ok=True)
    queue.path.write_text(payload, encoding="utf-8")

    with pytest.raises(StateStoreError, match=message):
        queue.snapshot()


def test_duplicate_subjects_in_file_are_rejected(queue: QueueStore) -> None:
    queue.enqueue("a", kind=EntryKind.BRANCH)
    document = json.loads(queue.path.read_text(encoding="utf-8"))
    document["entries"].append(document["entries"][0])
    queue.path.write_text(json.dumps(document), encoding="utf-8")

    with pytest.raises(StateStoreError, match="duplicate"):
        queue.snapshot()


_SUBJECTS = st.sampled_from(["a", "b", "c"])
_STEPS = st.lists(
    st.tuples(
        st.sampled_from(["enqueue", "claim", "complete", "remove", "recover", "process"]),
        _SUBJECTS,
    ),
    max_size=25,
)


@given(steps=_STEPS)
@settings(
    max_examples=40,
    derandomize=True,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)
def test_property_at_most_one_entry_processing(
    steps: list[tuple[str, str]], tmp_path: Path, clock: SteppingClock
) -> None:
    digest = hashlib.sha1(repr(steps).encode("utf-8")).hexdigest()
    state_dir = tmp_path / "queues" / digest[:12]
    if state_dir.exists():
        shutil.rmtree(state_dir)
    store = QueueStore(state_dir, lock_attempts=1, clock=clock, sleep=lambda _s: None)

    for action, subject in steps:
        try:
            if action == "enqueue":
                store.enqueue(subject, kind=EntryKind.BRANCH)
            elif action == "claim":
                store.claim(subject)
            elif action == "complete":
                store.set_status(subject, QueueStatus.COMPLETED)
            elif action == "remove":
                store.remove(subject)
            elif action == "recover":
                store.recover_stuck_processing()
            else:
                store.set_status(subject, QueueStatus.PROCESSING)
        except ValidationError:
            pass
        processing = store.snapshot().with_status(QueueStatus.PROCESSING)
        assert len(processing) <= 1
        assert not store.lock_path.exists()


_CLAIM_WORKER = textwrap.dedent(
    """
    import sys
    import time

    from trunkline.domain.models import EntryKind, QueueStatus
    from trunkline.persistence.queue_store import QueueStore

    state_dir, subject, rounds = sys.argv[1], sys.argv[2], int(sys.argv[3])
    queue = QueueStore(state_dir, lock_attempts=12, lock_initial_delay_seconds=0.005)
    violations = 0
    for _ in range(rounds):
        queue.enqueue(subject, kind=EntryKind.BRANCH)
        for _ in range(4000):
            if queue.claim(subject) is not None:
                break
            time.sleep(0.002)
        else:
            sys.exit(f"never claimed {subject}")
        processing = queue.snapshot().with_status(QueueStatus.PROCESSING)
        if [entry.subject for entry in processing] != [subject]:
            violations += 1
        queue.set_status(subject, QueueStatus.COMPLETED)
    print(f"violations={violations}")
    """
)


def test_concurrent_processes_never_process_two_entries(state_dir: Path) -> None:
    subjects = [f"feature/w{index}" for index in range(4)]
    workers = [
        subprocess.Popen(
            [sys.executable, "-c", _CLAIM_WORKER, str(state_dir), subject, "5"],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        for subject in subjects
    ]
    for worker in workers:
        stdout, stderr = worker.communicate(timeout=180)
        assert worker.returncode == 0, stderr
        assert stdout.strip().splitlines()[-1] == "violations=0"

    queue = QueueStore(state_dir, lock_attempts=1)
    snapshot = queue.snapshot()
    assert sorted(entry.subject for entry in snapshot.entries) == subjects
    assert {entry.status for entry in snapshot.entries} == {QueueStatus.COMPLETED}
    assert not queue.lock_path.exists()

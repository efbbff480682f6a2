"""Event record line format tests."""

from __future__ import annotations

import json
from datetime import UTC, datetime

import pytest

from trunkline.domain.errors import ValidationError
from trunkline.domain.events import EventRecord, EventType


def test_event_record_line_is_canonical_json() -> None:
    record = EventRecord(
        seq=7,
        timestamp=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
        event=EventType.MERGE_COMPLETED.value,
        detail="abc123",
    )

    line = record.to_line()
    assert line == (
        '{"detail":"abc123","event":"merge:completed","seq":7,'
        '"ts":"2026-03-01T12:00:00.000000Z"}'
    )
    assert EventRecord.from_line(line) == record
    assert record.render() == "[2026-03-01T12:00:00.000000Z] merge:completed: abc123"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[]",
        json.dumps({"seq": 0, "event": "x", "ts": "2026-03-01T12:00:00Z"}),
        json.dumps({"seq": 1, "event": "", "ts": "2026-03-01T12:00:00Z"}),
        json.dumps({"seq": True, "event": "x", "ts": "2026-03-01T12:00:00Z"}),
    ],
)
def test_event_record_rejects_malformed_lines(raw: str) -> None:
    with pytest.raises(ValidationError):
        EventRecord.from_line(raw)


def test_event_names_use_category_colon_action() -> None:
    for event in EventType:
        category, _, action = event.value.partition(":")
        assert category and action, event

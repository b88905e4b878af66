"""Property-based tests for the sync state store.

Covers quarantine of corrupt state, merge-on-save, and timestamp comparison
across precision and offset formats.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st

from jobsync.errors import PersistenceError
from jobsync.sync.models import SyncKind
from jobsync.sync.state_store import FileStateStore, InMemoryStateStore

log = structlog.stdlib.get_logger()


def _formats(dt: datetime) -> list[str]:
    """The same instant written the ways the CRM writes it."""
    utc = dt.astimezone(timezone.utc)
    millis = utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}"
    return [
        millis + "+0000",
        millis + "Z",
        utc.isoformat(),
        utc.astimezone(timezone(timedelta(hours=2))).isoformat(),
    ]


@given(
    stored=st.datetimes(min_value=datetime(2020, 1, 1), max_value=datetime(2030, 1, 1)),
    delta_ms=st.integers(min_value=-5000, max_value=5000),
    stored_format=st.integers(min_value=0, max_value=3),
    candidate_format=st.integers(min_value=0, max_value=3),
)
@settings(max_examples=100)
def test_property_1_needs_update_compares_instants(
    stored: datetime, delta_ms: int, stored_format: int, candidate_format: int
):
    """Property 1: Timestamp comparison correctness.

    For any stored and candidate timestamp, needs_update is true exactly when
    the candidate instant is strictly later, regardless of precision or
    offset notation.
    """
    stored = stored.replace(microsecond=(stored.microsecond // 1000) * 1000, tzinfo=timezone.utc)
    candidate = stored + timedelta(milliseconds=delta_ms)

    store = InMemoryStateStore()
    store.record_modification_dates({"a1": _formats(stored)[stored_format]})

    result = store.needs_update("a1", _formats(candidate)[candidate_format])

    assert result is (candidate > stored)


def test_needs_update_sub_second_precision():
    """Millisecond and second precision of the same instant are equal."""
    store = InMemoryStateStore()
    store.record_modification_dates({"a1": "2024-05-01T10:00:00.000+0000"})

    assert store.needs_update("a1", "2024-05-01T10:00:00Z") is False
    assert store.needs_update("a1", "2024-05-01T10:00:00.500Z") is True
    assert store.needs_update("a1", "2024-05-01T09:59:59.999+0000") is False


def test_needs_update_without_stored_value_or_unparseable():
    store = InMemoryStateStore()
    store.record_modification_dates({"a1": "not a date"})

    assert store.needs_update("unknown", "2024-05-01T10:00:00Z") is True
    assert store.needs_update("a1", "2024-05-01T10:00:00Z") is True
    assert store.needs_update("unknown", None) is True


def test_corrupt_state_is_quarantined_and_defaults_loaded():
    store = InMemoryStateStore(payload="{not json")

    state = store.load()

    assert state.sync_count == 0
    assert state.entity_modification_dates == {}
    assert store.quarantined == ["{not json"]


def test_corrupt_state_file_is_renamed(tmp_path: Path):
    path = tmp_path / "sync-state.json"
    path.write_text("[1, 2", encoding="utf-8")

    store = FileStateStore(path)
    state = store.load()

    assert state.last_full_sync is None
    assert not path.exists()
    backups = list(tmp_path.glob("sync-state.json.corrupted.*"))
    assert len(backups) == 1
    assert backups[0].read_text(encoding="utf-8") == "[1, 2"


def test_undecodable_state_file_is_quarantined(tmp_path: Path):
    path = tmp_path / "sync-state.json"
    raw = b'{"syncCount": 1, "x": "\xff\xfe"}'
    path.write_bytes(raw)

    store = FileStateStore(path)
    state = store.load()

    assert state.sync_count == 0
    assert not path.exists()
    backups = list(tmp_path.glob("sync-state.json.corrupted.*"))
    assert len(backups) == 1
    assert backups[0].read_bytes() == raw

    store.record_modification_dates({"a1": "2024-05-01T10:00:00Z"})
    store.save()
    assert FileStateStore(path).load().entity_modification_dates == {
        "a1": "2024-05-01T10:00:00Z"
    }


def test_save_over_undecodable_file_keeps_current_dates(tmp_path: Path):
    path = tmp_path / "sync-state.json"
    store = FileStateStore(path)
    store.load()
    path.write_bytes(b"\xff\xfe not text")

    store.record_modification_dates({"a1": "2024-05-01T10:00:00Z"})
    store.save()

    persisted = json.loads(path.read_text(encoding="utf-8"))
    assert persisted["entityModificationDates"] == {"a1": "2024-05-01T10:00:00Z"}


def test_missing_state_file_loads_defaults(tmp_path: Path):
    store = FileStateStore(tmp_path / "missing" / "sync-state.json")

    state = store.load()

    assert state.sync_count == 0
    assert state.last_error is None


def test_save_merges_with_persisted_dates(tmp_path: Path):
    """Entries persisted by an earlier run survive a save by a later one."""
    path = tmp_path / "sync-state.json"

    first = FileStateStore(path)
    first.load()
    first.record_modification_dates({"a1": "2024-05-01T10:00:00Z", "a2": "2024-05-01T11:00:00Z"})
    first.save()

    second = FileStateStore(path)
    second.record_modification_dates({"a2": "2024-05-02T08:00:00Z", "a3": "2024-05-02T09:00:00Z"})
    second.save()

    persisted = json.loads(path.read_text(encoding="utf-8"))
    assert persisted["entityModificationDates"] == {
        "a1": "2024-05-01T10:00:00Z",
        "a2": "2024-05-02T08:00:00Z",
        "a3": "2024-05-02T09:00:00Z",
    }


def test_persisted_state_uses_camel_case_keys(tmp_path: Path):
    path = tmp_path / "sync-state.json"
    store = FileStateStore(path)
    store.load()
    store.record_success(SyncKind.FULL)
    store.save()

    persisted = json.loads(path.read_text(encoding="utf-8"))

    assert set(persisted) == {
        "lastFullSync",
        "lastIncrementalSync",
        "syncCount",
        "lastError",
        "entityModificationDates",
    }
    assert persisted["syncCount"] == 1
    assert FileStateStore(path).load().last_full_sync is not None


def test_record_error_keeps_modification_dates():
    store = InMemoryStateStore()
    store.record_modification_dates({"a1": "2024-05-01T10:00:00Z"})

    state = store.record_error(RuntimeError("source down"))

    assert state.last_error is not None
    assert state.last_error.message == "source down"
    assert state.last_error.error_id.startswith("error-")
    assert state.entity_modification_dates == {"a1": "2024-05-01T10:00:00Z"}


def test_record_success_clears_error_and_counts():
    store = InMemoryStateStore()
    store.record_error(RuntimeError("boom"))
    at = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    state = store.record_success(SyncKind.INCREMENTAL, at=at)

    assert state.last_error is None
    assert state.sync_count == 1
    assert state.last_incremental_sync == at
    assert state.last_sync == at


def test_reset_discards_persisted_dates():
    store = InMemoryStateStore()
    store.record_modification_dates({"a1": "2024-05-01T10:00:00Z"})
    store.save()

    store.reset()
    store.load()

    assert store.modification_dates() == {}


def test_write_failure_raises_persistence_error(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    store = FileStateStore(blocker / "sync-state.json")

    with pytest.raises(PersistenceError):
        store.save()

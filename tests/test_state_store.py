"""Tests for sync state persistence."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from tasksync.schemas.sync_state import RECENT_ERRORS_LIMIT, ErrorRecord, SyncState
from tasksync.services.state_store import SyncStateStore
from tasksync.sync.errors import ErrorKind


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_missing_file_loads_empty_state(tmp_path: Path):
    store = SyncStateStore(tmp_path / "missing.json")

    state = await store.load()

    assert state.task_map == {}
    assert state.sync_token is None


@pytest.mark.anyio
async def test_round_trip(tmp_path: Path):
    store = SyncStateStore(tmp_path / "nested" / "state.json")
    state = SyncState(
        task_map={"t1": "ev-1"},
        sync_token="tok",
        list_filter_signature="sig",
        last_sync_time=datetime(2025, 9, 1, tzinfo=timezone.utc),
        event_cache={"ev-1": {"id": "ev-1"}},
    )
    state.record_errors([ErrorRecord(kind=ErrorKind.PERMANENT, operation="insert", status=400)])

    await store.save(state)
    loaded = await store.load()

    assert loaded.task_map == {"t1": "ev-1"}
    assert loaded.sync_token == "tok"
    assert loaded.last_sync_time == state.last_sync_time
    assert loaded.recent_errors[0].kind is ErrorKind.PERMANENT
    assert loaded.event_cache == {"ev-1": {"id": "ev-1"}}
    assert not (tmp_path / "nested" / "state.json.tmp").exists()


@pytest.mark.anyio
async def test_corrupt_file_loads_empty_state(tmp_path: Path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    state = await SyncStateStore(path).load()

    assert state == SyncState()


@pytest.mark.anyio
async def test_invalid_shape_loads_empty_state(tmp_path: Path):
    path = tmp_path / "state.json"
    path.write_text('{"task_map": ["not", "a", "dict"]}', encoding="utf-8")

    state = await SyncStateStore(path).load()

    assert state.task_map == {}


def test_recent_errors_ring_keeps_newest_first():
    state = SyncState()
    state.record_errors(
        ErrorRecord(kind=ErrorKind.PERMANENT, operation="insert", task_id=f"a{i}") for i in range(40)
    )
    state.record_errors(
        ErrorRecord(kind=ErrorKind.PERMANENT, operation="insert", task_id=f"b{i}") for i in range(20)
    )

    assert len(state.recent_errors) == RECENT_ERRORS_LIMIT
    assert state.recent_errors[0].task_id == "b19"
    assert state.recent_errors[19].task_id == "b0"
    assert state.recent_errors[20].task_id == "a39"

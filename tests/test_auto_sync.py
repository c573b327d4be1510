"""Tests for the periodic auto-sync scheduler and the notice log."""

from __future__ import annotations

import asyncio
import logging

import pytest

from tasksync.schemas.sync import RunStatus, SyncSummary
from tasksync.services.auto_sync import AutoSyncScheduler
from tasksync.services.notifier import NoticeLog


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class DummyEngine:
    def __init__(self) -> None:
        self.is_running = False
        self.runs: list[bool] = []

    async def run(self, force: bool = False, *, manual: bool = True) -> SyncSummary:
        self.runs.append(manual)
        return SyncSummary(status=RunStatus.COMPLETED)


def _credential(value: bool):
    async def ensure() -> bool:
        return value

    return ensure


@pytest.mark.anyio
async def test_tick_runs_engine_unattended():
    engine = DummyEngine()
    scheduler = AutoSyncScheduler(engine, _credential(True), 15)  # type: ignore[arg-type]

    assert await scheduler.tick() is True
    assert engine.runs == [False]


@pytest.mark.anyio
async def test_tick_skips_while_running():
    engine = DummyEngine()
    engine.is_running = True
    scheduler = AutoSyncScheduler(engine, _credential(True), 15)  # type: ignore[arg-type]

    assert await scheduler.tick() is False
    assert engine.runs == []


@pytest.mark.anyio
async def test_tick_skips_without_credential():
    engine = DummyEngine()
    scheduler = AutoSyncScheduler(engine, _credential(False), 15)  # type: ignore[arg-type]

    assert await scheduler.tick() is False
    assert engine.runs == []


@pytest.mark.anyio
async def test_loop_waits_interval_and_shuts_down():
    engine = DummyEngine()
    waits: list[float] = []
    ticked = asyncio.Event()

    async def fake_sleep(seconds: float) -> None:
        waits.append(seconds)
        if len(waits) > 1:
            ticked.set()
            await asyncio.Event().wait()

    scheduler = AutoSyncScheduler(
        engine, _credential(True), 5, sleep=fake_sleep  # type: ignore[arg-type]
    )
    scheduler.start()
    await asyncio.wait_for(ticked.wait(), timeout=1)

    assert scheduler.is_active
    assert waits[0] == 300
    assert engine.runs == [False]

    await scheduler.shutdown()
    assert not scheduler.is_active


def test_notice_log_keeps_recent_and_logs(caplog):
    notices = NoticeLog(capacity=2)

    with caplog.at_level(logging.INFO, logger="tasksync.services.notifier"):
        notices.notify("one")
        notices.notify("two", "warning")
        notices.notify("three", "error")

    assert [n.message for n in notices.recent()] == ["two", "three"]
    assert [r.levelno for r in caplog.records] == [logging.INFO, logging.WARNING, logging.ERROR]

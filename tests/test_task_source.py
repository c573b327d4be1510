"""Tests for the JSON task source and task record schema."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from tasksync.schemas.tasks import TaskRecord
from tasksync.services.task_source import JsonTaskSource


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def test_task_record_accepts_camel_and_snake_case():
    camel = TaskRecord.model_validate(
        {"id": "a", "startDate": "2025-08-31", "timeWindowEnd": "16:00", "isCompleted": True}
    )
    snake = TaskRecord.model_validate(
        {"id": "a", "start_date": "2025-08-31", "time_window_end": "16:00", "is_completed": True}
    )

    assert camel == snake
    task = camel.to_task()
    assert task.start_date == "2025-08-31"
    assert task.time_window_end == "16:00"
    assert task.is_completed is True


def test_task_record_treats_null_lists_as_empty():
    record = TaskRecord.model_validate({"id": "a", "tags": None, "notes": None})
    assert record.tags == []
    assert record.notes == []


@pytest.mark.anyio
async def test_reads_wrapped_list_and_skips_bad_entries(tmp_path: Path):
    path = tmp_path / "tasks.json"
    path.write_text(
        json.dumps(
            {
                "tasks": [
                    {"id": "t1", "summary": "One", "startDate": "2025-08-31", "dueDate": "2025-08-31"},
                    {"summary": "no id"},
                    {"id": "t1", "summary": "duplicate"},
                    {"id": "t2", "summary": "Two", "tags": ["home"]},
                ]
            }
        ),
        encoding="utf-8",
    )

    tasks = await JsonTaskSource(path).get_tasks()

    assert [task.id for task in tasks] == ["t1", "t2"]
    assert tasks[0].summary == "One"
    assert tasks[1].tags == ["home"]


@pytest.mark.anyio
async def test_reads_bare_list(tmp_path: Path):
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps([{"id": "t1"}]), encoding="utf-8")

    tasks = await JsonTaskSource(path).get_tasks()

    assert [task.id for task in tasks] == ["t1"]


@pytest.mark.anyio
async def test_missing_or_broken_file_yields_no_tasks(tmp_path: Path):
    assert await JsonTaskSource(tmp_path / "absent.json").get_tasks() == []

    broken = tmp_path / "broken.json"
    broken.write_text("[", encoding="utf-8")
    assert await JsonTaskSource(broken).get_tasks() == []

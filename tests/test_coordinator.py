from __future__ import annotations

import asyncio
import re
from datetime import UTC, date, datetime

import pytest

from fakes import FakeWorker, make_lesson
from studio_refresh.config import RefreshConfig
from studio_refresh.coordinator import BatchCoordinator, format_error
from studio_refresh.errors import ScrapeStructureError, StoreWriteError
from studio_refresh.lesson_store import LessonStore
from studio_refresh.models import Location, TaskStatus
from studio_refresh.task_store import TaskStore

LOCATIONS = [Location(code="gnz", name="銀座"), Location(code="sby", name="渋谷")]
START = date(2025, 7, 17)
# 2025-07-17 09:00 in Tokyo
NOW = datetime(2025, 7, 17, 0, 0, tzinfo=UTC)


def _coordinator(
    task_store: TaskStore,
    lesson_store: LessonStore,
    config: RefreshConfig,
    worker: FakeWorker | None = None,
) -> BatchCoordinator:
    return BatchCoordinator(
        task_store, lesson_store, worker or FakeWorker(), config, clock=lambda: NOW
    )


def _drain(coordinator: BatchCoordinator, batch_id: str) -> int:
    calls = 0
    while True:
        calls += 1
        if not asyncio.run(coordinator.process_one_task(batch_id)):
            return calls


def test_initialize_batch_creates_one_task_per_location_day(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    coordinator = _coordinator(task_store, lesson_store, config)

    batch_id = coordinator.initialize_batch(LOCATIONS, horizon_days=3)

    assert re.fullmatch(r"2025-07-17-[0-9a-f]{8}", batch_id)
    tasks = task_store.list_tasks(batch_id)
    assert len(tasks) == 6
    assert {task.target_date for task in tasks} == {
        date(2025, 7, 17),
        date(2025, 7, 18),
        date(2025, 7, 19),
    }
    assert all(task.status is TaskStatus.PENDING for task in tasks)
    batch = task_store.get_batch(batch_id)
    assert (batch.total_tasks, batch.horizon_days, batch.start_date) == (6, 3, START)


def test_initialize_batch_clears_the_refresh_scope_first(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    lesson_store.upsert_many("gnz", START, [make_lesson("gnz", START)])
    lesson_store.upsert_many("ikb", START, [make_lesson("ikb", START)])
    yesterday = date(2025, 7, 16)
    lesson_store.upsert_many("ikb", yesterday, [make_lesson("ikb", yesterday)])
    coordinator = _coordinator(task_store, lesson_store, config)

    coordinator.initialize_batch(LOCATIONS, horizon_days=2)

    remaining = lesson_store.query_all()
    assert [(lesson.location_code, lesson.lesson_date) for lesson in remaining] == [
        ("ikb", START)
    ]


def test_initialize_batch_can_keep_lessons(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    lesson_store.upsert_many("gnz", START, [make_lesson("gnz", START)])
    coordinator = _coordinator(task_store, lesson_store, config)

    coordinator.initialize_batch(LOCATIONS, horizon_days=1, clear_lessons=False)

    assert lesson_store.stats().total == 1


def test_initialize_batch_needs_locations(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    coordinator = _coordinator(task_store, lesson_store, config)

    with pytest.raises(ValueError):
        coordinator.initialize_batch([], 1)
    with pytest.raises(ValueError):
        coordinator.initialize_batch(LOCATIONS, horizon_days=0)
    assert task_store.latest_batch() is None


def test_k_tasks_finish_after_exactly_k_calls(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    worker = FakeWorker(lessons_per_task=2)
    coordinator = _coordinator(task_store, lesson_store, config, worker)
    batch_id = coordinator.initialize_batch(LOCATIONS, horizon_days=3)

    assert _drain(coordinator, batch_id) == 6
    assert len(worker.calls) == 6
    assert coordinator.tasks_processed == 6

    summary = task_store.get_status_summary(batch_id)
    assert (summary.completed, summary.progress_percent) == (6, 100)
    assert lesson_store.stats().total == 12
    assert asyncio.run(coordinator.process_one_task(batch_id)) is False


def test_failed_task_does_not_stop_the_batch(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    worker = FakeWorker(errors={"sby": ScrapeStructureError("Studio sby not found")})
    coordinator = _coordinator(task_store, lesson_store, config, worker)
    batch_id = coordinator.initialize_batch(LOCATIONS, horizon_days=2)

    assert _drain(coordinator, batch_id) == 4

    summary = task_store.get_batch_summary(batch_id)
    assert (summary.status.completed, summary.status.failed) == (2, 2)
    assert {failure.error_message for failure in summary.failures} == {
        "ScrapeStructureError: Studio sby not found"
    }


def test_empty_schedule_completes_with_zero_lessons(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    coordinator = _coordinator(
        task_store, lesson_store, config, FakeWorker(lessons_per_task=0)
    )
    batch_id = coordinator.initialize_batch(LOCATIONS[:1], horizon_days=1)

    assert asyncio.run(coordinator.process_one_task(batch_id)) is False

    (task,) = task_store.list_tasks(batch_id)
    assert task.status is TaskStatus.COMPLETED
    assert task.lesson_count == 0


def test_store_errors_propagate_and_leave_task_processing(
    task_store: TaskStore, lesson_store: LessonStore, config: RefreshConfig
) -> None:
    worker = FakeWorker(errors={"gnz": StoreWriteError("database is locked")})
    coordinator = _coordinator(task_store, lesson_store, config, worker)
    batch_id = coordinator.initialize_batch(LOCATIONS[:1], horizon_days=1)

    with pytest.raises(StoreWriteError):
        asyncio.run(coordinator.process_one_task(batch_id))

    assert task_store.get_status_summary(batch_id).processing == 1


def test_error_messages_are_typed_and_truncated() -> None:
    assert format_error(ValueError("bad slot")) == "ValueError: bad slot"
    assert len(format_error(RuntimeError("x" * 2000))) == 500

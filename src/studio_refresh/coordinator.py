"""Batch coordinator: creates refresh batches and runs their tasks one at a time.

A batch is every (studio, date) pair of the refresh horizon. Tasks are
claimed from the task store, scraped by the worker and written to the lesson
store. A failing task is recorded as failed and never stops the batch.
"""

import secrets
import time
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from structlog.contextvars import bound_contextvars

from studio_refresh.config import RefreshConfig
from studio_refresh.errors import ClaimConflictError, StoreWriteError
from studio_refresh.lesson_store import LessonStore
from studio_refresh.logging import get_logger
from studio_refresh.models import BatchRecord, LessonRecord, LessonScope, Location
from studio_refresh.task_store import TaskStore

log = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 500


class Extractor(Protocol):
    async def extract(self, location_code: str, target_date: date) -> list[LessonRecord]: ...


def format_error(error: BaseException) -> str:
    """Render an exception as "ErrorType: message", cut to the stored length."""
    message = f"{type(error).__name__}: {error}".strip()
    return message[:MAX_ERROR_MESSAGE_LENGTH]


def new_batch_id(start_date: date) -> str:
    return f"{start_date.isoformat()}-{secrets.token_hex(4)}"


class BatchCoordinator:
    """Owns batch creation and the claim -> extract -> persist -> record cycle."""

    def __init__(
        self,
        task_store: TaskStore,
        lesson_store: LessonStore,
        worker: Extractor,
        config: RefreshConfig,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.task_store = task_store
        self.lesson_store = lesson_store
        self.worker = worker
        self.config = config
        self._clock = clock or (lambda: datetime.now(UTC))
        # Tasks claimed through this coordinator, whatever their outcome
        self.tasks_processed = 0

    def site_today(self) -> date:
        return self._clock().astimezone(ZoneInfo(self.config.site_timezone)).date()

    def initialize_batch(
        self,
        locations: Sequence[Location],
        horizon_days: int | None = None,
        *,
        clear_lessons: bool = True,
        start_date: date | None = None,
    ) -> str:
        """Create a batch with one pending task per (location, date).

        Lessons in the refresh scope are cleared before any task exists, so
        no worker can write into the scope before the clear has finished.

        Args:
            locations: Studios to refresh.
            horizon_days: Number of days from ``start_date``; config default if None.
            clear_lessons: Clear stored lessons of the scope first.
            start_date: First date of the horizon; today in the site timezone if None.

        Returns:
            The new batch id ("YYYY-MM-DD-<8 hex>").

        Raises:
            ValueError: If ``locations`` is empty or ``horizon_days`` is below 1.
            StoreWriteError: If the batch could not be written.
        """
        if not locations:
            raise ValueError("Cannot create a batch without locations")

        if horizon_days is None:
            horizon_days = self.config.horizon_days
        if horizon_days < 1:
            raise ValueError(f"horizon_days must be at least 1, got {horizon_days}")
        start = start_date or self.site_today()
        dates = [start + timedelta(days=offset) for offset in range(horizon_days)]
        items = [(location, day) for location in locations for day in dates]

        now = self._clock()
        batch_id = new_batch_id(start)
        ttl = int((now + timedelta(days=self.config.task_ttl_days)).timestamp())

        self.task_store.purge_expired(now)
        if clear_lessons:
            self.clear_lessons_for_scope(
                LessonScope(
                    location_codes=[location.code for location in locations],
                    start_date=dates[0],
                    end_date=dates[-1],
                )
            )
            self.lesson_store.cleanup_before(start)

        self.task_store.create_batch(
            BatchRecord(
                batch_id=batch_id,
                created_at=now,
                start_date=start,
                horizon_days=horizon_days,
                total_tasks=len(items),
                ttl=ttl,
            )
        )
        self.task_store.create_tasks(batch_id, items, ttl=ttl)

        log.info(
            "batch_initialized",
            batch_id=batch_id,
            locations=len(locations),
            days=horizon_days,
            tasks=len(items),
        )
        return batch_id

    def clear_lessons_for_scope(self, scope: LessonScope | None = None) -> int:
        return self.lesson_store.clear(scope)

    async def process_one_task(self, batch_id: str) -> bool:
        """Claim and process one pending task of the batch.

        Returns:
            False when nothing was claimable, or when no task is left pending
            or processing after this one. True otherwise.

        Raises:
            StoreWriteError: If the task or lesson store cannot be written.
            ClaimConflictError: If every claim attempt lost its race.
            InvalidTransitionError: If the task changed status underneath us.
            RecordValidationError: If a claimed task row cannot be read back.
        """
        task = self.task_store.claim_next_pending(batch_id)
        if task is None:
            log.info("no_pending_tasks", batch_id=batch_id)
            return False

        self.tasks_processed += 1
        with bound_contextvars(
            batch_id=batch_id,
            location=task.location_code,
            date=task.target_date.isoformat(),
        ):
            started = time.monotonic()
            try:
                lessons = await self.worker.extract(task.location_code, task.target_date)
                self.lesson_store.upsert_many(task.location_code, task.target_date, lessons)
            except (StoreWriteError, ClaimConflictError):
                raise
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                log.warning("task_extraction_failed", error_type=type(e).__name__)
                self.task_store.fail(batch_id, task.key, format_error(e), duration_ms)
            else:
                duration_ms = int((time.monotonic() - started) * 1000)
                self.task_store.complete(batch_id, task.key, len(lessons), duration_ms)

        return self.task_store.get_status_summary(batch_id).has_open_tasks

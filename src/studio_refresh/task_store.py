"""SQLite-backed task state store.

Holds batches and their (location, date) tasks. Every status change is a
conditional UPDATE guarded by the statuses the transition table allows, so
invocations sharing the database file can never both claim or finish the
same task.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from studio_refresh.db import connect, store_retry, timestamp
from studio_refresh.errors import (
    ClaimConflictError,
    InvalidTransitionError,
    RecordValidationError,
)
from studio_refresh.logging import get_logger
from studio_refresh.models import (
    BatchRecord,
    BatchSummary,
    FailedTask,
    Location,
    LocationProgress,
    StatusSummary,
    TaskKey,
    TaskRecord,
    TaskStatus,
    can_transition,
    check_transition,
)

logger = get_logger(__name__)

# Lost races tolerated in one claim call before giving up with ClaimConflictError
MAX_CLAIM_CONFLICTS = 5
PENDING_PREVIEW_SIZE = 5

_SCHEMA = """
CREATE TABLE IF NOT EXISTS batches (
    batch_id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    start_date TEXT NOT NULL,
    horizon_days INTEGER NOT NULL,
    total_tasks INTEGER NOT NULL,
    ttl INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    batch_id TEXT NOT NULL,
    task_key TEXT NOT NULL,
    location_code TEXT NOT NULL,
    location_name TEXT NOT NULL DEFAULT '',
    target_date TEXT NOT NULL,
    status TEXT NOT NULL
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    processed_at TEXT,
    error_message TEXT,
    lesson_count INTEGER,
    processing_duration_ms INTEGER,
    attempts INTEGER NOT NULL DEFAULT 0,
    ttl INTEGER NOT NULL,
    PRIMARY KEY (batch_id, task_key)
);

CREATE INDEX IF NOT EXISTS idx_tasks_batch_status ON tasks(batch_id, status);
CREATE INDEX IF NOT EXISTS idx_tasks_ttl ON tasks(ttl);
"""


def _sources_for(target: TaskStatus) -> list[str]:
    return [status.value for status in TaskStatus if can_transition(status, target)]


class TaskStore:
    """Durable table of batch tasks keyed by (batch_id, location#date)."""

    def __init__(
        self,
        database_path: str | Path,
        *,
        busy_timeout_s: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.database_path = Path(database_path)
        self.busy_timeout_s = busy_timeout_s
        self._clock = clock or (lambda: datetime.now(UTC))
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self):
        return connect(self.database_path, self.busy_timeout_s)

    def migrate(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------
    @store_retry
    def create_batch(self, record: BatchRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO batches (
                    batch_id, created_at, start_date, horizon_days, total_tasks, ttl
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (batch_id) DO NOTHING
                """,
                (
                    record.batch_id,
                    timestamp(record.created_at),
                    record.start_date.isoformat(),
                    record.horizon_days,
                    record.total_tasks,
                    record.ttl,
                ),
            )
        logger.info("batch_recorded", batch_id=record.batch_id, total=record.total_tasks)

    def get_batch(self, batch_id: str) -> BatchRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM batches WHERE batch_id = ?", (batch_id,)
            ).fetchone()
        return self._row_to_batch(row) if row is not None else None

    def latest_batch(self) -> BatchRecord | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM batches ORDER BY created_at DESC LIMIT 1"
            ).fetchone()
        return self._row_to_batch(row) if row is not None else None

    @store_retry
    def clear_batch(self, batch_id: str) -> int:
        """Delete a batch and all its tasks. Returns the number of tasks removed."""
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM tasks WHERE batch_id = ?", (batch_id,)
            ).rowcount
            conn.execute("DELETE FROM batches WHERE batch_id = ?", (batch_id,))
        logger.info("batch_cleared", batch_id=batch_id, tasks=deleted)
        return deleted

    @store_retry
    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete batches and tasks whose ttl has passed."""
        cutoff = int((now or self._clock()).timestamp())
        with self._connect() as conn:
            deleted = conn.execute("DELETE FROM tasks WHERE ttl < ?", (cutoff,)).rowcount
            conn.execute("DELETE FROM batches WHERE ttl < ?", (cutoff,))
        if deleted:
            logger.info("expired_tasks_purged", tasks=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------
    @store_retry
    def create_tasks(
        self,
        batch_id: str,
        items: Sequence[tuple[Location, date]],
        *,
        ttl: int,
    ) -> int:
        """Insert pending tasks. Existing keys are left untouched.

        Re-running after a partial failure only adds the missing tasks.

        Returns:
            Number of tasks actually inserted.

        Raises:
            StoreWriteError: If the insert fails after retries.
        """
        now = timestamp(self._clock())
        rows = []
        for location, target_date in items:
            key = TaskKey(location_code=location.code, target_date=target_date)
            rows.append(
                (
                    batch_id,
                    key.sort_key,
                    location.code,
                    location.name,
                    target_date.isoformat(),
                    TaskStatus.PENDING.value,
                    now,
                    now,
                    ttl,
                )
            )

        with self._connect() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT INTO tasks (
                    batch_id, task_key, location_code, location_name, target_date,
                    status, created_at, updated_at, ttl
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (batch_id, task_key) DO NOTHING
                """,
                rows,
            )
            inserted = conn.total_changes - before

        logger.info(
            "tasks_created",
            batch_id=batch_id,
            requested=len(rows),
            inserted=inserted,
        )
        return inserted

    def get_task(self, batch_id: str, key: TaskKey) -> TaskRecord | None:
        with self._connect() as conn:
            return self._fetch_task(conn, batch_id, key.sort_key)

    def list_tasks(
        self, batch_id: str, status: TaskStatus | None = None
    ) -> list[TaskRecord]:
        """List tasks of a batch in key order, skipping rows that fail validation."""
        query = "SELECT * FROM tasks WHERE batch_id = ?"
        params: list[Any] = [batch_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY task_key"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        tasks: list[TaskRecord] = []
        for row in rows:
            try:
                tasks.append(self._row_to_task(row))
            except RecordValidationError as e:
                logger.warning(
                    "task_row_quarantined",
                    batch_id=batch_id,
                    task_key=row["task_key"],
                    error=str(e),
                )
        return tasks

    @store_retry
    def claim_next_pending(self, batch_id: str) -> TaskRecord | None:
        """Atomically move one pending task to processing and return it.

        Returns:
            The claimed task, or None when the batch has nothing pending.

        Raises:
            ClaimConflictError: If every attempt lost its race to another claimer.
        """
        for _ in range(MAX_CLAIM_CONFLICTS):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT task_key FROM tasks
                    WHERE batch_id = ? AND status = ?
                    ORDER BY task_key
                    LIMIT 1
                    """,
                    (batch_id, TaskStatus.PENDING.value),
                ).fetchone()
                if row is None:
                    return None

                task_key = row["task_key"]
                cursor = conn.execute(
                    """
                    UPDATE tasks
                    SET status = ?,
                        updated_at = ?,
                        attempts = attempts + 1,
                        error_message = NULL
                    WHERE batch_id = ? AND task_key = ? AND status = ?
                    """,
                    (
                        TaskStatus.PROCESSING.value,
                        timestamp(self._clock()),
                        batch_id,
                        task_key,
                        TaskStatus.PENDING.value,
                    ),
                )
                if cursor.rowcount == 1:
                    claimed = self._fetch_task(conn, batch_id, task_key)
                    logger.info(
                        "task_claimed",
                        batch_id=batch_id,
                        task_key=task_key,
                        attempts=claimed.attempts if claimed else None,
                    )
                    return claimed

            logger.debug("claim_conflict", batch_id=batch_id, task_key=task_key)

        raise ClaimConflictError(
            f"Lost {MAX_CLAIM_CONFLICTS} claim races in batch {batch_id}"
        )

    @store_retry
    def complete(
        self,
        batch_id: str,
        key: TaskKey,
        lesson_count: int,
        duration_ms: int,
    ) -> TaskRecord:
        """Mark a processing task completed and record its metrics.

        Raises:
            InvalidTransitionError: If the task is not currently processing.
        """
        now = timestamp(self._clock())
        record = self._transition(
            batch_id,
            key,
            TaskStatus.COMPLETED,
            {
                "processed_at": now,
                "lesson_count": lesson_count,
                "processing_duration_ms": duration_ms,
                "error_message": None,
            },
        )
        logger.info(
            "task_completed",
            batch_id=batch_id,
            task_key=key.sort_key,
            lessons=lesson_count,
            duration_ms=duration_ms,
        )
        return record

    @store_retry
    def fail(
        self,
        batch_id: str,
        key: TaskKey,
        error_message: str,
        duration_ms: int | None = None,
    ) -> TaskRecord:
        """Mark a processing task failed with its error message.

        Raises:
            InvalidTransitionError: If the task is not currently processing.
        """
        record = self._transition(
            batch_id,
            key,
            TaskStatus.FAILED,
            {
                "error_message": error_message,
                "processing_duration_ms": duration_ms,
            },
        )
        logger.warning(
            "task_failed",
            batch_id=batch_id,
            task_key=key.sort_key,
            error=error_message,
        )
        return record

    @store_retry
    def reset_stale_processing(
        self,
        batch_id: str,
        stale_after: timedelta,
        *,
        now: datetime | None = None,
    ) -> int:
        """Return tasks stuck in processing longer than stale_after to pending.

        A worker killed mid-task never reports back; this is what makes its
        task claimable again.
        """
        current = now or self._clock()
        cutoff = timestamp(current - stale_after)
        with self._connect() as conn:
            reset = conn.execute(
                """
                UPDATE tasks
                SET status = ?, updated_at = ?
                WHERE batch_id = ? AND status = ? AND updated_at < ?
                """,
                (
                    TaskStatus.PENDING.value,
                    timestamp(current),
                    batch_id,
                    TaskStatus.PROCESSING.value,
                    cutoff,
                ),
            ).rowcount
        if reset:
            logger.warning(
                "stale_tasks_reset",
                batch_id=batch_id,
                count=reset,
                stale_after_s=stale_after.total_seconds(),
            )
        return reset

    @store_retry
    def reset_failed(self, batch_id: str, max_attempts: int | None = None) -> int:
        """Re-queue failed tasks that have been claimed fewer than max_attempts times."""
        query = """
            UPDATE tasks
            SET status = ?, updated_at = ?
            WHERE batch_id = ? AND status = ?
        """
        params: list[Any] = [
            TaskStatus.PENDING.value,
            timestamp(self._clock()),
            batch_id,
            TaskStatus.FAILED.value,
        ]
        if max_attempts is not None:
            query += " AND attempts < ?"
            params.append(max_attempts)

        with self._connect() as conn:
            reset = conn.execute(query, params).rowcount
        logger.info("failed_tasks_reset", batch_id=batch_id, count=reset)
        return reset

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def get_status_summary(self, batch_id: str) -> StatusSummary:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT status, COUNT(*) AS count
                FROM tasks
                WHERE batch_id = ?
                GROUP BY status
                """,
                (batch_id,),
            ).fetchall()

        counts = {status: 0 for status in TaskStatus}
        for row in rows:
            counts[TaskStatus(row["status"])] = row["count"]
        return _summarize(counts)

    def get_batch_summary(self, batch_id: str) -> BatchSummary:
        tasks = self.list_tasks(batch_id)

        counts = {status: 0 for status in TaskStatus}
        progress: dict[str, LocationProgress] = {}
        failures: list[FailedTask] = []
        pending: list[TaskKey] = []
        total_lessons = 0
        total_duration = 0

        for task in tasks:
            counts[task.status] += 1
            total_lessons += task.lesson_count or 0
            total_duration += task.processing_duration_ms or 0

            location = progress.setdefault(task.location_code, LocationProgress())
            location.total += 1
            if task.status is TaskStatus.COMPLETED:
                location.completed += 1
            elif task.status is TaskStatus.FAILED:
                failures.append(
                    FailedTask(
                        location_code=task.location_code,
                        target_date=task.target_date,
                        error_message=task.error_message,
                        attempts=task.attempts,
                    )
                )
            elif task.status is TaskStatus.PENDING and len(pending) < PENDING_PREVIEW_SIZE:
                pending.append(task.key)

        return BatchSummary(
            batch_id=batch_id,
            status=_summarize(counts),
            total_lessons=total_lessons,
            total_duration_ms=total_duration,
            location_progress=progress,
            failures=failures,
            pending_preview=pending,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _transition(
        self,
        batch_id: str,
        key: TaskKey,
        target: TaskStatus,
        fields: dict[str, Any],
    ) -> TaskRecord:
        sources = _sources_for(target)
        assignments = ", ".join(f"{name} = ?" for name in fields)
        placeholders = ", ".join("?" for _ in sources)

        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE tasks
                SET status = ?, updated_at = ?, {assignments}
                WHERE batch_id = ? AND task_key = ? AND status IN ({placeholders})
                """,
                (
                    target.value,
                    timestamp(self._clock()),
                    *fields.values(),
                    batch_id,
                    key.sort_key,
                    *sources,
                ),
            )
            if cursor.rowcount == 1:
                record = self._fetch_task(conn, batch_id, key.sort_key)
                if record is not None:
                    return record

            current = self._fetch_task(conn, batch_id, key.sort_key)

        if current is None:
            raise InvalidTransitionError(f"Task {batch_id}/{key} does not exist")
        check_transition(current.status, target)
        raise InvalidTransitionError(
            f"Task {batch_id}/{key} changed concurrently (now {current.status.value})"
        )

    def _fetch_task(
        self, conn: sqlite3.Connection, batch_id: str, task_key: str
    ) -> TaskRecord | None:
        row = conn.execute(
            "SELECT * FROM tasks WHERE batch_id = ? AND task_key = ?",
            (batch_id, task_key),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> TaskRecord:
        try:
            return TaskRecord.model_validate(dict(row))
        except ValidationError as e:
            raise RecordValidationError(f"Invalid task row: {e}") from e

    @staticmethod
    def _row_to_batch(row: sqlite3.Row) -> BatchRecord:
        try:
            return BatchRecord.model_validate(dict(row))
        except ValidationError as e:
            raise RecordValidationError(f"Invalid batch row: {e}") from e


def _summarize(counts: dict[TaskStatus, int]) -> StatusSummary:
    total = sum(counts.values())
    finished = counts[TaskStatus.COMPLETED] + counts[TaskStatus.FAILED]
    return StatusSummary(
        total=total,
        pending=counts[TaskStatus.PENDING],
        processing=counts[TaskStatus.PROCESSING],
        completed=counts[TaskStatus.COMPLETED],
        failed=counts[TaskStatus.FAILED],
        progress_percent=round(finished / total * 100) if total else 0,
    )

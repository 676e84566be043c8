"""SQLite-backed lesson store.

Lessons are keyed by (location_code, lesson_date_time, lesson_name). Writes
for one (location, date) replace that day's slot set, so re-running a task
never accumulates duplicates or leaves slots the site no longer shows.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from studio_refresh.db import connect, store_retry
from studio_refresh.logging import get_logger
from studio_refresh.models import (
    LessonFilters,
    LessonRecord,
    LessonScope,
    LessonStats,
    normalize_location_code,
)

logger = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS lessons (
    location_code TEXT NOT NULL,
    lesson_date_time TEXT NOT NULL,
    lesson_name TEXT NOT NULL,
    lesson_date TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT NOT NULL,
    program TEXT NOT NULL,
    instructor TEXT NOT NULL,
    is_available INTEGER NOT NULL,
    available_slots INTEGER NOT NULL,
    total_slots INTEGER NOT NULL,
    availability_source TEXT NOT NULL,
    background_color TEXT,
    text_color TEXT,
    last_updated TEXT NOT NULL,
    ttl INTEGER NOT NULL,
    PRIMARY KEY (location_code, lesson_date_time, lesson_name)
);

CREATE INDEX IF NOT EXISTS idx_lessons_date ON lessons(lesson_date, location_code);
"""

_COLUMNS = (
    "location_code",
    "lesson_date_time",
    "lesson_name",
    "lesson_date",
    "start_time",
    "end_time",
    "program",
    "instructor",
    "is_available",
    "available_slots",
    "total_slots",
    "availability_source",
    "background_color",
    "text_color",
    "last_updated",
    "ttl",
)

_UPSERT = f"""
INSERT INTO lessons ({", ".join(_COLUMNS)})
VALUES ({", ".join("?" for _ in _COLUMNS)})
ON CONFLICT (location_code, lesson_date_time, lesson_name) DO UPDATE SET
{", ".join(f"{c} = excluded.{c}" for c in _COLUMNS[3:])}
"""


def _lesson_row(lesson: LessonRecord) -> tuple[Any, ...]:
    data = lesson.model_dump(mode="json")
    data["lesson_date_time"] = lesson.lesson_date_time.isoformat()
    data["is_available"] = int(lesson.is_available)
    return tuple(data[column] for column in _COLUMNS)


def _scope_clause(scope: LessonScope) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if scope.location_codes is not None:
        if not scope.location_codes:
            # An explicit empty list matches nothing
            return "0", []
        clauses.append(
            f"location_code IN ({', '.join('?' for _ in scope.location_codes)})"
        )
        params.extend(scope.location_codes)
    if scope.start_date is not None:
        clauses.append("lesson_date >= ?")
        params.append(scope.start_date.isoformat())
    if scope.end_date is not None:
        clauses.append("lesson_date <= ?")
        params.append(scope.end_date.isoformat())
    return (" AND ".join(clauses) or "1"), params


def _filter_clause(filters: LessonFilters | None) -> tuple[str, list[Any]]:
    if filters is None:
        return "", []
    clauses: list[str] = []
    params: list[Any] = []
    if filters.program:
        clauses.append("program = ?")
        params.append(filters.program)
    if filters.instructor:
        clauses.append("instructor = ?")
        params.append(filters.instructor)
    if filters.available_only:
        clauses.append("is_available = 1")
    if filters.start_time_from:
        clauses.append("start_time >= ?")
        params.append(filters.start_time_from)
    if filters.start_time_to:
        clauses.append("start_time <= ?")
        params.append(filters.start_time_to)
    return "".join(f" AND {clause}" for clause in clauses), params


class LessonStore:
    """Gateway to the shared lesson table."""

    def __init__(self, database_path: str | Path, *, busy_timeout_s: float = 30.0) -> None:
        self.database_path = Path(database_path)
        self.busy_timeout_s = busy_timeout_s
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self):
        return connect(self.database_path, self.busy_timeout_s)

    def migrate(self) -> None:
        with self._connect() as conn:
            conn.executescript(_SCHEMA)

    @store_retry
    def upsert_many(
        self,
        location_code: str,
        lesson_date: date,
        lessons: Sequence[LessonRecord],
    ) -> int:
        """Write the full slot set of one studio-day.

        Slots already stored for that day but missing from ``lessons`` are
        deleted; the rest are inserted or overwritten. Calling this twice with
        the same input leaves the store unchanged.

        Returns:
            Number of lessons written.

        Raises:
            ValueError: If a lesson belongs to another location or date.
            StoreWriteError: If the write fails after retries.
        """
        location_code = normalize_location_code(location_code)
        for lesson in lessons:
            if lesson.location_code != location_code or lesson.lesson_date != lesson_date:
                raise ValueError(
                    f"Lesson {lesson.slot_id} of {lesson.location_code} does not "
                    f"belong to {location_code} on {lesson_date}"
                )

        keep = {
            (lesson.lesson_date_time.isoformat(), lesson.lesson_name) for lesson in lessons
        }
        with self._connect() as conn:
            existing = conn.execute(
                """
                SELECT lesson_date_time, lesson_name FROM lessons
                WHERE location_code = ? AND lesson_date = ?
                """,
                (location_code, lesson_date.isoformat()),
            ).fetchall()
            stale = [
                (location_code, row["lesson_date_time"], row["lesson_name"])
                for row in existing
                if (row["lesson_date_time"], row["lesson_name"]) not in keep
            ]
            conn.executemany(
                """
                DELETE FROM lessons
                WHERE location_code = ? AND lesson_date_time = ? AND lesson_name = ?
                """,
                stale,
            )
            conn.executemany(_UPSERT, [_lesson_row(lesson) for lesson in lessons])

        logger.info(
            "lessons_upserted",
            location=location_code,
            date=lesson_date.isoformat(),
            written=len(lessons),
            removed=len(stale),
        )
        return len(lessons)

    @store_retry
    def replace_all(self, scope: LessonScope, lessons: Sequence[LessonRecord]) -> int:
        """Delete everything in scope and write ``lessons`` in one transaction."""
        where, params = _scope_clause(scope)
        with self._connect() as conn:
            removed = conn.execute(f"DELETE FROM lessons WHERE {where}", params).rowcount
            conn.executemany(_UPSERT, [_lesson_row(lesson) for lesson in lessons])
        logger.info("lessons_replaced", removed=removed, written=len(lessons))
        return len(lessons)

    @store_retry
    def clear(self, scope: LessonScope | None = None) -> int:
        """Delete all lessons in scope (the whole table by default)."""
        where, params = _scope_clause(scope or LessonScope())
        with self._connect() as conn:
            removed = conn.execute(f"DELETE FROM lessons WHERE {where}", params).rowcount
        logger.info("lessons_cleared", removed=removed)
        return removed

    @store_retry
    def cleanup_before(self, cutoff: date) -> int:
        """Delete lessons dated before ``cutoff``."""
        with self._connect() as conn:
            removed = conn.execute(
                "DELETE FROM lessons WHERE lesson_date < ?", (cutoff.isoformat(),)
            ).rowcount
        logger.info("old_lessons_removed", cutoff=cutoff.isoformat(), removed=removed)
        return removed

    def query(
        self,
        location_code: str,
        lesson_date: date,
        filters: LessonFilters | None = None,
    ) -> list[LessonRecord]:
        extra, extra_params = _filter_clause(filters)
        return self._select(
            f"""
            SELECT * FROM lessons
            WHERE location_code = ? AND lesson_date = ?{extra}
            ORDER BY lesson_date_time, lesson_name
            """,
            [normalize_location_code(location_code), lesson_date.isoformat(), *extra_params],
        )

    def query_all(self, filters: LessonFilters | None = None) -> list[LessonRecord]:
        extra, extra_params = _filter_clause(filters)
        return self._select(
            f"""
            SELECT * FROM lessons
            WHERE 1 = 1{extra}
            ORDER BY location_code, lesson_date_time, lesson_name
            """,
            extra_params,
        )

    def stats(self) -> LessonStats:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COUNT(DISTINCT location_code) AS location_count,
                       MIN(lesson_date) AS first_date,
                       MAX(lesson_date) AS last_date
                FROM lessons
                """
            ).fetchone()
        date_range = None
        if row["first_date"] is not None:
            date_range = (
                date.fromisoformat(row["first_date"]),
                date.fromisoformat(row["last_date"]),
            )
        return LessonStats(
            total=row["total"],
            location_count=row["location_count"],
            date_range=date_range,
        )

    def _select(self, query: str, params: list[Any]) -> list[LessonRecord]:
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()

        lessons: list[LessonRecord] = []
        for row in rows:
            lesson = self._row_to_lesson(row)
            if lesson is not None:
                lessons.append(lesson)
        return lessons

    @staticmethod
    def _row_to_lesson(row: sqlite3.Row) -> LessonRecord | None:
        try:
            return LessonRecord.model_validate(dict(row))
        except ValidationError as e:
            logger.warning(
                "lesson_row_quarantined",
                location=row["location_code"],
                lesson_date_time=row["lesson_date_time"],
                errors=e.error_count(),
            )
            return None

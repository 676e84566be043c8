"""SQLite connection handling shared by the task and lesson stores."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from studio_refresh.errors import StoreWriteError

# Locked-database and I/O failures get three tries before propagating
store_retry = retry(
    retry=retry_if_exception_type(StoreWriteError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    reraise=True,
)


@contextmanager
def connect(database_path: Path, busy_timeout_s: float) -> Iterator[sqlite3.Connection]:
    """Open a connection for one store operation.

    Commits on success, rolls back on any exception, always closes.

    Raises:
        StoreWriteError: For any sqlite3 error raised while open.
    """
    try:
        conn = sqlite3.connect(str(database_path), timeout=busy_timeout_s)
    except sqlite3.Error as e:
        raise StoreWriteError(f"Cannot open {database_path}: {e}") from e
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    except sqlite3.Error as e:
        raise StoreWriteError(f"Store operation on {database_path} failed: {e}") from e
    finally:
        conn.close()


def timestamp(value: datetime) -> str:
    # Fixed-width UTC so stored timestamps compare correctly as text
    return value.astimezone(UTC).isoformat(timespec="microseconds")

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from studio_refresh.config import RefreshConfig
from studio_refresh.lesson_store import LessonStore
from studio_refresh.task_store import TaskStore


@pytest.fixture(autouse=True)
def quiet_logs() -> Iterator[None]:
    """Keep structlog output off stdout, where CLI tests read JSON."""
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()


@pytest.fixture
def config(tmp_path: Path) -> RefreshConfig:
    return RefreshConfig(
        _env_file=None,
        database_path=str(tmp_path / "refresh.db"),
        scrape_retry_wait_s=0,
        budget_safety_margin_s=0,
        invocation_budget_s=100,
    )


@pytest.fixture
def task_store(config: RefreshConfig) -> TaskStore:
    store = TaskStore(config.database_path, busy_timeout_s=5)
    store.migrate()
    return store


@pytest.fixture
def lesson_store(config: RefreshConfig) -> LessonStore:
    store = LessonStore(config.database_path, busy_timeout_s=5)
    store.migrate()
    return store

"""Resumable batch refresh of studio lesson schedules.

Scrapes every studio's schedule from the reservation site, one
(studio, date) task at a time, into a local lesson store.
"""

from studio_refresh.coordinator import BatchCoordinator
from studio_refresh.driver import ContinuationDriver, DriverOutcome, DriverResult
from studio_refresh.lesson_store import LessonStore
from studio_refresh.models import LessonRecord, TaskRecord, TaskStatus
from studio_refresh.task_store import TaskStore
from studio_refresh.worker import ExtractionWorker

__all__ = [
    "BatchCoordinator",
    "ContinuationDriver",
    "DriverOutcome",
    "DriverResult",
    "ExtractionWorker",
    "LessonRecord",
    "LessonStore",
    "TaskRecord",
    "TaskStatus",
    "TaskStore",
]

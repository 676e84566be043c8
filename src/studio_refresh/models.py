"""Pydantic models for batches, tasks and lessons.

All data structures use Pydantic v2 for validation, serialization, and type safety.
Rows read from the stores are validated into these models before they leave
the store, so malformed rows never reach callers.
"""

from datetime import date, datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from studio_refresh.errors import InvalidTransitionError


class TaskStatus(StrEnum):
    """Lifecycle status of one (location, date) task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# processing -> pending is stale-claim recovery, failed -> pending a manual reset
_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PENDING}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


def check_transition(current: TaskStatus, target: TaskStatus) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Task cannot move from {current.value} to {target.value}"
        )


def normalize_location_code(code: str) -> str:
    """Studio codes are stored lower case ("SJK" and "sjk" are the same studio)."""
    return code.strip().lower()


class Location(BaseModel):
    """A studio from the location directory."""

    code: str = Field(min_length=1)  # "sjk"
    name: str = ""  # "新宿"

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, value: str) -> str:
        return normalize_location_code(value)


class TaskKey(BaseModel):
    """Identity of a task within a batch."""

    model_config = ConfigDict(frozen=True)

    location_code: str
    target_date: date

    @property
    def sort_key(self) -> str:
        return f"{self.location_code}#{self.target_date.isoformat()}"

    @classmethod
    def from_sort_key(cls, sort_key: str) -> "TaskKey":
        location_code, _, target = sort_key.partition("#")
        return cls(location_code=location_code, target_date=date.fromisoformat(target))

    def __str__(self) -> str:
        return self.sort_key


class BatchRecord(BaseModel):
    """One refresh cycle over all studios and the date horizon."""

    batch_id: str
    created_at: datetime
    start_date: date
    horizon_days: int = Field(ge=1)
    total_tasks: int = Field(ge=0)
    ttl: int  # unix seconds after which the batch may be purged


class TaskRecord(BaseModel):
    """Persisted state of one (location, date) unit of work."""

    batch_id: str
    location_code: str
    location_name: str = ""
    target_date: date
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None
    error_message: str | None = None
    lesson_count: int | None = Field(default=None, ge=0)
    processing_duration_ms: int | None = Field(default=None, ge=0)
    attempts: int = Field(default=0, ge=0)  # claims so far
    ttl: int

    @property
    def key(self) -> TaskKey:
        return TaskKey(location_code=self.location_code, target_date=self.target_date)


class LessonRecord(BaseModel):
    """A single lesson slot scraped from a studio schedule."""

    location_code: str
    lesson_date_time: datetime  # 2025-07-17T10:30:00+09:00
    lesson_date: date
    start_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    end_time: str = Field(pattern=r"^\d{2}:\d{2}$")
    lesson_name: str = Field(min_length=1)  # "BSL House 1"
    program: str = "OTHER"  # "BSL", "BB1", ...
    instructor: str = ""
    is_available: bool
    available_slots: int = Field(ge=0)
    total_slots: int = Field(ge=1)
    # "status_text": exact count parsed from the slot; "flag": placeholder from
    # the available/unavailable marker, the site exposes nothing finer
    availability_source: Literal["status_text", "flag"]
    background_color: str | None = None  # "rgb(255, 51, 51)"
    text_color: str | None = None
    last_updated: datetime
    ttl: int

    @property
    def slot_id(self) -> str:
        return f"{self.lesson_date_time.isoformat()}#{self.lesson_name}"


class RawLessonSlot(BaseModel):
    """Text and attributes of one lesson element, as read from the page."""

    time_text: str  # "10:00 - 10:45"
    lesson_name: str
    instructor: str = ""
    status_text: str | None = None  # "残り2人", "満席", or absent
    is_disabled: bool = False  # element carries the seat-disabled class
    background_color: str | None = None
    text_color: str | None = None


class RawScheduleColumn(BaseModel):
    """One date column of the rendered schedule."""

    date_text: str  # "7/18(金)"
    slots: list[RawLessonSlot] = Field(default_factory=list)


class StatusSummary(BaseModel):
    """Aggregate task counts of a batch."""

    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    progress_percent: int = 0

    @model_validator(mode="after")
    def _counts_add_up(self) -> "StatusSummary":
        counted = self.pending + self.processing + self.completed + self.failed
        if counted != self.total:
            raise ValueError(f"status counts sum to {counted}, total is {self.total}")
        return self

    @property
    def has_open_tasks(self) -> bool:
        return self.pending > 0 or self.processing > 0


class LocationProgress(BaseModel):
    completed: int = 0
    total: int = 0


class FailedTask(BaseModel):
    location_code: str
    target_date: date
    error_message: str | None = None
    attempts: int = 0


class BatchSummary(BaseModel):
    """Detailed batch report shown by batch-status."""

    batch_id: str
    status: StatusSummary
    total_lessons: int = 0
    total_duration_ms: int = 0
    location_progress: dict[str, LocationProgress] = Field(default_factory=dict)
    failures: list[FailedTask] = Field(default_factory=list)
    pending_preview: list[TaskKey] = Field(default_factory=list)


class LessonScope(BaseModel):
    """Subset of the lesson store a refresh cycle replaces.

    Unset fields do not restrict the scope; an empty scope is the whole store.
    """

    location_codes: list[str] | None = None
    start_date: date | None = None
    end_date: date | None = None

    @field_validator("location_codes")
    @classmethod
    def _normalize_codes(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return [normalize_location_code(code) for code in value]


class LessonFilters(BaseModel):
    """Optional filters for lesson queries."""

    program: str | None = None
    instructor: str | None = None
    available_only: bool = False
    start_time_from: str | None = None  # "HH:MM", inclusive
    start_time_to: str | None = None


class LessonStats(BaseModel):
    total: int = 0
    location_count: int = 0
    date_range: tuple[date, date] | None = None

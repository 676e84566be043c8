from __future__ import annotations

from datetime import date

import pytest
from pydantic import ValidationError

from studio_refresh.errors import InvalidTransitionError
from studio_refresh.models import (
    Location,
    StatusSummary,
    TaskKey,
    TaskStatus,
    can_transition,
    check_transition,
)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.PENDING, TaskStatus.PROCESSING),
        (TaskStatus.PROCESSING, TaskStatus.COMPLETED),
        (TaskStatus.PROCESSING, TaskStatus.FAILED),
        (TaskStatus.PROCESSING, TaskStatus.PENDING),
        (TaskStatus.FAILED, TaskStatus.PENDING),
    ],
)
def test_allowed_transitions(current: TaskStatus, target: TaskStatus) -> None:
    assert can_transition(current, target)
    check_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (TaskStatus.PENDING, TaskStatus.COMPLETED),
        (TaskStatus.PENDING, TaskStatus.FAILED),
        (TaskStatus.COMPLETED, TaskStatus.PENDING),
        (TaskStatus.COMPLETED, TaskStatus.PROCESSING),
        (TaskStatus.FAILED, TaskStatus.COMPLETED),
    ],
)
def test_rejected_transitions(current: TaskStatus, target: TaskStatus) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        check_transition(current, target)


def test_location_code_is_lower_cased() -> None:
    assert Location(code=" GNZ ", name="銀座").code == "gnz"


def test_task_key_sort_key_parses_back() -> None:
    key = TaskKey(location_code="gnz", target_date=date(2025, 7, 18))

    assert key.sort_key == "gnz#2025-07-18"
    assert TaskKey.from_sort_key(key.sort_key) == key


def test_status_summary_counts_must_add_up() -> None:
    summary = StatusSummary(total=3, pending=1, processing=1, completed=1)
    assert summary.has_open_tasks

    with pytest.raises(ValidationError):
        StatusSummary(total=4, pending=1, completed=1)

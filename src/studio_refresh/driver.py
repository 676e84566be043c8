"""Continuation driver: process tasks until the batch is done or time runs out.

One invocation works through as many tasks as fit in its wall-clock budget
and reports whether the batch is complete or needs another invocation. All
progress lives in the task store, so a killed invocation loses at most the
task it was processing, and that task is reclaimed once it goes stale.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum

from studio_refresh.config import RefreshConfig
from studio_refresh.coordinator import BatchCoordinator
from studio_refresh.errors import (
    ClaimConflictError,
    InvalidTransitionError,
    RecordValidationError,
    StoreWriteError,
)
from studio_refresh.logging import get_logger
from studio_refresh.models import StatusSummary

log = get_logger(__name__)


class DriverOutcome(StrEnum):
    COMPLETE = "complete"
    CONTINUE = "continue"


@dataclass
class DriverResult:
    outcome: DriverOutcome
    processed: int
    elapsed_s: float
    summary: StatusSummary | None = None

    @property
    def has_more(self) -> bool:
        return self.outcome is DriverOutcome.CONTINUE


class ContinuationDriver:
    """Runs process_one_task in a loop under a time budget."""

    def __init__(
        self,
        coordinator: BatchCoordinator,
        config: RefreshConfig,
        *,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coordinator = coordinator
        self.config = config
        self._monotonic = monotonic

    async def run(
        self,
        batch_id: str,
        *,
        budget_s: float | None = None,
        max_tasks: int | None = None,
    ) -> DriverResult:
        """Process tasks of ``batch_id`` until done, out of budget or at max_tasks.

        The budget is only checked between tasks; a started task always runs
        to completion, and every invocation claims at least one task. The
        safety margin is capped at half the budget.

        Args:
            batch_id: Batch to work on.
            budget_s: Wall-clock budget; config default if None.
            max_tasks: Stop after this many tasks; unlimited if None.

        Returns:
            DriverResult with outcome COMPLETE when no task is left to claim,
            CONTINUE when another invocation is needed.
        """
        budget = budget_s if budget_s is not None else self.config.invocation_budget_s
        margin = min(self.config.budget_safety_margin_s, budget / 2)
        deadline = budget - margin
        started = self._monotonic()
        claimed_before = self.coordinator.tasks_processed
        outcome = DriverOutcome.CONTINUE
        task_store = self.coordinator.task_store

        def processed() -> int:
            return self.coordinator.tasks_processed - claimed_before

        log.info("driver_started", batch_id=batch_id, budget_s=budget, max_tasks=max_tasks)
        try:
            task_store.reset_stale_processing(
                batch_id, timedelta(minutes=self.config.stale_after_minutes)
            )
            while True:
                if max_tasks is not None and processed() >= max_tasks:
                    log.info(
                        "driver_task_limit_reached",
                        batch_id=batch_id,
                        processed=processed(),
                    )
                    break
                if processed() > 0 and self._monotonic() - started >= deadline:
                    log.info(
                        "driver_budget_exhausted",
                        batch_id=batch_id,
                        processed=processed(),
                        elapsed_s=round(self._monotonic() - started, 1),
                    )
                    break

                has_more = await self.coordinator.process_one_task(batch_id)
                if not has_more:
                    outcome = DriverOutcome.COMPLETE
                    break
        except (
            StoreWriteError,
            ClaimConflictError,
            InvalidTransitionError,
            RecordValidationError,
        ) as e:
            log.error(
                "driver_interrupted",
                batch_id=batch_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            outcome = DriverOutcome.CONTINUE

        summary = None
        try:
            summary = task_store.get_status_summary(batch_id)
        except StoreWriteError as e:
            log.error("driver_summary_unavailable", batch_id=batch_id, error=str(e))

        elapsed = self._monotonic() - started
        log.info(
            "driver_finished",
            batch_id=batch_id,
            outcome=outcome.value,
            processed=processed(),
            elapsed_s=round(elapsed, 1),
        )
        return DriverResult(
            outcome=outcome,
            processed=processed(),
            elapsed_s=elapsed,
            summary=summary,
        )

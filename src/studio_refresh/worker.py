"""Extraction worker: scrape one (location, date) into lesson records.

Each attempt runs on a fresh page of the shared browser session:
navigate -> select studio -> wait for render -> read columns. The columns are
then normalized outside the browser. Transient failures are retried with
tenacity; structural failures surface on the first attempt.
"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from studio_refresh.config import RefreshConfig
from studio_refresh.errors import TransientError
from studio_refresh.logging import get_logger
from studio_refresh.models import LessonRecord, RawScheduleColumn, normalize_location_code
from studio_refresh.pages.schedule import SchedulePage
from studio_refresh.parsing import normalize_slots, select_column
from studio_refresh.session import BrowserSession

log = get_logger(__name__)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "scrape_retry",
        attempt=retry_state.attempt_number,
        error_type=type(error).__name__ if error else None,
        error=str(error) if error else None,
    )


class ExtractionWorker:
    """Scrapes studio schedules through one BrowserSession."""

    def __init__(self, session: BrowserSession, config: RefreshConfig) -> None:
        self.session = session
        self.config = config

    def _site_today(self) -> date:
        return datetime.now(ZoneInfo(self.config.site_timezone)).date()

    async def _read_schedule(self, location_code: str) -> list[RawScheduleColumn]:
        page = await self.session.new_page()
        try:
            schedule = SchedulePage(
                page,
                render_timeout_ms=self.config.render_timeout_ms,
                parse_timeout_s=self.config.parse_timeout_s,
            )
            await schedule.navigate(self.config.reserve_url)
            await schedule.open_studio(location_code)
            return await schedule.read_columns()
        finally:
            await page.close()

    async def extract(
        self,
        location_code: str,
        target_date: date,
        *,
        reference: date | None = None,
    ) -> list[LessonRecord]:
        """Return every lesson of ``location_code`` on ``target_date``.

        Args:
            location_code: Studio code, any case.
            target_date: Date to extract, in the site timezone.
            reference: Date used to infer the year of column headers.
                       Defaults to today in the site timezone.

        Returns:
            Lessons sorted by start time. Empty when the studio has no
            lessons that day or the site does not show the date.

        Raises:
            ScrapeTimeoutError: If every attempt timed out.
            ScrapeStructureError: If the page no longer matches the expected layout.
        """
        code = normalize_location_code(location_code)
        reference = reference or self._site_today()

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientError),
            stop=stop_after_attempt(self.config.scrape_max_attempts),
            wait=wait_fixed(self.config.scrape_retry_wait_s),
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                columns = await self._read_schedule(code)

        column = select_column(columns, target_date, reference)
        if column is None:
            log.warning(
                "date_not_displayed",
                location=code,
                date=target_date.isoformat(),
                displayed=[c.date_text for c in columns],
            )
            return []

        lessons = normalize_slots(
            code,
            target_date,
            column.slots,
            timezone=self.config.site_timezone,
            placeholder_slots=self.config.placeholder_available_slots,
            total_slots=self.config.nominal_total_slots,
            ttl_days=self.config.lesson_ttl_days,
            now=datetime.now(timezone.utc),
        )
        log.info(
            "schedule_extracted",
            location=code,
            date=target_date.isoformat(),
            lessons=len(lessons),
        )
        return lessons

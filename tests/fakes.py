"""Test doubles for the browser side and the extraction worker."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from studio_refresh.models import LessonRecord
from studio_refresh.pages.schedule import SchedulePage

TOKYO = ZoneInfo("Asia/Tokyo")


def make_lesson(
    location_code: str = "gnz",
    lesson_date: date = date(2025, 7, 17),
    start: str = "10:30",
    lesson_name: str = "BSL House 1",
    **overrides: Any,
) -> LessonRecord:
    hour, minute = (int(part) for part in start.split(":"))
    begins = datetime.combine(lesson_date, time(hour, minute), tzinfo=TOKYO)
    fields: dict[str, Any] = {
        "location_code": location_code,
        "lesson_date_time": begins,
        "lesson_date": lesson_date,
        "start_time": start,
        "end_time": (begins + timedelta(minutes=45)).strftime("%H:%M"),
        "lesson_name": lesson_name,
        "program": lesson_name.split()[0],
        "instructor": "Aki",
        "is_available": True,
        "available_slots": 5,
        "total_slots": 20,
        "availability_source": "flag",
        "last_updated": datetime(2025, 7, 16, 12, 0, tzinfo=UTC),
        "ttl": 1_800_000_000,
    }
    fields.update(overrides)
    return LessonRecord(**fields)


def slot(
    time_text: str,
    lesson_name: str,
    instructor: str = "Aki",
    status_text: str | None = None,
    is_disabled: bool = False,
) -> dict[str, Any]:
    """A raw slot dict shaped like the page script's output."""
    return {
        "time_text": time_text,
        "lesson_name": lesson_name,
        "instructor": instructor,
        "status_text": status_text,
        "is_disabled": is_disabled,
        "background_color": "rgb(255, 51, 51)",
        "text_color": "rgb(255, 255, 255)",
    }


class FakeSite:
    """Shared state of the reservation site across the pages opened on it."""

    def __init__(
        self,
        *,
        studios: list[dict[str, str]] | None = None,
        columns: list[dict[str, Any]] | None = None,
        goto_failures: int = 0,
        render_failures: int = 0,
        missing_selectors: tuple[str, ...] = (),
    ) -> None:
        self.studios = studios if studios is not None else [{"code": "GNZ", "name": "銀座"}]
        self.columns = columns
        self.goto_failures = goto_failures
        self.render_failures = render_failures
        # Selectors absent from the fully loaded document
        self.missing_selectors = set(missing_selectors)
        self.goto_calls = 0
        self.pages: list[FakePage] = []


class FakePage:
    """Answers the page scripts SchedulePage evaluates."""

    def __init__(self, site: FakeSite) -> None:
        self.site = site
        self.closed = False
        self.opened_studio: str | None = None

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.site.goto_calls += 1
        if self.site.goto_failures > 0:
            self.site.goto_failures -= 1
            raise PlaywrightTimeoutError("Timeout 60000ms exceeded.")

    async def wait_for_selector(self, selector: str, **kwargs: Any) -> None:
        if selector in self.site.missing_selectors:
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded.")
        if selector == SchedulePage.DATE_HEADER and self.site.render_failures > 0:
            self.site.render_failures -= 1
            raise PlaywrightTimeoutError("Timeout 30000ms exceeded.")

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if isinstance(arg, str):
            return [dict(studio) for studio in self.site.studios]
        if len(arg) == 1:
            return arg[0] in self.site.missing_selectors
        if len(arg) == 2:
            code = arg[1]
            for studio in self.site.studios:
                if studio["code"].lower() == code:
                    self.opened_studio = code
                    return True
            return False
        return self.site.columns

    async def close(self) -> None:
        self.closed = True


class FakeSession:
    def __init__(self, site: FakeSite) -> None:
        self.site = site

    async def new_page(self) -> FakePage:
        page = FakePage(self.site)
        self.site.pages.append(page)
        return page


class FakeWorker:
    """Extractor double: returns ``lessons_per_task`` lessons or raises per location."""

    def __init__(
        self,
        *,
        lessons_per_task: int = 2,
        errors: dict[str, Exception] | None = None,
        on_extract: Callable[[], None] | None = None,
    ) -> None:
        self.lessons_per_task = lessons_per_task
        self.errors = errors or {}
        self.on_extract = on_extract
        self.calls: list[tuple[str, date]] = []

    async def extract(self, location_code: str, target_date: date) -> list[LessonRecord]:
        self.calls.append((location_code, target_date))
        if self.on_extract is not None:
            self.on_extract()
        error = self.errors.get(location_code)
        if error is not None:
            raise error
        return [
            make_lesson(location_code, target_date, start=f"{10 + i:02d}:00")
            for i in range(self.lessons_per_task)
        ]

from __future__ import annotations

import asyncio
from datetime import date

import pytest

from fakes import FakeSession, FakeSite, slot
from studio_refresh.config import RefreshConfig
from studio_refresh.errors import (
    RecordValidationError,
    ScrapeStructureError,
    ScrapeTimeoutError,
)
from studio_refresh.locations import SiteLocationDirectory, StaticLocationDirectory
from studio_refresh.pages.schedule import SchedulePage
from studio_refresh.worker import ExtractionWorker

TODAY = date(2025, 7, 17)

COLUMNS = [
    {
        "date_text": "7/17(木)",
        "slots": [
            slot("10:30 - 11:15", "BSL House 1", status_text="残り2人"),
            slot("12:00 - 12:45", "BB2 Comp 1", is_disabled=True),
        ],
    },
    {"date_text": "7/18(金)", "slots": []},
]


def _extract(site: FakeSite, config: RefreshConfig, target: date = TODAY):
    worker = ExtractionWorker(FakeSession(site), config)
    return asyncio.run(worker.extract("GNZ", target, reference=TODAY))


def test_extracts_lessons_of_the_target_date(config: RefreshConfig) -> None:
    site = FakeSite(columns=COLUMNS)

    lessons = _extract(site, config)

    assert [(lesson.start_time, lesson.available_slots) for lesson in lessons] == [
        ("10:30", 2),
        ("12:00", 0),
    ]
    assert site.pages[0].opened_studio == "gnz"
    assert all(page.closed for page in site.pages)


def test_empty_day_and_missing_date_yield_nothing(config: RefreshConfig) -> None:
    site = FakeSite(columns=COLUMNS)

    assert _extract(site, config, date(2025, 7, 18)) == []
    assert _extract(site, config, date(2025, 7, 30)) == []


def test_timeouts_are_retried_on_fresh_pages(config: RefreshConfig) -> None:
    site = FakeSite(columns=COLUMNS, goto_failures=1, render_failures=1)

    lessons = _extract(site, config)

    assert len(lessons) == 2
    assert len(site.pages) == 3
    assert all(page.closed for page in site.pages)


def test_timeouts_give_up_after_max_attempts(config: RefreshConfig) -> None:
    site = FakeSite(columns=COLUMNS, goto_failures=10)

    with pytest.raises(ScrapeTimeoutError):
        _extract(site, config)
    assert site.goto_calls == config.scrape_max_attempts


def test_unknown_studio_fails_without_retry(config: RefreshConfig) -> None:
    site = FakeSite(studios=[{"code": "SBY", "name": "渋谷"}], columns=COLUMNS)

    with pytest.raises(ScrapeStructureError):
        _extract(site, config)
    assert site.goto_calls == 1
    assert site.pages[0].closed


@pytest.mark.parametrize(
    "selector", [SchedulePage.STUDIO_ITEM, SchedulePage.DATE_HEADER]
)
def test_changed_layout_fails_without_retry(
    config: RefreshConfig, selector: str
) -> None:
    site = FakeSite(columns=COLUMNS, missing_selectors=(selector,))

    with pytest.raises(ScrapeStructureError, match="matches nothing"):
        _extract(site, config)
    assert site.goto_calls == 1
    assert site.pages[0].closed


def test_missing_schedule_container_is_structural(config: RefreshConfig) -> None:
    site = FakeSite(columns=None)

    with pytest.raises(ScrapeStructureError):
        _extract(site, config)
    assert site.goto_calls == 1


def test_site_location_directory_lists_studios(config: RefreshConfig) -> None:
    site = FakeSite(
        studios=[
            {"code": "SBY", "name": "渋谷"},
            {"code": "GNZ", "name": "銀座"},
            {"code": "", "name": "閉店"},
        ]
    )

    directory = SiteLocationDirectory(FakeSession(site), config)
    locations = asyncio.run(directory.list_locations())

    assert [(loc.code, loc.name) for loc in locations] == [
        ("gnz", "銀座"),
        ("sby", "渋谷"),
    ]
    assert site.pages[0].closed


def test_static_location_directory(tmp_path) -> None:
    path = tmp_path / "locations.json"
    path.write_text(
        '[{"code": "GNZ", "name": "銀座"}, {"code": "gnz", "name": "dup"}]',
        encoding="utf-8",
    )

    locations = asyncio.run(StaticLocationDirectory(path).list_locations())
    assert [(loc.code, loc.name) for loc in locations] == [("gnz", "銀座")]

    path.write_text('[{"name": "no code"}]', encoding="utf-8")
    with pytest.raises(RecordValidationError):
        asyncio.run(StaticLocationDirectory(path).list_locations())

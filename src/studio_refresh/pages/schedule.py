"""SchedulePage - reads studio lesson schedules from the reservation site.

The reservation page lists every studio; clicking one renders a two-week
schedule with one column per date.

DOM structure:
  li.address_item.handle -> one per studio
    .main -> studio name ("銀座")
    .sub  -> studio code in parentheses ("(GNZ)")
  .header-sc-list .content .days -> date header per column ("7/18(金)")
  .sc_list.active > .content -> one column per date, same order as headers
    .lesson.overflow_hidden -> one lesson slot
      .time        -> "10:00 - 10:45"
      .lesson_name -> program name, inline style carries the program colours
      .instructor  -> instructor name
      .status      -> "残り2人", "満席", or absent
    The seat-disabled class marks a slot that cannot be booked.

Studio switching is client side, so one navigation serves every date of
the selected studio.
"""

import asyncio

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from studio_refresh.errors import ScrapeStructureError, ScrapeTimeoutError
from studio_refresh.logging import get_logger
from studio_refresh.models import Location, RawScheduleColumn, normalize_location_code

log = get_logger(__name__)

_LIST_STUDIOS_JS = """
(selector) => Array.from(document.querySelectorAll(selector)).map((el) => {
    const name = (el.querySelector('.main')?.textContent || '').trim();
    const sub = (el.querySelector('.sub')?.textContent || '').trim();
    const match = sub.match(/\\(([^)]+)\\)/);
    return { code: match ? match[1].trim() : '', name };
})
"""

_OPEN_STUDIO_JS = """
([selector, code]) => {
    for (const el of document.querySelectorAll(selector)) {
        const sub = (el.querySelector('.sub')?.textContent || '').trim();
        const match = sub.match(/\\(([^)]+)\\)/);
        if (match && match[1].trim().toLowerCase() === code) {
            el.click();
            return true;
        }
    }
    return false;
}
"""

_SELECTOR_MISSING_JS = """
([selector]) => document.readyState === 'complete'
    && document.querySelector(selector) === null
"""

_READ_COLUMNS_JS = """
([headerSelector, columnSelector, lessonSelector]) => {
    const headers = Array.from(document.querySelectorAll(headerSelector));
    const columns = document.querySelectorAll(columnSelector);
    if (columns.length === 0) {
        return null;
    }
    return Array.from(columns).map((column, index) => ({
        date_text: (headers[index]?.textContent || '').trim(),
        slots: Array.from(column.querySelectorAll(lessonSelector)).map((el) => {
            const text = (sel) => {
                const node = el.querySelector(sel);
                const value = node ? (node.textContent || '').trim() : '';
                return value || null;
            };
            const name = el.querySelector('.lesson_name');
            return {
                time_text: text('.time') || '',
                lesson_name: text('.lesson_name') || '',
                instructor: text('.instructor') || '',
                status_text: text('.status'),
                is_disabled: el.classList.contains('seat-disabled'),
                background_color: (name && name.style.backgroundColor) || null,
                text_color: (name && name.style.color) || null,
            };
        }),
    }));
}
"""


class SchedulePage:
    """Reservation page: studio list plus the schedule of the selected studio."""

    STUDIO_ITEM = "li.address_item.handle"
    DATE_HEADER = ".header-sc-list .content .days"
    SCHEDULE_COLUMN = ".sc_list.active > .content"
    LESSON_ITEM = ".lesson.overflow_hidden"

    def __init__(
        self,
        page: Page,
        *,
        render_timeout_ms: int = 30000,
        parse_timeout_s: float = 30.0,
    ) -> None:
        self.page = page
        self.render_timeout_ms = render_timeout_ms
        self.parse_timeout_s = parse_timeout_s

    async def navigate(self, url: str) -> None:
        """Load the reservation page and wait for the studio list.

        Raises:
            ScrapeTimeoutError: If the page or studio list fails to load in time.
            ScrapeStructureError: If the page loaded without a studio list.
        """
        try:
            await self.page.goto(url, wait_until="domcontentloaded")
        except PlaywrightTimeoutError:
            raise ScrapeTimeoutError(f"Reservation page {url} failed to load")
        except PlaywrightError as e:
            raise ScrapeTimeoutError(f"Navigation to {url} interrupted: {e.message}")
        await self._wait_for_layout(self.STUDIO_ITEM, "Studio list")

        log.info("reservation_page_navigated", url=url)

    async def list_studios(self) -> list[Location]:
        """Read every studio from the studio list.

        Raises:
            ScrapeStructureError: If no studio item carries a code.
        """
        items = await self.page.evaluate(_LIST_STUDIOS_JS, self.STUDIO_ITEM)
        studios: dict[str, Location] = {}
        for item in items:
            if not item.get("code"):
                log.debug("studio_without_code", name=item.get("name"))
                continue
            location = Location(code=item["code"], name=item.get("name", ""))
            studios.setdefault(location.code, location)

        if not studios:
            raise ScrapeStructureError("Studio list has no items with a studio code")

        log.info("studios_listed", count=len(studios))
        return sorted(studios.values(), key=lambda loc: loc.code)

    async def open_studio(self, location_code: str) -> None:
        """Select a studio and wait for its schedule headers to render.

        Raises:
            ScrapeStructureError: If the studio is not in the studio list, or
                the page loaded without schedule headers.
            ScrapeTimeoutError: If the schedule does not render in time.
        """
        code = normalize_location_code(location_code)
        try:
            clicked = await self.page.evaluate(_OPEN_STUDIO_JS, [self.STUDIO_ITEM, code])
        except PlaywrightError as e:
            raise ScrapeTimeoutError(f"Page lost while selecting {code}: {e.message}")
        if not clicked:
            raise ScrapeStructureError(f"Studio {code} not found in studio list")

        await self._wait_for_layout(self.DATE_HEADER, f"Schedule for {code}")

        log.debug("studio_opened", location=code)

    async def read_columns(self) -> list[RawScheduleColumn]:
        """Read the raw text of every date column of the open schedule.

        Raises:
            ScrapeStructureError: If the schedule container is missing.
            ScrapeTimeoutError: If reading exceeds the parse timeout.
        """
        try:
            raw = await asyncio.wait_for(
                self.page.evaluate(
                    _READ_COLUMNS_JS,
                    [self.DATE_HEADER, self.SCHEDULE_COLUMN, self.LESSON_ITEM],
                ),
                timeout=self.parse_timeout_s,
            )
        except asyncio.TimeoutError:
            raise ScrapeTimeoutError("Reading schedule columns timed out")
        except PlaywrightError as e:
            raise ScrapeTimeoutError(f"Page lost while reading schedule: {e.message}")

        if raw is None:
            raise ScrapeStructureError(
                f"Schedule container {self.SCHEDULE_COLUMN!r} not found"
            )

        columns = [RawScheduleColumn.model_validate(column) for column in raw]
        log.debug(
            "schedule_columns_read",
            columns=len(columns),
            slots=sum(len(column.slots) for column in columns),
        )
        return columns

    async def _wait_for_layout(self, selector: str, what: str) -> None:
        """Wait for ``selector``; tell a slow render from a changed layout.

        A wait that times out on a fully loaded document that has no match
        at all means the selectors no longer fit the site.
        """
        try:
            await self.page.wait_for_selector(
                selector, state="attached", timeout=self.render_timeout_ms
            )
        except PlaywrightTimeoutError:
            await self._check_layout(selector, what)
            raise ScrapeTimeoutError(f"{what} did not render in time")
        except PlaywrightError as e:
            raise ScrapeTimeoutError(f"Page lost waiting for {what}: {e.message}")

    async def _check_layout(self, selector: str, what: str) -> None:
        try:
            missing = await self.page.evaluate(_SELECTOR_MISSING_JS, [selector])
        except PlaywrightError as e:
            raise ScrapeTimeoutError(f"Page lost waiting for {what}: {e.message}")
        if missing:
            raise ScrapeStructureError(
                f"{what} not found: {selector!r} matches nothing on the loaded page"
            )

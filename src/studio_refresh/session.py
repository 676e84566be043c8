"""Playwright browser session for one driver invocation.

BrowserSession owns the exclusive Chromium instance a worker scrapes with.
It launches lazily on the first page request and closes everything it opened
on every exit path, including errors raised inside the ``async with`` block.
"""

from types import TracebackType
from typing import TYPE_CHECKING

from playwright.async_api import async_playwright

from studio_refresh.config import RefreshConfig
from studio_refresh.logging import get_logger
from studio_refresh.utils import configure_page_for_scraping

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

logger = get_logger(__name__)

# Flags needed to run Chromium inside small containers and function runtimes
CHROMIUM_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
    "--no-first-run",
)


class BrowserSession:
    """Async context manager handing out configured pages from one browser."""

    def __init__(self, config: RefreshConfig) -> None:
        self.config = config
        self._playwright: "Playwright | None" = None
        self._browser: "Browser | None" = None
        self._context: "BrowserContext | None" = None

    async def __aenter__(self) -> "BrowserSession":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def is_open(self) -> bool:
        return self._context is not None

    async def _ensure_context(self) -> "BrowserContext":
        if self._context is not None:
            return self._context

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=list(CHROMIUM_ARGS),
            timeout=self.config.navigation_timeout_ms,
        )
        self._context = await self._browser.new_context(
            user_agent=self.config.user_agent,
            locale="ja-JP",
            timezone_id=self.config.site_timezone,
        )
        logger.info("browser_launched", headless=self.config.headless)
        return self._context

    async def new_page(self) -> "Page":
        """Open a fresh page with resource blocking and default timeouts applied."""
        context = await self._ensure_context()
        page = await context.new_page()
        await configure_page_for_scraping(
            page,
            navigation_timeout_ms=self.config.navigation_timeout_ms,
            default_timeout_ms=self.config.render_timeout_ms,
        )
        return page

    async def close(self) -> None:
        """Close context, browser and driver. Safe to call more than once."""
        context, browser, playwright = self._context, self._browser, self._playwright
        self._context = self._browser = self._playwright = None
        try:
            if context is not None:
                await context.close()
        finally:
            try:
                if browser is not None:
                    await browser.close()
            finally:
                if playwright is not None:
                    await playwright.stop()
                    logger.info("browser_closed")

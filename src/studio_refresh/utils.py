"""Shared scraping utilities for resource blocking and read-only guardrails."""

from playwright.async_api import Page, Route

from studio_refresh.logging import get_logger

log = get_logger(__name__)

# Stylesheets stay enabled: slot colours and visibility depend on them.
BLOCKED_RESOURCE_TYPES: frozenset[str] = frozenset({"image", "font", "media"})

# HTTP methods that modify server state. The schedule is read with GETs and
# read-only POST searches, so POST is not in this set.
_BLOCKED_METHODS: frozenset[str] = frozenset({"PUT", "DELETE", "PATCH"})


async def configure_page_for_scraping(
    page: Page,
    *,
    navigation_timeout_ms: int,
    default_timeout_ms: int,
    read_only: bool = True,
) -> None:
    """Set up a Playwright page for efficient scraping.

    Blocks images, fonts and media to cut bandwidth, and sets the default
    timeouts every later wait falls back on.

    Args:
        page: Playwright Page instance.
        navigation_timeout_ms: Default timeout for goto and load-state waits.
        default_timeout_ms: Default timeout for selector waits and actions.
        read_only: If True, also abort PUT/DELETE/PATCH requests so a scrape
                   can never change bookings.
    """

    async def _block_resources(route: Route) -> None:
        request = route.request

        if read_only and request.method in _BLOCKED_METHODS:
            log.warning(
                "blocked_mutating_request",
                method=request.method,
                url=request.url,
            )
            await route.abort("blockedbyclient")
            return

        if request.resource_type in BLOCKED_RESOURCE_TYPES:
            await route.abort()
        else:
            await route.continue_()

    await page.route("**/*", _block_resources)
    page.set_default_timeout(default_timeout_ms)
    page.set_default_navigation_timeout(navigation_timeout_ms)

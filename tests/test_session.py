from __future__ import annotations

import asyncio
from typing import Any

from studio_refresh.config import RefreshConfig
from studio_refresh.session import BrowserSession
from studio_refresh.utils import configure_page_for_scraping


class FakeRequest:
    def __init__(self, method: str, resource_type: str) -> None:
        self.method = method
        self.resource_type = resource_type
        self.url = "https://example.test/reserve"


class FakeRoute:
    def __init__(self, method: str = "GET", resource_type: str = "document") -> None:
        self.request = FakeRequest(method, resource_type)
        self.result: str | None = None

    async def abort(self, error_code: str | None = None) -> None:
        self.result = "aborted"

    async def continue_(self) -> None:
        self.result = "continued"


class RoutingPage:
    def __init__(self) -> None:
        self.handler: Any = None
        self.timeouts: dict[str, int] = {}

    async def route(self, pattern: str, handler: Any) -> None:
        self.handler = handler

    def set_default_timeout(self, timeout: int) -> None:
        self.timeouts["default"] = timeout

    def set_default_navigation_timeout(self, timeout: int) -> None:
        self.timeouts["navigation"] = timeout


def _route(page: RoutingPage, route: FakeRoute) -> str | None:
    asyncio.run(page.handler(route))
    return route.result


def test_page_setup_blocks_heavy_resources_and_mutations() -> None:
    page = RoutingPage()
    asyncio.run(
        configure_page_for_scraping(
            page, navigation_timeout_ms=60000, default_timeout_ms=30000
        )
    )

    assert page.timeouts == {"default": 30000, "navigation": 60000}
    assert _route(page, FakeRoute("GET", "document")) == "continued"
    assert _route(page, FakeRoute("GET", "stylesheet")) == "continued"
    assert _route(page, FakeRoute("POST", "xhr")) == "continued"
    assert _route(page, FakeRoute("GET", "image")) == "aborted"
    assert _route(page, FakeRoute("DELETE", "xhr")) == "aborted"


def test_page_setup_can_allow_mutations() -> None:
    page = RoutingPage()
    asyncio.run(
        configure_page_for_scraping(
            page, navigation_timeout_ms=60000, default_timeout_ms=30000, read_only=False
        )
    )

    assert _route(page, FakeRoute("PUT", "xhr")) == "continued"


def test_unused_session_closes_without_launching(config: RefreshConfig) -> None:
    async def scenario() -> bool:
        async with BrowserSession(config) as session:
            assert not session.is_open
        await session.close()
        return session.is_open

    assert asyncio.run(scenario()) is False

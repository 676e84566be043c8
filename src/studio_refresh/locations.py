"""Location directory: where the list of studios to refresh comes from."""

import json
from pathlib import Path
from typing import Protocol

from pydantic import TypeAdapter, ValidationError

from studio_refresh.config import RefreshConfig
from studio_refresh.errors import RecordValidationError
from studio_refresh.logging import get_logger
from studio_refresh.models import Location
from studio_refresh.pages.schedule import SchedulePage
from studio_refresh.session import BrowserSession

log = get_logger(__name__)

_LOCATION_LIST = TypeAdapter(list[Location])


class LocationDirectory(Protocol):
    async def list_locations(self) -> list[Location]: ...


class StaticLocationDirectory:
    """Studios read from a JSON file: ``[{"code": "gnz", "name": "銀座"}, ...]``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def list_locations(self) -> list[Location]:
        try:
            locations = _LOCATION_LIST.validate_python(
                json.loads(self.path.read_text(encoding="utf-8"))
            )
        except (json.JSONDecodeError, ValidationError) as e:
            raise RecordValidationError(f"Invalid locations file {self.path}: {e}")

        unique: dict[str, Location] = {}
        for location in locations:
            unique.setdefault(location.code, location)
        log.info("locations_loaded", source=str(self.path), count=len(unique))
        return list(unique.values())


class SiteLocationDirectory:
    """Studios scraped from the reservation page's studio list."""

    def __init__(self, session: BrowserSession, config: RefreshConfig) -> None:
        self.session = session
        self.config = config

    async def list_locations(self) -> list[Location]:
        page = await self.session.new_page()
        try:
            schedule = SchedulePage(
                page,
                render_timeout_ms=self.config.render_timeout_ms,
                parse_timeout_s=self.config.parse_timeout_s,
            )
            await schedule.navigate(self.config.reserve_url)
            return await schedule.list_studios()
        finally:
            await page.close()

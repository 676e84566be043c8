"""Normalization of raw schedule columns into lesson records.

Pure functions only: the page object reads text and attributes from the
browser, everything below turns them into validated LessonRecord models.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Literal, NamedTuple
from zoneinfo import ZoneInfo

from studio_refresh.errors import ScrapeStructureError
from studio_refresh.logging import get_logger
from studio_refresh.models import (
    LessonRecord,
    RawLessonSlot,
    RawScheduleColumn,
    normalize_location_code,
)

log = get_logger(__name__)

# "7/18(金)" -> month 7, day 18; the site never shows the year
_HEADER_DATE = re.compile(r"(\d{1,2})/(\d{1,2})")
_TIME_RANGE = re.compile(r"(\d{1,2}):(\d{2})\s*[-–~〜]\s*(\d{1,2}):(\d{2})")
_REMAINING_SEATS = re.compile(r"残り\s*(\d+)\s*(?:人|席)")
_FULL_MARKERS: tuple[str, ...] = ("満席", "キャンセル待ち")
# BSWi before BSW so the longer code wins
_PROGRAM_PREFIX = re.compile(r"^(BSWi|BSL|BSB|BSW|BB1|BB2|BB3)")


class Availability(NamedTuple):
    is_available: bool
    available_slots: int
    total_slots: int
    source: Literal["status_text", "flag"]


def parse_header_date(text: str, reference: date) -> date | None:
    """Resolve a year-less "M/D" header to the date closest to ``reference``.

    Handles the December -> January wrap of a two-week schedule.
    """
    match = _HEADER_DATE.search(text)
    if not match:
        return None
    month, day = int(match.group(1)), int(match.group(2))

    candidates = []
    for year in (reference.year - 1, reference.year, reference.year + 1):
        try:
            candidates.append(date(year, month, day))
        except ValueError:
            continue
    if not candidates:
        return None
    return min(candidates, key=lambda d: abs((d - reference).days))


def parse_time_range(text: str) -> tuple[str, str] | None:
    """Extract zero-padded ("HH:MM", "HH:MM") from a label like "7:00 - 7:45"."""
    match = _TIME_RANGE.search(text)
    if not match:
        return None
    start_h, start_m, end_h, end_m = match.groups()
    return f"{int(start_h):02d}:{start_m}", f"{int(end_h):02d}:{end_m}"


def program_of(lesson_name: str) -> str:
    match = _PROGRAM_PREFIX.match(lesson_name.strip())
    return match.group(1) if match else "OTHER"


def derive_availability(
    slot: RawLessonSlot,
    *,
    placeholder_slots: int,
    total_slots: int,
) -> Availability:
    """Turn the slot's availability signal into seat counts.

    A status text is preferred: "残り2人" gives exactly 2 and "満席" gives 0.
    Without one, only the seat-disabled flag is known, so an available slot
    gets ``placeholder_slots`` (some seats, count unknown) and a disabled one 0.
    Total capacity is always the nominal ``total_slots``.
    """
    status = (slot.status_text or "").strip()
    if status:
        match = _REMAINING_SEATS.search(status)
        if match:
            remaining = int(match.group(1))
            return Availability(remaining > 0, remaining, total_slots, "status_text")
        if any(marker in status for marker in _FULL_MARKERS):
            return Availability(False, 0, total_slots, "status_text")

    if slot.is_disabled:
        return Availability(False, 0, total_slots, "flag")
    return Availability(True, placeholder_slots, total_slots, "flag")


def select_column(
    columns: list[RawScheduleColumn],
    target_date: date,
    reference: date,
) -> RawScheduleColumn | None:
    """Pick the column whose header resolves to ``target_date``."""
    for column in columns:
        if parse_header_date(column.date_text, reference) == target_date:
            return column
    return None


def normalize_slots(
    location_code: str,
    target_date: date,
    slots: list[RawLessonSlot],
    *,
    timezone: str,
    placeholder_slots: int,
    total_slots: int,
    ttl_days: int,
    now: datetime,
) -> list[LessonRecord]:
    """Build lesson records for one studio-day, sorted by start time.

    Slots without a parseable time or a name are skipped. An empty slot
    list is a valid closed day and returns [].

    Raises:
        ScrapeStructureError: If slots exist but none could be parsed, which
            means the slot markup no longer matches what this parser expects.
    """
    location_code = normalize_location_code(location_code)
    tz = ZoneInfo(timezone)
    ttl = int((now + timedelta(days=ttl_days)).timestamp())

    records: dict[str, LessonRecord] = {}
    for slot in slots:
        times = parse_time_range(slot.time_text)
        name = slot.lesson_name.strip()
        if times is None or not name:
            log.debug(
                "slot_skipped",
                location=location_code,
                time_text=slot.time_text,
                lesson_name=slot.lesson_name,
            )
            continue

        start, end = times
        hour, minute = (int(part) for part in start.split(":"))
        availability = derive_availability(
            slot, placeholder_slots=placeholder_slots, total_slots=total_slots
        )
        record = LessonRecord(
            location_code=location_code,
            lesson_date_time=datetime.combine(target_date, time(hour, minute), tzinfo=tz),
            lesson_date=target_date,
            start_time=start,
            end_time=end,
            lesson_name=name,
            program=program_of(name),
            instructor=slot.instructor.strip(),
            is_available=availability.is_available,
            available_slots=availability.available_slots,
            total_slots=availability.total_slots,
            availability_source=availability.source,
            background_color=slot.background_color or None,
            text_color=slot.text_color or None,
            last_updated=now,
            ttl=ttl,
        )
        # Same slot rendered twice keeps the last occurrence
        records[record.slot_id] = record

    if slots and not records:
        raise ScrapeStructureError(
            f"{len(slots)} lesson slots for {location_code} on {target_date} "
            "but none had a parseable time and name"
        )

    return sorted(records.values(), key=lambda r: (r.lesson_date_time, r.lesson_name))

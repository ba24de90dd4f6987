"""
Service date assignment.

A restaurant's business day is its local calendar day, so every provider
timestamp is converted into the restaurant's IANA timezone before the date is
taken. Near midnight this differs from the naive UTC date.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from posledger.app.config import DEFAULT_TIMEZONE
from posledger.app.errors import ProviderDataError


logger = logging.getLogger(__name__)

# epoch values above this are milliseconds (year 5138 in seconds)
_MILLIS_THRESHOLD = 100_000_000_000

_TICKET_TIME = re.compile(
    r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})\s+(\d{1,2}):(\d{2})\s*(AM|PM)\s*$",
    re.IGNORECASE,
)


def resolve_timezone(name: Optional[str], default: str = DEFAULT_TIMEZONE) -> ZoneInfo:
    if name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("unknown restaurant timezone %s; falling back to %s", name, default)
    return ZoneInfo(default)


def parse_timestamp(value: Any, *, field: str = "timestamp") -> Optional[datetime]:
    """Epoch seconds/millis or ISO-8601 into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise ProviderDataError(f"{field} must be a timestamp, got bool")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _MILLIS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise ProviderDataError(f"{field} is out of range: {value!r}") from exc
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text), field=field)
        # Toast emits "+0000" offsets without a colon.
        text = text.replace("Z", "+00:00")
        match = re.search(r"([+-]\d{2})(\d{2})$", text)
        if match and ":" not in text[-6:]:
            text = text[: match.start()] + f"{match.group(1)}:{match.group(2)}"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ProviderDataError(f"{field} is not a valid timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    raise ProviderDataError(f"{field} has unsupported type {type(value).__name__}")


def service_date_for(moment: datetime, tz: ZoneInfo) -> date:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz).date()


def local_to_utc(local: datetime, tz: ZoneInfo) -> datetime:
    return local.replace(tzinfo=tz).astimezone(timezone.utc)


def parse_local_ticket_time(value: Any, tz: ZoneInfo) -> Optional[datetime]:
    """Lighthouse report times look like "01/31/2024 9:05PM" in restaurant local time."""
    if not isinstance(value, str):
        return None
    match = _TICKET_TIME.match(value)
    if not match:
        return None
    month, day, year, hour, minute, meridiem = match.groups()
    hour_24 = int(hour) % 12
    if meridiem.upper() == "PM":
        hour_24 += 12
    try:
        local = datetime(int(year), int(month), int(day), hour_24, int(minute))
    except ValueError:
        return None
    return local_to_utc(local, tz)


def local_day_bounds(day: date, tz: ZoneInfo) -> tuple[datetime, datetime]:
    following = day + timedelta(days=1)
    start = local_to_utc(datetime(day.year, day.month, day.day), tz)
    end = local_to_utc(datetime(following.year, following.month, following.day), tz)
    return start, end

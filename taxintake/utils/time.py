from __future__ import annotations

import datetime as dt
from functools import lru_cache
from typing import Any
from zoneinfo import ZoneInfo

UTC = dt.timezone.utc

CONTACT_TIMEZONE = "America/New_York"


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


@lru_cache(maxsize=32)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def ensure_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_datetime(value: Any) -> dt.datetime | None:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        # Support "Z" suffix.
        s = s.replace("Z", "+00:00")
        try:
            return dt.datetime.fromisoformat(s)
        except ValueError:
            return None
    return None


def isoformat_utc(value: dt.datetime | None) -> str | None:
    """
    Render as ISO-8601 UTC with a trailing "Z" (millisecond precision).
    """
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_local(value: Any, fmt: str = "%Y-%m-%d %H:%M:%S", tz_name: str = CONTACT_TIMEZONE) -> str:
    d = parse_datetime(value)
    if d is None:
        return str(value)
    return ensure_utc(d).astimezone(_zone(tz_name)).strftime(fmt)

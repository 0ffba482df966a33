from __future__ import annotations

import datetime as dt

from sqlalchemy.types import DateTime, TypeDecorator

from taxintake.utils.time import ensure_utc


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that is always UTC on both sides.

    Values are written as naive UTC (SQLite has no zone-aware type) and come back
    tz-aware, so token expiry and rate-limit windows compare correctly.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: dt.datetime | None, dialect):
        return None if value is None else ensure_utc(value).replace(tzinfo=None)

    def process_result_value(self, value: dt.datetime | None, dialect):
        return None if value is None else ensure_utc(value)

from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from taxintake.db.models import RateLimitBucket
from taxintake.utils.time import ensure_utc, utcnow

log = logging.getLogger(__name__)


def hit(
    session: Session,
    key: str,
    *,
    limit: int,
    window_s: int,
    now: dt.datetime | None = None,
) -> bool:
    """
    Fixed-window counter stored in the database.

    Returns False (and leaves the count alone) once `limit` hits have been recorded in the
    current window; otherwise records the hit and returns True. The caller commits.
    """
    now = ensure_utc(now or utcnow())
    bucket = session.execute(select(RateLimitBucket).where(RateLimitBucket.key == key)).scalars().first()
    if bucket is None:
        session.add(RateLimitBucket(key=key, count=1, window_started_at=now))
        session.flush()
        return True
    if now - ensure_utc(bucket.window_started_at) >= dt.timedelta(seconds=window_s):
        bucket.count = 1
        bucket.window_started_at = now
        session.flush()
        return True
    if bucket.count >= limit:
        log.info("Rate limit exceeded key=%s count=%d window_s=%d", key, bucket.count, window_s)
        return False
    bucket.count += 1
    session.flush()
    return True

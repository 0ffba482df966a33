from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taxintake.core.config import Settings
from taxintake.core.errors import StoreError
from taxintake.core.tokens import check_token, lookup_token
from taxintake.db.models import TaxReturn
from taxintake.utils.time import isoformat_utc, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntakeSessionView:
    tax_return_id: str
    tax_year: int
    status: str
    locale: str
    first_name: str
    last_name: str
    email: str
    mobile: Optional[str]
    expires_at: dt.datetime
    one_time: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "tax_return_id": self.tax_return_id,
            "tax_year": self.tax_year,
            "status": self.status,
            "locale": self.locale,
            "client": {
                "first_name": self.first_name,
                "last_name": self.last_name,
                "email": self.email,
                "mobile": self.mobile,
            },
            "expires_at": isoformat_utc(self.expires_at),
            "one_time": self.one_time,
        }


def promote_to_in_progress(session: Session, tax_return_id: str) -> bool:
    """
    invited -> in_progress. Keyed on the current status so repeats and races are no-ops.
    """
    result = session.execute(
        update(TaxReturn)
        .where(TaxReturn.id == tax_return_id, TaxReturn.status == "invited")
        .values(status="in_progress", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def validate_session(
    session: Session,
    raw_token: str | None,
    *,
    settings: Settings,
    now: dt.datetime | None = None,
) -> IntakeSessionView:
    """
    Resolve a raw token to its tax return and client for form prefill.

    Never consumes the token; only a successful submission does.
    """
    pepper = settings.require_pepper()
    try:
        ctx = lookup_token(session, raw_token, pepper)
        check_token(ctx.token, now=now)
        tr = ctx.tax_return
        client = ctx.client
        promoted = promote_to_in_progress(session, tr.id)
        # The bulk update bypasses the identity map, so the loaded status is stale.
        view = IntakeSessionView(
            tax_return_id=tr.id,
            tax_year=tr.tax_year,
            status="in_progress" if promoted else tr.status,
            locale=client.locale,
            first_name=client.first_name,
            last_name=client.last_name,
            email=client.email,
            mobile=client.mobile,
            expires_at=ctx.token.expires_at,
            one_time=bool(ctx.token.one_time),
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("Session validation failed")
        raise StoreError() from e

    if promoted:
        log.info("Tax return %s moved to in_progress", view.tax_return_id)
    return view

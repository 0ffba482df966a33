from __future__ import annotations

import datetime as dt
import logging
import urllib.parse
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taxintake.core.config import Settings
from taxintake.core.errors import StoreError, ValidationError
from taxintake.core.schemas import InviteRequest, first_error_message, is_blank
from taxintake.core.tokens import issue_token, revoke_tax_return_tokens, revoke_token
from taxintake.db.audit import INVITE_CREATED, TOKEN_REVOKED, log_event
from taxintake.db.models import Client, TaxReturn
from taxintake.utils.logs import mask_secret
from taxintake.utils.time import isoformat_utc, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestMeta:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    actor: Optional[str] = None


@dataclass(frozen=True)
class InviteResult:
    intake_url: str
    tax_return_id: str
    expires_at: dt.datetime
    one_time: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "intake_url": self.intake_url,
            "tax_return_id": self.tax_return_id,
            "expires_at": isoformat_utc(self.expires_at),
            "one_time": self.one_time,
        }


def parse_invite_request(body: Any) -> InviteRequest:
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    year = body.get("tax_year")
    if not isinstance(year, (int, float)) or isinstance(year, bool) or not year > 0:
        raise ValidationError("tax_year is required (number)")
    if is_blank(body.get("first_name")) or is_blank(body.get("last_name")):
        raise ValidationError("first_name and last_name are required")
    if is_blank(body.get("email")) or not isinstance(body.get("email"), str):
        raise ValidationError("email is required")
    if body.get("locale") is not None and body.get("locale") not in ("es", "en"):
        raise ValidationError("locale must be 'es' or 'en'")
    try:
        return InviteRequest.model_validate(body)
    except PydanticValidationError as e:
        raise ValidationError(first_error_message(e)) from e


def intake_url(site_origin: str, locale: str, raw_token: str) -> str:
    path = "/en/intake" if locale == "en" else "/es/intake"
    return f"{site_origin.rstrip('/')}{path}?t={urllib.parse.quote(raw_token, safe='')}"


def _merge_client(client: Client, req: InviteRequest) -> None:
    # Non-destructive refresh: blank incoming values never clobber stored ones.
    if req.first_name:
        client.first_name = req.first_name
    if req.last_name:
        client.last_name = req.last_name
    if req.mobile:
        client.mobile = req.mobile
    if req.occupation:
        client.occupation = req.occupation
    if req.locale:
        client.locale = req.locale


def find_client_by_email(session: Session, email: str) -> Client | None:
    clean = email.strip().lower()
    return session.execute(select(Client).where(func.lower(Client.email) == clean)).scalars().first()


def issue_invitation(
    session: Session,
    req: InviteRequest,
    *,
    settings: Settings,
    meta: RequestMeta | None = None,
    now: dt.datetime | None = None,
) -> InviteResult:
    """
    Find-or-create the client and the (client, year) tax return, then always mint a new token.

    Commits on success; rolls back and raises StoreError if the database fails.
    """
    pepper = settings.require_pepper()
    meta = meta or RequestMeta()
    now = now or utcnow()
    expires_at = now + dt.timedelta(hours=float(req.expires_in_hours))

    try:
        client = find_client_by_email(session, req.email)
        if client is None:
            client = Client(
                first_name=req.first_name,
                last_name=req.last_name,
                email=req.email,
                mobile=req.mobile,
                occupation=req.occupation,
                locale=req.locale,
                ssn_last4="0000",
            )
            session.add(client)
            session.flush()
        else:
            _merge_client(client, req)

        tax_return = (
            session.execute(
                select(TaxReturn).where(TaxReturn.client_id == client.id, TaxReturn.tax_year == req.tax_year)
            )
            .scalars()
            .first()
        )
        if tax_return is None:
            tax_return = TaxReturn(client_id=client.id, tax_year=req.tax_year, status="invited")
            session.add(tax_return)
            session.flush()

        raw, token = issue_token(
            session,
            tax_return_id=tax_return.id,
            expires_at=expires_at,
            one_time=req.one_time,
            pepper=pepper,
        )
        log_event(
            session,
            event=INVITE_CREATED,
            tax_return_id=tax_return.id,
            actor=meta.actor,
            ip=meta.ip,
            user_agent=meta.user_agent,
            details={
                "locale": req.locale,
                "tax_year": req.tax_year,
                "expires_in_hours": req.expires_in_hours,
                "one_time": req.one_time,
            },
        )
        # Read before commit: expired attributes would otherwise reload outside this block.
        result = InviteResult(
            intake_url=intake_url(settings.site_origin, req.locale, raw),
            tax_return_id=tax_return.id,
            expires_at=token.expires_at,
            one_time=bool(token.one_time),
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("Invitation failed for tax_year=%s", req.tax_year)
        raise StoreError() from e

    log.info(
        "Invitation issued tax_return=%s year=%s token=%s one_time=%s",
        result.tax_return_id,
        req.tax_year,
        mask_secret(raw),
        req.one_time,
    )
    return result


def revoke_access(
    session: Session,
    *,
    settings: Settings,
    token: str | None = None,
    tax_return_id: str | None = None,
    meta: RequestMeta | None = None,
) -> tuple[str, int]:
    """
    Revoke one token (by raw value) or every live token of a tax return. Permanent.

    Returns (tax_return_id, number of tokens newly revoked).
    """
    if not token and not tax_return_id:
        raise ValidationError("token or tax_return_id is required")
    meta = meta or RequestMeta()
    try:
        if token:
            ctx = revoke_token(session, token, settings.require_pepper())
            target, revoked = ctx.tax_return.id, 1
        else:
            target = str(tax_return_id)
            revoked = revoke_tax_return_tokens(session, target)
        log_event(
            session,
            event=TOKEN_REVOKED,
            tax_return_id=target,
            actor=meta.actor,
            ip=meta.ip,
            user_agent=meta.user_agent,
            details={"revoked": revoked, "by": "token" if token else "tax_return"},
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("Revocation failed")
        raise StoreError() from e
    log.info("Revoked %d token(s) for tax_return=%s", revoked, target)
    return target, revoked

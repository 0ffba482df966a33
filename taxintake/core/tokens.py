from __future__ import annotations

import datetime as dt
import hashlib
import logging
import secrets
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from taxintake.core.errors import InvalidToken, MissingToken, TokenAlreadyUsed, TokenExpired, TokenRevoked
from taxintake.db.models import Client, IntakeToken, TaxReturn
from taxintake.utils.time import ensure_utc, utcnow

log = logging.getLogger(__name__)

TOKEN_BYTES = 32


def generate_raw_token() -> str:
    # token_urlsafe is base64url without "=" padding.
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(raw: str, pepper: str) -> str:
    return hashlib.sha256((raw + pepper).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class TokenContext:
    token: IntakeToken
    tax_return: TaxReturn
    client: Client


def issue_token(
    session: Session,
    *,
    tax_return_id: str,
    expires_at: dt.datetime,
    one_time: bool,
    pepper: str,
) -> tuple[str, IntakeToken]:
    """
    Mint a token for a tax return. The raw value is returned once and never persisted.
    """
    raw = generate_raw_token()
    row = IntakeToken(
        tax_return_id=tax_return_id,
        token_hash=hash_token(raw, pepper),
        expires_at=ensure_utc(expires_at),
        one_time=bool(one_time),
    )
    session.add(row)
    session.flush()
    return raw, row


def lookup_token(session: Session, raw: str | None, pepper: str) -> TokenContext:
    if raw is None or raw.strip() == "":
        raise MissingToken()
    stmt = (
        select(IntakeToken, TaxReturn, Client)
        .join(TaxReturn, TaxReturn.id == IntakeToken.tax_return_id)
        .join(Client, Client.id == TaxReturn.client_id)
        .where(IntakeToken.token_hash == hash_token(raw, pepper))
    )
    row = session.execute(stmt).first()
    if row is None:
        raise InvalidToken()
    token, tax_return, client = row
    return TokenContext(token=token, tax_return=tax_return, client=client)


def check_token(token: IntakeToken, *, now: dt.datetime | None = None) -> None:
    """
    Raise if the token cannot be used. Expiry is checked first so an expired token
    always reports TokenExpired, whatever its revoked/used state.
    """
    now = ensure_utc(now or utcnow())
    if now > ensure_utc(token.expires_at):
        raise TokenExpired()
    if token.revoked_at is not None:
        raise TokenRevoked()
    if token.one_time and token.used_at is not None:
        raise TokenAlreadyUsed()


def consume_token(session: Session, token_id: str, *, now: dt.datetime | None = None) -> None:
    """
    Mark a one-time token used. The write is conditional on used_at still being NULL,
    so of two racing submissions at most one sees a row updated.
    """
    now = ensure_utc(now or utcnow())
    result = session.execute(
        update(IntakeToken)
        .where(
            IntakeToken.id == token_id,
            IntakeToken.used_at.is_(None),
            IntakeToken.revoked_at.is_(None),
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        log.info("One-time token %s lost the consumption race", token_id)
        raise TokenAlreadyUsed()


def revoke_token(session: Session, raw: str | None, pepper: str, *, now: dt.datetime | None = None) -> TokenContext:
    ctx = lookup_token(session, raw, pepper)
    if ctx.token.revoked_at is None:
        ctx.token.revoked_at = ensure_utc(now or utcnow())
        session.flush()
    return ctx


def revoke_tax_return_tokens(session: Session, tax_return_id: str, *, now: dt.datetime | None = None) -> int:
    result = session.execute(
        update(IntakeToken)
        .where(IntakeToken.tax_return_id == tax_return_id, IntakeToken.revoked_at.is_(None))
        .values(revoked_at=ensure_utc(now or utcnow()))
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)

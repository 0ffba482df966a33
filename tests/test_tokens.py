from __future__ import annotations

import datetime as dt
import hashlib
import re

import pytest
from sqlalchemy import select

from taxintake.core.errors import InvalidToken, MissingToken, TokenAlreadyUsed, TokenExpired, TokenRevoked
from taxintake.core.tokens import (
    check_token,
    consume_token,
    generate_raw_token,
    hash_token,
    issue_token,
    lookup_token,
    revoke_tax_return_tokens,
    revoke_token,
)
from taxintake.db.models import Client, IntakeToken, TaxReturn
from taxintake.utils.time import UTC

PEPPER = "pepper"
NOW = dt.datetime(2025, 2, 1, 12, 0, tzinfo=UTC)


def _tax_return(session) -> TaxReturn:
    client = Client(first_name="Ana", last_name="Pérez", email="ana@example.com")
    session.add(client)
    session.flush()
    tr = TaxReturn(client_id=client.id, tax_year=2024)
    session.add(tr)
    session.flush()
    return tr


def test_raw_token_is_urlsafe_base64_of_32_bytes():
    raw = generate_raw_token()
    assert re.fullmatch(r"[A-Za-z0-9_-]{43}", raw)
    assert generate_raw_token() != raw


def test_hash_is_sha256_of_token_plus_pepper():
    assert hash_token("abc", "xyz") == hashlib.sha256(b"abcxyz").hexdigest()
    assert hash_token("abc", "xyz") != hash_token("abc", "other")


def test_issue_persists_only_the_hash(session):
    tr = _tax_return(session)
    raw, row = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    assert row.token_hash == hash_token(raw, PEPPER)
    stored = session.execute(select(IntakeToken.token_hash)).scalars().all()
    assert raw not in stored


def test_lookup_resolves_token_tax_return_and_client(session):
    tr = _tax_return(session)
    raw, row = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    ctx = lookup_token(session, raw, PEPPER)
    assert ctx.token.id == row.id
    assert ctx.tax_return.id == tr.id
    assert ctx.client.email == "ana@example.com"


def test_lookup_rejects_missing_and_unknown_tokens(session):
    tr = _tax_return(session)
    raw, _ = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    with pytest.raises(MissingToken):
        lookup_token(session, None, PEPPER)
    with pytest.raises(MissingToken):
        lookup_token(session, "   ", PEPPER)
    with pytest.raises(InvalidToken):
        lookup_token(session, "not-a-token", PEPPER)
    with pytest.raises(InvalidToken):
        lookup_token(session, raw, "wrong-pepper")


def test_check_accepts_live_token():
    token = IntakeToken(expires_at=NOW + dt.timedelta(hours=1), one_time=True)
    check_token(token, now=NOW)


def test_check_expiry_wins_over_revoked_and_used():
    token = IntakeToken(
        expires_at=NOW - dt.timedelta(seconds=1),
        one_time=True,
        revoked_at=NOW - dt.timedelta(hours=2),
        used_at=NOW - dt.timedelta(hours=3),
    )
    with pytest.raises(TokenExpired):
        check_token(token, now=NOW)


def test_check_revoked_before_used():
    token = IntakeToken(
        expires_at=NOW + dt.timedelta(hours=1),
        one_time=True,
        revoked_at=NOW,
        used_at=NOW,
    )
    with pytest.raises(TokenRevoked):
        check_token(token, now=NOW)


def test_check_used_only_matters_for_one_time_tokens():
    used = NOW - dt.timedelta(minutes=5)
    with pytest.raises(TokenAlreadyUsed):
        check_token(IntakeToken(expires_at=NOW + dt.timedelta(hours=1), one_time=True, used_at=used), now=NOW)
    check_token(IntakeToken(expires_at=NOW + dt.timedelta(hours=1), one_time=False, used_at=used), now=NOW)


def test_check_treats_naive_expiry_as_utc():
    token = IntakeToken(expires_at=dt.datetime(2025, 2, 1, 11, 0), one_time=True)
    with pytest.raises(TokenExpired):
        check_token(token, now=NOW)


def test_consume_is_single_winner(session):
    tr = _tax_return(session)
    _, row = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    consume_token(session, row.id, now=NOW)
    with pytest.raises(TokenAlreadyUsed):
        consume_token(session, row.id, now=NOW)
    session.commit()
    assert session.get(IntakeToken, row.id).used_at == NOW


def test_consume_refuses_revoked_token(session):
    tr = _tax_return(session)
    raw, row = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    revoke_token(session, raw, PEPPER, now=NOW)
    with pytest.raises(TokenAlreadyUsed):
        consume_token(session, row.id, now=NOW)


def test_revoke_is_idempotent_and_keeps_first_timestamp(session):
    tr = _tax_return(session)
    raw, row = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    revoke_token(session, raw, PEPPER, now=NOW)
    revoke_token(session, raw, PEPPER, now=NOW + dt.timedelta(days=1))
    assert row.revoked_at == NOW


def test_revoke_tax_return_tokens_counts_only_live_ones(session):
    tr = _tax_return(session)
    raw, _ = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=False, pepper=PEPPER)
    revoke_token(session, raw, PEPPER, now=NOW)
    assert revoke_tax_return_tokens(session, tr.id, now=NOW) == 2
    assert revoke_tax_return_tokens(session, tr.id, now=NOW) == 0
    session.commit()
    rows = session.execute(select(IntakeToken)).scalars().all()
    assert all(r.revoked_at is not None for r in rows)


def test_lookup_hashes_token_exactly_as_received(session):
    tr = _tax_return(session)
    raw, _ = issue_token(session, tax_return_id=tr.id, expires_at=NOW, one_time=True, pepper=PEPPER)
    with pytest.raises(InvalidToken):
        lookup_token(session, f" {raw} ", PEPPER)
    with pytest.raises(InvalidToken):
        lookup_token(session, raw + "\n", PEPPER)

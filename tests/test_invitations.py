from __future__ import annotations

import datetime as dt

import pytest
from sqlalchemy import func, select

from taxintake.core.errors import ConfigError, InvalidToken, TokenRevoked, ValidationError
from taxintake.core.intake_session import validate_session
from taxintake.core.invitations import (
    RequestMeta,
    intake_url,
    issue_invitation,
    parse_invite_request,
    revoke_access,
)
from taxintake.db.audit import INVITE_CREATED, TOKEN_REVOKED
from taxintake.db.models import AuditEvent, Client, IntakeToken, TaxReturn
from taxintake.utils.time import UTC


@pytest.mark.parametrize(
    "body,message",
    [
        (None, "Invalid JSON body"),
        ([1, 2], "Invalid JSON body"),
        ({"first_name": "A", "last_name": "B", "email": "a@b.co"}, "tax_year is required (number)"),
        ({"tax_year": 2024, "last_name": "B", "email": "a@b.co"}, "first_name and last_name are required"),
        ({"tax_year": 2024, "first_name": "A", "last_name": "  ", "email": "a@b.co"}, "first_name and last_name are required"),
        ({"tax_year": 2024, "first_name": "A", "last_name": "B"}, "email is required"),
        ({"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "a@b.co", "locale": "fr"}, "locale must be 'es' or 'en'"),
    ],
)
def test_parse_invite_request_messages(body, message):
    with pytest.raises(ValidationError) as e:
        parse_invite_request(body)
    assert e.value.message == message


def test_parse_invite_request_defaults_and_normalization():
    req = parse_invite_request(
        {"tax_year": 2024, "first_name": " Ana ", "last_name": "Pérez", "email": " Ana@Example.COM ", "mobile": ""}
    )
    assert req.email == "ana@example.com"
    assert req.first_name == "Ana"
    assert req.locale == "es"
    assert req.expires_in_hours == 72
    assert req.one_time is True
    assert req.mobile is None


def test_parse_invite_request_rejects_bad_email_and_window():
    with pytest.raises(ValidationError, match="email"):
        parse_invite_request({"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "nope"})
    with pytest.raises(ValidationError, match="expires_in_hours"):
        parse_invite_request(
            {"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "a@b.co", "expires_in_hours": 0}
        )


def test_intake_url_per_locale():
    assert intake_url("https://example.test/", "en", "abc_-1") == "https://example.test/en/intake?t=abc_-1"
    assert intake_url("https://example.test", "es", "abc") == "https://example.test/es/intake?t=abc"


def test_issue_creates_client_return_token_and_audit(session, settings, invite):
    now = dt.datetime(2025, 1, 1, tzinfo=UTC)
    raw, result = invite(now=now, locale="en")

    assert result.intake_url == f"https://example.test/en/intake?t={raw}"
    assert result.as_dict()["expires_at"] == "2025-01-04T00:00:00.000Z"
    assert result.one_time is True

    tr = session.get(TaxReturn, result.tax_return_id)
    assert tr.status == "invited"
    assert tr.tax_year == 2024
    assert tr.client.email == "ana@example.com"
    assert tr.client.locale == "en"

    events = session.execute(select(AuditEvent)).scalars().all()
    assert [e.event for e in events] == [INVITE_CREATED]
    assert events[0].details_json == {"locale": "en", "tax_year": 2024, "expires_in_hours": 72, "one_time": True}


def test_reinvite_reuses_return_and_mints_fresh_token(session, invite):
    raw1, first = invite()
    raw2, second = invite(email="ANA@example.com")
    assert first.tax_return_id == second.tax_return_id
    assert raw1 != raw2
    assert session.execute(select(func.count()).select_from(Client)).scalar_one() == 1
    assert session.execute(select(func.count()).select_from(IntakeToken)).scalar_one() == 2


def test_new_year_gets_its_own_return(invite):
    _, a = invite(tax_year=2023)
    _, b = invite(tax_year=2024)
    assert a.tax_return_id != b.tax_return_id


def test_reinvite_merges_client_without_clobbering(session, invite):
    invite(mobile="305-555-0100", occupation="Nurse")
    invite(first_name="Ana María", mobile="")
    client = session.execute(select(Client)).scalars().one()
    assert client.first_name == "Ana María"
    assert client.mobile == "305-555-0100"
    assert client.occupation == "Nurse"


def test_issue_requires_pepper(session, settings):
    settings.token_pepper = None
    req = parse_invite_request({"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "a@b.co"})
    with pytest.raises(ConfigError):
        issue_invitation(session, req, settings=settings)


def test_revoke_access_by_token(session, settings, invite):
    raw, result = invite()
    target, revoked = revoke_access(session, settings=settings, token=raw, meta=RequestMeta(actor="ops"))
    assert (target, revoked) == (result.tax_return_id, 1)
    with pytest.raises(TokenRevoked):
        validate_session(session, raw, settings=settings)

    event = session.execute(select(AuditEvent).where(AuditEvent.event == TOKEN_REVOKED)).scalars().one()
    assert event.actor == "ops"
    assert event.details_json == {"revoked": 1, "by": "token"}


def test_revoke_access_by_tax_return(session, settings, invite):
    invite()
    _, result = invite()
    target, revoked = revoke_access(session, settings=settings, tax_return_id=result.tax_return_id)
    assert target == result.tax_return_id
    assert revoked == 2


def test_revoke_access_needs_a_target(session, settings):
    with pytest.raises(ValidationError):
        revoke_access(session, settings=settings)
    with pytest.raises(InvalidToken):
        revoke_access(session, settings=settings, token="unknown")


@pytest.mark.parametrize("hours", [float("inf"), float("nan"), 1e9, 24 * 366 + 1, -1])
def test_expiry_window_must_be_finite_and_bounded(hours):
    body = {"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "a@b.co", "expires_in_hours": hours}
    with pytest.raises(ValidationError, match="expires_in_hours"):
        parse_invite_request(body)


def test_longest_expiry_window_is_accepted(session, settings):
    now = dt.datetime(2025, 1, 1, tzinfo=UTC)
    req = parse_invite_request(
        {"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "a@b.co", "expires_in_hours": 24 * 366}
    )
    result = issue_invitation(session, req, settings=settings, now=now)
    assert result.expires_at == now + dt.timedelta(days=366)


@pytest.mark.parametrize("year", [0, -2024, "2025", 2024.5, True, float("nan")])
def test_tax_year_must_be_a_positive_integer(year):
    body = {"tax_year": year, "first_name": "A", "last_name": "B", "email": "a@b.co"}
    with pytest.raises(ValidationError, match="tax_year"):
        parse_invite_request(body)


def test_invitation_result_does_not_reload_after_commit(session, settings, monkeypatch):
    real_commit = session.commit

    def commit_and_detach():
        real_commit()
        session.expunge_all()

    monkeypatch.setattr(session, "commit", commit_and_detach)
    now = dt.datetime(2025, 1, 1, tzinfo=UTC)
    req = parse_invite_request({"tax_year": 2024, "first_name": "A", "last_name": "B", "email": "a@b.co"})
    result = issue_invitation(session, req, settings=settings, now=now)
    assert result.as_dict()["expires_at"] == "2025-01-04T00:00:00.000Z"
    assert result.one_time is True

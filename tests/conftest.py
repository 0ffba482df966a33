from __future__ import annotations

import sys
import urllib.parse
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from taxintake.core.config import Settings
from taxintake.db.models import Base


@pytest.fixture()
def session() -> Session:
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)
    with SessionLocal() as s:
        yield s


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        token_pepper="test-pepper",
        app_secret_key="test-secret-key",
        site_origin="https://example.test/",
        turnstile_secret="turnstile-secret",
        resend_api_key="re_test_key",
        resend_from="Intake <intake@example.test>",
        contact_to="owner@example.test, backup@example.test",
    )


def token_from_url(url: str) -> str:
    return urllib.parse.parse_qs(urllib.parse.urlparse(url).query)["t"][0]


@pytest.fixture()
def invite(session: Session, settings: Settings):
    """
    Factory: issue an invitation and return (raw_token, InviteResult).
    """
    from taxintake.core.invitations import issue_invitation, parse_invite_request

    def _invite(**overrides):
        body = {
            "tax_year": 2024,
            "first_name": "Ana",
            "last_name": "Pérez",
            "email": "ana@example.com",
            "locale": "es",
        }
        body.update(overrides)
        now = body.pop("now", None)
        result = issue_invitation(session, parse_invite_request(body), settings=settings, now=now)
        return token_from_url(result.intake_url), result

    return _invite


@pytest.fixture()
def api_sessions():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, class_=Session, autoflush=False, autocommit=False)


@pytest.fixture()
def api(api_sessions, settings: Settings):
    from fastapi.testclient import TestClient

    from taxintake.app.deps import db_session, get_settings
    from taxintake.app.main import app

    def _db():
        s = api_sessions()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[db_session] = _db
    app.dependency_overrides[get_settings] = lambda: settings
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()

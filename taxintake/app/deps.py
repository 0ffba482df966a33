from __future__ import annotations

from collections.abc import Generator

from sqlalchemy.orm import Session

from taxintake.core.config import Settings, load_settings
from taxintake.db.session import get_session


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def get_settings() -> Settings:
    # Re-read per request so a rotated environment value is picked up without restart.
    return load_settings()

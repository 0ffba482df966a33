from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine

from taxintake.db.models import Base
from taxintake.db.session import get_engine


def init_db(engine: Engine | None = None) -> None:
    engine = engine or get_engine()
    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)

from __future__ import annotations

import os
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from taxintake.app.deps import get_settings
from taxintake.core.config import Settings


security = HTTPBasic(auto_error=False)


def auth_enabled(settings: Settings) -> bool:
    return settings.app_password is not None


def get_actor_from_request(request: Request) -> str:
    return request.headers.get("X-Actor") or os.environ.get("APP_ACTOR_DEFAULT", "local")


def require_actor(
    request: Request,
    credentials: Optional[HTTPBasicCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> str:
    expected = settings.app_password
    if expected is None:
        return get_actor_from_request(request)

    if credentials is None or not secrets.compare_digest(
        credentials.password.encode("utf-8"), expected.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username or "admin"


def auth_banner_message(settings: Settings) -> Optional[str]:
    if auth_enabled(settings):
        return None
    return "WARNING: APP_PASSWORD is not set. Admin endpoints are unauthenticated; run locally only."

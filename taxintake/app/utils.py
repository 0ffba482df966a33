from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from fastapi import Request

from taxintake.core.invitations import RequestMeta


def jsonable(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (dt.date, dt.datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    return str(value)


def client_ip(request: Request) -> Optional[str]:
    ip = request.headers.get("CF-Connecting-IP")
    if ip:
        return ip.strip()
    fwd = request.headers.get("X-Forwarded-For")
    if fwd:
        first = fwd.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def request_meta(request: Request, actor: Optional[str] = None) -> RequestMeta:
    return RequestMeta(ip=client_ip(request), user_agent=request.headers.get("User-Agent"), actor=actor)

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from taxintake.app.deps import db_session, get_settings
from taxintake.app.utils import client_ip
from taxintake.core.config import Settings
from taxintake.core.contact import enforce_rate_limit, relay_contact, require_contact_config
from taxintake.core.errors import ServiceError, UnsupportedContentType, ValidationError

log = logging.getLogger(__name__)

router = APIRouter(tags=["contact"])


async def _read_fields(request: Request) -> dict[str, Any]:
    content_type = (request.headers.get("content-type") or "").lower()
    if "application/json" in content_type:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ValidationError("Invalid JSON body") from e
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON body")
        return body
    if "application/x-www-form-urlencoded" in content_type or "multipart/form-data" in content_type:
        form = await request.form()
        return {k: v for k, v in form.items() if isinstance(v, str)}
    raise UnsupportedContentType()


@router.post("/api/contact")
async def contact(
    request: Request,
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
):
    req_id = str(uuid.uuid4())
    ip = client_ip(request) or "unknown"
    log.info("[contact %s] start ip=%s", req_id, ip)
    try:
        require_contact_config(settings)
        enforce_rate_limit(session, ip, settings=settings)
        fields = await _read_fields(request)
        result = relay_contact(fields, settings=settings, ip=ip, req_id=req_id)
    except ServiceError as e:
        log.info("[contact %s] rejected kind=%s status=%s", req_id, e.kind, e.status_code)
        return JSONResponse(
            {"ok": False, "kind": e.kind, "error": e.message, "req_id": req_id},
            status_code=e.status_code,
        )
    if not result.sent:
        return {"ok": True, "message": "Sent.", "req_id": req_id}
    log.info("[contact %s] sent", req_id)
    return {"ok": True, "message": "Email sent.", "req_id": req_id}

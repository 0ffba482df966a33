from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from taxintake.app.auth import require_actor
from taxintake.app.deps import db_session, get_settings
from taxintake.app.utils import request_meta
from taxintake.core.config import Settings
from taxintake.core.errors import ValidationError
from taxintake.core.intake_session import validate_session
from taxintake.core.invitations import issue_invitation, parse_invite_request, revoke_access
from taxintake.core.submission import submit_intake

router = APIRouter(tags=["intake"])


@router.post("/api/intake/invite")
def intake_invite(
    request: Request,
    body: Any = Body(default=None),
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
    actor: str = Depends(require_actor),
):
    req = parse_invite_request(body)
    result = issue_invitation(session, req, settings=settings, meta=request_meta(request, actor))
    return result.as_dict()


@router.get("/api/intake/session")
def intake_session(
    t: Optional[str] = Query(default=None),
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
):
    view = validate_session(session, t, settings=settings)
    return view.as_dict()


@router.post("/api/intake/submit")
def intake_submit(
    request: Request,
    t: Optional[str] = Query(default=None),
    body: Any = Body(default=None),
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
):
    result = submit_intake(session, t, body, settings=settings, meta=request_meta(request))
    return {"ok": True, "tax_return_id": result.tax_return_id}


@router.post("/api/intake/revoke")
def intake_revoke(
    request: Request,
    body: Any = Body(default=None),
    session: Session = Depends(db_session),
    settings: Settings = Depends(get_settings),
    actor: str = Depends(require_actor),
):
    if not isinstance(body, dict):
        raise ValidationError("token or tax_return_id is required")
    token = body.get("token")
    tax_return_id = body.get("tax_return_id")
    target, revoked = revoke_access(
        session,
        settings=settings,
        token=str(token) if token else None,
        tax_return_id=str(tax_return_id) if tax_return_id else None,
        meta=request_meta(request, actor),
    )
    return {"ok": True, "tax_return_id": target, "revoked": revoked}


@router.get("/{locale}/intake", response_class=HTMLResponse)
def intake_page(locale: str, request: Request):
    if locale not in ("es", "en"):
        return HTMLResponse("Not found", status_code=404)
    from taxintake.app.main import templates

    return templates.TemplateResponse(request, "intake.html", {"locale": locale})

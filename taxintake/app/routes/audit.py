from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from taxintake.app.auth import require_actor
from taxintake.app.deps import db_session
from taxintake.app.utils import jsonable
from taxintake.db.models import AuditEvent
from taxintake.utils.time import isoformat_utc

router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("")
def audit_list(
    tax_return_id: Optional[str] = Query(default=None),
    session: Session = Depends(db_session),
    actor: str = Depends(require_actor),
):
    stmt = select(AuditEvent)
    if tax_return_id:
        stmt = stmt.where(AuditEvent.tax_return_id == tax_return_id)
    rows = session.execute(stmt.order_by(AuditEvent.at.desc(), AuditEvent.id.desc()).limit(300)).scalars().all()
    return {
        "ok": True,
        "events": [
            {
                "id": r.id,
                "at": isoformat_utc(r.at),
                "tax_return_id": r.tax_return_id,
                "event": r.event,
                "actor": r.actor,
                "ip": r.ip,
                "user_agent": r.user_agent,
                "details": jsonable(r.details_json),
            }
            for r in rows
        ],
    }

from __future__ import annotations

from typing import Any, Optional

from sqlalchemy.orm import Session

from taxintake.db.models import AuditEvent
from taxintake.utils.time import utcnow

INVITE_CREATED = "invite_created"
INTAKE_SUBMITTED = "intake_submitted"
TOKEN_REVOKED = "token_revoked"


def log_event(
    session: Session,
    *,
    event: str,
    tax_return_id: Optional[str],
    actor: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditEvent:
    """
    Append an audit row. Rows are never updated or deleted.
    """
    row = AuditEvent(
        at=utcnow(),
        tax_return_id=tax_return_id,
        event=event,
        actor=actor,
        ip=ip,
        user_agent=(user_agent or "")[:500] or None,
        details_json=details,
    )
    session.add(row)
    return row

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taxintake.core.config import Settings
from taxintake.core.errors import ServiceError, StoreError, ValidationError
from taxintake.core.field_crypto import encrypt_optional, encrypt_value, ssn_last4
from taxintake.core.invitations import RequestMeta, find_client_by_email
from taxintake.core.schemas import (
    DependentPayload,
    IntakePayload,
    SpousePayload,
    first_error_message,
    is_blank,
    is_valid_email,
)
from taxintake.core.tokens import check_token, consume_token, lookup_token
from taxintake.db.audit import INTAKE_SUBMITTED, log_event
from taxintake.db.models import MARRIED_FILING_STATUSES, Client, Dependent, Intake, Spouse, TaxReturn
from taxintake.utils.time import utcnow

log = logging.getLogger(__name__)

# Reported in this order: the first missing one names the error.
REQUIRED_FIELDS = (
    "filing_status",
    "taxpayer_first_name",
    "taxpayer_last_name",
    "taxpayer_ssn",
    "taxpayer_dob",
    "taxpayer_email",
    "address_line1",
    "city",
    "state",
    "zip",
)
SPOUSE_REQUIRED_FIELDS = ("first_name", "last_name", "ssn", "dob")
DEPENDENT_REQUIRED_FIELDS = ("first_name", "last_name", "relationship", "dob")


@dataclass(frozen=True)
class PreparedIntake:
    payload: IntakePayload
    spouse: Optional[SpousePayload] = None
    dependents: list[DependentPayload] = field(default_factory=list)
    skipped_dependents: int = 0


@dataclass(frozen=True)
class SubmitResult:
    tax_return_id: str
    submitted_at: dt.datetime
    dependents: int
    skipped_dependents: int


def _validate(model, data: dict[str, Any], *, prefix: str = ""):
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(prefix + first_error_message(e)) from e


def _prepare_spouse(filing_status: str, raw: Any) -> Optional[SpousePayload]:
    if filing_status not in MARRIED_FILING_STATUSES:
        # Any spouse object sent with a non-married status is ignored (and the row dropped).
        return None
    if not isinstance(raw, dict) or any(is_blank(raw.get(k)) for k in SPOUSE_REQUIRED_FIELDS):
        raise ValidationError("spouse fields required for married filing status")
    return _validate(SpousePayload, raw, prefix="spouse.")


def _prepare_dependents(raw: Any) -> tuple[list[DependentPayload], int]:
    if raw is None:
        return [], 0
    if not isinstance(raw, list):
        raise ValidationError("dependents must be a list")
    out: list[DependentPayload] = []
    skipped = 0
    for i, d in enumerate(raw):
        # Incomplete entries are dropped silently (documented leniency, not an error).
        if not isinstance(d, dict) or any(is_blank(d.get(k)) for k in DEPENDENT_REQUIRED_FIELDS):
            skipped += 1
            continue
        out.append(_validate(DependentPayload, d, prefix=f"dependents[{i}]."))
    return out, skipped


def prepare_intake(body: Any) -> PreparedIntake:
    """
    Structural validation of a submission body. Raises ValidationError; never touches the DB.
    """
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON body")
    for name in REQUIRED_FIELDS:
        if is_blank(body.get(name)):
            raise ValidationError(f"{name} is required")
    payload = _validate(IntakePayload, body)
    if not is_valid_email(payload.taxpayer_email):
        raise ValidationError("taxpayer_email: invalid email address")
    spouse = _prepare_spouse(payload.filing_status, body.get("spouse"))
    dependents, skipped = _prepare_dependents(body.get("dependents"))
    return PreparedIntake(payload=payload, spouse=spouse, dependents=dependents, skipped_dependents=skipped)


def _update_client(client: Client, p: IntakePayload) -> None:
    client.ssn_last4 = ssn_last4(p.taxpayer_ssn)
    client.first_name = p.taxpayer_first_name
    client.last_name = p.taxpayer_last_name
    client.email = p.taxpayer_email
    if p.taxpayer_mobile:
        client.mobile = p.taxpayer_mobile
    if p.taxpayer_occupation:
        client.occupation = p.taxpayer_occupation


def _upsert_intake(session: Session, tax_return_id: str, p: IntakePayload, *, secret: str) -> Intake:
    intake = session.execute(select(Intake).where(Intake.tax_return_id == tax_return_id)).scalars().first()
    if intake is None:
        intake = Intake(tax_return_id=tax_return_id)
        session.add(intake)
    # Full replace: every column is rewritten, optional ones included.
    intake.filing_status = p.filing_status
    intake.taxpayer_first_name = p.taxpayer_first_name
    intake.taxpayer_last_name = p.taxpayer_last_name
    intake.taxpayer_ssn_encrypted = encrypt_value(p.taxpayer_ssn, secret=secret)
    intake.taxpayer_dob = p.taxpayer_dob
    intake.taxpayer_occupation = p.taxpayer_occupation
    intake.taxpayer_email = p.taxpayer_email
    intake.taxpayer_mobile = p.taxpayer_mobile
    intake.address_line1 = p.address_line1
    intake.address_line2 = p.address_line2
    intake.city = p.city
    intake.state = p.state
    intake.zip = p.zip
    intake.had_health_insurance = p.had_health_insurance
    intake.digital_assets = p.digital_assets
    intake.bank_name = p.bank_name
    intake.bank_routing = p.bank_routing
    intake.bank_account_encrypted = encrypt_optional(p.bank_account, secret=secret)
    intake.bank_account_type = p.bank_account_type
    intake.was_referred = p.was_referred
    intake.referrer_first_name = p.referrer_first_name
    intake.referrer_last_name = p.referrer_last_name
    return intake


def _apply_spouse(session: Session, tax_return_id: str, s: Optional[SpousePayload], *, secret: str) -> None:
    if s is None:
        session.execute(delete(Spouse).where(Spouse.tax_return_id == tax_return_id))
        return
    spouse = session.execute(select(Spouse).where(Spouse.tax_return_id == tax_return_id)).scalars().first()
    if spouse is None:
        spouse = Spouse(tax_return_id=tax_return_id)
        session.add(spouse)
    spouse.first_name = s.first_name
    spouse.last_name = s.last_name
    spouse.ssn_encrypted = encrypt_value(s.ssn, secret=secret)
    spouse.dob = s.dob
    spouse.occupation = s.occupation
    spouse.email = s.email
    spouse.mobile = s.mobile


def _replace_dependents(
    session: Session, tax_return_id: str, dependents: list[DependentPayload], *, secret: str
) -> None:
    session.execute(delete(Dependent).where(Dependent.tax_return_id == tax_return_id))
    for d in dependents:
        session.add(
            Dependent(
                tax_return_id=tax_return_id,
                first_name=d.first_name,
                last_name=d.last_name,
                ssn_encrypted=encrypt_optional(d.ssn, secret=secret),
                dob=d.dob,
                relationship=d.relationship,
            )
        )


def submit_intake(
    session: Session,
    raw_token: str | None,
    body: Any,
    *,
    settings: Settings,
    meta: RequestMeta | None = None,
    now: dt.datetime | None = None,
) -> SubmitResult:
    """
    Validate a submission, re-check its token and persist everything as one transaction.

    Either the intake, spouse, dependents, status change, token consumption and audit row
    all commit together, or nothing does.
    """
    pepper = settings.require_pepper()
    secret = settings.require_secret_key()
    meta = meta or RequestMeta()
    prepared = prepare_intake(body)
    p = prepared.payload

    try:
        ctx = lookup_token(session, raw_token, pepper)
        now = now or utcnow()
        check_token(ctx.token, now=now)
        tax_return: TaxReturn = ctx.tax_return
        client: Client = ctx.client

        owner = find_client_by_email(session, p.taxpayer_email)
        if owner is not None and owner.id != client.id:
            raise ValidationError("taxpayer_email is already registered to another client")

        if ctx.token.one_time:
            consume_token(session, ctx.token.id, now=now)

        _update_client(client, p)
        _upsert_intake(session, tax_return.id, p, secret=secret)
        _apply_spouse(session, tax_return.id, prepared.spouse, secret=secret)
        _replace_dependents(session, tax_return.id, prepared.dependents, secret=secret)

        # Resubmission is allowed; status and timestamp are simply overwritten.
        tax_return.status = "submitted"
        tax_return.submitted_at = now

        log_event(
            session,
            event=INTAKE_SUBMITTED,
            tax_return_id=tax_return.id,
            actor=meta.actor,
            ip=meta.ip,
            user_agent=meta.user_agent,
            details={"tax_year": tax_return.tax_year},
        )
        result = SubmitResult(
            tax_return_id=tax_return.id,
            submitted_at=now,
            dependents=len(prepared.dependents),
            skipped_dependents=prepared.skipped_dependents,
        )
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("Intake submission failed")
        raise StoreError() from e

    log.info(
        "Intake submitted tax_return=%s dependents=%d skipped=%d",
        result.tax_return_id,
        result.dependents,
        result.skipped_dependents,
    )
    return result

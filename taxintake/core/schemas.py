from __future__ import annotations

import datetime as dt
import re
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from taxintake.db.models import BANK_ACCOUNT_TYPES, FILING_STATUSES


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Invitation links live at most about a year.
MAX_EXPIRES_IN_HOURS = 24 * 366


def _none_if_blank(v):
    if v is None:
        return None
    if isinstance(v, str) and v.strip() == "":
        return None
    return v


def _strip(v):
    if isinstance(v, str):
        return v.strip()
    return v


def truthy(v: Any) -> bool:
    """
    Lenient checkbox coercion: true, 1, "1" and "true" are True; anything else is False.
    """
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v == 1
    return v in ("1", "true")


def is_blank(v: Any) -> bool:
    if v is None or v is False:
        return True
    if isinstance(v, str):
        return v.strip() == ""
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        return v == 0
    return False


def is_valid_email(email: str) -> bool:
    v = (email or "").strip()
    return 0 < len(v) <= 254 and EMAIL_RE.match(v) is not None


def first_error_message(err: PydanticValidationError) -> str:
    e = err.errors()[0]
    loc = ".".join(str(p) for p in e.get("loc", ()))
    msg = str(e.get("msg") or "invalid value")
    # "Value error, ..." prefix from field validators reads poorly in API responses.
    msg = msg.removeprefix("Value error, ")
    return f"{loc}: {msg}" if loc else msg


class InviteRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tax_year: int = Field(gt=0, strict=True)
    first_name: str
    last_name: str
    email: str
    locale: Literal["es", "en"] = "es"
    mobile: Optional[str] = None
    occupation: Optional[str] = None
    expires_in_hours: float = Field(default=72, gt=0, le=MAX_EXPIRES_IN_HOURS, allow_inf_nan=False)
    one_time: bool = True

    @field_validator("first_name", "last_name", "email", "mobile", "occupation", mode="before")
    @classmethod
    def _trim(cls, v):
        return _strip(v)

    @field_validator("mobile", "occupation", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        return _none_if_blank(_strip(v))

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        if not is_valid_email(v):
            raise ValueError("invalid email address")
        return v.lower()


class SpousePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: str
    last_name: str
    ssn: str
    dob: dt.date
    occupation: Optional[str] = None
    email: Optional[str] = None
    mobile: Optional[str] = None

    @field_validator("first_name", "last_name", "ssn", mode="before")
    @classmethod
    def _trim(cls, v):
        return _strip(v)

    @field_validator("occupation", "email", "mobile", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        return _none_if_blank(_strip(v))


class DependentPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    first_name: str
    last_name: str
    relationship: str
    dob: dt.date
    ssn: Optional[str] = None

    @field_validator("first_name", "last_name", "relationship", mode="before")
    @classmethod
    def _trim(cls, v):
        return _strip(v)

    @field_validator("ssn", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        return _none_if_blank(_strip(v))


class IntakePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    filing_status: Literal[FILING_STATUSES]  # type: ignore[valid-type]

    taxpayer_first_name: str
    taxpayer_last_name: str
    taxpayer_ssn: str
    taxpayer_dob: dt.date
    taxpayer_occupation: Optional[str] = None
    taxpayer_email: str
    taxpayer_mobile: Optional[str] = None

    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    zip: str

    had_health_insurance: bool = False
    digital_assets: bool = False

    bank_name: Optional[str] = None
    bank_routing: Optional[str] = None
    bank_account: Optional[str] = None
    bank_account_type: Optional[Literal[BANK_ACCOUNT_TYPES]] = None  # type: ignore[valid-type]

    was_referred: bool = False
    referrer_first_name: Optional[str] = None
    referrer_last_name: Optional[str] = None

    @field_validator(
        "taxpayer_first_name",
        "taxpayer_last_name",
        "taxpayer_ssn",
        "address_line1",
        "city",
        "state",
        "zip",
        mode="before",
    )
    @classmethod
    def _trim(cls, v):
        return _strip(v)

    @field_validator("taxpayer_email", mode="before")
    @classmethod
    def _email(cls, v):
        v = _strip(v)
        return v.lower() if isinstance(v, str) else v

    @field_validator(
        "taxpayer_occupation",
        "taxpayer_mobile",
        "address_line2",
        "bank_name",
        "bank_routing",
        "bank_account",
        "bank_account_type",
        "referrer_first_name",
        "referrer_last_name",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, v):
        return _none_if_blank(_strip(v))

    @field_validator("had_health_insurance", "digital_assets", "was_referred", mode="before")
    @classmethod
    def _checkbox(cls, v):
        return truthy(v)

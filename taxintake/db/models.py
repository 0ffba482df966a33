from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from taxintake.utils.time import utcnow
from taxintake.db.types import UTCDateTime


class Base(DeclarativeBase):
    pass


def new_id() -> str:
    return str(uuid.uuid4())


LOCALES = ("es", "en")
TAX_RETURN_STATUSES = ("invited", "in_progress", "submitted", "archived")
FILING_STATUSES = ("single", "married_joint", "married_separate", "head_of_household", "qualifying_widow")
MARRIED_FILING_STATUSES = ("married_joint", "married_separate")
BANK_ACCOUNT_TYPES = ("checking", "savings")

Locale = Enum(*LOCALES, name="locale", native_enum=False, create_constraint=True)
TaxReturnStatus = Enum(*TAX_RETURN_STATUSES, name="tax_return_status", native_enum=False, create_constraint=True)
FilingStatus = Enum(*FILING_STATUSES, name="filing_status", native_enum=False, create_constraint=True)
BankAccountType = Enum(*BANK_ACCOUNT_TYPES, name="bank_account_type", native_enum=False, create_constraint=True)


class Client(Base):
    __tablename__ = "clients"
    __table_args__ = (Index("ix_clients_name", "last_name", "first_name"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(254), unique=True, nullable=False)
    mobile: Mapped[Optional[str]] = mapped_column(String(40))
    occupation: Mapped[Optional[str]] = mapped_column(String(200))
    locale: Mapped[str] = mapped_column(Locale, default="es", nullable=False)
    # Only the last four digits are kept in the clear; full values live encrypted on the intake.
    ssn_last4: Mapped[str] = mapped_column(String(4), default="0000", nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    tax_returns: Mapped[list["TaxReturn"]] = relationship(back_populates="client")


class TaxReturn(Base):
    __tablename__ = "tax_returns"
    __table_args__ = (UniqueConstraint("client_id", "tax_year"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(TaxReturnStatus, default="invited", nullable=False)
    submitted_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    client: Mapped["Client"] = relationship(back_populates="tax_returns")
    tokens: Mapped[list["IntakeToken"]] = relationship(back_populates="tax_return")
    intake: Mapped[Optional["Intake"]] = relationship(back_populates="tax_return")
    spouse: Mapped[Optional["Spouse"]] = relationship(back_populates="tax_return")
    dependents: Mapped[list["Dependent"]] = relationship(back_populates="tax_return", order_by="Dependent.created_at")


class IntakeToken(Base):
    __tablename__ = "intake_tokens"
    __table_args__ = (
        Index("ix_intake_tokens_tax_return", "tax_return_id"),
        Index("ix_intake_tokens_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tax_return_id: Mapped[str] = mapped_column(ForeignKey("tax_returns.id", ondelete="CASCADE"), nullable=False)
    # sha256(raw token + pepper); the raw token is never stored.
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
    one_time: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    used_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    revoked_at: Mapped[Optional[dt.datetime]] = mapped_column(UTCDateTime())
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    tax_return: Mapped["TaxReturn"] = relationship(back_populates="tokens")


class Intake(Base):
    __tablename__ = "intakes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tax_return_id: Mapped[str] = mapped_column(
        ForeignKey("tax_returns.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    filing_status: Mapped[str] = mapped_column(FilingStatus, nullable=False)

    taxpayer_first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    taxpayer_last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    taxpayer_ssn_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    taxpayer_dob: Mapped[dt.date] = mapped_column(Date, nullable=False)
    taxpayer_occupation: Mapped[Optional[str]] = mapped_column(String(200))
    taxpayer_email: Mapped[str] = mapped_column(String(254), nullable=False)
    taxpayer_mobile: Mapped[Optional[str]] = mapped_column(String(40))

    address_line1: Mapped[str] = mapped_column(String(200), nullable=False)
    address_line2: Mapped[Optional[str]] = mapped_column(String(200))
    city: Mapped[str] = mapped_column(String(120), nullable=False)
    state: Mapped[str] = mapped_column(String(60), nullable=False)
    zip: Mapped[str] = mapped_column(String(20), nullable=False)

    had_health_insurance: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    digital_assets: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    bank_name: Mapped[Optional[str]] = mapped_column(String(200))
    bank_routing: Mapped[Optional[str]] = mapped_column(String(20))
    bank_account_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    bank_account_type: Mapped[Optional[str]] = mapped_column(BankAccountType)

    was_referred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    referrer_first_name: Mapped[Optional[str]] = mapped_column(String(120))
    referrer_last_name: Mapped[Optional[str]] = mapped_column(String(120))

    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    tax_return: Mapped["TaxReturn"] = relationship(back_populates="intake")


class Spouse(Base):
    __tablename__ = "spouses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tax_return_id: Mapped[str] = mapped_column(
        ForeignKey("tax_returns.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    ssn_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    dob: Mapped[dt.date] = mapped_column(Date, nullable=False)
    occupation: Mapped[Optional[str]] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(254))
    mobile: Mapped[Optional[str]] = mapped_column(String(40))
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False)

    tax_return: Mapped["TaxReturn"] = relationship(back_populates="spouse")


class Dependent(Base):
    __tablename__ = "dependents"
    __table_args__ = (Index("ix_dependents_tax_return", "tax_return_id"),)

    # Declared first: the "relationship" column below shadows the ORM helper in this class body.
    tax_return: Mapped["TaxReturn"] = relationship(back_populates="dependents")

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tax_return_id: Mapped[str] = mapped_column(ForeignKey("tax_returns.id", ondelete="CASCADE"), nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    ssn_encrypted: Mapped[Optional[str]] = mapped_column(Text)
    dob: Mapped[dt.date] = mapped_column(Date, nullable=False)
    relationship: Mapped[str] = mapped_column(String(60), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_tax_return", "tax_return_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    tax_return_id: Mapped[Optional[str]] = mapped_column(String(36))
    event: Mapped[str] = mapped_column(String(60), nullable=False)
    actor: Mapped[Optional[str]] = mapped_column(String(200))
    ip: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(500))
    details_json: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON)


class RateLimitBucket(Base):
    __tablename__ = "rate_limit_buckets"
    __table_args__ = (CheckConstraint("count >= 0", name="ck_rate_limit_count"),)

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    window_started_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

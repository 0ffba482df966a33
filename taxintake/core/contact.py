"""
Contact-form relay: rate limit, honeypot, captcha verification, then one email through
the transactional email API.
"""
from __future__ import annotations

import datetime as dt
import html
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taxintake.core import net, rate_limit
from taxintake.core.config import Settings
from taxintake.core.errors import (
    CaptchaFailed,
    ConfigError,
    ProviderError,
    RateLimited,
    RelayError,
    StoreError,
    ValidationError,
)
from taxintake.core.schemas import is_valid_email
from taxintake.utils.time import format_local, utcnow

log = logging.getLogger(__name__)

MAX_NAME = 80
MAX_EMAIL = 120
MAX_PHONE = 30
MAX_LANGUAGE = 30
MAX_MESSAGE = 1200
MAX_CAPTCHA_TOKEN = 5000
MAX_HONEYPOT = 200


def clamp(value: Any, max_len: int) -> str:
    s = "" if value is None else str(value).strip()
    return s[:max_len]


def strip_crlf(value: str) -> str:
    return re.sub(r"[\r\n]+", " ", value or "").strip()


def safe_subject(value: str, max_len: int = 140) -> str:
    one_line = strip_crlf(value).replace("\t", " ")
    collapsed = re.sub(r"\s{2,}", " ", one_line).strip()
    return collapsed[:max_len]


def safe_header_value(value: str, max_len: int = 200) -> str:
    return strip_crlf(value)[:max_len]


@dataclass(frozen=True)
class ContactMessage:
    name: str
    email: str
    phone: str = ""
    language: str = ""
    message: str = ""
    captcha_token: str = ""
    honeypot: str = ""

    @classmethod
    def from_fields(cls, body: dict[str, Any]) -> "ContactMessage":
        return cls(
            name=clamp(body.get("name"), MAX_NAME),
            email=clamp(body.get("email"), MAX_EMAIL),
            phone=clamp(body.get("phone"), MAX_PHONE),
            language=clamp(body.get("language"), MAX_LANGUAGE),
            message=clamp(body.get("message"), MAX_MESSAGE),
            captcha_token=clamp(body.get("cf-turnstile-response") or body.get("turnstileToken"), MAX_CAPTCHA_TOKEN),
            honeypot=clamp(body.get("website"), MAX_HONEYPOT),
        )

    @property
    def spanish(self) -> bool:
        return self.language.lower().startswith("es")


@dataclass(frozen=True)
class ContactResult:
    sent: bool
    provider_response: Optional[Any] = None


def require_contact_config(settings: Settings) -> None:
    if not settings.contact_configured():
        raise ConfigError("Server misconfiguration: missing env vars.")


def enforce_rate_limit(session: Session, ip: str, *, settings: Settings, now: dt.datetime | None = None) -> None:
    key = f"rl:v1:contact:{ip or 'unknown'}"
    try:
        allowed = rate_limit.hit(
            session,
            key,
            limit=settings.contact_rate_limit,
            window_s=settings.contact_rate_window_s,
            now=now,
        )
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        log.exception("Rate limit bookkeeping failed")
        raise StoreError() from e
    if not allowed:
        raise RateLimited()


def verify_captcha(settings: Settings, token: str, ip: Optional[str]) -> dict[str, Any]:
    form = {"secret": settings.turnstile_secret or "", "response": token}
    if ip and ip != "unknown":
        form["remoteip"] = ip
    try:
        resp = net.http_post(settings.turnstile_verify_url, form=form)
    except ProviderError as e:
        log.warning("Captcha verification unreachable: %s", e)
        raise CaptchaFailed() from e
    body = resp.json()
    log.info("Captcha response status=%s success=%s", resp.status_code, bool(body and body.get("success")))
    if not resp.ok or not isinstance(body, dict) or not body.get("success"):
        raise CaptchaFailed()
    return body


def build_email(settings: Settings, msg: ContactMessage, *, req_id: str, now: dt.datetime) -> dict[str, Any]:
    ts = format_local(now)
    label = "Contacto Web" if msg.spanish else "Web Contact"
    subject = safe_subject(f"{settings.contact_subject_prefix} {label} | {ts} ET | {req_id}")

    phone = msg.phone or "(not provided)"
    language = msg.language or "(not selected)"
    message = msg.message or "(no message provided)"
    e = html.escape

    html_body = (
        "<h2>New Contact Form Submission</h2>"
        f"<p><strong>Name:</strong> {e(msg.name)}</p>"
        f"<p><strong>Email:</strong> {e(msg.email)}</p>"
        f"<p><strong>Phone:</strong> {e(phone)}</p>"
        f"<p><strong>Preferred language:</strong> {e(language)}</p>"
        "<p><strong>Message:</strong></p>"
        f'<pre style="white-space:pre-wrap;font-family:inherit;">{e(message)}</pre>'
        "<hr />"
        f"<p><small>Request ID: {e(req_id)}</small></p>"
        f"<p><small>Timestamp (America/New_York): {e(ts)} ET</small></p>"
    )
    text_body = (
        "New Contact Form Submission\n\n"
        f"Name: {msg.name}\n"
        f"Email: {msg.email}\n"
        f"Phone: {phone}\n"
        f"Preferred language: {language}\n\n"
        f"Message:\n{message}\n\n"
        f"Request ID: {req_id}\n"
        f"Timestamp (America/New_York): {ts} ET\n"
    )
    recipients = [safe_header_value(s.strip(), 254) for s in (settings.contact_to or "").split(",")]
    return {
        "from": safe_header_value(settings.resend_from or "", 254),
        "to": [r for r in recipients if r],
        "subject": subject,
        "text": text_body,
        "html": html_body,
        "reply_to": safe_header_value(msg.email, 254),
    }


def send_email(settings: Settings, payload: dict[str, Any]) -> Any:
    try:
        resp = net.http_post(
            settings.resend_api_url,
            json_body=payload,
            headers={"Authorization": f"Bearer {settings.resend_api_key}"},
        )
    except ProviderError as e:
        log.error("Email relay unreachable: %s", e)
        raise RelayError() from e
    body = resp.json()
    log.info("Email relay response status=%s", resp.status_code)
    if not resp.ok:
        raise RelayError(f"Resend API error (status {resp.status_code}).")
    return body if body is not None else resp.text()


def relay_contact(
    fields: dict[str, Any],
    *,
    settings: Settings,
    ip: Optional[str],
    req_id: str,
    now: dt.datetime | None = None,
) -> ContactResult:
    require_contact_config(settings)
    msg = ContactMessage.from_fields(fields)
    log.info(
        "[contact %s] fields name_len=%d email_len=%d message_len=%d captcha=%s honeypot=%s",
        req_id,
        len(msg.name),
        len(msg.email),
        len(msg.message),
        bool(msg.captcha_token),
        bool(msg.honeypot),
    )
    if not msg.name or not msg.email or not msg.captcha_token:
        raise ValidationError("Missing required fields (name, email, captcha).")
    if not is_valid_email(msg.email):
        raise ValidationError("Invalid email address.")
    if msg.honeypot:
        log.info("[contact %s] honeypot triggered; not sending", req_id)
        return ContactResult(sent=False)

    verify_captcha(settings, msg.captcha_token, ip)
    payload = build_email(settings, msg, req_id=req_id, now=now or utcnow())
    provider = send_email(settings, payload)
    return ContactResult(sent=True, provider_response=provider)

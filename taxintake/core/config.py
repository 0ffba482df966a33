from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from taxintake.core.errors import ConfigError

DEFAULT_SITE_ORIGIN = "https://rbmentors.com"


def _env(name: str) -> Optional[str]:
    v = os.environ.get(name)
    if v is None or v.strip() == "":
        return None
    return v.strip()


class Settings(BaseModel):
    token_pepper: Optional[str] = None
    site_origin: str = DEFAULT_SITE_ORIGIN
    app_secret_key: Optional[str] = None
    app_password: Optional[str] = None
    allowed_origins: list[str] = Field(default_factory=list)

    turnstile_secret: Optional[str] = None
    turnstile_verify_url: str = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
    resend_api_key: Optional[str] = None
    resend_api_url: str = "https://api.resend.com/emails"
    resend_from: Optional[str] = None
    contact_to: Optional[str] = None
    contact_subject_prefix: str = "[RBMentors]"
    contact_rate_limit: int = 5
    contact_rate_window_s: int = 3600

    log_level: str = "INFO"

    @field_validator("site_origin")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    def cors_origins(self) -> list[str]:
        if self.allowed_origins:
            return list(self.allowed_origins)
        origin = self.site_origin
        scheme, _, host = origin.partition("://")
        if host and not host.startswith("www."):
            return [origin, f"{scheme}://www.{host}"]
        return [origin]

    def require_pepper(self) -> str:
        if not self.token_pepper:
            raise ConfigError("Server misconfigured: TOKEN_PEPPER missing")
        return self.token_pepper

    def require_secret_key(self) -> str:
        if not self.app_secret_key:
            raise ConfigError("Server misconfigured: APP_SECRET_KEY missing")
        return self.app_secret_key

    def contact_configured(self) -> bool:
        return bool(self.turnstile_secret and self.resend_api_key and self.resend_from and self.contact_to)


def load_settings() -> Settings:
    """
    Build settings from the process environment (call load_dotenv() first).
    """
    data: dict[str, object] = {}
    for field in Settings.model_fields:
        v = _env(field.upper())
        if v is not None:
            data[field] = v
    origins = data.pop("allowed_origins", None)
    if origins:
        data["allowed_origins"] = [o.strip().rstrip("/") for o in str(origins).split(",") if o.strip()]
    return Settings.model_validate(data)

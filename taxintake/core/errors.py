from __future__ import annotations


class ServiceError(Exception):
    """
    Base for every error the service reports to a caller.

    `kind` is the machine-readable name returned in API responses; `status_code` is the
    HTTP status the web layer maps it to.
    """

    status_code = 500
    default_message = "Server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(ServiceError):
    status_code = 400
    default_message = "Invalid input"


class MissingToken(ServiceError):
    status_code = 400
    default_message = "Missing token"


class TokenError(ServiceError):
    status_code = 401


class InvalidToken(TokenError):
    default_message = "Invalid token"


class TokenRevoked(TokenError):
    default_message = "Token revoked"


class TokenExpired(TokenError):
    default_message = "Token expired"


class TokenAlreadyUsed(TokenError):
    default_message = "Token already used"


class StoreError(ServiceError):
    # Never carries backend detail; the cause is logged server-side.
    status_code = 500
    default_message = "Server error"


class ConfigError(ServiceError):
    status_code = 500
    default_message = "Server misconfigured"


class CaptchaFailed(ServiceError):
    status_code = 403
    default_message = "Captcha verification failed."


class UnsupportedContentType(ServiceError):
    status_code = 415
    default_message = "Unsupported content-type."


class RateLimited(ServiceError):
    status_code = 429
    default_message = "Too many requests. Please try again later."


class RelayError(ServiceError):
    status_code = 502
    default_message = "Email relay error."


class ProviderError(Exception):
    """
    Outbound HTTP failure (network, blocked host). Never includes secrets.
    """

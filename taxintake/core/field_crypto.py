from __future__ import annotations

import base64
import hashlib
import re
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from taxintake.core.errors import ConfigError


class FieldCryptoError(Exception):
    pass


@lru_cache(maxsize=4)
def _fernet(secret: str) -> Fernet:
    if not secret or not secret.strip():
        raise ConfigError("Server misconfigured: APP_SECRET_KEY missing")
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    key = base64.urlsafe_b64encode(digest)
    return Fernet(key)


def encrypt_value(plaintext: str, *, secret: str) -> str:
    token = _fernet(secret).encrypt(plaintext.encode("utf-8"))
    return token.decode("utf-8")


def encrypt_optional(plaintext: Optional[str], *, secret: str) -> Optional[str]:
    if plaintext is None or plaintext == "":
        return None
    return encrypt_value(plaintext, secret=secret)


def decrypt_value(token: str, *, secret: str) -> str:
    try:
        out = _fernet(secret).decrypt(token.encode("utf-8"))
        return out.decode("utf-8")
    except InvalidToken as e:
        raise FieldCryptoError("Failed to decrypt field (wrong APP_SECRET_KEY?).") from e


_NON_DIGIT = re.compile(r"\D")


def ssn_last4(ssn: str) -> str:
    """
    Trailing four digits of an SSN, or "0000" when fewer than four digits are present.
    """
    digits = _NON_DIGIT.sub("", ssn or "")
    return digits[-4:] if len(digits) >= 4 else "0000"

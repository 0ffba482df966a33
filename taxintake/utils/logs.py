from __future__ import annotations

import logging
import os
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """
    Install a single stream handler on the root logger.

    Safe to call more than once (uvicorn reloads, CLI + app in one process).
    """
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").strip().upper()
    root = logging.getLogger()
    root.setLevel(getattr(logging, name, logging.INFO))
    if any(getattr(h, "_taxintake", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._taxintake = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def mask_secret(value: str | None) -> str:
    s = (value or "").strip()
    if not s:
        return "****"
    return "****" + s[-4:]

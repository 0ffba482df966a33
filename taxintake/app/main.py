from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from taxintake.app.auth import auth_banner_message
from taxintake.app.routes.audit import router as audit_router
from taxintake.app.routes.contact import router as contact_router
from taxintake.app.routes.intake import router as intake_router
from taxintake.core.config import load_settings
from taxintake.core.errors import ServiceError
from taxintake.db.init_db import init_db
from taxintake.utils.logs import configure_logging


load_dotenv()

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))


async def _service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed kind=%s", request.method, request.url.path, exc.kind)
    return JSONResponse({"ok": False, "kind": exc.kind, "error": exc.message}, status_code=exc.status_code)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if any(e.get("type") == "json_invalid" for e in errors):
        message = "Invalid JSON body"
    else:
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query"))
        message = f"{loc}: {first.get('msg', 'invalid value')}" if loc else "Invalid input"
    return JSONResponse({"ok": False, "kind": "ValidationError", "error": message}, status_code=400)


def create_app() -> FastAPI:
    settings = load_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="Tax Intake", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(ServiceError, _service_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    static_dir = BASE_DIR / "static"
    try:
        templates.env.globals["static_version"] = str(int((static_dir / "intake.js").stat().st_mtime))
    except OSError:
        templates.env.globals["static_version"] = "0"
    app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    @app.on_event("startup")
    def _startup() -> None:
        init_db()
        banner = auth_banner_message(settings)
        if banner:
            log.warning(banner)

    app.include_router(intake_router)
    app.include_router(contact_router)
    app.include_router(audit_router)
    return app


app = create_app()

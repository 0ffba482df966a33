from __future__ import annotations

import json
from typing import NoReturn, Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="Tax intake operator CLI")


def _bootstrap():
    load_dotenv()
    from taxintake.core.config import load_settings
    from taxintake.utils.logs import configure_logging

    settings = load_settings()
    configure_logging(settings.log_level)
    return settings


def _fail(e) -> NoReturn:
    typer.echo(f"{e.kind}: {e.message}", err=True)
    raise typer.Exit(code=1)


@app.command("init-db")
def init_db_cmd():
    _bootstrap()
    from taxintake.db.init_db import init_db

    init_db()
    typer.echo("Database initialized.")


@app.command("invite")
def invite_cmd(
    year: int = typer.Option(..., help="Tax year"),
    email: str = typer.Option(...),
    first_name: str = typer.Option(...),
    last_name: str = typer.Option(...),
    locale: str = typer.Option("es", help="es|en"),
    mobile: Optional[str] = typer.Option(None),
    occupation: Optional[str] = typer.Option(None),
    hours: float = typer.Option(72.0, help="Link lifetime in hours"),
    reusable: bool = typer.Option(False, help="Allow the link to be submitted more than once"),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    settings = _bootstrap()
    from taxintake.core.errors import ServiceError
    from taxintake.core.invitations import RequestMeta, issue_invitation, parse_invite_request
    from taxintake.db.session import get_session

    body = {
        "tax_year": year,
        "email": email,
        "first_name": first_name,
        "last_name": last_name,
        "locale": locale,
        "mobile": mobile,
        "occupation": occupation,
        "expires_in_hours": hours,
        "one_time": not reusable,
    }
    with get_session() as session:
        try:
            req = parse_invite_request(body)
            result = issue_invitation(session, req, settings=settings, meta=RequestMeta(actor=actor))
        except ServiceError as e:
            _fail(e)
        typer.echo(json.dumps(result.as_dict(), indent=2))


@app.command("revoke")
def revoke_cmd(
    token: Optional[str] = typer.Option(None, help="Raw token from the intake link"),
    tax_return_id: Optional[str] = typer.Option(None),
    actor: str = typer.Option("cli", help="Audit actor"),
):
    settings = _bootstrap()
    from taxintake.core.errors import ServiceError
    from taxintake.core.invitations import RequestMeta, revoke_access
    from taxintake.db.session import get_session

    with get_session() as session:
        try:
            target, revoked = revoke_access(
                session,
                settings=settings,
                token=token,
                tax_return_id=tax_return_id,
                meta=RequestMeta(actor=actor),
            )
        except ServiceError as e:
            _fail(e)
        typer.echo(f"Revoked {revoked} token(s) for tax return {target}")


@app.command("audit")
def audit_cmd(
    tax_return_id: Optional[str] = typer.Option(None),
    limit: int = typer.Option(50, max=300),
):
    _bootstrap()
    from sqlalchemy import select

    from taxintake.db.models import AuditEvent
    from taxintake.db.session import get_session
    from taxintake.utils.time import format_local

    with get_session() as session:
        stmt = select(AuditEvent)
        if tax_return_id:
            stmt = stmt.where(AuditEvent.tax_return_id == tax_return_id)
        rows = session.execute(stmt.order_by(AuditEvent.at.desc()).limit(limit)).scalars().all()
        for r in rows:
            details = json.dumps(r.details_json, sort_keys=True) if r.details_json else ""
            typer.echo(f"{format_local(r.at)}  {r.event:<18} {r.tax_return_id}  {r.actor or '-'}  {details}")


if __name__ == "__main__":
    app()

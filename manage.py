import csv
import json
import os

import click
from flask import current_app
from flask.cli import FlaskGroup
from flask_migrate import Migrate
from sqlalchemy import func

from certify.app import create_app, db
from certify.models import Event, User
from certify.services import plans
from certify.services.context import current_core
from certify.services.directory import find_by_certificate_id
from certify.services.rendering import RenderRequest, certificate_filename, render_pdf
from certify.services.stores import log_audit, normalize_row
from certify.shared.errors import CertifyError, ValidationError
from certify.shared.storage import write_atomic


migrate = Migrate(directory=os.path.join(os.path.dirname(__file__), "migrations"))


def create_certify_app():
    app = create_app()
    migrate.init_app(app, db)
    return app


cli = FlaskGroup(create_app=create_certify_app)


def _user_by_email(email: str):
    return (
        db.session.query(User)
        .filter(func.lower(User.email) == email.strip().lower())
        .one_or_none()
    )


@cli.command("create_event")
@click.option("--owner", "owner_email", required=True)
@click.option("--name", "name", required=True)
@click.option("--plan", "plan", default=None, help="Set the owner's plan")
def create_event(owner_email: str, name: str, plan: str | None):
    """Create an event, creating its owner when missing."""
    user = _user_by_email(owner_email)
    if not user:
        user = User(email=owner_email, plan=plan or plans.FREE_PLAN)
        db.session.add(user)
    elif plan:
        user.plan = plan
    event = Event(owner=user, name=name)
    db.session.add(event)
    db.session.commit()
    click.echo(f"event_id={event.id} owner={user.email} plan={user.plan}")


@cli.command("gen_cert")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--certificate-id", "certificate_id", required=True)
@click.option("--out", "out_path", default=None, type=click.Path(dir_okay=False))
def gen_cert(event_id: int, certificate_id: str, out_path: str | None):
    """Render a certificate PDF without counting it as a download."""
    ctx = current_core()
    try:
        candidate = find_by_certificate_id(ctx, event_id, certificate_id)
        pdf = render_pdf(RenderRequest.build(candidate.template, candidate.recipient), ctx.assets)
    except CertifyError as exc:
        click.echo(f"{exc.kind}: {exc}", err=True)
        raise SystemExit(1)
    if not out_path:
        out_path = os.path.join(
            current_app.config["UPLOAD_ROOT"],
            "generated",
            certificate_filename(candidate.template.name, candidate.recipient.certificate_id),
        )
    write_atomic(out_path, pdf)
    current_app.logger.info(
        "[CERT] generated event=%s certificate=%s path=%s", event_id, certificate_id, out_path
    )
    click.echo(out_path)


@cli.command("import_recipients")
@click.option("--event", "event_id", required=True, type=int)
@click.option("--type", "type_id", required=True, type=int)
@click.option("--bulk/--single", default=True, help="Use the plan's bulk import path")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False))
def import_recipients(event_id: int, type_id: int, bulk: bool, csv_path: str):
    """Import recipients from a CSV file into one certificate type."""
    ctx = current_core()
    rows = []
    with open(csv_path, newline="", encoding="utf-8-sig") as handle:
        for idx, raw in enumerate(csv.DictReader(handle), start=2):
            try:
                rows.append(normalize_row(raw))
            except ValidationError as exc:
                click.echo(f"Row {idx}: {exc}", err=True)
    try:
        result = plans.add_recipients(ctx, event_id, type_id, rows, bulk=bulk)
    except CertifyError as exc:
        click.echo(f"{exc.kind}: {exc}", err=True)
        raise SystemExit(1)
    log_audit(
        db.session,
        "recipients.add",
        event_id=event_id,
        details={"type_id": type_id, "source": "cli", **result.to_dict()},
    )
    current_app.logger.info(
        "[RECIPIENTS-IMPORT] cli event=%s type=%s %s", event_id, type_id, result.to_dict()
    )
    click.echo(
        f"accepted={len(result.accepted)} rejected_for_quota={result.rejected_for_quota} "
        f"skipped_duplicates={result.skipped_duplicates}"
    )


@cli.command("usage")
@click.option("--user", "email", required=True)
def usage(email: str):
    """Print plan usage for an operator."""
    user = _user_by_email(email)
    if not user:
        click.echo("Not found", err=True)
        raise SystemExit(1)
    click.echo(json.dumps(plans.usage(current_core(), user), indent=2, sort_keys=True))


if __name__ == "__main__":
    cli()

import csv
import io

from flask import Blueprint, Response, current_app, jsonify, request

from ..app import db
from ..services import plans
from ..services.context import current_core
from ..services.stores import log_audit, normalize_row
from ..shared.errors import ValidationError
from ..shared.rbac import event_owner_required, login_required
from ..shared.time import fmt_dt

bp = Blueprint("recipients", __name__)


def _parse_rows(raw_rows) -> tuple[list, list[str]]:
    rows = []
    errors: list[str] = []
    for idx, raw in enumerate(raw_rows, start=1):
        try:
            rows.append(normalize_row(raw))
        except ValidationError as exc:
            errors.append(f"Row {idx}: {exc}")
    return rows, errors


def _audit_add(current_user, event_id: int, type_id: int, result, source: str) -> None:
    log_audit(
        db.session,
        "recipients.add",
        user_id=current_user.id,
        event_id=event_id,
        details={"type_id": type_id, "source": source, **result.to_dict()},
    )


@bp.get("/events/<int:event_id>/types/<int:type_id>/recipients")
@event_owner_required
def list_recipients(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    ctx.templates.get_type(event_id, type_id)
    recipients = ctx.recipients.list_recipients(event_id, type_id)
    return jsonify(
        {
            "recipients": [r.to_dict() for r in recipients],
            "stats": ctx.recipients.stats(type_id),
        }
    )


@bp.post("/events/<int:event_id>/types/<int:type_id>/recipients")
@event_owner_required
def add_recipients(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    payload = request.get_json(silent=True)
    if isinstance(payload, dict) and "recipients" not in payload:
        raw_rows, bulk = [payload], False
    elif isinstance(payload, dict):
        raw_rows = payload.get("recipients") or []
        bulk = bool(payload.get("bulk", len(raw_rows) > 1)) if isinstance(raw_rows, list) else True
    else:
        raise ValidationError("Expected a recipient object or a recipients list.")
    if not isinstance(raw_rows, list):
        raise ValidationError("recipients must be a list.")
    rows, errors = _parse_rows(raw_rows)
    if not rows:
        raise ValidationError("No valid recipients.", errors=errors)
    result = plans.add_recipients(ctx, event_id, type_id, rows, bulk=bulk)
    result.errors.extend(errors)
    _audit_add(current_user, event_id, type_id, result, "json")
    current_app.logger.info(
        "[RECIPIENTS-ADD] event=%s type=%s accepted=%s rejected=%s duplicates=%s",
        event_id,
        type_id,
        len(result.accepted),
        result.rejected_for_quota,
        result.skipped_duplicates,
    )
    body = result.to_dict()
    body["recipients"] = [r.to_dict() for r in result.accepted]
    return jsonify(body), 201


@bp.post("/events/<int:event_id>/types/<int:type_id>/recipients/import")
@event_owner_required
def import_recipients(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    file = request.files.get("file")
    if not file or not (file.filename or "").lower().endswith(".csv"):
        raise ValidationError("CSV file required.")
    try:
        text = file.read().decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("CSV must be UTF-8 encoded.") from None
    rows, errors = _parse_rows(csv.DictReader(io.StringIO(text)))
    if not rows:
        raise ValidationError("No valid recipients in CSV.", errors=errors)
    result = plans.add_recipients(ctx, event_id, type_id, rows, bulk=True)
    result.errors.extend(errors)
    _audit_add(current_user, event_id, type_id, result, "csv")
    current_app.logger.info(
        "[RECIPIENTS-IMPORT] event=%s type=%s file=%s accepted=%s rejected=%s duplicates=%s errors=%s",
        event_id,
        type_id,
        file.filename,
        len(result.accepted),
        result.rejected_for_quota,
        result.skipped_duplicates,
        len(errors),
    )
    return jsonify(result.to_dict()), 201


@bp.delete("/events/<int:event_id>/types/<int:type_id>/recipients/<int:recipient_id>")
@event_owner_required
def delete_recipient(event_id: int, type_id: int, recipient_id: int, event, current_user):
    ctx = current_core()
    ctx.recipients.delete_recipient(event_id, type_id, recipient_id)
    log_audit(
        db.session,
        "recipients.delete",
        user_id=current_user.id,
        event_id=event_id,
        details={"type_id": type_id, "recipient_id": recipient_id},
    )
    return jsonify({"ok": True})


@bp.get("/events/<int:event_id>/types/<int:type_id>/recipients/export.csv")
@event_owner_required
def export_recipients(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    cert_type = ctx.templates.get_type(event_id, type_id)
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(
        ["Name", "Email", "Mobile", "RegNo", "DownloadStatus", "DownloadCount", "LastDownloadedAt"]
    )
    for r in ctx.recipients.list_recipients(event_id, type_id):
        writer.writerow(
            [
                r.name,
                r.email or "",
                r.mobile or "",
                r.certificate_id,
                r.download_status,
                r.download_count or 0,
                fmt_dt(r.last_downloaded_at),
            ]
        )
    filename = f"recipients-{event_id}-{cert_type.id}.csv"
    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@bp.get("/usage")
@login_required
def usage(current_user):
    return jsonify(plans.usage(current_core(), current_user))

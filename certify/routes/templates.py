import os

from flask import Blueprint, current_app, jsonify, request
from werkzeug.utils import secure_filename

from ..app import db
from ..models import Recipient
from ..services.context import current_core
from ..services.plans import ensure_type_quota
from ..services.rendering import SAMPLE_RECIPIENT, RenderRequest, render_preview_png
from ..services.stores import log_audit
from ..shared.errors import NotFound, ValidationError
from ..shared.layout import TEMPLATE_PATCH_KEYS, merge_patch, template_to_dict
from ..shared.rbac import event_owner_required
from ..shared.storage import write_atomic

bp = Blueprint("templates", __name__, url_prefix="/events")

ALLOWED_IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg"}
MAX_IMAGE_BYTES = 10 * 1024 * 1024


def _type_payload(ctx, cert_type) -> dict:
    payload = template_to_dict(cert_type.to_template())
    payload["stats"] = ctx.recipients.stats(cert_type.id)
    return payload


@bp.get("/<int:event_id>/types")
@event_owner_required
def list_types(event_id: int, event, current_user):
    ctx = current_core()
    return jsonify({"types": [_type_payload(ctx, t) for t in ctx.templates.list_types(event_id)]})


@bp.post("/<int:event_id>/types")
@event_owner_required
def create_type(event_id: int, event, current_user):
    ctx = current_core()
    payload = request.get_json(silent=True) or {}
    name = " ".join(str(payload.get("name") or "").split())
    if not name:
        raise ValidationError("Certificate type name is required.")
    ensure_type_quota(ctx, current_user)
    cert_type = ctx.templates.create_type(event_id, name[:255])
    log_audit(
        db.session,
        "certificate_type.create",
        user_id=current_user.id,
        event_id=event_id,
        details={"type_id": cert_type.id, "name": cert_type.name},
    )
    current_app.logger.info(
        "[CERT] type created event=%s type=%s user=%s", event_id, cert_type.id, current_user.email
    )
    return jsonify(_type_payload(ctx, cert_type)), 201


@bp.get("/<int:event_id>/types/<int:type_id>")
@event_owner_required
def get_type(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    return jsonify(_type_payload(ctx, ctx.templates.get_type(event_id, type_id)))


@bp.patch("/<int:event_id>/types/<int:type_id>")
@event_owner_required
def patch_type(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    partial = request.get_json(silent=True)
    if not isinstance(partial, dict) or not partial:
        raise ValidationError("Expected a JSON object of template changes.")
    unknown = sorted(set(partial) - set(TEMPLATE_PATCH_KEYS))
    if unknown:
        raise ValidationError(f"Unknown template keys: {', '.join(unknown)}.")
    template = ctx.templates.patch_template(event_id, type_id, partial)
    log_audit(
        db.session,
        "template.patch",
        user_id=current_user.id,
        event_id=event_id,
        details={"type_id": type_id, "keys": sorted(partial)},
    )
    current_app.logger.info(
        "[TEMPLATE-PATCH] event=%s type=%s keys=%s", event_id, type_id, ",".join(sorted(partial))
    )
    return jsonify(template_to_dict(template))


@bp.delete("/<int:event_id>/types/<int:type_id>")
@event_owner_required
def delete_type(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    ctx.templates.deactivate_type(event_id, type_id)
    log_audit(
        db.session,
        "certificate_type.delete",
        user_id=current_user.id,
        event_id=event_id,
        details={"type_id": type_id},
    )
    return jsonify({"ok": True})


@bp.post("/<int:event_id>/types/<int:type_id>/preview")
@event_owner_required
def preview_type(event_id: int, type_id: int, event, current_user):
    ctx = current_core()
    payload = request.get_json(silent=True) or {}
    template = ctx.templates.get_template(event_id, type_id)
    override = payload.get("template")
    if isinstance(override, dict):
        template = merge_patch(template, override)

    recipient = SAMPLE_RECIPIENT
    recipient_id = payload.get("recipient_id")
    if recipient_id not in (None, ""):
        try:
            recipient_id = int(recipient_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid recipient_id.") from None
        found = db.session.get(Recipient, recipient_id)
        if not found or found.certificate_type_id != type_id:
            raise NotFound("Recipient not found.")
        recipient = found

    preview = render_preview_png(
        RenderRequest.build(template, recipient),
        ctx.assets,
        ttl=current_app.config.get("PREVIEW_CACHE_TTL", 45),
    )
    return jsonify(
        {
            "image": f"data:image/png;base64,{preview.image_base64}",
            "width": preview.width,
            "height": preview.height,
            "warnings": list(preview.warnings),
        }
    )


@bp.post("/<int:event_id>/assets")
@event_owner_required
def upload_asset(event_id: int, event, current_user):
    """Store a background or signature image and return its reference."""
    f = request.files.get("file")
    filename = secure_filename((f.filename if f else "") or "")
    if not f or os.path.splitext(filename)[1].lower() not in ALLOWED_IMAGE_EXTENSIONS:
        raise ValidationError("A PNG or JPEG image is required.")
    data = f.read()
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError("Image is too large.")
    reference = f"events/{event_id}/{filename}"
    write_atomic(os.path.join(current_app.config["UPLOAD_ROOT"], reference), data)
    current_app.logger.info(
        "[CERT] asset uploaded event=%s file=%s user=%s", event_id, filename, current_user.email
    )
    return jsonify({"reference": reference}), 201

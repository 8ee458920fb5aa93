import base64
from io import BytesIO

from flask import Blueprint, current_app, jsonify, request, send_file, session

from ..services.context import current_core
from ..services.delivery import DeliveryFlow
from ..services.directory import downloadable_types, get_event
from ..shared.errors import ValidationError
from ..shared.layout import VARIABLE_LABELS

bp = Blueprint("download", __name__, url_prefix="/d")


def _flow_key(event_id: int) -> str:
    return f"delivery_flow:{event_id}"


def _load_flow(event_id: int) -> DeliveryFlow:
    data = session.get(_flow_key(event_id))
    if not data:
        return DeliveryFlow(event_id)
    return DeliveryFlow.from_dict(data)


def _save_flow(flow: DeliveryFlow) -> None:
    session[_flow_key(flow.event_id)] = flow.to_dict()


def _flow_payload(flow: DeliveryFlow, candidates=None) -> dict:
    payload = {"state": flow.state.value}
    if candidates is not None:
        payload["candidates"] = [c.to_dict() for c in candidates]
    if flow.selected:
        payload["selected"] = {"recipient_id": flow.selected[0], "type_id": flow.selected[1]}
    return payload


def _type_summary(cert_type) -> dict:
    template = cert_type.to_template()
    return {
        "id": cert_type.id,
        "name": cert_type.name,
        "search_fields": list(template.search_fields),
    }


@bp.get("/<int:event_id>")
def event_info(event_id: int):
    ctx = current_core()
    event = get_event(ctx, event_id)
    _save_flow(DeliveryFlow(event_id))
    return jsonify(
        {
            "event": event.to_dict(),
            "types": [_type_summary(t) for t in downloadable_types(ctx, event_id)],
        }
    )


@bp.get("/<int:event_id>/<int:type_id>")
def type_info(event_id: int, type_id: int):
    ctx = current_core()
    types = downloadable_types(ctx, event_id, type_id)
    if not types:
        return jsonify({"error": "not_found", "message": "Certificate type not found."}), 404
    flow = DeliveryFlow(event_id, type_id)
    _save_flow(flow)
    summary = _type_summary(types[0])
    summary["field_labels"] = VARIABLE_LABELS
    return jsonify({"type": summary, **_flow_payload(flow)})


@bp.post("/<int:event_id>/verify")
def verify(event_id: int):
    ctx = current_core()
    payload = request.get_json(silent=True) or {}
    contact = str(payload.get("contact") or "").strip()
    if not contact:
        raise ValidationError("Please enter your details.")
    type_id = payload.get("type_id", _load_flow(event_id).type_id)
    try:
        type_id = int(type_id) if type_id not in (None, "") else None
    except (TypeError, ValueError):
        raise ValidationError("Invalid certificate type.") from None
    flow = DeliveryFlow(event_id, type_id)
    candidates = flow.verify(ctx, contact)
    _save_flow(flow)
    current_app.logger.info(
        "[DOWNLOAD] verify event=%s type=%s matches=%s", event_id, type_id, len(candidates)
    )
    return jsonify(_flow_payload(flow, candidates))


@bp.post("/<int:event_id>/select")
def select(event_id: int):
    payload = request.get_json(silent=True) or {}
    try:
        recipient_id = int(payload.get("recipient_id"))
        type_id = int(payload.get("type_id"))
    except (TypeError, ValueError):
        raise ValidationError("recipient_id and type_id are required.") from None
    flow = _load_flow(event_id)
    flow.select(recipient_id, type_id)
    _save_flow(flow)
    return jsonify(_flow_payload(flow))


@bp.post("/<int:event_id>/back")
def back(event_id: int):
    flow = _load_flow(event_id)
    flow.back()
    _save_flow(flow)
    return jsonify(_flow_payload(flow))


@bp.get("/<int:event_id>/preview.png")
def preview(event_id: int):
    ctx = current_core()
    flow = _load_flow(event_id)
    result = flow.preview(ctx)
    response = send_file(
        BytesIO(base64.b64decode(result.image_base64)),
        mimetype="image/png",
        max_age=0,
    )
    response.headers["Cache-Control"] = "no-store"
    return response


@bp.get("/<int:event_id>/certificate.pdf")
def certificate_pdf(event_id: int):
    ctx = current_core()
    flow = _load_flow(event_id)
    try:
        download = flow.download(ctx)
    finally:
        _save_flow(flow)
    current_app.logger.info(
        "[DOWNLOAD] pdf event=%s recipient=%s recorded=%s",
        event_id,
        download.recipient.id,
        download.recorded,
    )
    return send_file(
        BytesIO(download.pdf),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=download.filename,
        max_age=0,
    )


@bp.get("/<int:event_id>/c/<certificate_id>")
def direct_link(event_id: int, certificate_id: str):
    ctx = current_core()
    flow = DeliveryFlow.from_certificate_id(ctx, event_id, certificate_id)
    _save_flow(flow)
    return jsonify(_flow_payload(flow))

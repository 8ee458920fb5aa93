from __future__ import annotations

from dataclasses import dataclass

from ..models import CertificateType, Event, Recipient
from ..shared.errors import NotFound, ValidationError
from ..shared.layout import CertificateTemplate


@dataclass(frozen=True)
class Candidate:
    recipient: Recipient
    template: CertificateTemplate

    def to_dict(self) -> dict:
        return {
            "recipient_id": self.recipient.id,
            "type_id": self.template.id,
            "type_name": self.template.name,
            "name": self.recipient.name,
            "certificate_id": self.recipient.certificate_id,
        }


def get_event(ctx, event_id: int) -> Event:
    event = ctx.session.get(Event, event_id)
    if not event or not event.is_active:
        raise NotFound("Event not found.")
    return event


def downloadable_types(ctx, event_id: int, type_id: int | None = None) -> list[CertificateType]:
    """Active types of the event that have a background to render on."""
    get_event(ctx, event_id)
    types = ctx.templates.list_types(event_id)
    if type_id is not None:
        types = [t for t in types if t.id == type_id]
    return [t for t in types if (t.background_image or "").strip()]


def resolve(ctx, event_id: int, contact: str, type_id: int | None = None) -> list[Candidate]:
    contact = (contact or "").strip()
    if not contact:
        raise ValidationError("Please enter your details.")
    candidates: list[Candidate] = []
    for cert_type in downloadable_types(ctx, event_id, type_id):
        template = cert_type.to_template()
        seen: set[int] = set()
        for key in template.search_fields:
            for recipient in ctx.recipients.match(cert_type.id, key, contact):
                if recipient.id in seen:
                    continue
                seen.add(recipient.id)
                candidates.append(Candidate(recipient=recipient, template=template))
    if not candidates:
        raise NotFound()
    candidates.sort(key=lambda c: (c.template.name.lower(), c.template.id, c.recipient.id))
    return candidates


def find_by_certificate_id(ctx, event_id: int, certificate_id: str) -> Candidate:
    renderable = {t.id: t for t in downloadable_types(ctx, event_id)}
    for recipient in ctx.recipients.find_by_certificate_id(event_id, certificate_id):
        cert_type = renderable.get(recipient.certificate_type_id)
        if cert_type:
            return Candidate(recipient=recipient, template=cert_type.to_template())
    raise NotFound()

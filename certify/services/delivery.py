from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..models import Event, Recipient
from ..shared.errors import CertifyError, InvalidTransition, NotFound, QuotaExceeded
from .directory import Candidate, find_by_certificate_id, resolve
from .rendering import PreviewResult, RenderRequest, certificate_filename, render_pdf, render_preview_png
from .stores import log_audit

logger = logging.getLogger("certify.delivery")


class FlowState(str, Enum):
    VERIFY = "verify"
    DISAMBIGUATE = "disambiguate"
    PREVIEW = "preview"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"


@dataclass
class Download:
    pdf: bytes
    filename: str
    recipient: Recipient
    recorded: bool


class DeliveryFlow:
    """Recipient-side verify, preview and download steps for one event."""

    def __init__(self, event_id: int, type_id: int | None = None):
        self.event_id = event_id
        self.type_id = type_id
        self.state = FlowState.VERIFY
        self.candidates: list[tuple[int, int]] = []
        self.selected: tuple[int, int] | None = None
        self.cancelled = False

    @classmethod
    def for_recipient(cls, event_id: int, candidate: Candidate) -> "DeliveryFlow":
        flow = cls(event_id, candidate.template.id)
        flow.selected = (candidate.recipient.id, candidate.template.id)
        flow.state = FlowState.PREVIEW
        return flow

    @classmethod
    def from_certificate_id(cls, ctx, event_id: int, certificate_id: str) -> "DeliveryFlow":
        return cls.for_recipient(event_id, find_by_certificate_id(ctx, event_id, certificate_id))

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "type_id": self.type_id,
            "state": self.state.value,
            "candidates": [list(c) for c in self.candidates],
            "selected": list(self.selected) if self.selected else None,
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "DeliveryFlow":
        flow = cls(int(data["event_id"]), data.get("type_id"))
        flow.state = FlowState(data.get("state", FlowState.VERIFY.value))
        flow.candidates = [tuple(c) for c in data.get("candidates") or []]
        selected = data.get("selected")
        flow.selected = tuple(selected) if selected else None
        flow.cancelled = bool(data.get("cancelled"))
        # a download interrupted between requests is retried from preview
        if flow.state is FlowState.DOWNLOADING:
            flow.state = FlowState.PREVIEW
        return flow

    def _expect(self, *states: FlowState) -> None:
        if self.state not in states:
            raise InvalidTransition(state=self.state.value)

    def verify(self, ctx, contact: str) -> list[Candidate]:
        self._expect(FlowState.VERIFY)
        found = resolve(ctx, self.event_id, contact, self.type_id)
        self.candidates = [(c.recipient.id, c.template.id) for c in found]
        if len(found) == 1:
            self.selected = self.candidates[0]
            self.state = FlowState.PREVIEW
        else:
            self.selected = None
            self.state = FlowState.DISAMBIGUATE
        return found

    def select(self, recipient_id: int, type_id: int) -> None:
        self._expect(FlowState.DISAMBIGUATE)
        choice = (int(recipient_id), int(type_id))
        if choice not in self.candidates:
            raise InvalidTransition("Please choose one of the listed certificates.")
        self.selected = choice
        self.state = FlowState.PREVIEW

    def back(self) -> None:
        self.state = FlowState.VERIFY
        self.candidates = []
        self.selected = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def _selection(self, ctx) -> tuple[Recipient, RenderRequest]:
        if not self.selected:
            raise InvalidTransition(state=self.state.value)
        recipient_id, type_id = self.selected
        cert_type = ctx.templates.get_type(self.event_id, type_id)
        recipient = ctx.session.get(Recipient, recipient_id)
        if not recipient or recipient.certificate_type_id != cert_type.id:
            raise NotFound()
        return recipient, RenderRequest.build(cert_type.to_template(), recipient)

    def render_request(self, ctx) -> RenderRequest:
        return self._selection(ctx)[1]

    def preview(self, ctx) -> PreviewResult:
        self._expect(FlowState.PREVIEW, FlowState.DOWNLOADED)
        return render_preview_png(self.render_request(ctx), ctx.assets)

    def download(self, ctx) -> Download:
        self._expect(FlowState.PREVIEW, FlowState.DOWNLOADED)
        recipient, request = self._selection(ctx)
        event = ctx.session.get(Event, self.event_id)
        plan = event.owner.plan if event and event.owner else None
        cap = ctx.plans.max_downloads_per_recipient(plan)
        if not ctx.plans.can_download(plan, recipient.download_count or 0):
            raise QuotaExceeded("This certificate has already been downloaded.", limit=cap)

        recipient_id = recipient.id
        previous = self.state
        self.state = FlowState.DOWNLOADING
        try:
            pdf = render_pdf(request, ctx.assets)
            filename = certificate_filename(request.template.name, request.recipient.certificate_id)
            if self.cancelled:
                self.state = previous
                logger.info(
                    "[DOWNLOAD] cancelled event=%s recipient=%s; not recorded",
                    self.event_id,
                    recipient_id,
                )
                return Download(pdf=pdf, filename=filename, recipient=recipient, recorded=False)
            recipient = ctx.recipients.record_download(recipient_id, ctx.clock(), max_count=cap)
        except CertifyError as exc:
            self.state = FlowState.PREVIEW
            logger.warning(
                "[DOWNLOAD] failed event=%s recipient=%s error=%s",
                self.event_id,
                recipient_id,
                exc.kind,
            )
            raise

        self.state = FlowState.DOWNLOADED
        log_audit(
            ctx.session,
            "certificate.download",
            event_id=self.event_id,
            recipient_id=recipient.id,
            details={"type_id": request.template.id, "count": recipient.download_count},
        )
        logger.info(
            "[DOWNLOAD] event=%s recipient=%s count=%s",
            self.event_id,
            recipient.id,
            recipient.download_count,
        )
        return Download(pdf=pdf, filename=filename, recipient=recipient, recorded=True)

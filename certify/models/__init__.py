from __future__ import annotations

from sqlalchemy.orm import validates

from ..app import db
from ..shared.layout import (
    CertificateTemplate,
    DEFAULT_REFERENCE_WIDTH,
    default_name_field,
    sanitize_template,
    template_to_dict,
    text_field_to_dict,
)

DOWNLOAD_PENDING = "pending"
DOWNLOAD_DONE = "downloaded"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    plan = db.Column(db.String(32), nullable=False, default="free", server_default="free")
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.Index("ix_users_email_lower", db.func.lower(email), unique=True),
    )

    @validates("email")
    def lower_email(self, key, value):  # pragma: no cover - simple normalizer
        return value.lower()


class Event(db.Model):
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owner = db.relationship("User", backref="events")
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(
        db.Boolean, nullable=False, default=True, server_default=db.text("true")
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "is_active": self.is_active}


class CertificateType(db.Model):
    __tablename__ = "certificate_types"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event = db.relationship("Event", backref="certificate_types")
    name = db.Column(db.String(255), nullable=False)
    background_image = db.Column(db.Text, nullable=False, default="", server_default="")
    reference_width = db.Column(
        db.Integer,
        nullable=False,
        default=DEFAULT_REFERENCE_WIDTH,
        server_default=str(DEFAULT_REFERENCE_WIDTH),
    )
    name_field = db.Column(
        db.JSON, nullable=True, default=lambda: text_field_to_dict(default_name_field())
    )
    custom_fields = db.Column(db.JSON, nullable=False, default=list)
    signatures = db.Column(db.JSON, nullable=False, default=list)
    search_fields = db.Column(db.JSON, nullable=False, default=lambda: ["name"])
    text_case = db.Column(db.String(16), nullable=False, default="none", server_default="none")
    alignment = db.Column(db.String(16), nullable=False, default="center", server_default="center")
    is_active = db.Column(
        db.Boolean, nullable=False, default=True, server_default=db.text("true")
    )
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime, server_default=db.func.now(), onupdate=db.func.now()
    )

    def to_template(self) -> CertificateTemplate:
        return sanitize_template(
            {
                "name": self.name,
                "background_image": self.background_image,
                "reference_width": self.reference_width,
                "name_field": self.name_field,
                "custom_fields": self.custom_fields,
                "signatures": self.signatures,
                "search_fields": self.search_fields,
                "text_case": self.text_case,
                "alignment": self.alignment,
            },
            template_id=self.id,
            event_id=self.event_id,
        )

    def apply_template(self, template: CertificateTemplate) -> None:
        data = template_to_dict(template)
        self.name = data["name"] or self.name
        self.background_image = data["background_image"]
        self.reference_width = data["reference_width"]
        self.name_field = data["name_field"]
        self.custom_fields = data["custom_fields"]
        self.signatures = data["signatures"]
        self.search_fields = data["search_fields"]
        self.text_case = data["text_case"]
        self.alignment = data["alignment"]


class Recipient(db.Model):
    __tablename__ = "recipients"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    certificate_type_id = db.Column(
        db.Integer,
        db.ForeignKey("certificate_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    certificate_type = db.relationship("CertificateType", backref="recipients")
    certificate_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255))
    mobile = db.Column(db.String(32))
    download_count = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    last_downloaded_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    __table_args__ = (
        db.UniqueConstraint(
            "certificate_type_id", "certificate_id", name="uq_recipient_type_certificate_id"
        ),
    )

    @property
    def download_status(self) -> str:
        return DOWNLOAD_DONE if (self.download_count or 0) > 0 else DOWNLOAD_PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "certificate_type_id": self.certificate_type_id,
            "certificate_id": self.certificate_id,
            "name": self.name,
            "email": self.email or "",
            "mobile": self.mobile or "",
            "download_count": self.download_count or 0,
            "download_status": self.download_status,
            "last_downloaded_at": (
                self.last_downloaded_at.isoformat() if self.last_downloaded_at else None
            ),
        }


class AuditLog(db.Model):
    __tablename__ = "audit_logs"
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    event_id = db.Column(
        db.Integer, db.ForeignKey("events.id", ondelete="SET NULL"), nullable=True
    )
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("recipients.id", ondelete="SET NULL"), nullable=True
    )
    action = db.Column(db.String(255), nullable=False)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, server_default=db.func.now())

from __future__ import annotations

import json
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from ..models import AuditLog, CertificateType, Event, Recipient
from ..shared.errors import NotFound, PersistenceFailure, QuotaExceeded, ValidationError
from ..shared.layout import CertificateTemplate, merge_patch
from ..shared.time import utcnow_naive


class TemplateStore(Protocol):
    def get_template(self, event_id: int, type_id: int) -> CertificateTemplate: ...

    def patch_template(
        self, event_id: int, type_id: int, partial: dict
    ) -> CertificateTemplate: ...


@dataclass(frozen=True)
class RecipientRow:
    name: str
    email: str = ""
    mobile: str = ""
    certificate_id: str = ""


@dataclass
class AddResult:
    accepted: list[Recipient] = field(default_factory=list)
    rejected_for_quota: int = 0
    skipped_duplicates: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "accepted": len(self.accepted),
            "rejected_for_quota": self.rejected_for_quota,
            "skipped_duplicates": self.skipped_duplicates,
            "errors": list(self.errors),
        }


def collapse_whitespace(value: str | None) -> str:
    return " ".join((value or "").split())


def mobile_digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def _header_key(name: str | None) -> str:
    return (name or "").replace(" ", "").replace("_", "").replace("-", "").lower()


def normalize_row(raw: dict) -> RecipientRow:
    """Turn a JSON object or CSV row into a RecipientRow.

    Accepts ``name`` or ``prefix``/``first_name``/``last_name`` and
    ``reg_no`` or ``certificate_id``, with loose header spelling.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Each recipient must be an object.")
    values = {_header_key(k): (str(v).strip() if v is not None else "") for k, v in raw.items()}
    name = values.get("name") or values.get("fullname") or ""
    if not name:
        parts = [values.get("prefix", ""), values.get("firstname", ""), values.get("lastname", "")]
        name = " ".join(p for p in parts if p)
    name = collapse_whitespace(name)[:255]
    if not name:
        raise ValidationError("Recipient name is required.")

    email = values.get("email", "")
    if email:
        try:
            email = validate_email(email, check_deliverability=False).normalized.lower()
        except EmailNotValidError as exc:
            raise ValidationError(f"Invalid email {email!r}.") from exc

    mobile = values.get("mobile") or values.get("phone") or ""
    if mobile and not mobile_digits(mobile):
        raise ValidationError(f"Invalid mobile {mobile!r}.")

    certificate_id = (
        values.get("regno")
        or values.get("certificateid")
        or values.get("registrationnumber")
        or ""
    )
    return RecipientRow(
        name=name,
        email=email,
        mobile=mobile[:32],
        certificate_id=certificate_id[:64],
    )


def generate_certificate_id(taken: set[str]) -> str:
    while True:
        candidate = f"CERT-{secrets.token_hex(4).upper()}"
        if candidate.lower() not in taken:
            return candidate


class SqlTemplateStore:
    """Template Store backed by the certificate_types table."""

    def __init__(self, session):
        self.session = session

    def get_type(self, event_id: int, type_id: int, *, include_inactive: bool = False) -> CertificateType:
        cert_type = self.session.get(CertificateType, type_id)
        if (
            not cert_type
            or cert_type.event_id != event_id
            or (not include_inactive and not cert_type.is_active)
        ):
            raise NotFound("Certificate type not found.")
        return cert_type

    def list_types(self, event_id: int) -> list[CertificateType]:
        return (
            self.session.query(CertificateType)
            .filter(
                CertificateType.event_id == event_id,
                CertificateType.is_active.is_(True),
            )
            .order_by(CertificateType.name, CertificateType.id)
            .all()
        )

    def count_types_for_owner(self, owner_id: int) -> int:
        return (
            self.session.query(func.count(CertificateType.id))
            .join(Event, Event.id == CertificateType.event_id)
            .filter(Event.owner_id == owner_id, CertificateType.is_active.is_(True))
            .scalar()
            or 0
        )

    def get_template(self, event_id: int, type_id: int) -> CertificateTemplate:
        return self.get_type(event_id, type_id).to_template()

    def patch_template(self, event_id: int, type_id: int, partial: dict) -> CertificateTemplate:
        cert_type = self.get_type(event_id, type_id)
        merged = merge_patch(cert_type.to_template(), partial)
        try:
            cert_type.apply_template(merged)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc
        return cert_type.to_template()

    def create_type(self, event_id: int, name: str) -> CertificateType:
        cert_type = CertificateType(event_id=event_id, name=name)
        try:
            self.session.add(cert_type)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc
        return cert_type

    def deactivate_type(self, event_id: int, type_id: int) -> None:
        cert_type = self.get_type(event_id, type_id)
        cert_type.is_active = False
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc


class SqlRecipientStore:
    def __init__(self, session, clock=utcnow_naive):
        self.session = session
        self.clock = clock

    def list_recipients(self, event_id: int, type_id: int) -> list[Recipient]:
        return (
            self.session.query(Recipient)
            .filter(
                Recipient.event_id == event_id,
                Recipient.certificate_type_id == type_id,
            )
            .order_by(Recipient.id)
            .all()
        )

    def get(self, recipient_id: int) -> Recipient:
        recipient = self.session.get(Recipient, recipient_id)
        if not recipient:
            raise NotFound()
        return recipient

    def count_for_owner(self, owner_id: int) -> int:
        return (
            self.session.query(func.count(Recipient.id))
            .join(Event, Event.id == Recipient.event_id)
            .filter(Event.owner_id == owner_id)
            .scalar()
            or 0
        )

    def stats(self, type_id: int) -> dict:
        total = (
            self.session.query(func.count(Recipient.id))
            .filter(Recipient.certificate_type_id == type_id)
            .scalar()
            or 0
        )
        downloaded = (
            self.session.query(func.count(Recipient.id))
            .filter(
                Recipient.certificate_type_id == type_id,
                Recipient.download_count > 0,
            )
            .scalar()
            or 0
        )
        return {"total": total, "downloaded": downloaded, "pending": total - downloaded}

    def match(self, type_id: int, key: str, value: str) -> list[Recipient]:
        """Recipients of one type whose ``key`` equals the normalized ``value``."""
        query = self.session.query(Recipient).filter(Recipient.certificate_type_id == type_id)
        if key == "email":
            return query.filter(func.lower(Recipient.email) == value.lower()).all()
        if key == "reg_no":
            return query.filter(func.lower(Recipient.certificate_id) == value.lower()).all()
        if key == "name":
            return query.filter(func.lower(Recipient.name) == collapse_whitespace(value).lower()).all()
        if key == "mobile":
            digits = mobile_digits(value)
            if not digits:
                return []
            # stored numbers keep their formatting, so compare digits in Python
            rows = query.filter(Recipient.mobile.isnot(None)).all()
            return [r for r in rows if mobile_digits(r.mobile) == digits]
        raise ValueError(f"unknown search key {key!r}")

    def find_by_certificate_id(self, event_id: int, certificate_id: str) -> list[Recipient]:
        return (
            self.session.query(Recipient)
            .filter(
                Recipient.event_id == event_id,
                func.lower(Recipient.certificate_id) == (certificate_id or "").strip().lower(),
            )
            .order_by(Recipient.id)
            .all()
        )

    def add_recipients(
        self,
        event_id: int,
        type_id: int,
        rows: Iterable[RecipientRow],
        limit: int | None = None,
    ) -> AddResult:
        """Insert rows in order, skipping duplicates and stopping at ``limit``."""
        result = AddResult()
        taken = {
            (cid or "").lower()
            for (cid,) in self.session.query(Recipient.certificate_id).filter(
                Recipient.certificate_type_id == type_id
            )
        }
        pending: list[Recipient] = []
        for row in rows:
            if row.certificate_id and row.certificate_id.lower() in taken:
                result.skipped_duplicates += 1
                continue
            if limit is not None and len(pending) >= limit:
                result.rejected_for_quota += 1
                continue
            certificate_id = row.certificate_id or generate_certificate_id(taken)
            taken.add(certificate_id.lower())
            pending.append(
                Recipient(
                    event_id=event_id,
                    certificate_type_id=type_id,
                    certificate_id=certificate_id,
                    name=row.name,
                    email=row.email or None,
                    mobile=row.mobile or None,
                    download_count=0,
                )
            )
        if not pending:
            return result
        try:
            self.session.add_all(pending)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc
        result.accepted = pending
        return result

    def delete_recipient(self, event_id: int, type_id: int, recipient_id: int) -> None:
        recipient = self.get(recipient_id)
        if recipient.event_id != event_id or recipient.certificate_type_id != type_id:
            raise NotFound()
        try:
            self.session.delete(recipient)
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc

    def record_download(
        self,
        recipient_id: int,
        at: datetime | None = None,
        *,
        max_count: int | None = None,
    ) -> Recipient:
        """Atomically bump the download counter and stamp the time.

        With ``max_count`` the increment only happens while the counter is
        below the cap, so concurrent downloads cannot both slip past it.
        """
        stmt = update(Recipient).where(Recipient.id == recipient_id)
        if max_count is not None:
            stmt = stmt.where(Recipient.download_count < max_count)
        stmt = stmt.values(
            download_count=Recipient.download_count + 1,
            last_downloaded_at=at or self.clock(),
        ).execution_options(synchronize_session=False)
        try:
            updated = self.session.execute(stmt).rowcount
            if updated:
                self.session.commit()
            else:
                self.session.rollback()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise PersistenceFailure() from exc
        recipient = self.session.get(Recipient, recipient_id, populate_existing=True)
        if recipient is None:
            raise NotFound()
        if not updated:
            raise QuotaExceeded("This certificate has already been downloaded.", limit=max_count)
        return recipient


def log_audit(
    session,
    action: str,
    *,
    user_id: int | None = None,
    event_id: int | None = None,
    recipient_id: int | None = None,
    details: dict | str | None = None,
) -> AuditLog:
    if isinstance(details, dict):
        details = json.dumps(details, sort_keys=True)
    entry = AuditLog(
        user_id=user_id,
        event_id=event_id,
        recipient_id=recipient_id,
        action=action,
        details=details,
    )
    session.add(entry)
    session.commit()
    return entry

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Protocol

from ..shared.errors import PersistenceFailure, ValidationError
from ..shared.layout import (
    ALIGNMENTS,
    DEFAULT_SIGNATURE_WIDTH,
    FIELD_VARIABLES,
    TEXT_CASES,
    CertificateTemplate,
    ImageField,
    Position,
    Selection,
    TextField,
    clamp,
    default_name_field,
    filter_search_fields,
    new_field_id,
    patch_value,
    replace_field,
    sanitize_font_family,
    sanitize_font_size,
    sanitize_search_fields,
    selected_field,
)

logger = logging.getLogger("certify.editor")


class Scheduler(Protocol):
    def schedule(self, delay: float, fn: Callable[[], None]) -> object: ...

    def cancel(self, handle: object) -> None: ...


class TimerScheduler:
    def schedule(self, delay: float, fn: Callable[[], None]) -> threading.Timer:
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return timer

    def cancel(self, handle: threading.Timer) -> None:
        handle.cancel()


class EditorSession:
    """Working copy of one template, reconciled to the store.

    Structural edits are written at once and rolled back if the write fails.
    Drags and resizes are buffered per top-level key and written as one
    merged patch after ``debounce`` seconds of quiet.
    """

    def __init__(
        self,
        store,
        event_id: int,
        type_id: int,
        *,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
        debounce: float = 0.5,
        echo_window: float = 2.0,
        max_retries: int = 2,
        on_warning: Callable[[str], None] | None = None,
    ):
        self.store = store
        self.event_id = event_id
        self.type_id = type_id
        self.scheduler = scheduler or TimerScheduler()
        self.clock = clock
        self.debounce = debounce
        self.echo_window = echo_window
        self.max_retries = max_retries
        self.on_warning = on_warning

        self.template: CertificateTemplate | None = None
        self._pending: dict = {}
        self._timer = None
        self._gesture = False
        self._last_write: float | None = None
        self._failures = 0
        self._closed = False
        self._lock = threading.RLock()

    def __enter__(self) -> "EditorSession":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.close()
        return False

    def open(self) -> CertificateTemplate:
        with self._lock:
            self.template = self.store.get_template(self.event_id, self.type_id)
            self._closed = False
            return self.template

    @property
    def pending(self) -> dict:
        with self._lock:
            return dict(self._pending)

    def _require_open(self) -> CertificateTemplate:
        if self._closed or self.template is None:
            raise RuntimeError("editor session is not open")
        return self.template

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self.on_warning:
            self.on_warning(message)

    # -- scheduling ----------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self.scheduler.cancel(self._timer)
            self._timer = None

    def _schedule(self) -> None:
        self._cancel_timer()
        self._timer = self.scheduler.schedule(self.debounce, self._on_timer)

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
            if self._closed or not self._pending:
                return
            self._send_pending(retry=True)

    def _send_pending(self, *, retry: bool) -> bool:
        patch = self._pending
        self._pending = {}
        try:
            self.store.patch_template(self.event_id, self.type_id, patch)
        except PersistenceFailure:
            merged = dict(patch)
            merged.update(self._pending)
            self._pending = merged
            self._failures += 1
            if retry and self._failures <= self.max_retries:
                logger.info(
                    "[editor-retry] type=%s keys=%s attempt=%s",
                    self.type_id,
                    sorted(merged),
                    self._failures,
                )
                self._schedule()
            else:
                self._warn(
                    f"[editor-save-failed] type={self.type_id} keys={sorted(merged)}; changes are kept locally"
                )
            return False
        self._failures = 0
        self._last_write = self.clock()
        return True

    # -- edit kinds ----------------------------------------------------

    def _debounced(self, template: CertificateTemplate, key: str) -> CertificateTemplate:
        self.template = template
        self._pending[key] = patch_value(template, key)
        self._failures = 0
        self._schedule()
        return template

    def _immediate(self, template: CertificateTemplate, *keys: str) -> CertificateTemplate:
        before = self.template
        pending_before = dict(self._pending)
        self.template = template
        patch = dict(self._pending)
        for key in keys:
            patch[key] = patch_value(template, key)
        self._cancel_timer()
        self._pending = {}
        try:
            self.store.patch_template(self.event_id, self.type_id, patch)
        except PersistenceFailure:
            self.template = before
            self._pending = pending_before
            if self._pending:
                self._schedule()
            logger.warning("[editor-rollback] type=%s keys=%s", self.type_id, sorted(patch))
            raise
        self._failures = 0
        self._last_write = self.clock()
        return template

    def _field(self, selection: Selection) -> TextField:
        text_field = selected_field(self._require_open(), selection)
        if text_field is None:
            raise ValidationError("Field not found.")
        return text_field

    def _signature(self, signature_id: str) -> ImageField:
        for signature in self._require_open().signatures:
            if signature.id == signature_id:
                return signature
        raise ValidationError("Signature not found.")

    def _replace_signature(self, signature: ImageField) -> CertificateTemplate:
        template = self._require_open()
        signatures = tuple(
            signature if s.id == signature.id else s for s in template.signatures
        )
        return replace(template, signatures=signatures)

    # -- debounced edits -----------------------------------------------

    def move_field(self, selection: Selection, position: Position) -> CertificateTemplate:
        with self._lock:
            text_field = replace(self._field(selection), position=clamp(position))
            template, key = replace_field(self.template, selection, text_field)
            return self._debounced(template, key)

    def set_font_size(self, selection: Selection, size: float) -> CertificateTemplate:
        with self._lock:
            text_field = replace(self._field(selection), font_size=sanitize_font_size(size))
            template, key = replace_field(self.template, selection, text_field)
            return self._debounced(template, key)

    def move_signature(self, signature_id: str, position: Position) -> CertificateTemplate:
        with self._lock:
            signature = replace(self._signature(signature_id), position=clamp(position))
            return self._debounced(self._replace_signature(signature), "signatures")

    def resize_signature(self, signature_id: str, width: float) -> CertificateTemplate:
        with self._lock:
            if width <= 0:
                raise ValidationError("Signature width must be positive.")
            signature = replace(self._signature(signature_id), width=min(float(width), 100.0))
            return self._debounced(self._replace_signature(signature), "signatures")

    # -- immediate edits -----------------------------------------------

    def add_custom_field(self, variable: str, position: Position | None = None) -> TextField:
        with self._lock:
            template = self._require_open()
            variable = (variable or "").strip().upper()
            if variable not in FIELD_VARIABLES:
                raise ValidationError(f"Unknown field variable {variable!r}.")
            if any(f.variable == variable for f in template.custom_fields):
                raise ValidationError(f"A {variable} field already exists.")
            text_field = TextField(
                id=new_field_id(),
                variable=variable,
                position=clamp(position or Position(50.0, 70.0)),
            )
            self._immediate(
                replace(template, custom_fields=template.custom_fields + (text_field,)),
                "custom_fields",
            )
            return text_field

    def remove_custom_field(self, field_id: str) -> CertificateTemplate:
        with self._lock:
            template = self._require_open()
            fields = tuple(f for f in template.custom_fields if f.id != field_id)
            if len(fields) == len(template.custom_fields):
                raise ValidationError("Field not found.")
            return self._immediate(replace(template, custom_fields=fields), "custom_fields")

    def set_name_field_enabled(self, enabled: bool) -> CertificateTemplate:
        with self._lock:
            template = self._require_open()
            name_field = template.name_field or default_name_field()
            name_field = replace(name_field, enabled=bool(enabled))
            return self._immediate(replace(template, name_field=name_field), "name_field")

    def set_search_fields(self, keys) -> CertificateTemplate:
        with self._lock:
            template = self._require_open()
            if not filter_search_fields(keys or []):
                raise ValidationError("At least one search field is required.")
            return self._immediate(
                replace(template, search_fields=sanitize_search_fields(list(keys))),
                "search_fields",
            )

    def add_signature(
        self,
        image: str,
        position: Position | None = None,
        width: float = DEFAULT_SIGNATURE_WIDTH,
    ) -> ImageField:
        with self._lock:
            template = self._require_open()
            image = (image or "").strip()
            if not image:
                raise ValidationError("Signature image is required.")
            if width <= 0:
                raise ValidationError("Signature width must be positive.")
            signature = ImageField(
                id=new_field_id("sig"),
                image=image,
                position=clamp(position or Position(50.0, 80.0)),
                width=min(float(width), 100.0),
            )
            self._immediate(
                replace(template, signatures=template.signatures + (signature,)),
                "signatures",
            )
            return signature

    def remove_signature(self, signature_id: str) -> CertificateTemplate:
        with self._lock:
            template = self._require_open()
            signatures = tuple(s for s in template.signatures if s.id != signature_id)
            if len(signatures) == len(template.signatures):
                raise ValidationError("Signature not found.")
            return self._immediate(replace(template, signatures=signatures), "signatures")

    def set_background(self, reference: str) -> CertificateTemplate:
        with self._lock:
            template = self._require_open()
            return self._immediate(
                replace(template, background_image=(reference or "").strip()),
                "background_image",
            )

    def set_text_case(self, text_case: str) -> CertificateTemplate:
        with self._lock:
            if text_case not in TEXT_CASES:
                raise ValidationError(f"Unknown text case {text_case!r}.")
            return self._immediate(
                replace(self._require_open(), text_case=text_case), "text_case"
            )

    def set_alignment(self, alignment: str) -> CertificateTemplate:
        with self._lock:
            if alignment not in ALIGNMENTS:
                raise ValidationError(f"Unknown alignment {alignment!r}.")
            return self._immediate(
                replace(self._require_open(), alignment=alignment), "alignment"
            )

    def set_style(
        self,
        selection: Selection,
        *,
        font_family: str | None = None,
        bold: bool | None = None,
        italic: bool | None = None,
    ) -> CertificateTemplate:
        with self._lock:
            text_field = self._field(selection)
            if font_family is not None:
                text_field = replace(text_field, font_family=sanitize_font_family(font_family))
            if bold is not None:
                text_field = replace(text_field, bold=bool(bold))
            if italic is not None:
                text_field = replace(text_field, italic=bool(italic))
            template, key = replace_field(self.template, selection, text_field)
            return self._immediate(template, key)

    # -- gestures and background refresh -------------------------------

    def begin_gesture(self) -> None:
        with self._lock:
            self._gesture = True

    def end_gesture(self) -> None:
        with self._lock:
            self._gesture = False

    def should_poll(self) -> bool:
        with self._lock:
            return not self._closed and not self._gesture and not self._pending

    def apply_remote(self, template: CertificateTemplate) -> bool:
        """Adopt a refreshed copy unless local work could be clobbered."""
        with self._lock:
            if not self.should_poll():
                logger.debug("[editor-refresh-skip] type=%s reason=busy", self.type_id)
                return False
            if (
                self._last_write is not None
                and self.clock() - self._last_write < self.echo_window
            ):
                logger.debug("[editor-refresh-skip] type=%s reason=echo", self.type_id)
                return False
            self.template = template
            return True

    def poll(self) -> bool:
        with self._lock:
            if not self.should_poll():
                return False
            return self.apply_remote(self.store.get_template(self.event_id, self.type_id))

    # -- teardown ------------------------------------------------------

    def flush(self) -> bool:
        with self._lock:
            self._cancel_timer()
            if not self._pending:
                return True
            return self._send_pending(retry=False)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self.flush()
            self._closed = True
            self._gesture = False
            self._pending = {}
            self.template = None

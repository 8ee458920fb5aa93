from __future__ import annotations

import base64
import hashlib
import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from functools import lru_cache
from io import BytesIO

from PIL import Image, ImageDraw, ImageFont
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..shared.errors import RenderFailure, TemplateUnavailable
from ..shared.layout import (
    FIELD_VARIABLES,
    CertificateTemplate,
    ImageField,
    apply_text_case,
    pdf_font_code,
    scaled_font_px,
    template_to_dict,
    to_pixel,
)
from ..shared.storage import AssetLoadError, AssetLoader

logger = logging.getLogger("certify.render")

PAGE_LONG_EDGE_MM = 297.0
PREVIEW_CACHE_TTL_SECONDS = 45
PREVIEW_CACHE_MAX_ENTRIES = 64
TEXT_FILL = (0, 0, 0)

_FONT_PATHS = {
    "Helvetica": "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "Helvetica-Bold": "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "Helvetica-Oblique": "/usr/share/fonts/truetype/dejavu/DejaVuSans-Oblique.ttf",
    "Helvetica-BoldOblique": "/usr/share/fonts/truetype/dejavu/DejaVuSans-BoldOblique.ttf",
    "Times-Roman": "/usr/share/fonts/truetype/dejavu/DejaVuSerif.ttf",
    "Times-Bold": "/usr/share/fonts/truetype/dejavu/DejaVuSerif-Bold.ttf",
    "Times-Italic": "/usr/share/fonts/truetype/dejavu/DejaVuSerif-Italic.ttf",
    "Times-BoldItalic": "/usr/share/fonts/truetype/dejavu/DejaVuSerif-BoldItalic.ttf",
    "Courier": "/usr/share/fonts/truetype/dejavu/DejaVuSansMono.ttf",
    "Courier-Bold": "/usr/share/fonts/truetype/dejavu/DejaVuSansMono-Bold.ttf",
    "Courier-Oblique": "/usr/share/fonts/truetype/dejavu/DejaVuSansMono-Oblique.ttf",
    "Courier-BoldOblique": "/usr/share/fonts/truetype/dejavu/DejaVuSansMono-BoldOblique.ttf",
}

_ANCHORS = {"left": "lm", "center": "mm", "right": "rm"}


@dataclass(frozen=True)
class RecipientSnapshot:
    id: int | None
    certificate_id: str
    name: str
    email: str = ""
    mobile: str = ""

    @classmethod
    def of(cls, recipient) -> "RecipientSnapshot":
        if isinstance(recipient, cls):
            return recipient
        return cls(
            id=recipient.id,
            certificate_id=recipient.certificate_id or "",
            name=recipient.name or "",
            email=recipient.email or "",
            mobile=recipient.mobile or "",
        )


SAMPLE_RECIPIENT = RecipientSnapshot(
    id=None,
    certificate_id="CERT-0001",
    name="Sample Recipient Name",
    email="recipient@example.com",
    mobile="+1 555 0100",
)


@dataclass(frozen=True)
class RenderRequest:
    """Everything a render may read. Both halves are immutable snapshots."""

    template: CertificateTemplate
    recipient: RecipientSnapshot

    @classmethod
    def build(cls, template: CertificateTemplate, recipient) -> "RenderRequest":
        return cls(template=template, recipient=RecipientSnapshot.of(recipient))

    def fingerprint(self) -> str:
        raw = json.dumps(
            {
                "template": template_to_dict(self.template),
                "recipient": asdict(self.recipient),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(raw.encode()).hexdigest()


@dataclass(frozen=True)
class TextOp:
    field_id: str
    text: str
    font_code: str
    font_px: float
    x: float
    y: float
    anchor: str


@dataclass(frozen=True)
class ImageOp:
    field_id: str
    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class PreviewResult:
    image_base64: str
    width: int
    height: int
    warnings: tuple[str, ...]


_preview_cache: dict[str, tuple[float, PreviewResult]] = {}


def resolve_field_value(variable: str, recipient: RecipientSnapshot) -> str:
    attr = FIELD_VARIABLES.get(variable)
    if not attr:
        return ""
    return (getattr(recipient, attr, "") or "").strip()


def plan_text_ops(
    request: RenderRequest, surface_width: int, surface_height: int
) -> list[TextOp]:
    template = request.template
    ops: list[TextOp] = []

    name_field = template.name_field
    if name_field and name_field.enabled:
        text = apply_text_case(request.recipient.name, template.text_case).strip()
        if text:
            x, y = to_pixel(name_field.position, surface_width, surface_height)
            ops.append(
                TextOp(
                    field_id=name_field.id,
                    text=text,
                    font_code=pdf_font_code(
                        name_field.font_family, name_field.bold, name_field.italic
                    ),
                    font_px=scaled_font_px(
                        name_field.font_size, surface_width, template.reference_width
                    ),
                    x=x,
                    y=y,
                    anchor=_ANCHORS.get(template.alignment, "mm"),
                )
            )

    for text_field in template.custom_fields:
        if not text_field.enabled:
            continue
        value = resolve_field_value(text_field.variable, request.recipient)
        if not value:
            continue
        x, y = to_pixel(text_field.position, surface_width, surface_height)
        ops.append(
            TextOp(
                field_id=text_field.id,
                text=value,
                font_code=pdf_font_code(
                    text_field.font_family, text_field.bold, text_field.italic
                ),
                font_px=scaled_font_px(
                    text_field.font_size, surface_width, template.reference_width
                ),
                x=x,
                y=y,
                anchor="mm",
            )
        )
    return ops


def plan_image_op(
    signature: ImageField,
    source_size: tuple[int, int],
    surface_width: int,
    surface_height: int,
) -> ImageOp:
    src_w, src_h = source_size
    width = surface_width * signature.width / 100.0
    height = width * src_h / src_w if src_w else 0.0
    x, y = to_pixel(signature.position, surface_width, surface_height)
    return ImageOp(field_id=signature.id, x=x, y=y, width=width, height=height)


def plan_draw_ops(
    request: RenderRequest,
    surface_size: tuple[int, int],
    signature_sizes: dict[str, tuple[int, int]] | None = None,
) -> list[TextOp | ImageOp]:
    """Ordered draw ops for one surface.

    Signatures missing from ``signature_sizes`` failed to load and produce no op.
    """
    width, height = surface_size
    ops: list[TextOp | ImageOp] = list(plan_text_ops(request, width, height))
    for signature in request.template.signatures:
        size = (signature_sizes or {}).get(signature.id)
        if not size:
            continue
        ops.append(plan_image_op(signature, size, width, height))
    return ops


def _font_path(font_code: str) -> str | None:
    return _FONT_PATHS.get(font_code)


@lru_cache(maxsize=128)
def _truetype(path: str, size_px: int) -> ImageFont.FreeTypeFont:
    return ImageFont.truetype(path, size_px)


def _load_font(font_code: str, size_px: int, warnings: list[str]) -> ImageFont.FreeTypeFont:
    size_px = max(size_px, 1)
    path = _font_path(font_code)
    if path:
        try:
            return _truetype(path, size_px)
        except OSError:
            pass
    message = f"[render-font-fallback] {font_code} unavailable; using default font"
    if message not in warnings:
        warnings.append(message)
        logger.warning(message)
    return ImageFont.load_default(size=size_px)


def _decode_image(data: bytes) -> Image.Image:
    image = Image.open(BytesIO(data))
    image.load()
    return image


def _load_background(template: CertificateTemplate, loader: AssetLoader) -> Image.Image:
    if not template.is_renderable:
        raise TemplateUnavailable()
    try:
        image = _decode_image(loader.load(template.background_image))
    except (AssetLoadError, OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.error(
            "[render-background-fail] template=%s ref=%s error=%s",
            template.id,
            template.background_image[:80],
            exc,
        )
        raise TemplateUnavailable() from exc
    return image.convert("RGB")


def _load_signature(signature: ImageField, loader: AssetLoader) -> Image.Image | None:
    try:
        image = _decode_image(loader.load(signature.image))
    except (AssetLoadError, OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning(
            "[render-signature-skip] signature=%s ref=%s error=%s",
            signature.id,
            signature.image[:80],
            exc,
        )
        return None
    if not image.width or not image.height:
        logger.warning("[render-signature-skip] signature=%s empty image", signature.id)
        return None
    return image.convert("RGBA")


def _paint_text(draw: ImageDraw.ImageDraw, op: TextOp, warnings: list[str]) -> None:
    font = _load_font(op.font_code, int(round(op.font_px)), warnings)
    draw.text(
        (int(round(op.x)), int(round(op.y))),
        op.text,
        font=font,
        fill=TEXT_FILL,
        anchor=op.anchor,
    )


def _paint_image(surface: Image.Image, image: Image.Image, op: ImageOp) -> None:
    w_px = max(1, int(round(op.width)))
    h_px = max(1, int(round(op.height)))
    resized = image.resize((w_px, h_px), Image.LANCZOS)
    left = int(round(op.x - op.width / 2.0))
    top = int(round(op.y - op.height / 2.0))
    surface.paste(resized, (left, top), resized)


def render_raster(
    request: RenderRequest,
    loader: AssetLoader,
    warnings: list[str] | None = None,
) -> Image.Image:
    """Composite background, name, custom fields and signatures, in that order."""
    if warnings is None:
        warnings = []
    template = request.template
    surface = _load_background(template, loader)
    width, height = surface.size

    signatures: dict[str, Image.Image] = {}
    for signature in template.signatures:
        image = _load_signature(signature, loader)
        if image is None:
            warnings.append(f"[render-signature-skip] {signature.id}")
            continue
        signatures[signature.id] = image

    draw = ImageDraw.Draw(surface)
    sizes = {sig_id: image.size for sig_id, image in signatures.items()}
    for op in plan_draw_ops(request, (width, height), sizes):
        if isinstance(op, TextOp):
            _paint_text(draw, op, warnings)
        else:
            _paint_image(surface, signatures[op.field_id], op)
    return surface


def encode_png(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def page_size_for(width_px: int, height_px: int) -> tuple[float, float]:
    """Page size in points: long edge fixed, short edge follows the aspect ratio."""
    long_edge = PAGE_LONG_EDGE_MM * mm
    if width_px >= height_px:
        return long_edge, long_edge * height_px / width_px
    return long_edge * width_px / height_px, long_edge


def raster_to_pdf(png_bytes: bytes, *, title: str = "") -> bytes:
    reader = ImageReader(BytesIO(png_bytes))
    width_px, height_px = reader.getSize()
    page_w, page_h = page_size_for(width_px, height_px)
    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=(page_w, page_h), invariant=1)
    if title:
        c.setTitle(title)
    c.drawImage(reader, 0, 0, width=page_w, height=page_h)
    c.showPage()
    c.save()
    return buffer.getvalue()


def render_pdf(request: RenderRequest, loader: AssetLoader) -> bytes:
    raster = render_raster(request, loader)
    try:
        png_bytes = encode_png(raster)
        return raster_to_pdf(
            png_bytes,
            title=f"{request.template.name} {request.recipient.certificate_id}".strip(),
        )
    except (OSError, ValueError) as exc:
        logger.exception("[render-encode-fail] template=%s", request.template.id)
        raise RenderFailure() from exc


def render_preview_png(
    request: RenderRequest,
    loader: AssetLoader,
    *,
    ttl: float = PREVIEW_CACHE_TTL_SECONDS,
) -> PreviewResult:
    cache_key = request.fingerprint()
    now = time.time()
    _prune_preview_cache(now, ttl)
    cached = _preview_cache.get(cache_key)
    if cached and now - cached[0] < ttl:
        return cached[1]

    warnings: list[str] = []
    raster = render_raster(request, loader, warnings)
    result = PreviewResult(
        image_base64=base64.b64encode(encode_png(raster)).decode("ascii"),
        width=raster.width,
        height=raster.height,
        warnings=tuple(warnings),
    )
    if ttl > 0:
        _preview_cache[cache_key] = (now, result)
        while len(_preview_cache) > PREVIEW_CACHE_MAX_ENTRIES:
            # dicts keep insertion order, so the first key is the oldest
            del _preview_cache[next(iter(_preview_cache))]
    return result


def _prune_preview_cache(now: float, ttl: float) -> None:
    expired = [key for key, (stamp, _) in _preview_cache.items() if now - stamp >= ttl]
    for key in expired:
        del _preview_cache[key]


def certificate_filename(template_name: str, certificate_id: str) -> str:
    raw = f"{template_name}-{certificate_id}.pdf"
    return re.sub(r"[^A-Za-z0-9.\-]", "_", raw)

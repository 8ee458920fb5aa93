from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, replace
from typing import Iterable, Union

logger = logging.getLogger("certify.layout")

FONT_FAMILIES: tuple[str, ...] = ("Helvetica", "Times", "Courier")
SAFE_FALLBACK_FAMILY = "Helvetica"

TEXT_CASES: tuple[str, ...] = ("none", "uppercase", "lowercase", "capitalize")
ALIGNMENTS: tuple[str, ...] = ("left", "center", "right")

# variable -> recipient attribute
FIELD_VARIABLES: dict[str, str] = {
    "EMAIL": "email",
    "MOBILE": "mobile",
    "REG_NO": "certificate_id",
}

VARIABLE_LABELS: dict[str, str] = {
    "EMAIL": "Email",
    "MOBILE": "Mobile",
    "REG_NO": "Registration No",
}

SEARCH_KEYS: tuple[str, ...] = ("name", "email", "mobile", "reg_no")
DEFAULT_SEARCH_FIELDS: tuple[str, ...] = ("name",)

NAME_FIELD_ID = "name"
NAME_VARIABLE = "NAME"

DEFAULT_REFERENCE_WIDTH = 1600
DEFAULT_FONT_SIZE = 24.0
FONT_SIZE_MIN = 8.0
FONT_SIZE_MAX = 200.0
DEFAULT_SIGNATURE_WIDTH = 20.0

TEMPLATE_PATCH_KEYS: tuple[str, ...] = (
    "name",
    "background_image",
    "reference_width",
    "name_field",
    "custom_fields",
    "signatures",
    "search_fields",
    "text_case",
    "alignment",
)


@dataclass(frozen=True)
class Position:
    x: float
    y: float


@dataclass(frozen=True)
class TextField:
    id: str
    variable: str
    position: Position
    font_family: str = "Helvetica"
    font_size: float = DEFAULT_FONT_SIZE
    bold: bool = False
    italic: bool = False
    enabled: bool = True


@dataclass(frozen=True)
class ImageField:
    id: str
    image: str
    position: Position
    width: float = DEFAULT_SIGNATURE_WIDTH


@dataclass(frozen=True)
class CertificateTemplate:
    id: int
    event_id: int
    name: str = ""
    background_image: str = ""
    reference_width: int = DEFAULT_REFERENCE_WIDTH
    name_field: TextField | None = None
    custom_fields: tuple[TextField, ...] = ()
    signatures: tuple[ImageField, ...] = ()
    search_fields: tuple[str, ...] = DEFAULT_SEARCH_FIELDS
    text_case: str = "none"
    alignment: str = "center"

    @property
    def is_renderable(self) -> bool:
        return bool((self.background_image or "").strip())


@dataclass(frozen=True)
class NameFieldSelection:
    pass


@dataclass(frozen=True)
class CustomFieldSelection:
    field_id: str


Selection = Union[NameFieldSelection, CustomFieldSelection]


def clamp_percent(value: float) -> float:
    return max(0.0, min(float(value), 100.0))


def clamp(position: Position) -> Position:
    return Position(clamp_percent(position.x), clamp_percent(position.y))


def to_pixel(position: Position, surface_width: float, surface_height: float) -> tuple[float, float]:
    """Map a percent position onto a surface. Rounding is left to the painter."""
    return (
        surface_width * position.x / 100.0,
        surface_height * position.y / 100.0,
    )


def to_percent(px: float, py: float, surface_width: float, surface_height: float) -> Position:
    if surface_width <= 0 or surface_height <= 0:
        raise ValueError("surface dimensions must be positive")
    return Position(px * 100.0 / surface_width, py * 100.0 / surface_height)


def font_scale(surface_width: float, reference_width: float) -> float:
    if not reference_width or reference_width <= 0:
        reference_width = DEFAULT_REFERENCE_WIDTH
    return float(surface_width) / float(reference_width)


def scaled_font_px(font_size: float, surface_width: float, reference_width: float) -> float:
    return float(font_size) * font_scale(surface_width, reference_width)


def apply_text_case(value: str, text_case: str) -> str:
    value = value or ""
    if text_case == "uppercase":
        return value.upper()
    if text_case == "lowercase":
        return value.lower()
    if text_case == "capitalize":
        return " ".join(word[:1].upper() + word[1:].lower() for word in value.split(" "))
    return value


def pdf_font_code(family: str, bold: bool, italic: bool) -> str:
    """Return the base-14 PDF font name for a family/weight/style combination."""
    if family not in FONT_FAMILIES:
        family = SAFE_FALLBACK_FAMILY
    if family == "Times":
        if bold and italic:
            return "Times-BoldItalic"
        if bold:
            return "Times-Bold"
        if italic:
            return "Times-Italic"
        return "Times-Roman"
    if bold and italic:
        return f"{family}-BoldOblique"
    if bold:
        return f"{family}-Bold"
    if italic:
        return f"{family}-Oblique"
    return family


def new_field_id(prefix: str = "field") -> str:
    return f"{prefix}_{secrets.token_hex(4)}"


def _to_float(value, default: float) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if result != result:  # NaN
        return default
    return result


def sanitize_position(raw, default: Position) -> Position:
    if not isinstance(raw, dict):
        return default
    return clamp(
        Position(
            _to_float(raw.get("x"), default.x),
            _to_float(raw.get("y"), default.y),
        )
    )


def sanitize_font_family(value) -> str:
    if isinstance(value, str):
        for family in FONT_FAMILIES:
            if value.strip().lower() == family.lower():
                return family
    if value:
        logger.warning(
            "[layout-font-fallback] %r is not a PDF-safe family; using %s",
            value,
            SAFE_FALLBACK_FAMILY,
        )
    return SAFE_FALLBACK_FAMILY


def sanitize_font_size(value, default: float = DEFAULT_FONT_SIZE) -> float:
    size = _to_float(value, default)
    return max(FONT_SIZE_MIN, min(size, FONT_SIZE_MAX))


def sanitize_text_field(
    raw,
    *,
    field_id: str | None = None,
    variable: str | None = None,
    default_position: Position = Position(50.0, 60.0),
) -> TextField | None:
    if not isinstance(raw, dict):
        return None
    var = variable or str(raw.get("variable") or "").strip().upper()
    if var != NAME_VARIABLE and var not in FIELD_VARIABLES:
        return None
    fid = field_id or str(raw.get("id") or "").strip() or new_field_id()
    return TextField(
        id=fid,
        variable=var,
        position=sanitize_position(raw.get("position"), default_position),
        font_family=sanitize_font_family(raw.get("font_family")),
        font_size=sanitize_font_size(raw.get("font_size")),
        bold=bool(raw.get("bold")),
        italic=bool(raw.get("italic")),
        enabled=bool(raw.get("enabled", True)),
    )


def sanitize_image_field(raw) -> ImageField | None:
    if not isinstance(raw, dict):
        return None
    image = str(raw.get("image") or "").strip()
    if not image:
        return None
    width = _to_float(raw.get("width"), DEFAULT_SIGNATURE_WIDTH)
    if width <= 0:
        width = DEFAULT_SIGNATURE_WIDTH
    return ImageField(
        id=str(raw.get("id") or "").strip() or new_field_id("sig"),
        image=image,
        position=sanitize_position(raw.get("position"), Position(50.0, 80.0)),
        width=min(width, 100.0),
    )


def sanitize_custom_fields(values) -> tuple[TextField, ...]:
    fields: list[TextField] = []
    seen: set[str] = set()
    for raw in values or []:
        text_field = sanitize_text_field(raw)
        if not text_field or text_field.variable == NAME_VARIABLE:
            continue
        if text_field.variable in seen:
            continue
        seen.add(text_field.variable)
        fields.append(text_field)
    return tuple(fields)


def sanitize_signatures(values) -> tuple[ImageField, ...]:
    signatures: list[ImageField] = []
    seen: set[str] = set()
    for raw in values or []:
        sig = sanitize_image_field(raw)
        if not sig:
            continue
        if sig.id in seen:
            sig = replace(sig, id=new_field_id("sig"))
        seen.add(sig.id)
        signatures.append(sig)
    return tuple(signatures)


def filter_search_fields(values: Iterable[str]) -> list[str]:
    filtered: list[str] = []
    for value in values:
        key = str(value).strip().lower().replace("regno", "reg_no")
        if key in SEARCH_KEYS and key not in filtered:
            filtered.append(key)
    return filtered


def sanitize_search_fields(raw) -> tuple[str, ...]:
    if isinstance(raw, dict):
        raw = [key for key, enabled in raw.items() if enabled]
    if not isinstance(raw, (list, tuple, set)):
        return DEFAULT_SEARCH_FIELDS
    filtered = filter_search_fields(raw)
    # keep SEARCH_KEYS order so equal configurations compare equal
    ordered = tuple(key for key in SEARCH_KEYS if key in filtered)
    return ordered or DEFAULT_SEARCH_FIELDS


def sanitize_reference_width(value) -> int:
    width = int(_to_float(value, DEFAULT_REFERENCE_WIDTH))
    return width if width > 0 else DEFAULT_REFERENCE_WIDTH


def sanitize_template(raw: dict | None, *, template_id: int, event_id: int) -> CertificateTemplate:
    if not isinstance(raw, dict):
        raw = {}
    text_case = str(raw.get("text_case") or "none").lower()
    alignment = str(raw.get("alignment") or "center").lower()
    name_field = None
    if raw.get("name_field") is not None:
        name_field = sanitize_text_field(
            raw.get("name_field"), field_id=NAME_FIELD_ID, variable=NAME_VARIABLE
        )
    return CertificateTemplate(
        id=template_id,
        event_id=event_id,
        name=str(raw.get("name") or ""),
        background_image=str(raw.get("background_image") or ""),
        reference_width=sanitize_reference_width(raw.get("reference_width")),
        name_field=name_field,
        custom_fields=sanitize_custom_fields(raw.get("custom_fields")),
        signatures=sanitize_signatures(raw.get("signatures")),
        search_fields=sanitize_search_fields(raw.get("search_fields")),
        text_case=text_case if text_case in TEXT_CASES else "none",
        alignment=alignment if alignment in ALIGNMENTS else "center",
    )


def default_name_field() -> TextField:
    return TextField(
        id=NAME_FIELD_ID,
        variable=NAME_VARIABLE,
        position=Position(50.0, 60.0),
    )


def position_to_dict(position: Position) -> dict:
    return {"x": position.x, "y": position.y}


def text_field_to_dict(text_field: TextField) -> dict:
    return {
        "id": text_field.id,
        "variable": text_field.variable,
        "position": position_to_dict(text_field.position),
        "font_family": text_field.font_family,
        "font_size": text_field.font_size,
        "bold": text_field.bold,
        "italic": text_field.italic,
        "enabled": text_field.enabled,
    }


def image_field_to_dict(image_field: ImageField) -> dict:
    return {
        "id": image_field.id,
        "image": image_field.image,
        "position": position_to_dict(image_field.position),
        "width": image_field.width,
    }


def template_to_dict(template: CertificateTemplate) -> dict:
    return {
        "id": template.id,
        "event_id": template.event_id,
        "name": template.name,
        "background_image": template.background_image,
        "reference_width": template.reference_width,
        "name_field": (
            text_field_to_dict(template.name_field) if template.name_field else None
        ),
        "custom_fields": [text_field_to_dict(f) for f in template.custom_fields],
        "signatures": [image_field_to_dict(s) for s in template.signatures],
        "search_fields": list(template.search_fields),
        "text_case": template.text_case,
        "alignment": template.alignment,
    }


def patch_value(template: CertificateTemplate, key: str):
    """Serialized value of one top-level key, as sent in a store patch."""
    if key not in TEMPLATE_PATCH_KEYS:
        raise KeyError(key)
    return template_to_dict(template)[key]


def merge_patch(template: CertificateTemplate, partial: dict) -> CertificateTemplate:
    """Shallow-merge a partial per top-level key and re-sanitize."""
    merged = template_to_dict(template)
    for key, value in (partial or {}).items():
        if key in TEMPLATE_PATCH_KEYS:
            merged[key] = value
    return sanitize_template(merged, template_id=template.id, event_id=template.event_id)


def selected_field(template: CertificateTemplate, selection: Selection) -> TextField | None:
    if isinstance(selection, NameFieldSelection):
        return template.name_field
    if isinstance(selection, CustomFieldSelection):
        return next(
            (f for f in template.custom_fields if f.id == selection.field_id), None
        )
    raise TypeError(f"unknown selection {selection!r}")


def replace_field(
    template: CertificateTemplate, selection: Selection, text_field: TextField
) -> tuple[CertificateTemplate, str]:
    """Swap the selected field and return the new template plus the dirty key."""
    if isinstance(selection, NameFieldSelection):
        return replace(template, name_field=text_field), "name_field"
    if isinstance(selection, CustomFieldSelection):
        fields = tuple(
            text_field if f.id == selection.field_id else f
            for f in template.custom_fields
        )
        return replace(template, custom_fields=fields), "custom_fields"
    raise TypeError(f"unknown selection {selection!r}")


def parse_selection(value: str) -> Selection:
    if value == NAME_FIELD_ID:
        return NameFieldSelection()
    if not value or not re.fullmatch(r"[A-Za-z0-9_\-]+", value):
        raise ValueError(f"invalid field id {value!r}")
    return CustomFieldSelection(value)

import base64
from io import BytesIO
from types import SimpleNamespace

import pytest
from PIL import Image, ImageChops
from PyPDF2 import PdfReader

from certify.services import rendering
from certify.services.rendering import (
    ImageOp,
    RecipientSnapshot,
    RenderRequest,
    TextOp,
    certificate_filename,
    page_size_for,
    plan_draw_ops,
    render_pdf,
    render_preview_png,
    render_raster,
)
from certify.shared.errors import RenderFailure, TemplateUnavailable
from certify.shared.layout import FONT_FAMILIES, pdf_font_code, sanitize_template
from certify.shared.storage import FileAssetLoader

ADA = RecipientSnapshot(
    id=1, certificate_id="REG-001", name="ada lovelace", email="ada@example.com", mobile=""
)


@pytest.fixture
def loader(tmp_path):
    Image.new("RGB", (2400, 1200), "white").save(tmp_path / "bg.png")
    Image.new("RGBA", (300, 100), (0, 0, 255, 255)).save(tmp_path / "sig.png")
    return FileAssetLoader(str(tmp_path))


def _template(**raw):
    base = {
        "name": "Participation",
        "background_image": "bg.png",
        "reference_width": 1200,
        "name_field": {"position": {"x": 50, "y": 50}, "font_size": 24},
    }
    base.update(raw)
    return sanitize_template(base, template_id=7, event_id=3)


def test_name_font_scales_with_background_width():
    request = RenderRequest.build(_template(), ADA)
    ops = plan_draw_ops(request, (2400, 1200))
    assert ops == [
        TextOp(
            field_id="name",
            text="ada lovelace",
            font_code="Helvetica",
            font_px=48.0,
            x=1200.0,
            y=600.0,
            anchor="mm",
        )
    ]


@pytest.mark.parametrize("alignment,anchor", [("left", "lm"), ("right", "rm")])
def test_alignment_sets_horizontal_anchor(alignment, anchor):
    request = RenderRequest.build(_template(alignment=alignment, text_case="capitalize"), ADA)
    (op,) = plan_draw_ops(request, (2400, 1200))
    assert op.anchor == anchor
    assert op.text == "Ada Lovelace"


def test_empty_values_produce_no_draw_ops():
    template = _template(
        custom_fields=[
            {"id": "f_email", "variable": "EMAIL", "position": {"x": 50, "y": 70}},
            {"id": "f_mobile", "variable": "MOBILE", "position": {"x": 50, "y": 80}},
        ]
    )
    ops = plan_draw_ops(RenderRequest.build(template, ADA), (2400, 1200))
    assert [op.field_id for op in ops] == ["name", "f_email"]
    assert ops[1].anchor == "mm"

    nameless = RecipientSnapshot(id=2, certificate_id="X", name="   ")
    assert plan_draw_ops(RenderRequest.build(template, nameless), (2400, 1200)) == []


def test_disabled_name_field_is_not_drawn():
    template = _template(name_field={"position": {"x": 50, "y": 50}, "enabled": False})
    assert plan_draw_ops(RenderRequest.build(template, ADA), (2400, 1200)) == []


def test_signature_width_is_percent_of_surface_and_keeps_aspect():
    template = _template(
        signatures=[{"id": "s1", "image": "sig.png", "position": {"x": 25, "y": 80}, "width": 20}]
    )
    ops = plan_draw_ops(RenderRequest.build(template, ADA), (2400, 1200), {"s1": (300, 100)})
    assert ops[-1] == ImageOp(field_id="s1", x=600.0, y=960.0, width=480.0, height=160.0)


def test_raster_draws_name_and_signature(loader):
    template = _template(
        signatures=[{"id": "s1", "image": "sig.png", "position": {"x": 25, "y": 80}, "width": 20}]
    )
    raster = render_raster(RenderRequest.build(template, ADA), loader)
    assert raster.size == (2400, 1200)
    blank = Image.new("RGB", raster.size, "white")
    assert ImageChops.difference(raster, blank).getbbox() is not None
    assert raster.getpixel((600, 960)) == (0, 0, 255)


def test_missing_signature_is_skipped(loader):
    template = _template(signatures=[{"id": "s1", "image": "missing.png"}])
    result = render_preview_png(RenderRequest.build(template, ADA), loader)
    assert any(w.startswith("[render-signature-skip]") for w in result.warnings)
    image = Image.open(BytesIO(base64.b64decode(result.image_base64)))
    assert image.size == (2400, 1200)


def test_unavailable_background_fails_instead_of_blank(loader):
    with pytest.raises(TemplateUnavailable):
        render_pdf(RenderRequest.build(_template(background_image=""), ADA), loader)
    with pytest.raises(RenderFailure):
        render_pdf(RenderRequest.build(_template(background_image="nope.png"), ADA), loader)


def test_pdf_is_deterministic_and_sized_from_raster(loader):
    request = RenderRequest.build(_template(), ADA)
    first = render_pdf(request, loader)
    second = render_pdf(request, loader)
    assert first == second

    page = PdfReader(BytesIO(first)).pages[0]
    width, height = float(page.mediabox.width), float(page.mediabox.height)
    assert width == pytest.approx(841.89, abs=0.01)
    assert height == pytest.approx(width / 2, abs=0.01)


def test_portrait_backgrounds_get_portrait_pages():
    width, height = page_size_for(1000, 2000)
    assert height == pytest.approx(841.89, abs=0.01)
    assert width == pytest.approx(height / 2)


def test_preview_results_are_cached(loader, monkeypatch):
    request = RenderRequest.build(_template(), ADA)
    first = render_preview_png(request, loader)
    calls = []
    monkeypatch.setattr(rendering, "render_raster", lambda *a, **k: calls.append(a))
    assert render_preview_png(request, loader) is first
    assert calls == []


def _recipients(count):
    return [
        RecipientSnapshot(id=n, certificate_id=f"REG-{n:03d}", name=f"Person {n}")
        for n in range(1, count + 1)
    ]


def test_preview_cache_is_bounded(loader, monkeypatch):
    monkeypatch.setattr(rendering, "PREVIEW_CACHE_MAX_ENTRIES", 3)
    template = _template()
    for recipient in _recipients(6):
        render_preview_png(RenderRequest.build(template, recipient), loader)
    assert len(rendering._preview_cache) == 3
    newest = RenderRequest.build(template, _recipients(6)[-1]).fingerprint()
    oldest = RenderRequest.build(template, _recipients(1)[0]).fingerprint()
    assert newest in rendering._preview_cache
    assert oldest not in rendering._preview_cache


def test_preview_cache_drops_expired_entries(loader, monkeypatch):
    template = _template()
    for recipient in _recipients(4):
        render_preview_png(RenderRequest.build(template, recipient), loader, ttl=0)
    assert rendering._preview_cache == {}

    ada = RenderRequest.build(template, ADA)
    render_preview_png(ada, loader)
    assert list(rendering._preview_cache) == [ada.fingerprint()]

    later = rendering.time.time() + rendering.PREVIEW_CACHE_TTL_SECONDS + 1
    monkeypatch.setattr(rendering, "time", SimpleNamespace(time=lambda: later))
    other = RenderRequest.build(template, _recipients(1)[0])
    render_preview_png(other, loader)
    assert list(rendering._preview_cache) == [other.fingerprint()]


def test_missing_font_face_falls_back_with_warning(loader, monkeypatch):
    monkeypatch.setitem(rendering._FONT_PATHS, "Helvetica", "/missing/Helvetica.ttf")
    result = render_preview_png(RenderRequest.build(_template(), ADA), loader)
    assert any(w.startswith("[render-font-fallback]") for w in result.warnings)


def test_certificate_filename_is_sanitized():
    assert certificate_filename("Best Speaker 2024!", "REG/01") == "Best_Speaker_2024_-REG_01.pdf"


def test_every_pdf_font_code_has_a_raster_face():
    codes = {
        pdf_font_code(family, bold, italic)
        for family in FONT_FAMILIES
        for bold in (False, True)
        for italic in (False, True)
    }
    assert codes == set(rendering._FONT_PATHS)

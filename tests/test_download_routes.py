import pytest

from certify.app import db
from certify.models import CertificateType, Recipient


@pytest.fixture
def event_with_ada(seed, add_recipient):
    s = seed(type_name="Best Speaker")
    ada = add_recipient(s.cert_type, email="ada@example.com", certificate_id="REG-1")
    return s, ada


@pytest.mark.smoke
def test_event_info_lists_downloadable_types(client, event_with_ada, seed):
    s, _ = event_with_ada
    resp = client.get(f"/d/{s.event.id}")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["event"]["name"] == "Annual Summit"
    assert [t["name"] for t in data["types"]] == ["Best Speaker"]

    resp = client.get(f"/d/{s.event.id}/{s.cert_type.id}")
    assert resp.get_json()["type"]["search_fields"] == ["name", "email", "mobile", "reg_no"]
    assert resp.get_json()["state"] == "verify"


@pytest.mark.smoke
def test_verify_preview_and_download(client, event_with_ada):
    s, ada = event_with_ada
    resp = client.post(f"/d/{s.event.id}/verify", json={"contact": "ADA@example.com"})
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["state"] == "preview"
    assert data["candidates"][0]["recipient_id"] == ada.id

    resp = client.get(f"/d/{s.event.id}/preview.png")
    assert resp.status_code == 200
    assert resp.mimetype == "image/png"
    assert resp.data.startswith(b"\x89PNG")

    resp = client.get(f"/d/{s.event.id}/certificate.pdf")
    assert resp.status_code == 200
    assert resp.mimetype == "application/pdf"
    assert "Best_Speaker-REG-1.pdf" in resp.headers["Content-Disposition"]
    assert db.session.get(Recipient, ada.id).download_count == 1


def test_unknown_contact_is_a_generic_404(client, event_with_ada):
    s, _ = event_with_ada
    resp = client.post(f"/d/{s.event.id}/verify", json={"contact": "who@example.com"})
    assert resp.status_code == 404
    body = resp.get_json()
    assert body["error"] == "not_found"
    assert body["retryable"] is False


def test_download_before_verify_is_rejected(client, event_with_ada):
    s, _ = event_with_ada
    resp = client.get(f"/d/{s.event.id}/certificate.pdf")
    assert resp.status_code == 409
    assert resp.get_json()["error"] == "invalid_state"


def test_disambiguation_over_http(client, seed, add_recipient):
    s = seed()
    add_recipient(s.cert_type, name="Ada One", email="twin@example.com")
    second = add_recipient(s.cert_type, name="Ada Two", email="twin@example.com")
    data = client.post(f"/d/{s.event.id}/verify", json={"contact": "twin@example.com"}).get_json()
    assert data["state"] == "disambiguate"
    assert len(data["candidates"]) == 2

    resp = client.post(
        f"/d/{s.event.id}/select",
        json={"recipient_id": second.id, "type_id": s.cert_type.id},
    )
    assert resp.get_json()["state"] == "preview"

    resp = client.post(f"/d/{s.event.id}/back")
    assert resp.get_json() == {"state": "verify"}


def test_render_failure_is_retryable(client, event_with_ada, upload_root):
    s, ada = event_with_ada
    client.post(f"/d/{s.event.id}/verify", json={"contact": "ada@example.com"})
    (upload_root / "background.png").unlink()
    resp = client.get(f"/d/{s.event.id}/certificate.pdf")
    assert resp.status_code == 503
    assert resp.get_json()["retryable"] is True
    assert db.session.get(Recipient, ada.id).download_count == 0


def test_direct_link_starts_at_preview(client, event_with_ada):
    s, ada = event_with_ada
    resp = client.get(f"/d/{s.event.id}/c/REG-1")
    assert resp.get_json()["state"] == "preview"
    assert client.get(f"/d/{s.event.id}/preview.png").status_code == 200
    assert client.get(f"/d/{s.event.id}/c/NOPE").status_code == 404


def test_verify_keeps_the_type_chosen_on_entry(client, seed, add_recipient):
    s = seed(type_name="Participation")
    speaker = CertificateType(
        event_id=s.event.id,
        name="Speaker",
        background_image="background.png",
        search_fields=["email"],
    )
    db.session.add(speaker)
    db.session.commit()
    attendee = add_recipient(s.cert_type, email="ada@example.com")
    add_recipient(speaker, email="ada@example.com")

    client.get(f"/d/{s.event.id}/{s.cert_type.id}")
    data = client.post(f"/d/{s.event.id}/verify", json={"contact": "ada@example.com"}).get_json()
    assert data["state"] == "preview"
    assert data["selected"] == {"recipient_id": attendee.id, "type_id": s.cert_type.id}

    client.get(f"/d/{s.event.id}")
    data = client.post(f"/d/{s.event.id}/verify", json={"contact": "ada@example.com"}).get_json()
    assert data["state"] == "disambiguate"
    assert len(data["candidates"]) == 2

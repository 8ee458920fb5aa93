import itertools
import os
import pathlib
import sys
from types import SimpleNamespace

import pytest
from PIL import Image

PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from certify.app import create_app, db
from certify.models import CertificateType, Event, Recipient, User
from certify.services import rendering


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "slow" in item.keywords or "quarantine" in item.keywords:
            continue
        item.add_marker("full")
        if "no_smoke" in item.keywords:
            continue
        item.add_marker("smoke")


@pytest.fixture(autouse=True)
def _clear_preview_cache():
    rendering._preview_cache.clear()
    yield
    rendering._preview_cache.clear()


@pytest.fixture
def upload_root(tmp_path):
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def app(upload_root):
    os.environ["DATABASE_URL"] = "sqlite:///:memory:"
    os.environ["UPLOAD_ROOT"] = str(upload_root)
    os.environ.pop("PLAN_LIMITS_JSON", None)
    application = create_app()
    application.config["TESTING"] = True
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_image(upload_root):
    def _make(name="background.png", size=(2400, 1200), color="white", mode="RGB"):
        Image.new(mode, size, color).save(upload_root / name)
        return name

    return _make


_emails = itertools.count(1)


@pytest.fixture
def seed(app, make_image):
    """Create an owner, an event and one certificate type."""

    def _seed(
        plan="professional",
        type_name="Participation",
        background="background.png",
        search_fields=("name", "email", "mobile", "reg_no"),
        owner=None,
        **template,
    ):
        if background:
            make_image(background)
        if owner is None:
            owner = User(email=f"owner{next(_emails)}@example.com", plan=plan)
            db.session.add(owner)
        event = Event(owner=owner, name="Annual Summit")
        db.session.add(event)
        db.session.flush()
        cert_type = CertificateType(
            event_id=event.id,
            name=type_name,
            background_image=background or "",
            search_fields=list(search_fields),
            **template,
        )
        db.session.add(cert_type)
        db.session.commit()
        return SimpleNamespace(owner=owner, event=event, cert_type=cert_type)

    return _seed


@pytest.fixture
def add_recipient(app):
    def _add(cert_type, name="Ada Lovelace", certificate_id=None, **fields):
        recipient = Recipient(
            event_id=cert_type.event_id,
            certificate_type_id=cert_type.id,
            certificate_id=certificate_id or f"REG-{next(_emails):04d}",
            name=name,
            **fields,
        )
        db.session.add(recipient)
        db.session.commit()
        return recipient

    return _add


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.id

    return _login

import threading

import pytest

from certify.app import db
from certify.models import CertificateType
from certify.services.context import current_core, open_editor
from certify.services.editor_sync import EditorSession
from certify.shared.errors import PersistenceFailure, ValidationError
from certify.shared.layout import (
    CustomFieldSelection,
    NameFieldSelection,
    Position,
    merge_patch,
    sanitize_template,
)


class ManualScheduler:
    def __init__(self):
        self.pending = {}
        self._ids = 0

    def schedule(self, delay, fn):
        self._ids += 1
        self.pending[self._ids] = (delay, fn)
        return self._ids

    def cancel(self, handle):
        self.pending.pop(handle, None)

    def fire(self):
        jobs = list(self.pending.values())
        self.pending.clear()
        for _, fn in jobs:
            fn()


class Clock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class MemoryStore:
    def __init__(self):
        self.template = sanitize_template(
            {
                "name": "Participation",
                "background_image": "bg.png",
                "name_field": {"position": {"x": 50, "y": 50}},
            },
            template_id=1,
            event_id=1,
        )
        self.patches = []
        self.fail = 0

    def get_template(self, event_id, type_id):
        return self.template

    def patch_template(self, event_id, type_id, partial):
        if self.fail:
            self.fail -= 1
            raise PersistenceFailure()
        self.patches.append(dict(partial))
        self.template = merge_patch(self.template, partial)
        return self.template


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def editor(store, scheduler, clock):
    warnings = []
    session = EditorSession(
        store, 1, 1, scheduler=scheduler, clock=clock, on_warning=warnings.append
    )
    session.warnings = warnings
    session.open()
    return session


def test_drags_are_merged_into_one_write(editor, store, scheduler):
    editor.move_field(NameFieldSelection(), Position(10, 10))
    editor.move_field(NameFieldSelection(), Position(150, 20))
    editor.set_font_size(NameFieldSelection(), 40)
    assert store.patches == []
    assert len(scheduler.pending) == 1
    delay, _ = next(iter(scheduler.pending.values()))
    assert delay == 0.5

    scheduler.fire()
    assert len(store.patches) == 1
    name_field = store.patches[0]["name_field"]
    assert name_field["position"] == {"x": 100.0, "y": 20.0}
    assert name_field["font_size"] == 40
    assert editor.pending == {}


def test_structural_edit_writes_pending_keys_with_it(editor, store, scheduler):
    editor.move_field(NameFieldSelection(), Position(30, 30))
    field = editor.add_custom_field("email")
    assert scheduler.pending == {}
    assert len(store.patches) == 1
    assert set(store.patches[0]) == {"name_field", "custom_fields"}
    assert store.template.custom_fields[0].id == field.id


def test_failed_structural_edit_rolls_back(editor, store, scheduler):
    editor.move_field(NameFieldSelection(), Position(30, 30))
    before = editor.template
    store.fail = 1
    with pytest.raises(PersistenceFailure):
        editor.set_alignment("left")
    assert editor.template is before
    assert "name_field" in editor.pending
    assert len(scheduler.pending) == 1


def test_debounced_write_retries_then_warns(editor, store, scheduler):
    store.fail = 3
    editor.move_field(NameFieldSelection(), Position(20, 20))
    scheduler.fire()
    scheduler.fire()
    assert editor.warnings == []
    scheduler.fire()
    assert len(editor.warnings) == 1
    assert scheduler.pending == {}
    assert "name_field" in editor.pending

    assert editor.flush() is True
    assert store.patches[-1]["name_field"]["position"] == {"x": 20.0, "y": 20.0}


def test_polling_waits_for_gestures_and_pending_edits(editor, scheduler):
    assert editor.should_poll()
    editor.begin_gesture()
    assert not editor.should_poll()
    editor.move_field(NameFieldSelection(), Position(40, 40))
    editor.end_gesture()
    assert not editor.should_poll()
    scheduler.fire()
    assert editor.should_poll()


def test_refresh_is_ignored_right_after_a_local_write(editor, store, clock):
    editor.set_text_case("uppercase")
    remote = merge_patch(store.template, {"alignment": "right"})
    clock.now += 1
    assert editor.apply_remote(remote) is False
    clock.now += 1.5
    assert editor.apply_remote(remote) is True
    assert editor.template.alignment == "right"


def test_context_manager_flushes_once_on_error(store, scheduler, clock):
    with pytest.raises(RuntimeError):
        with EditorSession(store, 1, 1, scheduler=scheduler, clock=clock) as session:
            session.move_field(NameFieldSelection(), Position(5, 5))
            raise RuntimeError("boom")
    assert len(store.patches) == 1
    assert scheduler.pending == {}
    session.close()
    assert len(store.patches) == 1


def test_invalid_structural_edits(editor):
    editor.add_custom_field("REG_NO")
    with pytest.raises(ValidationError):
        editor.add_custom_field("REG_NO")
    with pytest.raises(ValidationError):
        editor.add_custom_field("BADGE")
    with pytest.raises(ValidationError):
        editor.set_search_fields([])
    with pytest.raises(ValidationError):
        editor.move_field(CustomFieldSelection("nope"), Position(1, 1))


def test_signatures_and_name_toggle(editor, store, scheduler):
    sig = editor.add_signature("sig.png", Position(20, 85), width=15)
    editor.resize_signature(sig.id, 30)
    editor.move_signature(sig.id, Position(-10, 90))
    scheduler.fire()
    saved = store.template.signatures[0]
    assert saved.width == 30
    assert saved.position == Position(0.0, 90.0)

    editor.set_name_field_enabled(False)
    assert store.template.name_field.enabled is False
    assert store.template.name_field.position == Position(50.0, 50.0)

    editor.remove_signature(sig.id)
    assert store.template.signatures == ()


def test_open_editor_saves_debounced_edits_from_a_timer_thread(app, seed, scheduler):
    s = seed()
    app.config["EDITOR_DEBOUNCE_MS"] = 250
    app.config["EDITOR_ECHO_WINDOW_MS"] = 1000
    editor = open_editor(current_core(), s.event.id, s.cert_type.id, scheduler=scheduler)
    assert (editor.debounce, editor.echo_window) == (0.25, 1.0)

    editor.move_field(NameFieldSelection(), Position(20, 30))
    ((delay, fire),) = scheduler.pending.values()
    assert delay == 0.25

    # timer callbacks run on a thread with no app context of its own
    worker = threading.Thread(target=fire)
    worker.start()
    worker.join()
    assert editor.pending == {}

    db.session.expire_all()
    stored = db.session.get(CertificateType, s.cert_type.id).to_template()
    assert stored.name_field.position == Position(20, 30)

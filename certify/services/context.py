from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from flask import current_app

from ..shared.storage import AssetLoader, FileAssetLoader
from ..shared.time import utcnow_naive
from .editor_sync import EditorSession, Scheduler, TimerScheduler
from .plans import PlanPolicy
from .stores import SqlRecipientStore, SqlTemplateStore


@dataclass
class CoreContext:
    """Collaborators the core operations need, passed explicitly."""

    session: object
    templates: SqlTemplateStore
    recipients: SqlRecipientStore
    plans: PlanPolicy
    assets: AssetLoader
    clock: Callable[[], datetime] = utcnow_naive


def build_context(session, *, plan_limits: dict | None = None, upload_root: str = "/srv/uploads") -> CoreContext:
    return CoreContext(
        session=session,
        templates=SqlTemplateStore(session),
        recipients=SqlRecipientStore(session),
        plans=PlanPolicy.from_config(plan_limits),
        assets=FileAssetLoader(upload_root),
    )


def current_core() -> CoreContext:
    from ..app import db

    return build_context(
        db.session,
        plan_limits=current_app.config.get("PLAN_LIMITS"),
        upload_root=current_app.config.get("UPLOAD_ROOT", "/srv/uploads"),
    )


class AppContextScheduler:
    """Runs scheduled callbacks inside an app context.

    Timer callbacks fire on their own thread, where the scoped ``db.session``
    and ``current_app`` are otherwise unavailable.
    """

    def __init__(self, app, inner: Scheduler | None = None):
        self.app = app
        self.inner = inner or TimerScheduler()

    def schedule(self, delay: float, fn: Callable[[], None]) -> object:
        def run():
            with self.app.app_context():
                fn()

        return self.inner.schedule(delay, run)

    def cancel(self, handle: object) -> None:
        self.inner.cancel(handle)


def open_editor(
    ctx: CoreContext,
    event_id: int,
    type_id: int,
    *,
    scheduler: Scheduler | None = None,
    on_warning: Callable[[str], None] | None = None,
) -> EditorSession:
    app = current_app._get_current_object()
    editor = EditorSession(
        ctx.templates,
        event_id,
        type_id,
        scheduler=AppContextScheduler(app, scheduler),
        debounce=app.config.get("EDITOR_DEBOUNCE_MS", 500) / 1000,
        echo_window=app.config.get("EDITOR_ECHO_WINDOW_MS", 2000) / 1000,
        on_warning=on_warning,
    )
    editor.open()
    return editor

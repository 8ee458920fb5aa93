from functools import wraps

from flask import abort, session

from ..app import db
from ..models import Event, User


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        user_id = session.get("user_id")
        if not user_id:
            abort(401)
        user = db.session.get(User, user_id)
        if not user:
            abort(401)
        return fn(*args, **kwargs, current_user=user)

    return wrapper


def event_owner_required(fn):
    """Allow only the signed-in owner of ``event_id``."""

    @wraps(fn)
    def wrapper(event_id: int, *args, **kwargs):
        user_id = session.get("user_id")
        if not user_id:
            abort(401)
        user = db.session.get(User, user_id)
        if not user:
            abort(401)
        event = db.session.get(Event, event_id)
        if not event:
            abort(404)
        if event.owner_id != user.id:
            abort(403)
        return fn(event_id, *args, **kwargs, event=event, current_user=user)

    return wrapper

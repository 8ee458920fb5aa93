import json
import logging
import os
import sys

from flask import Flask, current_app, jsonify
from flask_sqlalchemy import SQLAlchemy
from werkzeug.exceptions import HTTPException

db = SQLAlchemy()

from .models import User  # noqa: E402,F401
from .shared.errors import CertifyError  # noqa: E402

logger = logging.getLogger("certify")
if not logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)
logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())


def _load_plan_limits() -> dict | None:
    raw = os.getenv("PLAN_LIMITS_JSON")
    if not raw:
        return None
    try:
        limits = json.loads(raw)
    except ValueError:
        logger.error("[CONFIG] PLAN_LIMITS_JSON is not valid JSON; using defaults")
        return None
    if not isinstance(limits, dict):
        logger.error("[CONFIG] PLAN_LIMITS_JSON must be an object; using defaults")
        return None
    return limits


def create_app():
    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    DB_USER = os.getenv("DB_USER", "certify")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "certify")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024

    app.config["UPLOAD_ROOT"] = os.getenv("UPLOAD_ROOT", "/srv/uploads")
    app.config["EDITOR_DEBOUNCE_MS"] = int(os.getenv("EDITOR_DEBOUNCE_MS", "500"))
    app.config["EDITOR_ECHO_WINDOW_MS"] = int(os.getenv("EDITOR_ECHO_WINDOW_MS", "2000"))
    app.config["PREVIEW_CACHE_TTL"] = int(os.getenv("PREVIEW_CACHE_TTL", "45"))
    app.config["PLAN_LIMITS"] = _load_plan_limits()

    db.init_app(app)

    @app.errorhandler(CertifyError)
    def handle_certify_error(exc: CertifyError):
        current_app.logger.info(
            "[ERROR] kind=%s status=%s message=%s", exc.kind, exc.status_code, exc
        )
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.name.lower().replace(" ", "_"), "message": exc.description}), exc.code
        db.session.rollback()
        current_app.logger.exception("Unhandled error")
        return jsonify({"error": "internal_error", "message": "Something went wrong."}), 500

    @app.get("/health")
    def health():
        return jsonify({"ok": True})

    from .routes.download import bp as download_bp
    from .routes.templates import bp as templates_bp
    from .routes.recipients import bp as recipients_bp

    app.register_blueprint(download_bp)
    app.register_blueprint(templates_bp)
    app.register_blueprint(recipients_bp)

    return app

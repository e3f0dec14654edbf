from __future__ import annotations

import logging
import os
from typing import Any, Callable, Mapping, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

import auth
from admin_bp import admin_bp
from conflict_detector import DraftConflictDetector
from db import get_session, init_db
from draft_service import DraftManager
from fee_service import FeeManager
from override_service import OverrideManager
from registration_bp import registration_bp
from registration_service import RegistrationManager
from schedule_service import ScheduleManager

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
FLASK_SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "coop-dev-key")


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ValueError)
    def handle_value_error(exc: ValueError):
        status = getattr(exc, "status_code", 400)
        app.logger.warning("Rejected request (%s): %s", status, exc)
        return jsonify({"error": str(exc)}), status

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        app.logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(LookupError)
    def handle_lookup_error(exc: LookupError):
        # KeyError and IndexError are programming errors, not missing records.
        if isinstance(exc, (KeyError, IndexError)):
            return handle_unexpected(exc)
        app.logger.warning("Not found: %s", exc)
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(PermissionError)
    def handle_permission_error(exc: PermissionError):
        app.logger.warning("Forbidden: %s", exc)
        return jsonify({"error": str(exc)}), 403


def create_app(
    session_factory: Optional[Callable] = None,
    config: Optional[Mapping[str, Any]] = None,
) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = FLASK_SECRET_KEY
    app.config["JWT_SECRET"] = auth.JWT_SECRET
    app.config["AUTH_API_URL"] = auth.AUTH_API_URL
    app.config["AUTH_API_KEY"] = auth.AUTH_API_KEY
    app.config["AUTH_API_TIMEOUT"] = auth.AUTH_API_TIMEOUT
    if config:
        app.config.update(config)

    if session_factory is None:
        init_db()
        session_factory = get_session

    fee_manager = FeeManager(session_factory)
    override_manager = OverrideManager(session_factory, fee_manager=fee_manager)
    app.extensions["coop"] = {
        "drafts": DraftManager(session_factory),
        "conflicts": DraftConflictDetector(session_factory),
        "schedule": ScheduleManager(session_factory),
        "fees": fee_manager,
        "overrides": override_manager,
        "registration": RegistrationManager(
            session_factory,
            override_manager,
            fee_manager=fee_manager,
        ),
    }

    app.register_blueprint(registration_bp)
    app.register_blueprint(admin_bp)
    _register_error_handlers(app)

    @app.route("/health")
    def health():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app()
    app.run(debug=True)

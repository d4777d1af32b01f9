from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from db import DATABASE_URL, init_db, make_engine, make_session_factory
from queue_bp import queue_bp
from queue_errors import QueueError
from queue_history import QueueHistoryManager
from queue_notify import QUEUE_WEBHOOK_TIMEOUT, QUEUE_WEBHOOK_URL, QueueNotifier
from queue_service import QUEUE_MIN_DOCTORS, QueueManager
from shared.auth_lib import JWT_SECRET

QUEUE_RECORD_HISTORY = os.getenv("QUEUE_RECORD_HISTORY", "true").strip().lower() not in ("0", "false", "no")

DEFAULT_CONFIG: dict[str, Any] = {
    "DATABASE_URL": DATABASE_URL,
    "JWT_SECRET": JWT_SECRET,
    "QUEUE_MIN_DOCTORS": QUEUE_MIN_DOCTORS,
    "QUEUE_RECORD_HISTORY": QUEUE_RECORD_HISTORY,
    "QUEUE_WEBHOOK_URL": QUEUE_WEBHOOK_URL,
    "QUEUE_WEBHOOK_TIMEOUT": QUEUE_WEBHOOK_TIMEOUT,
}


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(QueueError)
    def handle_queue_error(exc: QueueError):
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_store_error(exc: SQLAlchemyError):
        app.logger.exception("Queue store failure")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return jsonify({"error": exc.description}), exc.code
        app.logger.exception("Unhandled error")
        return jsonify({"error": "Internal server error"}), 500


def create_app(config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)
    app.config.update(DEFAULT_CONFIG)
    if config:
        app.config.update(config)
    if app.config["JWT_SECRET"] == "fallback-secret-key":
        app.logger.warning("Using fallback JWT_SECRET. Set JWT_SECRET in the environment.")

    engine = make_engine(app.config["DATABASE_URL"])
    init_db(engine)
    session_factory = make_session_factory(engine)

    notifier = app.config.get("QUEUE_NOTIFIER") or QueueNotifier(
        app.config["QUEUE_WEBHOOK_URL"] or "",
        timeout=app.config["QUEUE_WEBHOOK_TIMEOUT"],
    )
    app.extensions["queue_notifier"] = notifier
    app.extensions["queue_manager"] = QueueManager(
        session_factory,
        min_doctors=app.config["QUEUE_MIN_DOCTORS"],
        record_history=app.config["QUEUE_RECORD_HISTORY"],
        notifier=notifier,
    )
    app.extensions["queue_history"] = QueueHistoryManager(session_factory)
    app.extensions["queue_engine"] = engine

    app.register_blueprint(queue_bp)
    _register_error_handlers(app)

    @app.route("/health")
    def health_check():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    create_app().run(debug=True, port=4000)

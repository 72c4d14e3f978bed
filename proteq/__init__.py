"""Flask application factory for the ProteQ incident lifecycle service."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify

from .config import Config
from .extensions import db, init_extensions

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _configure_logging(app: Flask) -> None:
    """Уровень и (опционально) файл лога для логгеров пакета ``proteq``."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    pkg_logger = logging.getLogger("proteq")
    pkg_logger.setLevel(level)

    log_file = app.config.get("LOG_FILE")
    if log_file and not any(isinstance(h, RotatingFileHandler) for h in pkg_logger.handlers):
        handler = RotatingFileHandler(
            log_file,
            maxBytes=int(app.config.get("LOG_FILE_MAX_BYTES", 5 * 1024 * 1024)),
            backupCount=int(app.config.get("LOG_FILE_BACKUPS", 5)),
            encoding="utf-8",
        )
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        pkg_logger.addHandler(handler)
    elif not logging.getLogger().handlers and not pkg_logger.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)


def _register_blueprints(app: Flask) -> None:
    from .incidents import bp as incidents_bp

    app.register_blueprint(incidents_bp)


def _register_common_routes(app: Flask) -> None:
    @app.get("/health")
    def health():
        return ("", 204)

    @app.get("/ready")
    def ready():
        return jsonify(status="ok"), 200


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(404)
    def _not_found(_err):
        return jsonify(error="not_found"), 404

    @app.errorhandler(405)
    def _method_not_allowed(_err):
        return jsonify(error="method_not_allowed"), 405


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_class)

    _configure_logging(app)
    init_extensions(app)

    with app.app_context():
        from . import models  # noqa: F401
        db.create_all()

    _register_blueprints(app)
    _register_common_routes(app)
    _register_error_handlers(app)
    app.logger.info("ProteQ incident service started (%s)", config_class.__name__)
    return app

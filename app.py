# app.py

import logging
import os
from http import HTTPStatus

from dotenv import load_dotenv
from flask import Flask, jsonify
from sqlalchemy import event

# Load environment variables from .env file first
load_dotenv()

# Module imports after load_dotenv() - E402 is intentional
from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.validation import validate_and_exit  # noqa: E402
from docket_app.importer import init_importer  # noqa: E402
from docket_app.models import db  # noqa: E402
from docket_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

_CONFIGS = {
    "production": ProductionConfig,
    "testing": TestingConfig,
    "development": DevelopmentConfig,
}


def _configure_sqlite_connection_factory(*, enable_foreign_keys: bool):
    """Return a connection hook applying concurrency-friendly pragmas."""

    def _configure_sqlite_connection(dbapi_connection, connection_record):  # pragma: no cover - instrumentation
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if enable_foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        finally:
            cursor.close()

    return _configure_sqlite_connection


def _register_sqlite_pragmas(app: Flask) -> None:
    engine = db.engine
    if not engine.url.drivername.startswith("sqlite"):
        return
    if getattr(engine, "_sqlite_pragmas_configured", False):
        return
    event.listen(engine, "connect", _configure_sqlite_connection_factory(enable_foreign_keys=True))
    engine._sqlite_pragmas_configured = True  # type: ignore[attr-defined]


def create_app(config_object=None, **overrides) -> Flask:
    """
    Application factory used by ``flask --app app`` and the test suite.

    ``overrides`` are applied on top of the selected config class before any
    extension is initialised.
    """
    app = Flask(__name__)

    flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env == "production" and config_object is None:
        validate_and_exit(flask_env)
    app.config.from_object(config_object or _CONFIGS.get(flask_env, DevelopmentConfig))
    app.config.update(overrides)

    db.init_app(app)
    setup_logging(app)

    with app.app_context():
        _register_sqlite_pragmas(app)
        # Tests manage their own schema
        if not app.config.get("TESTING", False):
            db.create_all()

    init_importer(app)

    @app.errorhandler(HTTPStatus.NOT_FOUND)
    def not_found_error(error):
        return jsonify({"error": "Not found."}), HTTPStatus.NOT_FOUND

    @app.errorhandler(HTTPStatus.INTERNAL_SERVER_ERROR)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error."}), HTTPStatus.INTERNAL_SERVER_ERROR

    return app


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)

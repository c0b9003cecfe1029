"""
Celery wiring for the batch import worker.

Celery stays dormant until the importer is enabled. Without an explicit broker
the worker uses a SQLite transport under the Flask instance folder, so a
developer machine needs no Redis.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
IMPORTER_EXTENSION_KEY = "importer"


def _configure_quiet_loggers(app: Flask) -> None:
    """Keep SQL echo and per-message worker chatter out of task logs."""
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("celery.worker.strategy").setLevel(logging.WARNING)


def _sqlite_transport_path(app: Flask) -> Path:
    configured = app.config.get("CELERY_SQLITE_PATH")
    if configured:
        path = Path(configured)
        if not path.is_absolute():
            path = Path(app.instance_path) / path
    else:
        path = Path(app.instance_path) / DEFAULT_SQLITE_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _resolve_connection_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)``, filling gaps with SQLite."""
    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery expects forward slashes even on Windows.
    location = _sqlite_transport_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{location}", result_backend or f"db+sqlite:///{location}"


def _extra_config(app: Flask) -> Mapping[str, Any] | None:
    extra: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra, str):
        try:
            extra = json.loads(extra)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra or None


def create_celery_app(app: Flask) -> Celery:
    """Build a Celery instance whose tasks run inside ``app``'s context."""
    broker_url, result_backend = _resolve_connection_urls(app)
    celery_app = Celery(
        app.import_name,
        broker=broker_url,
        backend=result_backend,
        include=("docket_app.importer.tasks",),
    )

    celery_app.conf.update(
        task_default_queue=DEFAULT_QUEUE_NAME,
        task_queues=[Queue(DEFAULT_QUEUE_NAME)],
        task_default_exchange=DEFAULT_QUEUE_NAME,
        task_default_routing_key=DEFAULT_QUEUE_NAME,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        task_track_started=True,
        result_extended=True,
        broker_connection_retry_on_startup=True,
        task_time_limit=app.config.get("IMPORTER_TASK_TIME_LIMIT", 60 * 60),
        task_soft_time_limit=app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", 55 * 60),
        worker_hijack_root_logger=False,
        beat_schedule={
            "importer-expire-sessions": {
                "task": "importer.maintenance.expire_sessions",
                "schedule": timedelta(minutes=15),
            },
            "importer-purge-previews": {
                "task": "importer.maintenance.purge_previews",
                "schedule": timedelta(hours=1),
            },
        },
    )

    extra_conf = _extra_config(app)
    app.logger.info(
        "Importer Celery configuration resolved",
        extra={
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_celery_extra_conf": extra_conf,
            "importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED"),
        },
    )
    if extra_conf:
        celery_app.conf.update(extra_conf)

    _configure_quiet_loggers(app)

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None:
        celery_app = create_celery_app(app)
        state["celery_app"] = celery_app
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """Return the importer's Celery instance, creating it when the importer is on."""
    state: dict[str, Any] | None = app.extensions.get(IMPORTER_EXTENSION_KEY)
    if not state:
        return None
    celery_app: Celery | None = state.get("celery_app")
    if celery_app is None and state.get("enabled"):
        celery_app = ensure_celery_app(app, state)
    return celery_app

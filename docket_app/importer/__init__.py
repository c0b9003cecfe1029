"""
Batch importer feature package.

``init_importer`` mounts the blueprint and CLI group when ``IMPORTER_ENABLED``
is set and records the importer state in ``app.extensions['importer']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from docket_app.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import IMPORTER_EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .context import ImportContext, get_import_context
from .views import importer_blueprint

__all__ = [
    "IMPORTER_EXTENSION_KEY",
    "ImportContext",
    "get_celery_app",
    "get_import_context",
    "init_importer",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the importer CLI group, or its disabled stand-in."""
    if importer_cli.name in app.cli.commands:
        app.cli.commands.pop(importer_cli.name)
    app.cli.add_command(importer_cli if enabled else get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update({"enabled": enabled, "worker_enabled": is_worker_enabled(app)})

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    get_import_context(app)
    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)
    app.logger.info("Importer enabled (worker %s)", "on" if state["worker_enabled"] else "off")

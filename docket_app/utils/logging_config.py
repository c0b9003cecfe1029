"""
Application logging setup.

Records carry structured context through ``extra={"importer_...": ...}``; the
formatter appends those keys as ``key=value`` pairs so plain-text logs keep
the batch, row and status that produced them.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask

CONTEXT_PREFIX = "importer_"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_HANDLER_MARKER = "_docket_handler"


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = {
            key: value for key, value in record.__dict__.items() if key.startswith(CONTEXT_PREFIX) and value is not None
        }
        if not context:
            return message
        rendered = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
        return f"{message} | {rendered}"


def _mark(handler: logging.Handler) -> logging.Handler:
    setattr(handler, _HANDLER_MARKER, True)
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    return handler


def setup_logging(app: Flask) -> None:
    """(Re)configure ``app.logger`` from ``LOG_LEVEL`` and the handler flags."""

    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logger = app.logger
    for handler in [h for h in logger.handlers if getattr(h, _HANDLER_MARKER, False)]:
        logger.removeHandler(handler)
        handler.close()

    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        logger.addHandler(_mark(logging.StreamHandler()))

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR") or os.path.join(app.instance_path, "logs")
        os.makedirs(log_dir, exist_ok=True)
        logger.addHandler(
            _mark(RotatingFileHandler(os.path.join(log_dir, "docket.log"), maxBytes=5 * 1024 * 1024, backupCount=5))
        )

    logger.setLevel(level)
    logging.getLogger("docket_app").setLevel(level)

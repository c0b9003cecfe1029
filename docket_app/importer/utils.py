"""
Importer-specific utilities for storing uploaded files and JSON payloads.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping, Sequence
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable
from uuid import uuid4

from flask import current_app
from werkzeug.utils import secure_filename

DEFAULT_UPLOAD_SUBDIR = "import_uploads"
CSV_EXTENSIONS: tuple[str, ...] = ("csv",)


def _normalize_upload_dir(
    configured_path: str | None,
    instance_path: str,
    *,
    default_subdir: str,
) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the importer upload directory.
    """

    upload_dir = _normalize_upload_dir(
        app.config.get("IMPORTER_UPLOAD_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_UPLOAD_SUBDIR,
    )
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = CSV_EXTENSIONS) -> bool:
    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def persist_upload_bytes(data: bytes, filename: str, *, directory: Path) -> Path:
    """
    Write an accepted upload under ``directory`` and return its path.

    Stored names are UUID based so two uploads with the same client filename
    never collide; the original extension is kept when it is safe.
    """

    directory.mkdir(parents=True, exist_ok=True)
    original_name = secure_filename(filename or "")
    extension = Path(original_name).suffix or ".csv"
    target_path = directory / f"{uuid4().hex}{extension}"
    target_path.write_bytes(data)
    current_app.logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def cleanup_upload(path: Path | str | None) -> bool:
    """
    Remove a stored upload, logging but ignoring filesystem errors.

    Returns True when a file was actually removed.
    """

    if not path:
        return False
    target = Path(path)
    try:
        existed = target.exists()
        target.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer upload %s: %s", target, exc)
        return False
    return existed


def ensure_json_serializable(value: Any) -> Any:
    """
    Best-effort conversion of values to JSON-serializable representations.
    """

    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): ensure_json_serializable(inner) for key, inner in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [ensure_json_serializable(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return str(value)


def normalize_payload(payload: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Return a shallow copy of ``payload`` with JSON-serializable values.
    """

    if not payload:
        return {}
    normalized: dict[str, Any] = {}
    for key, value in payload.items():
        normalized[str(key)] = ensure_json_serializable(value)
    return normalized

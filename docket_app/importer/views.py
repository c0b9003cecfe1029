"""
Importer blueprint: JSON endpoints for intake, batch history, progress and
error records.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from docket_app.importer.errors import (
    BatchNotFound,
    DuplicateFileError,
    ErrorRecordNotFound,
    ImporterError,
    InvalidTransitionError,
    PreviewNotFound,
    SessionExpiredError,
    SessionNotFound,
    SourceUnreadableError,
    UploadTooLargeError,
)
from docket_app.importer.context import get_import_context
from docket_app.importer.pipeline.batch_service import BatchFilters, ImportBatchService, serialize_batch
from docket_app.importer.pipeline.error_collector import ErrorFilters, ErrorRecordService, serialize_error
from docket_app.importer.pipeline.lifecycle import BatchLifecycleController
from docket_app.importer.pipeline.sessions import ImportSessionManager, serialize_session
from docket_app.importer.pipeline.validation import PreviewService
from docket_app.importer.utils import allowed_file
from docket_app.models import ValidationPreview
from docket_app.utils.importer import is_importer_enabled, is_worker_enabled

from .celery_app import DEFAULT_QUEUE_NAME, IMPORTER_EXTENSION_KEY, get_celery_app

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")

_CONFIG_FIELDS = (
    "auto_create_references",
    "autoCreateReferences",
    "auto_create_judges",
    "autoCreateJudges",
    "dry_run",
    "dryRun",
    "total_rows_hint",
    "totalRowsHint",
)

_ERROR_STATUS: tuple[tuple[type[ImporterError], HTTPStatus], ...] = (
    (DuplicateFileError, HTTPStatus.CONFLICT),
    (UploadTooLargeError, HTTPStatus.REQUEST_ENTITY_TOO_LARGE),
    (SourceUnreadableError, HTTPStatus.UNPROCESSABLE_ENTITY),
    (InvalidTransitionError, HTTPStatus.CONFLICT),
    (SessionExpiredError, HTTPStatus.GONE),
    (BatchNotFound, HTTPStatus.NOT_FOUND),
    (ErrorRecordNotFound, HTTPStatus.NOT_FOUND),
    (PreviewNotFound, HTTPStatus.NOT_FOUND),
    (SessionNotFound, HTTPStatus.NOT_FOUND),
)


def _json_error(message: str, status: HTTPStatus, **extra):
    return jsonify({"error": message, **extra}), status


@importer_blueprint.errorhandler(ImporterError)
def _handle_importer_error(exc: ImporterError):
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status = HTTPStatus.BAD_REQUEST
    extra = {}
    if isinstance(exc, DuplicateFileError):
        extra["existing_batch_id"] = exc.existing_batch_id
    return _json_error(str(exc), status, **extra)


@importer_blueprint.errorhandler(ValueError)
def _handle_value_error(exc: ValueError):
    return _json_error(str(exc), HTTPStatus.BAD_REQUEST)


@importer_blueprint.before_request
def _ensure_importer_enabled_api():
    if request.endpoint == "importer.importer_healthcheck":
        return None
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


def _controller() -> BatchLifecycleController:
    return BatchLifecycleController(get_import_context(current_app))


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@importer_blueprint.get("/health")
def importer_healthcheck():
    state = current_app.extensions.get(IMPORTER_EXTENSION_KEY, {})
    return jsonify({"status": "ok", "enabled": state.get("enabled", False)}), HTTPStatus.OK


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """Run the heartbeat task and report whether a worker answered."""
    state = current_app.extensions.get(IMPORTER_EXTENSION_KEY, {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Intake
# ---------------------------------------------------------------------------


@importer_blueprint.post("/batches")
def importer_upload():
    """
    Accept a multipart upload (``file`` field).

    Form fields ``auto_create_references``, ``auto_create_judges``,
    ``dry_run``, ``total_rows_hint``, ``declared_size``, ``created_by`` and
    ``session_id`` are optional. A dry run answers with a validation preview
    instead of a batch.
    """

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _json_error("A CSV file is required in the 'file' field.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(upload.filename):
        return _json_error("Only .csv uploads are accepted.", HTTPStatus.BAD_REQUEST)

    form = request.form
    session_id = int(form["session_id"]) if form.get("session_id") else None
    config = {key: form[key] for key in _CONFIG_FIELDS if key in form}
    data = upload.read()
    controller = _controller()

    admitted = controller.intake(
        data,
        filename=upload.filename,
        declared_size=int(form["declared_size"]) if form.get("declared_size") else None,
        config=config,
        created_by=form.get("created_by"),
        session_id=session_id,
    )
    if isinstance(admitted, ValidationPreview):
        return jsonify({"preview_id": admitted.id, "preview": _serialize_preview(admitted)}), HTTPStatus.OK

    batch = admitted
    task_id = None
    if is_worker_enabled(current_app):
        celery_app = get_celery_app(current_app)
        if celery_app is not None:
            task_id = celery_app.send_task("importer.pipeline.process_batch", kwargs={"batch_id": batch.id}).id
    return jsonify({"batch": serialize_batch(batch), "task_id": task_id}), HTTPStatus.ACCEPTED


def _serialize_preview(preview) -> dict:
    return {
        "id": preview.id,
        "filename": preview.filename,
        "file_checksum": preview.file_checksum,
        "total_rows": preview.total_rows,
        "valid_rows": preview.valid_rows,
        "invalid_rows": preview.invalid_rows,
        "warning_rows": preview.warning_rows,
        "empty_rows_skipped": preview.empty_rows_skipped,
        "errors": preview.errors_json or [],
        "warnings": preview.warnings_json or [],
        "sample": preview.preview_rows_json or [],
        "expires_at": preview.expires_at.isoformat() if preview.expires_at else None,
    }


@importer_blueprint.get("/previews/<int:preview_id>")
def importer_preview_detail(preview_id: int):
    preview = PreviewService(clock=get_import_context(current_app).clock).get(preview_id)
    return jsonify(_serialize_preview(preview)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Batch history and progress
# ---------------------------------------------------------------------------


@importer_blueprint.get("/batches")
def importer_batches_list():
    raw = request.args
    default_page_size = current_app.config.get("IMPORTER_RUNS_PAGE_SIZE_DEFAULT", 25)
    allowed_page_sizes = {str(size) for size in current_app.config.get("IMPORTER_RUNS_PAGE_SIZES", (25, 50, 100))}
    page_size = raw.get("page_size")
    if page_size not in allowed_page_sizes:
        page_size = default_page_size
    filters = BatchFilters.coerce(
        page=raw.get("page"),
        page_size=page_size,
        sort=raw.get("sort"),
        statuses=_split_csv(raw.get("status")),
        search=raw.get("search"),
        created_from=raw.get("created_from"),
        created_to=raw.get("created_to"),
        session_id=raw.get("session_id"),
    )
    start_time = time.perf_counter()
    result = ImportBatchService().list_batches(filters)
    current_app.logger.info(
        "Import batch history retrieved",
        extra={
            "importer_batch_count": len(result.items),
            "importer_total_batches": result.total,
            "importer_response_time_ms": round((time.perf_counter() - start_time) * 1000, 2),
        },
    )
    return (
        jsonify(
            {
                "batches": [item.as_dict() for item in result.items],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": result.total_pages,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/batches/stats")
def importer_batches_stats():
    stats = ImportBatchService().get_stats()
    return (
        jsonify(
            {
                "total": stats.total,
                "statuses": dict(stats.statuses),
                "rows_succeeded": stats.rows_succeeded,
                "rows_failed": stats.rows_failed,
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/batches/<int:batch_id>")
def importer_batch_detail(batch_id: int):
    batch = ImportBatchService().get_batch(batch_id)
    return jsonify(serialize_batch(batch, include_progress=True)), HTTPStatus.OK


@importer_blueprint.get("/batches/<int:batch_id>/errors")
def importer_batch_errors(batch_id: int):
    ImportBatchService().get_batch(batch_id)
    raw = request.args
    filters = ErrorFilters.coerce(
        batch_ids=[batch_id],
        severities=_split_csv(raw.get("severity")),
        error_kinds=_split_csv(raw.get("kind")),
        resolved=raw.get("resolved"),
        row_number=raw.get("row"),
        page=raw.get("page"),
        page_size=raw.get("page_size"),
        sort=raw.get("sort"),
    )
    service = ErrorRecordService()
    result = service.list_errors(filters)
    stats = service.stats(ErrorFilters(batch_ids=(batch_id,)))
    return (
        jsonify(
            {
                "errors": [serialize_error(record) for record in result.items],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": result.total_pages,
                "stats": {
                    "total": stats.total,
                    "unresolved": stats.unresolved,
                    "by_severity": dict(stats.by_severity),
                    "by_kind": dict(stats.by_kind),
                },
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.post("/errors/<int:error_id>/resolve")
def importer_resolve_error(error_id: int):
    payload = request.get_json(silent=True) or {}
    service = ErrorRecordService(clock=get_import_context(current_app).clock)
    record = service.mark_resolved(error_id, resolved_by=payload.get("resolved_by"))
    return jsonify(serialize_error(record)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------


@importer_blueprint.post("/batches/<int:batch_id>/abort")
def importer_batch_abort(batch_id: int):
    batch = _controller().request_abort(batch_id)
    return jsonify(serialize_batch(batch)), HTTPStatus.ACCEPTED


@importer_blueprint.post("/batches/<int:batch_id>/cleanup")
def importer_batch_cleanup(batch_id: int):
    batch = _controller().cleanup(batch_id)
    return jsonify(serialize_batch(batch)), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Import sessions
# ---------------------------------------------------------------------------


def _session_manager() -> ImportSessionManager:
    return ImportSessionManager(clock=get_import_context(current_app).clock)


@importer_blueprint.post("/sessions")
def importer_session_open():
    payload = request.get_json(silent=True) or {}
    user_id = payload.get("user_id")
    if not user_id:
        return _json_error("user_id is required.", HTTPStatus.BAD_REQUEST)
    record = _session_manager().open(user_id, metadata=payload.get("metadata"))
    return jsonify(serialize_session(record) | {"token": record.token}), HTTPStatus.CREATED


@importer_blueprint.get("/sessions/<int:session_id>")
def importer_session_detail(session_id: int):
    return jsonify(serialize_session(_session_manager().get(session_id))), HTTPStatus.OK


@importer_blueprint.post("/sessions/<int:session_id>/touch")
def importer_session_touch(session_id: int):
    return jsonify(serialize_session(_session_manager().touch(session_id))), HTTPStatus.OK


@importer_blueprint.post("/sessions/<int:session_id>/complete")
def importer_session_complete(session_id: int):
    return jsonify(serialize_session(_session_manager().complete(session_id))), HTTPStatus.OK

"""
Flask CLI commands for the batch importer.

Every command loads the app through ``ScriptInfo`` and reports failures as
``click.ClickException`` so operators get a one-line message and exit code 1.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from docket_app.importer.celery_app import DEFAULT_QUEUE_NAME, IMPORTER_EXTENSION_KEY, get_celery_app
from docket_app.importer.context import get_import_context
from docket_app.importer.errors import ImporterError
from docket_app.importer.pipeline.batch_service import BatchFilters, ImportBatchService, serialize_batch
from docket_app.importer.pipeline.error_collector import ErrorFilters, ErrorRecordService, serialize_error
from docket_app.importer.pipeline.lifecycle import BatchLifecycleController
from docket_app.importer.pipeline.progress import latest_progress, serialize_progress
from docket_app.importer.pipeline.sessions import ImportSessionManager
from docket_app.importer.utils import cleanup_upload, resolve_upload_directory
from docket_app.models import ImportBatch, ValidationPreview, db
from docket_app.utils.importer import is_importer_enabled


@click.group(name="importer")
@click.pass_context
def importer_cli(ctx):
    """Daily case-return import commands."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )


def get_disabled_importer_group() -> click.Group:
    """Stand-in group registered while the importer is switched off."""

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _controller(ctx) -> BatchLifecycleController:
    app = ctx.ensure_object(ScriptInfo).load_app()
    return BatchLifecycleController(get_import_context(app))


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _preview_payload(preview: ValidationPreview) -> dict[str, object]:
    return {
        "preview_id": preview.id,
        "filename": preview.filename,
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


def _format_batch(batch: ImportBatch) -> str:
    status_value = batch.status.value if hasattr(batch.status, "value") else str(batch.status)
    lines = [
        f"Batch {batch.id} ({batch.filename}) status={status_value}",
        f"  total_records     : {batch.total_records}",
        f"  successful_records: {batch.successful_records}",
        f"  failed_records    : {batch.failed_records}",
        f"  empty_rows_skipped: {batch.empty_rows_skipped}",
    ]
    if batch.error_summary:
        lines.append(f"  error_summary     : {batch.error_summary}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Worker management
# ---------------------------------------------------------------------------


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    state = app.extensions.get(IMPORTER_EXTENSION_KEY, {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.option("--beat/--no-beat", default=False, help="Also run the maintenance schedule in this worker.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """Start the Celery worker in the current process."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    state = app.extensions.get(IMPORTER_EXTENSION_KEY)
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Run the heartbeat task and print its payload."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)


# ---------------------------------------------------------------------------
# Intake and processing
# ---------------------------------------------------------------------------


@importer_cli.command("run")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="Daily case-return CSV to import.",
)
@click.option("--dry-run", is_flag=True, help="Validate only and print a preview; no batch is created.")
@click.option("--inline/--no-inline", default=False, help="Process in this process instead of queueing via Celery.")
@click.option(
    "--auto-create/--no-auto-create",
    default=None,
    help="Create missing courts and case types (defaults to IMPORTER_AUTO_CREATE_REFERENCES).",
)
@click.option("--auto-create-judges/--no-auto-create-judges", default=True, show_default=True)
@click.option("--created-by", default=None, help="Operator recorded on the batch.")
@click.option("--session-id", type=int, default=None, help="Import session to correlate this upload with.")
@click.pass_context
def importer_run(
    ctx,
    file_path: Path,
    dry_run: bool,
    inline: bool,
    auto_create: Optional[bool],
    auto_create_judges: bool,
    created_by: Optional[str],
    session_id: Optional[int],
):
    """Import a case-return file, or preview it with --dry-run."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    controller = _controller(ctx)
    data = file_path.read_bytes()
    config = {"auto_create_judges": auto_create_judges, "dry_run": dry_run}
    if auto_create is not None:
        config["auto_create_references"] = auto_create

    try:
        batch = controller.intake(
            data,
            filename=file_path.name,
            declared_size=file_path.stat().st_size,
            config=config,
            created_by=created_by,
            session_id=session_id,
        )
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    if isinstance(batch, ValidationPreview):
        _echo_json(_preview_payload(batch))
        return

    if inline:
        try:
            result = controller.process(batch.id)
        except ImporterError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(_format_batch(db.session.get(ImportBatch, result.batch_id)))
        return

    celery_app = _resolve_celery(app)
    async_result = celery_app.send_task("importer.pipeline.process_batch", kwargs={"batch_id": batch.id})
    app.logger.info(
        "Import batch queued via CLI",
        extra={"importer_batch_id": batch.id, "importer_task_id": async_result.id},
    )
    click.echo(json.dumps({"batch_id": batch.id, "task_id": async_result.id, "status": "queued"}))


@importer_cli.command("process")
@click.argument("batch_id", type=int)
@click.pass_context
def importer_process(ctx, batch_id: int):
    """Process a PENDING batch inline (e.g. after a failed enqueue)."""
    controller = _controller(ctx)
    try:
        result = controller.process(batch_id)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_format_batch(db.session.get(ImportBatch, result.batch_id)))


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


@importer_cli.command("status")
@click.argument("batch_id", type=int)
@click.option("--json", "as_json", is_flag=True, help="Emit the full batch payload as JSON.")
@click.pass_context
def importer_status(ctx, batch_id: int, as_json: bool):
    """Show a batch and its latest progress snapshot."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        batch = ImportBatchService().get_batch(batch_id)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        _echo_json(serialize_batch(batch, include_progress=True))
        return
    click.echo(_format_batch(batch))
    progress = serialize_progress(latest_progress(batch.id))
    if progress is not None:
        percentage = progress["percentage"]
        click.echo(
            f"  progress          : {progress['step']} "
            f"{'?' if percentage is None else percentage}% "
            f"({progress['processed_rows']}/{progress['total_rows']})"
        )


@importer_cli.command("errors")
@click.argument("batch_id", type=int)
@click.option("--severity", "severities", multiple=True, help="Filter by severity (error, warning, info).")
@click.option("--kind", "kinds", multiple=True, help="Filter by error kind.")
@click.option("--unresolved", is_flag=True, help="Only list records not yet resolved.")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--page-size", default=50, show_default=True, type=int)
@click.pass_context
def importer_errors(ctx, batch_id: int, severities, kinds, unresolved: bool, page: int, page_size: int):
    """List the error records of a batch as JSON."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        filters = ErrorFilters.coerce(
            batch_ids=[batch_id],
            severities=severities,
            error_kinds=kinds,
            resolved=False if unresolved else None,
            page=page,
            page_size=page_size,
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    result = ErrorRecordService().list_errors(filters)
    _echo_json(
        {
            "batch_id": batch_id,
            "total": result.total,
            "page": result.page,
            "total_pages": result.total_pages,
            "items": [serialize_error(record) for record in result.items],
        }
    )


@importer_cli.command("resolve-error")
@click.argument("error_id", type=int)
@click.option("--by", "resolved_by", default=None, help="Who resolved the record.")
@click.pass_context
def importer_resolve_error(ctx, error_id: int, resolved_by: Optional[str]):
    """Mark one error record as resolved."""
    ctx.ensure_object(ScriptInfo).load_app()
    try:
        record = ErrorRecordService().mark_resolved(error_id, resolved_by=resolved_by)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(serialize_error(record))


@importer_cli.command("history")
@click.option("--status", "statuses", multiple=True, help="Filter by batch status.")
@click.option("--search", default=None, help="Filename, checksum, or batch id.")
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--page-size", default=None, type=int)
@click.pass_context
def importer_history(ctx, statuses, search: Optional[str], page: int, page_size: Optional[int]):
    """List import batches, newest first."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    try:
        filters = BatchFilters.coerce(
            statuses=statuses,
            search=search,
            page=page,
            page_size=page_size or app.config.get("IMPORTER_RUNS_PAGE_SIZE_DEFAULT"),
        )
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    result = ImportBatchService().list_batches(filters)
    _echo_json(
        {
            "total": result.total,
            "page": result.page,
            "total_pages": result.total_pages,
            "items": [summary.as_dict() for summary in result.items],
        }
    )


# ---------------------------------------------------------------------------
# Operator actions and maintenance
# ---------------------------------------------------------------------------


@importer_cli.command("abort")
@click.argument("batch_id", type=int)
@click.pass_context
def importer_abort(ctx, batch_id: int):
    """Ask a pending or processing batch to stop."""
    controller = _controller(ctx)
    try:
        batch = controller.request_abort(batch_id)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Abort requested for batch {batch.id}.")


@importer_cli.command("cleanup")
@click.argument("batch_id", type=int, required=False)
@click.option("--failed", "all_failed", is_flag=True, help="Archive every FAILED batch.")
@click.option("--older-than-hours", type=int, default=None, help="With --failed, only batches finished earlier.")
@click.pass_context
def importer_cleanup(ctx, batch_id: Optional[int], all_failed: bool, older_than_hours: Optional[int]):
    """Archive a finished batch (or all failed ones) and drop stored uploads."""
    if batch_id is None and not all_failed:
        raise click.ClickException("Pass a BATCH_ID or --failed.")
    controller = _controller(ctx)
    try:
        if all_failed:
            older_than = timedelta(hours=older_than_hours) if older_than_hours is not None else None
            cleaned = controller.clean_failed(older_than)
            click.echo(f"Archived {len(cleaned)} failed batch(es).")
            return
        batch = controller.cleanup(batch_id)
    except ImporterError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Batch {batch.id} archived (was {batch.cleaned_from_status.value}).")


@importer_cli.command("expire-sessions")
@click.pass_context
def importer_expire_sessions(ctx):
    """Expire import sessions past their deadline."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    expired = ImportSessionManager(clock=get_import_context(app).clock).expire_stale()
    click.echo(f"Expired {expired} import session(s).")


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove stored uploads older than the specified number of hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: int):
    """Delete stale upload files that no PENDING or PROCESSING batch still needs."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    uploads_dir = resolve_upload_directory(app)
    if not uploads_dir.exists():
        click.echo(f"No upload directory found at {uploads_dir}. Nothing to clean.")
        return

    in_use = {
        (batch.ingest_params_json or {}).get("file_path")
        for batch in db.session.query(ImportBatch).filter(ImportBatch.completed_at.is_(None)).all()
    }
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    removed = 0
    for path in uploads_dir.iterdir():
        if not path.is_file() or str(path) in in_use:
            continue
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except FileNotFoundError:
            continue
        if modified < cutoff and cleanup_upload(path):
            removed += 1

    click.echo(f"Removed {removed} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")

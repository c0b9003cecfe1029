"""
Importer Celery tasks.

``process_batch`` is the queued counterpart of ``importer run --inline``. The
maintenance tasks are scheduled through the beat entries in ``celery_app``.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from docket_app.importer.context import get_import_context
from docket_app.importer.pipeline.lifecycle import BatchLifecycleController
from docket_app.importer.pipeline.sessions import ImportSessionManager
from docket_app.importer.pipeline.validation import PreviewService


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by ``importer worker ping``."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="importer.pipeline.process_batch", bind=True)
def process_batch(self, *, batch_id: int) -> dict[str, Any]:
    """Run a PENDING batch to a terminal status on the worker."""

    controller = BatchLifecycleController(get_import_context(current_app))
    result = controller.process(batch_id)
    current_app.logger.info(
        "Import batch finished on worker",
        extra={
            "importer_batch_id": batch_id,
            "importer_status": result.status.value,
            "importer_rows_succeeded": result.succeeded_rows,
            "importer_rows_failed": result.failed_rows,
            "importer_task_id": self.request.id,
        },
    )
    return result.as_dict()


@shared_task(name="importer.maintenance.expire_sessions")
def expire_sessions() -> dict[str, int]:
    context = get_import_context(current_app)
    expired = ImportSessionManager(clock=context.clock).expire_stale()
    return {"expired": expired}


@shared_task(name="importer.maintenance.purge_previews")
def purge_previews() -> dict[str, int]:
    context = get_import_context(current_app)
    purged = PreviewService(clock=context.clock).purge_expired()
    if purged:
        current_app.logger.info("Purged %s expired validation previews", purged)
    return {"purged": purged}

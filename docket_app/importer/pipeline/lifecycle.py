"""
Batch lifecycle controller.

Status moves strictly forward::

    PENDING -> PROCESSING -> {COMPLETED, FAILED} -> CLEANED

Row-level problems never fail a batch; they become error records and count as
failed rows. A batch fails only when its source cannot be read, a transient
store failure outlives the retry budget, or an operator aborts it. Rows
committed before a failure are kept.
"""

from __future__ import annotations

import time as _time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Mapping

from flask import current_app
from sqlalchemy.orm import Session

from docket_app.importer.context import ImportContext, get_import_context
from docket_app.importer.errors import (
    BatchAborted,
    BatchFatalError,
    BatchNotFound,
    InvalidTransitionError,
    SourceUnreadableError,
    StoreRetryExhausted,
)
from docket_app.importer.metrics import record_batch_finished
from docket_app.importer.pipeline.checksum import ChecksumGate
from docket_app.importer.pipeline.error_collector import ErrorCollector, categorize_store_error
from docket_app.importer.pipeline.options import BatchConfig
from docket_app.importer.pipeline.parsing import RawRow, read_case_rows
from docket_app.importer.pipeline.progress import ProgressDelta, ProgressTracker
from docket_app.importer.pipeline.resolver import MASTER_DATA_KEYS, empty_master_data
from docket_app.importer.pipeline.sessions import ImportSessionManager
from docket_app.importer.pipeline.upsert import RowOutcome, run_row_unit
from docket_app.importer.pipeline.validation import PreviewService, RowValidator, ValidatedRow
from docket_app.importer.utils import cleanup_upload
from docket_app.models import BatchStatus, Clock, ImportBatch, ValidationPreview, as_utc, db, utc_now

ALLOWED_TRANSITIONS: Mapping[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.PENDING: frozenset({BatchStatus.PROCESSING}),
    BatchStatus.PROCESSING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED}),
    BatchStatus.COMPLETED: frozenset({BatchStatus.CLEANED}),
    BatchStatus.FAILED: frozenset({BatchStatus.CLEANED}),
    BatchStatus.CLEANED: frozenset(),
}

# How many dispatches pass between reads of the persisted abort flag.
ABORT_POLL_INTERVAL = 10


def transition(batch: ImportBatch, target: BatchStatus, *, clock: Clock = utc_now) -> ImportBatch:
    """Move ``batch`` to ``target`` and stamp the matching timestamp."""

    current = batch.status
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(batch.id, current, target)
    now = clock()
    if target == BatchStatus.PROCESSING:
        batch.processing_started_at = now
    elif target in (BatchStatus.COMPLETED, BatchStatus.FAILED):
        batch.completed_at = now
    elif target == BatchStatus.CLEANED:
        batch.cleaned_at = now
        batch.cleaned_from_status = current
    batch.status = target
    current_app.logger.info(
        "Import batch %s %s -> %s",
        batch.id,
        current.value,
        target.value,
        extra={"importer_batch_id": batch.id, "importer_status": target.value},
    )
    return batch


@dataclass(slots=True)
class BatchResult:
    batch_id: int
    status: BatchStatus
    total_rows: int = 0
    succeeded_rows: int = 0
    failed_rows: int = 0
    empty_rows_skipped: int = 0
    duplicate_rows: int = 0
    error_count: int = 0
    warning_count: int = 0
    error_summary: str | None = None
    duration_seconds: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "status": self.status.value,
            "total_rows": self.total_rows,
            "succeeded_rows": self.succeeded_rows,
            "failed_rows": self.failed_rows,
            "empty_rows_skipped": self.empty_rows_skipped,
            "duplicate_rows": self.duplicate_rows,
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "error_summary": self.error_summary,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(slots=True)
class _BatchTallies:
    duplicates: int = 0
    master_data: dict[str, int] = field(default_factory=empty_master_data)
    error_kinds: dict[str, int] = field(default_factory=dict)

    def absorb(self, outcome: RowOutcome) -> None:
        if outcome.duplicate:
            self.duplicates += 1
        for key in MASTER_DATA_KEYS:
            self.master_data[key] += outcome.master_data.get(key, 0)
        for kind, count in outcome.error_kinds.items():
            self.error_kinds[kind] = self.error_kinds.get(kind, 0) + count


class BatchLifecycleController:
    """Drive a batch from intake to a terminal status."""

    def __init__(self, context: ImportContext | None = None, *, session: Session | None = None) -> None:
        self.context = context or get_import_context()
        self.session = session or db.session

    @property
    def clock(self) -> Clock:
        return self.context.clock

    # ------------------------------------------------------------------
    # Intake and preview
    # ------------------------------------------------------------------

    def intake(
        self,
        data: bytes,
        *,
        filename: str,
        declared_size: int | None = None,
        config: Mapping[str, Any] | BatchConfig | None = None,
        created_by: str | None = None,
        session_id: int | None = None,
    ) -> ImportBatch | ValidationPreview:
        """
        Admit an upload as a PENDING batch.

        A dry-run configuration returns a ``ValidationPreview`` instead and never
        creates a batch. A touched import session must still be active.
        Duplicate uploads raise ``DuplicateFileError`` and leave no batch behind.
        """

        batch_config = BatchConfig.coerce(config)
        if batch_config.dry_run:
            return self.preview(data, filename=filename, config=batch_config, session_id=session_id)
        if session_id is not None:
            self._session_manager().touch(session_id)
        return ChecksumGate(self.session, clock=self.clock).admit(
            data,
            filename=filename,
            declared_size=declared_size,
            config=batch_config,
            created_by=created_by,
            session_id=session_id,
        )

    def preview(
        self,
        data: bytes,
        *,
        filename: str,
        config: Mapping[str, Any] | BatchConfig | None = None,
        session_id: int | None = None,
    ) -> ValidationPreview:
        """Dry-run validation. Never creates a batch."""

        if session_id is not None:
            self._session_manager().touch(session_id)
        batch_config = BatchConfig.coerce(config)
        service = PreviewService(
            self.session,
            clock=self.clock,
            ttl_minutes=self.context.settings.preview_ttl_minutes,
            row_limit=self.context.settings.preview_row_limit,
        )
        return service.create(data, filename=filename, config=batch_config.to_dict())

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process(self, batch_id: int) -> BatchResult:
        batch = self._get(batch_id)
        if batch.status != BatchStatus.PENDING:
            raise InvalidTransitionError(batch.id, batch.status, BatchStatus.PROCESSING)

        config = BatchConfig.coerce(batch.user_config)
        settings = self.context.settings
        started = _time.perf_counter()
        transition(batch, BatchStatus.PROCESSING, clock=self.clock)
        self.session.commit()

        tracker = ProgressTracker(
            batch.id,
            batch.total_records,
            session=self.session,
            clock=self.clock,
            flush_every=settings.progress_flush_rows,
            started_at=batch.processing_started_at,
        )
        tracker.set_step("reading", "Reading stored upload.")
        abort_event = self.context.aborts.event_for(batch.id)
        tallies = _BatchTallies()

        try:
            if batch.abort_requested or abort_event.is_set():
                raise BatchAborted(f"Batch {batch.id} was aborted before processing started.")

            reader, rows = self._read_source(batch)
            batch.total_records = len(rows)
            batch.empty_rows_skipped = reader.statistics.rows_skipped_empty
            if reader.statistics.unexpected_columns:
                batch.validation_warnings = {"unexpected_columns": list(reader.statistics.unexpected_columns)}
            tracker.set_total(len(rows))
            self.session.commit()

            tracker.set_step("processing", f"Processing {len(rows)} rows.")
            self._dispatch(batch.id, rows, config, tracker, tallies)
        except BatchFatalError as exc:
            return self._finish(batch.id, BatchStatus.FAILED, tracker, tallies, started, error=exc)
        except Exception as exc:
            current_app.logger.exception(
                "Import batch %s crashed during processing",
                batch.id,
                extra={"importer_batch_id": batch.id},
            )
            self.session.rollback()
            self._finish(batch.id, BatchStatus.FAILED, tracker, tallies, started, error=exc)
            raise
        finally:
            self.context.aborts.discard(batch.id)

        return self._finish(batch.id, BatchStatus.COMPLETED, tracker, tallies, started)

    def _read_source(self, batch: ImportBatch) -> tuple[Any, list[RawRow]]:
        params = batch.ingest_params_json or {}
        file_path = params.get("file_path")
        if not file_path:
            raise SourceUnreadableError(f"Batch {batch.id} has no stored upload.")
        path = Path(file_path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise SourceUnreadableError(f"Stored upload {path} could not be read: {exc}") from exc
        return read_case_rows(data)

    def _abort_flag_set(self, batch_id: int) -> bool:
        flag = self.session.query(ImportBatch.abort_requested).filter(ImportBatch.id == batch_id).scalar()
        return bool(flag)

    def _dispatch(
        self,
        batch_id: int,
        rows: Iterable[RawRow],
        config: BatchConfig,
        tracker: ProgressTracker,
        tallies: _BatchTallies,
    ) -> None:
        settings = self.context.settings
        abort_event = self.context.aborts.event_for(batch_id)
        validator = RowValidator(self.clock)
        window = settings.max_workers * 2
        fatal: BatchFatalError | None = None
        pending: set[Future] = set()

        with ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix=f"import-{batch_id}") as executor:
            for dispatched, validated in enumerate(validator.iter_commit(rows)):
                if abort_event.is_set() or (dispatched % ABORT_POLL_INTERVAL == 0 and self._abort_flag_set(batch_id)):
                    fatal = BatchAborted(f"Batch {batch_id} aborted by operator after {dispatched} rows.")
                    break
                pending.add(executor.submit(self._run_row, validated, batch_id, config))
                if len(pending) >= window:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    fatal = self._collect(done, tracker, tallies)
                    if fatal is not None:
                        break
            if pending:
                done, _ = wait(pending)
                fatal = self._collect(done, tracker, tallies) or fatal

        if fatal is not None:
            raise fatal

    def _run_row(self, validated: ValidatedRow, batch_id: int, config: BatchConfig) -> RowOutcome:
        settings = self.context.settings
        with self.context.app.app_context():
            session = db.session
            try:
                return run_row_unit(
                    validated,
                    batch_id=batch_id,
                    config=config,
                    session=session,
                    locks=self.context.locks,
                    retry_limit=settings.store_retry_limit,
                    backoff_seconds=settings.store_retry_backoff,
                    clock=self.clock,
                )
            except StoreRetryExhausted:
                raise
            except Exception as exc:
                session.rollback()
                current_app.logger.exception(
                    "Row %s of batch %s failed unexpectedly",
                    validated.row_number,
                    batch_id,
                    extra={"importer_batch_id": batch_id, "importer_row": validated.row_number},
                )
                kind = categorize_store_error(exc)
                ErrorCollector(batch_id, session).record(
                    validated.row_number,
                    None,
                    kind,
                    f"Unexpected failure while importing row: {exc}",
                )
                return RowOutcome(
                    row_number=validated.row_number,
                    succeeded=False,
                    errors=1,
                    error_kinds={kind.value: 1},
                )

    def _collect(
        self,
        done: Iterable[Future],
        tracker: ProgressTracker,
        tallies: _BatchTallies,
    ) -> BatchFatalError | None:
        fatal: BatchFatalError | None = None
        for future in done:
            try:
                outcome = future.result()
            except StoreRetryExhausted as exc:
                fatal = fatal or exc
                continue
            except Exception:
                current_app.logger.exception("Row worker failed without recording an outcome")
                tracker.advance(ProgressDelta(failed=1, errors=1))
                continue
            tallies.absorb(outcome)
            tracker.advance(
                ProgressDelta(
                    succeeded=1 if outcome.succeeded else 0,
                    failed=0 if outcome.succeeded else 1,
                    errors=outcome.errors,
                    warnings=outcome.warnings,
                )
            )
        return fatal

    def _finish(
        self,
        batch_id: int,
        status: BatchStatus,
        tracker: ProgressTracker,
        tallies: _BatchTallies,
        started: float,
        *,
        error: BaseException | None = None,
    ) -> BatchResult:
        batch = self._get(batch_id)
        self.session.refresh(batch)
        duration = _time.perf_counter() - started
        batch.successful_records = tracker.succeeded
        batch.failed_records = tracker.failed
        batch.counts_json = {
            "rows": {
                "total": tracker.total,
                "processed": tracker.processed,
                "succeeded": tracker.succeeded,
                "failed": tracker.failed,
                "duplicates": tallies.duplicates,
                "empty_skipped": batch.empty_rows_skipped,
                "not_processed": max(0, tracker.total - tracker.processed),
            },
            "errors": {"error_count": tracker.errors, "warning_count": tracker.warnings},
        }
        batch.metrics_json = {
            "master_data": dict(tallies.master_data),
            "error_kinds": dict(tallies.error_kinds),
            "duration_seconds": round(duration, 3),
        }
        if error is not None:
            batch.error_summary = str(error)
        transition(batch, status, clock=self.clock)
        if status == BatchStatus.COMPLETED:
            message = f"Imported {tracker.succeeded} of {tracker.total} rows ({tracker.failed} failed)."
        else:
            message = f"Batch failed: {error}"
            current_app.logger.warning(
                "Import batch %s failed: %s",
                batch.id,
                error,
                extra={"importer_batch_id": batch.id, "importer_error": type(error).__name__},
            )
        tracker.finalize(status.value, message)

        record_batch_finished(
            status=status.value,
            duration_seconds=duration,
            succeeded=tracker.succeeded,
            failed=tracker.failed,
        )
        return BatchResult(
            batch_id=batch.id,
            status=status,
            total_rows=tracker.total,
            succeeded_rows=tracker.succeeded,
            failed_rows=tracker.failed,
            empty_rows_skipped=batch.empty_rows_skipped,
            duplicate_rows=tallies.duplicates,
            error_count=tracker.errors,
            warning_count=tracker.warnings,
            error_summary=batch.error_summary,
            duration_seconds=duration,
        )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def request_abort(self, batch_id: int) -> ImportBatch:
        """
        Flag a PENDING or PROCESSING batch for abort.

        The persisted flag fails a PENDING batch as soon as processing starts and
        is polled by a running batch. A batch running in this process is also
        signalled directly.
        """

        batch = self._get(batch_id)
        if batch.status not in (BatchStatus.PENDING, BatchStatus.PROCESSING):
            raise InvalidTransitionError(batch.id, batch.status, BatchStatus.FAILED)
        batch.abort_requested = True
        self.session.commit()
        self.context.aborts.request(batch.id)
        current_app.logger.info("Abort requested for import batch %s", batch.id, extra={"importer_batch_id": batch.id})
        return batch

    def cleanup(self, batch_id: int) -> ImportBatch:
        """Archive a finished batch and drop its stored upload. Rows are kept."""

        batch = self._get(batch_id)
        transition(batch, BatchStatus.CLEANED, clock=self.clock)
        params = dict(batch.ingest_params_json or {})
        removed = cleanup_upload(params.get("file_path"))
        params["file_removed"] = True
        batch.ingest_params_json = params
        self.session.commit()
        current_app.logger.info(
            "Cleaned import batch %s (upload removed: %s)",
            batch.id,
            removed,
            extra={"importer_batch_id": batch.id},
        )
        return batch

    def clean_failed(self, older_than: timedelta | datetime | None = None) -> list[int]:
        """Archive every FAILED batch, optionally only those finished before a cutoff."""

        cutoff: datetime | None
        if isinstance(older_than, timedelta):
            cutoff = self.clock() - older_than
        else:
            cutoff = as_utc(older_than)
        cleaned: list[int] = []
        failed = (
            self.session.query(ImportBatch)
            .filter(ImportBatch.status == BatchStatus.FAILED)
            .order_by(ImportBatch.id.asc())
            .all()
        )
        for batch in failed:
            finished = as_utc(batch.completed_at)
            if cutoff is not None and (finished is None or finished > cutoff):
                continue
            self.cleanup(batch.id)
            cleaned.append(batch.id)
        return cleaned

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, batch_id: int) -> ImportBatch:
        batch = self.session.get(ImportBatch, batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

    def _session_manager(self) -> ImportSessionManager:
        return ImportSessionManager(
            self.session,
            clock=self.clock,
            ttl=timedelta(minutes=self.context.settings.session_ttl_minutes),
        )

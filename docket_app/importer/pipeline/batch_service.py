"""
Service helpers for import batch history, filtering, and serialization.

The CLI ``history`` command and the JSON blueprint share these helpers so
the query logic stays in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from docket_app.importer.errors import BatchNotFound
from docket_app.importer.pipeline.filters import (
    DEFAULT_PAGE,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    coerce_datetime,
    coerce_enum,
    coerce_positive_int,
    resolve_sort_expression,
    total_pages,
)
from docket_app.importer.pipeline.progress import latest_progress, serialize_progress
from docket_app.models import BatchStatus, ImportBatch, as_utc, db, utc_now

DEFAULT_SORT = "-created_at"

VALID_SORT_FIELDS = {
    "id": ImportBatch.id,
    "batch_id": ImportBatch.id,
    "import_date": ImportBatch.import_date,
    "filename": ImportBatch.filename,
    "status": ImportBatch.status,
    "created_at": ImportBatch.created_at,
    "completed_at": ImportBatch.completed_at,
}


@dataclass(frozen=True)
class BatchFilters:
    """Canonical set of filter options applied to batch history queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[BatchStatus, ...] = field(default_factory=tuple)
    search: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    session_id: int | None = None

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str | BatchStatus] | None = None,
        search: str | None = None,
        created_from: str | datetime | None = None,
        created_to: str | datetime | None = None,
        session_id: int | str | None = None,
    ) -> "BatchFilters":
        resolved_page = coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(
            coerce_enum(value, BatchStatus, label="status") for value in (statuses or ()) if value not in (None, "")
        )
        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_from = coerce_datetime(created_from)
        resolved_to = coerce_datetime(created_to, end_of_day=True)
        if resolved_from and resolved_to and resolved_from > resolved_to:
            raise ValueError("created_from must be before created_to.")

        resolved_session = None
        if session_id not in (None, ""):
            resolved_session = coerce_positive_int(session_id, fallback=1)

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            search=resolved_search,
            created_from=resolved_from,
            created_to=resolved_to,
            session_id=resolved_session,
        )


@dataclass(slots=True)
class BatchSummary:
    id: int
    filename: str
    import_date: str | None
    status: str
    file_checksum: str
    total_records: int
    successful_records: int
    failed_records: int
    empty_rows_skipped: int
    duplicate_rows: int
    error_summary: str | None
    created_by: str | None
    session_id: int | None
    created_at: datetime | None
    processing_started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    can_cleanup: bool
    upload_present: bool
    master_data: Mapping[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "import_date": self.import_date,
            "status": self.status,
            "file_checksum": self.file_checksum,
            "total_records": self.total_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "empty_rows_skipped": self.empty_rows_skipped,
            "duplicate_rows": self.duplicate_rows,
            "error_summary": self.error_summary,
            "created_by": self.created_by,
            "session_id": self.session_id,
            "created_at": _isoformat(self.created_at),
            "processing_started_at": _isoformat(self.processing_started_at),
            "completed_at": _isoformat(self.completed_at),
            "duration_seconds": self.duration_seconds,
            "can_cleanup": self.can_cleanup,
            "upload_present": self.upload_present,
            "master_data": dict(self.master_data),
        }


@dataclass(slots=True)
class BatchListResult:
    items: list[BatchSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class BatchStats:
    total: int
    statuses: Mapping[str, int]
    rows_succeeded: int
    rows_failed: int


class ImportBatchService:
    """Facade for querying import batches with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_batches(self, filters: BatchFilters) -> BatchListResult:
        query = self._apply_filters(self.session.query(ImportBatch), filters)
        total = query.count()
        if total == 0:
            return BatchListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        batches = (
            query.order_by(resolve_sort_expression(filters.sort, VALID_SORT_FIELDS), ImportBatch.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        return BatchListResult(
            items=[self.summarize(batch) for batch in batches],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages(total, filters.page_size),
        )

    def get_batch(self, batch_id: int) -> ImportBatch:
        batch = self.session.get(ImportBatch, batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        return batch

    def get_stats(self, filters: BatchFilters | None = None) -> BatchStats:
        query = self._apply_filters(self.session.query(ImportBatch), filters or BatchFilters())
        statuses = {status.value: 0 for status in BatchStatus}
        for status, count in query.with_entities(ImportBatch.status, func.count()).group_by(ImportBatch.status):
            key = status.value if isinstance(status, BatchStatus) else str(status)
            statuses[key] = count
        succeeded, failed = query.with_entities(
            func.coalesce(func.sum(ImportBatch.successful_records), 0),
            func.coalesce(func.sum(ImportBatch.failed_records), 0),
        ).one()
        return BatchStats(
            total=sum(statuses.values()),
            statuses=statuses,
            rows_succeeded=int(succeeded or 0),
            rows_failed=int(failed or 0),
        )

    def summarize(self, batch: ImportBatch) -> BatchSummary:
        counts = batch.counts_json or {}
        metrics = batch.metrics_json or {}
        rows = counts.get("rows") if isinstance(counts.get("rows"), Mapping) else {}

        duration_seconds: float | None = None
        started = as_utc(batch.processing_started_at)
        if started is not None:
            finished = as_utc(batch.completed_at) or utc_now()
            duration_seconds = (finished - started).total_seconds()

        return BatchSummary(
            id=batch.id,
            filename=batch.filename,
            import_date=batch.import_date.isoformat() if batch.import_date else None,
            status=batch.status.value if isinstance(batch.status, BatchStatus) else str(batch.status),
            file_checksum=batch.file_checksum,
            total_records=batch.total_records,
            successful_records=batch.successful_records,
            failed_records=batch.failed_records,
            empty_rows_skipped=batch.empty_rows_skipped,
            duplicate_rows=int(rows.get("duplicates", 0) or 0),
            error_summary=batch.error_summary,
            created_by=batch.created_by,
            session_id=batch.session_id,
            created_at=batch.created_at,
            processing_started_at=batch.processing_started_at,
            completed_at=batch.completed_at,
            duration_seconds=duration_seconds,
            can_cleanup=batch.status in (BatchStatus.COMPLETED, BatchStatus.FAILED),
            upload_present=_upload_present(batch),
            master_data=metrics.get("master_data") or {},
        )

    def _apply_filters(self, query, filters: BatchFilters):
        predicates = []
        if filters.statuses:
            predicates.append(ImportBatch.status.in_(filters.statuses))
        if filters.created_from:
            predicates.append(ImportBatch.created_at >= filters.created_from)
        if filters.created_to:
            predicates.append(ImportBatch.created_at <= filters.created_to)
        if filters.session_id is not None:
            predicates.append(ImportBatch.session_id == filters.session_id)
        if filters.search:
            predicates.append(_build_search_predicate(filters.search))
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def serialize_batch(batch: ImportBatch, *, include_progress: bool = False, session: Session | None = None) -> dict:
    payload = ImportBatchService(session).summarize(batch).as_dict()
    payload["config"] = batch.user_config or {}
    payload["counts"] = batch.counts_json or {}
    payload["metrics"] = batch.metrics_json or {}
    payload["validation_warnings"] = batch.validation_warnings or {}
    payload["abort_requested"] = bool(batch.abort_requested)
    payload["estimated_completion_at"] = _isoformat(batch.estimated_completion_at)
    payload["cleaned_at"] = _isoformat(batch.cleaned_at)
    payload["cleaned_from_status"] = batch.cleaned_from_status.value if batch.cleaned_from_status else None
    if include_progress:
        payload["progress"] = serialize_progress(latest_progress(batch.id, session))
    return payload


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _upload_present(batch: ImportBatch) -> bool:
    file_path = (batch.ingest_params_json or {}).get("file_path")
    if not file_path:
        return False
    try:
        return Path(file_path).exists()
    except (TypeError, ValueError):
        return False


def _build_search_predicate(term: str):
    """Search by batch id exact match or filename/checksum partial matches."""
    like_pattern = f"%{term.lower()}%"
    predicates = [
        func.lower(ImportBatch.filename).like(like_pattern),
        func.lower(ImportBatch.file_checksum).like(like_pattern),
    ]
    if term.isdigit():
        predicates.append(ImportBatch.id == int(term))
    return or_(*predicates)

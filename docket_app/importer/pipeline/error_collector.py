"""
Error collection and the error-record query surface.

``ErrorCollector`` is the only writer of ``ImportErrorRecord`` rows. Records are
append-only: identical problems on different rows (or repeated on the same
row) are stored as separate records.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from docket_app.importer.errors import ErrorRecordNotFound
from docket_app.importer.pipeline.filters import (
    DEFAULT_PAGE,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    coerce_enum,
    coerce_optional_bool,
    coerce_positive_int,
    resolve_sort_expression,
    total_pages,
)
from docket_app.importer.pipeline.validation import ErrorKind, RowFinding
from docket_app.models import Clock, ErrorSeverity, ImportErrorRecord, db, utc_now

DEFAULT_SORT = "row_number"

VALID_SORT_FIELDS = {
    "id": ImportErrorRecord.id,
    "row_number": ImportErrorRecord.row_number,
    "severity": ImportErrorRecord.severity,
    "error_kind": ImportErrorRecord.error_kind,
    "created_at": ImportErrorRecord.created_at,
}


def categorize_store_error(exc: BaseException) -> ErrorKind:
    """Map a store exception to the error kind recorded against the row."""

    if isinstance(exc, (OperationalError, DisconnectionError, PoolTimeoutError)):
        return ErrorKind.DATABASE_CONNECTION
    if isinstance(exc, IntegrityError):
        message = str(getattr(exc, "orig", exc)).lower()
        if "foreign key" in message:
            return ErrorKind.FOREIGN_KEY
        if "unique" in message or "duplicate" in message:
            return ErrorKind.DUPLICATE_KEY
        return ErrorKind.DATABASE
    if isinstance(exc, SQLAlchemyError):
        return ErrorKind.DATABASE
    return ErrorKind.SYSTEM


class ErrorCollector:
    """Append structured diagnostics for one batch."""

    def __init__(self, batch_id: int, session: Session | None = None) -> None:
        self.batch_id = batch_id
        self.session = session or db.session

    def record(
        self,
        row_number: int,
        column_name: str | None,
        error_kind: str | ErrorKind,
        message: str,
        raw_value: str | None = None,
        suggested_fix: str | None = None,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        *,
        commit: bool = True,
    ) -> ImportErrorRecord:
        record = ImportErrorRecord(
            batch_id=self.batch_id,
            row_number=row_number,
            column_name=column_name,
            error_kind=str(getattr(error_kind, "value", error_kind)),
            message=message,
            raw_value=raw_value,
            suggested_fix=suggested_fix,
            severity=severity,
            is_resolved=False,
        )
        self.session.add(record)
        if commit:
            self.session.commit()
        return record

    def record_findings(
        self,
        row_number: int,
        findings: Iterable[RowFinding],
        *,
        commit: bool = True,
    ) -> list[ImportErrorRecord]:
        """Record every finding for a row; with ``commit`` they land together."""

        records = [
            self.record(
                row_number,
                finding.column,
                finding.error_kind,
                finding.message,
                finding.raw_value,
                finding.suggested_fix,
                finding.severity,
                commit=False,
            )
            for finding in findings
        ]
        if commit and records:
            self.session.commit()
        return records


# ---------------------------------------------------------------------------
# Query surface
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorFilters:
    """Canonical filter options for error-record queries."""

    batch_ids: tuple[int, ...] = field(default_factory=tuple)
    severities: tuple[ErrorSeverity, ...] = field(default_factory=tuple)
    error_kinds: tuple[str, ...] = field(default_factory=tuple)
    resolved: bool | None = None
    row_number: int | None = None
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT

    @classmethod
    def coerce(
        cls,
        *,
        batch_ids: Iterable[int | str] | None = None,
        severities: Iterable[str | ErrorSeverity] | None = None,
        error_kinds: Iterable[str] | None = None,
        resolved: str | bool | None = None,
        row_number: int | str | None = None,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
    ) -> "ErrorFilters":
        resolved_batch_ids: list[int] = []
        for value in batch_ids or ():
            if value in (None, ""):
                continue
            try:
                resolved_batch_ids.append(int(value))
            except (TypeError, ValueError):
                raise ValueError(f"Unsupported batch id filter '{value}'.") from None

        resolved_severities = tuple(
            coerce_enum(value, ErrorSeverity, label="severity") for value in (severities or ()) if value not in (None, "")
        )
        resolved_kinds = tuple(sorted({kind.strip().lower() for kind in (error_kinds or ()) if kind and kind.strip()}))

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_row = None
        if row_number not in (None, ""):
            resolved_row = coerce_positive_int(row_number, fallback=1)

        return cls(
            batch_ids=tuple(resolved_batch_ids),
            severities=resolved_severities,
            error_kinds=resolved_kinds,
            resolved=coerce_optional_bool(resolved),
            row_number=resolved_row,
            page=coerce_positive_int(page, fallback=DEFAULT_PAGE),
            page_size=min(coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE),
            sort=resolved_sort,
        )


@dataclass(slots=True)
class ErrorListResult:
    items: list[ImportErrorRecord]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class ErrorStats:
    total: int
    unresolved: int
    by_severity: Mapping[str, int]
    by_kind: Mapping[str, int]


class ErrorRecordService:
    """Facade for querying and resolving error records."""

    def __init__(self, session: Session | None = None, *, clock: Clock = utc_now) -> None:
        self.session: Session = session or db.session
        self.clock = clock

    def list_errors(self, filters: ErrorFilters) -> ErrorListResult:
        query = self._apply_filters(self.session.query(ImportErrorRecord), filters)
        total = query.count()
        if total == 0:
            return ErrorListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)
        items = (
            query.order_by(resolve_sort_expression(filters.sort, VALID_SORT_FIELDS), ImportErrorRecord.id.asc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        return ErrorListResult(
            items=items,
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages(total, filters.page_size),
        )

    def get_error(self, error_id: int) -> ImportErrorRecord:
        record = self.session.get(ImportErrorRecord, error_id)
        if record is None:
            raise ErrorRecordNotFound(f"Error record {error_id} not found.")
        return record

    def stats(self, filters: ErrorFilters) -> ErrorStats:
        query = self._apply_filters(self.session.query(ImportErrorRecord), filters)
        by_severity = {
            (severity.value if isinstance(severity, ErrorSeverity) else str(severity)): count
            for severity, count in query.with_entities(ImportErrorRecord.severity, func.count())
            .group_by(ImportErrorRecord.severity)
            .all()
        }
        by_kind = {
            kind: count
            for kind, count in query.with_entities(ImportErrorRecord.error_kind, func.count())
            .group_by(ImportErrorRecord.error_kind)
            .all()
        }
        unresolved = query.filter(ImportErrorRecord.is_resolved.is_(False)).count()
        return ErrorStats(
            total=sum(by_severity.values()),
            unresolved=unresolved,
            by_severity=by_severity,
            by_kind=by_kind,
        )

    def mark_resolved(self, error_id: int, resolved_by: str | None = None) -> ImportErrorRecord:
        """Flag one record as resolved. Resolving again changes nothing."""

        record = self.get_error(error_id)
        if record.is_resolved:
            return record
        record.is_resolved = True
        record.resolved_at = self.clock()
        record.resolved_by = resolved_by
        self.session.commit()
        return record

    def _apply_filters(self, query, filters: ErrorFilters):
        predicates = []
        if filters.batch_ids:
            predicates.append(ImportErrorRecord.batch_id.in_(filters.batch_ids))
        if filters.severities:
            predicates.append(ImportErrorRecord.severity.in_(filters.severities))
        if filters.error_kinds:
            predicates.append(ImportErrorRecord.error_kind.in_(filters.error_kinds))
        if filters.resolved is not None:
            predicates.append(ImportErrorRecord.is_resolved.is_(filters.resolved))
        if filters.row_number is not None:
            predicates.append(ImportErrorRecord.row_number == filters.row_number)
        if predicates:
            query = query.filter(and_(*predicates))
        return query


def serialize_error(record: ImportErrorRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "batch_id": record.batch_id,
        "row_number": record.row_number,
        "column_name": record.column_name,
        "error_kind": record.error_kind,
        "message": record.message,
        "raw_value": record.raw_value,
        "suggested_fix": record.suggested_fix,
        "severity": record.severity.value if isinstance(record.severity, ErrorSeverity) else str(record.severity),
        "is_resolved": record.is_resolved,
        "resolved_at": record.resolved_at.isoformat() if record.resolved_at else None,
        "resolved_by": record.resolved_by,
    }

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from docket_app.importer.errors import ErrorRecordNotFound
from docket_app.importer.pipeline.error_collector import (
    ErrorCollector,
    ErrorFilters,
    ErrorRecordService,
    categorize_store_error,
    serialize_error,
)
from docket_app.importer.pipeline.validation import ErrorKind, RowFinding
from docket_app.models import ErrorSeverity, ImportErrorRecord, db


@pytest.fixture
def seeded_errors(batch_factory):
    batch = batch_factory()
    collector = ErrorCollector(batch.id)
    collector.record(2, "outcome", ErrorKind.REQUIRED_FIELD, "Outcome is required.")
    collector.record(2, "outcome", ErrorKind.REQUIRED_FIELD, "Outcome is required.")
    collector.record(
        5,
        "case_status",
        ErrorKind.UNKNOWN_ENUM,
        "Unknown case status 'Actve'.",
        raw_value="Actve",
        suggested_fix="ACTIVE",
        severity=ErrorSeverity.WARNING,
    )
    collector.record_findings(
        7,
        [RowFinding(column=None, error_kind="duplicate_activity", message="Already applied.", severity=ErrorSeverity.INFO)],
    )
    return batch


def test_collector_appends_every_record(seeded_errors):
    records = db.session.query(ImportErrorRecord).filter_by(batch_id=seeded_errors.id).all()

    assert len(records) == 4
    assert [record.row_number for record in records].count(2) == 2
    assert all(record.is_resolved is False for record in records)


def test_list_errors_filters_and_paginates(app, seeded_errors):
    service = ErrorRecordService()

    warnings = service.list_errors(ErrorFilters.coerce(batch_ids=[seeded_errors.id], severities=["WARNING"]))
    assert warnings.total == 1
    assert warnings.items[0].suggested_fix == "ACTIVE"

    page = service.list_errors(ErrorFilters.coerce(page="2", page_size="3", sort="-row_number"))
    assert page.total == 4
    assert page.total_pages == 2
    assert [record.row_number for record in page.items] == [2]

    by_row = service.list_errors(ErrorFilters.coerce(row_number="2", error_kinds=["Required_Field "]))
    assert by_row.total == 2

    empty = service.list_errors(ErrorFilters.coerce(batch_ids=[seeded_errors.id + 1]))
    assert empty.items == []
    assert empty.total_pages == 0


def test_stats_group_by_severity_and_kind(app, seeded_errors):
    stats = ErrorRecordService().stats(ErrorFilters.coerce(batch_ids=[seeded_errors.id]))

    assert stats.total == 4
    assert stats.unresolved == 4
    assert stats.by_severity == {"error": 2, "warning": 1, "info": 1}
    assert stats.by_kind["required_field"] == 2


def test_mark_resolved_is_idempotent(app, clock, seeded_errors):
    service = ErrorRecordService(clock=clock)
    record = service.list_errors(ErrorFilters.coerce(batch_ids=[seeded_errors.id])).items[0]

    resolved = service.mark_resolved(record.id, resolved_by="clerk")
    first_resolved_at = resolved.resolved_at
    clock.advance(hours=1)
    again = service.mark_resolved(record.id, resolved_by="someone-else")

    assert again.is_resolved is True
    assert again.resolved_by == "clerk"
    assert again.resolved_at == first_resolved_at
    assert service.stats(ErrorFilters.coerce(resolved="false")).total == 3
    assert serialize_error(again)["is_resolved"] is True


def test_unknown_error_record_raises(app):
    with pytest.raises(ErrorRecordNotFound):
        ErrorRecordService().get_error(404)


@pytest.mark.parametrize(
    "options",
    [
        {"severities": ["fatal"]},
        {"sort": "message"},
        {"batch_ids": ["abc"]},
        {"resolved": "maybe"},
        {"page": "-1"},
    ],
)
def test_invalid_filters_are_rejected(app, options):
    with pytest.raises(ValueError):
        ErrorFilters.coerce(**options)


def test_store_errors_are_categorized():
    unique = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: cases.case_number"))
    foreign = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))
    locked = OperationalError("UPDATE", {}, Exception("database is locked"))

    assert categorize_store_error(unique) == ErrorKind.DUPLICATE_KEY
    assert categorize_store_error(foreign) == ErrorKind.FOREIGN_KEY
    assert categorize_store_error(locked) == ErrorKind.DATABASE_CONNECTION
    assert categorize_store_error(SQLAlchemyError("boom")) == ErrorKind.DATABASE
    assert categorize_store_error(RuntimeError("boom")) == ErrorKind.SYSTEM

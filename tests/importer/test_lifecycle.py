import threading
from datetime import date, timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from docket_app.importer.context import ImportContext
from docket_app.importer.errors import InvalidTransitionError, SessionExpiredError
from docket_app.importer.pipeline import lifecycle as lifecycle_module
from docket_app.importer.pipeline.extraction import judge_match_key
from docket_app.importer.pipeline.lifecycle import BatchLifecycleController, transition
from docket_app.importer.pipeline.progress import latest_progress
from docket_app.importer.pipeline.resolver import EntityResolver
from docket_app.importer.pipeline.sessions import ImportSessionManager
from docket_app.importer.pipeline.upsert import CaseUpsertEngine
from docket_app.models import (
    BatchStatus,
    Case,
    CaseActivity,
    ErrorSeverity,
    ImportBatch,
    ImportErrorRecord,
    Judge,
    ValidationPreview,
    db,
)


def _reload(batch_id):
    db.session.expire_all()
    return db.session.get(ImportBatch, batch_id)


def _ten_rows(row_factory, *, unknown_courts=()):
    rows = []
    for index in range(1, 11):
        court = "Nowhere Magistrates Court" if index in unknown_courts else "Milimani High Court"
        rows.append(row_factory(caseid_no=f"E{index:03d}", court=court))
    return rows


def test_process_imports_valid_rows_and_records_row_failures(controller, batch_factory, reference_data, row_factory):
    batch = batch_factory(_ten_rows(row_factory, unknown_courts=(4, 9)), config={"auto_create_references": False})

    result = controller.process(batch.id)

    assert result.status == BatchStatus.COMPLETED
    assert result.total_rows == 10
    assert result.succeeded_rows == 8
    assert result.failed_rows == 2

    batch = _reload(batch.id)
    assert batch.status == BatchStatus.COMPLETED
    assert batch.successful_records == 8
    assert batch.failed_records == 2
    assert batch.total_records == 10
    assert batch.processing_started_at is not None
    assert batch.completed_at is not None
    assert batch.counts_json["rows"]["processed"] == 10
    assert batch.counts_json["rows"]["not_processed"] == 0
    assert batch.metrics_json["master_data"]["existing_courts"] == 8
    assert batch.metrics_json["master_data"]["new_courts"] == 0

    errors = db.session.query(ImportErrorRecord).filter_by(batch_id=batch.id).order_by(ImportErrorRecord.row_number).all()
    assert [(error.row_number, error.column_name, error.severity) for error in errors] == [
        (4, "court", ErrorSeverity.ERROR),
        (9, "court", ErrorSeverity.ERROR),
    ]
    assert all(error.error_kind == "unresolved_reference" for error in errors)
    assert db.session.query(Case).count() == 8
    assert db.session.query(CaseActivity).filter_by(batch_id=batch.id).count() == 8

    snapshot = latest_progress(batch.id)
    assert snapshot.step == "completed"
    assert snapshot.percentage == 100
    assert snapshot.processed_rows == 10
    assert snapshot.succeeded_rows == 8
    assert snapshot.failed_rows == 2
    assert snapshot.error_count == 2


def test_rows_for_the_same_case_share_one_case(controller, batch_factory, reference_data, row_factory):
    rows = [
        row_factory(date_dd="12", next_dd="19", next_mon="Mar"),
        row_factory(date_dd="19", outcome="Hearing proceeded"),
        row_factory(caseid_no="E002"),
    ]
    batch = batch_factory(rows)

    result = controller.process(batch.id)

    assert result.succeeded_rows == 3
    case = db.session.query(Case).filter_by(case_number="HCCC-E001").one()
    assert case.total_activities == 2
    assert case.last_activity_date == date(2024, 3, 19)
    assert db.session.query(Case).count() == 2


def test_auto_create_builds_missing_reference_data(controller, batch_factory, row_factory):
    rows = [row_factory(caseid_no=f"E{index:03d}", court="Kibera Law Courts") for index in range(1, 6)]
    batch = batch_factory(rows)

    result = controller.process(batch.id)

    assert result.status == BatchStatus.COMPLETED
    assert result.succeeded_rows == 5
    master_data = _reload(batch.id).metrics_json["master_data"]
    assert master_data["new_courts"] >= 1
    assert master_data["new_courts"] + master_data["existing_courts"] == 5


def test_reimporting_rows_in_a_new_file_does_not_duplicate_activities(
    controller, batch_factory, reference_data, row_factory
):
    first_batch = batch_factory([row_factory()])
    first = controller.process(first_batch.id)
    second_batch = batch_factory([row_factory(), row_factory(caseid_no="E002")], filename="returns-2.csv")

    second = controller.process(second_batch.id)

    assert first.succeeded_rows == 1
    assert second.succeeded_rows == 2
    assert second.duplicate_rows == 1
    case = db.session.query(Case).filter_by(case_number="HCCC-E001").one()
    assert case.total_activities == 1
    info = db.session.query(ImportErrorRecord).filter_by(batch_id=second_batch.id).one()
    assert info.severity == ErrorSeverity.INFO
    assert info.error_kind == "duplicate_activity"


def test_empty_rows_are_counted_separately(controller, batch_factory, reference_data, row_factory):
    blank = {key: "" for key in row_factory()}
    batch = batch_factory([row_factory(), blank, row_factory(caseid_no="E002")])

    result = controller.process(batch.id)

    assert result.total_rows == 2
    assert result.empty_rows_skipped == 1
    assert _reload(batch.id).empty_rows_skipped == 1


def test_abort_before_processing_fails_batch(controller, batch_factory, reference_data):
    batch = batch_factory()

    controller.request_abort(batch.id)
    result = controller.process(batch.id)

    assert result.status == BatchStatus.FAILED
    batch = _reload(batch.id)
    assert batch.status == BatchStatus.FAILED
    assert "aborted" in batch.error_summary
    assert db.session.query(CaseActivity).count() == 0
    assert latest_progress(batch.id).step == "failed"


def test_abort_during_processing_keeps_committed_rows(
    controller, batch_factory, reference_data, row_factory, monkeypatch
):
    batch = batch_factory([row_factory(caseid_no=f"E{index:03d}") for index in range(1, 21)])
    original = lifecycle_module.run_row_unit
    aborts = controller.context.aborts

    def _abort_after_first_row(validated, **kwargs):
        outcome = original(validated, **kwargs)
        aborts.request(kwargs["batch_id"])
        return outcome

    monkeypatch.setattr(lifecycle_module, "run_row_unit", _abort_after_first_row)

    result = controller.process(batch.id)

    assert result.status == BatchStatus.FAILED
    assert 1 <= result.succeeded_rows < 20
    batch = _reload(batch.id)
    assert batch.counts_json["rows"]["not_processed"] == 20 - result.succeeded_rows - result.failed_rows
    assert db.session.query(CaseActivity).filter_by(batch_id=batch.id).count() == result.succeeded_rows


def test_missing_upload_fails_batch(controller, batch_factory):
    batch = batch_factory()
    Path(batch.ingest_params_json["file_path"]).unlink()

    result = controller.process(batch.id)

    assert result.status == BatchStatus.FAILED
    assert "could not be read" in _reload(batch.id).error_summary


def test_unusable_header_fails_batch(controller, batch_factory):
    batch = batch_factory(b"foo,bar\n1,2\n")

    result = controller.process(batch.id)

    assert result.status == BatchStatus.FAILED
    assert "Missing required columns" in _reload(batch.id).error_summary


def test_exhausted_store_retries_fail_the_batch(controller, batch_factory, reference_data, monkeypatch):
    batch = batch_factory()

    def _locked(*args, **kwargs):
        raise OperationalError("UPDATE cases", {}, Exception("database is locked"))

    monkeypatch.setattr(CaseUpsertEngine, "apply", _locked)

    result = controller.process(batch.id)

    assert result.status == BatchStatus.FAILED
    assert "still failing" in _reload(batch.id).error_summary


def test_unexpected_row_exception_fails_only_that_row(controller, batch_factory, reference_data, monkeypatch):
    batch = batch_factory()

    def _boom(self, record):
        raise RuntimeError("resolver exploded")

    monkeypatch.setattr(EntityResolver, "resolve", _boom)

    result = controller.process(batch.id)

    assert result.status == BatchStatus.COMPLETED
    assert result.failed_rows == 1
    error = db.session.query(ImportErrorRecord).filter_by(batch_id=batch.id).one()
    assert error.error_kind == "system"
    assert "resolver exploded" in error.message


def test_process_requires_pending_batch(controller, batch_factory, reference_data):
    batch = batch_factory()
    controller.process(batch.id)

    with pytest.raises(InvalidTransitionError):
        controller.process(batch.id)


def test_cleanup_archives_finished_batch_and_removes_upload(controller, batch_factory, reference_data):
    batch = batch_factory()
    stored = Path(batch.ingest_params_json["file_path"])
    controller.process(batch.id)

    cleaned = controller.cleanup(batch.id)

    assert cleaned.status == BatchStatus.CLEANED
    assert cleaned.cleaned_from_status == BatchStatus.COMPLETED
    assert cleaned.cleaned_at is not None
    assert cleaned.ingest_params_json["file_removed"] is True
    assert not stored.exists()
    assert db.session.query(CaseActivity).count() == 1

    with pytest.raises(InvalidTransitionError):
        controller.cleanup(batch.id)


def test_cleanup_of_pending_batch_is_rejected(controller, batch_factory):
    batch = batch_factory()

    with pytest.raises(InvalidTransitionError):
        controller.cleanup(batch.id)


def test_abort_of_finished_batch_is_rejected(controller, batch_factory, reference_data):
    batch = batch_factory()
    controller.process(batch.id)

    with pytest.raises(InvalidTransitionError):
        controller.request_abort(batch.id)


def test_clean_failed_honours_cutoff(controller, batch_factory, clock, row_factory):
    old = batch_factory([row_factory(caseid_no="E001")])
    controller.request_abort(old.id)
    controller.process(old.id)
    clock.advance(hours=48)
    recent = batch_factory([row_factory(caseid_no="E002")])
    controller.request_abort(recent.id)
    controller.process(recent.id)

    cleaned = controller.clean_failed(timedelta(hours=24))

    assert cleaned == [old.id]
    assert _reload(recent.id).status == BatchStatus.FAILED
    assert controller.clean_failed() == [recent.id]


def test_transition_table_is_strict(app, clock):
    batch = ImportBatch(id=99, status=BatchStatus.PENDING)

    with pytest.raises(InvalidTransitionError):
        transition(batch, BatchStatus.COMPLETED, clock=clock)

    transition(batch, BatchStatus.PROCESSING, clock=clock)
    assert batch.processing_started_at == clock()
    transition(batch, BatchStatus.FAILED, clock=clock)
    assert batch.completed_at == clock()
    transition(batch, BatchStatus.CLEANED, clock=clock)
    assert batch.cleaned_from_status == BatchStatus.FAILED

    with pytest.raises(InvalidTransitionError):
        transition(batch, BatchStatus.PENDING, clock=clock)


def test_intake_rejects_expired_session(controller, clock, csv_factory, row_factory):
    session = ImportSessionManager(clock=clock, ttl=timedelta(minutes=10)).open("clerk-1")
    clock.advance(minutes=11)

    with pytest.raises(SessionExpiredError):
        controller.intake(csv_factory([row_factory()]), filename="returns.csv", session_id=session.id)
    assert db.session.query(ImportBatch).count() == 0


def test_dry_run_intake_returns_preview_without_batch(controller, csv_factory, row_factory):
    data = csv_factory([row_factory(), row_factory(outcome="")])

    result = controller.intake(data, filename="returns.csv", config={"dryRun": True})

    assert isinstance(result, ValidationPreview)
    assert result.valid_rows == 1
    assert result.invalid_rows == 1
    assert db.session.query(ImportBatch).count() == 0
    assert db.session.query(ValidationPreview).count() == 1


def test_abort_of_pending_batch_leaves_no_in_process_signal(controller, batch_factory, reference_data, row_factory):
    aborted = batch_factory()
    untouched = batch_factory([row_factory(caseid_no="E002")], filename="other.csv")

    controller.request_abort(aborted.id)

    assert len(controller.context.aborts) == 0
    assert controller.process(aborted.id).status == BatchStatus.FAILED
    assert len(controller.context.aborts) == 0
    assert _reload(untouched.id).status == BatchStatus.PENDING


def test_concurrent_rows_share_one_stub_per_new_judge(app, clock, batch_factory, reference_data, row_factory):
    context = ImportContext.for_app(app, clock=clock, max_workers=8, progress_flush_rows=10)
    rows = [row_factory(caseid_no=f"E{index:03d}", judge_1="Hon. Brand New Judge") for index in range(1, 41)]
    batch = batch_factory(rows)

    result = BatchLifecycleController(context).process(batch.id)

    assert result.status == BatchStatus.COMPLETED
    assert result.succeeded_rows == 40
    db.session.expire_all()
    stubs = db.session.query(Judge).filter_by(normalized_name=judge_match_key("Brand New Judge")).all()
    assert len(stubs) == 1
    assert stubs[0].is_active is False
    assert db.session.query(CaseActivity).filter_by(primary_judge_id=stubs[0].id).count() == 40
    assert db.session.query(ImportErrorRecord).filter_by(error_kind="ambiguous_judge").count() == 0
    assert _reload(batch.id).metrics_json["master_data"]["new_judges"] == 1


def test_concurrent_batches_with_the_same_case_create_one_case(
    app, import_context, batch_factory, reference_data, row_factory
):
    first = batch_factory([row_factory(date_dd="5"), row_factory(caseid_no="E010")])
    second = batch_factory([row_factory(date_dd="6"), row_factory(caseid_no="E020")], filename="returns-2.csv")
    batch_ids = [first.id, second.id]
    start = threading.Barrier(len(batch_ids))
    results = {}

    def _process(batch_id):
        with app.app_context():
            start.wait()
            results[batch_id] = BatchLifecycleController(import_context).process(batch_id)

    threads = [threading.Thread(target=_process, args=(batch_id,)) for batch_id in batch_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(results) == sorted(batch_ids)
    assert all(result.status == BatchStatus.COMPLETED for result in results.values())
    assert sum(result.succeeded_rows for result in results.values()) == 4
    db.session.expire_all()
    case = db.session.query(Case).filter_by(case_number="HCCC-E001").one()
    assert case.total_activities == 2
    assert case.last_activity_date == date(2024, 3, 6)
    assert db.session.query(Case).count() == 3

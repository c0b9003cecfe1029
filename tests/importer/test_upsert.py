from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from docket_app.importer.context import CaseLockRegistry
from docket_app.importer.errors import StoreRetryExhausted
from docket_app.importer.pipeline.options import BatchConfig
from docket_app.importer.pipeline.upsert import CaseUpsertEngine, activity_fingerprint, run_row_unit
from docket_app.importer.pipeline.validation import RowValidator
from docket_app.models import (
    Case,
    CaseActivity,
    CaseJudgeAssignment,
    ErrorSeverity,
    ImportErrorRecord,
    Judge,
    db,
)


@pytest.fixture
def batch(batch_factory, reference_data):
    return batch_factory()


@pytest.fixture
def run_row(batch, clock, raw_row_factory):
    locks = CaseLockRegistry()
    validator = RowValidator(clock)

    def _run(row_number=1, *, retry_limit=3, config=None, **overrides):
        validated = validator.validate(raw_row_factory(row_number, **overrides))
        return run_row_unit(
            validated,
            batch_id=batch.id,
            config=config or BatchConfig(),
            session=db.session,
            locks=locks,
            retry_limit=retry_limit,
            clock=clock,
        )

    return _run


def test_first_row_creates_case_activity_and_primary_assignment(run_row, batch):
    outcome = run_row()

    assert outcome.succeeded
    assert not outcome.duplicate
    case = db.session.query(Case).one()
    assert case.case_number == "HCCC-E001"
    assert case.total_activities == 1
    assert case.last_activity_date == date(2024, 3, 12)
    activity = db.session.query(CaseActivity).one()
    assert activity.batch_id == batch.id
    assert activity.row_number == 1
    assert activity.next_hearing_date == date(2024, 4, 20)
    assignment = db.session.query(CaseJudgeAssignment).one()
    assert assignment.case_id == case.id
    assert assignment.is_primary is True


def test_identical_row_is_a_duplicate_with_info_record(run_row, batch):
    run_row(1)

    outcome = run_row(2)

    assert outcome.succeeded
    assert outcome.duplicate
    assert db.session.query(CaseActivity).count() == 1
    assert db.session.query(Case).one().total_activities == 1
    info = db.session.query(ImportErrorRecord).filter_by(batch_id=batch.id).one()
    assert info.row_number == 2
    assert info.severity == ErrorSeverity.INFO
    assert info.error_kind == "duplicate_activity"


def test_same_day_rows_with_different_outcomes_are_separate_activities(run_row):
    first = run_row(1)
    second = run_row(2, outcome="Ruling delivered")

    assert first.succeeded and second.succeeded
    assert not second.duplicate
    activities = db.session.query(CaseActivity).order_by(CaseActivity.row_number).all()
    assert [activity.outcome for activity in activities] == ["Adjourned", "Ruling delivered"]
    assert activities[0].row_fingerprint != activities[1].row_fingerprint
    assert db.session.query(Case).one().total_activities == 2


def test_activity_fingerprint_covers_row_content(clock, raw_row_factory):
    validator = RowValidator(clock)
    base = validator.validate(raw_row_factory(1)).record
    renumbered = validator.validate(raw_row_factory(7)).record
    adjourned = validator.validate(raw_row_factory(1, reason_adj="Judge on leave")).record

    assert activity_fingerprint(base, 1) == activity_fingerprint(renumbered, 1)
    assert activity_fingerprint(base, 1) != activity_fingerprint(base, 2)
    assert activity_fingerprint(base, 1) != activity_fingerprint(adjourned, 1)


def test_older_activity_does_not_move_last_activity_date_back(run_row):
    run_row(1)
    run_row(2, date_dd="2", next_dd="5", next_mon="Mar")

    case = db.session.query(Case).one()
    assert case.total_activities == 2
    assert case.last_activity_date == date(2024, 3, 12)


def test_new_primary_judge_demotes_previous_primary(run_row):
    run_row(1)
    run_row(2, date_dd="19", judge_1="Hon. Peter Otieno", judge_2="Hon. Jane Mwangi")

    assignments = db.session.query(CaseJudgeAssignment).all()
    primaries = [assignment for assignment in assignments if assignment.is_primary]
    assert len(assignments) == 2
    assert len(primaries) == 1
    assert db.session.get(Judge, primaries[0].judge_id).full_name == "Peter Otieno"


def test_invalid_row_records_its_errors(run_row, batch):
    outcome = run_row(3, outcome="", custody="-2")

    assert not outcome.succeeded
    assert outcome.errors == 2
    records = db.session.query(ImportErrorRecord).filter_by(batch_id=batch.id, row_number=3).all()
    assert sorted(record.column_name for record in records) == ["custody", "outcome"]
    assert db.session.query(Case).count() == 0


def test_exhausted_integrity_conflicts_fail_the_row(run_row, batch, monkeypatch):
    calls = []

    def _conflict(self, *args, **kwargs):
        calls.append(1)
        raise IntegrityError("INSERT INTO cases", {}, Exception("UNIQUE constraint failed: cases.case_number"))

    monkeypatch.setattr(CaseUpsertEngine, "apply", _conflict)

    outcome = run_row(retry_limit=2)

    assert len(calls) == 2
    assert not outcome.succeeded
    record = db.session.query(ImportErrorRecord).filter_by(batch_id=batch.id).one()
    assert record.error_kind == "duplicate_key"
    assert "after 2 attempts" in record.message


def test_exhausted_operational_errors_escape(run_row, monkeypatch):
    def _locked(self, *args, **kwargs):
        raise OperationalError("UPDATE cases", {}, Exception("database is locked"))

    monkeypatch.setattr(CaseUpsertEngine, "apply", _locked)

    with pytest.raises(StoreRetryExhausted) as excinfo:
        run_row(retry_limit=2)

    assert excinfo.value.attempts == 2
    assert excinfo.value.row_number == 1


def test_case_lock_registry_drops_released_keys():
    locks = CaseLockRegistry()

    with locks.hold(("HCCC-E001", "Milimani High Court")):
        assert len(locks) == 1

    assert len(locks) == 0

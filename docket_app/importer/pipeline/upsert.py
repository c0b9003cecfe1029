"""
Case/activity upsert and the per-row unit of work.

A row commits as one transaction: reference data created during resolution,
the case (when new), the activity, judge assignments, counter updates and the
row's warnings. ``CaseLockRegistry`` serializes rows for the same case and
the creation of each new judge stub. The counter update is also a single SQL
expression so a second process cannot lose an increment.
"""

from __future__ import annotations

import hashlib
import json
import time as _time
from contextlib import ExitStack
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import case as sql_case
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from docket_app.importer.context import CaseLockRegistry
from docket_app.importer.errors import StoreRetryExhausted
from docket_app.importer.metrics import record_row_duration
from docket_app.importer.pipeline.error_collector import ErrorCollector, categorize_store_error
from docket_app.importer.pipeline.options import BatchConfig
from docket_app.importer.pipeline.resolver import EntityResolver, Resolution, empty_master_data
from docket_app.importer.pipeline.validation import CaseReturnRecord, ErrorKind, RowFinding, ValidatedRow
from docket_app.importer.utils import normalize_payload
from docket_app.models import Case, CaseActivity, CaseJudgeAssignment, Clock, ErrorSeverity, utc_now


def activity_fingerprint(record: CaseReturnRecord, primary_judge_id: int) -> str:
    """SHA-256 over everything a row writes into its activity."""

    content = {
        "activity_date": record.activity_date,
        "activity_type": record.activity_type,
        "outcome": record.outcome,
        "reason_for_adjournment": record.reason_for_adjournment,
        "next_hearing_date": record.next_hearing_date,
        "primary_judge_id": primary_judge_id,
        "raw_judge_names": record.raw_judge_names,
        "custody_status": record.custody_status,
        "custody_count": record.custody_count,
        "applicant_witnesses": record.applicant_witnesses,
        "defendant_witnesses": record.defendant_witnesses,
        "legal_representation": record.has_legal_representation,
        "other_details": record.other_details,
    }
    encoded = json.dumps(normalize_payload(content), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class UpsertOutcome:
    case_id: int
    activity_id: int | None
    created_case: bool = False
    duplicate: bool = False
    assignments_created: int = 0


class CaseUpsertEngine:
    """Find-or-create the case for a row and append its activity."""

    def __init__(self, session: Session, *, clock: Clock = utc_now) -> None:
        self.session = session
        self.clock = clock

    def _find_case(self, record: CaseReturnRecord) -> Case | None:
        return (
            self.session.query(Case)
            .filter(Case.case_number == record.case_number, Case.court_name == record.court_name)
            .one_or_none()
        )

    def _create_case(self, record: CaseReturnRecord, resolution: Resolution) -> Case:
        case = Case(
            case_number=record.case_number,
            court_name=record.court_name,
            court_id=resolution.court.id,
            case_type_id=resolution.case_type.id,
            caseid_type=record.caseid_type,
            caseid_no=record.caseid_no,
            filed_date=record.filed_date,
            original_court=record.original_court,
            original_code=record.original_code,
            original_number=record.original_number,
            original_year=record.original_year,
            status=record.case_status,
            male_applicants=record.male_applicants,
            female_applicants=record.female_applicants,
            organization_applicants=record.organization_applicants,
            male_defendants=record.male_defendants,
            female_defendants=record.female_defendants,
            organization_defendants=record.organization_defendants,
            has_legal_representation=record.has_legal_representation,
            total_activities=0,
            last_activity_date=None,
        )
        self.session.add(case)
        self.session.flush()
        return case

    def _find_activity(self, case_id: int, fingerprint: str) -> CaseActivity | None:
        return (
            self.session.query(CaseActivity)
            .filter(CaseActivity.case_id == case_id, CaseActivity.row_fingerprint == fingerprint)
            .first()
        )

    def _assign_judges(self, case_id: int, resolution: Resolution) -> int:
        primary_id = resolution.primary_judge.id
        existing = {
            assignment.judge_id: assignment
            for assignment in self.session.query(CaseJudgeAssignment).filter(CaseJudgeAssignment.case_id == case_id)
        }
        created = 0
        for assignment in existing.values():
            if assignment.is_primary and assignment.judge_id != primary_id:
                assignment.is_primary = False

        seen: set[int] = set()
        for judge in resolution.judges:
            if judge.id in seen:
                continue
            seen.add(judge.id)
            is_primary = judge.id == primary_id
            assignment = existing.get(judge.id)
            if assignment is None:
                self.session.add(
                    CaseJudgeAssignment(
                        case_id=case_id,
                        judge_id=judge.id,
                        is_primary=is_primary,
                        assigned_at=self.clock(),
                    )
                )
                created += 1
            elif is_primary and not assignment.is_primary:
                assignment.is_primary = True
        return created

    def apply(
        self,
        record: CaseReturnRecord,
        resolution: Resolution,
        *,
        batch_id: int,
        row_number: int,
    ) -> UpsertOutcome:
        """Stage the row's writes in the session; the caller commits or rolls back."""

        primary = resolution.primary_judge
        fingerprint = activity_fingerprint(record, primary.id)
        case = self._find_case(record)
        created_case = case is None
        if case is None:
            case = self._create_case(record, resolution)
        elif self._find_activity(case.id, fingerprint) is not None:
            return UpsertOutcome(case_id=case.id, activity_id=None, duplicate=True)

        activity = CaseActivity(
            case_id=case.id,
            batch_id=batch_id,
            row_number=row_number,
            activity_date=record.activity_date,
            activity_type=record.activity_type,
            outcome=record.outcome,
            reason_for_adjournment=record.reason_for_adjournment,
            next_hearing_date=record.next_hearing_date,
            primary_judge_id=primary.id,
            raw_judge_names=list(record.raw_judge_names),
            custody_status=record.custody_status,
            custody_count=record.custody_count,
            applicant_witnesses=record.applicant_witnesses,
            defendant_witnesses=record.defendant_witnesses,
            legal_representation=record.has_legal_representation,
            other_details=record.other_details,
            row_fingerprint=fingerprint,
        )
        self.session.add(activity)
        assignments_created = self._assign_judges(case.id, resolution)

        new_date = record.activity_date
        case.total_activities = Case.total_activities + 1
        case.last_activity_date = sql_case(
            (Case.last_activity_date.is_(None), new_date),
            (Case.last_activity_date < new_date, new_date),
            else_=Case.last_activity_date,
        )
        self.session.flush()
        return UpsertOutcome(
            case_id=case.id,
            activity_id=activity.id,
            created_case=created_case,
            assignments_created=assignments_created,
        )


# ---------------------------------------------------------------------------
# Row unit of work
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RowOutcome:
    row_number: int
    succeeded: bool
    duplicate: bool = False
    errors: int = 0
    warnings: int = 0
    error_kinds: dict[str, int] = field(default_factory=dict)
    master_data: dict[str, int] = field(default_factory=empty_master_data)


def _tally(outcome: RowOutcome, findings: list[RowFinding]) -> RowOutcome:
    for finding in findings:
        if finding.severity == ErrorSeverity.ERROR:
            outcome.errors += 1
        elif finding.severity == ErrorSeverity.WARNING:
            outcome.warnings += 1
        outcome.error_kinds[finding.error_kind] = outcome.error_kinds.get(finding.error_kind, 0) + 1
    return outcome


def _fail_row(collector: ErrorCollector, row_number: int, findings: list[RowFinding]) -> RowOutcome:
    collector.record_findings(row_number, findings)
    return _tally(RowOutcome(row_number=row_number, succeeded=False), findings)


def run_row_unit(
    validated: ValidatedRow,
    *,
    batch_id: int,
    config: BatchConfig,
    session: Session,
    locks: CaseLockRegistry,
    retry_limit: int = 3,
    backoff_seconds: float = 0.0,
    clock: Clock = utc_now,
) -> RowOutcome:
    """
    Validate-to-commit for a single row.

    Row problems come back as a failed ``RowOutcome`` with their error records
    committed. Only an ``OperationalError`` that outlives ``retry_limit``
    attempts escapes, as ``StoreRetryExhausted``.
    """

    started = _time.perf_counter()
    collector = ErrorCollector(batch_id, session)
    row_number = validated.row_number
    try:
        if not validated.is_valid:
            return _fail_row(collector, row_number, validated.findings)

        record = validated.record
        attempt = 0
        with locks.hold(record.case_key):
            while True:
                attempt += 1
                # Judge locks taken during resolution are released after commit or rollback.
                with ExitStack() as reserved:
                    try:
                        resolution = EntityResolver(
                            session,
                            config,
                            reserve=lambda key: reserved.enter_context(locks.hold(key)),
                        ).resolve(record)
                        if not resolution.ok:
                            session.rollback()
                            return _fail_row(collector, row_number, [*validated.warnings, *resolution.findings])

                        upsert = CaseUpsertEngine(session, clock=clock).apply(
                            record,
                            resolution,
                            batch_id=batch_id,
                            row_number=row_number,
                        )
                        findings = [*validated.warnings, *resolution.warnings]
                        if upsert.duplicate:
                            findings.append(
                                RowFinding(
                                    column=None,
                                    error_kind=ErrorKind.DUPLICATE_ACTIVITY.value,
                                    message=(
                                        f"An identical activity on {record.activity_date.isoformat()} for case "
                                        f"{record.case_number} already exists; row not applied again."
                                    ),
                                    severity=ErrorSeverity.INFO,
                                )
                            )
                        collector.record_findings(row_number, findings, commit=False)
                        session.commit()
                        outcome = RowOutcome(
                            row_number=row_number,
                            succeeded=True,
                            duplicate=upsert.duplicate,
                            master_data=resolution.master_data,
                        )
                        return _tally(outcome, findings)
                    except (OperationalError, IntegrityError) as exc:
                        session.rollback()
                        if attempt >= retry_limit:
                            if isinstance(exc, OperationalError):
                                raise StoreRetryExhausted(row_number, attempt, exc) from exc
                            current_app.logger.debug("Row %s failed after %s conflicts: %s", row_number, attempt, exc)
                            return _fail_row(
                                collector,
                                row_number,
                                [
                                    *validated.warnings,
                                    RowFinding(
                                        column=None,
                                        error_kind=categorize_store_error(exc).value,
                                        message=f"Store rejected the row after {attempt} attempts: {exc.orig}",
                                    ),
                                ],
                            )
                        current_app.logger.debug(
                            "Row %s store conflict on attempt %s, retrying: %s",
                            row_number,
                            attempt,
                            exc,
                            extra={"importer_batch_id": batch_id, "importer_row": row_number},
                        )
                    except SQLAlchemyError as exc:
                        session.rollback()
                        current_app.logger.debug("Row %s failed with store error: %s", row_number, exc)
                        return _fail_row(
                            collector,
                            row_number,
                            [
                                *validated.warnings,
                                RowFinding(
                                    column=None,
                                    error_kind=categorize_store_error(exc).value,
                                    message=f"Store error while applying row: {exc}",
                                ),
                            ],
                        )
                if backoff_seconds:
                    _time.sleep(backoff_seconds * attempt)
    finally:
        record_row_duration(_time.perf_counter() - started)

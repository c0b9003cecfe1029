"""
Resolve a validated row to courts, case types and judges.

Resolution runs court, then case type, then judges, and stops at the first
ERROR. Missing references are created when the batch configuration allows it;
anything created here is flushed but not committed, so the row's unit of work
decides whether it survives.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Hashable

from flask import current_app
from sqlalchemy import func
from sqlalchemy.orm import Session

from docket_app.importer.pipeline.extraction import (
    generate_case_type_code,
    generate_court_code,
    judge_match_key,
    normalize_case_type_name,
    parse_judge_name,
    with_numeric_suffix,
)
from docket_app.importer.pipeline.options import BatchConfig
from docket_app.importer.pipeline.validation import CaseReturnRecord, ErrorKind, RowFinding
from docket_app.models import CaseType, Court, ErrorSeverity, Judge

MASTER_DATA_KEYS = (
    "new_courts",
    "existing_courts",
    "new_case_types",
    "existing_case_types",
    "new_judges",
    "existing_judges",
)


def empty_master_data() -> dict[str, int]:
    return {key: 0 for key in MASTER_DATA_KEYS}


@dataclass(slots=True)
class Resolution:
    court: Court | None = None
    case_type: CaseType | None = None
    judges: list[Judge] = field(default_factory=list)
    findings: list[RowFinding] = field(default_factory=list)
    master_data: dict[str, int] = field(default_factory=empty_master_data)

    @property
    def errors(self) -> list[RowFinding]:
        return [finding for finding in self.findings if finding.severity == ErrorSeverity.ERROR]

    @property
    def warnings(self) -> list[RowFinding]:
        return [finding for finding in self.findings if finding.severity != ErrorSeverity.ERROR]

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def primary_judge(self) -> Judge | None:
        return self.judges[0] if self.judges else None


def _unresolved(column: str, message: str, raw_value: str | None, suggested_fix: str | None = None) -> RowFinding:
    return RowFinding(
        column=column,
        error_kind=ErrorKind.UNRESOLVED_REFERENCE.value,
        message=message,
        severity=ErrorSeverity.ERROR,
        raw_value=raw_value,
        suggested_fix=suggested_fix,
    )


class EntityResolver:
    """
    ``reserve`` is called with a lock key before a missing judge is created.
    The row's unit of work passes a callable that holds the lock until the row
    commits, so concurrent rows naming the same new judge create one stub.
    """

    def __init__(
        self,
        session: Session,
        config: BatchConfig,
        *,
        reserve: Callable[[Hashable], None] | None = None,
    ) -> None:
        self.session = session
        self.config = config
        self.reserve = reserve

    def resolve(self, record: CaseReturnRecord) -> Resolution:
        resolution = Resolution()
        # Judge locks are taken before this row writes anything.
        self._reserve_missing_judges(record)
        resolution.court = self._resolve_court(record, resolution)
        if not resolution.ok:
            return resolution
        resolution.case_type = self._resolve_case_type(record, resolution)
        if not resolution.ok:
            return resolution
        self._resolve_judges(record, resolution)
        return resolution

    # ------------------------------------------------------------------
    # Courts
    # ------------------------------------------------------------------

    def _find_court(self, record: CaseReturnRecord) -> Court | None:
        if record.court_code:
            court = self.session.query(Court).filter(Court.code == record.court_code).one_or_none()
            if court is not None:
                return court
        return (
            self.session.query(Court)
            .filter(func.lower(Court.name) == record.court_name.lower())
            .order_by(Court.id.asc())
            .first()
        )

    def _unique_code(self, model, base: str) -> str:
        taken = {code for (code,) in self.session.query(model.code).filter(model.code.like(f"{base}%")).all()}
        return with_numeric_suffix(base, taken)

    def _resolve_court(self, record: CaseReturnRecord, resolution: Resolution) -> Court | None:
        court = self._find_court(record)
        if court is not None:
            resolution.master_data["existing_courts"] += 1
            return court
        if not self.config.auto_create_references:
            resolution.findings.append(
                _unresolved(
                    "court",
                    f"Court '{record.court_name}' does not exist and auto-creation is disabled.",
                    record.court_name,
                    "Create the court first or enable auto_create_references.",
                )
            )
            return None
        code = self._unique_code(Court, record.court_code or generate_court_code(record.court_name))
        court = Court(name=record.court_name, code=code, court_type=record.court_type, is_active=True)
        self.session.add(court)
        self.session.flush()
        resolution.master_data["new_courts"] += 1
        current_app.logger.info(
            "Created court %s (%s) from row %s",
            court.name,
            court.code,
            record.row_number,
            extra={"importer_court_id": court.id},
        )
        return court

    # ------------------------------------------------------------------
    # Case types
    # ------------------------------------------------------------------

    def _find_case_type(self, raw: str) -> CaseType | None:
        token = raw.strip().upper()
        normalized_name = normalize_case_type_name(raw)
        candidates = (
            self.session.query(CaseType)
            .filter(
                (CaseType.code == token)
                | (CaseType.code == generate_case_type_code(raw))
                | (func.lower(CaseType.name) == normalized_name.lower())
            )
            .order_by(CaseType.id.asc())
            .all()
        )
        for matcher in (
            lambda item: item.code == token,
            lambda item: item.name.lower() == normalized_name.lower(),
        ):
            for candidate in candidates:
                if matcher(candidate):
                    return candidate
        return candidates[0] if candidates else None

    def _resolve_case_type(self, record: CaseReturnRecord, resolution: Resolution) -> CaseType | None:
        case_type = self._find_case_type(record.case_type)
        if case_type is not None:
            resolution.master_data["existing_case_types"] += 1
            return case_type
        if not self.config.auto_create_references:
            resolution.findings.append(
                _unresolved(
                    "case_type",
                    f"Case type '{record.case_type}' does not exist and auto-creation is disabled.",
                    record.case_type,
                )
            )
            return None
        name = normalize_case_type_name(record.case_type)
        case_type = CaseType(
            name=name,
            code=self._unique_code(CaseType, generate_case_type_code(name)),
            description=f"{name} proceedings and related matters",
            is_active=True,
        )
        self.session.add(case_type)
        self.session.flush()
        resolution.master_data["new_case_types"] += 1
        return case_type

    # ------------------------------------------------------------------
    # Judges
    # ------------------------------------------------------------------

    def _judges_by_key(self, keys: set[str]) -> dict[str, list[Judge]]:
        matches: dict[str, list[Judge]] = {}
        if not keys:
            return matches
        judges = (
            self.session.query(Judge)
            .filter(Judge.normalized_name.in_(keys))
            .order_by(Judge.updated_at.desc(), Judge.id.desc())
            .all()
        )
        for judge in judges:
            matches.setdefault(judge.normalized_name, []).append(judge)
        return matches

    def _reserve_missing_judges(self, record: CaseReturnRecord) -> None:
        if self.reserve is None or not self.config.auto_create_judges:
            return
        keys = {judge_match_key(name) for _, name in record.judge_slots}
        for key in sorted(keys - self._judges_by_key(keys).keys()):
            self.reserve(("judge", key))

    def _resolve_judges(self, record: CaseReturnRecord, resolution: Resolution) -> None:
        slots = [(column, name, judge_match_key(name)) for column, name in record.judge_slots]
        known = self._judges_by_key({key for _, _, key in slots})

        for column, name, key in slots:
            matches = known.get(key)
            if matches:
                judge = matches[0]
                if len(matches) > 1:
                    resolution.findings.append(
                        RowFinding(
                            column=column,
                            error_kind=ErrorKind.AMBIGUOUS_JUDGE.value,
                            message=(
                                f"{len(matches)} judges are named '{name}'; "
                                f"using judge {judge.id} (most recently updated)."
                            ),
                            severity=ErrorSeverity.WARNING,
                            raw_value=name,
                        )
                    )
                resolution.master_data["existing_judges"] += 1
                resolution.judges.append(judge)
                continue

            if not self.config.auto_create_judges:
                resolution.findings.append(
                    _unresolved(column, f"Judge '{name}' does not exist and auto-creation is disabled.", name)
                )
                return

            first_name, last_name = parse_judge_name(name)
            judge = Judge(
                full_name=name,
                normalized_name=key,
                first_name=first_name or None,
                last_name=last_name or None,
                is_active=False,
            )
            self.session.add(judge)
            self.session.flush()
            known[key] = [judge]
            resolution.master_data["new_judges"] += 1
            resolution.judges.append(judge)

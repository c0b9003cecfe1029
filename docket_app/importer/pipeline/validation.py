"""
Row validation for daily case returns.

Each data row goes through four phases in a fixed order:

1. required-field presence,
2. type coercion of dates, integers and booleans,
3. closed-set membership for court type, case status and custody,
4. cross-field rules evaluated on the coerced record.

Problems are reported as ``RowFinding`` values. Nothing in this module touches
cases, activities or reference data; the only write is the optional
``ValidationPreview`` persisted by ``PreviewService``.
"""

from __future__ import annotations

import calendar
import enum
import re
from dataclasses import asdict, dataclass, field
from datetime import date, timedelta
from typing import Iterable, Iterator, Mapping, Sequence

from flask import current_app
from rapidfuzz import fuzz, process, utils
from sqlalchemy.orm import Session

from docket_app.importer.contracts import JUDGE_SLOTS, PARTY_COUNT_FIELDS, get_case_return_required_headers, is_empty_value
from docket_app.importer.errors import PreviewNotFound
from docket_app.importer.pipeline.checksum import compute_file_checksum
from docket_app.importer.pipeline.extraction import (
    build_case_number,
    derive_court_type,
    normalize_court_code,
    normalize_court_name,
    unique_judge_slots,
)
from docket_app.importer.pipeline.parsing import RawRow, read_case_rows
from docket_app.importer.utils import normalize_payload
from docket_app.models import CaseStatus, Clock, CourtType, CustodyStatus, ErrorSeverity, ValidationPreview, as_utc, db, utc_now


class ErrorKind(str, enum.Enum):
    """Stable identifiers stored on error records."""

    REQUIRED_FIELD = "required_field"
    TYPE_COERCION = "type_coercion"
    UNKNOWN_ENUM = "unknown_enum"
    CROSS_FIELD = "cross_field"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    AMBIGUOUS_JUDGE = "ambiguous_judge"
    DUPLICATE_ACTIVITY = "duplicate_activity"
    DATABASE_CONNECTION = "database_connection"
    DUPLICATE_KEY = "duplicate_key"
    FOREIGN_KEY = "foreign_key"
    DATABASE = "database"
    SYSTEM = "system"


@dataclass(frozen=True)
class RowFinding:
    """One problem found in a row, optionally tied to a column."""

    column: str | None
    error_kind: str
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    raw_value: str | None = None
    suggested_fix: str | None = None

    def to_dict(self, row_number: int | None = None) -> dict[str, object]:
        payload: dict[str, object] = {
            "column": self.column,
            "error_kind": str(getattr(self.error_kind, "value", self.error_kind)),
            "message": self.message,
            "severity": self.severity.value,
            "raw_value": self.raw_value,
            "suggested_fix": self.suggested_fix,
        }
        if row_number is not None:
            payload["row_number"] = row_number
        return payload


def _error(column, kind: ErrorKind, message: str, raw_value=None, suggested_fix=None) -> RowFinding:
    return RowFinding(column, kind.value, message, ErrorSeverity.ERROR, _raw(raw_value), suggested_fix)


def _warning(column, kind: ErrorKind, message: str, raw_value=None, suggested_fix=None) -> RowFinding:
    return RowFinding(column, kind.value, message, ErrorSeverity.WARNING, _raw(raw_value), suggested_fix)


def _raw(value) -> str | None:
    if value is None:
        return None
    return str(value)


@dataclass(slots=True)
class CaseReturnRecord:
    """Coerced values of a row that passed validation."""

    row_number: int
    case_number: str
    caseid_type: str
    caseid_no: str
    court_name: str
    case_type: str
    activity_date: date
    outcome: str
    court_code: str | None = None
    court_type: CourtType = CourtType.TC
    case_status: CaseStatus = CaseStatus.ACTIVE
    filed_date: date | None = None
    next_hearing_date: date | None = None
    original_court: str | None = None
    original_code: str | None = None
    original_number: str | None = None
    original_year: int | None = None
    raw_judge_names: list[str] = field(default_factory=list)
    judge_names: list[str] = field(default_factory=list)
    # (source column, normalized name) for each distinct judge, in slot order
    judge_slots: list[tuple[str, str]] = field(default_factory=list)
    activity_type: str | None = None
    reason_for_adjournment: str | None = None
    male_applicants: int = 0
    female_applicants: int = 0
    organization_applicants: int = 0
    male_defendants: int = 0
    female_defendants: int = 0
    organization_defendants: int = 0
    has_legal_representation: bool = False
    applicant_witnesses: int = 0
    defendant_witnesses: int = 0
    custody_status: CustodyStatus = CustodyStatus.NOT_APPLICABLE
    custody_count: int = 0
    other_details: str | None = None

    @property
    def case_key(self) -> tuple[str, str]:
        return self.case_number, self.court_name

    @property
    def primary_judge_name(self) -> str:
        return self.judge_names[0]

    def to_preview_dict(self) -> dict[str, object]:
        return normalize_payload(asdict(self))


@dataclass(slots=True)
class ValidatedRow:
    row_number: int
    record: CaseReturnRecord | None
    errors: list[RowFinding] = field(default_factory=list)
    warnings: list[RowFinding] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors and self.record is not None

    @property
    def findings(self) -> list[RowFinding]:
        return [*self.errors, *self.warnings]


# ---------------------------------------------------------------------------
# Cross-field rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RowRule:
    """Declarative cross-field rule evaluated against a coerced record."""

    code: str
    description: str
    severity: ErrorSeverity

    def evaluate(self, record: CaseReturnRecord) -> Iterable[RowFinding]:
        raise NotImplementedError


class NextHearingAfterActivityRule(RowRule):
    """Next hearing, when given, may not precede the activity itself."""

    def __init__(self) -> None:
        super().__init__(
            code="NEXT_HEARING_ORDER",
            description="Next hearing date must not precede the activity date.",
            severity=ErrorSeverity.ERROR,
        )

    def evaluate(self, record: CaseReturnRecord) -> Iterable[RowFinding]:
        if record.next_hearing_date is None or record.next_hearing_date >= record.activity_date:
            return []
        return [
            RowFinding(
                column="next_dd",
                error_kind=ErrorKind.CROSS_FIELD.value,
                message=(
                    f"Next hearing date {record.next_hearing_date.isoformat()} is before "
                    f"activity date {record.activity_date.isoformat()}."
                ),
                severity=self.severity,
                raw_value=record.next_hearing_date.isoformat(),
            )
        ]


class FiledBeforeActivityRule(RowRule):
    def __init__(self) -> None:
        super().__init__(
            code="FILED_DATE_ORDER",
            description="Filing date should not follow the activity date.",
            severity=ErrorSeverity.WARNING,
        )

    def evaluate(self, record: CaseReturnRecord) -> Iterable[RowFinding]:
        if record.filed_date is None or record.filed_date <= record.activity_date:
            return []
        return [
            RowFinding(
                column="filed_dd",
                error_kind=ErrorKind.CROSS_FIELD.value,
                message=(
                    f"Filing date {record.filed_date.isoformat()} is after "
                    f"activity date {record.activity_date.isoformat()}."
                ),
                severity=self.severity,
                raw_value=record.filed_date.isoformat(),
            )
        ]


DEFAULT_ROW_RULES: Sequence[RowRule] = (
    NextHearingAfterActivityRule(),
    FiledBeforeActivityRule(),
)


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------

MIN_ACTIVITY_YEAR = 2015
MIN_FILED_YEAR = 1960
MAX_PARTY_COUNT = 999

_MONTHS: dict[str, int] = {}
for _index in range(1, 13):
    _MONTHS[calendar.month_abbr[_index].lower()] = _index
    _MONTHS[calendar.month_name[_index].lower()] = _index

_TRUE_TOKENS = {"yes", "y", "true", "1"}
_FALSE_TOKENS = {"no", "n", "false", "0"}
_ENUM_TOKEN_RE = re.compile(r"[\s\-]+")

# (day, month, year) column triples
ACTIVITY_DATE_COLUMNS = ("date_dd", "date_mon", "date_yyyy")
FILED_DATE_COLUMNS = ("filed_dd", "filed_mon", "filed_yyyy")
NEXT_DATE_COLUMNS = ("next_dd", "next_mon", "next_yyyy")


class _CoercionFailed(ValueError):
    def __init__(self, finding: RowFinding) -> None:
        super().__init__(finding.message)
        self.finding = finding


def _text(values: Mapping[str, object | None], name: str) -> str | None:
    value = values.get(name)
    if is_empty_value(value):
        return None
    return str(value).strip()


def parse_month(value: str) -> int | None:
    token = value.strip().lower().rstrip(".")
    if token.isdigit():
        number = int(token)
        return number if 1 <= number <= 12 else None
    return _MONTHS.get(token)


def parse_int(value: str) -> int | None:
    text = value.strip().replace(",", "")
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    if number != number or not number.is_integer():
        return None
    return int(number)


def parse_bool(value: str) -> bool | None:
    token = value.strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def enum_token(value: str) -> str:
    return _ENUM_TOKEN_RE.sub("_", value.strip()).upper()


def nearest_choice(value: str, choices: Sequence[str], *, score_cutoff: float = 60.0) -> str | None:
    """Closest known label for ``value``, or None when nothing is reasonably close."""

    match = process.extractOne(
        value,
        choices,
        scorer=fuzz.WRatio,
        processor=utils.default_process,
        score_cutoff=score_cutoff,
    )
    if match is None:
        return None
    return match[0]


class RowValidator:
    """Validate raw case-return rows into ``CaseReturnRecord`` candidates."""

    def __init__(self, clock: Clock = utc_now, rules: Sequence[RowRule] | None = None) -> None:
        self.clock = clock
        self.rules: Sequence[RowRule] = DEFAULT_ROW_RULES if rules is None else tuple(rules)
        self.required_columns = get_case_return_required_headers()

    # -- phases --------------------------------------------------------

    def _check_required(self, values: Mapping[str, object | None]) -> list[RowFinding]:
        findings = []
        for column in self.required_columns:
            if is_empty_value(values.get(column)):
                findings.append(
                    _error(column, ErrorKind.REQUIRED_FIELD, f"Required field '{column}' is missing.", values.get(column))
                )
        return findings

    def _coerce_date(
        self,
        values: Mapping[str, object | None],
        columns: tuple[str, str, str],
        label: str,
        *,
        required: bool,
        min_year: int | None = None,
        max_year: int | None = None,
    ) -> tuple[date | None, RowFinding | None]:
        day_col, month_col, year_col = columns
        parts = [_text(values, column) for column in columns]
        if not any(parts):
            return None, None
        if not all(parts):
            missing = [column for column, part in zip(columns, parts) if not part]
            message = f"Incomplete {label}: missing {', '.join(missing)}."
            if required:
                return None, _error(missing[0], ErrorKind.TYPE_COERCION, message)
            return None, _warning(missing[0], ErrorKind.TYPE_COERCION, message + " The date was ignored.")

        day_raw, month_raw, year_raw = parts
        day = parse_int(day_raw)
        if day is None:
            return None, _error(day_col, ErrorKind.TYPE_COERCION, f"Invalid {label} day '{day_raw}'.", day_raw)
        month = parse_month(month_raw)
        if month is None:
            return None, _error(
                month_col,
                ErrorKind.TYPE_COERCION,
                f"Invalid {label} month '{month_raw}'. Use Jan..Dec, a full month name or 1-12.",
                month_raw,
            )
        year = parse_int(year_raw)
        if year is None:
            return None, _error(year_col, ErrorKind.TYPE_COERCION, f"Invalid {label} year '{year_raw}'.", year_raw)
        if (min_year is not None and year < min_year) or (max_year is not None and year > max_year):
            bounds = f"{min_year}..{max_year}" if max_year is not None else f">= {min_year}"
            return None, _error(
                year_col,
                ErrorKind.TYPE_COERCION,
                f"{label.capitalize()} year {year} is outside the accepted range ({bounds}).",
                year_raw,
            )
        try:
            return date(year, month, day), None
        except ValueError:
            raw = f"{day_raw}/{month_raw}/{year_raw}"
            return None, _error(day_col, ErrorKind.TYPE_COERCION, f"{label.capitalize()} {raw} is not a real date.", raw)

    def _coerce_count(self, values: Mapping[str, object | None], column: str) -> int:
        raw = _text(values, column)
        if raw is None:
            return 0
        number = parse_int(raw)
        if number is None:
            raise _CoercionFailed(_error(column, ErrorKind.TYPE_COERCION, f"'{raw}' is not a whole number.", raw))
        if number < 0 or number > MAX_PARTY_COUNT:
            raise _CoercionFailed(
                _error(column, ErrorKind.TYPE_COERCION, f"Count {number} must be between 0 and {MAX_PARTY_COUNT}.", raw)
            )
        return number

    def _coerce(self, values: Mapping[str, object | None], skip: set[str]) -> tuple[dict[str, object], list[RowFinding]]:
        findings: list[RowFinding] = []
        coerced: dict[str, object] = {}
        current_year = self.clock().year

        if not skip.intersection(ACTIVITY_DATE_COLUMNS):
            activity_date, finding = self._coerce_date(
                values,
                ACTIVITY_DATE_COLUMNS,
                "activity date",
                required=True,
                min_year=MIN_ACTIVITY_YEAR,
                max_year=current_year,
            )
            if finding:
                findings.append(finding)
            coerced["activity_date"] = activity_date

        filed_date, finding = self._coerce_date(values, FILED_DATE_COLUMNS, "filing date", required=False, min_year=MIN_FILED_YEAR)
        if finding:
            findings.append(finding)
        coerced["filed_date"] = filed_date

        next_date, finding = self._coerce_date(values, NEXT_DATE_COLUMNS, "next hearing date", required=False)
        if finding:
            findings.append(finding)
        coerced["next_hearing_date"] = next_date

        for column in PARTY_COUNT_FIELDS:
            try:
                coerced[f"{column}s"] = self._coerce_count(values, column)
            except _CoercionFailed as exc:
                findings.append(exc.finding)
        for column, attribute in (("applicant_witness", "applicant_witnesses"), ("defendant_witness", "defendant_witnesses")):
            try:
                coerced[attribute] = self._coerce_count(values, column)
            except _CoercionFailed as exc:
                findings.append(exc.finding)

        legalrep = _text(values, "legalrep")
        if legalrep is None:
            coerced["has_legal_representation"] = False
        else:
            parsed = parse_bool(legalrep)
            if parsed is None:
                findings.append(
                    _error("legalrep", ErrorKind.TYPE_COERCION, f"'{legalrep}' is not Yes/No/true/false/1/0.", legalrep)
                )
            else:
                coerced["has_legal_representation"] = parsed

        original_year = _text(values, "original_year")
        if original_year is not None:
            year = parse_int(original_year)
            if year is None:
                findings.append(
                    _error("original_year", ErrorKind.TYPE_COERCION, f"Invalid original year '{original_year}'.", original_year)
                )
            coerced["original_year"] = year

        custody = _text(values, "custody")
        if custody is not None and "custody" not in skip:
            count = parse_int(custody)
            if count is not None:
                if count < 0:
                    findings.append(
                        _error("custody", ErrorKind.TYPE_COERCION, f"Custody count {count} cannot be negative.", custody)
                    )
                else:
                    coerced["custody_count"] = count
                    coerced["custody_status"] = CustodyStatus.IN_CUSTODY if count > 0 else CustodyStatus.NOT_APPLICABLE

        filled_slots = [
            (slot, str(values.get(slot)).strip()) for slot in JUDGE_SLOTS if not is_empty_value(values.get(slot))
        ]
        coerced["raw_judge_names"] = [name for _, name in filled_slots]
        coerced["judge_slots"] = unique_judge_slots(filled_slots)
        coerced["judge_names"] = [name for _, name in coerced["judge_slots"]]
        if "judge_1" not in skip and not coerced["judge_names"]:
            findings.append(
                _error("judge_1", ErrorKind.REQUIRED_FIELD, "No usable judge name after removing titles.", values.get("judge_1"))
            )

        return coerced, findings

    def _match_closed_set(
        self,
        column: str,
        raw: str,
        enum_cls: type[enum.Enum],
        fallback,
        fallback_label: str,
    ) -> tuple[object, RowFinding | None]:
        choices = [member.value for member in enum_cls]
        token = enum_token(raw)
        if token in choices:
            return enum_cls(token), None
        suggestion = nearest_choice(raw, choices)
        message = f"Unknown {column.replace('_', ' ')} '{raw}'; using {fallback_label}."
        if suggestion:
            message += f" Did you mean {suggestion}?"
        return fallback, _warning(column, ErrorKind.UNKNOWN_ENUM, message, raw, suggestion)

    def _check_closed_sets(
        self,
        values: Mapping[str, object | None],
        coerced: Mapping[str, object],
    ) -> tuple[dict[str, object], list[RowFinding]]:
        findings: list[RowFinding] = []
        resolved: dict[str, object] = {}

        derived_type = derive_court_type(_text(values, "caseid_type"))
        court_type_raw = _text(values, "court_type")
        if court_type_raw is None:
            resolved["court_type"] = derived_type
        else:
            resolved["court_type"], finding = self._match_closed_set(
                "court_type", court_type_raw, CourtType, derived_type, f"{derived_type.value} from the case prefix"
            )
            if finding:
                findings.append(finding)

        status_raw = _text(values, "case_status")
        if status_raw is None:
            resolved["case_status"] = CaseStatus.ACTIVE
        else:
            resolved["case_status"], finding = self._match_closed_set(
                "case_status", status_raw, CaseStatus, CaseStatus.ACTIVE, CaseStatus.ACTIVE.value
            )
            if finding:
                findings.append(finding)

        custody_raw = _text(values, "custody")
        if custody_raw is not None and "custody_status" not in coerced and parse_int(custody_raw) is None:
            resolved["custody_status"], finding = self._match_closed_set(
                "custody",
                custody_raw,
                CustodyStatus,
                CustodyStatus.NOT_APPLICABLE,
                CustodyStatus.NOT_APPLICABLE.value,
            )
            resolved["custody_count"] = 0
            if finding:
                findings.append(finding)

        return resolved, findings

    # -- public API ----------------------------------------------------

    def validate(self, raw_row: RawRow) -> ValidatedRow:
        values = raw_row.values
        findings = self._check_required(values)
        missing = {finding.column for finding in findings if finding.column}

        coerced, coercion_findings = self._coerce(values, missing)
        findings.extend(coercion_findings)
        closed, closed_findings = self._check_closed_sets(values, coerced)
        findings.extend(closed_findings)

        record: CaseReturnRecord | None = None
        if not any(finding.severity == ErrorSeverity.ERROR for finding in findings):
            caseid_type = _text(values, "caseid_type") or ""
            caseid_no = _text(values, "caseid_no") or ""
            court_code = _text(values, "court_code")
            record = CaseReturnRecord(
                row_number=raw_row.row_number,
                case_number=build_case_number(caseid_type, caseid_no),
                caseid_type=caseid_type,
                caseid_no=caseid_no,
                court_name=normalize_court_name(_text(values, "court")),
                court_code=normalize_court_code(court_code) if court_code else None,
                case_type=_text(values, "case_type") or "",
                outcome=_text(values, "outcome") or "",
                original_court=_text(values, "original_court"),
                original_code=_text(values, "original_code"),
                original_number=_text(values, "original_number"),
                activity_type=_text(values, "comingfor"),
                reason_for_adjournment=_text(values, "reason_adj"),
                other_details=_text(values, "other_details"),
                **coerced,
                **closed,
            )
            for rule in self.rules:
                findings.extend(rule.evaluate(record))
            if any(finding.severity == ErrorSeverity.ERROR for finding in findings):
                record = None

        return ValidatedRow(
            row_number=raw_row.row_number,
            record=record,
            errors=[finding for finding in findings if finding.severity == ErrorSeverity.ERROR],
            warnings=[finding for finding in findings if finding.severity != ErrorSeverity.ERROR],
        )

    def iter_commit(self, rows: Iterable[RawRow]) -> Iterator[ValidatedRow]:
        """Lazily validate rows for the commit path."""

        for raw_row in rows:
            yield self.validate(raw_row)

    def preview(self, rows: Iterable[RawRow], *, limit: int = 10, empty_rows_skipped: int = 0) -> "PreviewReport":
        report = PreviewReport(empty_rows_skipped=empty_rows_skipped)
        for validated in self.iter_commit(rows):
            report.total_rows += 1
            if validated.is_valid:
                report.valid_rows += 1
            else:
                report.invalid_rows += 1
            if validated.warnings:
                report.warning_rows += 1
            report.errors.extend(finding.to_dict(validated.row_number) for finding in validated.errors)
            report.warnings.extend(finding.to_dict(validated.row_number) for finding in validated.warnings)
            if len(report.sample) < limit:
                report.sample.append(
                    {
                        "row_number": validated.row_number,
                        "valid": validated.is_valid,
                        "record": validated.record.to_preview_dict() if validated.record else None,
                    }
                )
        return report


@dataclass(slots=True)
class PreviewReport:
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    warning_rows: int = 0
    empty_rows_skipped: int = 0
    errors: list[dict[str, object]] = field(default_factory=list)
    warnings: list[dict[str, object]] = field(default_factory=list)
    sample: list[dict[str, object]] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class PreviewService:
    """Persist and look up dry-run validation previews."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        clock: Clock = utc_now,
        ttl_minutes: int | None = None,
        row_limit: int | None = None,
    ) -> None:
        self.session = session or db.session
        self.clock = clock
        config = current_app.config
        self.ttl = timedelta(minutes=ttl_minutes or config.get("IMPORTER_PREVIEW_TTL_MINUTES", 30))
        self.row_limit = row_limit or config.get("IMPORTER_PREVIEW_ROW_LIMIT", 10)

    def create(self, data: bytes, *, filename: str, config: Mapping[str, object] | None = None) -> ValidationPreview:
        """
        Validate ``data`` without touching cases and store the result.

        Header or decoding problems raise ``SourceUnreadableError``; no preview
        is stored in that case.
        """

        reader, rows = read_case_rows(data)
        report = RowValidator(self.clock).preview(
            rows,
            limit=self.row_limit,
            empty_rows_skipped=reader.statistics.rows_skipped_empty,
        )
        now = self.clock()
        preview = ValidationPreview(
            filename=filename,
            file_checksum=compute_file_checksum(data),
            total_rows=report.total_rows,
            valid_rows=report.valid_rows,
            invalid_rows=report.invalid_rows,
            warning_rows=report.warning_rows,
            empty_rows_skipped=report.empty_rows_skipped,
            errors_json=report.errors,
            warnings_json=report.warnings,
            preview_rows_json=report.sample,
            expires_at=now + self.ttl,
        )
        self.session.add(preview)
        self.session.commit()
        current_app.logger.info(
            "Validation preview %s created for %s (%s rows, %s invalid)",
            preview.id,
            filename,
            report.total_rows,
            report.invalid_rows,
            extra={"importer_preview_id": preview.id, "importer_options": normalize_payload(config)},
        )
        return preview

    def get(self, preview_id: int) -> ValidationPreview:
        preview = self.session.get(ValidationPreview, preview_id)
        if preview is None or as_utc(preview.expires_at) <= self.clock():
            raise PreviewNotFound(f"Validation preview {preview_id} not found or expired.")
        return preview

    def purge_expired(self) -> int:
        now = self.clock()
        expired = [
            preview
            for preview in self.session.query(ValidationPreview).all()
            if as_utc(preview.expires_at) <= now
        ]
        for preview in expired:
            self.session.delete(preview)
        self.session.commit()
        return len(expired)

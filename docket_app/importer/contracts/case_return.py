"""Canonical daily case-return contract.

Single source of truth for the columns a case-return CSV may carry, which of
them must be present in the header, and the aliases accepted for each.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Mapping, Tuple

Normalizer = Callable[[object | None], object | None]

# Placeholder tokens that clerks use for "no value".
EMPTY_VALUE_MARKERS = frozenset({"", "n/a", "null", "-"})

JUDGE_SLOTS: Tuple[str, ...] = tuple(f"judge_{index}" for index in range(1, 8))

PARTY_COUNT_FIELDS: Tuple[str, ...] = (
    "male_applicant",
    "female_applicant",
    "organization_applicant",
    "male_defendant",
    "female_defendant",
    "organization_defendant",
)


def _strip_string(value: object | None) -> object | None:
    if isinstance(value, str):
        return value.strip()
    return value


def is_empty_value(value: object | None) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in EMPTY_VALUE_MARKERS
    return False


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a canonical case-return column."""

    name: str
    description: str
    required: bool = False
    aliases: Tuple[str, ...] = ()
    normalizer: Normalizer | None = _strip_string

    def headers(self) -> Tuple[str, ...]:
        return (self.name, *self.aliases)


CASE_RETURN_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec("date_dd", "Activity day of month.", required=True, aliases=("activity_day",)),
    FieldSpec("date_mon", "Activity month (Jan..Dec or 1-12).", required=True, aliases=("activity_month",)),
    FieldSpec("date_yyyy", "Activity year.", required=True, aliases=("activity_year",)),
    FieldSpec("caseid_type", "Case number prefix, e.g. HCCC.", required=True, aliases=("case_prefix",)),
    FieldSpec("caseid_no", "Case number serial.", required=True, aliases=("case_no",)),
    FieldSpec("filed_dd", "Filing day of month."),
    FieldSpec("filed_mon", "Filing month."),
    FieldSpec("filed_yyyy", "Filing year."),
    FieldSpec("court", "Court name.", required=True, aliases=("court_name",)),
    FieldSpec("court_code", "Explicit court code."),
    FieldSpec("court_type", "Court level (SC, HC, MC, ...)."),
    FieldSpec("original_court", "Court of first instance."),
    FieldSpec("original_code", "Original court code."),
    FieldSpec("original_number", "Original case number."),
    FieldSpec("original_year", "Original case year."),
    FieldSpec("case_type", "Case type name or code.", required=True, aliases=("case_type_code",)),
    FieldSpec("case_status", "Case status (ACTIVE, RESOLVED, ...)."),
    FieldSpec("judge_1", "Presiding judge.", required=True, aliases=("judge",)),
    *(FieldSpec(slot, "Additional judge.") for slot in JUDGE_SLOTS[1:]),
    FieldSpec("comingfor", "What the matter came up for.", aliases=("coming_for", "activity_type")),
    FieldSpec("outcome", "Outcome of the activity.", required=True),
    FieldSpec("reason_adj", "Reason for adjournment.", aliases=("adjournment_reason",)),
    FieldSpec("next_dd", "Next hearing day of month."),
    FieldSpec("next_mon", "Next hearing month."),
    FieldSpec("next_yyyy", "Next hearing year."),
    *(FieldSpec(name, "Party count.") for name in PARTY_COUNT_FIELDS),
    FieldSpec("legalrep", "Legal representation (Yes/No).", aliases=("legal_rep",)),
    FieldSpec("applicant_witness", "Applicant witnesses.", aliases=("applicant_witnesses",)),
    FieldSpec("defendant_witness", "Defendant witnesses.", aliases=("defendant_witnesses",)),
    FieldSpec("custody", "Custody status or number of detained parties.", required=True, aliases=("custody_status",)),
    FieldSpec("other_details", "Free text."),
)


def get_case_return_field_specs() -> Tuple[FieldSpec, ...]:
    return CASE_RETURN_FIELDS


def get_case_return_required_headers() -> Tuple[str, ...]:
    return tuple(field.name for field in CASE_RETURN_FIELDS if field.required)


def get_case_return_alias_map() -> Mapping[str, str]:
    """Map normalized header tokens to canonical names (includes aliases)."""

    mapping: dict[str, str] = {}
    for field in CASE_RETURN_FIELDS:
        for header in field.headers():
            mapping[normalize_header(header)] = field.name
    return mapping


def normalize_header(header: str) -> str:
    """Normalize a CSV header for comparison (case/space/underscore agnostic)."""

    token = header.strip().lower()
    for char in (" ", "-", "."):
        token = token.replace(char, "_")
    return token


def required_headers_missing(headers: Iterable[str]) -> Tuple[str, ...]:
    alias_map = get_case_return_alias_map()
    present = {alias_map.get(normalize_header(header)) for header in headers}
    return tuple(name for name in get_case_return_required_headers() if name not in present)

"""
Name normalization helpers used when resolving reference data from rows.

These are pure functions; the resolver owns all database access.
"""

from __future__ import annotations

import re
from typing import Iterable, Sequence

from docket_app.models import CourtType

_WHITESPACE_RE = re.compile(r"\s+")
_JUDGE_TITLE_RE = re.compile(r"^(hon\.?|honourable|lady\s+justice|justice|judge)\s*", re.IGNORECASE)

CASE_TYPE_CODES: dict[str, str] = {
    "Civil Suit": "CIVIL",
    "Civil Appeal": "APPEAL",
    "Civil Case Miscellaneous": "MISC",
    "Commercial Matters": "COMM",
    "Criminal Revision": "CRIM_REV",
    "Judicial Review": "JR",
    "Criminal Case": "CRIM",
    "Family Matters": "FAMILY",
    "Employment Dispute": "EMPLOY",
    "Constitutional Petition": "CONST",
    "Environmental Matters": "ENV",
    "Election Petition": "ELECT",
}

CASE_TYPE_CODE_MAX_LENGTH = 20


def collapse_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip()


def _title_words(value: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in value.lower().split(" ") if word)


def normalize_court_name(name: str | None) -> str:
    """Title-case a court name, collapsing whitespace and dropping a trailing period."""

    cleaned = collapse_whitespace(name)
    if cleaned.endswith("."):
        cleaned = cleaned[:-1].rstrip()
    return _title_words(cleaned)


def normalize_court_code(code: str | None) -> str:
    return collapse_whitespace(code).upper()


def generate_court_code(court_name: str) -> str:
    """
    Build a court code from the words of its name.

    Words of two characters or fewer are ignored. One word yields its first six
    characters, two words three characters of each, more words two characters
    of each of the first three.
    """

    words = [word for word in collapse_whitespace(court_name).split(" ") if len(word) > 2]
    if not words:
        return collapse_whitespace(court_name).replace(" ", "").upper()[:6]
    if len(words) == 1:
        return words[0][:6].upper()
    if len(words) == 2:
        return (words[0][:3] + words[1][:3]).upper()
    return "".join(word[:2] for word in words[:3]).upper()


def derive_court_type(caseid_type: str | None) -> CourtType:
    """Map a case-number prefix to a court type; unknown prefixes are tribunals."""

    if not caseid_type or not isinstance(caseid_type, str):
        return CourtType.TC
    prefix = caseid_type.strip().upper()
    # SCC before SC so small-claims prefixes are not read as supreme court.
    if prefix.startswith("SCC"):
        return CourtType.SCC
    two_letter = prefix[:2]
    if two_letter == "SC":
        return CourtType.SC
    if two_letter == "EL":
        return CourtType.ELC if prefix.startswith("ELC") else CourtType.ELRC
    if two_letter == "KC":
        return CourtType.KC
    if two_letter == "CO":
        return CourtType.COA
    if two_letter == "MC":
        return CourtType.MC
    if two_letter == "HC":
        return CourtType.HC
    return CourtType.TC


def normalize_judge_name(name: str | None) -> str:
    """Strip honorifics and collapse whitespace; casing is preserved."""

    cleaned = collapse_whitespace(name)
    return _JUDGE_TITLE_RE.sub("", cleaned).strip()


def judge_match_key(name: str | None) -> str:
    return normalize_judge_name(name).casefold()


def parse_judge_name(full_name: str) -> tuple[str, str]:
    """Split a judge name into (first, last); understands ``Last, First Middle``."""

    cleaned = normalize_judge_name(full_name)
    if "," in cleaned:
        last, _, rest = cleaned.partition(",")
        first = rest.strip().split(" ")[0] if rest.strip() else ""
        return first, last.strip()
    parts = cleaned.split(" ")
    if not parts or not parts[0]:
        return "", ""
    return parts[0], parts[-1]


def normalize_case_type_name(name: str | None) -> str:
    return _title_words(collapse_whitespace(name))


def generate_case_type_code(name: str) -> str:
    normalized = normalize_case_type_name(name)
    mapped = CASE_TYPE_CODES.get(normalized)
    if mapped:
        return mapped
    initials = "".join(word[0] for word in normalized.split(" ") if word)
    return initials.upper()[:CASE_TYPE_CODE_MAX_LENGTH]


def build_case_number(caseid_type: str, caseid_no: str) -> str:
    return f"{caseid_type.strip()}-{caseid_no.strip()}"


def unique_judge_slots(slots: Iterable[tuple[str | None, str | None]]) -> list[tuple[str | None, str]]:
    """Keep the first spelling of each distinct judge, with the slot it came from."""

    seen: set[str] = set()
    result: list[tuple[str | None, str]] = []
    for slot, name in slots:
        key = judge_match_key(name)
        if not key or key in seen:
            continue
        seen.add(key)
        result.append((slot, normalize_judge_name(name)))
    return result


def unique_judge_names(names: Iterable[str | None]) -> list[str]:
    """Keep the first spelling of each distinct judge, in slot order."""

    return [name for _, name in unique_judge_slots((None, name) for name in names)]


def with_numeric_suffix(base: str, taken: Sequence[str] | set[str]) -> str:
    """Return ``base`` or the first ``base<N>`` not already taken."""

    if base not in taken:
        return base
    counter = 1
    while f"{base}{counter}" in taken:
        counter += 1
    return f"{base}{counter}"

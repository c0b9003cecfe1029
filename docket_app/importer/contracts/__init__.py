"""Canonical ingest contract helpers for the importer."""

from __future__ import annotations

from .case_return import (
    CASE_RETURN_FIELDS,
    EMPTY_VALUE_MARKERS,
    JUDGE_SLOTS,
    PARTY_COUNT_FIELDS,
    FieldSpec,
    get_case_return_alias_map,
    get_case_return_field_specs,
    get_case_return_required_headers,
    is_empty_value,
    normalize_header,
    required_headers_missing,
)

__all__ = [
    "CASE_RETURN_FIELDS",
    "EMPTY_VALUE_MARKERS",
    "JUDGE_SLOTS",
    "PARTY_COUNT_FIELDS",
    "FieldSpec",
    "get_case_return_alias_map",
    "get_case_return_field_specs",
    "get_case_return_required_headers",
    "is_empty_value",
    "normalize_header",
    "required_headers_missing",
]

"""Coercion helpers shared by the batch-history and error-record query filters."""

from __future__ import annotations

import enum
from datetime import datetime, time, timezone
from typing import Mapping, TypeVar

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100

EnumT = TypeVar("EnumT", bound=enum.Enum)


def coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def coerce_enum(value: str | EnumT, enum_cls: type[EnumT], *, label: str) -> EnumT:
    if isinstance(value, enum_cls):
        return value
    normalized = str(value).strip().lower()
    try:
        return enum_cls(normalized)
    except ValueError:
        raise ValueError(f"Unsupported {label} filter '{value}'.") from None


def coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def coerce_optional_bool(candidate: str | bool | None) -> bool | None:
    """Tri-state flag: None means "do not filter"."""

    if candidate is None or candidate == "":
        return None
    if isinstance(candidate, bool):
        return candidate
    normalized = str(candidate).strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    if normalized in ("all", "any"):
        return None
    raise ValueError(f"Expected a boolean filter value, received '{candidate}'.")


def resolve_sort_expression(sort: str, fields: Mapping[str, object]):
    descending = sort.startswith("-")
    sort_key = sort.lstrip("-")
    expression = fields.get(sort_key)
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()


def total_pages(total: int, page_size: int) -> int:
    return (total + page_size - 1) // page_size

"""CSV reader for daily case-return files.

Validates the header row against the case-return contract, streams data rows,
and skips rows that carry nothing but blanks or placeholder tokens.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from typing import Iterator, Sequence

from docket_app.importer.contracts import (
    get_case_return_alias_map,
    get_case_return_field_specs,
    get_case_return_required_headers,
    is_empty_value,
    normalize_header,
)
from docket_app.importer.errors import SourceUnreadableError


class CSVHeaderError(SourceUnreadableError):
    """Raised when the CSV header row does not meet contract requirements."""

    def __init__(self, *, missing: Sequence[str] = (), duplicates: Sequence[str] = ()) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if duplicates:
            details.append(f"Duplicate columns: {', '.join(sorted(duplicates))}.")
        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(message)
        self.missing = tuple(missing)
        self.duplicates = tuple(duplicates)


@dataclass(frozen=True)
class HeaderValidationResult:
    raw_headers: tuple[str, ...]
    canonical_headers: tuple[str | None, ...]
    unexpected: tuple[str, ...] = ()


@dataclass(frozen=True)
class RawRow:
    """One non-empty data row keyed by canonical column name."""

    row_number: int
    source_line: int
    values: dict[str, str | None]


@dataclass
class ReaderStatistics:
    rows_read: int = 0
    rows_skipped_empty: int = 0
    unexpected_columns: list[str] = field(default_factory=list)


def decode_upload(data: bytes) -> str:
    """Decode uploaded bytes, tolerating a UTF-8 byte-order mark."""

    try:
        return data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise SourceUnreadableError(f"File is not valid UTF-8 text: {exc}") from exc


def _sanitize_header(header: str | None) -> str:
    return (header or "").strip().lstrip("\ufeff")


def _validate_headers(raw_headers: Sequence[str]) -> HeaderValidationResult:
    sanitized = tuple(_sanitize_header(header) for header in raw_headers)
    alias_map = get_case_return_alias_map()
    seen: set[str] = set()
    duplicates: list[str] = []
    unexpected: list[str] = []
    canonical: list[str | None] = []

    for header in sanitized:
        name = alias_map.get(normalize_header(header)) if header else None
        if name is None:
            if header:
                unexpected.append(header)
            canonical.append(None)
            continue
        if name in seen:
            duplicates.append(name)
        seen.add(name)
        canonical.append(name)

    missing = [name for name in get_case_return_required_headers() if name not in seen]
    if missing or duplicates:
        raise CSVHeaderError(missing=missing, duplicates=duplicates)
    return HeaderValidationResult(raw_headers=sanitized, canonical_headers=tuple(canonical), unexpected=tuple(unexpected))


def row_is_empty(values: dict[str, object | None]) -> bool:
    return all(is_empty_value(value) for value in values.values())


class CaseReturnReader:
    """Stream case-return rows from CSV text."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._header: HeaderValidationResult | None = None
        self.statistics = ReaderStatistics()
        self._normalizers = {spec.name: spec.normalizer for spec in get_case_return_field_specs()}

    @property
    def header(self) -> HeaderValidationResult | None:
        return self._header

    def _prepare_reader(self):
        reader = csv.reader(io.StringIO(self._text))
        try:
            raw_headers = next(reader)
        except StopIteration as exc:
            raise CSVHeaderError(missing=get_case_return_required_headers()) from exc
        except csv.Error as exc:
            raise SourceUnreadableError(f"CSV header could not be parsed: {exc}") from exc
        self._header = _validate_headers(raw_headers)
        self.statistics.unexpected_columns = list(self._header.unexpected)
        return reader

    def iter_rows(self) -> Iterator[RawRow]:
        reader = self._prepare_reader()
        assert self._header is not None
        columns = self._header.canonical_headers
        try:
            # Row numbers count every data line so they point back into the file.
            for row_number, raw in enumerate(reader, start=1):
                if not raw:
                    self.statistics.rows_skipped_empty += 1
                    continue
                values: dict[str, str | None] = {}
                for index, name in enumerate(columns):
                    if name is None:
                        continue
                    value = raw[index] if index < len(raw) else None
                    normalizer = self._normalizers.get(name)
                    values[name] = normalizer(value) if normalizer else value
                if row_is_empty(values):
                    self.statistics.rows_skipped_empty += 1
                    continue
                self.statistics.rows_read += 1
                yield RawRow(row_number=row_number, source_line=reader.line_num, values=values)
        except csv.Error as exc:
            raise SourceUnreadableError(f"CSV parse failed near line {reader.line_num}: {exc}") from exc


def read_case_rows(data: bytes) -> tuple[CaseReturnReader, list[RawRow]]:
    """Decode and fully read an upload. Header problems raise ``CSVHeaderError``."""

    reader = CaseReturnReader(decode_upload(data))
    rows = list(reader.iter_rows())
    return reader, rows

from __future__ import annotations

import csv
import io
from datetime import datetime, timedelta, timezone
from typing import Iterable, Mapping

import pytest

from docket_app.importer.context import ImportContext
from docket_app.importer.pipeline.lifecycle import BatchLifecycleController
from docket_app.importer.pipeline.parsing import RawRow
from docket_app.models import CaseType, Court, CourtType, Judge, db

FIXED_NOW = datetime(2024, 6, 15, 9, 0, tzinfo=timezone.utc)

CSV_HEADERS = (
    "date_dd",
    "date_mon",
    "date_yyyy",
    "caseid_type",
    "caseid_no",
    "filed_dd",
    "filed_mon",
    "filed_yyyy",
    "court",
    "court_type",
    "case_type",
    "case_status",
    "judge_1",
    "judge_2",
    "comingfor",
    "outcome",
    "reason_adj",
    "next_dd",
    "next_mon",
    "next_yyyy",
    "male_applicant",
    "female_defendant",
    "legalrep",
    "applicant_witness",
    "custody",
    "other_details",
)

ROW_DEFAULTS: dict[str, str] = {
    "date_dd": "12",
    "date_mon": "Mar",
    "date_yyyy": "2024",
    "caseid_type": "HCCC",
    "caseid_no": "E001",
    "filed_dd": "",
    "filed_mon": "",
    "filed_yyyy": "",
    "court": "Milimani High Court",
    "court_type": "",
    "case_type": "Civil Suit",
    "case_status": "ACTIVE",
    "judge_1": "Hon. Jane Mwangi",
    "judge_2": "",
    "comingfor": "Mention",
    "outcome": "Adjourned",
    "reason_adj": "",
    "next_dd": "20",
    "next_mon": "Apr",
    "next_yyyy": "2024",
    "male_applicant": "1",
    "female_defendant": "0",
    "legalrep": "Yes",
    "applicant_witness": "0",
    "custody": "0",
    "other_details": "",
}


class FixedClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_row(**overrides: str) -> dict[str, str]:
    row = dict(ROW_DEFAULTS)
    row.update(overrides)
    return row


def csv_bytes(rows: Iterable[Mapping[str, str]], headers: Iterable[str] = CSV_HEADERS) -> bytes:
    headers = tuple(headers)
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow([row.get(header, "") for header in headers])
    return buffer.getvalue().encode("utf-8")


def raw_row(row_number: int = 1, **overrides: str) -> RawRow:
    values = {key: (value.strip() if isinstance(value, str) else value) for key, value in make_row(**overrides).items()}
    return RawRow(row_number=row_number, source_line=row_number + 1, values=values)


@pytest.fixture
def row_factory():
    return make_row


@pytest.fixture
def csv_factory():
    return csv_bytes


@pytest.fixture
def raw_row_factory():
    return raw_row


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def import_context(app, clock):
    return ImportContext.for_app(app, clock=clock, max_workers=2, progress_flush_rows=5)


@pytest.fixture
def controller(import_context):
    return BatchLifecycleController(import_context)


@pytest.fixture
def reference_data(app):
    court = Court(name="Milimani High Court", code="MILHC", court_type=CourtType.HC, is_active=True)
    case_type = CaseType(name="Civil Suit", code="CIVIL", description="Civil suits", is_active=True)
    judge = Judge(
        full_name="Jane Mwangi",
        normalized_name="jane mwangi",
        first_name="Jane",
        last_name="Mwangi",
        is_active=True,
    )
    db.session.add_all([court, case_type, judge])
    db.session.commit()
    return {"court": court, "case_type": case_type, "judge": judge}


@pytest.fixture
def batch_factory(controller):
    """Admit an upload built from row dicts and return the PENDING batch."""

    def _factory(rows=None, *, filename: str = "returns.csv", config=None, **kwargs):
        rows = rows if rows is not None else [make_row()]
        data = rows if isinstance(rows, bytes) else csv_bytes(rows)
        return controller.intake(data, filename=filename, config=config, **kwargs)

    return _factory

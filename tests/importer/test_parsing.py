import pytest

from docket_app.importer.contracts import normalize_header, required_headers_missing
from docket_app.importer.errors import SourceUnreadableError
from docket_app.importer.pipeline.parsing import CSVHeaderError, CaseReturnReader, decode_upload, read_case_rows


def test_read_case_rows_maps_headers_and_counts_rows(csv_factory, row_factory):
    data = csv_factory([row_factory(caseid_no="E001"), row_factory(caseid_no="E002")])

    reader, rows = read_case_rows(data)

    assert [row.row_number for row in rows] == [1, 2]
    assert rows[0].values["caseid_no"] == "E001"
    assert rows[1].values["court"] == "Milimani High Court"
    assert reader.statistics.rows_read == 2
    assert reader.statistics.rows_skipped_empty == 0


def test_blank_and_placeholder_rows_are_skipped_but_keep_numbering(csv_factory, row_factory):
    placeholder = {key: "n/a" for key in row_factory()}
    dashes = {key: "-" for key in row_factory()}
    data = csv_factory([row_factory(caseid_no="E001"), placeholder, dashes, row_factory(caseid_no="E004")])

    reader, rows = read_case_rows(data)

    assert [row.row_number for row in rows] == [1, 4]
    assert reader.statistics.rows_skipped_empty == 2


def test_fully_blank_lines_count_as_empty_rows(csv_factory, row_factory):
    data = csv_factory([row_factory()]) + b"\n" + csv_factory([row_factory(caseid_no="E009")]).split(b"\n", 1)[1]

    reader, rows = read_case_rows(data)

    assert [row.values["caseid_no"] for row in rows] == ["E001", "E009"]
    assert rows[1].row_number == 3
    assert reader.statistics.rows_skipped_empty == 1


def test_header_aliases_case_and_bom_are_accepted(csv_factory, row_factory):
    headers = [
        "Date DD",
        "date-mon",
        "DATE_YYYY",
        "Case Prefix",
        "case.no",
        "Court Name",
        "case_type",
        "Judge",
        "outcome",
        "Custody Status",
    ]
    canonical = [
        "date_dd",
        "date_mon",
        "date_yyyy",
        "caseid_type",
        "caseid_no",
        "court",
        "case_type",
        "judge_1",
        "outcome",
        "custody",
    ]
    row = row_factory()
    body = csv_factory([row], headers=canonical).split(b"\n", 1)[1]
    data = b"\xef\xbb\xbf" + ",".join(headers).encode("utf-8") + b"\n" + body

    reader, rows = read_case_rows(data)

    assert len(rows) == 1
    assert rows[0].values["caseid_type"] == "HCCC"
    assert rows[0].values["judge_1"] == "Hon. Jane Mwangi"
    assert reader.header.unexpected == ()


def test_unexpected_columns_are_reported(csv_factory, row_factory):
    headers = [*row_factory().keys(), "clerk_initials"]
    row = {**row_factory(), "clerk_initials": "JM"}

    reader, rows = read_case_rows(csv_factory([row], headers=headers))

    assert len(rows) == 1
    assert "clerk_initials" not in rows[0].values
    assert reader.statistics.unexpected_columns == ["clerk_initials"]


def test_missing_required_columns_raise_header_error(csv_factory, row_factory):
    headers = [header for header in row_factory() if header not in ("outcome", "custody")]

    with pytest.raises(CSVHeaderError) as excinfo:
        read_case_rows(csv_factory([row_factory()], headers=headers))

    assert excinfo.value.missing == ("outcome", "custody")
    assert "Missing required columns: custody, outcome." in str(excinfo.value)


def test_duplicate_columns_raise_header_error(csv_factory, row_factory):
    headers = [*row_factory().keys(), "court_name"]

    with pytest.raises(CSVHeaderError) as excinfo:
        read_case_rows(csv_factory([row_factory()], headers=headers))

    assert excinfo.value.duplicates == ("court",)


def test_empty_file_is_a_header_error():
    with pytest.raises(CSVHeaderError):
        list(CaseReturnReader("").iter_rows())


def test_non_utf8_upload_is_unreadable():
    with pytest.raises(SourceUnreadableError):
        decode_upload(b"\xff\xfe\x00bad")


def test_normalize_header_and_missing_helper():
    assert normalize_header("  Next-Hearing.Day ") == "next_hearing_day"
    assert required_headers_missing(["date_dd", "Date Mon", "date_yyyy"]) == (
        "caseid_type",
        "caseid_no",
        "court",
        "case_type",
        "judge_1",
        "outcome",
        "custody",
    )

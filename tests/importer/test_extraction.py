from docket_app.importer.pipeline.extraction import (
    build_case_number,
    derive_court_type,
    generate_case_type_code,
    generate_court_code,
    judge_match_key,
    normalize_court_code,
    normalize_court_name,
    parse_judge_name,
    unique_judge_names,
    unique_judge_slots,
    with_numeric_suffix,
)
from docket_app.models import CourtType


def test_normalize_court_name_collapses_whitespace_and_trailing_period():
    assert normalize_court_name("  milimani   HIGH court. ") == "Milimani High Court"
    assert normalize_court_name(None) == ""
    assert normalize_court_code(" mil hc ") == "MIL HC"


def test_generate_court_code_by_word_count():
    assert generate_court_code("Nairobi") == "NAIROB"
    assert generate_court_code("Kibera Law") == "KIBLAW"
    assert generate_court_code("Milimani High Court") == "MIHICO"
    # Short words are ignored when picking initials
    assert generate_court_code("Court of Appeal at Nyeri") == "COAPNY"


def test_derive_court_type_from_case_prefix():
    assert derive_court_type("SCCC") == CourtType.SCC
    assert derive_court_type("SCPET") == CourtType.SC
    assert derive_court_type("ELC") == CourtType.ELC
    assert derive_court_type("ELRC") == CourtType.ELRC
    assert derive_court_type("CoA") == CourtType.COA
    assert derive_court_type("hccc") == CourtType.HC
    assert derive_court_type("MCCR") == CourtType.MC
    assert derive_court_type("KCX") == CourtType.KC
    assert derive_court_type("XYZ") == CourtType.TC
    assert derive_court_type(None) == CourtType.TC


def test_judge_names_are_normalized_and_deduplicated():
    assert judge_match_key("Hon. Jane  Mwangi") == "jane mwangi"
    assert judge_match_key("Lady Justice Jane Mwangi") == "jane mwangi"
    names = unique_judge_names(["Hon. Jane Mwangi", "JUSTICE jane mwangi", None, "", "Peter Otieno"])
    assert names == ["Jane Mwangi", "Peter Otieno"]


def test_unique_judge_slots_keep_the_source_column():
    slots = unique_judge_slots([("judge_1", "Hon. Jane Mwangi"), ("judge_2", "jane mwangi"), ("judge_4", "Peter Otieno")])

    assert slots == [("judge_1", "Jane Mwangi"), ("judge_4", "Peter Otieno")]


def test_parse_judge_name_handles_comma_form():
    assert parse_judge_name("Mwangi, Jane Wanjiru") == ("Jane", "Mwangi")
    assert parse_judge_name("Hon. Jane W. Mwangi") == ("Jane", "Mwangi")
    assert parse_judge_name("Hon.") == ("", "")


def test_case_type_codes_use_known_names_then_initials():
    assert generate_case_type_code("civil   suit") == "CIVIL"
    assert generate_case_type_code("Judicial Review") == "JR"
    assert generate_case_type_code("Land Dispute Matter") == "LDM"


def test_case_number_and_numeric_suffix():
    assert build_case_number(" HCCC ", " E001 ") == "HCCC-E001"
    assert with_numeric_suffix("MIL", set()) == "MIL"
    assert with_numeric_suffix("MIL", {"MIL", "MIL1"}) == "MIL2"

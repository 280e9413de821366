import pytest

from ein_agent.normalize import (
    ADDRESS_EXTRA_CHARS,
    clean_file_token,
    clean_text,
    month_candidates,
    month_from_name,
    normalize_state,
    normalize_zip,
    parse_formation_date,
    parse_month_number,
    split_phone,
    split_ssn,
    state_name,
    strip_entity_suffix,
)


@pytest.mark.parametrize(
    "raw,expected",
    [("California", "CA"), ("ca", "CA"), (" new york ", "NY"), ("D.C.", "DC"), ("District of Columbia", "DC"), ("", "")],
)
def test_normalize_state(raw, expected):
    assert normalize_state(raw) == expected


def test_state_name_round_trip():
    assert state_name("CA") == "California"
    assert state_name("dc") == "District of Columbia"
    assert state_name("Atlantis") == "Atlantis"


def test_zip_keeps_first_five_digits():
    assert normalize_zip("94607-1234") == "94607"
    assert normalize_zip(" 021 39 ") == "02139"
    assert normalize_zip(None) == ""


def test_ssn_and_phone_split():
    assert split_ssn("123-45-6789") == ("123", "45", "6789")
    assert split_ssn("12345") is None
    assert split_phone("+1 (510) 555-0142") == ("510", "555", "0142")
    assert split_phone("555-0142") is None


def test_clean_text_allow_list_and_idempotent():
    once = clean_text("100 Main St., Apt #4 / Rear", ADDRESS_EXTRA_CHARS)
    assert once == "100 Main St Apt 4 / Rear"
    assert clean_text(once, ADDRESS_EXTRA_CHARS) == once
    assert clean_text("Smith & Sons, Inc.") == "Smith & Sons Inc"
    assert clean_text("O'Brien-Hale") == "OBrien-Hale"


def test_clean_file_token():
    assert clean_file_token("Sunrise Holdings, LLC") == "SunriseHoldingsLLC"


def test_strip_entity_suffix_repeats():
    assert strip_entity_suffix("Acme Widgets Corp. Inc", ("Corp", "Inc")) == "Acme Widgets"
    assert strip_entity_suffix("Inc", ("Inc",)) == "Inc"
    assert strip_entity_suffix("Acme LLC", ()) == "Acme LLC"


def test_month_parsing():
    assert parse_month_number("08") == 8
    assert parse_month_number("0") is None
    assert parse_month_number("13") is None
    assert parse_month_number("foo") is None
    assert month_from_name("Aug.") == 8
    assert month_from_name("ma") is None
    assert month_candidates("8") == ["August", "AUGUST", "Aug", "AUG", "08", "8"]
    assert month_candidates("13") == []


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("2024-08-15", (8, 2024)),
        ("2024-08-15T10:30:00.000+0000", (8, 2024)),
        ("03/02/2023", (3, 2023)),
        ("sometime last year", (None, None)),
        (None, (None, None)),
    ],
)
def test_parse_formation_date(raw, expected):
    assert parse_formation_date(raw) == expected

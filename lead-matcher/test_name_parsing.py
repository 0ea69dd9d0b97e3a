"""
Tests for name segmentation and candidate building.
"""

from name_parsing import (
    SearchCandidate,
    build_candidates,
    keep_maximal_entries,
    normalize_phone,
    sanitize_record,
    segment_names,
    split_list,
)


def test_segment_drops_names_contained_in_longer_entries():
    assert segment_names("Smith\nJohn Smith") == ["John Smith"]
    assert keep_maximal_entries(["Smith", "John Smith"]) == ["John Smith"]


def test_segment_splits_on_tabs_newlines_and_space_runs():
    raw = "Anna Lopez\tMark Twain\r\nJane Doe    Bob Ray\n\n"
    assert segment_names(raw) == ["Anna Lopez", "Mark Twain", "Jane Doe", "Bob Ray"]


def test_segment_keeps_single_spaces_inside_a_name():
    assert segment_names("Anna Maria Lopez") == ["Anna Maria Lopez"]


def test_segment_deduplicates_preserving_order():
    assert segment_names("Jane Doe\nBob Ray\nJane Doe") == ["Jane Doe", "Bob Ray"]


def test_segment_empty_input():
    assert segment_names("") == []
    assert segment_names(None) == []
    assert segment_names(" \n\t ") == []


def test_segment_sub_entries_split_on_slash_and_dashes():
    raw = "John Smith / Jane Doe\nMark Twain - Bob Ray\nAnna Lopez-Kim Park"
    assert segment_names(raw, split_sub_entries=True) == [
        "John Smith",
        "Jane Doe",
        "Mark Twain",
        "Bob Ray",
        "Anna Lopez",
        "Kim Park",
    ]


def test_segment_sub_entries_drop_single_words():
    assert segment_names("Smith\nJohn Smith-D\nCher", split_sub_entries=True) == ["John Smith"]


def test_split_list_ignores_blanks_and_null():
    assert split_list("a@x.com; ;null,b@x.com,,") == ["a@x.com", "b@x.com"]
    assert split_list(None) == []


def test_normalize_phone():
    assert normalize_phone("(555) 123-4567") == "5551234567"
    assert normalize_phone("+44 (0) 20 7946") == "+440207946"
    assert normalize_phone("+0044 20") == "+4420"
    assert normalize_phone("0044 20") == "4420"
    assert normalize_phone("000") == "0"
    assert normalize_phone("n/a") == ""


def test_sanitize_record_treats_null_and_blank_as_missing():
    data = sanitize_record({"first_name": "  Ann ", "last_name": "NULL", "personal_city": "", "extra": "x"})
    assert data["first_name"] == "Ann"
    assert data["last_name"] is None
    assert data["personal_city"] is None
    assert "extra" not in data


def test_candidates_name_and_address():
    data = sanitize_record({
        "first_name": "Ann",
        "last_name": "Lee",
        "personal_address": "12  Main St",
        "personal_city": "Austin",
    })
    assert build_candidates(data) == [
        SearchCandidate("name", "first_name+last_name", "Ann Lee"),
        SearchCandidate("address", "personal_address+personal_city", "12 Main St Austin"),
    ]


def test_candidates_need_both_name_parts():
    data = sanitize_record({"first_name": "Ann", "last_name": "null", "personal_address": "12 Main St"})
    assert build_candidates(data) == []


def test_email_shared_between_fields_is_one_candidate_with_both_sources():
    data = sanitize_record({
        "business_email": "Ann@Corp.com",
        "personal_emails": "ann@corp.com; ann.lee@home.net",
    })
    emails = [c for c in build_candidates(data) if c.category == "email"]
    assert [(c.term, c.key) for c in emails] == [
        ("ann@corp.com", "business_email|personal_emails"),
        ("ann.lee@home.net", "personal_emails"),
    ]


def test_phone_candidates_are_normalized_and_traced():
    data = sanitize_record({
        "mobile_phone": "(555) 123-4567",
        "personal_phone": "555.123.4567, +1 555 000 1111",
    })
    phones = [c for c in build_candidates(data) if c.category == "phone"]
    assert [(c.term, c.key) for c in phones] == [
        ("5551234567", "mobile_phone|personal_phone"),
        ("+15550001111", "personal_phone"),
    ]


def test_candidate_equality_ignores_provenance():
    assert SearchCandidate("email", "business_email", "a@x.com") == SearchCandidate("email", "personal_emails", "a@x.com")
    assert SearchCandidate("email", "k", "a@x.com") != SearchCandidate("phone", "k", "a@x.com")


def test_no_candidate_has_an_empty_or_null_term():
    data = sanitize_record({
        "first_name": "null",
        "business_email": "null; ,",
        "mobile_phone": "--",
        "personal_phone": "null",
    })
    assert build_candidates(data) == []

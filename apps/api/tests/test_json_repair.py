import json

import pytest

from services.json_repair import (
    JSONParseError,
    balance_brackets,
    close_truncated_string,
    escape_control_characters,
    extract_json_candidate,
    insert_missing_commas,
    parse_json_safely,
    strip_trailing_commas,
    validate_tech_pack_structure,
)


@pytest.mark.parametrize(
    "text",
    [
        '{"a": 1, "b": [true, false, null], "c": {"d": "e"}}',
        "[1, 2.5, -3e2]",
        '"just a string"',
        "42",
        '{"quote": "she said \\"hi\\"", "unicode": "caf\\u00e9"}',
    ],
)
def test_valid_json_matches_standard_parser(text):
    assert parse_json_safely(text) == json.loads(text)


def test_missing_comma_between_lines_is_inserted():
    assert parse_json_safely('{"a": "b"\n"c": "d"}') == {"a": "b", "c": "d"}


def test_markdown_fenced_block_is_unwrapped():
    assert parse_json_safely('```json\n{"a":1}\n```') == {"a": 1}


def test_trailing_comma_is_removed():
    assert parse_json_safely('{"a": 1,}') == {"a": 1}


def test_truncated_string_is_closed_instead_of_raising():
    result = parse_json_safely('{"a": "unterminated')
    assert result == {"a": "unterminated"}


def test_unparseable_input_raises_with_snippet():
    with pytest.raises(JSONParseError) as exc_info:
        parse_json_safely("not json at all")
    assert "not json at all" in str(exc_info.value)
    assert exc_info.value.snippet == "not json at all"


def test_error_snippet_is_capped_at_500_characters():
    text = "x" * 800
    with pytest.raises(JSONParseError) as exc_info:
        parse_json_safely(text)
    assert exc_info.value.snippet == "x" * 500
    assert "x" * 501 not in str(exc_info.value)


def test_json_surrounded_by_prose_is_extracted():
    text = 'Here is the analysis: {"materials": ["cotton"]} let me know if you need more.'
    assert parse_json_safely(text) == {"materials": ["cotton"]}


def test_raw_newline_inside_string_is_escaped():
    assert parse_json_safely('{"note": "line one\nline two"}') == {"note": "line one\nline two"}


def test_missing_closing_brackets_are_appended():
    assert parse_json_safely('{"a": {"b": [1, 2') == {"a": {"b": [1, 2]}}


def test_byte_order_mark_is_ignored():
    assert parse_json_safely('\ufeff{"a": 1}') == {"a": 1}


def test_extract_candidate_prefers_fenced_block():
    text = 'noise {"ignored": true}\n```json\n{"kept": 1}\n```'
    assert extract_json_candidate(text) == '{"kept": 1}'


def test_repair_steps_are_pure_text_transforms():
    assert strip_trailing_commas('[1, 2, ]') == "[1, 2 ]"
    assert insert_missing_commas('{"a": 1\n"b": 2}') == '{"a": 1,\n"b": 2}'
    assert close_truncated_string('{"a": "b') == '{"a": "b"'
    assert escape_control_characters('{"a": "x\ty"}') == '{"a": "x\\ty"}'
    assert balance_brackets('{"a": [1,') == '{"a": [1]}'


def test_validate_tech_pack_structure_is_shallow():
    assert validate_tech_pack_structure({"materials": []}) is True
    assert validate_tech_pack_structure({"tech_pack": {}}) is True
    assert validate_tech_pack_structure({"unrelated": 1}) is False
    assert validate_tech_pack_structure(["materials"]) is False

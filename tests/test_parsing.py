"""Tests for defensive decoding of model output."""

import pytest
from pydantic import BaseModel

from story_memory.parsing import (
    Ok,
    ParseError,
    coerce_int,
    decode_json,
    decode_model,
    extract_json_object,
    string_list,
    strip_code_fences,
    valid_items,
)


class Point(BaseModel):
    x: int
    y: int = 0


def test_strip_code_fences():
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('{"a": 1}') == '{"a": 1}'


def test_decode_json_plain_and_fenced():
    assert decode_json('{"a": 1}') == Ok({"a": 1})
    assert decode_json('```json\n{"a": [1, 2]}\n```') == Ok({"a": [1, 2]})


def test_decode_json_with_surrounding_prose():
    """JSON embedded in chatter is still found."""
    result = decode_json('Sure! Here you go: {"a": "b {c}"} Hope that helps.')
    assert result == Ok({"a": "b {c}"})


def test_decode_json_repairs_trailing_comma():
    assert decode_json('{"a": [1, 2,],}') == Ok({"a": [1, 2]})


def test_decode_json_reads_non_finite_constants_as_null():
    decoded = decode_json('{"a": Infinity, "b": -Infinity, "c": NaN, "d": 1}')
    assert decoded == Ok({"a": None, "b": None, "c": None, "d": 1})


def test_extract_closes_truncated_object():
    span = extract_json_object('{"a": [1, 2')
    assert span == '{"a": [1, 2]}'
    assert decode_json('{"a": {"b": "unterminated') == Ok({"a": {"b": "unterminated"}})


@pytest.mark.parametrize("text", ["", "   ", None, "no json here", "[1, 2, 3]"])
def test_decode_json_failures_are_values(text):
    """Bad output never raises; it comes back as ParseError."""
    assert isinstance(decode_json(text), ParseError)


def test_decode_model_validates_schema():
    assert decode_model('{"x": 3}', Point) == Ok(Point(x=3))
    result = decode_model('{"y": 3}', Point)
    assert isinstance(result, ParseError)
    assert "schema" in result.reason


def test_valid_items_drops_malformed():
    items = valid_items([{"x": 1}, {"y": 2}, "junk", {"x": "4"}], Point)
    assert [p.x for p in items] == [1, 4]
    assert valid_items("not a list", Point) == []


@pytest.mark.parametrize(
    "value,expected",
    [
        (5, 5),
        (5.9, 5),
        ("12", 12),
        ("index 7", 7),
        ("-3", -3),
        (True, None),
        (None, None),
        ("x", None),
        (float("inf"), None),
        (float("-inf"), None),
        (float("nan"), None),
    ],
)
def test_coerce_int(value, expected):
    assert coerce_int(value) == expected


def test_string_list():
    assert string_list(["a", " ", None, 3, {"x": 1}, " b "]) == ["a", "3", "b"]
    assert string_list("solo") == ["solo"]
    assert string_list(None) == []

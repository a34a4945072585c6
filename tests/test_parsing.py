from __future__ import annotations

import pytest

from cswap.parsing import dig, first_parsed, parse_bool, parse_int


class DecimalLike:
    def __init__(self, text: str) -> None:
        self.text = text

    def __str__(self) -> str:
        return self.text


class ExplodingStr:
    def __str__(self) -> str:
        raise RuntimeError("boom")


@pytest.mark.parametrize(
    "value, expected",
    [
        (7, 7),
        ("42", 42),
        (" 12 ", 12),
        ("-3", -3),
        (5.0, 5),
        ({"_bn": "99"}, 99),
        ({"$bigint": 18}, 18),
        (DecimalLike("123456789012345678901234567890"), 123456789012345678901234567890),
        (True, 1),
    ],
)
def test_parse_int_accepts_known_shapes(value, expected) -> None:
    assert parse_int(value) == expected


@pytest.mark.parametrize("value", [None, "", "abc", 1.5, b"\x01", [1], {"rootIndex": 3}, ExplodingStr()])
def test_parse_int_returns_none_instead_of_raising(value) -> None:
    assert parse_int(value) is None


def test_parse_bool_variants() -> None:
    assert parse_bool(True) is True
    assert parse_bool("true") is True
    assert parse_bool("1") is True
    assert parse_bool("False") is False
    assert parse_bool(0) is False
    assert parse_bool(2) is None
    assert parse_bool("maybe") is None
    assert parse_bool(None) is None


def test_first_parsed_skips_unparseable_candidates() -> None:
    assert first_parsed([None, "x", {"_bn": "4"}, 9], parse_int) == 4
    assert first_parsed([None, "nope"], parse_int) is None


def test_dig_walks_mappings_and_sequences() -> None:
    payload = {"value": {"accounts": [{"rootIndex": {"rootIndex": 5}}]}}

    assert dig(payload, "value", "accounts", 0, "rootIndex", "rootIndex") == 5
    assert dig(payload, "value", "accounts", 3) is None
    assert dig(payload, "missing", "deeper") is None
    assert dig("text", 0) is None

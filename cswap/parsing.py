"""Tolerant parsing of numeric and boolean fields from external responses.

Indexer and ledger responses encode the same field as a plain number, a
decimal string, a big-integer wrapper such as ``{"_bn": "5"}``, or a string
boolean depending on endpoint and version. Every helper here returns ``None``
instead of raising when a value does not fit, so callers can walk a
precedence list and keep the first value that parses.
"""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, TypeVar

T = TypeVar("T")

_BIGNUM_KEYS = ("_bn", "bn", "$bigint")
_TRUE_STRINGS = {"true", "1"}
_FALSE_STRINGS = {"false", "0"}


def _parse_decimal_string(raw: str) -> Optional[int]:
    text = raw.strip()
    if not text:
        return None
    sign = 1
    if text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if not text.isdigit():
        return None
    return sign * int(text)


def parse_int(value: Any) -> Optional[int]:
    """Return ``value`` as an ``int`` or ``None`` when it cannot be read as one.

    Accepted shapes: ``int``, integral ``float``, decimal string, a mapping
    with a single big-integer key (``_bn``), and any other object whose
    ``str()`` is a decimal string. Booleans map to ``0``/``1``.
    """

    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        return _parse_decimal_string(value)
    if isinstance(value, (bytes, bytearray)):
        return None
    if isinstance(value, Mapping):
        for key in _BIGNUM_KEYS:
            if key in value:
                return parse_int(value[key])
        return None
    if isinstance(value, (list, tuple, set)):
        return None
    try:
        rendered = str(value)
    except Exception:  # noqa: BLE001 - foreign __str__ must never escape the parser
        return None
    return _parse_decimal_string(rendered)


def parse_bool(value: Any) -> Optional[bool]:
    """Return ``value`` as a ``bool`` or ``None`` when the shape is unknown."""

    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
        return None
    parsed = parse_int(value)
    if parsed in (0, 1):
        return bool(parsed)
    return None


def first_parsed(candidates: Iterable[Any], parser: Callable[[Any], Optional[T]]) -> Optional[T]:
    """Return the first candidate that ``parser`` accepts, in iteration order."""

    for candidate in candidates:
        parsed = parser(candidate)
        if parsed is not None:
            return parsed
    return None


def dig(value: Any, *path: Any) -> Any:
    """Walk nested mappings/sequences along ``path`` returning ``None`` on any miss."""

    current = value
    for step in path:
        if current is None:
            return None
        if isinstance(step, int):
            if isinstance(current, Sequence) and not isinstance(current, (str, bytes)) and -len(current) <= step < len(current):
                current = current[step]
            else:
                return None
        elif isinstance(current, Mapping):
            current = current.get(step)
        else:
            current = getattr(current, step, None)
    return current

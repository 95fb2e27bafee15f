"""
Value coercion helpers for the state document.

State values arrive from many places (rule parameters authored as strings,
JSON blobs parsed on write, numbers produced by handlers) and the rule types
depend on "numeric-looking string" semantics: an error count stored as "2"
must compare and increment like the number 2.

These helpers reproduce the coercion rules the dialogue configuration was
authored against:

  is_number("12")     → True     is_number("12abc") → False
  is_number("")       → False    is_number(" 7 ")   → True
  to_number("")       → 0        to_number(None)    → 0
  to_number("abc")    → nan      to_number(True)    → 1
"""
from __future__ import annotations

import math
import re
from typing import Any

_STRICT_NUMBER = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_LEADING_NUMBER = re.compile(r"^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_HEX_NUMBER = re.compile(r"^0[xX][0-9a-fA-F]+$")

NULL_LIKE = (None, "null", "undefined")


def to_number(value: Any) -> float:
    """Strict numeric conversion. Unparseable input returns nan."""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if text == "":
            return 0.0
        if _STRICT_NUMBER.match(text):
            return float(text)
        if _HEX_NUMBER.match(text):
            return float(int(text, 16))
        if text in ("Infinity", "+Infinity"):
            return math.inf
        if text == "-Infinity":
            return -math.inf
    return math.nan


def parse_float(value: Any) -> float:
    """Lenient conversion reading the leading numeric prefix of a string."""
    if isinstance(value, bool) or value is None:
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    match = _LEADING_NUMBER.match(str(value))
    if not match:
        return math.nan
    return float(match.group(0))


def is_number(value: Any) -> bool:
    """True when the value parses as a number and is finite."""
    return not math.isnan(parse_float(value)) and math.isfinite(to_number(value))


def to_int(value: Any, default: int = 0) -> int:
    """Integer form of a numeric-looking value, or ``default``."""
    number = to_number(value)
    if math.isnan(number) or math.isinf(number):
        return default
    return int(number)


def is_empty_string(value: Any) -> bool:
    return value is None or value == ""


def is_null_or_undefined(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value in NULL_LIKE)


def format_number(value: float) -> str:
    """Render a number the way it is stored back into state ('3', not '3.0')."""
    if math.isfinite(value) and value == int(value):
        return str(int(value))
    return repr(value)

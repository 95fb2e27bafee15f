"""
Session state — the nested document every rule reads and writes.

Quick start:
  from state import StateDocument, UNSET
  doc = StateDocument(stored)
  doc.update("Customer.name", "Ada")
"""
from state.document import StateDocument, UNSET, parse_json_value
from state.values import (
    is_number, to_number, to_int, parse_float,
    is_empty_string, is_null_or_undefined, format_number,
)

__all__ = [
    "StateDocument", "UNSET", "parse_json_value",
    "is_number", "to_number", "to_int", "parse_float",
    "is_empty_string", "is_null_or_undefined", "format_number",
]

"""
State Document — the per-session key/value tree the dialogue runs against.

A session's state is a nested JSON-compatible tree keyed by strings. Rules
read it (weights, templates, handler configuration exported under
``CurrentRule_*``) and write it (captured input, navigation bookkeeping,
attributes). Every write goes through ``update()`` which:

  - addresses nested fields with dotted paths ("a.b.c"); numeric segments
    index arrays and ``length`` reads an array's length
  - eagerly parses strings that look like JSON objects/arrays
  - treats ``UNSET`` as a delete, and a delete of an absent key as a no-op
  - refuses to overwrite a scalar sitting on an intermediate segment
  - rejects negative index segments ("a.-1") under any parent
  - records the top-level key in the dirty set, once per turn

The dirty set is the authoritative list of top-level keys the state store
must persist at turn end; keys in the dirty set that are absent from the
document are deletions.

Usage:
    doc = StateDocument({"System": {"ContactId": "c1"}})
    doc.update("Customer.accounts.0.balance", "120")
    doc.get_path("Customer.accounts.length")   # → 1
    doc.dirty                                   # → {"Customer"}
"""
from __future__ import annotations

import copy
import json
import structlog
from typing import Any, Iterator, Optional

from state.values import is_null_or_undefined

logger = structlog.get_logger()


class _Unset:
    """Marker for an absent value; writing it deletes the addressed field."""

    _instance: Optional["_Unset"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False

    def __deepcopy__(self, memo):
        return self


UNSET = _Unset()


def parse_json_value(value: Any) -> Any:
    """Parse strings shaped like a JSON object or array, else return as-is."""
    if not isinstance(value, str):
        return value
    if (value.startswith("{") and value.endswith("}")) or (
        value.startswith("[") and value.endswith("]")
    ):
        try:
            return json.loads(value)
        except ValueError as e:
            logger.warning("state_json_parse_failed", value=value[:64], error=str(e))
    return value


def _is_container(value: Any) -> bool:
    return isinstance(value, (dict, list))


def _array_index(segment: str) -> Optional[int]:
    """Non-negative integer index for a path segment, or None."""
    if segment.isascii() and segment.isdigit():
        return int(segment)
    return None


def _negative_index(segment: str) -> bool:
    """True for segments like "-1"; such writes are rejected whatever the parent."""
    return segment.startswith("-") and _array_index(segment[1:]) is not None


class StateDocument:
    """Mutable session state with dotted-path writes and dirty-key tracking."""

    def __init__(self, data: Optional[dict[str, Any]] = None):
        self._data: dict[str, Any] = dict(data or {})
        self._dirty: set[str] = set()

    # ── Mapping-style access ──────────────────────────────────

    @property
    def data(self) -> dict[str, Any]:
        return self._data

    @property
    def dirty(self) -> set[str]:
        return self._dirty

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def keys(self) -> list[str]:
        return list(self._data.keys())

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def clone(self) -> "StateDocument":
        """Deep copy with an empty dirty set, for rendering against what-if state."""
        return StateDocument(copy.deepcopy(self._data))

    # ── Dirty-key bookkeeping ─────────────────────────────────

    def mark_dirty(self, key: str) -> None:
        self._dirty.add(key)

    def take_dirty(self) -> list[str]:
        """Return the dirty keys in a stable order and clear the set."""
        keys = sorted(self._dirty)
        self._dirty.clear()
        return keys

    def clear_dirty(self) -> None:
        self._dirty.clear()

    # ── Reads ─────────────────────────────────────────────────

    def get_path(self, path: Optional[str]) -> Any:
        """
        Walk a dotted path and return the value found, or None.
        The segment ``length`` on an array returns the array's length.
        """
        if path is None or path == "":
            return None
        current: Any = self._data
        for segment in path.split("."):
            if segment == "length" and isinstance(current, list):
                current = len(current)
            elif current is None:
                return None
            elif isinstance(current, dict):
                current = current.get(segment)
            elif isinstance(current, list):
                index = _array_index(segment)
                if index is None or index >= len(current):
                    return None
                current = current[index]
            else:
                return None
        return current

    # ── Writes ────────────────────────────────────────────────

    def delete(self, path: str) -> bool:
        return self.update(path, UNSET)

    def update(self, path: Optional[str], value: Any = UNSET) -> bool:
        """
        Write ``value`` at ``path``. Returns True when the document changed
        shape or content was written, False when the write was a no-op.
        """
        if path is None or not isinstance(path, str) or path == "":
            return False
        segments = path.split(".")
        if any(s == "" or is_null_or_undefined(s) or _negative_index(s) for s in segments):
            logger.debug("state_write_rejected", path=path, reason="invalid_segment")
            return False

        value = parse_json_value(value)
        top = segments[0]

        if len(segments) == 1:
            if value is UNSET:
                if top not in self._data:
                    return False
                del self._data[top]
            else:
                self._data[top] = value
            self._dirty.add(top)
            return True

        existing = self._data.get(top)
        if existing is not None and not _is_container(existing):
            logger.debug("state_write_rejected", path=path, reason="scalar_intermediate")
            return False
        if existing is None and value is UNSET:
            return False

        # Work on a copy so a rejected write leaves the document untouched
        if existing is None:
            working: Any = [] if _array_index(segments[1]) is not None else {}
        else:
            working = copy.deepcopy(existing)

        if not self._write_nested(working, segments[1:], value):
            logger.debug("state_write_rejected", path=path, reason="unwritable_path")
            return False

        self._data[top] = working
        self._dirty.add(top)
        return True

    @staticmethod
    def _write_nested(container: Any, segments: list[str], value: Any) -> bool:
        current = container
        for i, segment in enumerate(segments):
            last = i == len(segments) - 1

            if isinstance(current, list):
                if segment == "length":
                    return False
                index = _array_index(segment)
                if index is None:
                    return False
                if last:
                    if value is UNSET:
                        if index >= len(current):
                            return False
                        current[index] = None
                        return True
                    if index >= len(current):
                        current.extend([None] * (index - len(current) + 1))
                    current[index] = value
                    return True
                child = current[index] if index < len(current) else None
                if child is None:
                    if value is UNSET:
                        return False
                    child = [] if _array_index(segments[i + 1]) is not None else {}
                    if index >= len(current):
                        current.extend([None] * (index - len(current) + 1))
                    current[index] = child
                elif not _is_container(child):
                    return False
                current = child
                continue

            # dict
            if last:
                if value is UNSET:
                    if segment not in current:
                        return False
                    del current[segment]
                    return True
                current[segment] = value
                return True
            child = current.get(segment)
            if child is None:
                if value is UNSET:
                    return False
                child = [] if _array_index(segments[i + 1]) is not None else {}
                current[segment] = child
            elif not _is_container(child):
                return False
            current = child
        return False

    # ── Bulk operations ───────────────────────────────────────

    def prune_prefix(self, prefix: str) -> list[str]:
        """Delete every top-level key starting with ``prefix``."""
        removed = [k for k in self._data if k.startswith(prefix)]
        for key in removed:
            self.delete(key)
        return removed

    def __repr__(self):
        return f"<StateDocument keys={len(self._data)} dirty={sorted(self._dirty)}>"

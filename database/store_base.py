"""
Abstract State Store — interface for all session-state backends.

Implementations:
  - SqlStateStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStateStore (dict-based, single-process, no persistence)
  - FileStateStore     (one JSON file per session, single-process, durable)

A session's state is stored as independent top-level keys. ``put`` writes
only the keys it is given, so two writers touching different keys never
lose each other's updates; for the same key the last writer wins. A key
listed as dirty but absent from the document is deleted.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable

from state.document import StateDocument


class BaseStateStore(ABC):
    """Interface that all state store backends must implement."""

    @abstractmethod
    async def get(self, session_id: str) -> StateDocument:
        """Load a session's state; an unknown session yields an empty document."""
        ...

    @abstractmethod
    async def put(self, session_id: str, document: StateDocument, dirty_keys: Iterable[str]) -> None:
        """Persist ``dirty_keys`` of ``document``."""
        ...

    async def update_keys(self, session_id: str, values: dict[str, Any]) -> None:
        """Write top-level keys directly; used by out-of-process workers."""
        document = StateDocument()
        for key, value in values.items():
            document.update(key, value)
        await self.put(session_id, document, list(values.keys()))

    async def persist_dirty(self, session_id: str, document: StateDocument) -> list[str]:
        """Persist and clear the document's dirty keys. Returns the keys written."""
        dirty = document.take_dirty()
        if dirty:
            await self.put(session_id, document, dirty)
        return dirty

    async def close(self) -> None:
        pass

"""
InMemoryStateStore — dict-based store for development and testing.

Data lives in process memory and is lost on restart. Values are deep
copied on the way in and out so callers never share structure with the
store.
"""
from __future__ import annotations

import copy
import structlog
from typing import Any, Iterable

from database.store_base import BaseStateStore
from state.document import StateDocument

logger = structlog.get_logger()


class InMemoryStateStore(BaseStateStore):

    def __init__(self):
        self._sessions: dict[str, dict[str, Any]] = {}

    async def get(self, session_id: str) -> StateDocument:
        return StateDocument(copy.deepcopy(self._sessions.get(session_id, {})))

    async def put(self, session_id: str, document: StateDocument, dirty_keys: Iterable[str]) -> None:
        record = self._sessions.setdefault(session_id, {})
        written = []
        for key in dirty_keys:
            if key in document:
                record[key] = copy.deepcopy(document[key])
            else:
                record.pop(key, None)
            written.append(key)
        logger.debug("state_persisted", backend="memory", contact_id=session_id, keys=written)

    # ── Test helpers ──────────────────────────────────────────

    def sessions(self) -> list[str]:
        return list(self._sessions.keys())

    def clear(self) -> None:
        self._sessions.clear()

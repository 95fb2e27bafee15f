"""
FileStateStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    {session_id}.json        one object of top-level state keys per session

Features:
  - Survives process restarts (unlike InMemoryStateStore)
  - No external dependencies (no database server)
  - Each put() reads the session file, merges the dirty keys and writes
    the file back atomically (write to .tmp, then rename)
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import re
import structlog
from pathlib import Path
from typing import Any, Iterable

from database.store_base import BaseStateStore
from engine.errors import CollaboratorError
from state.document import StateDocument

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class FileStateStore(BaseStateStore):

    def __init__(self, data_dir: str = "./data"):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    def _file_path(self, session_id: str) -> Path:
        return self._data_dir / f"{_UNSAFE_CHARS.sub('_', session_id)}.json"

    def _read(self, session_id: str) -> dict[str, Any]:
        path = self._file_path(session_id)
        if not path.exists():
            return {}
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("file_store_load_error", contact_id=session_id, error=str(e))
            raise CollaboratorError(f"Failed to read state for {session_id}: {e}", "store", session_id) from e
        return data if isinstance(data, dict) else {}

    def _write(self, session_id: str, data: dict[str, Any]) -> None:
        path = self._file_path(session_id)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)

    async def get(self, session_id: str) -> StateDocument:
        return StateDocument(self._read(session_id))

    async def put(self, session_id: str, document: StateDocument, dirty_keys: Iterable[str]) -> None:
        async with self._lock:
            data = self._read(session_id)
            for key in dirty_keys:
                if key in document:
                    data[key] = document[key]
                else:
                    data.pop(key, None)
            try:
                self._write(session_id, data)
            except OSError as e:
                logger.error("file_store_write_error", contact_id=session_id, error=str(e))
                raise CollaboratorError(f"Failed to write state for {session_id}: {e}", "store", session_id) from e
        logger.debug("state_persisted", backend="file", contact_id=session_id)

"""
Store Factory — one process-wide state store chosen by ``database.store_backend``.

    database:
      store_backend: memory     # memory | file | sql
      store_file_dir: ./data    # file backend only
      url: sqlite:///./rules_engine.db   # sql backend only, see session.py

Usage:
    store = create_store(settings.database)   # first call decides the backend
    store = get_store()                       # the same instance afterwards
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseStateStore

logger = structlog.get_logger()

STORE_BACKENDS = ("memory", "file", "sql")

_instance: Optional[BaseStateStore] = None


def _build(config: DatabaseConfig) -> BaseStateStore:
    backend = config.store_backend
    if backend == "sql":
        from database.store import SqlStateStore
        return SqlStateStore()
    if backend == "file":
        from database.store_file import FileStateStore
        return FileStateStore(data_dir=config.store_file_dir)
    if backend != "memory":
        logger.warning("unknown_store_backend", backend=backend, supported=STORE_BACKENDS, using="memory")
    from database.store_memory import InMemoryStateStore
    return InMemoryStateStore()


def create_store(config: Optional[DatabaseConfig] = None) -> BaseStateStore:
    """Create the store on first call; later calls return the existing one."""
    global _instance
    if _instance is None:
        config = config or DatabaseConfig()
        _instance = _build(config)
        logger.info("store_created", backend=type(_instance).__name__, requested=config.store_backend)
    return _instance


def get_store() -> BaseStateStore:
    return create_store()


def reset_store() -> None:
    """Forget the singleton (for testing)."""
    global _instance
    _instance = None

"""
Database layer — session state persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (one JSON file per session, for small deployments)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  state = await store.get("interactive-1234")
"""
from database.models import Base, SessionStateRow
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseStateStore
from database.store import SqlStateStore
from database.store_memory import InMemoryStateStore
from database.store_file import FileStateStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base", "SessionStateRow",
    "get_engine", "get_session", "init_db", "close_db",
    "BaseStateStore", "SqlStateStore", "InMemoryStateStore", "FileStateStore",
    "create_store", "get_store", "reset_store",
]

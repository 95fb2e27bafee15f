"""
Tests for all session-state store backends.

Covers:
  - InMemoryStateStore
  - FileStateStore (JSON file persistence)
  - SqlStateStore (via SQLite for test portability)
  - key-level writes shared by every backend
  - Store factory and URL translation
"""
import json
import os

import pytest
import pytest_asyncio

from config.settings import DatabaseConfig
from state.document import StateDocument


def document(**values) -> StateDocument:
    doc = StateDocument()
    for key, value in values.items():
        doc.update(key, value)
    return doc


# ──────────────────────────────────────────────────────────────
#  Behaviour shared by every backend
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(params=["memory", "file", "sql"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        from database.store_memory import InMemoryStateStore
        yield InMemoryStateStore()
    elif request.param == "file":
        from database.store_file import FileStateStore
        yield FileStateStore(data_dir=str(tmp_path / "sessions"))
    else:
        from database.session import close_db, init_db
        from database.store import SqlStateStore
        await close_db()
        await init_db(f"sqlite:///{tmp_path / 'state.db'}")
        yield SqlStateStore()
        await close_db()


class TestStateStoreContract:
    @pytest.mark.asyncio
    async def test_unknown_session_is_empty(self, any_store):
        state = await any_store.get("nobody")
        assert state.to_dict() == {}

    @pytest.mark.asyncio
    async def test_persist_dirty_round_trip(self, any_store):
        doc = document(Customer={"name": "Alex", "accounts": ["a-1", "a-2"]}, CurrentRule="Menu")
        written = await any_store.persist_dirty("c-1", doc)

        assert written == ["CurrentRule", "Customer"]
        assert doc.dirty == set()
        loaded = await any_store.get("c-1")
        assert loaded.get_path("Customer.accounts.1") == "a-2"
        assert loaded.get("CurrentRule") == "Menu"

    @pytest.mark.asyncio
    async def test_only_dirty_keys_written(self, any_store):
        await any_store.persist_dirty("c-1", document(A="1", B="1"))

        # a second writer changes B; a stale copy then writes only A
        await any_store.update_keys("c-1", {"B": "2"})
        stale = await any_store.get("c-1")
        stale.clear_dirty()
        stale.update("A", "3")
        await any_store.persist_dirty("c-1", stale)

        loaded = await any_store.get("c-1")
        assert loaded.get("A") == "3"
        assert loaded.get("B") == "2"

    @pytest.mark.asyncio
    async def test_deleted_key_removed(self, any_store):
        await any_store.persist_dirty("c-1", document(A="1", B="1"))
        doc = await any_store.get("c-1")
        doc.update("A")
        await any_store.persist_dirty("c-1", doc)

        loaded = await any_store.get("c-1")
        assert "A" not in loaded
        assert loaded.get("B") == "1"

    @pytest.mark.asyncio
    async def test_sessions_isolated(self, any_store):
        await any_store.persist_dirty("c-1", document(A="1"))
        await any_store.persist_dirty("c-2", document(A="2"))
        assert (await any_store.get("c-1")).get("A") == "1"
        assert (await any_store.get("c-2")).get("A") == "2"

    @pytest.mark.asyncio
    async def test_nothing_dirty_writes_nothing(self, any_store):
        assert await any_store.persist_dirty("c-1", StateDocument()) == []
        assert (await any_store.get("c-1")).to_dict() == {}


# ──────────────────────────────────────────────────────────────
#  InMemoryStateStore
# ──────────────────────────────────────────────────────────────

class TestInMemoryStateStore:
    @pytest.fixture
    def store(self):
        from database.store_memory import InMemoryStateStore
        return InMemoryStateStore()

    @pytest.mark.asyncio
    async def test_values_are_copied(self, store):
        doc = document(Customer={"name": "Alex"})
        await store.persist_dirty("c-1", doc)
        doc.get("Customer")["name"] = "Changed"

        loaded = await store.get("c-1")
        loaded.get("Customer")["name"] = "Also changed"
        assert (await store.get("c-1")).get_path("Customer.name") == "Alex"

    @pytest.mark.asyncio
    async def test_clear(self, store):
        await store.persist_dirty("c-1", document(A="1"))
        assert store.sessions() == ["c-1"]
        store.clear()
        assert store.sessions() == []


# ──────────────────────────────────────────────────────────────
#  FileStateStore
# ──────────────────────────────────────────────────────────────

class TestFileStateStore:
    @pytest.fixture
    def data_dir(self, tmp_path):
        return str(tmp_path / "sessions")

    @pytest.mark.asyncio
    async def test_persistence_across_instances(self, data_dir):
        from database.store_file import FileStateStore

        store1 = FileStateStore(data_dir=data_dir)
        await store1.persist_dirty("c-1", document(Customer={"name": "Alex"}))
        assert os.path.exists(os.path.join(data_dir, "c-1.json"))

        store2 = FileStateStore(data_dir=data_dir)
        loaded = await store2.get("c-1")
        assert loaded.get_path("Customer.name") == "Alex"

    @pytest.mark.asyncio
    async def test_unsafe_session_id_sanitised(self, data_dir):
        from database.store_file import FileStateStore

        store = FileStateStore(data_dir=data_dir)
        await store.persist_dirty("../escape/c 1", document(A="1"))
        assert os.listdir(data_dir) == [".._escape_c_1.json"]
        assert (await store.get("../escape/c 1")).get("A") == "1"

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, data_dir):
        from database.store_file import FileStateStore
        from engine.errors import CollaboratorError

        store = FileStateStore(data_dir=data_dir)
        with open(os.path.join(data_dir, "c-1.json"), "w") as f:
            f.write("{invalid json!!!")

        with pytest.raises(CollaboratorError):
            await store.get("c-1")

    @pytest.mark.asyncio
    async def test_file_is_plain_json(self, data_dir):
        from database.store_file import FileStateStore

        store = FileStateStore(data_dir=data_dir)
        await store.persist_dirty("c-1", document(A="1", B={"c": "2"}))
        with open(os.path.join(data_dir, "c-1.json")) as f:
            assert json.load(f) == {"A": "1", "B": {"c": "2"}}


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def setup_method(self):
        from database.store_factory import reset_store
        reset_store()

    def teardown_method(self):
        from database.store_factory import reset_store
        reset_store()

    def test_create_memory_store(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStateStore
        store = create_store(DatabaseConfig(store_backend="memory"))
        assert isinstance(store, InMemoryStateStore)

    def test_create_file_store(self, tmp_path):
        from database.store_factory import create_store
        from database.store_file import FileStateStore
        store = create_store(DatabaseConfig(store_backend="file", store_file_dir=str(tmp_path)))
        assert isinstance(store, FileStateStore)

    def test_create_sql_store(self):
        from database.store_factory import create_store
        from database.store import SqlStateStore
        store = create_store(DatabaseConfig(store_backend="sql"))
        assert isinstance(store, SqlStateStore)

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStateStore
        assert isinstance(create_store(), InMemoryStateStore)

    def test_unknown_backend_falls_back_to_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStateStore
        assert isinstance(create_store(DatabaseConfig(store_backend="redis")), InMemoryStateStore)

    def test_first_configuration_wins(self, tmp_path):
        from database.store_factory import create_store
        from database.store_memory import InMemoryStateStore
        create_store(DatabaseConfig(store_backend="memory"))
        again = create_store(DatabaseConfig(store_backend="file", store_file_dir=str(tmp_path)))
        assert isinstance(again, InMemoryStateStore)

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store(DatabaseConfig(store_backend="memory"))
        s2 = get_store()
        assert s1 is s2


# ──────────────────────────────────────────────────────────────
#  Database Session — URL Translation
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("mysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("mysql+pymysql://u:p@h/db", "mysql+aiomysql://u:p@h/db"),
        ("sqlite:///./test.db", "sqlite+aiosqlite:///./test.db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
    ])
    def test_translation(self, url, expected):
        from database.session import _to_async_url
        assert _to_async_url(url) == expected

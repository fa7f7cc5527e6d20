"""
Tests for storage backends and atomic unit support
"""

import pytest
import sqlite3
import threading
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from enum import Enum

from bankcore.config import BankcoreConfig
from bankcore.errors import DuplicateRecordError
from bankcore.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, create_storage, to_json_value
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Both backends, SQLite on a temporary file"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestBasicOperations:
    """CRUD behaviour shared by every backend"""

    def test_save_and_load(self, storage):
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.load("test_table", "missing") is None

    def test_exists_count_and_delete(self, storage):
        storage.save("test_table", "record_1", test_data)
        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})

        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")
        assert storage.count("test_table") == 2

        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

    def test_save_replaces_existing(self, storage):
        storage.save("test_table", "record_1", {"id": "record_1", "value": 1})
        storage.save("test_table", "record_1", {"id": "record_1", "value": 2})

        assert storage.load("test_table", "record_1")["value"] == 2
        assert storage.count("test_table") == 1

    def test_find_matches_every_filter(self, storage):
        storage.save("people", "1", {"id": "1", "role": "admin", "active": True})
        storage.save("people", "2", {"id": "2", "role": "admin", "active": False})
        storage.save("people", "3", {"id": "3", "role": "user", "active": True})

        found = storage.find("people", {"role": "admin", "active": True})
        assert [r["id"] for r in found] == ["1"]
        assert len(storage.find("people", {})) == 3
        assert storage.find("people", {"missing_key": "x"}) == []

    def test_find_converts_filter_values(self, storage):
        class Color(Enum):
            RED = "red"

        storage.save("things", "1", {"id": "1", "color": "red", "price": "9.99"})

        assert len(storage.find("things", {"color": Color.RED})) == 1
        assert len(storage.find("things", {"price": Decimal("9.99")})) == 1

    def test_clear_table(self, storage):
        storage.save("test_table", "record_1", test_data)
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_loaded_records_are_copies(self, storage):
        storage.save("test_table", "record_1", {"id": "record_1", "nested": {"a": 1}})

        loaded = storage.load("test_table", "record_1")
        loaded["nested"]["a"] = 99

        assert storage.load("test_table", "record_1")["nested"]["a"] == 1


class TestInsert:
    """Create-only writes"""

    def test_insert_creates_record(self, storage):
        storage.insert("keys", "acct:2025-01", {"id": "acct:2025-01"})
        assert storage.exists("keys", "acct:2025-01")

    def test_insert_refuses_existing_id(self, storage):
        storage.insert("keys", "acct:2025-01", {"id": "acct:2025-01", "n": 1})

        with pytest.raises(DuplicateRecordError) as exc_info:
            storage.insert("keys", "acct:2025-01", {"id": "acct:2025-01", "n": 2})

        assert exc_info.value.table == "keys"
        assert exc_info.value.record_id == "acct:2025-01"
        assert storage.load("keys", "acct:2025-01")["n"] == 1


class TestAtomic:
    """Atomic units commit or discard all their writes together"""

    def test_commit_keeps_all_writes(self, storage):
        with storage.atomic():
            storage.save("a", "1", {"id": "1"})
            storage.save("b", "2", {"id": "2"})

        assert storage.exists("a", "1")
        assert storage.exists("b", "2")

    def test_rollback_discards_all_writes(self, storage):
        storage.save("a", "existing", {"id": "existing", "value": "before"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("a", "1", {"id": "1"})
                storage.save("a", "existing", {"id": "existing", "value": "after"})
                raise RuntimeError("boom")

        assert not storage.exists("a", "1")
        assert storage.load("a", "existing")["value"] == "before"

    def test_duplicate_insert_rolls_back_unit(self, storage):
        storage.insert("keys", "k", {"id": "k"})

        with pytest.raises(DuplicateRecordError):
            with storage.atomic():
                storage.save("transactions", "t1", {"id": "t1"})
                storage.insert("keys", "k", {"id": "k"})

        assert not storage.exists("transactions", "t1")

    def test_nested_units_join_outermost(self, storage):
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("a", "outer", {"id": "outer"})
                with storage.atomic():
                    storage.save("a", "inner", {"id": "inner"})
                raise ValueError("outer fails after inner completed")

        assert not storage.exists("a", "outer")
        assert not storage.exists("a", "inner")

    def test_storage_usable_after_rollback(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh_table", "1", {"id": "1"})
                raise RuntimeError("boom")

        storage.save("fresh_table", "2", {"id": "2"})
        assert storage.count("fresh_table") == 1


class TestInMemoryConcurrency:
    """Other threads wait while a unit is open"""

    def test_other_thread_waits_for_open_unit(self):
        storage = InMemoryStorage()
        entered = threading.Event()
        release = threading.Event()
        seen = []

        def holder():
            with storage.atomic():
                storage.save("a", "1", {"id": "1", "state": "draft"})
                entered.set()
                release.wait(timeout=5)
                storage.save("a", "1", {"id": "1", "state": "final"})

        def reader():
            entered.wait(timeout=5)
            seen.append(storage.load("a", "1")["state"])

        t1 = threading.Thread(target=holder)
        t2 = threading.Thread(target=reader)
        t1.start()
        t2.start()
        entered.wait(timeout=5)
        release.set()
        t1.join(timeout=5)
        t2.join(timeout=5)

        assert seen == ["final"]


class FailingCommitConnection:
    """Connection wrapper whose commit always fails"""

    def __init__(self, connection):
        self._connection = connection

    def commit(self):
        raise sqlite3.OperationalError("disk I/O error")

    def __getattr__(self, name):
        return getattr(self._connection, name)


class TestSQLiteLocking:
    """A unit that cannot open or commit leaves the storage usable"""

    def test_failed_begin_releases_lock(self, tmp_path):
        path = tmp_path / "shared.db"
        holder = SQLiteStorage(path)
        blocked = SQLiteStorage(path, timeout=0.1)
        blocked.save("t", "x", {"id": "x", "value": 1})

        holder.begin_transaction()
        try:
            with pytest.raises(sqlite3.OperationalError):
                with blocked.atomic():
                    blocked.save("t", "y", {"id": "y", "value": 2})
        finally:
            holder.rollback()

        loaded = []
        worker = threading.Thread(target=lambda: loaded.append(blocked.load("t", "x")))
        worker.start()
        worker.join(timeout=5)

        assert not worker.is_alive()
        assert loaded == [{"id": "x", "value": 1}]

        with blocked.atomic():
            blocked.save("t", "y", {"id": "y", "value": 2})
        assert blocked.exists("t", "y")

        holder.close()
        blocked.close()

    def test_failed_commit_rolls_back(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "commit.db")
        storage.save("t", "x", {"id": "x", "value": 1})
        connection = storage._connection
        storage._connection = FailingCommitConnection(connection)

        try:
            with pytest.raises(sqlite3.OperationalError, match="disk I/O error"):
                with storage.atomic():
                    storage.save("t", "y", {"id": "y", "value": 2})
        finally:
            storage._connection = connection

        assert not connection.in_transaction
        assert not storage.exists("t", "y")

        with storage.atomic():
            storage.save("t", "z", {"id": "z", "value": 3})
        assert storage.exists("t", "z")
        storage.close()


class TestRecordsAndFactory:

    def test_storage_record_round_trip(self):
        @dataclass
        class Sample(StorageRecord):
            amount: Decimal

        now = datetime.now(timezone.utc)
        record = Sample(id="s1", created_at=now, updated_at=now, amount=Decimal("12.50"))

        data = record.to_dict()
        assert data["amount"] == "12.50"
        assert data["created_at"] == now.isoformat()

        restored = Sample.from_dict(data)
        assert restored.created_at == now

    def test_to_json_value_is_recursive(self):
        now = datetime.now(timezone.utc)
        value = to_json_value({"a": [Decimal("1.10"), {"b": now}]})
        assert value == {"a": ["1.10", {"b": now.isoformat()}]}

    def test_create_storage_from_config(self, tmp_path):
        memory = create_storage(BankcoreConfig(storage_backend="memory"))
        assert isinstance(memory, InMemoryStorage)

        sqlite = create_storage(BankcoreConfig(storage_backend="sqlite", sqlite_path=str(tmp_path / "x.db")))
        assert isinstance(sqlite, SQLiteStorage)
        sqlite.close()

    def test_create_storage_rejects_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_storage(BankcoreConfig(storage_backend="postgres"))

    def test_sqlite_persists_across_connections(self, tmp_path):
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.save("accounts", "a1", {"id": "a1", "email": "a@example.com"})
        first.close()

        second = SQLiteStorage(path)
        assert second.load("accounts", "a1")["email"] == "a@example.com"
        second.close()

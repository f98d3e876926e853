"""
Test suite for storage backends

Both backends must behave the same for record CRUD, filtered lookups and
all-or-nothing batches.
"""

import pytest
import sqlite3
from decimal import Decimal
from datetime import datetime, timezone

from banking_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageWrite, create_storage
)


class FailingSQLiteStorage(SQLiteStorage):
    """SQLite backend that fails when writing a chosen record"""

    def __init__(self, db_path, fail_on: str):
        super().__init__(db_path)
        self.fail_on = fail_on

    def _upsert(self, table, record_id, data):
        if record_id == self.fail_on:
            raise sqlite3.OperationalError("disk I/O error")
        super()._upsert(table, record_id, data)


class StorageContract:
    """Checks shared by every backend"""

    def make_storage(self):
        raise NotImplementedError

    def setup_method(self):
        self.storage = self.make_storage()

    def teardown_method(self):
        self.storage.close()

    def test_save_and_load(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": Decimal("10.50")})
        loaded = self.storage.load("accounts", "a1")
        assert loaded == {"id": "a1", "balance": "10.50"}
        assert self.storage.load("accounts", "missing") is None

    def test_loaded_records_are_copies(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})
        loaded = self.storage.load("accounts", "a1")
        loaded["balance"] = "999.00"
        assert self.storage.load("accounts", "a1")["balance"] == "1.00"

    def test_find_with_filters(self):
        self.storage.save("accounts", "a1", {"id": "a1", "owner_id": "u1", "is_active": True})
        self.storage.save("accounts", "a2", {"id": "a2", "owner_id": "u1", "is_active": False})
        self.storage.save("accounts", "a3", {"id": "a3", "owner_id": "u2", "is_active": True})

        assert {r["id"] for r in self.storage.find("accounts", {"owner_id": "u1"})} == {"a1", "a2"}
        active = self.storage.find("accounts", {"owner_id": "u1", "is_active": True})
        assert [r["id"] for r in active] == ["a1"]

    def test_find_none_value(self):
        self.storage.save("transactions", "t1", {"id": "t1", "destination_account_id": None})
        self.storage.save("transactions", "t2", {"id": "t2", "destination_account_id": "a1"})
        assert [r["id"] for r in self.storage.find("transactions", {"destination_account_id": "a1"})] == ["t2"]

    def test_save_batch_writes_everything(self):
        self.storage.save_batch([
            StorageWrite("accounts", "a1", {"id": "a1", "balance": "300.00"}),
            StorageWrite("accounts", "a2", {"id": "a2", "balance": "200.00"}),
            StorageWrite("transactions", "t1", {"id": "t1", "status": "completed"}),
        ])
        assert self.storage.count("accounts") == 2
        assert self.storage.load("transactions", "t1")["status"] == "completed"

    def test_save_replaces_record_in_place(self):
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "1.00"})
        self.storage.save("accounts", "a2", {"id": "a2", "balance": "2.00"})
        self.storage.save("accounts", "a1", {"id": "a1", "balance": "5.00"})

        assert self.storage.count("accounts") == 2
        assert [r["balance"] for r in self.storage.load_all("accounts")] == ["5.00", "2.00"]
        assert self.storage.count("empty") == 0

    def test_serializes_datetimes(self):
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        self.storage.save("events", "e1", {"id": "e1", "created_at": now})
        assert self.storage.load("events", "e1")["created_at"] == now.isoformat()


class TestInMemoryStorage(StorageContract):

    def make_storage(self):
        return InMemoryStorage()


class TestSQLiteStorage(StorageContract):

    def make_storage(self):
        return SQLiteStorage(":memory:")


class TestSQLiteBatchAtomicity:
    """A failing batch leaves no partial writes behind"""

    def test_failed_batch_rolls_back(self, tmp_path):
        storage = FailingSQLiteStorage(tmp_path / "ledger.db", fail_on="a2")
        storage.save("accounts", "a1", {"id": "a1", "balance": "500.00"})

        with pytest.raises(sqlite3.OperationalError):
            storage.save_batch([
                StorageWrite("accounts", "a1", {"id": "a1", "balance": "300.00"}),
                StorageWrite("accounts", "a2", {"id": "a2", "balance": "200.00"}),
            ])

        assert storage.load("accounts", "a1")["balance"] == "500.00"
        assert storage.load("accounts", "a2") is None
        storage.close()

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "ledger.db"
        storage = SQLiteStorage(path)
        storage.save("accounts", "a1", {"id": "a1", "balance": "42.00"})
        storage.close()

        reopened = SQLiteStorage(path)
        assert reopened.load("accounts", "a1")["balance"] == "42.00"
        reopened.close()


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self, tmp_path):
        in_memory = create_storage("sqlite://")
        assert isinstance(in_memory, SQLiteStorage)
        assert in_memory.db_path == ":memory:"

        on_disk = create_storage(f"sqlite:///{tmp_path / 'ledger.db'}")
        assert on_disk.db_path == str(tmp_path / "ledger.db")
        on_disk.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/ledger")

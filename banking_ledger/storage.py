"""
Storage Backend Module

Record storage for accounts, transactions, reward balances and audit events.
Records are JSON documents keyed by id inside named tables; Decimal values
travel as strings so no precision is lost.

Ledger records are never deleted. Accounts are deactivated and transactions
become immutable once terminal, so the backends only upsert, read and filter.
Writes that must land together (a balance change and the transaction that
caused it) go through save_batch, which is all-or-nothing.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, NamedTuple, Optional, Any, Set, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


@dataclass
class StorageRecord:
    """Common fields of every persisted ledger record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict with Decimals, datetimes and enums flattened to JSON types"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, (Decimal, datetime, Enum)):
                result[key] = _json_default(value)
        return result


class StorageWrite(NamedTuple):
    """One record write inside an atomic batch"""
    table: str
    record_id: str
    data: Dict[str, Any]


class StorageInterface(ABC):
    """Contract the ledger needs from a storage backend"""

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace one record"""
        self.save_batch([StorageWrite(table, record_id, data)])

    @abstractmethod
    def save_batch(self, writes: Iterable[StorageWrite]) -> None:
        """Insert or replace several records; either all land or none do"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Record by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every record in a table, oldest insert first"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose top-level fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    def close(self) -> None:
        pass


class InMemoryStorage(StorageInterface):
    """Dict-backed storage for tests and single-process use"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON so callers never share mutable state with the store
        return json.loads(json.dumps(data, default=_json_default))

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def save_batch(self, writes: Iterable[StorageWrite]) -> None:
        """Serialize every record first, then publish them under one lock"""
        prepared = [(w.table, w.record_id, self._copy(w.data)) for w in writes]
        with self._lock:
            for table, record_id, data in prepared:
                self._table(table)[record_id] = data

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if all(key in record and record[key] == value for key, value in filters.items())
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))


class SQLiteStorage(StorageInterface):
    """
    SQLite document storage.

    One connection shared behind a lock; each table holds (id, data JSON,
    inserted_at). A batch runs inside a single SQL transaction and is rolled
    back as a whole if any write fails.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            data TEXT NOT NULL,
            inserted_at TEXT NOT NULL
        )
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._known_tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                # Settled balances must survive power loss
                self._connection.execute("PRAGMA synchronous = FULL")

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        if not table.replace("_", "").isalnum():
            raise ValueError(f"Invalid table name {table!r}")
        with self._connection:
            self._connection.execute(self.SCHEMA.format(table=table))
        self._known_tables.add(table)

    def _upsert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        # Keep the first insert time so load_all stays in insertion order
        self._connection.execute(
            f"INSERT INTO {table} (id, data, inserted_at) VALUES (?, ?, ?) "
            f"ON CONFLICT(id) DO UPDATE SET data = excluded.data",
            (record_id, json.dumps(data, default=_json_default),
             datetime.now(timezone.utc).isoformat())
        )

    def save_batch(self, writes: Iterable[StorageWrite]) -> None:
        writes = list(writes)
        with self._lock:
            for write in writes:
                self._ensure_table(write.table)
            # The connection context manager commits, or rolls back on error
            with self._connection:
                for write in writes:
                    self._upsert(write.table, write.record_id, write.data)

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        rows = self._connection.execute(sql, tuple(params)).fetchall()
        return [json.loads(row["data"]) for row in rows]

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._query(f"SELECT data FROM {table} WHERE id = ?", (record_id,))
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return self._query(f"SELECT data FROM {table} ORDER BY inserted_at, rowid")

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Filter on JSON fields with json_extract"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if value is None:
                conditions.append("json_extract(data, ?) IS NULL")
                params.append(f"$.{key}")
            else:
                conditions.append("json_extract(data, ?) = ?")
                # JSON booleans come back from json_extract as 0/1
                params.extend([f"$.{key}", int(value) if isinstance(value, bool) else value])

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._lock:
            self._ensure_table(table)
            return self._query(f"SELECT data FROM {table} {where} ORDER BY inserted_at, rowid", params)

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory:// gives InMemoryStorage, sqlite:///path/to.db a file-backed
    SQLiteStorage and sqlite:// an in-memory SQLite database.
    """
    if database_url == "memory://":
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")

"""
Storage Backend Module

Persistence port shared by the lending services, with an in-memory backend
for tests and a SQLite backend for a single-node deployment. Records are
JSON documents keyed by id; amounts travel as Decimal strings.

Transactions: atomic() holds the backend's re-entrant lock from begin to
commit/rollback, so a read-modify-write of a loan inside atomic() cannot
interleave with another writer's transaction.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Set, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Fields shared by loans, payments, gold items and audit events"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Flat JSON-ready dict: Decimals and datetimes as strings, enums by value"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


class StorageInterface(ABC):
    """Document store of JSON records grouped in named tables"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a record; False when it did not exist"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Run the block as one transaction

        Nested blocks join the outer transaction; an exception anywhere rolls
        back everything written since the outermost begin.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(record, default=str))


class InMemoryStorage(StorageInterface):
    """Dict-of-dicts store; callers always receive copies"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                _copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Take the store lock and snapshot the data for rollback"""
        self._lock.acquire()
        if self._tx_depth == 0:
            self._snapshot = copy.deepcopy(self._data)
        self._tx_depth += 1

    def commit(self) -> None:
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        """Restore the snapshot taken when the outermost transaction began"""
        self._tx_depth -= 1
        if self._tx_depth == 0 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    One SQLite table per record table: id, JSON document and timestamps

    Statements outside atomic() commit immediately; inside it they commit
    together when the outermost block exits.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables: Set[str] = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _commit_unless_in_transaction(self) -> None:
        if self._tx_depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
            )
            self._commit_unless_in_transaction()
            self._tables.add(table)

    def _query(self, table: str, sql: str, params=()) -> sqlite3.Cursor:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            now = datetime.now(timezone.utc).isoformat()
            # Keep the first insert time so load_all() stays in insertion order
            self._query(table, f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?), ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._commit_unless_in_transaction()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._query(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._query(table, f"SELECT data FROM {table} ORDER BY created_at").fetchall()
            return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            cursor = self._query(table, f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            row = self._query(table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Equality filters on top-level document fields, evaluated by SQLite"""
        clauses = []
        params = []
        for key, value in filters.items():
            if not key.isidentifier():
                raise ValueError(f"Invalid filter field: {key}")
            clauses.append(f"json_extract(data, '$.{key}') IS ?")
            params.append(value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._query(table, f"SELECT data FROM {table} {where} ORDER BY created_at", params).fetchall()
            return [json.loads(row['data']) for row in rows]

    def count(self, table: str) -> int:
        with self._lock:
            return self._query(table, f"SELECT COUNT(*) AS total FROM {table}").fetchone()['total']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._query(table, f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def begin_transaction(self) -> None:
        """Hold the connection lock until the matching commit or rollback"""
        self._lock.acquire()
        self._tx_depth += 1

    def commit(self) -> None:
        self._tx_depth -= 1
        try:
            if self._tx_depth == 0:
                self._connection.commit()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        self._tx_depth -= 1
        try:
            if self._tx_depth == 0:
                self._connection.rollback()
                # Tables created inside the transaction are gone again
                self._tables.clear()
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Storage backend for a database URL

    Args:
        database_url: "memory://", "sqlite:///path/to/file.db" or
            "sqlite:///:memory:"
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")

"""
Storage Backend Module

Document storage for leases, payment schedules and audit events. Each record
is a JSON document addressed by (table, record_id). InMemoryStorage backs the
tests; SQLiteStorage keeps every table in one ``documents`` table on disk.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _encode(document: Dict[str, Any]) -> str:
    return json.dumps(document, default=str)


def _matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in document and document[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """
    Abstract document store

    Writes inside ``atomic()`` are committed together or not at all.
    ``record_lock`` serializes load-modify-save cycles on one record.
    """

    def __init__(self):
        self._record_locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._record_locks_guard = threading.Lock()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a document"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Document by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Every document in a table, oldest first"""

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose top-level keys equal every filter value"""
        return [document for document in self.load_all(table) if _matches(document, filters)]

    @abstractmethod
    def count(self, table: str) -> int:
        """Number of documents in a table"""

    @abstractmethod
    def close(self) -> None:
        """Release the backend"""

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Group writes into one transaction, rolled back on error"""
        self.begin_transaction()
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()

    @contextmanager
    def record_lock(self, table: str, record_id: str):
        """
        Serialize read-modify-write cycles on a single record.

        Holders of the same (table, record_id) run one at a time; different
        records never block each other.
        """
        key = (table, record_id)
        with self._record_locks_guard:
            lock = self._record_locks.setdefault(key, threading.RLock())
        with lock:
            yield


class InMemoryStorage(StorageInterface):
    """
    Dict-backed store for tests

    Documents are kept as decoded JSON copies, so callers never share mutable
    state with the store. ``atomic()`` snapshots the tables and restores them
    on rollback.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshot: Optional[str] = None
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        document = json.loads(_encode(data))
        with self._lock:
            self._table(table)[record_id] = document

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._table(table).get(record_id)
            return json.loads(_encode(document)) if document is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(_encode(document)) for document in self._table(table).values()]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = _encode(self._data)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = json.loads(self._snapshot)
                self._snapshot = None

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """SQLite-backed store; one row per document"""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            body TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (collection, id)
        )
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
        self._connection.execute(self.SCHEMA)
        self._connection.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_created ON documents(collection, created_at)"
        )
        self._connection.commit()

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._connection.execute(
                "INSERT INTO documents (collection, id, body, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(collection, id) DO UPDATE SET body = excluded.body, "
                "updated_at = excluded.updated_at",
                (table, record_id, _encode(data), now, now)
            )
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._connection.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?",
                (table, record_id)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._connection.execute(
                "SELECT body FROM documents WHERE collection = ? ORDER BY created_at, rowid",
                (table,)
            ).fetchall()
        return [json.loads(body) for (body,) in rows]

    def count(self, table: str) -> int:
        with self._lock:
            (total,) = self._connection.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (table,)
            ).fetchone()
        return total

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            self._connection.commit()
            self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            self._connection.rollback()
            self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

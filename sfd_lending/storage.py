"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings. Every mutating lending operation runs inside ``atomic()``, a single
exclusive transactional boundary, and versioned rows are written with a
compare-and-swap on their ``version`` field.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, TypeVar, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrentModificationError, StorageTimeoutError, retry_transient


T = TypeVar("T")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
            elif isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
        return result


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Enter the exclusive transactional boundary"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit current transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Rollback current transaction"""
        pass

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """
        Context manager for atomic operations.

        Nested boundaries join the outermost one; only the outermost
        commit or rollback takes effect.
        """
        self.begin_transaction(timeout)
        try:
            yield
        except Exception:
            self.rollback()
            raise
        self.commit()

    def save_versioned(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> int:
        """
        Compare-and-swap save on the record's version.

        Args:
            table: Table name
            record_id: Record ID
            data: New record contents
            expected_version: Version the caller read (0 for a new record)

        Returns:
            The new version written

        Raises:
            ConcurrentModificationError: If the stored version differs
        """
        with self.atomic():
            current = self.load(table, record_id)
            current_version = current.get('version', 0) if current else 0
            if current_version != expected_version:
                raise ConcurrentModificationError(table, record_id)
            stored = dict(data)
            stored['version'] = expected_version + 1
            self.save(table, record_id, stored)
            return stored['version']


class _TransactionLock:
    """Reentrant lock with transaction depth tracking"""

    def __init__(self):
        self._lock = threading.RLock()
        self.depth = 0

    def enter(self, timeout: Optional[float]) -> bool:
        acquired = self._lock.acquire(timeout=-1 if timeout is None else timeout)
        if not acquired:
            raise StorageTimeoutError(timeout)
        self.depth += 1
        return self.depth == 1

    def exit(self) -> bool:
        self.depth -= 1
        outermost = self.depth == 0
        self._lock.release()
        return outermost

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = _TransactionLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Acquire the store exclusively and snapshot it for rollback"""
        if self._lock.enter(timeout):
            self._snapshot = _copy(self._data)

    def commit(self) -> None:
        """Commit current transaction"""
        if self._lock.depth == 1:
            self._snapshot = None
        self._lock.exit()

    def rollback(self) -> None:
        """Restore the snapshot taken by the outermost boundary"""
        if self._lock.depth == 1 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.exit()


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = _TransactionLock()
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using SQLite's JSON functions"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start a database transaction"""
        if self._lock.enter(timeout):
            try:
                self._connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error:
                self._lock.exit()
                raise

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            if self._lock.depth == 1:
                self._connection.execute("COMMIT")
        finally:
            self._lock.exit()

    def rollback(self) -> None:
        """Rollback current transaction"""
        try:
            if self._lock.depth == 1:
                self._connection.execute("ROLLBACK")
                # Tables created inside the rolled back transaction are gone
                self._tables.clear()
        finally:
            self._lock.exit()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    Accepts ``memory`` for the in-memory backend and ``sqlite:///path`` (or
    ``sqlite://:memory:``) for SQLite.
    """
    if database_url in ("memory", "memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):])
    if database_url == "sqlite://:memory:":
        return SQLiteStorage(":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")


def transactional(
    storage: StorageInterface,
    operation: Callable[[], T],
    timeout: Optional[float] = None,
    attempts: int = 3,
    backoff_seconds: float = 0.0,
    description: str = "transaction"
) -> T:
    """
    Run a read-modify-write operation inside one atomic boundary, retrying
    the whole boundary on transient failures (timeouts, version conflicts).
    """
    def attempt() -> T:
        with storage.atomic(timeout=timeout):
            return operation()

    return retry_transient(attempt, attempts, backoff_seconds, description)

"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory
(testing) and SQLite (persistence). All monetary values stored as Decimal
strings.

Both backends give all-or-nothing writes through ``atomic()`` and a
consistent read view through ``snapshot()``: a reader never observes a
transaction that is only partly applied.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import date, datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConcurrencyConflictError, StorageFailureError


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
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, date):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _clone(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON so callers never share mutable state"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def _conflict(table: str, record_id: str, field_name: str, value: Any,
              record: Optional[Dict[str, Any]]) -> ConcurrencyConflictError:
    found = record.get(field_name) if record is not None else None
    return ConcurrencyConflictError(
        f"{table}/{record_id} was modified concurrently "
        f"(expected {field_name} {value}, found {found})"
    )


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
    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the calling thread's transaction"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard the calling thread's transaction"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        pass

    def expect(self, table: str, record_id: str, field_name: str, value: Any) -> None:
        """
        Require a record field to hold ``value`` when the transaction commits

        The default checks immediately, which is enough for backends whose
        open transaction keeps every other writer out.

        Raises:
            ConcurrencyConflictError: Record is missing or the field differs
        """
        record = self.load(table, record_id)
        if record is None or record.get(field_name) != value:
            raise _conflict(table, record_id, field_name, value, record)

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations

        Nested use joins the outer transaction; only the outermost block
        commits or rolls back.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        self.commit()

    @contextmanager
    def snapshot(self):
        """Consistent read view of committed state (default: no-op)"""
        yield


class InMemoryStorage(StorageInterface):
    """
    In-memory storage with per-thread staged transactions

    Committed tables are never mutated in place: every write builds a new
    table dict and swaps it in under the lock, so a snapshot is just a
    shallow copy of the table mapping.
    """

    _DELETED = object()

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    # Thread-local state

    def _stage(self) -> Optional[Dict[str, Dict[str, Any]]]:
        return getattr(self._local, 'stage', None)

    def _snapshot_view(self) -> Optional[Dict[str, Dict[str, Dict[str, Any]]]]:
        return getattr(self._local, 'snapshot', None)

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Records visible to the calling thread"""
        snapshot = self._snapshot_view()
        if snapshot is not None and self._stage() is None:
            return snapshot.get(table, {})

        with self._lock:
            committed = self._data.get(table, {})

        stage = self._stage()
        if stage is None or table not in stage:
            return committed

        merged = dict(committed)
        for record_id, record in stage[table].items():
            if record is self._DELETED:
                merged.pop(record_id, None)
            else:
                merged[record_id] = record
        return merged

    def _write(self, table: str, record_id: str, record: Any) -> None:
        stage = self._stage()
        if stage is not None:
            stage.setdefault(table, {})[record_id] = record
            return

        with self._lock:
            new_table = dict(self._data.get(table, {}))
            if record is self._DELETED:
                new_table.pop(record_id, None)
            else:
                new_table[record_id] = record
            self._data[table] = new_table

    # CRUD

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        self._write(table, record_id, _clone(data))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._view(table).get(record_id)
        if record is not None:
            return _clone(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_clone(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        if record_id not in self._view(table):
            return False
        self._write(table, record_id, self._DELETED)
        return True

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _clone(record) for record in self._view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        for record_id in list(self._view(table).keys()):
            self._write(table, record_id, self._DELETED)

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    # Transactions

    def begin_transaction(self) -> None:
        """Start staging writes for the calling thread"""
        if self._stage() is None:
            self._local.stage = {}
            self._local.expectations = []

    def expect(self, table: str, record_id: str, field_name: str, value: Any) -> None:
        """Check now and again at commit, under the same lock as the swap"""
        super().expect(table, record_id, field_name, value)
        if self._stage() is not None:
            self._local.expectations.append((table, record_id, field_name, value))

    def commit(self) -> None:
        """Swap the staged writes into committed state in one step"""
        stage = self._stage()
        if stage is None:
            return
        conflict = None
        with self._lock:
            for table, record_id, field_name, value in self._local.expectations:
                record = self._data.get(table, {}).get(record_id)
                if record is None or record.get(field_name) != value:
                    conflict = _conflict(table, record_id, field_name, value, record)
                    break
            if conflict is None:
                for table, changes in stage.items():
                    new_table = dict(self._data.get(table, {}))
                    for record_id, record in changes.items():
                        if record is self._DELETED:
                            new_table.pop(record_id, None)
                        else:
                            new_table[record_id] = record
                    self._data[table] = new_table
        self._local.stage = None
        self._local.expectations = []
        if conflict is not None:
            raise conflict

    def rollback(self) -> None:
        """Discard staged writes"""
        self._local.stage = None
        self._local.expectations = []

    def in_transaction(self) -> bool:
        return self._stage() is not None

    @contextmanager
    def snapshot(self):
        """Pin the committed tables for the duration of the block"""
        if self._snapshot_view() is not None:
            yield
            return
        with self._lock:
            self._local.snapshot = dict(self._data)
        try:
            yield
        finally:
            self._local.snapshot = None


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    One connection shared across threads. A transaction holds the
    connection lock from begin to commit/rollback, so other threads read
    either the state before it or the state after it.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            # DEFERRED isolation: sqlite3 opens a transaction before the first write
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
        except sqlite3.Error as e:
            raise StorageFailureError(f"Cannot open SQLite database {self.db_path}: {e}") from e

        self._lock = threading.RLock()
        self._tx_owner: Optional[int] = None
        self._tables: set = set()

    @contextmanager
    def _guard(self):
        """Serialize connection access and translate driver errors"""
        with self._lock:
            if self._connection is None:
                raise StorageFailureError("SQLite storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                raise StorageFailureError(f"SQLite operation failed: {e}") from e

    def _autocommit(self) -> None:
        if self._tx_owner is None:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._guard() as conn:
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._autocommit()
            # A rollback would undo DDL issued inside a transaction
            if self._tx_owner is None:
                self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc).isoformat()
        data_json = json.dumps(data, default=str)
        with self._guard() as conn:
            conn.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        self._ensure_table(table)
        with self._guard() as conn:
            row = conn.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        self._ensure_table(table)
        with self._guard() as conn:
            cursor = conn.execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        self._ensure_table(table)
        with self._guard() as conn:
            cursor = conn.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        self._ensure_table(table)
        with self._guard() as conn:
            row = conn.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        self._ensure_table(table)
        with self._guard() as conn:
            return conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        self._ensure_table(table)
        with self._guard() as conn:
            conn.execute(f"DELETE FROM {table}")
            self._autocommit()

    def begin_transaction(self) -> None:
        """Start a database transaction and hold the connection lock"""
        self._lock.acquire()
        if self._tx_owner == threading.get_ident():
            # Already ours; keep a single hold on the lock
            self._lock.release()
            return
        self._tx_owner = threading.get_ident()

    def commit(self) -> None:
        """Commit current transaction"""
        if self._tx_owner != threading.get_ident():
            return
        try:
            with self._guard() as conn:
                conn.commit()
        finally:
            self._tx_owner = None
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._tx_owner != threading.get_ident():
            return
        try:
            with self._guard() as conn:
                conn.rollback()
        finally:
            self._tx_owner = None
            self._lock.release()

    def in_transaction(self) -> bool:
        return self._tx_owner == threading.get_ident()

    @contextmanager
    def snapshot(self):
        """Hold the connection lock so no transaction commits mid-read"""
        with self._lock:
            yield

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

"""
Storage Backend Module

Provides the abstract storage interface and two implementations: in-memory
(testing) and SQLite (persistence). All monetary values are stored as Decimal
strings.

Writes made inside ``atomic()`` are staged per thread and become visible to
other threads only when the outermost unit of work commits. A rollback
discards them, so a failed multi-step operation leaves storage exactly as it
found it. Nested ``atomic()`` blocks behave as savepoints.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union
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

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


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

    def save_out_of_band(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Write a record immediately, outside any open unit of work"""
        self.save(table, record_id, data)

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run callback once the current unit of work commits (now if none is open)"""
        callback()

    def in_transaction(self) -> bool:
        return False

    def begin_transaction(self) -> None:
        """Start a unit of work (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current unit of work (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current unit of work (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise


class UnitOfWorkStorage(StorageInterface):
    """
    Storage base class that stages writes per thread until commit.

    Backends implement the four committed-state primitives (_read, _read_all,
    _apply and _clear); everything else, including savepoints and commit
    hooks, lives here.
    """

    def __init__(self):
        self._local = threading.local()

    # Committed-state primitives

    @abstractmethod
    def _read(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def _read_all(self, table: str) -> Dict[str, Dict[str, Any]]:
        pass

    @abstractmethod
    def _apply(self, changes: Dict[str, Dict[str, Optional[Dict[str, Any]]]]) -> None:
        """Apply staged rows in one step; a None row means delete"""
        pass

    @abstractmethod
    def _clear(self, table: str) -> None:
        pass

    # Unit of work state

    @property
    def _pending(self) -> Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]]:
        return getattr(self._local, 'pending', None)

    def _reset(self) -> None:
        self._local.pending = None
        self._local.savepoints = []
        self._local.callbacks = []

    def in_transaction(self) -> bool:
        return self._pending is not None

    def begin_transaction(self) -> None:
        if not self.in_transaction():
            self._reset()
            self._local.pending = {}
        else:
            self._local.savepoints.append(
                (_copy(self._local.pending), len(self._local.callbacks))
            )

    def commit(self) -> None:
        if not self.in_transaction():
            return
        if self._local.savepoints:
            self._local.savepoints.pop()
            return

        changes = self._local.pending
        callbacks = self._local.callbacks
        self._reset()
        if changes:
            self._apply(changes)
        for callback in callbacks:
            callback()

    def rollback(self) -> None:
        if not self.in_transaction():
            return
        if self._local.savepoints:
            pending, callback_count = self._local.savepoints.pop()
            self._local.pending = pending
            del self._local.callbacks[callback_count:]
            return
        self._reset()

    def on_commit(self, callback: Callable[[], None]) -> None:
        if not self.in_transaction():
            callback()
        else:
            self._local.callbacks.append(callback)

    # Record operations

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record, staged if a unit of work is open"""
        row = _copy(data)
        pending = self._pending
        if pending is not None:
            pending.setdefault(table, {})[record_id] = row
        else:
            self._apply({table: {record_id: row}})

    def save_out_of_band(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._apply({table: {record_id: _copy(data)}})

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, seeing this thread's staged writes first"""
        pending = self._pending
        if pending is not None and record_id in pending.get(table, {}):
            row = pending[table][record_id]
            return _copy(row) if row is not None else None
        return self._read(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        rows = self._read_all(table)
        pending = self._pending
        if pending is not None:
            for record_id, row in pending.get(table, {}).items():
                if row is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = _copy(row)
        return list(rows.values())

    def delete(self, table: str, record_id: str) -> bool:
        existed = self.exists(table, record_id)
        if not existed:
            return False
        pending = self._pending
        if pending is not None:
            pending.setdefault(table, {})[record_id] = None
        else:
            self._apply({table: {record_id: None}})
        return True

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        return len(self.load_all(table))

    def clear_table(self, table: str) -> None:
        pending = self._pending
        if pending is not None:
            pending.pop(table, None)
        self._clear(table)


class InMemoryStorage(UnitOfWorkStorage):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _read(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data.get(table, {}).get(record_id)
            return _copy(record) if record is not None else None

    def _read_all(self, table: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                record_id: _copy(record)
                for record_id, record in self._data.get(table, {}).items()
            }

    def _apply(self, changes: Dict[str, Dict[str, Optional[Dict[str, Any]]]]) -> None:
        with self._lock:
            for table, rows in changes.items():
                target = self._data.setdefault(table, {})
                for record_id, row in rows.items():
                    if row is None:
                        target.pop(record_id, None)
                    else:
                        target[record_id] = row

    def _clear(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(UnitOfWorkStorage):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        # Autocommit mode; staged units of work are applied with explicit BEGIN/COMMIT
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
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
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._tables.add(table)

    def _read(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            )
            row = cursor.fetchone()
            return json.loads(row['data']) if row else None

    def _read_all(self, table: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT id, data FROM {table} ORDER BY created_at, rowid"
            )
            return {row['id']: json.loads(row['data']) for row in cursor.fetchall()}

    def _apply(self, changes: Dict[str, Dict[str, Optional[Dict[str, Any]]]]) -> None:
        with self._lock:
            for table in changes:
                self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute("BEGIN")
            try:
                for table, rows in changes.items():
                    for record_id, row in rows.items():
                        if row is None:
                            self._connection.execute(
                                f"DELETE FROM {table} WHERE id = ?", (record_id,)
                            )
                            continue
                        self._connection.execute(f"""
                            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                            VALUES (?, ?,
                                COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                                ?)
                        """, (record_id, json.dumps(row, default=str), record_id, now, now))
                self._connection.execute("COMMIT")
            except sqlite3.Error:
                self._connection.execute("ROLLBACK")
                raise

    def _clear(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    Supported forms are ``memory://``, ``sqlite://`` (in-memory SQLite) and
    ``sqlite:///path/to/file.db``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")

"""
Storage Backend Module

Provides the transactional record store the lending core runs on: an abstract
interface plus in-memory (testing) and SQLite (persistence) engines. Records
are JSON documents; monetary values are stored as Decimal strings.

Every engine offers three guarantees the domain relies on:
  * atomic() - all writes inside the block commit together or not at all
  * locked(table, id) - exclusive access to one record for a read-modify-write
  * next_sequence(name) - race-free monotonically increasing counters
"""

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Union, get_args, get_origin, get_type_hints
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
from dataclasses import dataclass, fields
from functools import lru_cache
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import threading

from .currency import Currency, Money


@lru_cache(maxsize=None)
def _record_hints(cls: type) -> Dict[str, Any]:
    return get_type_hints(cls)


def _unwrap_optional(hint: Any) -> Any:
    if get_origin(hint) is Union:
        args = [arg for arg in get_args(hint) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return hint


def _encode(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Money):
        return {'amount': str(value.amount), 'currency': value.currency.code}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _decode(hint: Any, value: Any) -> Any:
    if value is None:
        return None
    hint = _unwrap_optional(hint)
    if hint is Money:
        return Money(Decimal(value['amount']), Currency[value['currency']])
    if isinstance(hint, type) and issubclass(hint, Enum):
        return value if isinstance(value, hint) else hint(value)
    if hint is datetime:
        return value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if hint is date:
        return value if isinstance(value, date) else date.fromisoformat(value)
    if hint is Decimal:
        return Decimal(str(value))
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    table: ClassVar[str] = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-compatible dictionary for storage"""
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from a stored dictionary, ignoring unknown keys"""
        hints = _record_hints(cls)
        kwargs = {}
        for f in fields(cls):
            if f.name in data:
                kwargs[f.name] = _decode(hints[f.name], data[f.name])
        return cls(**kwargs)

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class RecordLocks:
    """
    Registry of per-record re-entrant locks keyed by (table, record_id)

    An entry lives only while some thread holds or waits on it, so the
    registry does not grow with every record ever locked.
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, str], List] = {}  # key -> [RLock, holders]
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, table: str, record_id: str):
        key = (table, record_id)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._record_locks = RecordLocks()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level keys equal the filter values"""

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def next_sequence(self, name: str) -> int:
        """Atomically allocate the next value (starting at 1) of a named counter"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    @contextmanager
    def locked(self, table: str, record_id: str):
        """Hold exclusive access to one record for the duration of the block"""
        with self._record_locks.hold(table, record_id):
            yield


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing

    Transactions keep a per-thread undo journal, so a rollback restores only
    the records that thread touched and concurrent transactions over other
    records are left intact.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _journal(self) -> Optional[List[Tuple[str, str, Optional[Dict[str, Any]]]]]:
        return getattr(self._local, 'journal', None)

    def _remember(self, table: str, record_id: str) -> None:
        journal = self._journal()
        if journal is not None:
            # Stored dicts are replaced, never mutated, so a reference is enough
            journal.append((table, record_id, self._data[table].get(record_id)))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def next_sequence(self, name: str) -> int:
        # Counters are not journaled: a rolled back allocation leaves a gap
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def begin_transaction(self) -> None:
        with self._lock:
            if self._journal() is None:
                self._local.journal = []
                self._local.savepoints = []
            self._local.savepoints.append(len(self._local.journal))

    def commit(self) -> None:
        with self._lock:
            if self._journal() is None:
                return
            self._local.savepoints.pop()
            if not self._local.savepoints:
                self._local.journal = None

    def rollback(self) -> None:
        with self._lock:
            journal = self._journal()
            if journal is None:
                return
            savepoint = self._local.savepoints.pop()
            while len(journal) > savepoint:
                table, record_id, previous = journal.pop()
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
            if not self._local.savepoints:
                self._local.journal = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    A single connection is shared between threads. An open transaction holds
    the connection lock until commit or rollback, so transactions are
    serialized and never interleave their statements.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        with self._lock:
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._depth > 0

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
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
        self._autocommit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
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
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._autocommit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            if all(key in record and record[key] == value for key, value in filters.items()):
                results.append(record)
        return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._autocommit()

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._connection.execute(
                "INSERT OR IGNORE INTO _sequences (name, value) VALUES (?, 0)", (name,)
            )
            self._connection.execute(
                "UPDATE _sequences SET value = value + 1 WHERE name = ?", (name,)
            )
            row = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (name,)
            ).fetchone()
            self._autocommit()
            return row['value']

    def begin_transaction(self) -> None:
        # Released by the matching commit() or rollback()
        self._lock.acquire()
        self._depth += 1
        if self._depth > 1:
            self._connection.execute(f"SAVEPOINT sp_{self._depth}")
        elif not self._connection.in_transaction:
            self._connection.execute("BEGIN")

    def commit(self) -> None:
        if not self._in_transaction:
            return
        try:
            if self._depth > 1:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
            else:
                self._connection.commit()
        except sqlite3.Error:
            # A failed commit must not leave its writes pending for the next autocommit
            self._discard()
            raise
        finally:
            self._depth -= 1
            self._lock.release()

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        try:
            self._discard()
        finally:
            self._depth -= 1
            self._lock.release()

    def _discard(self) -> None:
        """Undo the work of the current transaction level"""
        if self._depth > 1:
            self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
            self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        else:
            self._connection.rollback()
        # Tables created inside the rolled back work may be gone
        self._tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None

"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite and PostgreSQL (persistence). All monetary values stored as Decimal strings.

Every backend supports atomic units of work: ``atomic()`` groups writes so that
either all of them become visible or none do, and ``lock_rows()`` takes
exclusive locks on individual records, in sorted key order, for the rest of
the unit. Lock acquisition is always bounded by a timeout.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Iterable, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .logging_config import get_logger


logger = get_logger("nivalus.storage")

DEFAULT_LOCK_TIMEOUT = 5.0

RecordKey = Union[int, str]


class StorageError(Exception):
    """Storage backend failure"""


class StorageBusyError(StorageError):
    """A lock could not be acquired within the timeout"""


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: int
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def _copy(data: Any) -> Any:
    """Deep copy through JSON to prevent external mutation"""
    return json.loads(json.dumps(data, default=str))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    lock_timeout: float = DEFAULT_LOCK_TIMEOUT

    @abstractmethod
    def save(self, table: str, record_id: RecordKey, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: RecordKey) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: RecordKey) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: RecordKey) -> bool:
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
    def next_id(self, table: str) -> int:
        """Allocate the next integer id for a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        """Start (or join) a unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the unit of work when the outermost block ends"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Discard every write of the current unit of work"""
        pass

    @abstractmethod
    def in_transaction(self) -> bool:
        """Check if the calling thread is inside a unit of work"""
        pass

    def lock_rows(self, table: str, keys: Iterable[RecordKey],
                  timeout: Optional[float] = None) -> None:
        """
        Lock records exclusively until the current unit of work ends.

        Keys are locked in ascending order so two units locking the same
        pair of records can never deadlock.

        Raises:
            StorageBusyError: a lock was not acquired within the timeout
        """
        if not self.in_transaction():
            raise StorageError("lock_rows() requires an active transaction")

    @contextmanager
    def atomic(self, timeout: Optional[float] = None):
        """Context manager for atomic operations (re-entrant)"""
        self.begin_transaction(timeout)
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.lock_timeout if timeout is None else timeout


_DELETED = object()


class _InMemoryTransaction:
    """Per-thread unit of work state for InMemoryStorage"""

    def __init__(self):
        self.depth = 0
        self.doomed = False
        self.writes: Dict[tuple, Any] = {}
        self.held_locks: Dict[tuple, "_RowLock"] = {}


class _RowLock:
    """Row lock shared by the threads currently holding or waiting for it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing and single-process use.

    Writes made inside a transaction are buffered per thread and applied in
    one step at commit, so other threads only ever see committed data.
    """

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._row_locks: Dict[tuple, _RowLock] = {}
        self._local = threading.local()
        self.lock_timeout = lock_timeout

    def _tx(self) -> Optional[_InMemoryTransaction]:
        tx = getattr(self._local, "tx", None)
        if tx is not None and tx.depth > 0:
            return tx
        return None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _visible_rows(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        tx = self._tx()
        if tx:
            for (write_table, key), value in tx.writes.items():
                if write_table != table:
                    continue
                if value is _DELETED:
                    rows.pop(key, None)
                else:
                    rows[key] = value
        return rows

    def save(self, table: str, record_id: RecordKey, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        key = str(record_id)
        record = _copy(data)
        tx = self._tx()
        if tx:
            tx.writes[(table, key)] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][key] = record

    def load(self, table: str, record_id: RecordKey) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        key = str(record_id)
        tx = self._tx()
        if tx and (table, key) in tx.writes:
            pending = tx.writes[(table, key)]
            return None if pending is _DELETED else _copy(pending)
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(key)
            if record is not None:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._visible_rows(table).values()]

    def delete(self, table: str, record_id: RecordKey) -> bool:
        """Delete a record from memory"""
        key = str(record_id)
        existed = self.exists(table, key)
        tx = self._tx()
        if tx:
            if existed:
                tx.writes[(table, key)] = _DELETED
            return existed
        with self._lock:
            self._ensure_table(table)
            return self._data[table].pop(key, None) is not None

    def exists(self, table: str, record_id: RecordKey) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        results = []
        for record in self._visible_rows(table).values():
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(_copy(record))
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._visible_rows(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def next_id(self, table: str) -> int:
        """Allocate the next id; ids are never handed out twice"""
        with self._lock:
            self._sequences[table] = self._sequences.get(table, 0) + 1
            return self._sequences[table]

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    # Transactions

    def in_transaction(self) -> bool:
        return self._tx() is not None

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        tx = getattr(self._local, "tx", None)
        if tx is None or tx.depth == 0:
            tx = _InMemoryTransaction()
            self._local.tx = tx
        tx.depth += 1

    def commit(self) -> None:
        tx = self._tx()
        if not tx:
            return
        tx.depth -= 1
        if tx.depth > 0:
            return
        try:
            if tx.doomed:
                raise StorageError("Transaction was rolled back by an inner block")
            with self._lock:
                for (table, key), value in tx.writes.items():
                    self._ensure_table(table)
                    if value is _DELETED:
                        self._data[table].pop(key, None)
                    else:
                        self._data[table][key] = value
        finally:
            self._finish(tx)

    def rollback(self) -> None:
        tx = self._tx()
        if not tx:
            return
        tx.depth -= 1
        if tx.depth > 0:
            tx.doomed = True
            return
        self._finish(tx)

    def _finish(self, tx: _InMemoryTransaction) -> None:
        tx.writes.clear()
        for lock_key, row_lock in tx.held_locks.items():
            row_lock.lock.release()
            self._release_row_lock(lock_key, row_lock)
        tx.held_locks.clear()
        self._local.tx = None

    def _release_row_lock(self, lock_key: tuple, row_lock: _RowLock) -> None:
        """Drop one user of a row lock, forgetting the lock once unused"""
        with self._lock:
            row_lock.users -= 1
            if row_lock.users == 0 and self._row_locks.get(lock_key) is row_lock:
                del self._row_locks[lock_key]

    def lock_rows(self, table: str, keys: Iterable[RecordKey],
                  timeout: Optional[float] = None) -> None:
        super().lock_rows(table, keys, timeout)
        tx = self._tx()
        wait = self._timeout(timeout)
        for key in sorted(set(keys)):
            lock_key = (table, str(key))
            if lock_key in tx.held_locks:
                continue
            with self._lock:
                row_lock = self._row_locks.setdefault(lock_key, _RowLock())
                row_lock.users += 1
            if not row_lock.lock.acquire(timeout=wait):
                self._release_row_lock(lock_key, row_lock)
                logger.warning(f"Timed out locking {table}/{key} after {wait}s")
                raise StorageBusyError(f"Timed out waiting for lock on {table}/{key}")
            tx.held_locks[lock_key] = row_lock


class _ConnectionStorage(StorageInterface):
    """
    Shared transaction handling for single-connection SQL backends.

    A unit of work holds the connection lock from begin to commit/rollback,
    so transactions are serialized and other threads never read uncommitted
    rows through the shared connection.
    """

    def __init__(self, lock_timeout: float):
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._tx_owner: Optional[int] = None
        self._tx_depth = 0
        self._tx_doomed = False

    @contextmanager
    def _guard(self, timeout: Optional[float] = None):
        """Hold the connection lock for one statement group"""
        if not self._lock.acquire(timeout=self._timeout(timeout)):
            raise StorageBusyError("Timed out waiting for the storage connection")
        try:
            yield
        finally:
            self._lock.release()

    def in_transaction(self) -> bool:
        return self._tx_depth > 0 and self._tx_owner == threading.get_ident()

    def begin_transaction(self, timeout: Optional[float] = None) -> None:
        if not self._lock.acquire(timeout=self._timeout(timeout)):
            raise StorageBusyError("Timed out waiting to begin a transaction")
        if self._tx_depth == 0:
            try:
                self._begin()
            except Exception:
                self._lock.release()
                raise
            self._tx_owner = threading.get_ident()
            self._tx_doomed = False
        self._tx_depth += 1

    def commit(self) -> None:
        if not self.in_transaction():
            return
        self._tx_depth -= 1
        try:
            if self._tx_depth == 0:
                if self._tx_doomed:
                    self._rollback()
                    raise StorageError("Transaction was rolled back by an inner block")
                try:
                    self._commit()
                except Exception:
                    # A failed COMMIT leaves the connection inside the unit
                    logger.error("Commit failed, rolling back the unit of work")
                    self._rollback()
                    raise
        finally:
            if self._tx_depth == 0:
                self._tx_owner = None
            self._lock.release()

    def rollback(self) -> None:
        if not self.in_transaction():
            return
        self._tx_depth -= 1
        try:
            if self._tx_depth == 0:
                self._rollback()
            else:
                self._tx_doomed = True
        finally:
            if self._tx_depth == 0:
                self._tx_owner = None
            self._lock.release()

    def _autocommit(self) -> None:
        """Commit a standalone statement made outside a unit of work"""
        if not self.in_transaction():
            self._commit()

    @abstractmethod
    def _begin(self) -> None:
        pass

    @abstractmethod
    def _commit(self) -> None:
        pass

    @abstractmethod
    def _rollback(self) -> None:
        pass


class SQLiteStorage(_ConnectionStorage):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:",
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        # Manual transaction control: BEGIN IMMEDIATE / COMMIT are issued explicitly
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None,
            timeout=lock_timeout
        )
        self._connection.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._guard():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

        with self._guard():
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS storage_sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
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

    def _begin(self) -> None:
        self._connection.execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("COMMIT")

    def _rollback(self) -> None:
        if self._connection.in_transaction:
            self._connection.execute("ROLLBACK")

    def save(self, table: str, record_id: RecordKey, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            key = str(record_id)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (key, data_json, key, now, now))

    def load(self, table: str, record_id: RecordKey) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (str(record_id),))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: RecordKey) -> bool:
        """Delete a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (str(record_id),))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: RecordKey) -> bool:
        """Check if a record exists"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (str(record_id),))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        results = []
        for record in self.load_all(table):
            match = True
            for key, value in filters.items():
                if key not in record or record[key] != value:
                    match = False
                    break
            if match:
                results.append(record)
        return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard():
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")

    def next_id(self, table: str) -> int:
        """Allocate the next id from the sequences table"""
        with self._guard():
            self._connection.execute("""
                INSERT INTO storage_sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (table,))
            cursor = self._connection.execute(
                "SELECT value FROM storage_sequences WHERE name = ?", (table,)
            )
            return cursor.fetchone()['value']

    def lock_rows(self, table: str, keys: Iterable[RecordKey],
                  timeout: Optional[float] = None) -> None:
        # BEGIN IMMEDIATE plus the held connection lock already serialize writers
        super().lock_rows(table, keys, timeout)

    def close(self) -> None:
        """Close SQLite connection"""
        with self._guard():
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(_ConnectionStorage):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str,
                 lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        super().__init__(lock_timeout)
        self.connection_string = connection_string
        self._connection = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._guard():
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually
            cursor = self._connection.cursor()
            try:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS storage_sequences (
                        name TEXT PRIMARY KEY,
                        value BIGINT NOT NULL
                    )
                """)
                self._connection.commit()
            finally:
                cursor.close()

    @contextmanager
    def _cursor(self):
        """Cursor under the connection lock; standalone statements autocommit"""
        with self._guard():
            cursor = self._connection.cursor()
            try:
                yield cursor
                self._autocommit()
            except Exception:
                if not self.in_transaction():
                    self._connection.rollback()
                raise
            finally:
                cursor.close()

    def _ensure_table(self, cursor, table: str) -> None:
        """Ensure table exists with proper schema"""
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)

    def _begin(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        pass

    def _commit(self) -> None:
        self._connection.commit()

    def _rollback(self) -> None:
        self._connection.rollback()

    def save(self, table: str, record_id: RecordKey, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        now = datetime.now(timezone.utc)
        data_json = json.dumps(data, default=str)
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (str(record_id), data_json, now, now))

    def load(self, table: str, record_id: RecordKey) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT data FROM {table} WHERE id = %s
            """, (str(record_id),))
            row = cursor.fetchone()
            if row:
                return dict(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: RecordKey) -> bool:
        """Delete a record from PostgreSQL"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                DELETE FROM {table} WHERE id = %s
            """, (str(record_id),))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: RecordKey) -> bool:
        """Check if a record exists"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT 1 FROM {table} WHERE id = %s LIMIT 1
            """, (str(record_id),))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB operators"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            if not filters:
                cursor.execute(f"""
                    SELECT data FROM {table} ORDER BY created_at
                """)
            else:
                conditions = []
                params = []
                for key, value in filters.items():
                    conditions.append("data ->> %s = %s")
                    params.extend([key, str(value)])

                where_clause = " AND ".join(conditions)
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE {where_clause}
                    ORDER BY created_at
                """, params)

            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._cursor() as cursor:
            self._ensure_table(cursor, table)
            cursor.execute(f"DELETE FROM {table}")

    def next_id(self, table: str) -> int:
        """Allocate the next id from the sequences table"""
        with self._cursor() as cursor:
            cursor.execute("""
                INSERT INTO storage_sequences (name, value) VALUES (%s, 1)
                ON CONFLICT (name) DO UPDATE SET value = storage_sequences.value + 1
                RETURNING value
            """, (table,))
            return cursor.fetchone()['value']

    def lock_rows(self, table: str, keys: Iterable[RecordKey],
                  timeout: Optional[float] = None) -> None:
        """Transaction-scoped advisory locks, so rows need not exist yet"""
        super().lock_rows(table, keys, timeout)
        wait_ms = int(self._timeout(timeout) * 1000)
        with self._cursor() as cursor:
            cursor.execute(f"SET LOCAL lock_timeout = '{wait_ms}ms'")
            for key in sorted(set(keys)):
                try:
                    cursor.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{table}:{key}",)
                    )
                except self.psycopg2.errors.LockNotAvailable:
                    logger.warning(f"Timed out locking {table}/{key} after {wait_ms}ms")
                    raise StorageBusyError(f"Timed out waiting for lock on {table}/{key}")

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._guard():
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str,
                   lock_timeout: float = DEFAULT_LOCK_TIMEOUT) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms: ``memory://``, ``sqlite:///path/to.db`` (or
    ``sqlite://`` for an in-memory database) and ``postgresql://...``.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage(lock_timeout=lock_timeout)
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:", lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")

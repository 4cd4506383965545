"""
Storage Backend Module

Provides the abstract store handle every engine component receives, plus
in-memory (testing), SQLite (single-node persistence) and PostgreSQL
(production) implementations. Records are JSON documents keyed by id; all
monetary values are stored as Decimal strings.

Every mutating engine operation runs inside ``atomic()``. Units nest: an inner
unit joins the outer one and only the outermost commits or rolls back.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import ConflictError, StorageError


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
            if isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp written by ``StorageRecord.to_dict``"""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse an ISO date written by ``StorageRecord.to_dict``"""
    if value is None:
        return None
    return date.fromisoformat(value)


def parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(value)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    _transaction_depth = 0
    # Driver exceptions that atomic() reports as StorageError
    driver_errors: Tuple[type, ...] = ()

    @abstractmethod
    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    def insert(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """
        Save a new record. Raises ConflictError if the key is already taken,
        so a keyed row can claim a unique value for the current unit of work.
        """
        if self.exists(table, record_id):
            raise ConflictError(f"Record {record_id} already exists in {table}")
        self.save(table, record_id, data)

    @abstractmethod
    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: Union[int, str]) -> bool:
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
    def next_id(self, table: str) -> int:
        """Allocate the next integer id for a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def load_for_update(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """
        Load a record and lock it until the current unit of work ends.
        Backends without row locks serialize whole units instead.

        Lock order within a unit: withdrawal request, then loan account,
        then yield deposits.
        """
        return self.load(table, record_id)

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._transaction_depth > 0

    @contextmanager
    def atomic(self):
        """
        Context manager for an atomic unit of work.

        Any exception raised inside the block discards every write made in
        the outermost unit and is re-raised. Driver errors and a failing
        commit surface as StorageError.
        """
        guard = getattr(self, "_lock", None)
        if guard is not None:
            guard.acquire()
        try:
            outermost = self._transaction_depth == 0
            if outermost:
                self.begin_transaction()
            self._transaction_depth += 1
            try:
                yield self
            except BaseException as e:
                self._transaction_depth -= 1
                if outermost:
                    self.rollback()
                if self.driver_errors and isinstance(e, self.driver_errors):
                    raise StorageError(f"Storage operation failed: {e}") from e
                raise
            self._transaction_depth -= 1
            if outermost:
                try:
                    self.commit()
                except StorageError:
                    self.rollback()
                    raise
                except Exception as e:
                    self.rollback()
                    raise StorageError(f"Commit failed: {e}") from e
        finally:
            if guard is not None:
                guard.release()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][str(record_id)] = json.loads(json.dumps(data, default=str))

    def insert(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        with self._lock:
            super().insert(table, record_id, data)

    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(str(record_id))
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def exists(self, table: str, record_id: Union[int, str]) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return str(record_id) in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            results = []
            for record in self._data[table].values():
                match = True
                for key, value in filters.items():
                    if key not in record or record[key] != value:
                        match = False
                        break
                if match:
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def next_id(self, table: str) -> int:
        """Allocate the next id; like a database sequence it is not rolled back"""
        with self._lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    def begin_transaction(self) -> None:
        """Snapshot all tables so a rollback can restore them"""
        with self._lock:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Set isolation_level to 'DEFERRED' to enable manual transaction control
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        self._connection.execute("""
            CREATE TABLE IF NOT EXISTS _sequences (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL
            )
        """)
        self._connection.commit()

    def _autocommit(self) -> None:
        """Commit only when no unit of work is open"""
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_seq
                ON {table}(seq)
            """)
            self._autocommit()
            self._tables.add(table)

    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to SQLite, keeping its original insertion position"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            key = str(record_id)

            existing = self._connection.execute(
                f"SELECT seq, created_at FROM {table} WHERE id = ?", (key,)
            ).fetchone()
            if existing:
                self._connection.execute(
                    f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
                    (data_json, now, key)
                )
            else:
                seq = self._connection.execute(
                    f"SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}"
                ).fetchone()[0]
                self._connection.execute(
                    f"INSERT INTO {table} (id, seq, data, created_at, updated_at) VALUES (?, ?, ?, ?, ?)",
                    (key, seq, data_json, now, now)
                )
            self._autocommit()

    def insert(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        with self._lock:
            super().insert(table, record_id, data)

    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY seq
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: Union[int, str]) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (str(record_id),))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def next_id(self, table: str) -> int:
        with self._lock:
            self._connection.execute("""
                INSERT INTO _sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (table,))
            value = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (table,)
            ).fetchone()['value']
            self._autocommit()
            return value

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            try:
                self._connection.commit()
            except sqlite3.Error as e:
                raise StorageError(f"SQLite commit failed: {e}") from e

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._connection.rollback()
            # Tables created inside the rolled back unit are gone again
            self._tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transactions and row locks"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
            self.driver_errors = (psycopg2.Error,)
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually
            cursor = self._connection.cursor()
            try:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS _sequences (
                        name TEXT PRIMARY KEY,
                        value BIGINT NOT NULL
                    )
                """)
                self._connection.commit()
            finally:
                cursor.close()

    def _autocommit(self) -> None:
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        seq BIGSERIAL,
                        data JSONB NOT NULL,
                        created_at TIMESTAMP DEFAULT NOW(),
                        updated_at TIMESTAMP DEFAULT NOW()
                    )
                """)
                cursor.execute(f"""
                    CREATE INDEX IF NOT EXISTS idx_{table}_data
                    ON {table} USING gin(data)
                """)
                self._autocommit()
                self._tables.add(table)
            finally:
                cursor.close()

    def save(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            data_json = json.dumps(data, default=str)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (str(record_id), data_json, now, now))
                self._autocommit()
            finally:
                cursor.close()

    def insert(self, table: str, record_id: Union[int, str], data: Dict[str, Any]) -> None:
        """Plain INSERT: the primary key makes a concurrent claim wait, then fail"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc)
            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (str(record_id), json.dumps(data, default=str), now, now))
                self._autocommit()
            except self.psycopg2.IntegrityError as e:
                if not self.in_transaction:
                    self._connection.rollback()
                raise ConflictError(f"Record {record_id} already exists in {table}") from e
            finally:
                cursor.close()

    def _select_one(self, table: str, record_id: Union[int, str], lock: bool) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                suffix = " FOR UPDATE" if lock else ""
                cursor.execute(
                    f"SELECT data FROM {table} WHERE id = %s{suffix}", (str(record_id),)
                )
                row = cursor.fetchone()
                if row:
                    return dict(row['data'])
                return None
            finally:
                cursor.close()

    def load(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        return self._select_one(table, record_id, lock=False)

    def load_for_update(self, table: str, record_id: Union[int, str]) -> Optional[Dict[str, Any]]:
        """Load a record with SELECT ... FOR UPDATE inside the open unit"""
        return self._select_one(table, record_id, lock=self.in_transaction)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return self.find(table, {})

    def exists(self, table: str, record_id: Union[int, str]) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                if not filters:
                    cursor.execute(f"""
                        SELECT data FROM {table} ORDER BY seq
                    """)
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY seq
                    """, (json.dumps(filters, default=str),))

                return [dict(row['data']) for row in cursor.fetchall()]
            finally:
                cursor.close()

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)

            cursor = self._connection.cursor()
            try:
                cursor.execute(f"""
                    SELECT COUNT(*) as count FROM {table}
                """)
                return cursor.fetchone()['count']
            finally:
                cursor.close()

    def next_id(self, table: str) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("""
                    INSERT INTO _sequences (name, value) VALUES (%s, 1)
                    ON CONFLICT (name) DO UPDATE SET value = _sequences.value + 1
                    RETURNING value
                """, (table,))
                value = cursor.fetchone()['value']
                self._autocommit()
                return value
            finally:
                cursor.close()

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            try:
                self._connection.commit()
            except self.psycopg2.Error as e:
                raise StorageError(f"PostgreSQL commit failed: {e}") from e

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            self._connection.rollback()
            self._tables.clear()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a database URL"""
    if database_url == "memory://":
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")

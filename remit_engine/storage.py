"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL. All monetary values stored as Decimal strings.

`insert` is the authoritative unique constraint: it never overwrites and raises
DuplicateKeyError when the key is taken. Driver failures surface as StorageError.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from enum import Enum
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError, DuplicateKeyError


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
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def utc_timestamp(value: Optional[datetime] = None) -> datetime:
    """Return `value` as an aware datetime, reading naive values as UTC; defaults to now"""
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp loaded from storage"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return utc_timestamp(value)
    return utc_timestamp(datetime.fromisoformat(value))


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (upsert) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert a new record, raising DuplicateKeyError if the id exists"""
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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Any) -> Any:
        # Deep copy through JSON so stored rows look exactly like persisted ones
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                raise DuplicateKeyError(table, record_id)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
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
                    results.append(self._copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._copy(self._data)

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

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
            self._connection.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite database {self.db_path}: {e}") from e

    @contextmanager
    def _guard(self, table: str, record_id: Optional[str] = None):
        """Translate driver errors into engine storage errors"""
        try:
            yield
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError(table, record_id or "") from e
        except sqlite3.Error as e:
            raise StorageError(f"SQLite operation on {table} failed: {e}") from e

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
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
        if not self._in_transaction:
            self._connection.commit()
        self._known_tables.add(table)

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock, self._guard(table, record_id):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._maybe_commit()

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock, self._guard(table, record_id):
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self._guard(table, record_id):
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock, self._guard(table):
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at"
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock, self._guard(table, record_id):
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock, self._guard(table, record_id):
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
        with self._lock, self._guard(table):
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT COUNT(*) as count FROM {table}"
            ).fetchone()
            return row['count']

    def clear_table(self, table: str) -> None:
        with self._lock, self._guard(table):
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        with self._lock:
            # isolation_level='DEFERRED' opens the transaction on first write
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock, self._guard("transaction"):
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock, self._guard("transaction"):
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with ACID transaction support"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
        except ImportError:
            raise ImportError(
                "psycopg2 is required for PostgreSQL storage. Install with: pip install remit-engine[postgres]"
            )
        self.psycopg2 = psycopg2
        self.extras = psycopg2.extras

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        try:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
        except self.psycopg2.Error as e:
            raise StorageError(f"PostgreSQL connection failed: {e}") from e
        self._connection.autocommit = False

    @contextmanager
    def _cursor(self, table: str, record_id: Optional[str] = None):
        """Yield a cursor, translating driver errors into engine storage errors"""
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self._in_transaction:
                self._connection.commit()
        except self.psycopg2.errors.UniqueViolation as e:
            self._connection.rollback()
            raise DuplicateKeyError(table, record_id or "") from e
        except self.psycopg2.Error as e:
            self._connection.rollback()
            raise StorageError(f"PostgreSQL operation on {table} failed: {e}") from e
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        with self._cursor(table) as cursor:
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
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor(table, record_id) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor(table, record_id) as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table, record_id) as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table, record_id) as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table, record_id) as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE data @> %s::jsonb
                    ORDER BY created_at
                """, (json.dumps(filters, default=str),))
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            with self._cursor(table) as cursor:
                cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """Build a storage backend from a database URL"""
    if database_url in ("memory://", "memory"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")

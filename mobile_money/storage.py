"""
Storage Backend Module

Provides the abstract document store the ledger runs on, plus in-memory
(testing), SQLite and PostgreSQL implementations. Every backend offers the
single-document atomic primitives the ledger depends on:

* ``insert``: create a record only if its id is free
* ``adjust_decimal``: conditional increment of a Decimal field
* ``compare_and_set``: field-level compare-and-swap

All monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import InfrastructureError


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


class AdjustResult(Enum):
    """Outcome of a conditional balance adjustment"""
    COMMITTED = "committed"
    PRECONDITION_FAILED = "precondition_failed"
    NOT_FOUND = "not_found"


class CasResult(Enum):
    """Outcome of a compare-and-set"""
    COMMITTED = "committed"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"


def _apply_adjustment(record: Dict[str, Any], field: str, delta: Decimal,
                      floor: Optional[Decimal],
                      expected: Optional[Dict[str, Any]] = None) -> AdjustResult:
    """Apply ``record[field] += delta`` in place unless a guard fails"""
    if expected and not _matches(record, expected):
        return AdjustResult.PRECONDITION_FAILED
    new_value = Decimal(str(record.get(field, "0"))) + delta
    if floor is not None and new_value < floor:
        return AdjustResult.PRECONDITION_FAILED
    record[field] = str(new_value)
    record["updated_at"] = datetime.now(timezone.utc).isoformat()
    return AdjustResult.COMMITTED


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in expected.items())


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (upsert) a record"""
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Create a record only if the id is unused; returns False on collision"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def adjust_decimal(self, table: str, record_id: str, field: str,
                       delta: Decimal, floor: Optional[Decimal] = None,
                       expected: Optional[Dict[str, Any]] = None) -> AdjustResult:
        """
        Atomically add ``delta`` to a Decimal field.

        The write happens only if the new value is ``>= floor`` and every
        ``expected`` field matches (when given). The check and the write are
        one store-level operation.
        """
        pass

    @abstractmethod
    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], changes: Dict[str, Any]) -> CasResult:
        """Atomically apply ``changes`` if every ``expected`` field still matches"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return self.load(table, record_id) is not None

    def begin_transaction(self) -> None:
        """Start a multi-document transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for multi-document atomic operations"""
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

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                return False
            rows[record_id] = self._copy(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def adjust_decimal(self, table: str, record_id: str, field: str,
                       delta: Decimal, floor: Optional[Decimal] = None,
                       expected: Optional[Dict[str, Any]] = None) -> AdjustResult:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None:
                return AdjustResult.NOT_FOUND
            return _apply_adjustment(record, field, delta, floor, expected)

    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], changes: Dict[str, Any]) -> CasResult:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is None:
                return CasResult.NOT_FOUND
            if not _matches(record, expected):
                return CasResult.MISMATCH
            record.update(self._copy(changes))
            return CasResult.COMMITTED

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Runs in autocommit mode; every write opens its own ``BEGIN IMMEDIATE``
    transaction unless an ``atomic()`` block is already active, so the
    read-check-write of ``adjust_decimal`` and ``compare_and_set`` holds the
    database write lock for its whole duration.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tx_depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._guard():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

    @contextmanager
    def _guard(self):
        try:
            yield
        except sqlite3.Error as e:
            raise InfrastructureError(f"SQLite error: {e}") from e

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._guard():
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

    @contextmanager
    def _write(self, table: str):
        """Run the block inside a write transaction (or the active atomic block)"""
        with self._lock:
            self._ensure_table(table)
            if self._in_transaction:
                with self._guard():
                    yield
                return
            with self._guard():
                self._connection.execute("BEGIN IMMEDIATE")
                try:
                    yield
                except BaseException:
                    self._connection.execute("ROLLBACK")
                    raise
                self._connection.execute("COMMIT")

    def _select_one(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._connection.execute(
            f"SELECT data FROM {table} WHERE id = ?", (record_id,)
        ).fetchone()
        return json.loads(row["data"]) if row else None

    def _update(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._connection.execute(
            f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
            (json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(), record_id)
        )

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._write(table):
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        with self._write(table):
            cursor = self._connection.execute(f"""
                INSERT OR IGNORE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """, (record_id, json.dumps(data, default=str), now, now))
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self._guard():
            self._ensure_table(table)
            return self._select_one(table, record_id)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock, self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} ORDER BY created_at, rowid"
            )
            return [json.loads(row["data"]) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._write(table):
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records using json_extract on each filter key"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) = ?")
            params.extend([f"$.{key}", value])
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self._lock, self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT data FROM {table} {where_clause} ORDER BY created_at, rowid",
                params
            )
            return [json.loads(row["data"]) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock, self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()["count"]

    def adjust_decimal(self, table: str, record_id: str, field: str,
                       delta: Decimal, floor: Optional[Decimal] = None,
                       expected: Optional[Dict[str, Any]] = None) -> AdjustResult:
        with self._write(table):
            record = self._select_one(table, record_id)
            if record is None:
                return AdjustResult.NOT_FOUND
            result = _apply_adjustment(record, field, delta, floor, expected)
            if result == AdjustResult.COMMITTED:
                self._update(table, record_id, record)
            return result

    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], changes: Dict[str, Any]) -> CasResult:
        with self._write(table):
            record = self._select_one(table, record_id)
            if record is None:
                return CasResult.NOT_FOUND
            if not _matches(record, expected):
                return CasResult.MISMATCH
            record.update(json.loads(json.dumps(changes, default=str)))
            self._update(table, record_id, record)
            return CasResult.COMMITTED

    def clear_table(self, table: str) -> None:
        with self._write(table):
            self._connection.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        """Start a transaction; the connection lock is held until commit/rollback"""
        self._lock.acquire()
        self._tx_depth += 1
        if self._tx_depth > 1:
            return
        try:
            with self._guard():
                self._connection.execute("BEGIN IMMEDIATE")
        except InfrastructureError:
            self._tx_depth -= 1
            self._lock.release()
            raise
        self._in_transaction = True

    def _end_transaction(self, statement: str) -> None:
        try:
            if self._tx_depth == 1 and self._in_transaction:
                self._in_transaction = False
                if statement == "ROLLBACK":
                    # Tables created inside the block are gone again
                    self._tables.clear()
                with self._guard():
                    self._connection.execute(statement)
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def commit(self) -> None:
        self._end_transaction("COMMIT")

    def rollback(self) -> None:
        self._end_transaction("ROLLBACK")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with ACID transaction support

    Conditional updates lock the target row with ``SELECT ... FOR UPDATE``
    so concurrent adjusters on other connections serialize on that row.
    """

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False

    @contextmanager
    def _cursor(self, table: str):
        """Yield a cursor; commits unless an atomic block is open"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.cursor()
            try:
                yield cursor
                if self._tx_depth == 0:
                    self._connection.commit()
            except self.psycopg2.Error as e:
                if self._tx_depth == 0:
                    self._connection.rollback()
                raise InfrastructureError(f"PostgreSQL error: {e}") from e
            except BaseException:
                if self._tx_depth == 0:
                    self._connection.rollback()
                raise
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        cursor = self._connection.cursor()
        try:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW(),
                    updated_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            if self._tx_depth == 0:
                self._connection.commit()
        except self.psycopg2.Error as e:
            raise InfrastructureError(f"PostgreSQL error: {e}") from e
        finally:
            cursor.close()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._cursor(table) as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data) VALUES (%s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = NOW()
            """, (record_id, json.dumps(data, default=str)))

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._cursor(table) as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data) VALUES (%s, %s)
                ON CONFLICT (id) DO NOTHING
            """, (record_id, json.dumps(data, default=str)))
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._cursor(table) as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row["data"]) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._cursor(table) as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row["data"]) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._cursor(table) as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records with JSONB containment"""
        with self._cursor(table) as cursor:
            if filters:
                cursor.execute(
                    f"SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY created_at",
                    (json.dumps(filters, default=str),)
                )
            else:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row["data"]) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._cursor(table) as cursor:
            cursor.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()["count"]

    def _lock_row(self, cursor, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        cursor.execute(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
        row = cursor.fetchone()
        return dict(row["data"]) if row else None

    def adjust_decimal(self, table: str, record_id: str, field: str,
                       delta: Decimal, floor: Optional[Decimal] = None,
                       expected: Optional[Dict[str, Any]] = None) -> AdjustResult:
        with self._cursor(table) as cursor:
            record = self._lock_row(cursor, table, record_id)
            if record is None:
                return AdjustResult.NOT_FOUND
            result = _apply_adjustment(record, field, delta, floor, expected)
            if result == AdjustResult.COMMITTED:
                cursor.execute(
                    f"UPDATE {table} SET data = %s, updated_at = NOW() WHERE id = %s",
                    (json.dumps(record, default=str), record_id)
                )
            return result

    def compare_and_set(self, table: str, record_id: str,
                        expected: Dict[str, Any], changes: Dict[str, Any]) -> CasResult:
        with self._cursor(table) as cursor:
            record = self._lock_row(cursor, table, record_id)
            if record is None:
                return CasResult.NOT_FOUND
            if not _matches(record, expected):
                return CasResult.MISMATCH
            record.update(json.loads(json.dumps(changes, default=str)))
            cursor.execute(
                f"UPDATE {table} SET data = %s, updated_at = NOW() WHERE id = %s",
                (json.dumps(record, default=str), record_id)
            )
            return CasResult.COMMITTED

    def clear_table(self, table: str) -> None:
        with self._cursor(table) as cursor:
            cursor.execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        # psycopg2 opens the transaction implicitly on the first statement
        self._lock.acquire()
        self._tx_depth += 1

    def _end_transaction(self, commit: bool) -> None:
        try:
            if self._tx_depth == 1:
                try:
                    if commit:
                        self._connection.commit()
                    else:
                        self._tables.clear()
                        self._connection.rollback()
                except self.psycopg2.Error as e:
                    raise InfrastructureError(f"PostgreSQL error: {e}") from e
        finally:
            self._tx_depth -= 1
            self._lock.release()

    def commit(self) -> None:
        self._end_transaction(commit=True)

    def rollback(self) -> None:
        self._end_transaction(commit=False)

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path.db`` (or
    ``sqlite://`` for an in-memory database) gives SQLiteStorage and
    ``postgresql://...`` gives PostgreSQLStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):].lstrip("/") or ":memory:"
        if database_url.startswith("sqlite:////"):
            path = "/" + path
        return SQLiteStorage(path)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")

"""
Storage Backend Module

Abstract storage interface for JSON-shaped workflow records, with in-memory
(testing), SQLite and PostgreSQL implementations. Every backend supports a
compare-and-save on the record's "version" field for optimistic locking.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
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
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        if 'created_at' in data and isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if 'updated_at' in data and isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])

        return cls(**data)


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally"""
        pass

    @abstractmethod
    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        """
        Save a record only if the stored version matches.

        expected_version=None means the record must not exist yet. The new
        version is taken from data["version"]. Returns False when the check
        fails and nothing was written.
        """
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
        """Find records whose top-level keys equal the filter values"""
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

    def current_version(self, table: str, record_id: str) -> Optional[int]:
        """Stored version of a record, or None if absent"""
        record = self.load(table, record_id)
        if record is None:
            return None
        return record.get('version')


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON so callers never share mutable state with the store
        return json.loads(json.dumps(data, default=str))

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        with self._lock:
            rows = self._table(table)
            existing = rows.get(record_id)
            if expected_version is None:
                if existing is not None:
                    return False
            elif existing is None or existing.get('version') != expected_version:
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

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record) for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # timeout bounds how long a statement waits on a locked database
        self._connection = sqlite3.connect(
            self.db_path, timeout=timeout, check_same_thread=False, isolation_level='DEFERRED'
        )
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._connection.commit()
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), data.get('version', 0),
                  record_id, now, now))
            self._connection.commit()

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            payload = json.dumps(data, default=str)
            new_version = data.get('version', 0)
            if expected_version is None:
                cursor = self._connection.execute(f"""
                    INSERT OR IGNORE INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (record_id, payload, new_version, now, now))
            else:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, version = ?, updated_at = ?
                    WHERE id = ? AND version = ?
                """, (payload, new_version, now, record_id, expected_version))
            self._connection.commit()
            return cursor.rowcount == 1

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._connection.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key matching in Python)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.commit()

    def current_version(self, table: str, record_id: str) -> Optional[int]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT version FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return row['version'] if row else None

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend (JSONB documents with a version column)"""

    def __init__(self, connection_string: str, timeout: float = 5.0):
        try:
            import psycopg2
            import psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.psycopg2 = psycopg2
        self.extras = psycopg2.extras
        self.connection_string = connection_string
        self.timeout = timeout
        self._connection = None
        self._lock = threading.RLock()
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            statement_timeout_ms = int(self.timeout * 1000)
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor,
                connect_timeout=max(1, int(self.timeout)),
                options=f"-c statement_timeout={statement_timeout_ms}"
            )
            self._connection.autocommit = False

    @contextmanager
    def _cursor(self):
        cursor = self._connection.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        with self._lock, self._cursor() as cursor:
            cursor.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            self._connection.commit()
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, version, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        version = EXCLUDED.version,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), data.get('version', 0), now, now))
                self._connection.commit()

    def compare_and_save(self, table: str, record_id: str, data: Dict[str, Any],
                         expected_version: Optional[int]) -> bool:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            payload = json.dumps(data, default=str)
            new_version = data.get('version', 0)
            with self._cursor() as cursor:
                if expected_version is None:
                    cursor.execute(f"""
                        INSERT INTO {table} (id, data, version, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s)
                        ON CONFLICT (id) DO NOTHING
                    """, (record_id, payload, new_version, now, now))
                else:
                    cursor.execute(f"""
                        UPDATE {table} SET data = %s, version = %s, updated_at = %s
                        WHERE id = %s AND version = %s
                    """, (payload, new_version, now, record_id, expected_version))
                written = cursor.rowcount == 1
                self._connection.commit()
                return written

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                self._connection.commit()
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                if not filters:
                    cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
                else:
                    cursor.execute(f"""
                        SELECT data FROM {table}
                        WHERE data @> %s::jsonb
                        ORDER BY created_at
                    """, (json.dumps(filters, default=str),))
                return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")
                self._connection.commit()

    def current_version(self, table: str, record_id: str) -> Optional[int]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT version FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return row['version'] if row else None

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str, timeout: float = 5.0) -> StorageInterface:
    """Build a storage backend from a URL (memory://, sqlite:///path, postgresql://...)"""
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:", timeout=timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, timeout=timeout)
    raise ValueError(f"Unsupported database URL: {database_url}")

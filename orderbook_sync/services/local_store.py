"""
local_store.py - Local persistent store

Synchronous CRUD for orders, flavors, fillings and settings, a string-keyed
blob area (sync queue, failure log, image references) and an activity log.
The local store is the durability baseline: every failure surfaces as
LocalStoreError.
"""

import copy
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .errors import LocalStoreError

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("LocalStore")

RECORD_COLLECTIONS = ("orders", "flavors", "fillings")

DEFAULT_SETTINGS = {
    "notifications_enabled": False,
    "days_before": 1,
    "contact_name": "",
    "company_name": "",
    "phone": "",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _check_collection(collection: str):
    if collection not in RECORD_COLLECTIONS:
        raise LocalStoreError(f"Unknown collection: {collection}")


class LocalStore:
    """Interface every local backend implements."""

    backend = "abstract"

    # ==================== Records ====================

    def get_all(self, collection: str) -> List[Dict]:
        raise NotImplementedError

    def get_by_id(self, collection: str, record_id: int) -> Optional[Dict]:
        raise NotImplementedError

    def insert(self, collection: str, record: Dict) -> int:
        """Insert a record and return its new numeric id."""
        raise NotImplementedError

    def update(self, collection: str, record_id: int, fields: Dict):
        """Merge fields into an existing record."""
        raise NotImplementedError

    def delete(self, collection: str, record_id: int):
        raise NotImplementedError

    def upsert_with_id(self, collection: str, record: Dict):
        """Insert or replace a record keeping its id."""
        raise NotImplementedError

    def replace_all(self, collection: str, records: List[Dict]):
        """Replace the whole collection."""
        raise NotImplementedError

    # ==================== Settings ====================

    def get_settings(self) -> Dict:
        raise NotImplementedError

    def save_settings(self, settings: Dict):
        raise NotImplementedError

    # ==================== Blobs ====================

    def get_blob(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_blob(self, key: str, value: str):
        raise NotImplementedError

    def delete_blob(self, key: str):
        raise NotImplementedError

    # ==================== Activity Logging ====================

    def log_activity(self, event_type: str, status: str = 'pending', details: str = None):
        raise NotImplementedError

    def get_recent_logs(self, limit: int = 50) -> List[Dict]:
        raise NotImplementedError

    def close(self):
        pass


class SqliteLocalStore(LocalStore):
    """SQLite backend; one short-lived connection per operation."""

    backend = "sqlite"

    def __init__(self, db_path):
        self.db_path = str(db_path)
        self._ensure_data_dir()
        self._init_db()

    def _ensure_data_dir(self):
        """Create data directory if it doesn't exist."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as e:
            raise LocalStoreError(f"Cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, statements):
        """Run (sql, params) pairs in one transaction, return the last cursor."""
        conn = self._get_connection()
        try:
            cursor = conn.cursor()
            for sql, params in statements:
                cursor.execute(sql, params)
            conn.commit()
            return cursor
        except sqlite3.Error as e:
            conn.rollback()
            raise LocalStoreError(str(e)) from e
        finally:
            conn.close()

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        conn = self._get_connection()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise LocalStoreError(str(e)) from e
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema if tables don't exist."""
        statements = []
        for collection in RECORD_COLLECTIONS:
            statements.append((f'''
                CREATE TABLE IF NOT EXISTS {collection} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''', ()))

        statements.append(('''
            CREATE TABLE IF NOT EXISTS settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                data TEXT NOT NULL
            )
        ''', ()))

        statements.append(('''
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        ''', ()))

        statements.append(('''
            CREATE TABLE IF NOT EXISTS activity_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                status TEXT DEFAULT 'pending',
                details TEXT,
                created_at TEXT NOT NULL
            )
        ''', ()))

        self._execute(statements)
        logger.info(f"SQLite database initialized at: {self.db_path}")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> Dict:
        record = json.loads(row['data'])
        record['id'] = row['id']
        return record

    @staticmethod
    def _dump(record: Dict) -> str:
        data = {k: v for k, v in record.items() if k != 'id'}
        return json.dumps(data)

    # ==================== Records ====================

    def get_all(self, collection: str) -> List[Dict]:
        _check_collection(collection)
        rows = self._query(f"SELECT id, data FROM {collection} ORDER BY id ASC")
        return [self._row_to_record(row) for row in rows]

    def get_by_id(self, collection: str, record_id: int) -> Optional[Dict]:
        _check_collection(collection)
        rows = self._query(f"SELECT id, data FROM {collection} WHERE id = ?", (record_id,))
        return self._row_to_record(rows[0]) if rows else None

    def insert(self, collection: str, record: Dict) -> int:
        _check_collection(collection)
        cursor = self._execute([(
            f"INSERT INTO {collection} (data, updated_at) VALUES (?, ?)",
            (self._dump(record), _now())
        )])
        return cursor.lastrowid

    def update(self, collection: str, record_id: int, fields: Dict):
        existing = self.get_by_id(collection, record_id)
        if existing is None:
            raise LocalStoreError(f"{collection} record {record_id} not found")
        existing.update({k: v for k, v in fields.items() if k != 'id'})
        self._execute([(
            f"UPDATE {collection} SET data = ?, updated_at = ? WHERE id = ?",
            (self._dump(existing), _now(), record_id)
        )])

    def delete(self, collection: str, record_id: int):
        _check_collection(collection)
        self._execute([(f"DELETE FROM {collection} WHERE id = ?", (record_id,))])

    def upsert_with_id(self, collection: str, record: Dict):
        _check_collection(collection)
        if record.get('id') is None:
            raise LocalStoreError("upsert_with_id requires a record id")
        self._execute([(
            f"INSERT OR REPLACE INTO {collection} (id, data, updated_at) VALUES (?, ?, ?)",
            (int(record['id']), self._dump(record), _now())
        )])

    def replace_all(self, collection: str, records: List[Dict]):
        _check_collection(collection)
        statements = [(f"DELETE FROM {collection}", ())]
        now = _now()
        for record in records:
            if record.get('id') is None:
                statements.append((
                    f"INSERT INTO {collection} (data, updated_at) VALUES (?, ?)",
                    (self._dump(record), now)
                ))
            else:
                statements.append((
                    f"INSERT OR REPLACE INTO {collection} (id, data, updated_at) VALUES (?, ?, ?)",
                    (int(record['id']), self._dump(record), now)
                ))
        self._execute(statements)

    # ==================== Settings ====================

    def get_settings(self) -> Dict:
        rows = self._query("SELECT data FROM settings WHERE id = 1")
        settings = dict(DEFAULT_SETTINGS)
        if rows:
            settings.update(json.loads(rows[0]['data']))
        return settings

    def save_settings(self, settings: Dict):
        merged = self.get_settings()
        merged.update(settings)
        self._execute([(
            "INSERT OR REPLACE INTO settings (id, data) VALUES (1, ?)",
            (json.dumps(merged),)
        )])

    # ==================== Blobs ====================

    def get_blob(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM kv_store WHERE key = ?", (key,))
        return rows[0]['value'] if rows else None

    def set_blob(self, key: str, value: str):
        self._execute([(
            "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)", (key, value)
        )])

    def delete_blob(self, key: str):
        self._execute([("DELETE FROM kv_store WHERE key = ?", (key,))])

    # ==================== Activity Logging ====================

    def log_activity(self, event_type: str, status: str = 'pending', details: str = None):
        """Log a sync activity event."""
        self._execute([(
            "INSERT INTO activity_logs (event_type, status, details, created_at) VALUES (?, ?, ?, ?)",
            (event_type, status, details, _now())
        )])

    def get_recent_logs(self, limit: int = 50) -> List[Dict]:
        """Get recent activity logs, newest first."""
        rows = self._query(
            "SELECT * FROM activity_logs ORDER BY id DESC LIMIT ?", (limit,)
        )
        return [dict(row) for row in rows]


class MemoryLocalStore(LocalStore):
    """In-process backend for ephemeral runs and tests."""

    backend = "memory"

    def __init__(self):
        self._records: Dict[str, Dict[int, Dict]] = {c: {} for c in RECORD_COLLECTIONS}
        self._next_ids: Dict[str, int] = {c: 1 for c in RECORD_COLLECTIONS}
        self._settings: Dict = dict(DEFAULT_SETTINGS)
        self._blobs: Dict[str, str] = {}
        self._logs: List[Dict] = []

    def _table(self, collection: str) -> Dict[int, Dict]:
        _check_collection(collection)
        return self._records[collection]

    def _store(self, collection: str, record_id: int, record: Dict):
        stored = copy.deepcopy(record)
        stored['id'] = record_id
        self._records[collection][record_id] = stored
        self._next_ids[collection] = max(self._next_ids[collection], record_id + 1)

    def get_all(self, collection: str) -> List[Dict]:
        table = self._table(collection)
        return [copy.deepcopy(table[k]) for k in sorted(table)]

    def get_by_id(self, collection: str, record_id: int) -> Optional[Dict]:
        record = self._table(collection).get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def insert(self, collection: str, record: Dict) -> int:
        self._table(collection)
        record_id = self._next_ids[collection]
        self._store(collection, record_id, record)
        return record_id

    def update(self, collection: str, record_id: int, fields: Dict):
        table = self._table(collection)
        if record_id not in table:
            raise LocalStoreError(f"{collection} record {record_id} not found")
        table[record_id].update(copy.deepcopy({k: v for k, v in fields.items() if k != 'id'}))

    def delete(self, collection: str, record_id: int):
        self._table(collection).pop(record_id, None)

    def upsert_with_id(self, collection: str, record: Dict):
        self._table(collection)
        if record.get('id') is None:
            raise LocalStoreError("upsert_with_id requires a record id")
        self._store(collection, int(record['id']), record)

    def replace_all(self, collection: str, records: List[Dict]):
        self._table(collection).clear()
        for record in records:
            if record.get('id') is None:
                self.insert(collection, record)
            else:
                self._store(collection, int(record['id']), record)

    def get_settings(self) -> Dict:
        return copy.deepcopy(self._settings)

    def save_settings(self, settings: Dict):
        self._settings.update(copy.deepcopy(settings))

    def get_blob(self, key: str) -> Optional[str]:
        return self._blobs.get(key)

    def set_blob(self, key: str, value: str):
        self._blobs[key] = value

    def delete_blob(self, key: str):
        self._blobs.pop(key, None)

    def log_activity(self, event_type: str, status: str = 'pending', details: str = None):
        self._logs.append({
            'id': len(self._logs) + 1,
            'event_type': event_type,
            'status': status,
            'details': details,
            'created_at': _now(),
        })

    def get_recent_logs(self, limit: int = 50) -> List[Dict]:
        return [dict(log) for log in reversed(self._logs[-limit:])] if limit > 0 else []


def create_local_store(settings) -> LocalStore:
    """Pick the local backend once, at startup."""
    if settings.local_backend == "memory":
        logger.info("Using in-memory local store")
        return MemoryLocalStore()
    return SqliteLocalStore(settings.db_path)

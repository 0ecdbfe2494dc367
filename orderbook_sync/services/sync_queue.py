"""
sync_queue.py - Durable Sync Queue

Ordered list of pending remote mutations, persisted to the local store's
blob area on every change so a restart never loses queued work.
Items that exhaust their retries move to the SyncFailureLog.
"""

import json
import logging
import random
import time
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set

from .local_store import LocalStore

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SyncQueue")

QUEUE_KEY = "pending_sync"
FAILURES_KEY = "pending_sync_failures"


class SyncOperation(Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncCollection(Enum):
    ORDERS = "orders"
    FLAVORS = "flavors"
    FILLINGS = "fillings"
    SETTINGS = "settings"


class ItemState(Enum):
    """Lifecycle of one queued item during a drain."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"                 # removed from the queue
    FAILED_RETRYABLE = "failed_retryable"   # back to PENDING, retry_count + 1
    FAILED_TERMINAL = "failed_terminal"     # removed, moved to the failure log


class PendingSyncItem:
    """One queued mutation."""

    __slots__ = ("id", "operation", "collection", "payload", "enqueued_at", "retry_count")

    def __init__(self, id: str, operation: SyncOperation, collection: SyncCollection,
                 payload: Dict, enqueued_at: float, retry_count: int = 0):
        self.id = id
        self.operation = operation
        self.collection = collection
        self.payload = payload
        self.enqueued_at = enqueued_at
        self.retry_count = retry_count

    @staticmethod
    def make_id(operation: SyncOperation, collection: SyncCollection, timestamp: float) -> str:
        return f"{collection.value}_{operation.value}_{int(timestamp * 1000)}_{random.random()}"

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "operation": self.operation.value,
            "collection": self.collection.value,
            "payload": self.payload,
            "enqueued_at": self.enqueued_at,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "PendingSyncItem":
        return cls(
            id=str(data["id"]),
            operation=SyncOperation(data["operation"]),
            collection=SyncCollection(data["collection"]),
            payload=data.get("payload") or {},
            enqueued_at=float(data["enqueued_at"]),
            retry_count=int(data.get("retry_count", 0)),
        )

    def __repr__(self):
        return (f"PendingSyncItem({self.operation.value} {self.collection.value} "
                f"id={self.id!r} retries={self.retry_count})")


def _load_list(store: LocalStore, key: str) -> List[Dict]:
    """Read a JSON list blob; anything unreadable counts as empty."""
    raw = store.get_blob(key)
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        logger.error(f"Corrupt {key} state, starting empty: {e}")
        return []
    if not isinstance(data, list):
        logger.error(f"Corrupt {key} state (not a list), starting empty")
        return []
    return data


class SyncQueue:
    """
    FIFO queue of PendingSyncItems backed by a LocalStore blob.

    All mutations persist synchronously before returning.
    """

    def __init__(self, store: LocalStore, key: str = QUEUE_KEY):
        self.store = store
        self.key = key
        self._items: List[PendingSyncItem] = self._load()

        if self._items:
            logger.info(f"Loaded {len(self._items)} pending sync items")

    def _load(self) -> List[PendingSyncItem]:
        items = []
        seen = set()
        for raw in _load_list(self.store, self.key):
            try:
                item = PendingSyncItem.from_dict(raw)
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Corrupt {self.key} state, starting empty: {e}")
                return []
            if item.id in seen:
                continue
            seen.add(item.id)
            items.append(item)
        items.sort(key=lambda i: i.enqueued_at)
        return items

    def _persist(self):
        self.store.set_blob(self.key, json.dumps([i.to_dict() for i in self._items]))

    def enqueue(self, operation: SyncOperation, collection: SyncCollection,
                payload: Dict) -> str:
        """
        Append a mutation to the queue.

        Returns:
            The generated item id
        """
        timestamp = time.time()
        if self._items and timestamp < self._items[-1].enqueued_at:
            # Keep enqueued_at monotonic so FIFO order survives a reload
            timestamp = self._items[-1].enqueued_at

        existing = {i.id for i in self._items}
        item_id = PendingSyncItem.make_id(operation, collection, timestamp)
        while item_id in existing:
            item_id = PendingSyncItem.make_id(operation, collection, timestamp)

        item = PendingSyncItem(item_id, operation, collection, dict(payload), timestamp)
        self._items.append(item)
        self._persist()

        logger.info(f"Queued for sync: {operation.value} {collection.value}")
        return item_id

    def list_pending(self) -> List[PendingSyncItem]:
        """Snapshot of pending items in insertion order."""
        return [PendingSyncItem.from_dict(i.to_dict()) for i in self._items]

    def get(self, item_id: str) -> Optional[PendingSyncItem]:
        return next((i for i in self._items if i.id == item_id), None)

    def remove(self, ids: Iterable[str]):
        ids = set(ids)
        if not ids:
            return
        self._items = [i for i in self._items if i.id not in ids]
        self._persist()

    def update_retry_counts(self, items: Iterable[PendingSyncItem]):
        """Persist new retry counts; counts never go down."""
        counts = {i.id: i.retry_count for i in items}
        if not counts:
            return
        for item in self._items:
            if item.id in counts and counts[item.id] > item.retry_count:
                item.retry_count = counts[item.id]
        self._persist()

    def clear(self):
        self._items = []
        self._persist()
        logger.info("Sync queue cleared")

    def pending_ids(self, collection: SyncCollection) -> Set:
        """Record ids in one collection that still have queued mutations."""
        return {
            i.payload.get("id") for i in self._items
            if i.collection == collection and i.payload.get("id") is not None
        }

    def has_pending(self, collection: SyncCollection, record_id=None) -> bool:
        """Whether a record (or, without record_id, any record) of a collection is queued."""
        for item in self._items:
            if item.collection != collection:
                continue
            if record_id is None or item.payload.get("id") == record_id:
                return True
        return False

    def __len__(self):
        return len(self._items)


class SyncFailureLog:
    """Items that exhausted their retries, kept until someone acts on them."""

    def __init__(self, store: LocalStore, key: str = FAILURES_KEY):
        self.store = store
        self.key = key

    def append(self, item: PendingSyncItem, error: str):
        entries = _load_list(self.store, self.key)
        if any(e.get("item", {}).get("id") == item.id for e in entries):
            return
        entries.append({
            "item": item.to_dict(),
            "error": error,
            "failed_at": time.time(),
        })
        self.store.set_blob(self.key, json.dumps(entries))

    def list(self) -> List[Dict]:
        return _load_list(self.store, self.key)

    def pop_all(self) -> List[PendingSyncItem]:
        """Remove every entry and return the failed items."""
        items = []
        for entry in self.list():
            try:
                items.append(PendingSyncItem.from_dict(entry["item"]))
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Dropping unreadable failure entry: {e}")
        self.clear()
        return items

    def clear(self):
        self.store.delete_blob(self.key)

    def __len__(self):
        return len(self.list())

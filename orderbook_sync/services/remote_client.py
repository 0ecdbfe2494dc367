"""
remote_client.py - Remote Sync Client

One call per (collection, operation) against the remote document store.
Every write is an upsert keyed by (ownerId, local id), so delivering the
same queue item twice leaves a single remote record.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from .errors import RemoteRejectedError, RemoteTimeoutError, SyncError, SyncResult
from .remote_store import Document, RemoteDocumentStore
from .sync_queue import PendingSyncItem, SyncCollection, SyncOperation

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("RemoteSyncClient")


class ReconcilePolicy(Enum):
    """How a remote read reconciles with the local cache."""
    REMOTE_WINS = "remote_wins"   # remote overwrites local on every fetch
    MERGE_BY_ID = "merge_by_id"   # union by local id


COLLECTION_POLICIES = {
    SyncCollection.ORDERS: ReconcilePolicy.MERGE_BY_ID,
    SyncCollection.SETTINGS: ReconcilePolicy.MERGE_BY_ID,
    SyncCollection.FLAVORS: ReconcilePolicy.REMOTE_WINS,
    SyncCollection.FILLINGS: ReconcilePolicy.REMOTE_WINS,
}

# Fields that never leave the device
LOCAL_ONLY_FIELDS = ("image",)
REMOTE_META_FIELDS = ("ownerId", "createdAt", "updatedAt")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def order_content_key(order: Dict) -> str:
    return f"{order.get('name')}|{order.get('delivery_date')}|{order.get('price')}"


def strip_remote_fields(data: Dict) -> Dict:
    """Remote document -> local record shape."""
    return {k: v for k, v in data.items() if k not in REMOTE_META_FIELDS}


class RemoteSyncClient:
    """Remote calls for every synced collection, scoped to one owner."""

    def __init__(self, store: RemoteDocumentStore, owner_id: str, timeout: float = 30.0):
        self.store = store
        self.owner_id = owner_id
        self.timeout = timeout

        self._handlers = {
            (SyncCollection.ORDERS, SyncOperation.CREATE): self.save_order,
            (SyncCollection.ORDERS, SyncOperation.UPDATE): self.update_order,
            (SyncCollection.ORDERS, SyncOperation.DELETE): self._delete_order_payload,
            (SyncCollection.FLAVORS, SyncOperation.CREATE): self.save_flavor,
            (SyncCollection.FLAVORS, SyncOperation.UPDATE): self.save_flavor,
            (SyncCollection.FLAVORS, SyncOperation.DELETE): self._delete_flavor_payload,
            (SyncCollection.FILLINGS, SyncOperation.CREATE): self.save_filling,
            (SyncCollection.FILLINGS, SyncOperation.UPDATE): self.save_filling,
            (SyncCollection.FILLINGS, SyncOperation.DELETE): self._delete_filling_payload,
            (SyncCollection.SETTINGS, SyncOperation.CREATE): self.save_settings,
            (SyncCollection.SETTINGS, SyncOperation.UPDATE): self.save_settings,
        }

    # ==================== Helpers ====================

    def doc_id(self, local_id) -> str:
        return f"{self.owner_id}_{local_id}"

    async def _call(self, awaitable):
        """Bound a remote call by the client timeout."""
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(f"Remote call exceeded {self.timeout}s") from e

    def _to_remote(self, record: Dict) -> Dict:
        data = {k: v for k, v in record.items()
                if k not in LOCAL_ONLY_FIELDS and k not in REMOTE_META_FIELDS}
        data["ownerId"] = self.owner_id
        data["updatedAt"] = _now()
        return data

    @staticmethod
    def _require_id(record: Dict, what: str):
        if record.get("id") is None:
            raise RemoteRejectedError(f"{what} payload has no id")
        return record["id"]

    async def _save(self, collection: str, record: Dict, merge: bool = False):
        record_id = self._require_id(record, collection)
        data = self._to_remote(record)
        if not merge:
            data["createdAt"] = data["updatedAt"]
        await self._call(self.store.set(collection, self.doc_id(record_id), data, merge=merge))

    async def _fetch(self, collection: str, order_by: Optional[str] = None) -> List[Dict]:
        documents = await self._call(self.store.query(collection, self.owner_id, order_by))
        return [strip_remote_fields(data) for _, data in documents]

    # ==================== Orders ====================

    async def save_order(self, order: Dict):
        """Create or overwrite the remote copy of an order."""
        await self._save("orders", order)

    async def update_order(self, order: Dict):
        """Merge changed fields into the remote order, creating it if missing."""
        await self._save("orders", order, merge=True)

    async def delete_order(self, order_id: int):
        await self._call(self.store.delete("orders", self.doc_id(order_id)))

    async def _delete_order_payload(self, payload: Dict):
        await self.delete_order(self._require_id(payload, "orders"))

    async def fetch_orders(self) -> List[Dict]:
        """All orders of this owner, ascending by delivery date."""
        return await self._fetch("orders", order_by="delivery_date")

    async def get_order(self, order_id: int) -> Optional[Dict]:
        data = await self._call(self.store.get("orders", self.doc_id(order_id)))
        return strip_remote_fields(data) if data else None

    # ==================== Reference data ====================

    async def save_flavor(self, flavor: Dict):
        await self._save("flavors", flavor)

    async def delete_flavor(self, flavor_id: int):
        await self._call(self.store.delete("flavors", self.doc_id(flavor_id)))

    async def _delete_flavor_payload(self, payload: Dict):
        await self.delete_flavor(self._require_id(payload, "flavors"))

    async def fetch_flavors(self) -> List[Dict]:
        flavors = await self._fetch("flavors")
        return sorted(flavors, key=lambda f: (f.get("id") is None, f.get("id") or 0))

    async def save_filling(self, filling: Dict):
        await self._save("fillings", filling)

    async def delete_filling(self, filling_id: int):
        await self._call(self.store.delete("fillings", self.doc_id(filling_id)))

    async def _delete_filling_payload(self, payload: Dict):
        await self.delete_filling(self._require_id(payload, "fillings"))

    async def fetch_fillings(self) -> List[Dict]:
        fillings = await self._fetch("fillings")
        return sorted(fillings, key=lambda f: (f.get("id") is None, f.get("id") or 0))

    # ==================== Settings ====================

    async def save_settings(self, settings: Dict):
        data = self._to_remote(settings)
        data.pop("id", None)
        await self._call(self.store.set("settings", self.owner_id, data, merge=True))

    async def get_settings(self) -> Optional[Dict]:
        data = await self._call(self.store.get("settings", self.owner_id))
        return strip_remote_fields(data) if data else None

    # ==================== Queue delivery ====================

    async def apply(self, item: PendingSyncItem) -> SyncResult:
        """Deliver one queued mutation; remote failures become a failed result."""
        handler = self._handlers.get((item.collection, item.operation))
        if handler is None:
            return SyncResult.failure(RemoteRejectedError(
                f"Unsupported operation {item.operation.value} on {item.collection.value}"
            ))
        try:
            await handler(item.payload)
        except SyncError as e:
            return SyncResult.failure(e)
        except Exception as e:
            logger.error(f"Unexpected error delivering {item.operation.value} "
                         f"{item.collection.value}: {e!r}")
            return SyncResult.failure(RemoteRejectedError(f"Unexpected error: {e!r}"))
        return SyncResult.success()

    async def push_all(self, orders: List[Dict], flavors: List[Dict],
                       fillings: List[Dict], settings: Optional[Dict]) -> int:
        """Upsert every local record. Returns the number of documents written."""
        written = 0
        for order in orders:
            await self.save_order(order)
            written += 1
        for flavor in flavors:
            await self.save_flavor(flavor)
            written += 1
        for filling in fillings:
            await self.save_filling(filling)
            written += 1
        if settings:
            await self.save_settings(settings)
            written += 1
        logger.info(f"Pushed {written} documents to remote")
        return written

    # ==================== Duplicate reconciliation ====================

    def _keep_rank(self, document: Document):
        doc_id, data = document
        canonical = data.get("id") is not None and doc_id == self.doc_id(data["id"])
        return (str(data.get("updatedAt") or ""), canonical, doc_id)

    async def _dedupe(self, documents: List[Document], key_fn) -> List[Document]:
        groups: Dict = {}
        survivors = []
        for document in documents:
            key = key_fn(document[1])
            if key is None:
                survivors.append(document)
                continue
            groups.setdefault(key, []).append(document)

        for key, group in groups.items():
            group.sort(key=self._keep_rank, reverse=True)
            survivors.append(group[0])
            for doc_id, _ in group[1:]:
                await self._call(self.store.delete("orders", doc_id))
                logger.warning(f"Removed duplicate remote order {doc_id} (key {key})")
        return survivors

    async def cleanup_duplicate_orders(self) -> int:
        """
        Remove duplicate remote orders of this owner.

        Pass 1 keeps the latest updatedAt per order id; pass 2 keeps the
        latest per name|delivery_date|price. A second run deletes nothing.

        Returns:
            Number of documents deleted
        """
        documents = await self._call(self.store.query("orders", self.owner_id, "delivery_date"))
        total = len(documents)

        by_id = await self._dedupe(documents, lambda d: d.get("id"))
        by_content = await self._dedupe(by_id, order_content_key)

        removed = total - len(by_content)
        if removed:
            logger.info(f"Duplicate cleanup removed {removed} remote orders")
        return removed

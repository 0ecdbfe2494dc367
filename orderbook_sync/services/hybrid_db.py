"""
hybrid_db.py - Hybrid Data Facade

Single entry point for application data. Every write lands in the local
store first and is then mirrored to the remote store, directly when
online or through the sync queue when not. Reads prefer remote data and
reconcile it with the local cache using the per-collection policy.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .auth import AnonymousAuthClient
from .errors import SyncError
from .image_service import ImageService
from .local_store import LocalStore
from .remote_client import (
    COLLECTION_POLICIES,
    ReconcilePolicy,
    RemoteSyncClient,
    order_content_key,
)
from .sync_coordinator import SyncCoordinator
from .sync_queue import SyncCollection, SyncOperation
from ..network.connectivity import ConnectivityMonitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("HybridDB")

ORDERS = SyncCollection.ORDERS
FLAVORS = SyncCollection.FLAVORS
FILLINGS = SyncCollection.FILLINGS
SETTINGS = SyncCollection.SETTINGS


class HybridDatabase:
    """
    Local-first data access with remote mirroring.

    Only local-store failures reach the caller; remote problems are queued
    for later delivery.
    """

    def __init__(self, store: LocalStore, monitor: ConnectivityMonitor,
                 remote: Optional[RemoteSyncClient] = None,
                 coordinator: Optional[SyncCoordinator] = None,
                 auth: Optional[AnonymousAuthClient] = None,
                 images: Optional[ImageService] = None):
        if (remote is None) != (coordinator is None):
            raise ValueError("remote and coordinator must be given together")

        self.store = store
        self.monitor = monitor
        self.remote = remote
        self.coordinator = coordinator
        self.auth = auth
        self.images = images
        self.initialized = False

        self._image_tasks = set()
        self._unsubscribe_reconnect = None

    @property
    def remote_enabled(self) -> bool:
        return self.remote is not None

    def _remote_available(self) -> bool:
        return self.remote_enabled and self.monitor.is_online()

    async def initialize(self):
        """Resolve the owner identity and hook reconnect handling."""
        if self.initialized:
            return

        if self.remote_enabled and self.auth is not None:
            identity = await self.auth.sign_in_anonymously()
            self.remote.owner_id = identity.uid

        if self.images is not None:
            self._unsubscribe_reconnect = self.monitor.on_reconnect(self._on_reconnect)

        self.initialized = True
        self.store.log_activity(
            'initialized', 'completed',
            f"remote={'on' if self.remote_enabled else 'off'} backend={self.store.backend}"
        )
        logger.info(f"HybridDatabase initialized (remote {'enabled' if self.remote_enabled else 'disabled'})")

    def _on_reconnect(self):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.images.sync_pending_uploads())
        self._image_tasks.add(task)
        task.add_done_callback(self._image_tasks.discard)

    # ==================== Mirroring ====================

    async def _mirror(self, operation: SyncOperation, collection: SyncCollection,
                      payload: Dict, call: Callable[[], Awaitable]) -> str:
        """
        Mirror a local write to the remote store.

        Returns:
            "local" (remote disabled), "synced" or "queued"
        """
        if not self.remote_enabled:
            return "local"

        queue = self.coordinator.queue
        if queue.has_pending(collection, payload.get("id")):
            # Earlier mutations of this record are still queued; keep order
            self.coordinator.enqueue(operation, collection, payload)
            if self.monitor.is_online():
                self.coordinator.request_drain()
            return "queued"

        if self.monitor.is_online():
            try:
                await call()
                return "synced"
            except SyncError as e:
                logger.warning(f"Remote {operation.value} {collection.value} failed, queued: {e}")
        else:
            logger.info(f"Offline: {operation.value} {collection.value} queued")

        self.coordinator.enqueue(operation, collection, payload)
        return "queued"

    # ==================== Reconciliation ====================

    def _pending_ids(self, collection: SyncCollection) -> set:
        if not self.remote_enabled:
            return set()
        return self.coordinator.queue.pending_ids(collection)

    def _reconcile(self, collection: SyncCollection, local: List[Dict],
                   remote: List[Dict]) -> List[Dict]:
        """
        Combine local and remote records under the collection's policy.

        Records with queued local mutations keep their local state until
        the queue delivers them. Remote orders without an id are kept when
        no other order has the same name, delivery date and price.
        """
        policy = COLLECTION_POLICIES[collection]
        pending = self._pending_ids(collection)
        local_by_id = {r['id']: r for r in local if r.get('id') is not None}

        if policy is ReconcilePolicy.MERGE_BY_ID:
            result = dict(local_by_id)
        else:
            result = {}

        content_keys = set()
        if collection is ORDERS:
            content_keys = {order_content_key(r) for r in result.values()}

        for record in remote:
            record_id = record.get('id')
            if record_id is None:
                key = order_content_key(record) if collection is ORDERS else None
                if key is not None and key not in content_keys:
                    content_keys.add(key)
                    result[('content', key)] = dict(record)
                    logger.warning(f"Remote order without id kept by content: {key}")
                else:
                    logger.warning(f"Skipping remote {collection.value} record without id")
                continue
            if record_id in pending:
                continue
            merged = dict(record)
            local_version = local_by_id.get(record_id)
            if local_version and 'image' in local_version:
                merged['image'] = local_version['image']
            result[record_id] = merged
            if collection is ORDERS:
                content_keys.add(order_content_key(merged))

        for record_id in pending:
            if record_id in local_by_id:
                result[record_id] = local_by_id[record_id]

        return list(result.values())

    def _cache(self, collection: SyncCollection, local: List[Dict], records: List[Dict]):
        """Write reconciled records back to the local store."""
        if COLLECTION_POLICIES[collection] is ReconcilePolicy.REMOTE_WINS:
            self.store.replace_all(collection.value, records)
            return

        local_by_id = {r['id']: r for r in local if r.get('id') is not None}
        for record in records:
            if record.get('id') is None:
                continue
            if local_by_id.get(record['id']) != record:
                self.store.upsert_with_id(collection.value, record)

    async def _pull(self, collection: SyncCollection,
                    fetch: Callable[[], Awaitable[List[Dict]]]) -> Tuple[List[Dict], bool]:
        """
        Read a collection, reconciling with remote when available.

        Returns:
            (records, came_from_remote)
        """
        local = self.store.get_all(collection.value)
        if not self._remote_available():
            return local, False

        try:
            remote = await fetch()
        except SyncError as e:
            logger.warning(f"Remote read of {collection.value} failed, using local data: {e}")
            return local, False

        if not remote and COLLECTION_POLICIES[collection] is ReconcilePolicy.MERGE_BY_ID:
            return local, True

        records = self._reconcile(collection, local, remote)
        self._cache(collection, local, records)
        return records, True

    # ==================== Orders ====================

    def _with_image(self, order: Dict) -> Dict:
        if self.images is not None and order.get('id') is not None:
            url = self.images.get_image_url(order['id'])
            if url:
                order['image'] = url
        return order

    async def create_order(self, order: Dict) -> int:
        """Create an order locally and mirror it. Returns the new order id."""
        record = {k: v for k, v in order.items() if k != 'id'}
        order_id = self.store.insert(ORDERS.value, record)

        if record.get('image') and self.images is not None:
            await self.images.save_reference(order_id, record['image'])

        payload = dict(record, id=order_id)
        await self._mirror(SyncOperation.CREATE, ORDERS, payload,
                           lambda: self.remote.save_order(payload))
        return order_id

    async def update_order(self, order_id: int, fields: Dict):
        self.store.update(ORDERS.value, order_id, fields)

        if fields.get('image') and self.images is not None:
            await self.images.save_reference(order_id, fields['image'])

        payload = dict(fields, id=order_id)
        await self._mirror(SyncOperation.UPDATE, ORDERS, payload,
                           lambda: self.remote.update_order(payload))

    async def delete_order(self, order_id: int):
        self.store.delete(ORDERS.value, order_id)

        if self.images is not None:
            self.images.delete_reference(order_id)

        await self._mirror(SyncOperation.DELETE, ORDERS, {'id': order_id},
                           lambda: self.remote.delete_order(order_id))

    async def list_orders(self) -> List[Dict]:
        """All orders, ascending by delivery date."""
        fetch = self.remote.fetch_orders if self.remote_enabled else None
        orders, _ = await self._pull(ORDERS, fetch)
        orders.sort(key=lambda o: (str(o.get('delivery_date') or ''), o.get('id') or 0))
        return [self._with_image(o) for o in orders]

    async def get_order(self, order_id: int) -> Optional[Dict]:
        order = None
        if self._remote_available() and order_id not in self._pending_ids(ORDERS):
            try:
                order = await self.remote.get_order(order_id)
            except SyncError as e:
                logger.warning(f"Remote read of order {order_id} failed: {e}")

        if order is None:
            order = self.store.get_by_id(ORDERS.value, order_id)
        return self._with_image(order) if order else None

    async def list_orders_between(self, start: str, end: str) -> List[Dict]:
        """Orders with start <= delivery_date <= end (ISO dates)."""
        return [
            o for o in await self.list_orders()
            if start <= str(o.get('delivery_date') or '') <= end
        ]

    # ==================== Flavors ====================

    async def list_flavors(self, kind: Optional[str] = None) -> List[Dict]:
        fetch = self.remote.fetch_flavors if self.remote_enabled else None
        flavors, _ = await self._pull(FLAVORS, fetch)
        if kind:
            flavors = [f for f in flavors if f.get('kind') == kind]
        return flavors

    async def create_flavor(self, flavor: Dict) -> int:
        record = {k: v for k, v in flavor.items() if k != 'id'}
        flavor_id = self.store.insert(FLAVORS.value, record)
        payload = dict(record, id=flavor_id)
        await self._mirror(SyncOperation.CREATE, FLAVORS, payload,
                           lambda: self.remote.save_flavor(payload))
        return flavor_id

    async def update_flavor(self, flavor_id: int, fields: Dict):
        self.store.update(FLAVORS.value, flavor_id, fields)
        payload = self.store.get_by_id(FLAVORS.value, flavor_id)
        await self._mirror(SyncOperation.UPDATE, FLAVORS, payload,
                           lambda: self.remote.save_flavor(payload))

    async def delete_flavor(self, flavor_id: int):
        self.store.delete(FLAVORS.value, flavor_id)
        await self._mirror(SyncOperation.DELETE, FLAVORS, {'id': flavor_id},
                           lambda: self.remote.delete_flavor(flavor_id))

    # ==================== Fillings ====================

    async def list_fillings(self) -> List[Dict]:
        fetch = self.remote.fetch_fillings if self.remote_enabled else None
        fillings, _ = await self._pull(FILLINGS, fetch)
        return fillings

    async def create_filling(self, filling: Dict) -> int:
        record = {k: v for k, v in filling.items() if k != 'id'}
        filling_id = self.store.insert(FILLINGS.value, record)
        payload = dict(record, id=filling_id)
        await self._mirror(SyncOperation.CREATE, FILLINGS, payload,
                           lambda: self.remote.save_filling(payload))
        return filling_id

    async def update_filling(self, filling_id: int, fields: Dict):
        self.store.update(FILLINGS.value, filling_id, fields)
        payload = self.store.get_by_id(FILLINGS.value, filling_id)
        await self._mirror(SyncOperation.UPDATE, FILLINGS, payload,
                           lambda: self.remote.save_filling(payload))

    async def delete_filling(self, filling_id: int):
        self.store.delete(FILLINGS.value, filling_id)
        await self._mirror(SyncOperation.DELETE, FILLINGS, {'id': filling_id},
                           lambda: self.remote.delete_filling(filling_id))

    # ==================== Settings ====================

    async def get_settings(self) -> Dict:
        """Remote settings when available, else local settings with defaults."""
        local = self.store.get_settings()
        if not self._remote_available() or self.coordinator.queue.has_pending(SETTINGS):
            return local

        try:
            remote = await self.remote.get_settings()
        except SyncError as e:
            logger.warning(f"Remote read of settings failed, using local: {e}")
            return local

        if not remote:
            return local

        merged = dict(local)
        merged.update(remote)
        if merged != local:
            self.store.save_settings(merged)
        return merged

    async def save_settings(self, settings: Dict):
        self.store.save_settings(settings)
        payload = self.store.get_settings()
        await self._mirror(SyncOperation.UPDATE, SETTINGS, payload,
                           lambda: self.remote.save_settings(payload))

    # ==================== Sync primitives ====================

    async def sync_now(self) -> Dict:
        """Drain the sync queue and pending image uploads now."""
        result = {"queue": {"status": "skipped", "reason": "remote_disabled"}}
        if self.remote_enabled:
            result["queue"] = await self.coordinator.sync_now()
        if self.images is not None:
            result["images"] = await self.images.sync_pending_uploads()
        return result

    async def pull_remote(self) -> Dict:
        """Reconcile every collection from the remote store."""
        if not self._remote_available():
            return {"status": "skipped", "reason": "offline" if self.remote_enabled else "remote_disabled"}

        try:
            removed = await self.remote.cleanup_duplicate_orders()
        except SyncError as e:
            logger.warning(f"Duplicate cleanup failed: {e}")
            removed = 0

        counts = {}
        all_remote = True
        for collection, fetch in (
            (ORDERS, self.remote.fetch_orders),
            (FLAVORS, self.remote.fetch_flavors),
            (FILLINGS, self.remote.fetch_fillings),
        ):
            records, from_remote = await self._pull(collection, fetch)
            counts[collection.value] = len(records)
            all_remote = all_remote and from_remote

        await self.get_settings()

        self.store.log_activity('pull_remote', 'completed' if all_remote else 'partial', str(counts))
        return {
            "status": "success" if all_remote else "partial",
            "duplicates_removed": removed,
            **counts,
        }

    async def push_local(self) -> Dict:
        """Upload every local record, overwriting the remote copies."""
        if not self._remote_available():
            return {"status": "skipped", "reason": "offline" if self.remote_enabled else "remote_disabled"}

        try:
            written = await self.remote.push_all(
                self.store.get_all(ORDERS.value),
                self.store.get_all(FLAVORS.value),
                self.store.get_all(FILLINGS.value),
                self.store.get_settings(),
            )
        except SyncError as e:
            logger.error(f"Push to remote failed: {e}")
            self.store.log_activity('push_local', 'failed', str(e))
            return {"status": "error", "reason": str(e)}

        self.store.log_activity('push_local', 'completed', f"{written} documents")
        return {"status": "success", "written_count": written}

    async def cleanup_duplicates(self) -> Dict:
        if not self._remote_available():
            return {"status": "skipped", "reason": "offline" if self.remote_enabled else "remote_disabled"}
        try:
            removed = await self.remote.cleanup_duplicate_orders()
        except SyncError as e:
            return {"status": "error", "reason": str(e)}
        return {"status": "success", "removed_count": removed}

    def queue_status(self) -> Dict:
        if self.remote_enabled:
            status = self.coordinator.queue_status()
        else:
            status = {
                "online": self.monitor.is_online(),
                "is_syncing": False,
                "pending_count": 0,
                "failed_count": 0,
                "last_success_at": None,
                "last_error": None,
            }
        status["remote_enabled"] = self.remote_enabled
        if self.images is not None:
            status["images"] = self.images.sync_status()
        return status

    def failures(self) -> List[Dict]:
        return self.coordinator.failures() if self.remote_enabled else []

    def requeue_failures(self) -> int:
        return self.coordinator.requeue_failures() if self.remote_enabled else 0

    async def close(self):
        if self._unsubscribe_reconnect is not None:
            self._unsubscribe_reconnect()
        if self.coordinator is not None:
            await self.coordinator.close()

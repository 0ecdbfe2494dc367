"""
sync_coordinator.py - Store-and-Forward Sync Coordinator

This module drains the durable sync queue against the remote store when
the device is online. Failed items are retried on later passes; items that
fail retry_limit times are moved to the failure log.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from .errors import SyncResult
from .local_store import LocalStore
from .remote_client import RemoteSyncClient
from .sync_queue import (
    ItemState,
    PendingSyncItem,
    SyncCollection,
    SyncFailureLog,
    SyncOperation,
    SyncQueue,
)
from ..network.connectivity import ConnectivityMonitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("SyncCoordinator")


class SyncCoordinator:
    """
    Owns the sync queue and delivers it to the remote store.

    Drains are serialized: a drain requested while one is running is a
    no-op. Items are dispatched one at a time in queue order so an UPDATE
    never overtakes its CREATE.
    """

    def __init__(self, store: LocalStore, remote: RemoteSyncClient,
                 monitor: ConnectivityMonitor, retry_limit: int = 3,
                 retry_delay: Optional[float] = 30.0):
        self.store = store
        self.remote = remote
        self.monitor = monitor
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay

        self.queue = SyncQueue(store)
        self.failure_log = SyncFailureLog(store)

        self.is_syncing = False
        self.in_flight: Optional[str] = None
        self.drain_count = 0
        self.last_success_at: Optional[float] = None
        self.last_error: Optional[str] = None

        self._listeners: List[Callable] = []
        self._retry_task: Optional[asyncio.Task] = None
        self._drain_tasks = set()

        self._unsubscribe_reconnect = monitor.on_reconnect(self._on_reconnect)

        logger.info(f"SyncCoordinator initialized ({len(self.queue)} pending)")

    # ==================== Triggers ====================

    def _on_reconnect(self):
        """Callback triggered when connection is restored."""
        logger.info("Reconnect detected - triggering drain")
        self.request_drain()

    def request_drain(self) -> Optional[asyncio.Task]:
        """Schedule a drain on the running loop without waiting for it."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, drain not scheduled")
            return None
        task = loop.create_task(self.drain())
        self._drain_tasks.add(task)
        task.add_done_callback(self._drain_tasks.discard)
        return task

    def enqueue(self, operation: SyncOperation, collection: SyncCollection,
                payload: Dict) -> str:
        item_id = self.queue.enqueue(operation, collection, payload)
        self._notify()
        return item_id

    # ==================== Drain ====================

    async def drain(self) -> Dict:
        """
        Attempt delivery of every pending item once.

        Returns:
            Dict with drain results
        """
        if self.is_syncing:
            logger.warning("Drain already in progress, skipping")
            return {"status": "skipped", "reason": "sync_in_progress"}

        if not self.monitor.is_online():
            return {"status": "skipped", "reason": "offline", "pending_count": len(self.queue)}

        self.is_syncing = True
        self.drain_count += 1
        self._notify()

        try:
            pending = self.queue.list_pending()

            if not pending:
                return {"status": "success", "synced_count": 0, "failed_count": 0,
                        "pending_count": 0}

            logger.info(f"Draining {len(pending)} pending items...")
            self.store.log_activity('sync_start', 'pending', f"Draining {len(pending)} items")

            succeeded: List[str] = []
            terminal: List[str] = []
            retried: List[PendingSyncItem] = []
            blocked = set()
            held = 0

            for item in pending:
                record = (item.collection, item.payload.get("id"))
                if record in blocked:
                    # An earlier mutation of this record failed; stay PENDING behind it
                    held += 1
                    continue

                self.in_flight = item.id
                try:
                    result = await self.remote.apply(item)
                finally:
                    self.in_flight = None

                state = self._settle(item, result)
                if state is ItemState.SUCCEEDED:
                    succeeded.append(item.id)
                elif state is ItemState.FAILED_RETRYABLE:
                    retried.append(item)
                    blocked.add(record)
                else:
                    terminal.append(item.id)
                    blocked.add(record)

            self.queue.remove(succeeded + terminal)
            self.queue.update_retry_counts(retried)

            if succeeded:
                self.last_success_at = time.time()

            clean = not retried and not terminal and not held
            self.store.log_activity(
                'sync_complete',
                'completed' if clean else 'partial',
                f"{len(succeeded)} synced, {len(terminal)} failed, {len(retried)} retrying, {held} held"
            )
            logger.info(f"Drain complete: {len(succeeded)} synced, {len(terminal)} failed, "
                        f"{len(self.queue)} pending")

            return {
                "status": "success" if clean else "partial",
                "synced_count": len(succeeded),
                "failed_count": len(terminal),
                "held_count": held,
                "pending_count": len(self.queue),
            }

        finally:
            self.is_syncing = False
            if len(self.queue):
                self._schedule_retry()
            self._notify()

    def _settle(self, item: PendingSyncItem, result: SyncResult) -> ItemState:
        """Move an attempted item to its next state."""
        if result.ok:
            logger.info(f"Synced: {item.operation.value} {item.collection.value}")
            return ItemState.SUCCEEDED

        item.retry_count += 1
        error = str(result.error)
        self.last_error = error

        if item.retry_count < self.retry_limit:
            logger.warning(
                f"Retry {item.retry_count}/{self.retry_limit} for "
                f"{item.operation.value} {item.collection.value}: {error}"
            )
            return ItemState.FAILED_RETRYABLE

        self.failure_log.append(item, error)
        self.store.log_activity(
            'sync_failed', 'failed',
            f"{item.operation.value} {item.collection.value} {item.payload.get('id')}: {error}"
        )
        logger.error(
            f"Permanent sync failure: {item.operation.value} "
            f"{item.collection.value}: {error}"
        )
        return ItemState.FAILED_TERMINAL

    def _schedule_retry(self):
        if self.retry_delay is None:
            return
        if self._retry_task is not None and not self._retry_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._retry_task = loop.create_task(self._retry_later())

    async def _retry_later(self):
        await asyncio.sleep(self.retry_delay)
        self._retry_task = None
        await self.drain()

    async def sync_now(self) -> Dict:
        """Drain immediately if online."""
        if not self.monitor.is_online():
            logger.info("No connection, skipping sync")
            return {"status": "skipped", "reason": "offline", "pending_count": len(self.queue)}
        return await self.drain()

    # ==================== Failures ====================

    def failures(self) -> List[Dict]:
        return self.failure_log.list()

    def requeue_failures(self) -> int:
        """Move every failed item back to the queue with a fresh retry budget."""
        items = self.failure_log.pop_all()
        for item in items:
            self.queue.enqueue(item.operation, item.collection, item.payload)
        if items:
            self.store.log_activity('sync_requeue', 'pending', f"Requeued {len(items)} failed items")
            self._notify()
        return len(items)

    def clear_queue(self):
        self.queue.clear()
        self._notify()

    # ==================== Status ====================

    def queue_status(self) -> Dict:
        """Get current sync status."""
        return {
            "online": self.monitor.is_online(),
            "is_syncing": self.is_syncing,
            "in_flight": self.in_flight,
            "pending_count": len(self.queue),
            "failed_count": len(self.failure_log),
            "last_success_at": self.last_success_at,
            "last_error": self.last_error,
        }

    def subscribe(self, callback: Callable) -> Callable:
        """
        Register a callback for sync status changes.

        Callback signature: (status: dict)
        """
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self):
        if not self._listeners:
            return
        status = self.queue_status()
        for callback in list(self._listeners):
            try:
                callback(status)
            except Exception as e:
                logger.error(f"Sync status listener error: {e}")

    async def close(self):
        self._unsubscribe_reconnect()
        if self._retry_task is not None:
            self._retry_task.cancel()
            try:
                await self._retry_task
            except asyncio.CancelledError:
                pass
            self._retry_task = None

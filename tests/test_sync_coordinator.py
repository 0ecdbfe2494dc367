import asyncio

import pytest

from orderbook_sync.services.errors import RemoteNetworkError, RemoteRejectedError
from orderbook_sync.services.remote_client import RemoteSyncClient
from orderbook_sync.services.sync_coordinator import SyncCoordinator
from orderbook_sync.services.sync_queue import SyncCollection, SyncOperation, SyncQueue

from conftest import OWNER, FakeDocumentStore

ORDERS = SyncCollection.ORDERS


async def wait_for_drains(coordinator):
    while coordinator._drain_tasks:
        await asyncio.gather(*list(coordinator._drain_tasks))


@pytest.mark.asyncio
async def test_offline_enqueue_makes_no_remote_calls(coordinator, remote_store):
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1, "name": "Ana"})

    result = await coordinator.drain()
    assert result == {"status": "skipped", "reason": "offline", "pending_count": 1}
    assert remote_store.calls == []
    assert len(coordinator.queue) == 1


@pytest.mark.asyncio
async def test_two_updates_deliver_latest_price(coordinator, remote_store, monitor):
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 7, "price": 100})
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 7, "price": 120})

    monitor.handle_signal(True)
    await wait_for_drains(coordinator)

    assert remote_store.docs("orders")[f"{OWNER}_7"]["price"] == 120
    assert len(coordinator.queue) == 0


@pytest.mark.asyncio
async def test_items_delivered_in_queue_order(coordinator, remote_store, monitor):
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1, "name": "Ana"})
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 1, "price": 10})
    coordinator.enqueue(SyncOperation.CREATE, SyncCollection.FLAVORS, {"id": 2, "name": "Lime"})
    coordinator.enqueue(SyncOperation.DELETE, ORDERS, {"id": 1})

    monitor.handle_signal(True)
    await wait_for_drains(coordinator)

    assert [c[:2] for c in remote_store.calls] == [
        ("set", "orders"), ("set", "orders"), ("set", "flavors"), ("delete", "orders")
    ]
    assert remote_store.docs("orders") == {}


@pytest.mark.asyncio
async def test_reconnect_triggers_exactly_one_drain(coordinator, monitor):
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})

    monitor.handle_signal(True)
    monitor.handle_signal(True)
    monitor.handle_signal(True, reachable=True)
    await wait_for_drains(coordinator)

    assert coordinator.drain_count == 1


@pytest.mark.asyncio
async def test_retry_ceiling_moves_item_to_failure_log(coordinator, remote_store, monitor):
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    remote_store.fail_with = RemoteRejectedError("bad payload")
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 9, "price": 1})

    for _ in range(5):
        await coordinator.drain()

    assert len(remote_store.calls_for(f"{OWNER}_9")) == 3
    assert len(coordinator.queue) == 0
    failures = coordinator.failures()
    assert len(failures) == 1
    assert failures[0]["item"]["retry_count"] == 3
    assert "bad payload" in failures[0]["error"]
    assert any(log["event_type"] == "sync_failed" for log in coordinator.store.get_recent_logs())


@pytest.mark.asyncio
async def test_failed_item_does_not_block_later_items(coordinator, remote_store, monitor):
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    remote_store.fail_doc_ids.add(f"{OWNER}_1")
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 2})

    result = await coordinator.drain()

    assert result["status"] == "partial"
    assert result["synced_count"] == 1
    assert f"{OWNER}_2" in remote_store.docs("orders")
    assert [i.payload["id"] for i in coordinator.queue.list_pending()] == [1]


@pytest.mark.asyncio
async def test_retry_counts_survive_restart(store, client, monitor, remote_store):
    coordinator = SyncCoordinator(store, client, monitor, retry_delay=None)
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    remote_store.fail_with = RemoteNetworkError("down")
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})
    await coordinator.drain()

    assert SyncQueue(store).list_pending()[0].retry_count == 1


@pytest.mark.asyncio
async def test_redelivery_leaves_one_remote_record(coordinator, remote_store, monitor):
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    payload = {"id": 4, "name": "Ana", "price": 50}
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, payload)
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, payload)

    await coordinator.drain()

    assert list(remote_store.docs("orders")) == [f"{OWNER}_4"]


class GatedDocumentStore(FakeDocumentStore):
    def __init__(self):
        super().__init__()
        self.gate = asyncio.Event()

    async def set(self, collection, doc_id, data, merge=False):
        await self.gate.wait()
        await super().set(collection, doc_id, data, merge)


@pytest.mark.asyncio
async def test_concurrent_drain_is_skipped(store, monitor):
    remote_store = GatedDocumentStore()
    coordinator = SyncCoordinator(store, RemoteSyncClient(remote_store, OWNER), monitor, retry_delay=None)
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})

    first = asyncio.ensure_future(coordinator.drain())
    while not coordinator.is_syncing:
        await asyncio.sleep(0)

    assert await coordinator.drain() == {"status": "skipped", "reason": "sync_in_progress"}
    assert coordinator.queue_status()["in_flight"] == coordinator.queue.list_pending()[0].id
    remote_store.gate.set()
    assert (await first)["synced_count"] == 1
    assert coordinator.is_syncing is False
    assert coordinator.queue_status()["in_flight"] is None


@pytest.mark.asyncio
async def test_scheduled_retry_delivers_after_delay(store, client, monitor, remote_store):
    coordinator = SyncCoordinator(store, client, monitor, retry_delay=0.01)
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    remote_store.fail_with = RemoteNetworkError("down")
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})

    await coordinator.drain()
    assert len(coordinator.queue) == 1

    remote_store.fail_with = None
    for _ in range(100):
        if not len(coordinator.queue):
            break
        await asyncio.sleep(0.01)

    assert len(coordinator.queue) == 0
    await coordinator.close()


@pytest.mark.asyncio
async def test_requeue_failures(coordinator, remote_store, monitor):
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    remote_store.fail_with = RemoteRejectedError("no")
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})
    for _ in range(3):
        await coordinator.drain()
    assert coordinator.queue_status()["failed_count"] == 1

    remote_store.fail_with = None
    assert coordinator.requeue_failures() == 1
    assert coordinator.queue.list_pending()[0].retry_count == 0

    await coordinator.drain()
    assert coordinator.queue_status()["pending_count"] == 0
    assert coordinator.queue_status()["failed_count"] == 0
    assert f"{OWNER}_1" in remote_store.docs("orders")


@pytest.mark.asyncio
async def test_status_and_listeners(coordinator, monitor):
    seen = []
    unsubscribe = coordinator.subscribe(seen.append)

    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 1})
    assert seen[-1]["pending_count"] == 1
    assert seen[-1]["online"] is False

    monitor.handle_signal(True)
    await wait_for_drains(coordinator)

    status = coordinator.queue_status()
    assert status["pending_count"] == 0
    assert status["is_syncing"] is False
    assert status["last_success_at"] is not None
    assert any(s["is_syncing"] for s in seen)

    unsubscribe()
    count = len(seen)
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 2})
    assert len(seen) == count


@pytest.mark.asyncio
async def test_sync_now_offline_is_skipped(coordinator):
    result = await coordinator.sync_now()
    assert result["status"] == "skipped"
    assert coordinator.drain_count == 0


@pytest.mark.asyncio
async def test_failed_item_holds_later_mutations_of_same_record(coordinator, remote_store, monitor):
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 7, "price": 100})
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 7, "price": 120})
    coordinator.enqueue(SyncOperation.UPDATE, ORDERS, {"id": 8, "price": 5})
    remote_store.fail_times = 1

    first = await coordinator.drain()

    assert first["held_count"] == 1
    assert first["synced_count"] == 1
    assert len(remote_store.calls_for(f"{OWNER}_7")) == 1
    retries = {i.payload["price"]: i.retry_count for i in coordinator.queue.list_pending()}
    assert retries == {100: 1, 120: 0}

    second = await coordinator.drain()

    assert second["status"] == "success"
    assert remote_store.docs("orders")[f"{OWNER}_7"]["price"] == 120
    assert len(coordinator.queue) == 0


@pytest.mark.asyncio
async def test_delete_waits_behind_failed_create(coordinator, remote_store, monitor):
    monitor.handle_signal(True)
    await wait_for_drains(coordinator)
    coordinator.enqueue(SyncOperation.CREATE, ORDERS, {"id": 3, "name": "Ana"})
    coordinator.enqueue(SyncOperation.DELETE, ORDERS, {"id": 3})
    remote_store.fail_times = 1

    await coordinator.drain()
    assert [c[0] for c in remote_store.calls_for(f"{OWNER}_3")] == ["set"]

    await coordinator.drain()
    assert remote_store.docs("orders") == {}
    assert len(coordinator.queue) == 0

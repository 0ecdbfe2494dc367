import pytest
from fastapi.testclient import TestClient

from orderbook_sync.services.errors import RemoteRejectedError
from orderbook_sync.services.hybrid_db import HybridDatabase
from orderbook_sync.services.sync_queue import PendingSyncItem, SyncCollection, SyncOperation
from orderbook_sync.status_app.app import create_app


@pytest.fixture
def db(store, monitor, client, coordinator):
    return HybridDatabase(store, monitor, client, coordinator)


@pytest.fixture
def http(db):
    with TestClient(create_app(db)) as test_client:
        yield test_client


def test_health(http):
    response = http.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "initialized": False}


def test_status_reports_queue_and_connectivity(http, db):
    db.coordinator.enqueue(SyncOperation.CREATE, SyncCollection.ORDERS, {"id": 1})

    body = http.get("/api/status").json()

    assert body["connectivity"]["connected"] is False
    assert body["sync"]["pending_count"] == 1
    assert body["sync"]["remote_enabled"] is True


def test_sync_while_offline_is_skipped(http):
    body = http.post("/api/sync").json()
    assert body["queue"]["status"] == "skipped"
    assert body["queue"]["reason"] == "offline"


def test_pull_and_push_while_offline(http):
    assert http.post("/api/pull").json()["reason"] == "offline"
    assert http.post("/api/push").json()["reason"] == "offline"


def test_failures_and_requeue(http, db):
    item = PendingSyncItem("orders_CREATE_1_0.1", SyncOperation.CREATE,
                           SyncCollection.ORDERS, {"id": 1}, 1.0, 3)
    db.coordinator.failure_log.append(item, str(RemoteRejectedError("HTTP 400")))

    body = http.get("/api/failures").json()
    assert body["count"] == 1
    assert body["failures"][0]["item"]["payload"] == {"id": 1}

    body = http.post("/api/failures/requeue").json()
    assert body == {"status": "success", "requeued_count": 1}
    assert http.get("/api/failures").json()["count"] == 0
    assert http.get("/api/status").json()["sync"]["pending_count"] == 1


def test_logs(http, db):
    db.store.log_activity("sync_start", "pending", "one")
    db.store.log_activity("sync_complete", "completed", "two")

    logs = http.get("/api/logs", params={"limit": 1}).json()["logs"]
    assert [log["details"] for log in logs] == ["two"]

    assert http.get("/api/logs", params={"limit": 0}).status_code == 400

import copy
import os

import pytest

from orderbook_sync.network.connectivity import ConnectivityMonitor
from orderbook_sync.services.errors import RemoteNetworkError, RemoteRejectedError
from orderbook_sync.services.local_store import MemoryLocalStore
from orderbook_sync.services.remote_client import RemoteSyncClient
from orderbook_sync.services.remote_store import RemoteDocumentStore
from orderbook_sync.services.sync_coordinator import SyncCoordinator

OWNER = "owner-1"


class FakeDocumentStore(RemoteDocumentStore):
    """In-memory document store that records every call."""

    def __init__(self):
        self.collections = {}
        self.calls = []
        self.fail_with = None
        self.fail_doc_ids = set()
        self.fail_times = 0

    def _check(self, method, collection, doc_id=None):
        self.calls.append((method, collection, doc_id))
        if self.fail_with is not None:
            raise self.fail_with
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RemoteNetworkError("temporarily unavailable")
        if doc_id is not None and doc_id in self.fail_doc_ids:
            raise RemoteRejectedError(f"{doc_id} rejected")

    def docs(self, collection):
        return self.collections.setdefault(collection, {})

    def calls_for(self, doc_id):
        return [c for c in self.calls if c[2] == doc_id]

    async def set(self, collection, doc_id, data, merge=False):
        self._check("set", collection, doc_id)
        docs = self.docs(collection)
        if merge and doc_id in docs:
            docs[doc_id] = {**docs[doc_id], **copy.deepcopy(data)}
        else:
            docs[doc_id] = copy.deepcopy(data)

    async def get(self, collection, doc_id):
        self._check("get", collection, doc_id)
        data = self.docs(collection).get(doc_id)
        return copy.deepcopy(data) if data is not None else None

    async def update(self, collection, doc_id, fields):
        self._check("update", collection, doc_id)
        docs = self.docs(collection)
        if doc_id not in docs:
            raise RemoteRejectedError(f"{doc_id} not found")
        docs[doc_id].update(copy.deepcopy(fields))

    async def delete(self, collection, doc_id):
        self._check("delete", collection, doc_id)
        self.docs(collection).pop(doc_id, None)

    async def query(self, collection, owner_id, order_by=None):
        self._check("query", collection)
        documents = [
            (doc_id, copy.deepcopy(data))
            for doc_id, data in self.docs(collection).items()
            if data.get("ownerId") == owner_id
        ]
        if order_by:
            documents.sort(key=lambda d: str(d[1].get(order_by) or ""))
        return documents


class FakeUploader:
    """Stands in for ImageHostClient."""

    def __init__(self):
        self.uploaded = []
        self.fail_with = None

    async def upload_async(self, path):
        self.uploaded.append(path)
        if self.fail_with is not None:
            raise self.fail_with
        return f"https://images.example.com/{os.path.basename(path)}"


@pytest.fixture
def store():
    return MemoryLocalStore()


@pytest.fixture
def monitor():
    return ConnectivityMonitor()


@pytest.fixture
def online_monitor(monitor):
    monitor.handle_signal(True)
    return monitor


@pytest.fixture
def remote_store():
    return FakeDocumentStore()


@pytest.fixture
def client(remote_store):
    return RemoteSyncClient(remote_store, OWNER, timeout=5.0)


@pytest.fixture
def coordinator(store, client, monitor):
    return SyncCoordinator(store, client, monitor, retry_limit=3, retry_delay=None)


@pytest.fixture
def uploader():
    return FakeUploader()

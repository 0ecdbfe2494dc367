"""
Services module for orderbook-sync.

Provides local storage, the durable sync queue, remote sync and the hybrid
data facade.
"""

from .errors import (
    LocalStoreError,
    RemoteAuthError,
    RemoteNetworkError,
    RemoteRejectedError,
    RemoteTimeoutError,
    SyncError,
    SyncResult,
)
from .local_store import LocalStore, MemoryLocalStore, SqliteLocalStore, create_local_store
from .sync_queue import ItemState, SyncCollection, SyncFailureLog, SyncOperation, SyncQueue
from .remote_store import HttpDocumentStore, RemoteDocumentStore
from .remote_client import COLLECTION_POLICIES, ReconcilePolicy, RemoteSyncClient
from .auth import AnonymousAuthClient, Identity
from .sync_coordinator import SyncCoordinator
from .image_service import ImageHostClient, ImageService
from .hybrid_db import HybridDatabase

__all__ = [
    'LocalStoreError',
    'RemoteAuthError',
    'RemoteNetworkError',
    'RemoteRejectedError',
    'RemoteTimeoutError',
    'SyncError',
    'SyncResult',
    'LocalStore',
    'MemoryLocalStore',
    'SqliteLocalStore',
    'create_local_store',
    'ItemState',
    'SyncCollection',
    'SyncFailureLog',
    'SyncOperation',
    'SyncQueue',
    'HttpDocumentStore',
    'RemoteDocumentStore',
    'COLLECTION_POLICIES',
    'ReconcilePolicy',
    'RemoteSyncClient',
    'AnonymousAuthClient',
    'Identity',
    'SyncCoordinator',
    'ImageHostClient',
    'ImageService',
    'HybridDatabase',
]

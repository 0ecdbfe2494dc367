import asyncio
import json
import sys

from orderbook_sync.config import SECRETS_PATH, load_env_file, load_settings
from orderbook_sync.network.connectivity import ConnectivityMonitor, ReachabilityProbe
from orderbook_sync.services.auth import AnonymousAuthClient
from orderbook_sync.services.hybrid_db import HybridDatabase
from orderbook_sync.services.image_service import ImageHostClient, ImageService
from orderbook_sync.services.local_store import create_local_store
from orderbook_sync.services.remote_client import RemoteSyncClient
from orderbook_sync.services.remote_store import HttpDocumentStore
from orderbook_sync.services.sync_coordinator import SyncCoordinator
from orderbook_sync.status_app.app import serve_status_app


def build_database(settings) -> HybridDatabase:
    """Wire every service from settings. Nothing touches the network here."""
    store = create_local_store(settings)
    monitor = ConnectivityMonitor()

    auth = None
    remote = None
    coordinator = None
    if settings.remote_enabled:
        if not settings.remote_url:
            print("[!] remote_enabled is set but remote_url is empty. Exiting.")
            sys.exit(1)

        auth = AnonymousAuthClient(
            auth_url=settings.auth_url,
            store=store,
            shared_owner_id=settings.shared_owner_id,
            api_key=settings.api_key,
        )
        document_store = HttpDocumentStore(
            base_url=settings.remote_url,
            token_provider=auth.token,
            api_key=settings.api_key,
            timeout=settings.remote_timeout,
        )
        remote = RemoteSyncClient(document_store, settings.shared_owner_id, timeout=settings.remote_timeout)
        coordinator = SyncCoordinator(
            store, remote, monitor,
            retry_limit=settings.retry_limit,
            retry_delay=settings.retry_delay,
        )

    images = None
    if settings.images_enabled:
        uploader = None
        if settings.image_upload_url:
            uploader = ImageHostClient(settings.image_upload_url, settings.image_upload_preset)
        images = ImageService(store, monitor, uploader, retry_limit=settings.retry_limit)

    return HybridDatabase(store, monitor, remote, coordinator, auth, images)


async def run(settings, once: bool = False):
    db = build_database(settings)
    await db.initialize()

    probe = None
    if settings.probe_url:
        probe = ReachabilityProbe(db.monitor, settings.probe_url, interval=settings.probe_interval)
        await probe.check_once()
        probe.start()
    else:
        # No probe configured: trust the link
        db.monitor.handle_signal(True)

    try:
        if once:
            print("[*] --once flag detected. Syncing and exiting.")
            result = await db.sync_now()
            print(json.dumps({"sync": result, "status": db.queue_status()}, indent=2, default=str))
            return
        await serve_status_app(db, port=settings.status_port)
    finally:
        if probe is not None:
            await probe.stop()
        await db.close()
        db.store.close()


def main():
    print("=== Orderbook Sync Engine v2.0 ===")

    # 1. Load secrets (optional) and settings
    if load_env_file(SECRETS_PATH):
        print(f"[*] Secrets loaded from {SECRETS_PATH}")

    try:
        settings = load_settings()
    except ValueError as e:
        print(f"[!] Invalid configuration: {e}")
        sys.exit(1)

    print(f"[*] Local backend: {settings.local_backend}")
    print(f"[*] Remote sync: {'enabled' if settings.remote_enabled else 'disabled'}")

    # 2. Run until interrupted
    try:
        asyncio.run(run(settings, once="--once" in sys.argv))
    except KeyboardInterrupt:
        print("\n[!] Shutting down...")


if __name__ == "__main__":
    main()

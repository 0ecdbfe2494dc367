"""
image_service.py - Order images

Images never travel through the sync queue. They are uploaded to the image
host when online; otherwise they wait in their own pending-uploads list
until the next reconnect.
"""

import asyncio
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from .errors import RemoteNetworkError, RemoteRejectedError, SyncError
from .local_store import LocalStore
from .remote_store import error_for_status
from ..network.connectivity import ConnectivityMonitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("ImageService")

REFERENCES_KEY = "image_references"
PENDING_UPLOADS_KEY = "pending_image_uploads"


class ImageHostClient:
    """Unsigned multipart upload to the image host."""

    def __init__(self, upload_url: str, upload_preset: str = "", timeout: float = 30.0):
        self.upload_url = upload_url
        self.upload_preset = upload_preset
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({'Accept': 'application/json'})

    def upload(self, image_path: str) -> str:
        """
        Upload an image file.

        Returns:
            The hosted image URL
        """
        if not os.path.exists(image_path):
            raise RemoteRejectedError(f"Image file not found: {image_path}")

        try:
            with open(image_path, 'rb') as img_file:
                files = {'file': (os.path.basename(image_path), img_file, 'image/jpeg')}
                data = {'upload_preset': self.upload_preset} if self.upload_preset else {}
                response = self.session.post(
                    self.upload_url, files=files, data=data, timeout=self.timeout
                )
        except requests.exceptions.RequestException as e:
            raise RemoteNetworkError(f"Image upload failed: {e}") from e

        if response.status_code >= 400:
            raise error_for_status(response.status_code, response.text[:200])

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteRejectedError("Image host returned invalid JSON") from e

        url = body.get('secure_url') or body.get('url')
        if not url:
            raise RemoteRejectedError("Image host response carried no URL")
        return url

    async def upload_async(self, image_path: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.upload, image_path)


class ImageService:
    """Keeps image references per order and uploads them best-effort."""

    def __init__(self, store: LocalStore, monitor: ConnectivityMonitor,
                 uploader: Optional[ImageHostClient] = None, retry_limit: int = 3):
        self.store = store
        self.monitor = monitor
        self.uploader = uploader
        self.retry_limit = retry_limit
        self.is_syncing = False

    # ==================== Storage ====================

    def _load(self, key: str) -> List[Dict]:
        raw = self.store.get_blob(key)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt {key}, starting empty: {e}")
            return []
        return data if isinstance(data, list) else []

    def _save(self, key: str, entries: List[Dict]):
        self.store.set_blob(key, json.dumps(entries))

    def get_all_references(self) -> List[Dict]:
        return self._load(REFERENCES_KEY)

    def get_reference(self, order_id: int) -> Optional[Dict]:
        return next((r for r in self.get_all_references() if r['order_id'] == order_id), None)

    def _store_reference(self, reference: Dict):
        references = [r for r in self.get_all_references() if r['order_id'] != reference['order_id']]
        references.append(reference)
        self._save(REFERENCES_KEY, references)

    def get_pending_uploads(self) -> List[Dict]:
        return self._load(PENDING_UPLOADS_KEY)

    def _add_pending(self, order_id: int, local_path: str):
        pending = [p for p in self.get_pending_uploads() if p['order_id'] != order_id]
        pending.append({
            'order_id': order_id,
            'local_path': local_path,
            'queued_at': time.time(),
            'attempts': 0,
        })
        self._save(PENDING_UPLOADS_KEY, pending)

    # ==================== Operations ====================

    async def save_reference(self, order_id: int, local_path: str) -> Dict:
        """Record an order image, uploading it now if possible."""
        existing = self.get_reference(order_id)
        if existing and existing['local_path'] == local_path and existing['uploaded']:
            return existing

        reference = {
            'order_id': order_id,
            'local_path': local_path,
            'remote_url': None,
            'uploaded': False,
            'created_at': datetime.now(timezone.utc).isoformat(),
        }

        if self.uploader is not None:
            if self.monitor.is_online():
                try:
                    reference['remote_url'] = await self.uploader.upload_async(local_path)
                    reference['uploaded'] = True
                    logger.info(f"Image uploaded for order {order_id}")
                except SyncError as e:
                    logger.warning(f"Image upload failed for order {order_id}, queued: {e}")
                    self._add_pending(order_id, local_path)
            else:
                logger.info(f"Offline: image for order {order_id} queued for upload")
                self._add_pending(order_id, local_path)

        self._store_reference(reference)
        return reference

    def get_image_url(self, order_id: int) -> Optional[str]:
        """Hosted URL when uploaded, else the local path."""
        reference = self.get_reference(order_id)
        if reference is None:
            return None
        return reference.get('remote_url') or reference.get('local_path')

    def delete_reference(self, order_id: int):
        self._save(REFERENCES_KEY, [r for r in self.get_all_references() if r['order_id'] != order_id])
        self._save(PENDING_UPLOADS_KEY, [p for p in self.get_pending_uploads() if p['order_id'] != order_id])

    async def sync_pending_uploads(self) -> Dict:
        """Upload queued images; failures stay queued until the retry limit."""
        if self.uploader is None:
            return {"status": "skipped", "reason": "disabled"}
        if not self.monitor.is_online():
            return {"status": "skipped", "reason": "offline"}
        if self.is_syncing:
            return {"status": "skipped", "reason": "sync_in_progress"}

        self.is_syncing = True
        uploaded = 0
        dropped = 0
        try:
            pending = self.get_pending_uploads()
            if not pending:
                return {"status": "success", "uploaded_count": 0, "pending_count": 0}

            logger.info(f"Uploading {len(pending)} pending images...")
            remaining = []
            for upload in pending:
                try:
                    url = await self.uploader.upload_async(upload['local_path'])
                except SyncError as e:
                    upload['attempts'] += 1
                    if upload['attempts'] < self.retry_limit:
                        remaining.append(upload)
                    else:
                        dropped += 1
                        self.store.log_activity(
                            'image_upload_failed', 'failed',
                            f"Order {upload['order_id']}: {e}"
                        )
                    logger.error(f"Failed to upload image for order {upload['order_id']}: {e}")
                    continue

                reference = self.get_reference(upload['order_id'])
                if reference is not None:
                    reference['remote_url'] = url
                    reference['uploaded'] = True
                    self._store_reference(reference)
                uploaded += 1

            # Entries added while uploading are kept
            processed = {p['order_id'] for p in pending}
            added = [p for p in self.get_pending_uploads() if p['order_id'] not in processed]
            self._save(PENDING_UPLOADS_KEY, remaining + added)

            return {
                "status": "success" if not remaining and not dropped else "partial",
                "uploaded_count": uploaded,
                "failed_count": dropped,
                "pending_count": len(remaining) + len(added),
            }
        finally:
            self.is_syncing = False

    def sync_status(self) -> Dict:
        references = self.get_all_references()
        uploaded = sum(1 for r in references if r['uploaded'])
        return {
            "total_images": len(references),
            "uploaded_images": uploaded,
            "pending_uploads": len(self.get_pending_uploads()),
            "local_only_images": len(references) - uploaded,
        }

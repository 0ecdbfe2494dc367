"""
remote_store.py - Remote document store

Per-document set/get/update/delete plus owner-filtered, ordered queries.
HttpDocumentStore talks to a REST document API with aiohttp and translates
transport failures and HTTP statuses into typed SyncErrors.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import aiohttp

from .errors import (
    RemoteAuthError,
    RemoteNetworkError,
    RemoteRejectedError,
    RemoteTimeoutError,
    SyncError,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("RemoteStore")

# (document id, document data)
Document = Tuple[str, Dict]


class RemoteDocumentStore:
    """Interface of the remote document store."""

    async def set(self, collection: str, doc_id: str, data: Dict, merge: bool = False):
        """Create or overwrite a document; with merge, only the given fields change."""
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> Optional[Dict]:
        raise NotImplementedError

    async def update(self, collection: str, doc_id: str, fields: Dict):
        """
        Update fields of an existing document; missing documents are rejected.

        Queue delivery never calls this: a redelivered UPDATE must still land
        when the document is gone, so sync writes go through set(merge=True).
        """
        raise NotImplementedError

    async def delete(self, collection: str, doc_id: str):
        raise NotImplementedError

    async def query(self, collection: str, owner_id: str,
                    order_by: Optional[str] = None) -> List[Document]:
        """Documents owned by owner_id, ascending by order_by."""
        raise NotImplementedError


def error_for_status(status: int, text: str = "") -> SyncError:
    """Map an HTTP error status to the matching SyncError."""
    message = f"HTTP {status}: {text}" if text else f"HTTP {status}"
    if status in (401, 403):
        return RemoteAuthError(message)
    if status in (408, 429) or status >= 500:
        return RemoteNetworkError(message)
    return RemoteRejectedError(message)


class HttpDocumentStore(RemoteDocumentStore):
    """
    REST document store client.

    Layout:
        PUT|GET|PATCH|DELETE {base}/collections/{collection}/documents/{doc_id}
        GET {base}/collections/{collection}/documents?ownerId=..&orderBy=..
    """

    def __init__(self, base_url: str, token_provider: Optional[Callable[[], Optional[str]]] = None,
                 api_key: str = "", timeout: float = 30.0):
        self.base_url = base_url.rstrip('/')
        self.token_provider = token_provider
        self.api_key = api_key
        self.timeout = timeout

        logger.info(f"HttpDocumentStore initialized with endpoint: {self.base_url}")

    def _headers(self) -> Dict:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        token = self.token_provider() if self.token_provider else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        return headers

    def _doc_url(self, collection: str, doc_id: str) -> str:
        return f"{self.base_url}/collections/{quote(collection)}/documents/{quote(doc_id, safe='')}"

    async def _request(self, method: str, url: str, *, json=None, params=None,
                       allow_404: bool = False):
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method,
                    url,
                    json=json,
                    params=params,
                    headers=self._headers(),
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:

                    if response.status == 404 and allow_404:
                        return None

                    if response.status >= 400:
                        error_text = await response.text()
                        raise error_for_status(response.status, error_text[:200])

                    if response.status == 204:
                        return {}
                    try:
                        return await response.json(content_type=None)
                    except ValueError as e:
                        # 2xx with a non-JSON body, e.g. a captive portal page
                        raise RemoteRejectedError(f"{method} {url}: response is not JSON") from e

        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(f"{method} {url} timed out") from e

        except aiohttp.ClientError as e:
            raise RemoteNetworkError(f"{method} {url}: {e}") from e

    async def set(self, collection: str, doc_id: str, data: Dict, merge: bool = False):
        params = {"merge": "true"} if merge else None
        await self._request("PUT", self._doc_url(collection, doc_id), json=data, params=params)

    async def get(self, collection: str, doc_id: str) -> Optional[Dict]:
        body = await self._request("GET", self._doc_url(collection, doc_id), allow_404=True)
        if body is None:
            return None
        if not isinstance(body, dict):
            raise RemoteRejectedError(f"Malformed document {collection}/{doc_id}")
        data = body.get("data", body)
        if not isinstance(data, dict):
            raise RemoteRejectedError(f"Malformed document {collection}/{doc_id}")
        return data

    async def update(self, collection: str, doc_id: str, fields: Dict):
        await self._request("PATCH", self._doc_url(collection, doc_id), json=fields)

    async def delete(self, collection: str, doc_id: str):
        # Deleting a missing document is a no-op so retries stay idempotent
        await self._request("DELETE", self._doc_url(collection, doc_id), allow_404=True)

    async def query(self, collection: str, owner_id: str,
                    order_by: Optional[str] = None) -> List[Document]:
        params = {"ownerId": owner_id}
        if order_by:
            params["orderBy"] = order_by

        body = await self._request(
            "GET",
            f"{self.base_url}/collections/{quote(collection)}/documents",
            params=params
        )
        documents = body.get("documents", []) if isinstance(body, dict) else None
        if not isinstance(documents, list):
            raise RemoteRejectedError(f"Malformed query response for {collection}")

        result = []
        for document in documents:
            if not isinstance(document, dict) or document.get("id") is None:
                raise RemoteRejectedError(f"Query response for {collection} has a document without id")
            data = document.get("data") or {}
            if not isinstance(data, dict):
                raise RemoteRejectedError(f"Malformed document {collection}/{document['id']}")
            result.append((str(document["id"]), data))
        return result

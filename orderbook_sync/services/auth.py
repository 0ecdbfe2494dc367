"""
auth.py - Anonymous identity

Resolves the owner identity every remote record is scoped to. The identity
is cached in the local store so it stays stable across restarts; when the
auth service is unavailable the shared fallback identity is used so sync
never blocks on sign-in.
"""

import asyncio
import json
import logging
from typing import Optional

import aiohttp

from .errors import RemoteAuthError, RemoteNetworkError, SyncError
from .local_store import LocalStore
from .remote_store import error_for_status

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("Auth")

IDENTITY_KEY = "owner_identity"


class Identity:
    __slots__ = ("uid", "token", "shared")

    def __init__(self, uid: str, token: Optional[str] = None, shared: bool = False):
        self.uid = uid
        self.token = token
        self.shared = shared

    def to_dict(self) -> dict:
        return {"uid": self.uid, "token": self.token, "shared": self.shared}


class AnonymousAuthClient:
    """Signs in anonymously against the auth endpoint."""

    def __init__(self, auth_url: str, store: LocalStore, shared_owner_id: str,
                 api_key: str = "", timeout: float = 10.0):
        self.auth_url = auth_url
        self.store = store
        self.shared_owner_id = shared_owner_id
        self.api_key = api_key
        self.timeout = timeout
        self.identity: Optional[Identity] = None

    def _cached_identity(self) -> Optional[Identity]:
        raw = self.store.get_blob(IDENTITY_KEY)
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return Identity(data["uid"], data.get("token"))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cached identity: {e}")
            return None

    async def _request_identity(self) -> Identity:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-API-KEY"] = self.api_key
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.auth_url,
                    json={"anonymous": True},
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status >= 400:
                        raise error_for_status(response.status, await response.text())
                    try:
                        data = await response.json(content_type=None)
                    except ValueError as e:
                        raise RemoteAuthError("Auth response is not JSON") from e
        except asyncio.TimeoutError as e:
            raise RemoteNetworkError("Anonymous sign-in timed out") from e
        except aiohttp.ClientError as e:
            raise RemoteNetworkError(f"Anonymous sign-in failed: {e}") from e

        uid = data.get("uid") if isinstance(data, dict) else None
        if not uid:
            raise RemoteAuthError("Auth response carried no uid")
        return Identity(str(uid), data.get("token"))

    async def sign_in_anonymously(self) -> Identity:
        """
        Resolve the owner identity.

        Order: cached identity, fresh anonymous sign-in, shared fallback.
        Never raises for remote problems.
        """
        cached = self._cached_identity()
        if cached is not None:
            self.identity = cached
            logger.info(f"Using cached identity: {cached.uid}")
            return cached

        if self.auth_url:
            try:
                identity = await self._request_identity()
                self.store.set_blob(IDENTITY_KEY, json.dumps(identity.to_dict()))
                self.identity = identity
                logger.info(f"Anonymous sign-in succeeded: {identity.uid}")
                return identity
            except SyncError as e:
                logger.error(f"Anonymous sign-in failed, using shared identity: {e}")

        self.identity = Identity(self.shared_owner_id, shared=True)
        return self.identity

    def token(self) -> Optional[str]:
        return self.identity.token if self.identity else None

import json
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import test_utils, web

from orderbook_sync.services.auth import IDENTITY_KEY, AnonymousAuthClient, Identity
from orderbook_sync.services.errors import RemoteAuthError, RemoteNetworkError


@pytest.mark.asyncio
async def test_sign_in_caches_identity(store):
    auth = AnonymousAuthClient("https://auth.example.com/anonymous", store, "shared")

    with patch.object(AnonymousAuthClient, "_request_identity",
                      AsyncMock(return_value=Identity("uid-1", "tok-1"))):
        identity = await auth.sign_in_anonymously()

    assert identity.uid == "uid-1"
    assert auth.token() == "tok-1"
    assert json.loads(store.get_blob(IDENTITY_KEY))["uid"] == "uid-1"


@pytest.mark.asyncio
async def test_cached_identity_is_stable(store):
    store.set_blob(IDENTITY_KEY, json.dumps({"uid": "uid-cached", "token": "t"}))
    auth = AnonymousAuthClient("https://auth.example.com/anonymous", store, "shared")

    request = AsyncMock()
    with patch.object(AnonymousAuthClient, "_request_identity", request):
        identity = await auth.sign_in_anonymously()

    assert identity.uid == "uid-cached"
    request.assert_not_awaited()


@pytest.mark.asyncio
async def test_failed_sign_in_uses_shared_identity(store):
    auth = AnonymousAuthClient("https://auth.example.com/anonymous", store, "shared-owner")

    with patch.object(AnonymousAuthClient, "_request_identity",
                      AsyncMock(side_effect=RemoteNetworkError("down"))):
        identity = await auth.sign_in_anonymously()

    assert identity.uid == "shared-owner"
    assert identity.shared is True
    assert store.get_blob(IDENTITY_KEY) is None


@pytest.mark.asyncio
async def test_without_auth_url_uses_shared_identity(store):
    auth = AnonymousAuthClient("", store, "shared-owner")
    identity = await auth.sign_in_anonymously()
    assert identity.uid == "shared-owner"
    assert auth.token() is None


@pytest.mark.asyncio
async def test_unreadable_cache_is_ignored(store):
    store.set_blob(IDENTITY_KEY, "{broken")
    auth = AnonymousAuthClient("", store, "shared-owner")
    assert (await auth.sign_in_anonymously()).uid == "shared-owner"


@pytest.mark.asyncio
async def test_non_json_sign_in_reply_uses_shared_identity(store):
    async def portal(request):
        return web.Response(text="<html>captive portal</html>", content_type="text/html")

    app = web.Application()
    app.router.add_post("/anonymous", portal)

    async with test_utils.TestServer(app) as server:
        auth = AnonymousAuthClient(str(server.make_url("/anonymous")), store, "shared-owner")

        with pytest.raises(RemoteAuthError):
            await auth._request_identity()
        identity = await auth.sign_in_anonymously()

    assert identity.uid == "shared-owner"
    assert identity.shared is True
    assert store.get_blob(IDENTITY_KEY) is None

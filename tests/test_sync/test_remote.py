"""Tests for the remote document stores."""

from __future__ import annotations

import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from tradedesk.sync.remote import HttpDocumentStore, InMemoryDocumentStore


class TestInMemoryDocumentStore:
    @pytest.mark.asyncio
    async def test_save_and_load_copies(self):
        store = InMemoryDocumentStore()
        doc = {"wallet": 1, "lastUpdated": 1}
        assert await store.save("u", "futures", doc)
        doc["wallet"] = 99

        loaded = await store.load("u", "futures")
        assert loaded == {"wallet": 1, "lastUpdated": 1}
        assert await store.load("u", "spot") is None
        assert store.last_error is None

    @pytest.mark.asyncio
    async def test_subscribers_see_every_save(self):
        store = InMemoryDocumentStore()
        seen = []
        unsubscribe = store.subscribe("u", "futures", seen.append)

        await store.save("u", "futures", {"lastUpdated": 1})
        await store.save("u", "spot", {"lastUpdated": 2})
        unsubscribe()
        await store.save("u", "futures", {"lastUpdated": 3})

        assert seen == [{"lastUpdated": 1}]
        assert store.subscriber_count("u", "futures") == 0

    @pytest.mark.asyncio
    async def test_offline(self):
        store = InMemoryDocumentStore()
        store.online = False
        assert await store.save("u", "futures", {}) is False
        assert await store.load("u", "futures") is None
        assert store.last_error == "store offline"


@pytest.fixture
async def server():
    """A tiny document API kept in a dict."""
    documents: dict[str, dict] = {}

    async def get_document(request: web.Request) -> web.Response:
        if request.match_info["user"] == "broken":
            return web.Response(status=500, text="boom")
        key = f"{request.match_info['user']}/{request.match_info['ns']}"
        if key not in documents:
            return web.Response(status=404)
        return web.json_response(documents[key])

    async def put_document(request: web.Request) -> web.Response:
        if request.headers.get("Authorization") != "Bearer secret":
            return web.Response(status=401)
        key = f"{request.match_info['user']}/{request.match_info['ns']}"
        documents[key] = await request.json()
        return web.Response(status=204)

    app = web.Application()
    app.router.add_get("/users/{user}/{ns}", get_document)
    app.router.add_put("/users/{user}/{ns}", put_document)
    test_server = test_utils.TestServer(app)
    await test_server.start_server()
    yield test_server
    await test_server.close()


class TestHttpDocumentStore:
    @pytest.mark.asyncio
    async def test_missing_document(self, server):
        store = HttpDocumentStore(str(server.make_url("/")), api_token="secret")
        assert await store.load("u", "futures") is None
        assert store.last_error is None
        await store.close()

    @pytest.mark.asyncio
    async def test_put_then_get(self, server):
        store = HttpDocumentStore(str(server.make_url("/")), api_token="secret")
        doc = {"wallet": 1000, "positions": [], "lastUpdated": 42}
        assert await store.save("u", "futures", doc)
        assert await store.load("u", "futures") == doc
        await store.close()

    @pytest.mark.asyncio
    async def test_rejected_save(self, server):
        store = HttpDocumentStore(str(server.make_url("/")), api_token="wrong")
        assert await store.save("u", "futures", {"lastUpdated": 1}) is False
        assert store.last_error == "HTTP 401"
        await store.close()

    @pytest.mark.asyncio
    async def test_server_error(self, server):
        store = HttpDocumentStore(str(server.make_url("/")))
        assert await store.load("broken", "futures") is None
        assert store.last_error == "HTTP 500"
        await store.close()

    @pytest.mark.asyncio
    async def test_unreachable_server(self):
        store = HttpDocumentStore("http://127.0.0.1:1", timeout=1.0)
        assert await store.load("u", "futures") is None
        assert store.last_error
        assert await store.save("u", "futures", {}) is False
        await store.close()

    @pytest.mark.asyncio
    async def test_subscription_reports_new_versions(self, server):
        store = HttpDocumentStore(str(server.make_url("/")), api_token="secret", poll_interval=0.01)
        seen = []
        unsubscribe = store.subscribe("u", "futures", lambda doc: seen.append(doc["lastUpdated"]))

        await store.save("u", "futures", {"lastUpdated": 1})
        await asyncio.sleep(0.1)
        await store.save("u", "futures", {"lastUpdated": 2})
        await asyncio.sleep(0.1)
        unsubscribe()

        assert seen == [1, 2]
        await store.close()

"""
Unit tests for the stream-update webhook server.
"""

import pytest
import pytest_asyncio
from aiohttp import test_utils

from fixtures.doubles import stream
from speedbot.lib.errors import PersistenceError
from speedbot.models import WebhookConfig
from speedbot.services import WebhookServer


@pytest.fixture
def fatal_errors():
    return []


@pytest.fixture
def server(engine, fatal_errors):
    return WebhookServer(
        engine, WebhookConfig(port=5001),
        stats_provider=lambda: {"total_cycles": 4},
        on_fatal=fatal_errors.append,
    )


@pytest_asyncio.fixture
async def http(server):
    client = test_utils.TestClient(test_utils.TestServer(server.create_app()))
    await client.start_server()
    yield client
    await client.close()


class TestStreamUpdate:

    @pytest.mark.asyncio
    async def test_challenge_is_echoed(self, http):
        response = await http.get("/streamUpdate/1", params={"hub.challenge": "abc123"})

        assert response.status == 200
        assert await response.text() == "abc123"

    @pytest.mark.asyncio
    async def test_empty_data_ends_stream(self, http, engine, registry, clock):
        await engine.reconcile([stream("1")])
        clock.advance(minutes=2)

        response = await http.post("/streamUpdate/1", json={"data": []})

        assert response.status == 200
        assert registry.records["1"].is_live is False
        assert registry.records["1"].offline_since == clock.now

    @pytest.mark.asyncio
    async def test_stream_payload_is_ignored(self, http, registry):
        response = await http.post("/streamUpdate/1", json={"data": [{"id": "s1", "user_id": "1"}]})

        assert response.status == 200
        assert registry.records == {}

    @pytest.mark.asyncio
    async def test_non_json_body(self, http):
        response = await http.post("/streamUpdate/1", data=b"not json")

        assert response.status == 200

    @pytest.mark.asyncio
    async def test_persistence_failure(self, http, engine, registry, fatal_errors):
        await engine.reconcile([stream("1")])
        registry.fail_writes = True

        response = await http.post("/streamUpdate/1", json={"data": []})

        assert response.status == 500
        assert len(fatal_errors) == 1
        assert isinstance(fatal_errors[0], PersistenceError)


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_reports_stats(self, http):
        await http.get("/streamUpdate/1")

        response = await http.get("/health")
        body = await response.json()

        assert body["status"] == "ok"
        assert body["updates_received"] == 1
        assert body["scheduler"] == {"total_cycles": 4}

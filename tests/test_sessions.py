"""Tests for the Streamable HTTP session registry (sessions.py)."""
import asyncio

import anyio
import httpx
import pytest
import pytest_asyncio

from config import Config
from conftest import MCP_HEADERS, FakeClock, initialize_request, rpc
from main import create_app
from oauth.stores import valid_tokens
from sessions import SessionRegistry, is_initialize_request
from tools import SERVER_NAME, lowlevel_server

TOKEN = "session-test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


async def _initialize(client, path="/mcp", headers=None) -> str:
    response = await client.post(path, json=initialize_request(), headers={**MCP_HEADERS, **(headers or {})})
    assert response.status_code == 200
    assert response.json()["result"]["serverInfo"]["name"] == "youtube-mcp"
    session_id = response.headers["mcp-session-id"]

    response = await client.post(
        path,
        json=rpc("notifications/initialized", request_id=None),
        headers={**MCP_HEADERS, "Mcp-Session-Id": session_id},
    )
    assert response.status_code == 202
    return session_id


async def _open_stream(registry, session_id: str, tg):
    """Open a GET event stream on the registry directly.

    Returns the http.response.start message and an event that disconnects
    the client when set.
    """
    started = anyio.Event()
    disconnect = anyio.Event()
    messages = []

    async def receive():
        await disconnect.wait()
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)
        if message["type"] == "http.response.start":
            started.set()

    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": "GET",
        "scheme": "http",
        "path": "/",
        "raw_path": b"/",
        "root_path": "",
        "query_string": b"",
        "server": ("testserver", 80),
        "client": ("127.0.0.1", 50000),
        "headers": [
            (b"accept", b"text/event-stream"),
            (b"mcp-session-id", session_id.encode()),
        ],
    }
    tg.start_soon(registry, scope, receive, send)
    with anyio.fail_after(5):
        await started.wait()
    return messages[0], disconnect


async def _wait_until(predicate):
    with anyio.fail_after(5):
        while not predicate():
            await anyio.sleep(0.01)


@pytest.fixture
def sse_app(config):
    return create_app(Config({**config.data, "json_response": "false"}))


@pytest_asyncio.fixture
async def sse_client(sse_app):
    transport = httpx.ASGITransport(app=sse_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def test_lowlevel_server_is_the_tool_server():
    server = lowlevel_server()
    assert server.name == SERVER_NAME


def test_is_initialize_request():
    assert is_initialize_request(b'{"jsonrpc": "2.0", "id": 1, "method": "initialize"}')
    assert not is_initialize_request(b'{"jsonrpc": "2.0", "id": 1, "method": "tools/list"}')
    assert not is_initialize_request(b'[{"method": "initialize"}]')
    assert not is_initialize_request(b"garbage")


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_initialize_terminate_then_not_found(self, app, client):
        valid_tokens.add(TOKEN)
        registry = app.state.registry

        async with registry.run():
            session_id = await _initialize(client)
            assert session_id in registry

            response = await client.post(
                "/mcp", json=rpc("tools/list", request_id=2),
                headers={**MCP_HEADERS, "Mcp-Session-Id": session_id},
            )
            assert response.status_code == 200
            tool_names = {t["name"] for t in response.json()["result"]["tools"]}
            assert tool_names == {"get_video", "get_playlist", "get_available_languages"}

            response = await client.delete("/mcp", headers={"Mcp-Session-Id": session_id, **AUTH})
            assert response.status_code == 200
            assert session_id not in registry

            response = await client.post(
                "/mcp", json=rpc("tools/list", request_id=3),
                headers={**MCP_HEADERS, "Mcp-Session-Id": session_id},
            )
            assert response.status_code == 404
            assert response.json()["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_each_initialize_gets_its_own_session(self, app, client):
        registry = app.state.registry
        async with registry.run():
            first = await _initialize(client)
            second = await _initialize(client)
            assert first != second
            assert len(registry) == 2

    @pytest.mark.asyncio
    async def test_stale_id_on_initialize_creates_fresh_session(self, app, client):
        registry = app.state.registry
        async with registry.run():
            session_id = await _initialize(client, headers={"Mcp-Session-Id": "stale-id"})
            assert session_id != "stale-id"
            assert session_id in registry

    @pytest.mark.asyncio
    async def test_non_initialize_without_id_rejected(self, app, client):
        async with app.state.registry.run():
            response = await client.post("/mcp", json=rpc("ping"), headers=MCP_HEADERS)
            assert response.status_code == 400
            assert response.json()["error"]["code"] == -32000

    @pytest.mark.asyncio
    async def test_unknown_id_not_found(self, app, client):
        async with app.state.registry.run():
            response = await client.post(
                "/mcp", json=rpc("ping"),
                headers={**MCP_HEADERS, "Mcp-Session-Id": "never-issued"},
            )
            assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_stream_open_requires_known_session(self, app, client):
        async with app.state.registry.run():
            response = await client.get("/mcp", headers={"Mcp-Session-Id": "never-issued"})
            assert response.status_code == 400
            response = await client.get("/mcp")
            assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_delete_unknown_session_still_succeeds(self, app, client):
        valid_tokens.add(TOKEN)
        async with app.state.registry.run():
            response = await client.delete("/mcp", headers={"Mcp-Session-Id": "never-issued", **AUTH})
            assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_shutdown_closes_sessions(self, app, client):
        registry = app.state.registry
        async with registry.run():
            await _initialize(client)
            assert len(registry) == 1
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_concurrent_initializes_get_distinct_sessions(self, app, client):
        registry = app.state.registry
        async with registry.run():
            session_ids = await asyncio.gather(*(_initialize(client) for _ in range(5)))
            assert len(set(session_ids)) == 5
            assert len(registry) == 5

    @pytest.mark.asyncio
    async def test_closed_transport_evicts_session(self, app, client):
        registry = app.state.registry
        async with registry.run():
            session_id = await _initialize(client)
            await registry.get(session_id).transport.terminate()

            await _wait_until(lambda: session_id not in registry)

            response = await client.post(
                "/mcp", json=rpc("ping", request_id=4),
                headers={**MCP_HEADERS, "Mcp-Session-Id": session_id},
            )
            assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_event_stream_mode_through_gate(self, sse_app, sse_client):
        registry = sse_app.state.registry
        assert registry.json_response is False

        async with registry.run():
            response = await sse_client.post("/mcp", json=initialize_request(), headers=MCP_HEADERS)
            assert response.status_code == 200
            assert response.headers["content-type"].startswith("text/event-stream")
            assert "event: message" in response.text
            assert SERVER_NAME in response.text

            session_id = response.headers["mcp-session-id"]
            assert session_id in registry

            response = await sse_client.post(
                "/mcp",
                json=rpc("notifications/initialized", request_id=None),
                headers={**MCP_HEADERS, "Mcp-Session-Id": session_id},
            )
            assert response.status_code == 202


class TestRegistryDirect:
    @pytest.mark.asyncio
    async def test_create_requires_running_registry(self):
        registry = SessionRegistry(lowlevel_server(), json_response=True)
        transport = httpx.ASGITransport(app=registry)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            with pytest.raises(RuntimeError, match="not running"):
                await client.post("/", json=initialize_request(), headers=MCP_HEADERS)

    @pytest.mark.asyncio
    async def test_other_verbs_not_allowed(self):
        registry = SessionRegistry(lowlevel_server(), json_response=True)
        transport = httpx.ASGITransport(app=registry)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.put("/", content=b"{}")
            assert response.status_code == 405

    @pytest.mark.asyncio
    async def test_idle_sessions_are_swept(self):
        clock = FakeClock()
        registry = SessionRegistry(lowlevel_server(), json_response=True, idle_timeout=60, clock=clock)
        transport = httpx.ASGITransport(app=registry)

        async with registry.run():
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                session_id = await _initialize(client, path="/")

                clock.advance(45)
                assert await registry.sweep() == []

                response = await client.post(
                    "/", json=rpc("ping", request_id=7),
                    headers={**MCP_HEADERS, "Mcp-Session-Id": session_id},
                )
                assert response.status_code == 200

                clock.advance(45)
                assert await registry.sweep() == []

                clock.advance(61)
                assert await registry.sweep() == [session_id]
                assert session_id not in registry

    @pytest.mark.asyncio
    async def test_sweep_disabled_without_timeout(self):
        clock = FakeClock()
        registry = SessionRegistry(lowlevel_server(), json_response=True, idle_timeout=0, clock=clock)
        transport = httpx.ASGITransport(app=registry)

        async with registry.run():
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                session_id = await _initialize(client, path="/")
                clock.advance(10 ** 6)
                assert await registry.sweep() == []
                assert session_id in registry

    @pytest.mark.asyncio
    async def test_stream_open_on_known_session(self):
        registry = SessionRegistry(lowlevel_server(), json_response=True)
        transport = httpx.ASGITransport(app=registry)

        async with registry.run():
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                session_id = await _initialize(client, path="/")

            async with anyio.create_task_group() as tg:
                start, disconnect = await _open_stream(registry, session_id, tg)
                assert start["status"] == 200
                headers = {k.decode().lower(): v.decode() for k, v in start["headers"]}
                assert headers["content-type"].startswith("text/event-stream")
                assert registry.get(session_id).open_streams == 1

                disconnect.set()
                await _wait_until(lambda: registry.get(session_id).open_streams == 0)

            assert session_id in registry

    @pytest.mark.asyncio
    async def test_open_stream_keeps_session_from_idle_sweep(self):
        clock = FakeClock()
        registry = SessionRegistry(lowlevel_server(), json_response=True, idle_timeout=60, clock=clock)
        transport = httpx.ASGITransport(app=registry)

        async with registry.run():
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                session_id = await _initialize(client, path="/")

            async with anyio.create_task_group() as tg:
                _, disconnect = await _open_stream(registry, session_id, tg)
                clock.advance(600)
                assert await registry.sweep() == []
                assert session_id in registry

                # Closing the stream counts as activity
                disconnect.set()
                await _wait_until(lambda: registry.get(session_id).open_streams == 0)

            clock.advance(30)
            assert await registry.sweep() == []

            clock.advance(31)
            assert await registry.sweep() == [session_id]
            assert session_id not in registry

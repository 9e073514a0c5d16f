"""
Tests for the CDP transport and the CDP session backend.

Tests:
1. Target discovery over /json (pytest-httpserver).
2. CDPConnection - command/response correlation, errors, events, timeouts.
3. CDPSessionBackend - lifecycle tracking, navigation, evaluation, AX tree.
"""

import asyncio
import json

import pytest
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer

from refbrowser.cdp import CDPConnection, get_ws_url, list_targets
from refbrowser.exceptions import CDPConnectionClosed, CDPError, ScriptEvaluationError, SessionBackendError
from refbrowser.session import CDPSessionBackend

# ============================================================
# Fake DevTools endpoint
# ============================================================


class DevToolsStub:
    """Answers CDP commands over a websocket like a single-tab Chrome."""

    def __init__(self):
        self.url = "about:blank"
        self.received: list[dict] = []

    def _evaluate(self, expression: str) -> dict:
        if expression == "document.readyState":
            return {"result": {"type": "string", "value": "complete"}}
        if expression == "window.location.href":
            return {"result": {"type": "string", "value": self.url}}
        if expression == "document.title":
            return {"result": {"type": "string", "value": "Example Domain"}}
        if expression.startswith("throw"):
            return {
                "result": {"type": "object"},
                "exceptionDetails": {"text": "Uncaught", "exception": {"description": "Error: boom"}},
            }
        return {"result": {"type": "number", "value": 2}}

    async def handle(self, request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        async for msg in ws:
            if msg.type != WSMsgType.TEXT:
                break
            data = json.loads(msg.data)
            self.received.append(data)
            method, params = data["method"], data.get("params", {})

            if method == "Slow.hang":
                continue
            if method == "Nope.fail":
                await ws.send_json({"id": data["id"], "error": {"code": -32601, "message": "'Nope.fail' wasn't found"}})
                continue

            result: dict = {}
            events: list[dict] = []
            if method == "Runtime.evaluate":
                result = self._evaluate(params["expression"])
            elif method == "Page.getFrameTree":
                result = {"frameTree": {"frame": {"id": "MAIN", "url": self.url}}}
            elif method == "Accessibility.getFullAXTree":
                result = {"nodes": [
                    {"nodeId": "1", "role": {"value": "RootWebArea"}, "name": {"value": "Example Domain"},
                     "childIds": ["2"], "backendDOMNodeId": 1},
                    {"nodeId": "2", "parentId": "1", "role": {"value": "heading"},
                     "name": {"value": "Example Domain"}, "backendDOMNodeId": 7,
                     "properties": [{"name": "level", "value": {"type": "integer", "value": 1}}]},
                ]}
            elif method == "Page.navigate":
                self.url = params["url"]
                result = {"frameId": "MAIN", "loaderId": "L1"}
                events = [
                    {"method": "Page.frameNavigated", "params": {"frame": {"id": "MAIN", "url": self.url}}},
                    {"method": "Page.frameNavigated", "params": {"frame": {"id": "CHILD", "parentId": "MAIN"}}},
                    {"method": "Page.lifecycleEvent", "params": {"frameId": "MAIN", "name": "init"}},
                    {"method": "Page.lifecycleEvent", "params": {"frameId": "CHILD", "name": "load"}},
                    {"method": "Page.lifecycleEvent", "params": {"frameId": "MAIN", "name": "DOMContentLoaded"}},
                    {"method": "Page.lifecycleEvent", "params": {"frameId": "MAIN", "name": "load"}},
                ]
            elif method == "Test.ping":
                events = [{"method": "Test.pinged", "params": {"n": 1}}]
            await ws.send_json({"id": data["id"], "result": result})
            for event in events:
                await ws.send_json(event)
        return ws


@pytest.fixture
async def devtools():
    stub = DevToolsStub()
    app = web.Application()
    app.router.add_get("/devtools/page/1", stub.handle)
    server = TestServer(app)
    await server.start_server()
    stub.ws_url = str(server.make_url("/devtools/page/1")).replace("http://", "ws://", 1)
    yield stub
    await server.close()


@pytest.fixture
async def connection(devtools):
    conn = CDPConnection(devtools.ws_url)
    await conn.connect()
    yield conn
    await conn.close()


# ============================================================
# 1. Target Discovery
# ============================================================


class TestDiscovery:
    def _targets(self, httpserver):
        httpserver.expect_request("/json").respond_with_json([
            {"id": "W1", "type": "service_worker", "webSocketDebuggerUrl": "ws://x/devtools/worker/W1"},
            {"id": "P1", "type": "page", "webSocketDebuggerUrl": "ws://x/devtools/page/P1"},
            {"id": "P2", "type": "page", "webSocketDebuggerUrl": "ws://x/devtools/page/P2"},
        ])
        return httpserver.url_for("/").rstrip("/")

    async def test_list_targets(self, httpserver):
        base = self._targets(httpserver)
        targets = await list_targets(base)
        assert [t["id"] for t in targets] == ["W1", "P1", "P2"]

    async def test_first_page_target(self, httpserver):
        base = self._targets(httpserver)
        assert await get_ws_url(base) == "ws://x/devtools/page/P1"

    async def test_explicit_target(self, httpserver):
        base = self._targets(httpserver)
        assert await get_ws_url(base, "P2") == "ws://x/devtools/page/P2"

    async def test_missing_target(self, httpserver):
        base = self._targets(httpserver)
        with pytest.raises(SessionBackendError):
            await get_ws_url(base, "NOPE")

    async def test_http_error(self, httpserver):
        httpserver.expect_request("/json").respond_with_data("nope", status=500)
        with pytest.raises(SessionBackendError):
            await list_targets(httpserver.url_for("/"))


# ============================================================
# 2. CDPConnection
# ============================================================


class TestCDPConnection:
    async def test_send_returns_result(self, connection):
        result = await connection.send("Runtime.evaluate", {"expression": "1 + 1", "returnByValue": True})
        assert result["result"]["value"] == 2
        assert connection.is_alive

    async def test_error_payload_raises(self, connection):
        with pytest.raises(CDPError) as exc:
            await connection.send("Nope.fail")
        assert exc.value.method == "Nope.fail"
        assert exc.value.error["code"] == -32601

    async def test_events_reach_listeners(self, connection):
        seen = []
        got = asyncio.Event()

        def on_ping(params):
            seen.append(params)
            got.set()

        connection.on("Test.pinged", on_ping)
        await connection.send("Test.ping")
        await asyncio.wait_for(got.wait(), 2)
        assert seen == [{"n": 1}]

    async def test_failing_listener_does_not_break_reader(self, connection):
        connection.on("Test.pinged", lambda params: 1 / 0)
        await connection.send("Test.ping")
        result = await connection.send("Runtime.evaluate", {"expression": "1 + 1"})
        assert result["result"]["value"] == 2

    async def test_timeout(self, connection):
        with pytest.raises(SessionBackendError) as exc:
            await connection.send("Slow.hang", timeout=0.1)
        assert "no response" in str(exc.value)

    async def test_send_after_close(self, devtools):
        conn = CDPConnection(devtools.ws_url)
        await conn.connect()
        await conn.close()
        assert not conn.is_alive
        with pytest.raises(CDPConnectionClosed):
            await conn.send("Runtime.evaluate")

    async def test_pending_commands_fail_on_close(self, devtools):
        conn = CDPConnection(devtools.ws_url)
        await conn.connect()
        pending = asyncio.create_task(conn.send("Slow.hang", timeout=5))
        await asyncio.sleep(0.05)
        await conn.close()
        with pytest.raises(CDPConnectionClosed):
            await pending

    async def test_connect_failure(self, unused_tcp_port):
        conn = CDPConnection(f"ws://127.0.0.1:{unused_tcp_port}/devtools/page/1")
        with pytest.raises(SessionBackendError):
            await conn.connect()

    async def test_async_context_manager(self, devtools):
        async with CDPConnection(devtools.ws_url) as conn:
            assert conn.is_alive
        assert not conn.is_alive


# ============================================================
# 3. CDPSessionBackend
# ============================================================


class TestCDPSessionBackend:
    @pytest.fixture
    async def session(self, connection):
        backend = CDPSessionBackend(connection, settle_delay=0.01)
        await backend.start()
        return backend

    async def test_start_enables_domains(self, session, devtools):
        methods = [m["method"] for m in devtools.received]
        for domain in ("Page", "Runtime", "DOM", "Accessibility"):
            assert f"{domain}.enable" in methods
        assert await session.ready_state() == "load"

    async def test_navigate_waits_for_main_frame_load(self, session, devtools):
        await asyncio.wait_for(session.navigate("https://example.com/"), 2)
        assert await session.current_url() == "https://example.com/"
        assert await session.current_title() == "Example Domain"

    async def test_main_frame_navigations_are_counted(self, session):
        assert session.navigation_count == 0
        await asyncio.wait_for(session.navigate("https://example.com/"), 2)
        # the child frame navigation is not counted
        assert session.navigation_count == 1

    async def test_evaluate(self, session):
        assert await session.evaluate("1 + 1") == 2

    async def test_evaluate_exception(self, session):
        with pytest.raises(ScriptEvaluationError) as exc:
            await session.evaluate("throw new Error('boom')")
        assert "Error: boom" in str(exc.value)

    async def test_query_accessible_tree(self, session):
        nodes = await session.query_accessible_tree()
        assert [n.role for n in nodes] == ["RootWebArea", "heading"]
        assert nodes[1].backend_node_id == 7
        assert nodes[1].parent_id == "1"
        assert nodes[1].properties == {"level": 1}

    async def test_action_without_target(self, session):
        with pytest.raises(SessionBackendError):
            await session.dispatch_action(None, "click")

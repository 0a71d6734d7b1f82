import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from zai_bridge.cdp import CDPConnection, get_version, list_targets, new_target
from zai_bridge.exceptions import CDPError


async def _devtools(request):
    """Minimal page endpoint: answers commands and pushes one event first."""
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    async for msg in ws:
        if msg.type != aiohttp.WSMsgType.TEXT:
            break
        command = msg.json()
        method = command["method"]
        if method == "Runtime.evaluate":
            await ws.send_json({"id": command["id"], "result": {"result": {"type": "number", "value": 2}}})
        elif method == "Page.navigate":
            await ws.send_json({"method": "Page.lifecycleEvent", "params": {"name": "networkIdle"}})
            await ws.send_json({"id": command["id"], "result": {"loaderId": "L1"}})
        elif method == "Page.hang":
            continue
        else:
            await ws.send_json({"id": command["id"], "error": {"code": -32601, "message": f"'{method}' wasn't found"}})
    return ws


@pytest_asyncio.fixture
async def devtools_url():
    app = web.Application()
    app.router.add_get("/devtools/page/1", _devtools)
    server = TestServer(app)
    await server.start_server()
    yield str(server.make_url("/devtools/page/1")).replace("http://", "ws://")
    await server.close()


@pytest.mark.asyncio
async def test_send_and_evaluate(devtools_url):
    async with CDPConnection(devtools_url) as conn:
        assert conn.is_alive
        assert await conn.evaluate("1 + 1") == 2

    assert not conn.is_alive


@pytest.mark.asyncio
async def test_events_reach_listeners_before_the_reply(devtools_url):
    seen = []

    async with CDPConnection(devtools_url) as conn:
        off = conn.on("Page.lifecycleEvent", lambda params: seen.append(params["name"]))
        result = await conn.send("Page.navigate", {"url": "https://chat.z.ai"})
        off()

    assert result == {"loaderId": "L1"}
    assert seen == ["networkIdle"]


@pytest.mark.asyncio
async def test_error_reply_raises_cdp_error(devtools_url):
    async with CDPConnection(devtools_url) as conn:
        with pytest.raises(CDPError) as info:
            await conn.send("Network.streamResourceContent", {"requestId": "x"})

    assert info.value.method == "Network.streamResourceContent"
    assert "wasn't found" in str(info.value)


@pytest.mark.asyncio
async def test_unanswered_command_times_out(devtools_url):
    async with CDPConnection(devtools_url) as conn:
        with pytest.raises(asyncio.TimeoutError):
            await conn.send("Page.hang", timeout=0.05)


@pytest.mark.asyncio
async def test_send_on_closed_connection_fails():
    with pytest.raises(ConnectionError):
        await CDPConnection("ws://127.0.0.1:1/devtools/page/1").send("Runtime.enable")


@pytest.mark.asyncio
async def test_discovery_endpoints(httpserver):
    httpserver.expect_request("/json/version").respond_with_json({"Browser": "Chrome/130"})
    httpserver.expect_request("/json").respond_with_json([
        {"id": "a", "type": "page", "url": "about:blank"},
        {"id": "b", "type": "service_worker", "url": "https://chat.z.ai/sw.js"},
    ])
    httpserver.expect_request("/json/new", method="PUT").respond_with_json({"id": "c", "type": "page"})
    base = httpserver.url_for("").rstrip("/")

    async with aiohttp.ClientSession() as http:
        assert (await get_version(http, base))["Browser"] == "Chrome/130"
        assert [t["id"] for t in await list_targets(http, base)] == ["a"]
        assert (await new_target(http, base))["id"] == "c"

import asyncio

import pytest

from zai_bridge.exceptions import ResponseFailed, ResponseTimeout
from zai_bridge.interceptor import ResponseInterceptor
from zai_bridge.stream import stream
from zai_bridge.views import Done, TextDelta, ToolCallDelta

from tests.conftest import COMPLETION_URL, FakeConnection, done_line, record_line

PATTERN = "/api/v2/chat/completions"


async def _run(conn: FakeConnection, mode: str = "incremental", timeout: float = 2.0, submit=None):
    async def _submit():
        conn.respond()

    return [chunk async for chunk in stream(conn, submit or _submit, PATTERN, timeout, mode)]


@pytest.mark.asyncio
async def test_incremental_body_is_streamed():
    conn = FakeConnection([record_line("He"), record_line("llo"), done_line()])

    chunks = await _run(conn)

    assert chunks == [TextDelta("He"), TextDelta("llo"), Done()]
    assert "Network.streamResourceContent" in conn.sent_methods()
    assert "Network.getResponseBody" not in conn.sent_methods()


@pytest.mark.asyncio
async def test_incremental_chunks_may_cut_lines_anywhere():
    body = record_line("He") + record_line("llo") + done_line()
    conn = FakeConnection([body[:10], body[10:55], body[55:]])

    chunks = await _run(conn)

    assert chunks == [TextDelta("He"), TextDelta("llo"), Done()]


@pytest.mark.asyncio
async def test_buffered_body_is_split_into_lines():
    conn = FakeConnection([record_line("He"), record_line("llo"), done_line()], streaming=False)

    chunks = await _run(conn, mode="buffered")

    assert chunks == [TextDelta("He"), TextDelta("llo"), Done()]
    assert "Network.getResponseBody" in conn.sent_methods()
    assert "Network.streamResourceContent" not in conn.sent_methods()


@pytest.mark.asyncio
async def test_incremental_falls_back_to_buffered_when_unsupported():
    conn = FakeConnection([record_line("ok"), done_line()], streaming=False)

    chunks = await _run(conn, mode="incremental")

    assert chunks == [TextDelta("ok"), Done()]
    assert conn.sent_methods().index("Network.streamResourceContent") < conn.sent_methods().index(
        "Network.getResponseBody"
    )


@pytest.mark.asyncio
async def test_listener_is_armed_before_submit():
    conn = FakeConnection([record_line("x")])
    seen = {}

    async def submit():
        seen["listeners"] = len(conn.listeners["Network.responseReceived"])
        seen["network_enabled"] = "Network.enable" in conn.sent_methods()
        conn.respond()

    await _run(conn, submit=submit)

    assert seen == {"listeners": 1, "network_enabled": True}


@pytest.mark.asyncio
async def test_listeners_are_removed_afterwards():
    conn = FakeConnection([record_line("x")])

    await _run(conn)

    assert conn.listener_count() == 0


@pytest.mark.asyncio
async def test_response_timeout_yields_nothing():
    conn = FakeConnection([record_line("late")], respond=False)
    received = []

    with pytest.raises(ResponseTimeout):
        async for chunk in stream(conn, _noop_submit(conn), PATTERN, 0.05):
            received.append(chunk)

    assert received == []
    assert conn.listener_count() == 0


def _noop_submit(conn):
    async def submit():
        conn.respond()

    return submit


@pytest.mark.asyncio
async def test_stalled_body_times_out_without_done():
    conn = FakeConnection([record_line("partial")])
    conn.gate.clear()
    received = []

    with pytest.raises(ResponseTimeout):
        async for chunk in stream(conn, _noop_submit(conn), PATTERN, 0.05):
            received.append(chunk)

    assert Done() not in received
    conn.gate.set()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_unrelated_and_preflight_responses_are_ignored():
    conn = FakeConnection([record_line("real")])

    async def submit():
        conn.emit("Network.responseReceived", {
            "requestId": "other", "type": "XHR", "response": {"url": "https://chat.z.ai/api/v1/chats/new"},
        })
        conn.emit("Network.responseReceived", {
            "requestId": "preflight", "type": "Preflight", "response": {"url": COMPLETION_URL},
        })
        conn.emit("Network.dataReceived", {"requestId": "other", "data": "aWdub3JlZA=="})
        conn.respond()

    chunks = await _run(conn, submit=submit)

    assert chunks == [TextDelta("real"), Done()]


@pytest.mark.asyncio
async def test_failed_request_ends_without_done():
    conn = FakeConnection([record_line("half")])
    conn.gate.clear()
    received = []

    async def submit():
        conn.respond()

    async def fail_later():
        await asyncio.sleep(0.01)
        conn.emit("Network.loadingFailed", {"requestId": conn.request_id, "errorText": "net::ERR_ABORTED"})

    failer = asyncio.create_task(fail_later())
    with pytest.raises(ResponseFailed):
        async for chunk in stream(conn, submit, PATTERN, 1.0):
            received.append(chunk)
    await failer

    assert Done() not in received
    conn.gate.set()
    await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_tool_call_is_emitted_from_network_reply():
    reply = '```tool_call\n{"name":"search","arguments":{"q":"x"}}\n```'
    conn = FakeConnection([record_line(reply), done_line()])

    chunks = await _run(conn)

    assert [type(c) for c in chunks] == [TextDelta, ToolCallDelta, Done]


@pytest.mark.asyncio
async def test_wait_for_response_returns_matched_response():
    conn = FakeConnection()

    async with ResponseInterceptor(conn, PATTERN, 1.0) as interceptor:
        conn.respond()
        response = await interceptor.wait_for_response()

    assert response["url"] == COMPLETION_URL
    assert interceptor.request_id == "req-1"

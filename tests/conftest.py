"""Shared fakes for the bridge tests.

``FakeConnection`` plays the browser side of a CDP page connection: it
records commands and, once the fake page "submits", pushes the same
``Network.*`` events Chrome would for the site's completion request.
"""

import asyncio
import base64
import json
from collections import defaultdict
from typing import Any, Callable

import pytest

from zai_bridge.config import BridgeSettings
from zai_bridge.exceptions import CDPError, InputTimeout
from zai_bridge.session import Page
from zai_bridge.views import ConnectionState

COMPLETION_URL = "https://chat.z.ai/api/v2/chat/completions"


def record_line(content: str, done: bool = False, phase: str = "answer") -> str:
    """One line of the site's internal event stream."""
    payload = {"type": "chat:completion", "data": {"delta_content": content, "phase": phase, "done": done}}
    return f"data: {json.dumps(payload)}\n"


def done_line() -> str:
    return record_line("", done=True)


class FakeConnection:
    def __init__(
        self,
        body_chunks: list[str | bytes] = (),
        url: str = COMPLETION_URL,
        streaming: bool = True,
        respond: bool = True,
        evaluate_result: Any = "complete",
        hooks: dict[str, Callable[[dict | None], Any]] | None = None,
    ):
        self.body_chunks = [c.encode("utf-8") if isinstance(c, str) else c for c in body_chunks]
        self.url = url
        self.streaming = streaming
        self.should_respond = respond
        self.evaluate_result = evaluate_result
        self.hooks = hooks or {}
        self.request_id = "req-1"
        self.listeners: dict[str, list] = defaultdict(list)
        self.sent: list[tuple[str, dict | None]] = []
        self.evaluated: list[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.is_alive = True
        self._feeder: asyncio.Task | None = None

    # ── CDPConnection surface ────────────────────────────────────────────────

    def on(self, method: str, handler):
        self.listeners[method].append(handler)

        def _off():
            if handler in self.listeners[method]:
                self.listeners[method].remove(handler)

        return _off

    async def connect(self):
        pass

    async def close(self):
        self.is_alive = False

    async def send(self, method: str, params: dict | None = None, timeout: float = 10.0) -> dict:
        self.sent.append((method, params))
        if method in self.hooks:
            return self.hooks[method](params)
        if method == "Network.streamResourceContent":
            if not self.streaming:
                raise CDPError(method, {"message": "Method not supported"})
            self._feeder = asyncio.get_running_loop().create_task(self._feed())
            return {"bufferedData": ""}
        if method == "Network.getResponseBody":
            body = b"".join(self.body_chunks)
            return {"body": base64.b64encode(body).decode(), "base64Encoded": True}
        return {}

    async def evaluate(self, expression: str, await_promise: bool = False, user_gesture: bool = False) -> Any:
        self.evaluated.append(expression)
        return self.evaluate_result

    # ── Test controls ────────────────────────────────────────────────────────

    def emit(self, method: str, params: dict):
        for handler in list(self.listeners.get(method, ())):
            handler(params)

    def listener_count(self) -> int:
        return sum(len(handlers) for handlers in self.listeners.values())

    def sent_methods(self) -> list[str]:
        return [method for method, _ in self.sent]

    def respond(self):
        """What the page does once the prompt is submitted."""
        if not self.should_respond:
            return
        self.emit("Network.responseReceived", {
            "requestId": self.request_id,
            "type": "Fetch",
            "response": {"url": self.url, "status": 200},
        })
        if not self.streaming:
            self.emit("Network.loadingFinished", {"requestId": self.request_id})

    async def _feed(self):
        await self.gate.wait()
        for chunk in self.body_chunks:
            await asyncio.sleep(0)
            self.emit("Network.dataReceived", {
                "requestId": self.request_id,
                "dataLength": len(chunk),
                "data": base64.b64encode(chunk).decode(),
            })
        self.emit("Network.loadingFinished", {"requestId": self.request_id})


class FakeDriver:
    """PageDriver that logs every step and triggers the fake page's reply on submit."""

    def __init__(self, connection: FakeConnection, log: list[str], fail_locate: bool = False):
        self.connection = connection
        self.log = log
        self.fail_locate = fail_locate
        self.clipboard: str | None = None

    async def locate_input(self, timeout: float) -> None:
        self.log.append("locate")
        if self.fail_locate:
            raise InputTimeout("no input")

    async def clear(self) -> None:
        self.log.append("clear")

    async def set_clipboard(self, text: str) -> None:
        self.log.append("clipboard")
        self.clipboard = text

    async def paste(self) -> None:
        self.log.append("paste")

    async def submit(self) -> None:
        self.log.append("submit")
        self.connection.respond()


class FakeManager:
    """Session manager handing out one prepared page connection per request."""

    def __init__(
        self,
        connections: list[FakeConnection],
        acquire_error: Exception | None = None,
        locate_error: Exception | None = None,
    ):
        self.connections = list(connections)
        self.acquire_error = acquire_error
        self.locate_error = locate_error
        self.state = ConnectionState.DISCONNECTED
        self.closed = False

    async def acquire(self):
        if self.acquire_error is not None:
            raise self.acquire_error
        self.state = ConnectionState.CONNECTED
        return "session"

    async def locate_page(self, session) -> Page:
        if self.locate_error is not None:
            raise self.locate_error
        return Page("target-1", "https://chat.z.ai", self.connections.pop(0))

    async def close(self):
        self.closed = True


@pytest.fixture
def settings() -> BridgeSettings:
    return BridgeSettings(
        response_timeout=2.0,
        input_timeout=0.1,
        navigation_timeout=1.0,
        page_warmup=0.0,
        paste_settle=0.0,
        login_initial_interval=0.001,
        login_max_interval=0.002,
        login_max_attempts=5,
    )

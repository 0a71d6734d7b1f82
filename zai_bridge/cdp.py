"""Thin CDP transport: one WebSocket per target plus the HTTP discovery endpoints.

Commands are correlated by message id; everything else the browser pushes
(``Network.*``, ``Page.lifecycleEvent``...) is dispatched to listeners
registered with :meth:`CDPConnection.on`.
"""

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, Callable

import aiohttp

from zai_bridge.exceptions import CDPError

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], Any]


# ── HTTP discovery ───────────────────────────────────────────────────────────


async def get_version(http: aiohttp.ClientSession, base_url: str, timeout: float = 3.0) -> dict:
    """``/json/version`` of a debugging endpoint. Raises aiohttp errors if unreachable."""
    async with http.get(f"{base_url}/json/version", timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
        resp.raise_for_status()
        return await resp.json(content_type=None)


async def list_targets(http: aiohttp.ClientSession, base_url: str) -> list[dict]:
    """All ``page`` targets currently open in the browser."""
    async with http.get(f"{base_url}/json") as resp:
        resp.raise_for_status()
        targets = await resp.json(content_type=None)
    return [t for t in targets if t.get("type") == "page"]


async def new_target(http: aiohttp.ClientSession, base_url: str, url: str = "about:blank") -> dict:
    # Chrome only accepts PUT for /json/new since v111
    async with http.put(f"{base_url}/json/new?{url}") as resp:
        resp.raise_for_status()
        return await resp.json(content_type=None)


# ── CDPConnection ────────────────────────────────────────────────────────────


class CDPConnection:
    """Manages a WebSocket connection to a CDP target."""

    def __init__(self, ws_url: str):
        self.ws_url = ws_url
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._session: aiohttp.ClientSession | None = None
        self._msg_id = 0
        self._pending: dict[int, asyncio.Future] = {}
        self._listeners: dict[str, list[EventHandler]] = defaultdict(list)
        self._reader_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._ws is not None
            and not self._ws.closed
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def connect(self):
        self._session = aiohttp.ClientSession()
        self._ws = await self._session.ws_connect(self.ws_url, max_msg_size=50 * 1024 * 1024)
        self._reader_task = asyncio.create_task(self._read_loop())
        self._closed = False

    async def close(self):
        self._closed = True
        if self._reader_task:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        if self._ws:
            await self._ws.close()
        if self._session:
            await self._session.close()
        self._fail_pending(ConnectionError("CDP connection closed"))

    def on(self, method: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to a CDP event. Returns a callable that unsubscribes."""
        self._listeners[method].append(handler)

        def _off():
            handlers = self._listeners.get(method)
            if handlers and handler in handlers:
                handlers.remove(handler)

        return _off

    def _dispatch(self, method: str, params: dict):
        for handler in list(self._listeners.get(method, ())):
            try:
                handler(params)
            except Exception:
                logger.exception(f"Listener for {method} failed")

    def _fail_pending(self, exc: Exception):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    async def _read_loop(self):
        assert self._ws is not None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    data = json.loads(msg.data)
                    msg_id = data.get("id")
                    if msg_id is not None:
                        future = self._pending.get(msg_id)
                        if future is not None and not future.done():
                            future.set_result(data)
                    elif "method" in data:
                        self._dispatch(data["method"], data.get("params", {}))
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._fail_pending(ConnectionError("CDP socket closed"))

    async def send(self, method: str, params: dict | None = None, timeout: float = 10.0) -> dict:
        """Send a CDP command and wait for the response."""
        if self._ws is None or self._ws.closed:
            raise ConnectionError("CDP connection is closed")
        self._msg_id += 1
        msg_id = self._msg_id
        message = {"id": msg_id, "method": method}
        if params:
            message["params"] = params

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[msg_id] = future

        await self._ws.send_json(message)
        try:
            result = await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(msg_id, None)

        if "error" in result:
            raise CDPError(method, result["error"])
        return result.get("result", {})

    async def evaluate(self, expression: str, await_promise: bool = False, user_gesture: bool = False) -> Any:
        """``Runtime.evaluate`` returning the value (by value)."""
        result = await self.send("Runtime.evaluate", {
            "expression": expression,
            "returnByValue": True,
            "awaitPromise": await_promise,
            "userGesture": user_gesture,
        })
        if "exceptionDetails" in result:
            details = result["exceptionDetails"]
            raise CDPError("Runtime.evaluate", {"message": details.get("text", "exception"), "details": details})
        return result.get("result", {}).get("value")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.close()

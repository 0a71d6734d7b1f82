"""Catching the site's own completion response on the wire.

The page fetches its reply from an internal endpoint; we watch the tab's
``Network`` events for a response whose URL matches that endpoint and read
its body one of two ways:

- incremental: ``Network.streamResourceContent`` makes Chrome attach the raw
  bytes to every subsequent ``Network.dataReceived`` event, so chunks arrive
  while the model is still writing;
- buffered: wait for ``Network.loadingFinished`` and fetch the whole body
  with ``Network.getResponseBody``.

Incremental falls back to buffered when the browser rejects the command.
"""

import asyncio
import base64
import logging
from typing import AsyncIterator, Awaitable, Literal, TypeVar

from zai_bridge.cdp import CDPConnection
from zai_bridge.exceptions import CDPError, ResponseFailed, ResponseTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Marks end of body in the chunk queue
_EOF = None


class ResponseInterceptor:
    def __init__(
        self,
        connection: CDPConnection,
        url_pattern: str,
        timeout: float,
        mode: Literal["incremental", "buffered"] = "incremental",
    ):
        self.connection = connection
        self.url_pattern = url_pattern
        self.timeout = timeout
        self.mode = mode
        self.request_id: str | None = None
        self.response: dict | None = None
        self._matched = asyncio.Event()
        self._finished = asyncio.Event()
        self._error_text: str | None = None
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._early: list[bytes | None] = []
        self._streaming = False
        self._offs: list = []

    # ── Listener lifecycle ───────────────────────────────────────────────────

    async def arm(self):
        """Start listening. Must happen before the request is triggered."""
        self._offs = [
            self.connection.on("Network.responseReceived", self._on_response),
            self.connection.on("Network.dataReceived", self._on_data),
            self.connection.on("Network.loadingFinished", self._on_finished),
            self.connection.on("Network.loadingFailed", self._on_failed),
        ]
        await self.connection.send("Network.enable")

    def disarm(self):
        for off in self._offs:
            off()
        self._offs = []

    async def __aenter__(self):
        await self.arm()
        return self

    async def __aexit__(self, *args):
        self.disarm()

    # ── Event handlers ───────────────────────────────────────────────────────

    def _emit(self, item: bytes | None):
        if self._streaming:
            self._queue.put_nowait(item)
        else:
            self._early.append(item)

    def _on_response(self, params: dict):
        if self.request_id is not None or params.get("type") == "Preflight":
            return
        response = params.get("response", {})
        if self.url_pattern not in response.get("url", ""):
            return
        self.request_id = params.get("requestId")
        self.response = response
        logger.debug(f"Matched completion response {response.get('url')} (status {response.get('status')})")
        self._matched.set()

    def _on_data(self, params: dict):
        if self.request_id is None or params.get("requestId") != self.request_id:
            return
        data = params.get("data")
        if data:
            self._emit(base64.b64decode(data))

    def _on_finished(self, params: dict):
        if self.request_id is not None and params.get("requestId") == self.request_id:
            self._finished.set()
            self._emit(_EOF)

    def _on_failed(self, params: dict):
        if self.request_id is not None and params.get("requestId") == self.request_id:
            self._error_text = params.get("errorText") or "unknown error"
            self._finished.set()
            self._emit(_EOF)

    # ── Reading ──────────────────────────────────────────────────────────────

    async def _bounded(self, awaitable: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ResponseTimeout(f"No {what} within {self.timeout}s")

    async def wait_for_response(self) -> dict:
        await self._bounded(self._matched.wait(), "completion response")
        assert self.response is not None
        return self.response

    async def _start_streaming(self) -> bool:
        try:
            result = await self.connection.send("Network.streamResourceContent", {"requestId": self.request_id})
        except CDPError as e:
            logger.info(f"Incremental body unavailable ({e}), falling back to buffered read")
            return False
        buffered = result.get("bufferedData")
        if buffered:
            self._queue.put_nowait(base64.b64decode(buffered))
        for item in self._early:
            self._queue.put_nowait(item)
        self._early.clear()
        self._streaming = True
        return True

    async def _read_full_body(self) -> bytes:
        await self._bounded(self._finished.wait(), "end of completion response")
        if self._error_text:
            raise ResponseFailed(f"Completion request failed: {self._error_text}")
        result = await self.connection.send(
            "Network.getResponseBody", {"requestId": self.request_id}, timeout=self.timeout
        )
        body = result.get("body", "")
        if result.get("base64Encoded"):
            return base64.b64decode(body)
        return body.encode("utf-8")

    async def iter_body(self) -> AsyncIterator[bytes]:
        """Yield the response body as raw byte chunks."""
        await self.wait_for_response()

        if self.mode == "incremental" and await self._start_streaming():
            while True:
                chunk = await self._bounded(self._queue.get(), "data from completion response")
                if chunk is _EOF:
                    break
                yield chunk
            if self._error_text:
                raise ResponseFailed(f"Completion request failed: {self._error_text}")
            return

        yield await self._read_full_body()

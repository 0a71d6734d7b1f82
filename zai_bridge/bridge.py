"""Request orchestration: one prompt in flight, streamed back as OpenAI chunks.

The chat box and the network listener are both page-global, so requests are
strictly serialized by a lock that is held from input delivery until the
reply stream has been fully read. Reading happens in a background task that
feeds a queue; the HTTP response drains that queue at its own pace.
"""

import asyncio
import json
import logging
import time
from typing import AsyncIterator, Callable
from uuid import uuid4

import aiohttp

from zai_bridge.auth import AuthCapture
from zai_bridge.config import BridgeSettings
from zai_bridge.exceptions import BridgeError, BrowserDisconnected
from zai_bridge.page import CDPPageDriver, PageDriver, deliver
from zai_bridge.prompt import compose
from zai_bridge.session import BrowserSessionManager, Page
from zai_bridge.stream import stream
from zai_bridge.views import AuthCredential, ChatRequest, Done, StreamChunk, TextDelta, ToolCallDelta

logger = logging.getLogger(__name__)

DONE_EVENT = "data: [DONE]\n\n"

# Closes a ChunkStream
_END = None

# Raised by the CDP transport when the browser goes away
TRANSPORT_ERRORS = (ConnectionError, asyncio.TimeoutError, aiohttp.ClientError)


def sse_event(data: dict) -> str:
    """Format a dict as an SSE event."""
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def encode_chunk(chunk: StreamChunk, completion_id: str, created: int, model: str) -> dict:
    """OpenAI ``chat.completion.chunk`` payload for one stream chunk."""
    if isinstance(chunk, TextDelta):
        key = "reasoning_content" if chunk.reasoning else "content"
        delta: dict = {key: chunk.text}
        finish_reason = None
    elif isinstance(chunk, ToolCallDelta):
        delta = {
            "content": None,
            "tool_calls": [{
                "index": 0,
                "id": chunk.call_id,
                "type": "function",
                "function": {"name": chunk.name, "arguments": chunk.arguments_json},
            }],
        }
        finish_reason = "tool_calls"
    else:
        delta = {}
        finish_reason = "stop"

    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


class ChunkStream:
    """SSE lines produced by a background stream task.

    Ends after ``data: [DONE]`` on success, or early (no marker) when the
    reply failed mid-way.
    """

    def __init__(self, queue: asyncio.Queue):
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END:
                return
            yield item


class ChatBridge:
    def __init__(
        self,
        settings: BridgeSettings,
        manager: BrowserSessionManager | None = None,
        driver_factory: Callable[[Page], PageDriver] | None = None,
    ):
        self.settings = settings
        self.manager = manager or BrowserSessionManager(settings)
        self._driver_factory = driver_factory or self._cdp_driver
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    def _cdp_driver(self, page: Page) -> PageDriver:
        return CDPPageDriver(page.connection, self.settings.input_selector, origin=self.settings.target_url)

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def open_stream(self, request: ChatRequest) -> ChunkStream:
        """Deliver the prompt and start streaming the reply.

        Raises before any chunk exists if the browser, page or input box is
        not available; the lock is released in that case.
        """
        prompt = compose(request)
        model = request.model or self.settings.model
        logger.info(f"Context: {len(prompt)} chars, {len(request.messages)} message(s), {len(request.tools)} tool(s)")

        await self._lock.acquire()
        try:
            session = await self.manager.acquire()
            page = await self.manager.locate_page(session)
            driver = self._driver_factory(page)
            await deliver(driver, prompt, self.settings.input_timeout, self.settings.paste_settle)
        except TRANSPORT_ERRORS as e:
            self._lock.release()
            raise BrowserDisconnected(f"Browser connection failed before streaming: {e!r}") from e
        except BaseException:
            self._lock.release()
            raise

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self._pump(page, driver, model, queue))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ChunkStream(queue)

    async def _pump(self, page: Page, driver: PageDriver, model: str, queue: asyncio.Queue):
        completion_id = f"chatcmpl-{uuid4().hex[:24]}"
        created = int(time.time())
        called_tool = False
        try:
            async for chunk in stream(
                page.connection,
                driver.submit,
                url_pattern=self.settings.completion_url_pattern,
                timeout=self.settings.response_timeout,
                mode=self.settings.stream_mode,
            ):
                if isinstance(chunk, Done):
                    if not called_tool:
                        queue.put_nowait(sse_event(encode_chunk(chunk, completion_id, created, model)))
                    queue.put_nowait(DONE_EVENT)
                    continue
                if isinstance(chunk, ToolCallDelta):
                    called_tool = True
                queue.put_nowait(sse_event(encode_chunk(chunk, completion_id, created, model)))
        except BridgeError as e:
            logger.error(f"Reply stream aborted: {e}")
        except Exception as e:
            logger.error(f"Reply stream crashed: {e}", exc_info=True)
        finally:
            queue.put_nowait(_END)
            self._lock.release()

    async def login(self, cancel: asyncio.Event | None = None) -> AuthCredential:
        capture = AuthCapture(self.settings, self.manager)
        try:
            session = await self.manager.acquire()
            return await capture.await_login(session, cancel)
        except TRANSPORT_ERRORS as e:
            raise BrowserDisconnected(f"Browser connection failed during login: {e!r}") from e

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.manager.close()

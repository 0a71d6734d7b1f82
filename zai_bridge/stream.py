"""Decoding the site's internal event stream into delta chunks.

The completion endpoint answers with SSE-style lines, each a JSON record::

    data: {"type": "chat:completion", "data": {"delta_content": "He", "phase": "answer"}}
    data: {"type": "chat:completion", "data": {"delta_content": "", "done": true}}

Only ``chat:completion`` records with a ``delta_content`` field matter. Lines
that do not decode are skipped one by one, never the whole stream.
"""

import codecs
import json
import logging
from typing import AsyncIterable, AsyncIterator, Awaitable, Callable, Literal

from zai_bridge.cdp import CDPConnection
from zai_bridge.exceptions import DecodeError
from zai_bridge.interceptor import ResponseInterceptor
from zai_bridge.tool_calls import extract
from zai_bridge.views import Done, StreamChunk, TextDelta

logger = logging.getLogger(__name__)

SENTINEL = "[DONE]"
COMPLETION_EVENT = "chat:completion"
THINKING_PHASE = "thinking"


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Re-split arbitrary byte chunks into text lines (UTF-8 safe across boundaries)."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    async for chunk in chunks:
        pending += decoder.decode(chunk)
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line
    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending


class StreamTranslator:
    """Turns record lines into TextDelta chunks and keeps the full answer text."""

    def __init__(self):
        self.text = ""
        self.reasoning = ""

    def decode_line(self, line: str) -> TextDelta | None:
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        payload = line[5:].lstrip() if line.startswith("data:") else line
        if payload == SENTINEL:
            return None

        try:
            record = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DecodeError(f"not JSON: {payload[:80]!r}") from e

        if not isinstance(record, dict) or record.get("type") != COMPLETION_EVENT:
            return None
        data = record.get("data")
        if not isinstance(data, dict):
            return None
        if data.get("error"):
            logger.warning(f"Site reported an error in the stream: {data['error']}")
            return None
        if "delta_content" not in data:
            return None

        content = data.get("delta_content") or ""
        if not isinstance(content, str):
            raise DecodeError(f"delta_content is {type(content).__name__}, expected str")
        if not content:
            return None

        if data.get("phase") == THINKING_PHASE:
            self.reasoning += content
            return TextDelta(content, reasoning=True)
        self.text += content
        return TextDelta(content)

    def feed(self, line: str) -> TextDelta | None:
        try:
            return self.decode_line(line)
        except DecodeError as e:
            logger.debug(f"Skipping undecodable line: {e}")
            return None

    async def translate(self, lines: AsyncIterable[str]) -> AsyncIterator[StreamChunk]:
        async for line in lines:
            delta = self.feed(line)
            if delta is not None:
                yield delta

        call = extract(self.text)
        if call is not None:
            yield call
        yield Done()


async def stream(
    connection: CDPConnection,
    submit: Callable[[], Awaitable[None]],
    url_pattern: str,
    timeout: float,
    mode: Literal["incremental", "buffered"] = "incremental",
) -> AsyncIterator[StreamChunk]:
    """Arm interception, fire ``submit``, then yield the reply as chunks.

    One-shot: the request is submitted when iteration starts.
    """
    async with ResponseInterceptor(connection, url_pattern, timeout, mode) as interceptor:
        await submit()
        logger.info("Prompt submitted, waiting for the reply")
        translator = StreamTranslator()
        async for chunk in translator.translate(iter_lines(interceptor.iter_body())):
            yield chunk
        logger.info(f"Reply complete ({len(translator.text)} chars)")

"""Pulling a structured tool call back out of free reply text.

Grammar::

    block   := OPEN body CLOSE
    OPEN    := "```" [spaces] "tool_call" [spaces] newline
    body    := JSON object {"name": <string>, "arguments": <object | JSON string>}
    CLOSE   := "```"

Blocks are tried in order and the first one whose body is a valid call wins.
Malformed blocks are logged and skipped; if none is valid the reply stays a
plain-text answer.
"""

import json
import logging
import re
from typing import Iterator

from zai_bridge.exceptions import ToolParseError
from zai_bridge.prompt import TOOL_FENCE
from zai_bridge.views import ToolCallDelta

logger = logging.getLogger(__name__)

_OPEN_RE = re.compile(r"```[ \t]*" + re.escape(TOOL_FENCE) + r"[ \t]*\r?\n")
_CLOSE = "```"
_CLOSE_RE = re.compile(r"\s*```")
_WHITESPACE_RE = re.compile(r"\s*")
_DECODER = json.JSONDecoder()


def _json_end(text: str, start: int) -> int | None:
    """End offset of the JSON value starting at ``start``, or None if there is none."""
    try:
        _, end = _DECODER.raw_decode(text, _WHITESPACE_RE.match(text, start).end())
    except json.JSONDecodeError:
        return None
    return end


def iter_blocks(text: str) -> Iterator[str]:
    """Yield the raw body of every complete fenced tool-call block.

    A body that parses as JSON ends where the JSON ends, so fences inside its
    strings do not close the block. Anything else runs to the next fence.
    """
    pos = 0
    while True:
        opening = _OPEN_RE.search(text, pos)
        if opening is None:
            return
        start = opening.end()

        body_end = _json_end(text, start)
        closing = _CLOSE_RE.match(text, body_end) if body_end is not None else None
        if closing is not None:
            yield text[start:body_end]
            pos = closing.end()
            continue

        end = text.find(_CLOSE, start)
        if end == -1:
            return
        yield text[start:end]
        pos = end + len(_CLOSE)


def parse_block(body: str) -> ToolCallDelta:
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise ToolParseError(f"tool_call body is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ToolParseError("tool_call body must be a JSON object")

    name = data.get("name")
    if not isinstance(name, str) or not name:
        raise ToolParseError("tool_call is missing a name")

    arguments = data.get("arguments", {})
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolParseError(f"tool_call arguments string is not JSON: {e}") from e
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ToolParseError("tool_call arguments must be an object")

    return ToolCallDelta(name=name, arguments_json=json.dumps(arguments, separators=(",", ":"), ensure_ascii=False))


def extract(text: str) -> ToolCallDelta | None:
    """First well-formed tool call in ``text``, or None."""
    for body in iter_blocks(text):
        try:
            call = parse_block(body)
        except ToolParseError as e:
            logger.warning(f"Ignoring malformed tool_call block: {e}")
            continue
        logger.info(f"Tool call detected: {call.name}")
        return call
    return None

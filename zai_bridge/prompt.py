"""Flattening a chat-completion request into the single text the web UI accepts.

The site has one text box and no notion of roles or tools, so the whole
conversation is replayed as labeled blocks. When tools are offered, a
preamble teaches the model the fenced ``tool_call`` convention that
:mod:`zai_bridge.tool_calls` later parses back out.
"""

import json

from zai_bridge.views import ChatRequest, Message

TOOL_FENCE = "tool_call"
BLOCK_SEPARATOR = "\n\n---\n\n"
IMAGE_PLACEHOLDER = "[image]"

TOOLS_PREAMBLE = """<system_tools>
You are an agent with access to local tools. To use a tool, reply with EXACTLY one block in this format and nothing else:
```{fence}
{{"name": "function_name", "arguments": {{"param": "value"}}}}
```
The block must contain a single JSON object with "name" and "arguments".
Available tools:
{tools}
</system_tools>"""


def render_tools_preamble(request: ChatRequest) -> str:
    specs = [tool.model_dump() for tool in request.tools]
    return TOOLS_PREAMBLE.format(fence=TOOL_FENCE, tools=json.dumps(specs, indent=2, ensure_ascii=False))


def render_content(message: Message) -> str:
    content = message.content
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts = []
    for part in content:
        if part.type == "text":
            parts.append(part.text or "")
        else:
            parts.append(IMAGE_PLACEHOLDER)
    return "\n".join(parts)


def render_tool_calls(message: Message) -> str:
    blocks = []
    for call in message.tool_calls or []:
        try:
            arguments = json.loads(call.function.arguments or "{}")
        except json.JSONDecodeError:
            arguments = call.function.arguments
        body = json.dumps({"name": call.function.name, "arguments": arguments}, ensure_ascii=False)
        blocks.append(f"```{TOOL_FENCE}\n{body}\n```")
    return "\n".join(blocks)


def render_message(message: Message) -> str:
    if message.role == "tool":
        label = f"TOOL {message.tool_call_id}" if message.tool_call_id else "TOOL"
    else:
        label = message.role.upper()

    body = render_content(message)
    if message.tool_calls:
        calls = render_tool_calls(message)
        body = f"{body}\n{calls}" if body else calls
    return f"[{label}]:\n{body}"


def compose(request: ChatRequest) -> str:
    """Build the prompt: optional tools preamble, then every message oldest first."""
    transcript = BLOCK_SEPARATOR.join(render_message(m) for m in request.messages)
    if not request.tools:
        return transcript
    return f"{render_tools_preamble(request)}\n\n{transcript}".strip()

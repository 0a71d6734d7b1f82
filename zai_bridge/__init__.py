"""Streaming chat-completion bridge over a logged-in chat.z.ai browser tab."""

from zai_bridge.auth import AuthCapture
from zai_bridge.bridge import ChatBridge
from zai_bridge.config import BridgeSettings
from zai_bridge.exceptions import (
    BridgeError,
    BrowserDisconnected,
    BrowserUnavailable,
    DecodeError,
    InputTimeout,
    LoginCancelled,
    LoginTimeout,
    NavigationTimeout,
    ResponseFailed,
    ResponseTimeout,
    ToolParseError,
)
from zai_bridge.prompt import compose
from zai_bridge.session import BrowserSessionManager
from zai_bridge.stream import StreamTranslator, stream
from zai_bridge.tool_calls import extract
from zai_bridge.views import AuthCredential, ChatRequest, Done, Message, TextDelta, ToolCallDelta, ToolSpec

__all__ = [
    "AuthCapture",
    "AuthCredential",
    "BridgeError",
    "BridgeSettings",
    "BrowserSessionManager",
    "BrowserDisconnected",
    "BrowserUnavailable",
    "ChatBridge",
    "ChatRequest",
    "DecodeError",
    "Done",
    "InputTimeout",
    "LoginCancelled",
    "LoginTimeout",
    "Message",
    "NavigationTimeout",
    "ResponseFailed",
    "ResponseTimeout",
    "StreamTranslator",
    "TextDelta",
    "ToolCallDelta",
    "ToolParseError",
    "ToolSpec",
    "compose",
    "extract",
    "stream",
]

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator

DEFAULT_TEMPERATURE = 1.0
DEFAULT_TOP_P = 1.0
DEFAULT_MAX_TOKENS = 131072


# ── Inbound request ──────────────────────────────────────────────────────────


class ContentPart(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "text"
    text: str | None = None
    image_url: Any = None


class ToolCallFunction(BaseModel):
    name: str
    arguments: str = "{}"


class ToolCallRef(BaseModel):
    """A tool call previously made by the assistant, as echoed back in history."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    type: str = "function"
    function: ToolCallFunction


class Message(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[ContentPart] | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCallRef] | None = None


class ToolSpec(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _unwrap_function(cls, data: Any) -> Any:
        # OpenAI shape: {"type": "function", "function": {...}}
        if isinstance(data, dict) and isinstance(data.get("function"), dict):
            return data["function"]
        return data


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    messages: list[Message] = Field(default_factory=list)
    tools: list[ToolSpec] = Field(default_factory=list)
    temperature: float = DEFAULT_TEMPERATURE
    top_p: float = Field(default=DEFAULT_TOP_P, validation_alias=AliasChoices("top_p", "topP"))
    max_tokens: int = Field(default=DEFAULT_MAX_TOKENS, validation_alias=AliasChoices("max_tokens", "maxTokens"))
    model: str | None = None
    stream: bool = True


# ── Stream chunks ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TextDelta:
    text: str
    reasoning: bool = False


@dataclass(frozen=True)
class ToolCallDelta:
    name: str
    arguments_json: str
    call_id: str = field(default_factory=lambda: f"call_{uuid4().hex[:24]}")


@dataclass(frozen=True)
class Done:
    pass


StreamChunk = TextDelta | ToolCallDelta | Done


# ── Session / auth ───────────────────────────────────────────────────────────


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class AuthCredential:
    cookie_string: str
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_auth_record(self) -> dict[str, str]:
        """Shape consumed by the host's credential store."""
        return {"type": "api", "key": self.cookie_string}

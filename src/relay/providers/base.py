from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["system", "user", "assistant", "tool"]
StopReason = Literal["end_turn", "tool_use", "max_tokens", "other"]
StreamEventKind = Literal["text_delta", "tool_call", "response_complete"]
ProviderErrorKind = Literal[
    "authentication",
    "rate_limited",
    "invalid_request",
    "timeout",
    "transport",
    "unavailable",
    "other",
]

_RETRYABLE_KINDS = {"rate_limited", "timeout", "transport", "unavailable"}


class ProviderError(RuntimeError):
    """Raised when a model provider call fails."""

    def __init__(
        self,
        message: str,
        *,
        kind: ProviderErrorKind = "other",
        provider: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.provider = provider
        self.retryable = kind in _RETRYABLE_KINDS if retryable is None else retryable


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ToolCall:
        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "")),
            arguments=str(payload.get("arguments") or "{}"),
        )


@dataclass(slots=True)
class Message:
    role: Role
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ToolCall] | None = None) -> Message:
        return cls(role="assistant", content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        raw_calls = payload.get("tool_calls") or []
        return cls(
            role=payload.get("role", "user"),
            content=str(payload.get("content") or ""),
            tool_calls=[ToolCall.from_dict(item) for item in raw_calls if isinstance(item, dict)],
            tool_call_id=payload.get("tool_call_id"),
        )


@dataclass(slots=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(slots=True)
class ModelRequest:
    model: str
    messages: list[Message]
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[ToolDefinition] = field(default_factory=list)
    stream: bool = False

    def validate(self) -> None:
        if not self.model.strip():
            raise ProviderError("model must not be empty", kind="invalid_request")
        if not self.messages:
            raise ProviderError("at least one message is required", kind="invalid_request")
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise ProviderError(
                "temperature must be between 0.0 and 2.0", kind="invalid_request"
            )
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ProviderError("max_tokens must be positive", kind="invalid_request")


@dataclass(slots=True)
class ModelResponse:
    model: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: StopReason = "end_turn"
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(slots=True)
class StreamEvent:
    kind: StreamEventKind
    text: str = ""
    tool_call: ToolCall | None = None
    response: ModelResponse | None = None


class ModelProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def complete(self, request: ModelRequest) -> ModelResponse:
        """Run one non-streaming model call."""

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream one model call; the final event is ``response_complete``."""

from __future__ import annotations

from typing import Literal

from relay.providers.base import ProviderError
from relay.tools.base import ToolError

ChatErrorKind = Literal["invalid_request", "provider", "store", "tooling"]
ChatErrorPhase = Literal["request_validation", "provider", "tool_execution", "storage", "streaming"]


class ChatError(RuntimeError):
    """Raised when a conversational turn cannot be completed."""

    def __init__(
        self,
        message: str,
        *,
        kind: ChatErrorKind,
        phase: ChatErrorPhase,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.phase = phase
        self.retryable = retryable

    @classmethod
    def invalid_request(cls, message: str) -> ChatError:
        return cls(message, kind="invalid_request", phase="request_validation")

    @classmethod
    def store(cls, message: str, *, retryable: bool = False) -> ChatError:
        return cls(message, kind="store", phase="storage", retryable=retryable)

    @classmethod
    def from_provider(cls, exc: ProviderError, *, streaming: bool = False) -> ChatError:
        return cls(
            str(exc),
            kind="provider",
            phase="streaming" if streaming else "provider",
            retryable=exc.retryable,
        )

    @classmethod
    def from_tool(cls, exc: ToolError) -> ChatError:
        name = exc.tool_name or "unknown"
        return cls(
            f"tool '{name}' failed ({exc.kind}): {exc}",
            kind="tooling",
            phase="tool_execution",
            retryable=exc.retryable,
        )

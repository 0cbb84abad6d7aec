from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from relay.providers.base import StopReason, TokenUsage, ToolCall
from relay.tools.base import ToolExecutionResult

ChatEventKind = Literal[
    "text_delta",
    "tool_call",
    "tool_started",
    "tool_finished",
    "assistant_message",
    "tool_round_limit",
    "turn_complete",
]


@dataclass(slots=True)
class ChatSession:
    id: str
    model: str
    system_prompt: str | None = None


@dataclass(slots=True)
class ChatPolicy:
    max_tool_round_trips: int = 4
    default_temperature: float | None = None
    default_max_tokens: int | None = None


@dataclass(slots=True)
class ChatTurnRequest:
    session: ChatSession
    user_input: str
    temperature: float | None = None
    max_tokens: int | None = None
    stream: bool = False


@dataclass(slots=True)
class ChatTurnResult:
    session_id: str
    assistant_message: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: StopReason = "end_turn"
    usage: TokenUsage = field(default_factory=TokenUsage)
    tool_round_limit_reached: bool = False


@dataclass(slots=True)
class ChatEvent:
    kind: ChatEventKind
    text: str = ""
    tool_call: ToolCall | None = None
    tool_result: ToolExecutionResult | None = None
    result: ChatTurnResult | None = None

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from relay.providers.base import ToolDefinition

ToolErrorKind = Literal[
    "not_found",
    "invalid_arguments",
    "execution",
    "timeout",
    "unauthorized",
    "other",
]


class ToolError(RuntimeError):
    """Raised when a tool call cannot be resolved or fails while running."""

    def __init__(
        self,
        message: str,
        *,
        kind: ToolErrorKind = "other",
        retryable: bool = False,
        tool_name: str | None = None,
        tool_call_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = retryable
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id

    def with_call(self, tool_name: str, tool_call_id: str) -> ToolError:
        if self.tool_name is None:
            self.tool_name = tool_name
        if self.tool_call_id is None:
            self.tool_call_id = tool_call_id
        return self


@dataclass(slots=True)
class ToolExecutionContext:
    session_id: str
    trace_id: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ToolExecutionResult:
    tool_call_id: str
    output: str


def parse_json_object(args_json: str) -> dict[str, Any]:
    text = args_json.strip() or "{}"
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ToolError(
            f"tool arguments are not valid JSON: {exc}", kind="invalid_arguments"
        ) from exc
    if not isinstance(value, dict):
        raise ToolError("tool arguments must be a JSON object", kind="invalid_arguments")
    return value


def required_string(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolError(
            f"missing required string argument '{key}'", kind="invalid_arguments"
        )
    return value


class Tool(ABC):
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Describe the tool to the model."""

    @abstractmethod
    async def invoke(self, args_json: str, context: ToolExecutionContext) -> str:
        """Run the tool with raw JSON arguments and return its textual output."""


ToolFunction = Callable[..., Any | Awaitable[Any]]


class FunctionTool(Tool):
    """Adapts a plain callable taking ``(args, context)`` into a ``Tool``."""

    def __init__(
        self,
        name: str,
        description: str,
        func: ToolFunction,
        *,
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        if not name.strip():
            raise ValueError("tool name must not be empty")
        self._definition = ToolDefinition(
            name=name,
            description=description,
            input_schema=input_schema or {"type": "object", "properties": {}},
        )
        self._func = func

    def definition(self) -> ToolDefinition:
        return self._definition

    async def invoke(self, args_json: str, context: ToolExecutionContext) -> str:
        args = parse_json_object(args_json)
        value = self._func(args, context)
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)

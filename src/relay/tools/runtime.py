from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod

import structlog

from relay.providers.base import ToolCall, ToolDefinition
from relay.tools.base import ToolError, ToolExecutionContext, ToolExecutionResult
from relay.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)


class ToolRuntimeHooks:
    """Observer for tool executions. Methods default to no-ops."""

    def on_execution_start(self, tool_call: ToolCall, context: ToolExecutionContext) -> None:
        pass

    def on_execution_success(
        self,
        tool_call: ToolCall,
        context: ToolExecutionContext,
        result: ToolExecutionResult,
        elapsed: float,
    ) -> None:
        pass

    def on_execution_failure(
        self,
        tool_call: ToolCall,
        context: ToolExecutionContext,
        error: ToolError,
        elapsed: float,
    ) -> None:
        pass


class LoggingToolHooks(ToolRuntimeHooks):
    def on_execution_start(self, tool_call: ToolCall, context: ToolExecutionContext) -> None:
        logger.debug(
            "tool.execution_started",
            tool=tool_call.name,
            tool_call_id=tool_call.id,
            session_id=context.session_id,
        )

    def on_execution_success(
        self,
        tool_call: ToolCall,
        context: ToolExecutionContext,
        result: ToolExecutionResult,
        elapsed: float,
    ) -> None:
        logger.info(
            "tool.execution_succeeded",
            tool=tool_call.name,
            tool_call_id=tool_call.id,
            session_id=context.session_id,
            output_chars=len(result.output),
            elapsed_ms=round(elapsed * 1000),
        )

    def on_execution_failure(
        self,
        tool_call: ToolCall,
        context: ToolExecutionContext,
        error: ToolError,
        elapsed: float,
    ) -> None:
        logger.warning(
            "tool.execution_failed",
            tool=tool_call.name,
            tool_call_id=tool_call.id,
            session_id=context.session_id,
            kind=error.kind,
            retryable=error.retryable,
            error=str(error),
            elapsed_ms=round(elapsed * 1000),
        )


class ToolRuntime(ABC):
    @abstractmethod
    async def execute(
        self, tool_call: ToolCall, context: ToolExecutionContext
    ) -> ToolExecutionResult:
        """Resolve and run one tool call."""

    def definitions(self) -> list[ToolDefinition]:
        return []


class DefaultToolRuntime(ToolRuntime):
    """Runs registered tools with an optional per-call timeout."""

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        hooks: ToolRuntimeHooks | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.registry = registry
        self.hooks = hooks or ToolRuntimeHooks()
        self.timeout_seconds = timeout_seconds

    def definitions(self) -> list[ToolDefinition]:
        return self.registry.definitions()

    async def _invoke(self, tool_call: ToolCall, context: ToolExecutionContext) -> str:
        tool = self.registry.get(tool_call.name)
        if tool is None:
            raise ToolError(f"tool '{tool_call.name}' is not registered", kind="not_found")
        if self.timeout_seconds is None:
            return await tool.invoke(tool_call.arguments, context)
        try:
            return await asyncio.wait_for(
                tool.invoke(tool_call.arguments, context),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            raise ToolError(
                f"tool '{tool_call.name}' timed out after {self.timeout_seconds:.1f}s",
                kind="timeout",
                retryable=True,
            ) from exc

    async def execute(
        self, tool_call: ToolCall, context: ToolExecutionContext
    ) -> ToolExecutionResult:
        self.hooks.on_execution_start(tool_call, context)
        started = time.monotonic()
        try:
            output = await self._invoke(tool_call, context)
        except ToolError as exc:
            exc.with_call(tool_call.name, tool_call.id)
            self.hooks.on_execution_failure(tool_call, context, exc, time.monotonic() - started)
            raise
        except Exception as exc:
            error = ToolError(
                f"tool '{tool_call.name}' failed: {exc}",
                kind="execution",
                tool_name=tool_call.name,
                tool_call_id=tool_call.id,
            )
            self.hooks.on_execution_failure(tool_call, context, error, time.monotonic() - started)
            raise error from exc

        result = ToolExecutionResult(tool_call_id=tool_call.id, output=output)
        self.hooks.on_execution_success(tool_call, context, result, time.monotonic() - started)
        return result

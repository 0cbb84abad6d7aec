from relay.tools.base import (
    FunctionTool,
    Tool,
    ToolError,
    ToolExecutionContext,
    ToolExecutionResult,
    parse_json_object,
    required_string,
)
from relay.tools.registry import ToolRegistry
from relay.tools.runtime import (
    DefaultToolRuntime,
    LoggingToolHooks,
    ToolRuntime,
    ToolRuntimeHooks,
)

__all__ = [
    "DefaultToolRuntime",
    "FunctionTool",
    "LoggingToolHooks",
    "Tool",
    "ToolError",
    "ToolExecutionContext",
    "ToolExecutionResult",
    "ToolRegistry",
    "ToolRuntime",
    "ToolRuntimeHooks",
    "parse_json_object",
    "required_string",
]

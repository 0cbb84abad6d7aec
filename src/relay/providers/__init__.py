from relay.providers.base import (
    Message,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderError,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from relay.providers.openai import OpenAIProvider

__all__ = [
    "Message",
    "ModelProvider",
    "ModelRequest",
    "ModelResponse",
    "OpenAIProvider",
    "ProviderError",
    "StreamEvent",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
]

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from typing import Any

import openai
import structlog
from openai import AsyncOpenAI

from relay.providers.base import (
    Message,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderError,
    StopReason,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)

logger = structlog.get_logger(__name__)

_FINISH_REASONS: dict[str, StopReason] = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "length": "max_tokens",
}


def map_openai_error(exc: Exception) -> ProviderError:
    # APITimeoutError subclasses APIConnectionError, so it is checked first.
    if isinstance(exc, openai.APITimeoutError):
        kind = "timeout"
    elif isinstance(exc, openai.APIConnectionError):
        kind = "transport"
    elif isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        kind = "authentication"
    elif isinstance(exc, openai.RateLimitError):
        kind = "rate_limited"
    elif isinstance(
        exc,
        (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError),
    ):
        kind = "invalid_request"
    elif isinstance(exc, openai.InternalServerError):
        kind = "unavailable"
    else:
        kind = "other"
    return ProviderError(f"OpenAI request failed: {exc}", kind=kind, provider="openai")


class OpenAIProvider(ModelProvider):
    """Chat Completions adapter over the official ``openai`` async client."""

    name = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        base_url: str | None = None,
        timeout_seconds: float = 90.0,
        client: Any | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_key_env = api_key_env
        self.base_url = base_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = AsyncOpenAI(
                    api_key=self.api_key or os.environ.get(self.api_key_env),
                    base_url=self.base_url or None,
                    timeout=self.timeout_seconds,
                    max_retries=0,
                )
            except openai.OpenAIError as exc:
                raise ProviderError(
                    f"OpenAI client could not be created: {exc}",
                    kind="authentication",
                    provider=self.name,
                ) from exc
        return self._client

    @staticmethod
    def _message_payload(message: Message) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == "assistant" and message.tool_calls:
            payload["content"] = message.content or None
            payload["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        if message.role == "tool":
            payload["tool_call_id"] = message.tool_call_id
        return payload

    @staticmethod
    def _tool_payload(tool: ToolDefinition) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.input_schema,
            },
        }

    def _build_kwargs(self, request: ModelRequest) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "messages": [self._message_payload(message) for message in request.messages],
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature
        if request.max_tokens is not None:
            kwargs["max_tokens"] = request.max_tokens
        if request.tools:
            kwargs["tools"] = [self._tool_payload(tool) for tool in request.tools]
        return kwargs

    @staticmethod
    def _usage(payload: Any) -> TokenUsage:
        usage = getattr(payload, "usage", None)
        if usage is None:
            return TokenUsage()
        return TokenUsage(
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )

    async def complete(self, request: ModelRequest) -> ModelResponse:
        request.validate()
        try:
            payload = await self.client.chat.completions.create(**self._build_kwargs(request))
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        if not payload.choices:
            raise ProviderError(
                "OpenAI response contained no choices", kind="other", provider=self.name
            )
        choice = payload.choices[0]
        tool_calls = [
            ToolCall(
                id=call.id,
                name=call.function.name,
                arguments=call.function.arguments or "{}",
            )
            for call in (choice.message.tool_calls or [])
        ]
        return ModelResponse(
            model=getattr(payload, "model", None) or request.model,
            content=choice.message.content or "",
            tool_calls=tool_calls,
            stop_reason=_FINISH_REASONS.get(choice.finish_reason or "", "other"),
            usage=self._usage(payload),
        )

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        request.validate()
        kwargs = self._build_kwargs(request)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        text_parts: list[str] = []
        pending_calls: dict[int, dict[str, str]] = {}
        finish_reason = ""
        usage = TokenUsage()
        model_name = request.model
        try:
            chunks = await self.client.chat.completions.create(**kwargs)
            async for chunk in chunks:
                model_name = getattr(chunk, "model", None) or model_name
                if getattr(chunk, "usage", None) is not None:
                    usage = self._usage(chunk)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta.content:
                    text_parts.append(delta.content)
                    yield StreamEvent(kind="text_delta", text=delta.content)
                for call_delta in delta.tool_calls or []:
                    slot = pending_calls.setdefault(
                        call_delta.index, {"id": "", "name": "", "arguments": ""}
                    )
                    if call_delta.id:
                        slot["id"] = call_delta.id
                    function = call_delta.function
                    if function is not None:
                        slot["name"] += function.name or ""
                        slot["arguments"] += function.arguments or ""
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except openai.OpenAIError as exc:
            raise map_openai_error(exc) from exc

        tool_calls = [
            ToolCall(id=slot["id"], name=slot["name"], arguments=slot["arguments"] or "{}")
            for _, slot in sorted(pending_calls.items())
        ]
        for call in tool_calls:
            yield StreamEvent(kind="tool_call", tool_call=call)

        logger.debug("provider.stream_complete", provider=self.name, model=model_name)
        yield StreamEvent(
            kind="response_complete",
            response=ModelResponse(
                model=model_name,
                content="".join(text_parts),
                tool_calls=tool_calls,
                stop_reason=_FINISH_REASONS.get(finish_reason, "other"),
                usage=usage,
            ),
        )

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

import structlog

from relay.chat.errors import ChatError
from relay.chat.store import ConversationStore, InMemoryConversationStore
from relay.chat.types import ChatEvent, ChatPolicy, ChatTurnRequest, ChatTurnResult
from relay.providers.base import (
    Message,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    ProviderError,
    TokenUsage,
    ToolCall,
)
from relay.tools.base import ToolError, ToolExecutionContext
from relay.tools.runtime import ToolRuntime

logger = structlog.get_logger(__name__)


class TurnExecutor(Protocol):
    async def run_turn(self, request: ChatTurnRequest) -> ChatTurnResult: ...

    def stream_turn(self, request: ChatTurnRequest) -> AsyncIterator[ChatEvent]: ...


class ChatService:
    """Runs one conversational turn: history, provider calls, tool rounds, persistence."""

    def __init__(
        self,
        provider: ModelProvider,
        *,
        store: ConversationStore | None = None,
        tool_runtime: ToolRuntime | None = None,
        policy: ChatPolicy | None = None,
    ) -> None:
        self.provider = provider
        self.store = store or InMemoryConversationStore()
        self.tool_runtime = tool_runtime
        self.policy = policy or ChatPolicy()
        if self.policy.max_tool_round_trips < 0:
            raise ValueError("max_tool_round_trips must be >= 0")

    async def run_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        if request.stream:
            raise ChatError.invalid_request("streaming requests must use stream_turn")
        result: ChatTurnResult | None = None
        async for event in self._drive(request, streaming=False):
            if event.kind == "turn_complete":
                result = event.result
        if result is None:
            raise ChatError(
                "turn ended without a result", kind="provider", phase="provider"
            )
        return result

    async def stream_turn(self, request: ChatTurnRequest) -> AsyncIterator[ChatEvent]:
        async for event in self._drive(request, streaming=True):
            yield event

    async def _load_history(self, request: ChatTurnRequest) -> list[Message]:
        if not request.user_input.strip():
            raise ChatError.invalid_request("user input must not be empty")
        if not request.session.id.strip():
            raise ChatError.invalid_request("session id must not be empty")
        history = await self.store.load_messages(request.session.id)
        messages: list[Message] = []
        if request.session.system_prompt:
            messages.append(Message.system(request.session.system_prompt))
        messages.extend(message for message in history if message.role != "system")
        return messages

    def _model_request(
        self, request: ChatTurnRequest, messages: list[Message], *, streaming: bool
    ) -> ModelRequest:
        temperature = request.temperature
        if temperature is None:
            temperature = self.policy.default_temperature
        max_tokens = request.max_tokens
        if max_tokens is None:
            max_tokens = self.policy.default_max_tokens
        return ModelRequest(
            model=request.session.model,
            messages=list(messages),
            temperature=temperature,
            max_tokens=max_tokens,
            tools=self.tool_runtime.definitions() if self.tool_runtime else [],
            stream=streaming,
        )

    async def _call_provider(
        self, model_request: ModelRequest, *, streaming: bool
    ) -> AsyncIterator[ChatEvent | ModelResponse]:
        response: ModelResponse | None = None
        try:
            if not streaming:
                response = await self.provider.complete(model_request)
            else:
                async for event in self.provider.stream(model_request):
                    if event.kind == "text_delta":
                        yield ChatEvent(kind="text_delta", text=event.text)
                    elif event.kind == "tool_call":
                        yield ChatEvent(kind="tool_call", tool_call=event.tool_call)
                    elif event.kind == "response_complete":
                        response = event.response
        except ProviderError as exc:
            raise ChatError.from_provider(exc, streaming=streaming) from exc
        if not isinstance(response, ModelResponse):
            if streaming:
                message = "provider stream ended without a completed response"
            else:
                message = "provider returned no response"
            raise ChatError(
                message,
                kind="provider",
                phase="streaming" if streaming else "provider",
            )
        yield response

    async def _drive(
        self, request: ChatTurnRequest, *, streaming: bool
    ) -> AsyncIterator[ChatEvent]:
        session_id = request.session.id
        messages = await self._load_history(request)
        user_message = Message.user(request.user_input)
        messages.append(user_message)
        produced: list[Message] = [user_message]
        requested_calls: list[ToolCall] = []
        usage = TokenUsage()
        rounds = 0
        limit_reached = False
        context = ToolExecutionContext(session_id=session_id)

        while True:
            response: ModelResponse | None = None
            model_request = self._model_request(request, messages, streaming=streaming)
            async for item in self._call_provider(model_request, streaming=streaming):
                if isinstance(item, ModelResponse):
                    response = item
                else:
                    yield item
            if response is None:
                raise ChatError("provider returned no response", kind="provider", phase="provider")
            usage = usage.add(response.usage)
            requested_calls.extend(response.tool_calls)

            if not response.tool_calls or self.tool_runtime is None:
                produced.append(Message.assistant(response.content))
                break
            if rounds >= self.policy.max_tool_round_trips:
                limit_reached = True
                produced.append(Message.assistant(response.content))
                yield ChatEvent(kind="tool_round_limit", text=response.content)
                logger.warning(
                    "chat.tool_round_limit_reached",
                    session_id=session_id,
                    rounds=rounds,
                )
                break

            rounds += 1
            assistant = Message.assistant(response.content, response.tool_calls)
            messages.append(assistant)
            produced.append(assistant)
            for call in response.tool_calls:
                yield ChatEvent(kind="tool_started", tool_call=call)
                try:
                    result = await self.tool_runtime.execute(call, context)
                except ToolError as exc:
                    raise ChatError.from_tool(exc) from exc
                yield ChatEvent(kind="tool_finished", tool_call=call, tool_result=result)
                tool_message = Message.tool(call.id, result.output)
                messages.append(tool_message)
                produced.append(tool_message)

        final_text = produced[-1].content
        yield ChatEvent(kind="assistant_message", text=final_text)
        await self.store.append_messages(session_id, produced)
        logger.debug(
            "chat.turn_complete",
            session_id=session_id,
            tool_rounds=rounds,
            output_tokens=usage.output_tokens,
        )
        yield ChatEvent(
            kind="turn_complete",
            result=ChatTurnResult(
                session_id=session_id,
                assistant_message=final_text,
                tool_calls=requested_calls,
                stop_reason=response.stop_reason,
                usage=usage,
                tool_round_limit_reached=limit_reached,
            ),
        )

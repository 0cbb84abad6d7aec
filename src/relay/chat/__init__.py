from relay.chat.errors import ChatError
from relay.chat.service import ChatService, TurnExecutor
from relay.chat.store import ConversationStore, InMemoryConversationStore
from relay.chat.types import (
    ChatEvent,
    ChatPolicy,
    ChatSession,
    ChatTurnRequest,
    ChatTurnResult,
)

__all__ = [
    "ChatError",
    "ChatEvent",
    "ChatPolicy",
    "ChatService",
    "ChatSession",
    "ChatTurnRequest",
    "ChatTurnResult",
    "ConversationStore",
    "InMemoryConversationStore",
    "TurnExecutor",
]

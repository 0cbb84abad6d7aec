from __future__ import annotations

import copy
from abc import ABC, abstractmethod

from relay.providers.base import Message


class ConversationStore(ABC):
    @abstractmethod
    async def load_messages(self, session_id: str) -> list[Message]:
        """Return prior messages for ``session_id`` in order."""

    @abstractmethod
    async def append_messages(self, session_id: str, messages: list[Message]) -> None:
        """Persist messages produced by one turn."""


class InMemoryConversationStore(ConversationStore):
    def __init__(self) -> None:
        self._messages: dict[str, list[Message]] = {}

    async def load_messages(self, session_id: str) -> list[Message]:
        return copy.deepcopy(self._messages.get(session_id, []))

    async def append_messages(self, session_id: str, messages: list[Message]) -> None:
        self._messages.setdefault(session_id, []).extend(copy.deepcopy(messages))

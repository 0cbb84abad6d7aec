from __future__ import annotations

from relay.chat.errors import ChatError
from relay.chat.store import ConversationStore
from relay.memory.base import MemoryBackend, MemoryStoreError
from relay.providers.base import Message


class MemoryConversationStore(ConversationStore):
    """Keeps chat transcripts in the same backend as the session they belong to."""

    def __init__(self, backend: MemoryBackend) -> None:
        self.backend = backend

    async def load_messages(self, session_id: str) -> list[Message]:
        try:
            return await self.backend.load_transcript(session_id)
        except MemoryStoreError as exc:
            raise ChatError.store(f"failed to load transcript: {exc}") from exc

    async def append_messages(self, session_id: str, messages: list[Message]) -> None:
        try:
            await self.backend.append_transcript(session_id, messages)
        except MemoryStoreError as exc:
            raise ChatError.store(
                f"failed to append transcript: {exc}", retryable=exc.kind == "storage"
            ) from exc

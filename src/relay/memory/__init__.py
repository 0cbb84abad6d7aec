from relay.memory.base import InMemoryMemoryBackend, MemoryBackend, MemoryStoreError
from relay.memory.conversation import MemoryConversationStore
from relay.memory.factory import create_memory_backend
from relay.memory.filesystem import FilesystemMemoryBackend
from relay.memory.sqlite import SqliteMemoryBackend
from relay.memory.types import (
    BootstrapState,
    FeatureRecord,
    InitPlan,
    InitStep,
    ProgressEntry,
    RunCheckpoint,
    SessionManifest,
)

__all__ = [
    "BootstrapState",
    "FeatureRecord",
    "FilesystemMemoryBackend",
    "InMemoryMemoryBackend",
    "InitPlan",
    "InitStep",
    "MemoryBackend",
    "MemoryConversationStore",
    "MemoryStoreError",
    "ProgressEntry",
    "RunCheckpoint",
    "SessionManifest",
    "SqliteMemoryBackend",
    "create_memory_backend",
]

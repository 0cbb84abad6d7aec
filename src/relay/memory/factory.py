from __future__ import annotations

from pathlib import Path

from relay.config import MemoryConfig
from relay.memory.base import InMemoryMemoryBackend, MemoryBackend, MemoryStoreError
from relay.memory.filesystem import FilesystemMemoryBackend
from relay.memory.sqlite import SqliteMemoryBackend


def create_memory_backend(config: MemoryConfig, *, base_dir: Path | None = None) -> MemoryBackend:
    """Build the backend named by ``config``; relative paths resolve against ``base_dir``."""
    if config.backend == "memory":
        return InMemoryMemoryBackend()

    path = Path(config.path)
    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    if config.backend == "filesystem":
        return FilesystemMemoryBackend(path)
    if config.backend == "sqlite":
        if path.suffix != ".db":
            path = path / "relay.db"
        return SqliteMemoryBackend(path)
    raise MemoryStoreError(
        f"Unsupported memory backend: {config.backend}", kind="invalid_request"
    )

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

import structlog

from relay.memory.base import MemoryBackend, MemoryStoreError, SessionRecord
from relay.memory.types import (
    SCHEMA_VERSION,
    BootstrapState,
    FeatureRecord,
    ProgressEntry,
    RunCheckpoint,
    SessionManifest,
    utcnow_iso,
)
from relay.providers.base import Message

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class FilesystemMemoryBackend(MemoryBackend):
    """One JSON document per session, written atomically under an exclusive lock file."""

    def __init__(self, root: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.root = root.resolve()
        self.sessions_dir = self.root / "sessions"
        self.transcripts_dir = self.root / "transcripts"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.transcripts_dir.mkdir(parents=True, exist_ok=True)
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _file_stem(session_id: str) -> str:
        return session_id.encode("utf-8").hex()

    def _session_file(self, session_id: str) -> Path:
        return self.sessions_dir / f"{self._file_stem(session_id)}.json"

    def _transcript_file(self, session_id: str) -> Path:
        return self.transcripts_dir / f"{self._file_stem(session_id)}.json"

    def _lock_is_stale(self, lock_file: Path) -> bool:
        """A lock is stale once its recorded owner process is gone."""
        try:
            raw = lock_file.read_text(encoding="utf-8").strip()
            age = time.time() - lock_file.stat().st_mtime
        except FileNotFoundError:
            return False
        if not raw.isdigit():
            # Owner may still be between create and write.
            return age > self.lock_timeout_seconds
        try:
            os.kill(int(raw), 0)
        except (ProcessLookupError, OverflowError):
            return True
        except PermissionError:
            pass
        return False

    @contextmanager
    def _lock(self, target: Path) -> Iterator[None]:
        lock_file = target.with_suffix(".lock")
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._lock_is_stale(lock_file):
                    logger.warning("memory.stale_lock_removed", lock_file=str(lock_file))
                    lock_file.unlink(missing_ok=True)
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise MemoryStoreError(
                        f"Timed out waiting for state lock {lock_file.name}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    @staticmethod
    def _read_envelope(path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise MemoryStoreError(f"Unreadable state document {path.name}: {exc}") from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise MemoryStoreError(f"State document {path.name} has no data envelope.")
        return payload

    @staticmethod
    def _write_envelope(path: Path, data: Any, previous: dict[str, Any] | None) -> None:
        revision = int(previous.get("revision", 0)) if previous else 0
        envelope = {
            "schema_version": SCHEMA_VERSION,
            "revision": revision + 1,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=path.parent,
                prefix=f".{path.stem}-",
                suffix=".tmp",
                delete=False,
            ) as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
                temp_path = handle.name
            os.replace(temp_path, path)
        except OSError as exc:
            raise MemoryStoreError(f"Failed to write state document {path.name}: {exc}") from exc

    def _load_record(self, session_id: str) -> SessionRecord | None:
        envelope = self._read_envelope(self._session_file(session_id))
        if envelope is None:
            return None
        try:
            return SessionRecord.from_dict(envelope["data"])
        except (KeyError, TypeError, ValueError) as exc:
            raise MemoryStoreError(
                f"Malformed session document for '{session_id}': {exc}", session_id=session_id
            ) from exc

    def _update_record(self, session_id: str, mutate: Callable[[SessionRecord], T]) -> T:
        path = self._session_file(session_id)
        with self._lock(path):
            previous = self._read_envelope(path)
            if previous is None:
                raise MemoryStoreError(
                    f"session '{session_id}' is not initialized",
                    kind="not_found",
                    session_id=session_id,
                )
            record = SessionRecord.from_dict(previous["data"])
            result = mutate(record)
            self._write_envelope(path, record.to_dict(), previous)
            return result

    def _initialize(
        self,
        session_id: str,
        manifest: SessionManifest,
        features: list[FeatureRecord],
        progress: ProgressEntry | None,
        checkpoint: RunCheckpoint | None,
    ) -> bool:
        path = self._session_file(session_id)
        with self._lock(path):
            if path.exists():
                return False
            record = SessionRecord(
                manifest=manifest,
                features=list(features),
                progress=[progress] if progress else [],
            )
            if checkpoint is not None:
                record.record_checkpoint(checkpoint)
            self._write_envelope(path, record.to_dict(), None)
        logger.info("memory.session_created", session_id=session_id, path=str(path))
        return True

    def _append_transcript(self, session_id: str, messages: list[Message]) -> None:
        path = self._transcript_file(session_id)
        with self._lock(path):
            previous = self._read_envelope(path)
            existing = previous["data"] if previous else []
            existing.extend(message.to_dict() for message in messages)
            self._write_envelope(path, existing, previous)

    def _load_transcript(self, session_id: str) -> list[Message]:
        envelope = self._read_envelope(self._transcript_file(session_id))
        if envelope is None:
            return []
        return [Message.from_dict(item) for item in envelope["data"] if isinstance(item, dict)]

    def _list_sessions(self) -> list[str]:
        session_ids: list[str] = []
        for path in sorted(self.sessions_dir.glob("*.json")):
            try:
                session_ids.append(bytes.fromhex(path.stem).decode("utf-8"))
            except ValueError:
                continue
        return sorted(session_ids)

    async def is_initialized(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._session_file(session_id).exists)

    async def initialize_session_if_missing(
        self,
        session_id: str,
        manifest: SessionManifest,
        features: list[FeatureRecord],
        progress: ProgressEntry | None = None,
        checkpoint: RunCheckpoint | None = None,
    ) -> bool:
        return await asyncio.to_thread(
            self._initialize, session_id, manifest, features, progress, checkpoint
        )

    async def load_bootstrap_state(self, session_id: str) -> BootstrapState:
        record = await asyncio.to_thread(self._load_record, session_id)
        return record.bootstrap() if record else BootstrapState()

    async def append_progress(self, session_id: str, entry: ProgressEntry) -> None:
        await asyncio.to_thread(
            self._update_record, session_id, lambda record: record.progress.append(entry)
        )

    async def record_checkpoint(self, session_id: str, checkpoint: RunCheckpoint) -> None:
        await asyncio.to_thread(
            self._update_record,
            session_id,
            lambda record: record.record_checkpoint(checkpoint),
        )

    async def set_feature_passing(self, session_id: str, feature_id: str) -> None:
        await asyncio.to_thread(
            self._update_record,
            session_id,
            lambda record: record.set_feature_passing(feature_id),
        )

    async def load_transcript(self, session_id: str) -> list[Message]:
        return await asyncio.to_thread(self._load_transcript, session_id)

    async def append_transcript(self, session_id: str, messages: list[Message]) -> None:
        if messages:
            await asyncio.to_thread(self._append_transcript, session_id, messages)

    async def list_sessions(self) -> list[str]:
        return await asyncio.to_thread(self._list_sessions)

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

from relay.memory.types import (
    BootstrapState,
    FeatureRecord,
    ProgressEntry,
    RunCheckpoint,
    SessionManifest,
)
from relay.providers.base import Message

MemoryErrorKind = Literal["storage", "not_found", "invalid_request", "other"]


class MemoryStoreError(RuntimeError):
    """Raised when durable session state cannot be read or written."""

    def __init__(
        self,
        message: str,
        *,
        kind: MemoryErrorKind = "storage",
        session_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.session_id = session_id


def check_checkpoint_transition(
    session_id: str,
    existing: RunCheckpoint | None,
    checkpoint: RunCheckpoint,
) -> None:
    if not checkpoint.run_id.strip():
        raise MemoryStoreError(
            "checkpoint run_id must not be empty", kind="invalid_request", session_id=session_id
        )
    if existing is not None and existing.is_terminal:
        raise MemoryStoreError(
            f"run '{checkpoint.run_id}' already has a terminal checkpoint ({existing.status})",
            kind="invalid_request",
            session_id=session_id,
        )


@dataclass(slots=True)
class SessionRecord:
    """Whole-session document shared by the in-memory and filesystem backends."""

    manifest: SessionManifest
    features: list[FeatureRecord] = field(default_factory=list)
    progress: list[ProgressEntry] = field(default_factory=list)
    checkpoints: dict[str, RunCheckpoint] = field(default_factory=dict)

    def bootstrap(self) -> BootstrapState:
        return BootstrapState(
            manifest=copy.deepcopy(self.manifest),
            features=copy.deepcopy(self.features),
            progress=copy.deepcopy(self.progress),
            checkpoints=copy.deepcopy(self.checkpoints),
        )

    def record_checkpoint(self, checkpoint: RunCheckpoint) -> None:
        check_checkpoint_transition(
            self.manifest.session_id, self.checkpoints.get(checkpoint.run_id), checkpoint
        )
        self.checkpoints[checkpoint.run_id] = copy.deepcopy(checkpoint)

    def set_feature_passing(self, feature_id: str) -> None:
        for feature in self.features:
            if feature.id == feature_id:
                feature.passes = True
                return
        raise MemoryStoreError(
            f"feature '{feature_id}' not found",
            kind="not_found",
            session_id=self.manifest.session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest.to_dict(),
            "features": [feature.to_dict() for feature in self.features],
            "progress": [entry.to_dict() for entry in self.progress],
            "checkpoints": [checkpoint.to_dict() for checkpoint in self.checkpoints.values()],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionRecord:
        checkpoints = [RunCheckpoint.from_dict(item) for item in payload.get("checkpoints", [])]
        return cls(
            manifest=SessionManifest.from_dict(payload["manifest"]),
            features=[FeatureRecord.from_dict(item) for item in payload.get("features", [])],
            progress=[ProgressEntry.from_dict(item) for item in payload.get("progress", [])],
            checkpoints={checkpoint.run_id: checkpoint for checkpoint in checkpoints},
        )


class MemoryBackend(ABC):
    """Durable per-session store. Every method is independently atomic."""

    @abstractmethod
    async def is_initialized(self, session_id: str) -> bool:
        """Return whether a manifest exists for ``session_id``."""

    @abstractmethod
    async def initialize_session_if_missing(
        self,
        session_id: str,
        manifest: SessionManifest,
        features: list[FeatureRecord],
        progress: ProgressEntry | None = None,
        checkpoint: RunCheckpoint | None = None,
    ) -> bool:
        """Create the session atomically; return False and change nothing if it exists."""

    @abstractmethod
    async def load_bootstrap_state(self, session_id: str) -> BootstrapState:
        """Load the manifest, checklist, progress log and checkpoints."""

    @abstractmethod
    async def append_progress(self, session_id: str, entry: ProgressEntry) -> None:
        """Append one progress entry."""

    @abstractmethod
    async def record_checkpoint(self, session_id: str, checkpoint: RunCheckpoint) -> None:
        """Upsert the checkpoint for ``checkpoint.run_id``; terminal checkpoints are final."""

    @abstractmethod
    async def set_feature_passing(self, session_id: str, feature_id: str) -> None:
        """Mark one feature as passing."""

    @abstractmethod
    async def load_transcript(self, session_id: str) -> list[Message]:
        """Return the persisted conversation for ``session_id``."""

    @abstractmethod
    async def append_transcript(self, session_id: str, messages: list[Message]) -> None:
        """Append conversation messages."""

    @abstractmethod
    async def list_sessions(self) -> list[str]:
        """Return known session ids."""


class InMemoryMemoryBackend(MemoryBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionRecord] = {}
        self._transcripts: dict[str, list[Message]] = {}

    def _require(self, session_id: str) -> SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise MemoryStoreError(
                f"session '{session_id}' is not initialized",
                kind="not_found",
                session_id=session_id,
            )
        return record

    async def is_initialized(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    async def initialize_session_if_missing(
        self,
        session_id: str,
        manifest: SessionManifest,
        features: list[FeatureRecord],
        progress: ProgressEntry | None = None,
        checkpoint: RunCheckpoint | None = None,
    ) -> bool:
        with self._lock:
            if session_id in self._sessions:
                return False
            record = SessionRecord(
                manifest=copy.deepcopy(manifest),
                features=copy.deepcopy(features),
                progress=[copy.deepcopy(progress)] if progress else [],
            )
            if checkpoint is not None:
                record.record_checkpoint(checkpoint)
            self._sessions[session_id] = record
            return True

    async def load_bootstrap_state(self, session_id: str) -> BootstrapState:
        with self._lock:
            record = self._sessions.get(session_id)
            return record.bootstrap() if record else BootstrapState()

    async def append_progress(self, session_id: str, entry: ProgressEntry) -> None:
        with self._lock:
            self._require(session_id).progress.append(copy.deepcopy(entry))

    async def record_checkpoint(self, session_id: str, checkpoint: RunCheckpoint) -> None:
        with self._lock:
            self._require(session_id).record_checkpoint(checkpoint)

    async def set_feature_passing(self, session_id: str, feature_id: str) -> None:
        with self._lock:
            self._require(session_id).set_feature_passing(feature_id)

    async def load_transcript(self, session_id: str) -> list[Message]:
        with self._lock:
            return copy.deepcopy(self._transcripts.get(session_id, []))

    async def append_transcript(self, session_id: str, messages: list[Message]) -> None:
        with self._lock:
            self._transcripts.setdefault(session_id, []).extend(copy.deepcopy(messages))

    async def list_sessions(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

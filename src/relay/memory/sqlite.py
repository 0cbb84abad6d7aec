from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from pathlib import Path
from typing import TypeVar

import structlog

from relay.memory.base import MemoryBackend, MemoryStoreError, check_checkpoint_transition
from relay.memory.types import (
    BootstrapState,
    FeatureRecord,
    InitPlan,
    ProgressEntry,
    RunCheckpoint,
    SessionManifest,
    utcnow_iso,
)
from relay.providers.base import Message

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    objective TEXT NOT NULL,
    schema_version INTEGER NOT NULL,
    harness_version TEXT NOT NULL,
    init_plan TEXT NOT NULL,
    metadata TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS features (
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    feature_id TEXT NOT NULL,
    category TEXT NOT NULL,
    description TEXT NOT NULL,
    steps TEXT NOT NULL,
    passes INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (session_id, feature_id)
);
CREATE TABLE IF NOT EXISTS progress_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    run_id TEXT NOT NULL,
    summary TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS run_checkpoints (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL REFERENCES sessions(session_id) ON DELETE CASCADE,
    run_id TEXT NOT NULL,
    status TEXT NOT NULL,
    note TEXT NOT NULL,
    feature_id TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    UNIQUE (session_id, run_id)
);
CREATE TABLE IF NOT EXISTS transcript_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    payload TEXT NOT NULL
);
"""


def connect_sqlite(db_path: str) -> sqlite3.Connection:
    """Create a sqlite connection configured for row access by name."""

    connection = sqlite3.connect(db_path, timeout=5.0, isolation_level=None)
    connection.execute("PRAGMA busy_timeout = 5000")
    connection.execute("PRAGMA foreign_keys = ON")
    connection.row_factory = sqlite3.Row
    return connection


class SqliteMemoryBackend(MemoryBackend):
    def __init__(self, path: Path | str) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        # A single connection is kept for ":memory:" databases so the schema survives.
        self._shared: sqlite3.Connection | None = None
        self._shared_lock = threading.Lock()
        if self.path == ":memory:":
            self._shared = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
            self._shared.execute("PRAGMA foreign_keys = ON")
            self._shared.row_factory = sqlite3.Row
        with self._connection() as connection:
            connection.executescript(SCHEMA)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._shared is not None:
            with self._shared_lock:
                yield self._shared
            return
        with closing(connect_sqlite(self.path)) as connection:
            yield connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as connection:
            try:
                connection.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise MemoryStoreError(f"sqlite transaction failed to start: {exc}") from exc
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    async def _run(self, func: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(func)
        except sqlite3.Error as exc:
            raise MemoryStoreError(f"sqlite operation failed: {exc}") from exc

    @staticmethod
    def _require_session(connection: sqlite3.Connection, session_id: str) -> None:
        row = connection.execute(
            "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        if row is None:
            raise MemoryStoreError(
                f"session '{session_id}' is not initialized",
                kind="not_found",
                session_id=session_id,
            )

    @staticmethod
    def _upsert_checkpoint(
        connection: sqlite3.Connection, session_id: str, checkpoint: RunCheckpoint
    ) -> None:
        row = connection.execute(
            "SELECT * FROM run_checkpoints WHERE session_id = ? AND run_id = ?",
            (session_id, checkpoint.run_id),
        ).fetchone()
        existing = _checkpoint_from_row(row) if row is not None else None
        check_checkpoint_transition(session_id, existing, checkpoint)
        if existing is None:
            connection.execute(
                "INSERT INTO run_checkpoints "
                "(session_id, run_id, status, note, feature_id, started_at, completed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    session_id,
                    checkpoint.run_id,
                    checkpoint.status,
                    checkpoint.note,
                    checkpoint.feature_id,
                    checkpoint.started_at,
                    checkpoint.completed_at,
                ),
            )
            return
        connection.execute(
            "UPDATE run_checkpoints SET status = ?, note = ?, feature_id = ?, "
            "started_at = ?, completed_at = ? WHERE session_id = ? AND run_id = ?",
            (
                checkpoint.status,
                checkpoint.note,
                checkpoint.feature_id,
                checkpoint.started_at,
                checkpoint.completed_at,
                session_id,
                checkpoint.run_id,
            ),
        )

    async def is_initialized(self, session_id: str) -> bool:
        def _query() -> bool:
            with self._connection() as connection:
                row = connection.execute(
                    "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
                ).fetchone()
                return row is not None

        return await self._run(_query)

    async def initialize_session_if_missing(
        self,
        session_id: str,
        manifest: SessionManifest,
        features: list[FeatureRecord],
        progress: ProgressEntry | None = None,
        checkpoint: RunCheckpoint | None = None,
    ) -> bool:
        def _insert() -> bool:
            with self._transaction() as connection:
                existing = connection.execute(
                    "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
                ).fetchone()
                if existing is not None:
                    return False
                connection.execute(
                    "INSERT INTO sessions (session_id, objective, schema_version, "
                    "harness_version, init_plan, metadata, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        manifest.objective,
                        manifest.schema_version,
                        manifest.harness_version,
                        json.dumps(manifest.init_plan.to_list()),
                        json.dumps(manifest.metadata, sort_keys=True),
                        utcnow_iso(),
                    ),
                )
                connection.executemany(
                    "INSERT INTO features (session_id, position, feature_id, category, "
                    "description, steps, passes) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    [
                        (
                            session_id,
                            position,
                            feature.id,
                            feature.category,
                            feature.description,
                            json.dumps(feature.steps),
                            int(feature.passes),
                        )
                        for position, feature in enumerate(features)
                    ],
                )
                if progress is not None:
                    connection.execute(
                        "INSERT INTO progress_entries (session_id, run_id, summary, created_at) "
                        "VALUES (?, ?, ?, ?)",
                        (session_id, progress.run_id, progress.summary, progress.created_at),
                    )
                if checkpoint is not None:
                    self._upsert_checkpoint(connection, session_id, checkpoint)
                return True

        created = await self._run(_insert)
        if created:
            logger.info("memory.session_created", session_id=session_id, path=self.path)
        return created

    async def load_bootstrap_state(self, session_id: str) -> BootstrapState:
        def _load() -> BootstrapState:
            with self._connection() as connection:
                session_row = connection.execute(
                    "SELECT * FROM sessions WHERE session_id = ?", (session_id,)
                ).fetchone()
                if session_row is None:
                    return BootstrapState()
                feature_rows = connection.execute(
                    "SELECT * FROM features WHERE session_id = ? ORDER BY position",
                    (session_id,),
                ).fetchall()
                progress_rows = connection.execute(
                    "SELECT * FROM progress_entries WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()
                checkpoint_rows = connection.execute(
                    "SELECT * FROM run_checkpoints WHERE session_id = ? ORDER BY seq",
                    (session_id,),
                ).fetchall()
            manifest = SessionManifest(
                session_id=session_row["session_id"],
                objective=session_row["objective"],
                init_plan=InitPlan.from_list(json.loads(session_row["init_plan"])),
                schema_version=int(session_row["schema_version"]),
                harness_version=session_row["harness_version"],
                metadata=json.loads(session_row["metadata"]),
            )
            checkpoints = [_checkpoint_from_row(row) for row in checkpoint_rows]
            return BootstrapState(
                manifest=manifest,
                features=[
                    FeatureRecord(
                        id=row["feature_id"],
                        category=row["category"],
                        description=row["description"],
                        steps=json.loads(row["steps"]),
                        passes=bool(row["passes"]),
                    )
                    for row in feature_rows
                ],
                progress=[
                    ProgressEntry(
                        run_id=row["run_id"],
                        summary=row["summary"],
                        created_at=row["created_at"],
                    )
                    for row in progress_rows
                ],
                checkpoints={checkpoint.run_id: checkpoint for checkpoint in checkpoints},
            )

        return await self._run(_load)

    async def append_progress(self, session_id: str, entry: ProgressEntry) -> None:
        def _append() -> None:
            with self._transaction() as connection:
                self._require_session(connection, session_id)
                connection.execute(
                    "INSERT INTO progress_entries (session_id, run_id, summary, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (session_id, entry.run_id, entry.summary, entry.created_at),
                )

        await self._run(_append)

    async def record_checkpoint(self, session_id: str, checkpoint: RunCheckpoint) -> None:
        def _record() -> None:
            with self._transaction() as connection:
                self._require_session(connection, session_id)
                self._upsert_checkpoint(connection, session_id, checkpoint)

        await self._run(_record)

    async def set_feature_passing(self, session_id: str, feature_id: str) -> None:
        def _update() -> None:
            with self._transaction() as connection:
                self._require_session(connection, session_id)
                cursor = connection.execute(
                    "UPDATE features SET passes = 1 WHERE session_id = ? AND feature_id = ?",
                    (session_id, feature_id),
                )
                if cursor.rowcount == 0:
                    raise MemoryStoreError(
                        f"feature '{feature_id}' not found",
                        kind="not_found",
                        session_id=session_id,
                    )

        await self._run(_update)

    async def load_transcript(self, session_id: str) -> list[Message]:
        def _load() -> list[Message]:
            with self._connection() as connection:
                rows = connection.execute(
                    "SELECT payload FROM transcript_messages WHERE session_id = ? ORDER BY id",
                    (session_id,),
                ).fetchall()
            return [Message.from_dict(json.loads(row["payload"])) for row in rows]

        return await self._run(_load)

    async def append_transcript(self, session_id: str, messages: list[Message]) -> None:
        def _append() -> None:
            with self._transaction() as connection:
                connection.executemany(
                    "INSERT INTO transcript_messages (session_id, payload) VALUES (?, ?)",
                    [
                        (session_id, json.dumps(message.to_dict(), ensure_ascii=False))
                        for message in messages
                    ],
                )

        if messages:
            await self._run(_append)

    async def list_sessions(self) -> list[str]:
        def _list() -> list[str]:
            with self._connection() as connection:
                rows = connection.execute(
                    "SELECT session_id FROM sessions ORDER BY session_id"
                ).fetchall()
            return [row["session_id"] for row in rows]

        return await self._run(_list)


def _checkpoint_from_row(row: sqlite3.Row) -> RunCheckpoint:
    return RunCheckpoint(
        run_id=row["run_id"],
        status=row["status"],
        note=row["note"],
        feature_id=row["feature_id"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )

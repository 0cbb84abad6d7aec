from __future__ import annotations

import re
import shlex
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

RunStatus = Literal["started", "succeeded", "failed"]
InitStepKind = Literal["command", "shell"]
ShellName = Literal["bash", "sh"]

SCHEMA_VERSION = 1
HARNESS_VERSION = "relay/1"
TERMINAL_STATUSES = {"succeeded", "failed"}

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class InitStep:
    kind: InitStepKind
    program: str = ""
    args: list[str] = field(default_factory=list)
    shell: ShellName = "bash"
    script: str = ""

    @classmethod
    def command(cls, program: str, *args: str) -> InitStep:
        return cls(kind="command", program=program, args=list(args))

    @classmethod
    def shell_script(cls, script: str, shell: ShellName = "bash") -> InitStep:
        return cls(kind="shell", shell=shell, script=script)

    @classmethod
    def parse(cls, command_text: str) -> InitStep:
        """Build a step from a command line, falling back to a shell for pipes and the like."""
        text = command_text.strip()
        if not text:
            raise ValueError("init step command must not be empty")
        if not SHELL_REQUIRED_PATTERN.search(text):
            try:
                parts = shlex.split(text)
            except ValueError:
                parts = []
            if parts:
                return cls.command(parts[0], *parts[1:])
        return cls.shell_script(text)

    def describe(self) -> str:
        if self.kind == "command":
            return shlex.join([self.program, *self.args])
        return f"{self.shell} -c {shlex.quote(self.script)}"

    def to_dict(self) -> dict[str, Any]:
        if self.kind == "command":
            return {"kind": "command", "program": self.program, "args": list(self.args)}
        return {"kind": "shell", "shell": self.shell, "script": self.script}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> InitStep:
        if payload.get("kind") == "shell":
            return cls.shell_script(str(payload.get("script", "")), payload.get("shell", "bash"))
        return cls.command(
            str(payload.get("program", "")), *[str(arg) for arg in payload.get("args", [])]
        )


@dataclass(slots=True)
class InitPlan:
    steps: list[InitStep] = field(default_factory=list)

    @classmethod
    def default(cls) -> InitPlan:
        return cls(
            steps=[
                InitStep.command("git", "status", "--short", "--branch"),
                InitStep.command("git", "log", "--oneline", "-20"),
            ]
        )

    @classmethod
    def from_commands(cls, commands: list[str]) -> InitPlan:
        return cls(steps=[InitStep.parse(command) for command in commands if command.strip()])

    def to_list(self) -> list[dict[str, Any]]:
        return [step.to_dict() for step in self.steps]

    @classmethod
    def from_list(cls, payload: list[dict[str, Any]] | None) -> InitPlan:
        return cls(steps=[InitStep.from_dict(item) for item in payload or []])


@dataclass(slots=True)
class SessionManifest:
    session_id: str
    objective: str
    init_plan: InitPlan = field(default_factory=InitPlan.default)
    schema_version: int = SCHEMA_VERSION
    harness_version: str = HARNESS_VERSION
    metadata: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "objective": self.objective,
            "init_plan": self.init_plan.to_list(),
            "schema_version": self.schema_version,
            "harness_version": self.harness_version,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> SessionManifest:
        return cls(
            session_id=str(payload["session_id"]),
            objective=str(payload.get("objective", "")),
            init_plan=InitPlan.from_list(payload.get("init_plan")),
            schema_version=int(payload.get("schema_version") or SCHEMA_VERSION),
            harness_version=str(payload.get("harness_version") or HARNESS_VERSION),
            metadata={str(k): str(v) for k, v in (payload.get("metadata") or {}).items()},
        )


@dataclass(slots=True)
class FeatureRecord:
    id: str
    description: str
    category: str = "functional"
    steps: list[str] = field(default_factory=list)
    passes: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "steps": list(self.steps),
            "passes": self.passes,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FeatureRecord:
        return cls(
            id=str(payload.get("id", "")),
            description=str(payload.get("description", "")),
            category=str(payload.get("category") or "functional"),
            steps=[str(step) for step in payload.get("steps") or []],
            passes=bool(payload.get("passes", False)),
        )


@dataclass(slots=True)
class ProgressEntry:
    run_id: str
    summary: str
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"run_id": self.run_id, "summary": self.summary, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProgressEntry:
        return cls(
            run_id=str(payload.get("run_id", "")),
            summary=str(payload.get("summary", "")),
            created_at=str(payload.get("created_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class RunCheckpoint:
    run_id: str
    status: RunStatus
    note: str = ""
    feature_id: str | None = None
    started_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def started(cls, run_id: str, note: str = "run started") -> RunCheckpoint:
        return cls(run_id=run_id, status="started", note=note)

    def finish(
        self,
        status: RunStatus,
        note: str,
        *,
        feature_id: str | None = None,
    ) -> RunCheckpoint:
        return RunCheckpoint(
            run_id=self.run_id,
            status=status,
            note=note,
            feature_id=feature_id if feature_id is not None else self.feature_id,
            started_at=self.started_at,
            completed_at=utcnow_iso(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "note": self.note,
            "feature_id": self.feature_id,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RunCheckpoint:
        return cls(
            run_id=str(payload.get("run_id", "")),
            status=payload.get("status", "started"),
            note=str(payload.get("note", "")),
            feature_id=payload.get("feature_id"),
            started_at=str(payload.get("started_at") or utcnow_iso()),
            completed_at=payload.get("completed_at"),
        )


@dataclass(slots=True)
class BootstrapState:
    manifest: SessionManifest | None = None
    features: list[FeatureRecord] = field(default_factory=list)
    progress: list[ProgressEntry] = field(default_factory=list)
    checkpoints: dict[str, RunCheckpoint] = field(default_factory=dict)

    @property
    def is_initialized(self) -> bool:
        return self.manifest is not None

    def pending_features(self) -> list[FeatureRecord]:
        return [feature for feature in self.features if not feature.passes]

    def all_features_passing(self) -> bool:
        return bool(self.features) and all(feature.passes for feature in self.features)

    def abandoned_runs(self, *, exclude: str | None = None) -> list[RunCheckpoint]:
        return [
            checkpoint
            for run_id, checkpoint in self.checkpoints.items()
            if not checkpoint.is_terminal and run_id != exclude
        ]

    def consecutive_failures(self, feature_id: str) -> int:
        count = 0
        for checkpoint in reversed(list(self.checkpoints.values())):
            if checkpoint.feature_id != feature_id or not checkpoint.is_terminal:
                continue
            if checkpoint.status != "failed":
                break
            count += 1
        return count

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest": self.manifest.to_dict() if self.manifest else None,
            "features": [feature.to_dict() for feature in self.features],
            "progress": [entry.to_dict() for entry in self.progress],
            "checkpoints": [checkpoint.to_dict() for checkpoint in self.checkpoints.values()],
        }

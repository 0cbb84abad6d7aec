from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from relay.chat.types import ChatEvent, ChatSession
from relay.harness.errors import HarnessError
from relay.memory.types import FeatureRecord, InitPlan

HarnessPhase = Literal["initializer", "task_iteration"]
TaskIterationStatus = Literal["succeeded", "completed"]
ChatEventObserver = Callable[[ChatEvent], None]


@dataclass(slots=True)
class RunPolicy:
    """Guardrails for a single run. ``retry_budget=None`` leaves retries unbounded."""

    max_turns_per_run: int = 1
    max_features_per_run: int = 1
    retry_budget: int | None = None

    def validate(self) -> None:
        if self.max_features_per_run != 1:
            raise HarnessError.invalid_request(
                "max_features_per_run must be 1: a run advances at most one feature"
            )
        if self.max_turns_per_run != 1:
            raise HarnessError.invalid_request(
                "max_turns_per_run must be 1: a run delegates exactly one turn"
            )
        if self.retry_budget is not None and self.retry_budget < 0:
            raise HarnessError.invalid_request("retry_budget must be >= 0")


@dataclass(slots=True)
class InitializerRequest:
    session_id: str
    run_id: str
    objective: str
    features: list[FeatureRecord] | None = None
    init_plan: InitPlan | None = None
    progress_summary: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class InitializerResult:
    session_id: str
    run_id: str
    created: bool
    schema_version: int
    harness_version: str
    feature_count: int


@dataclass(slots=True)
class TaskIterationRequest:
    session: ChatSession
    run_id: str
    stream: bool = False
    prompt_override: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(slots=True)
class TaskIterationResult:
    session_id: str
    run_id: str
    status: TaskIterationStatus
    selected_feature_id: str | None = None
    validated: bool = False
    session_complete: bool = False
    used_stream: bool = False
    assistant_message: str | None = None

    @property
    def no_pending_features(self) -> bool:
        return self.status == "completed"


@dataclass(slots=True)
class RuntimeRunRequest:
    session: ChatSession
    run_id: str
    objective: str | None = None
    features: list[FeatureRecord] | None = None
    init_plan: InitPlan | None = None
    progress_summary: str | None = None
    stream: bool = False
    prompt_override: str | None = None


@dataclass(slots=True)
class RuntimeRunOutcome:
    phase: HarnessPhase
    initializer: InitializerResult | None = None
    task_iteration: TaskIterationResult | None = None

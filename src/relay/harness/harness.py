from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal, TypeVar

import structlog

from relay.chat.errors import ChatError
from relay.chat.service import TurnExecutor
from relay.chat.types import ChatTurnRequest, ChatTurnResult
from relay.harness.errors import HarnessError, HarnessErrorKind
from relay.harness.hooks import HarnessHooks, NoopHarnessHooks
from relay.harness.strategies import (
    AcceptAllValidator,
    FeatureSelector,
    FirstPendingFeatureSelector,
    HealthChecker,
    NoopHealthChecker,
    OutcomeValidator,
)
from relay.harness.types import (
    ChatEventObserver,
    HarnessPhase,
    InitializerRequest,
    InitializerResult,
    RunPolicy,
    RuntimeRunOutcome,
    RuntimeRunRequest,
    TaskIterationRequest,
    TaskIterationResult,
)
from relay.memory.base import MemoryBackend, MemoryStoreError
from relay.memory.types import (
    HARNESS_VERSION,
    SCHEMA_VERSION,
    BootstrapState,
    FeatureRecord,
    InitPlan,
    ProgressEntry,
    RunCheckpoint,
    RunStatus,
    SessionManifest,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Stage = Literal[
    "not_started",
    "bearings_loaded",
    "health_checked",
    "feature_selected",
    "executing",
    "turn_completed",
    "validated",
    "finalized",
]

# Kind given to unexpected exceptions, keyed by the last stage the run reached.
_STAGE_ERROR_KIND: dict[Stage, HarnessErrorKind] = {
    "not_started": "memory",
    "bearings_loaded": "health_check",
    "health_checked": "validation",
    "feature_selected": "chat",
    "executing": "chat",
    "turn_completed": "validation",
    "validated": "memory",
    "finalized": "memory",
}

ABANDONED_NOTE = "Run abandoned: no terminal checkpoint was recorded before a later run started"


def select_phase(state: BootstrapState) -> HarnessPhase:
    return "task_iteration" if state.is_initialized else "initializer"


def starter_features(objective: str) -> list[FeatureRecord]:
    return [
        FeatureRecord(
            id="objective.delivered",
            category="functional",
            description=f"Deliver the objective: {objective}",
            steps=[
                "Implement the objective end to end",
                "Verify the result and leave a clean handoff note",
            ],
        )
    ]


def build_feature_prompt(objective: str, feature: FeatureRecord) -> str:
    lines = [
        f"Objective: {objective}",
        "",
        "Work on exactly one feature incrementally and leave a clean handoff.",
        "",
        f"Feature: {feature.id}",
        f"Category: {feature.category}",
        f"Description: {feature.description}",
        "Validation steps:",
    ]
    lines.extend(f"- {step}" for step in feature.steps)
    return "\n".join(lines)


def validate_feature_list(features: list[FeatureRecord]) -> None:
    if not features:
        raise HarnessError.invalid_request("feature list must not be empty")
    seen: set[str] = set()
    for feature in features:
        if not feature.id.strip():
            raise HarnessError.invalid_request("feature id must not be empty")
        if feature.id in seen:
            raise HarnessError.invalid_request(f"duplicate feature id '{feature.id}'")
        seen.add(feature.id)
        if not feature.description.strip():
            raise HarnessError.invalid_request(
                f"feature '{feature.id}' must have a description"
            )
        if not feature.steps:
            raise HarnessError.invalid_request(
                f"feature '{feature.id}' must have at least one validation step"
            )
        if feature.passes:
            raise HarnessError.invalid_request(
                f"feature '{feature.id}' cannot start as passing"
            )


@dataclass(slots=True)
class _RunLedger:
    session_id: str
    checkpoint: RunCheckpoint
    stage: Stage = "not_started"
    feature_id: str | None = None
    progress_written: bool = False
    finalized: bool = False


class Harness:
    """Drives initializer and task-iteration runs against durable session memory."""

    def __init__(
        self,
        memory: MemoryBackend,
        *,
        turn_executor: TurnExecutor | None = None,
        health_checker: HealthChecker | None = None,
        validator: OutcomeValidator | None = None,
        feature_selector: FeatureSelector | None = None,
        run_policy: RunPolicy | None = None,
        hooks: HarnessHooks | None = None,
        schema_version: int = SCHEMA_VERSION,
        harness_version: str = HARNESS_VERSION,
    ) -> None:
        self.memory = memory
        self.turn_executor = turn_executor
        self.health_checker = health_checker or NoopHealthChecker()
        self.validator = validator or AcceptAllValidator()
        self.feature_selector = feature_selector or FirstPendingFeatureSelector()
        self.run_policy = run_policy or RunPolicy()
        self.run_policy.validate()
        self.hooks = hooks or NoopHarnessHooks()
        self.schema_version = schema_version
        self.harness_version = harness_version

    @classmethod
    def builder(cls, memory: MemoryBackend) -> HarnessBuilder:
        return HarnessBuilder(memory)

    async def _memory_call(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except MemoryStoreError as exc:
            raise HarnessError.from_memory(exc) from exc

    async def _observe(
        self,
        phase: HarnessPhase,
        session_id: str,
        run_id: str,
        body: Callable[[], Awaitable[T]],
    ) -> T:
        self.hooks.on_phase_start(phase, session_id, run_id)
        started = time.monotonic()
        try:
            result = await body()
        except HarnessError as exc:
            self.hooks.on_phase_failure(phase, session_id, run_id, exc, time.monotonic() - started)
            raise
        self.hooks.on_phase_success(phase, session_id, run_id, time.monotonic() - started)
        return result

    async def select_phase(self, session_id: str) -> HarnessPhase:
        initialized = await self._memory_call(self.memory.is_initialized(session_id))
        return "task_iteration" if initialized else "initializer"

    async def run(
        self,
        request: RuntimeRunRequest,
        event_observer: ChatEventObserver | None = None,
    ) -> RuntimeRunOutcome:
        phase = await self.select_phase(request.session.id)
        if phase == "initializer":
            result = await self.run_initializer(
                InitializerRequest(
                    session_id=request.session.id,
                    run_id=request.run_id,
                    objective=request.objective or "",
                    features=request.features,
                    init_plan=request.init_plan,
                    progress_summary=request.progress_summary,
                )
            )
            return RuntimeRunOutcome(phase=phase, initializer=result)

        iteration = await self.run_task_iteration(
            TaskIterationRequest(
                session=request.session,
                run_id=request.run_id,
                stream=request.stream,
                prompt_override=request.prompt_override,
            ),
            event_observer=event_observer,
        )
        return RuntimeRunOutcome(phase=phase, task_iteration=iteration)

    # Initializer

    async def run_initializer(self, request: InitializerRequest) -> InitializerResult:
        return await self._observe(
            "initializer",
            request.session_id,
            request.run_id,
            lambda: self._initialize(request),
        )

    def _validate_initializer(self, request: InitializerRequest) -> None:
        if not request.session_id.strip():
            raise HarnessError.invalid_request("session id must not be empty")
        if not request.run_id.strip():
            raise HarnessError.invalid_request("run id must not be empty")
        if not request.objective.strip():
            raise HarnessError.invalid_request("objective must not be empty")
        if request.features is not None:
            validate_feature_list(request.features)

    async def _record_initializer_failure(
        self, request: InitializerRequest, error: HarnessError
    ) -> None:
        # Only an existing session can hold the failure; none is created for it.
        if not request.session_id.strip() or not request.run_id.strip():
            return
        try:
            state = await self.memory.load_bootstrap_state(request.session_id)
            if not state.is_initialized:
                return
            existing = state.checkpoints.get(request.run_id)
            if existing is not None and existing.is_terminal:
                return
            checkpoint = existing or RunCheckpoint.started(request.run_id)
            await self.memory.record_checkpoint(
                request.session_id,
                checkpoint.finish("failed", f"Initializer failed ({error.kind}): {error.message}"),
            )
        except MemoryStoreError as exc:
            error.secondary = HarnessError.from_memory(exc)

    async def _initialize(self, request: InitializerRequest) -> InitializerResult:
        try:
            self._validate_initializer(request)
        except HarnessError as exc:
            await self._record_initializer_failure(request, exc)
            raise

        objective = request.objective.strip()
        features = list(request.features) if request.features else starter_features(objective)
        manifest = SessionManifest(
            session_id=request.session_id,
            objective=objective,
            init_plan=request.init_plan or InitPlan.default(),
            schema_version=self.schema_version,
            harness_version=self.harness_version,
            metadata=dict(request.metadata),
        )
        summary = (
            request.progress_summary
            or f"Initializer scaffold created for objective: {objective}"
        )
        checkpoint = RunCheckpoint.started(request.run_id, note="initializer started")

        try:
            created = await self._memory_call(
                self.memory.initialize_session_if_missing(
                    request.session_id,
                    manifest,
                    features,
                    ProgressEntry(run_id=request.run_id, summary=summary),
                    checkpoint,
                )
            )
            if created:
                await self._memory_call(
                    self.memory.record_checkpoint(
                        request.session_id,
                        checkpoint.finish(
                            "succeeded",
                            f"Session initialized with {len(features)} required feature(s)",
                        ),
                    )
                )
                logger.info(
                    "harness.session_initialized",
                    session_id=request.session_id,
                    run_id=request.run_id,
                    features=len(features),
                )
                return InitializerResult(
                    session_id=request.session_id,
                    run_id=request.run_id,
                    created=True,
                    schema_version=manifest.schema_version,
                    harness_version=manifest.harness_version,
                    feature_count=len(features),
                )

            state = await self._memory_call(self.memory.load_bootstrap_state(request.session_id))
            existing = state.checkpoints.get(request.run_id)
            if existing is None or not existing.is_terminal:
                await self._memory_call(
                    self.memory.record_checkpoint(
                        request.session_id,
                        (existing or checkpoint).finish(
                            "succeeded", "Session already initialized; initializer made no changes"
                        ),
                    )
                )
        except HarnessError as exc:
            await self._record_initializer_failure(request, exc)
            raise

        stored = state.manifest or manifest
        return InitializerResult(
            session_id=request.session_id,
            run_id=request.run_id,
            created=False,
            schema_version=stored.schema_version,
            harness_version=stored.harness_version,
            feature_count=len(state.features),
        )

    # Task iteration

    async def run_task_iteration(
        self,
        request: TaskIterationRequest,
        event_observer: ChatEventObserver | None = None,
    ) -> TaskIterationResult:
        return await self._observe(
            "task_iteration",
            request.session.id,
            request.run_id,
            lambda: self._task_iteration(request, event_observer),
        )

    async def _task_iteration(
        self,
        request: TaskIterationRequest,
        event_observer: ChatEventObserver | None,
    ) -> TaskIterationResult:
        session_id = request.session.id
        if not session_id.strip():
            raise HarnessError.invalid_request("session id must not be empty")
        if not request.run_id.strip():
            raise HarnessError.invalid_request("run id must not be empty")
        if self.turn_executor is None:
            raise HarnessError.not_ready("no turn executor is configured")
        if not await self._memory_call(self.memory.is_initialized(session_id)):
            raise HarnessError.not_ready(
                f"session '{session_id}' is not initialized; run the initializer first"
            )

        ledger = _RunLedger(session_id=session_id, checkpoint=RunCheckpoint.started(request.run_id))
        # Rejects a run_id that already finished before anything else is written.
        await self._memory_call(self.memory.record_checkpoint(session_id, ledger.checkpoint))

        try:
            return await self._iterate(request, ledger, event_observer)
        except Exception as exc:
            error = exc
            if not isinstance(exc, HarnessError):
                error = HarnessError(
                    f"unexpected failure after stage '{ledger.stage}': {exc!r}",
                    kind=_STAGE_ERROR_KIND[ledger.stage],
                )
            if not ledger.finalized:
                await self._record_failure(ledger, error)
            if error is exc:
                raise
            raise error from exc

    async def _iterate(
        self,
        request: TaskIterationRequest,
        ledger: _RunLedger,
        event_observer: ChatEventObserver | None,
    ) -> TaskIterationResult:
        session_id = ledger.session_id

        state = await self._memory_call(self.memory.load_bootstrap_state(session_id))
        if state.manifest is None:
            raise HarnessError.not_ready(f"session '{session_id}' has no manifest")
        await self._reconcile_abandoned(state, ledger)
        ledger.stage = "bearings_loaded"

        init_plan = state.manifest.init_plan if state.manifest.init_plan.steps else InitPlan.default()
        health = await self.health_checker.check(init_plan)
        if not health.passed:
            raise HarnessError.health_check(health.detail or "health check failed")
        ledger.stage = "health_checked"

        pending = state.pending_features()
        if not pending:
            note = "All required features pass; completion gate satisfied"
            await self._finalize(ledger, "succeeded", note)
            return TaskIterationResult(
                session_id=session_id,
                run_id=request.run_id,
                status="completed",
                session_complete=state.all_features_passing(),
                used_stream=request.stream,
            )

        feature = self.feature_selector.select(state.features)
        if feature is None:
            raise HarnessError.validation(
                f"feature selector chose nothing while {len(pending)} feature(s) are pending"
            )
        if feature.passes:
            raise HarnessError.validation(
                f"feature selector chose '{feature.id}', which already passes"
            )
        self._check_retry_budget(state, feature)
        ledger.feature_id = feature.id
        # A run that dies mid-turn leaves this checkpoint tagged with its feature.
        ledger.checkpoint = RunCheckpoint(
            run_id=ledger.checkpoint.run_id,
            status="started",
            note=f"working on feature '{feature.id}'",
            feature_id=feature.id,
            started_at=ledger.checkpoint.started_at,
        )
        await self._memory_call(self.memory.record_checkpoint(session_id, ledger.checkpoint))
        ledger.stage = "feature_selected"

        turn_request = ChatTurnRequest(
            session=request.session,
            user_input=request.prompt_override or build_feature_prompt(
                state.manifest.objective, feature
            ),
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            stream=request.stream,
        )
        ledger.stage = "executing"
        turn = await self._execute_turn(turn_request, event_observer)
        ledger.stage = "turn_completed"

        verdict = await self.validator.validate(turn, feature)
        if not verdict.passed:
            reason = verdict.detail or "validator rejected the turn"
            raise HarnessError.validation(f"feature '{feature.id}' was not validated: {reason}")
        await self._memory_call(self.memory.set_feature_passing(session_id, feature.id))
        ledger.stage = "validated"

        # The turn executor writes through the same backend; completion is re-read.
        live = await self._memory_call(self.memory.load_bootstrap_state(session_id))
        session_complete = live.all_features_passing()
        if not session_complete:
            note = (
                f"Feature '{feature.id}' validated and marked passing; "
                f"{len(live.pending_features())} required feature(s) still pending"
            )
        else:
            note = f"Feature '{feature.id}' validated and marked passing; all required features pass"
        await self._finalize(ledger, "succeeded", note)
        return TaskIterationResult(
            session_id=session_id,
            run_id=request.run_id,
            status="succeeded",
            selected_feature_id=feature.id,
            validated=True,
            session_complete=session_complete,
            used_stream=request.stream,
            assistant_message=turn.assistant_message,
        )

    def _check_retry_budget(self, state: BootstrapState, feature: FeatureRecord) -> None:
        budget = self.run_policy.retry_budget
        if budget is None:
            return
        failures = state.consecutive_failures(feature.id)
        if failures > budget:
            raise HarnessError.not_ready(
                f"feature '{feature.id}' failed {failures} consecutive run(s), "
                f"exceeding the retry budget of {budget}; remediate before retrying"
            )

    async def _execute_turn(
        self,
        turn_request: ChatTurnRequest,
        event_observer: ChatEventObserver | None,
    ) -> ChatTurnResult:
        executor = self.turn_executor
        if executor is None:
            raise HarnessError.not_ready("no turn executor is configured")
        try:
            if not turn_request.stream:
                return await executor.run_turn(turn_request)
            result: ChatTurnResult | None = None
            async for event in executor.stream_turn(turn_request):
                if event_observer is not None:
                    event_observer(event)
                if event.kind == "turn_complete":
                    result = event.result
        except ChatError as exc:
            raise HarnessError.chat(str(exc), retryable=exc.retryable) from exc
        if result is None:
            raise HarnessError.chat("stream ended without a turn_complete event")
        return result

    async def _reconcile_abandoned(self, state: BootstrapState, ledger: _RunLedger) -> None:
        for checkpoint in state.abandoned_runs(exclude=ledger.checkpoint.run_id):
            closed = checkpoint.finish("failed", ABANDONED_NOTE)
            await self._memory_call(self.memory.record_checkpoint(ledger.session_id, closed))
            state.checkpoints[closed.run_id] = closed
            logger.warning(
                "harness.run_abandoned",
                session_id=ledger.session_id,
                run_id=closed.run_id,
            )

    async def _finalize(self, ledger: _RunLedger, status: RunStatus, note: str) -> None:
        await self._memory_call(
            self.memory.append_progress(
                ledger.session_id, ProgressEntry(run_id=ledger.checkpoint.run_id, summary=note)
            )
        )
        ledger.progress_written = True
        await self._memory_call(
            self.memory.record_checkpoint(
                ledger.session_id,
                ledger.checkpoint.finish(status, note, feature_id=ledger.feature_id),
            )
        )
        ledger.finalized = True
        ledger.stage = "finalized"

    async def _record_failure(self, ledger: _RunLedger, error: HarnessError) -> None:
        note = f"Run failed ({error.kind}): {error.message}"
        secondary: HarnessError | None = None
        if not ledger.progress_written:
            try:
                await self.memory.append_progress(
                    ledger.session_id,
                    ProgressEntry(run_id=ledger.checkpoint.run_id, summary=note),
                )
                ledger.progress_written = True
            except MemoryStoreError as exc:
                secondary = HarnessError.from_memory(exc)
        try:
            await self.memory.record_checkpoint(
                ledger.session_id,
                ledger.checkpoint.finish("failed", note, feature_id=ledger.feature_id),
            )
            ledger.finalized = True
        except MemoryStoreError as exc:
            secondary = secondary or HarnessError.from_memory(exc)

        if secondary is not None:
            error.secondary = secondary
            logger.error(
                "harness.failure_not_recorded",
                session_id=ledger.session_id,
                run_id=ledger.checkpoint.run_id,
                error=error.message,
                secondary=secondary.message,
            )


class HarnessBuilder:
    def __init__(self, memory: MemoryBackend) -> None:
        self._memory = memory
        self._turn_executor: TurnExecutor | None = None
        self._health_checker: HealthChecker | None = None
        self._validator: OutcomeValidator | None = None
        self._feature_selector: FeatureSelector | None = None
        self._run_policy = RunPolicy()
        self._hooks: HarnessHooks | None = None
        self._schema_version = SCHEMA_VERSION
        self._harness_version = HARNESS_VERSION

    def turn_executor(self, executor: TurnExecutor) -> HarnessBuilder:
        self._turn_executor = executor
        return self

    def health_checker(self, checker: HealthChecker) -> HarnessBuilder:
        self._health_checker = checker
        return self

    def validator(self, validator: OutcomeValidator) -> HarnessBuilder:
        self._validator = validator
        return self

    def feature_selector(self, selector: FeatureSelector) -> HarnessBuilder:
        self._feature_selector = selector
        return self

    def run_policy(self, policy: RunPolicy) -> HarnessBuilder:
        self._run_policy = policy
        return self

    def hooks(self, hooks: HarnessHooks) -> HarnessBuilder:
        self._hooks = hooks
        return self

    def schema_version(self, version: int) -> HarnessBuilder:
        self._schema_version = version
        return self

    def harness_version(self, version: str) -> HarnessBuilder:
        self._harness_version = version
        return self

    def build(self) -> Harness:
        return Harness(
            self._memory,
            turn_executor=self._turn_executor,
            health_checker=self._health_checker,
            validator=self._validator,
            feature_selector=self._feature_selector,
            run_policy=self._run_policy,
            hooks=self._hooks,
            schema_version=self._schema_version,
            harness_version=self._harness_version,
        )

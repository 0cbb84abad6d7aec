import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from relay.chat import ChatError, ChatEvent, ChatSession, ChatTurnRequest, ChatTurnResult
from relay.harness import (
    CheckOutcome,
    Harness,
    HarnessError,
    HarnessHooks,
    HealthChecker,
    InitializerRequest,
    OutcomeValidator,
    RunPolicy,
    RuntimeRunRequest,
    SafeHarnessHooks,
    TaskIterationRequest,
    select_phase,
)
from relay.memory import (
    BootstrapState,
    FeatureRecord,
    FilesystemMemoryBackend,
    InitPlan,
    InMemoryMemoryBackend,
    MemoryStoreError,
    ProgressEntry,
    RunCheckpoint,
)

OBJECTIVE = "Ship the billing export"


class ScriptedExecutor:
    def __init__(
        self,
        reply: str = "done",
        *,
        error: Exception | None = None,
        complete_stream: bool = True,
    ) -> None:
        self.reply = reply
        self.error = error
        self.complete_stream = complete_stream
        self.requests: list[ChatTurnRequest] = []

    def _result(self, request: ChatTurnRequest) -> ChatTurnResult:
        return ChatTurnResult(session_id=request.session.id, assistant_message=self.reply)

    async def run_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self._result(request)

    async def stream_turn(self, request: ChatTurnRequest) -> AsyncIterator[ChatEvent]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        yield ChatEvent(kind="text_delta", text=self.reply[:2])
        yield ChatEvent(kind="text_delta", text=self.reply[2:])
        yield ChatEvent(kind="assistant_message", text=self.reply)
        if self.complete_stream:
            yield ChatEvent(kind="turn_complete", result=self._result(request))


class LandingExecutor(ScriptedExecutor):
    """Marks another feature passing through the shared backend while its turn runs."""

    def __init__(self, memory: InMemoryMemoryBackend, feature_id: str) -> None:
        super().__init__()
        self.memory = memory
        self.feature_id = feature_id

    async def run_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        await self.memory.set_feature_passing(request.session.id, self.feature_id)
        return await super().run_turn(request)


class InspectingExecutor(ScriptedExecutor):
    def __init__(self, memory: InMemoryMemoryBackend) -> None:
        super().__init__()
        self.memory = memory
        self.seen: list[RunCheckpoint] = []

    async def run_turn(self, request: ChatTurnRequest) -> ChatTurnResult:
        state = await self.memory.load_bootstrap_state(request.session.id)
        self.seen.extend(state.abandoned_runs())
        return await super().run_turn(request)


class ProcessKilled(BaseException):
    """Escapes the harness the way a killed process would: nothing after it runs."""


class FailingHealthChecker(HealthChecker):
    def __init__(self) -> None:
        self.plans: list[InitPlan] = []

    async def check(self, init_plan: InitPlan) -> CheckOutcome:
        self.plans.append(init_plan)
        return CheckOutcome.fail("disk is read-only")


class RejectingValidator(OutcomeValidator):
    async def validate(self, turn: ChatTurnResult, feature: FeatureRecord) -> CheckOutcome:
        return CheckOutcome.fail("tests are still red")


class ExplodingValidator(OutcomeValidator):
    async def validate(self, turn: ChatTurnResult, feature: FeatureRecord) -> CheckOutcome:
        raise RuntimeError("validator crashed")


class RecordingHooks(HarnessHooks):
    def __init__(self) -> None:
        self.events: list[tuple[str, str, str]] = []

    def on_phase_start(self, phase, session_id, run_id) -> None:
        self.events.append(("start", phase, run_id))

    def on_phase_success(self, phase, session_id, run_id, elapsed) -> None:
        self.events.append(("success", phase, run_id))

    def on_phase_failure(self, phase, session_id, run_id, error, elapsed) -> None:
        self.events.append(("failure", phase, error.kind))


class ExplodingHooks(HarnessHooks):
    def on_phase_start(self, phase, session_id, run_id) -> None:
        raise RuntimeError("start hook broke")

    def on_phase_success(self, phase, session_id, run_id, elapsed) -> None:
        raise RuntimeError("success hook broke")

    def on_phase_failure(self, phase, session_id, run_id, error, elapsed) -> None:
        raise RuntimeError("failure hook broke")


class TerminalWriteFailingMemory(InMemoryMemoryBackend):
    """Accepts started checkpoints but refuses every terminal one."""

    async def record_checkpoint(self, session_id: str, checkpoint: RunCheckpoint) -> None:
        if checkpoint.is_terminal and checkpoint.run_id.startswith("run-"):
            raise MemoryStoreError("disk full", kind="storage", session_id=session_id)
        await super().record_checkpoint(session_id, checkpoint)


def _features(*ids: str) -> list[FeatureRecord]:
    return [
        FeatureRecord(id=feature_id, description=f"Implement {feature_id}", steps=["run tests"])
        for feature_id in ids
    ]


def _session(session_id: str = "s1") -> ChatSession:
    return ChatSession(id=session_id, model="test-model")


def _initialize(harness: Harness, *ids: str, session_id: str = "s1"):
    return asyncio.run(
        harness.run_initializer(
            InitializerRequest(
                session_id=session_id,
                run_id="init-1",
                objective=OBJECTIVE,
                features=_features(*ids) if ids else None,
            )
        )
    )


def _iterate(harness: Harness, run_id: str, **kwargs):
    return asyncio.run(
        harness.run_task_iteration(TaskIterationRequest(session=_session(), run_id=run_id, **kwargs))
    )


def _state(memory, session_id: str = "s1") -> BootstrapState:
    return asyncio.run(memory.load_bootstrap_state(session_id))


def test_select_phase_is_pure_over_bootstrap_state() -> None:
    assert select_phase(BootstrapState()) == "initializer"

    harness = Harness(InMemoryMemoryBackend())
    _initialize(harness, "f1")
    assert select_phase(_state(harness.memory)) == "task_iteration"


def test_initializer_is_idempotent() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory)

    first = _initialize(harness, "f1", "f2")
    second = _initialize(harness, "f1", "f2")

    assert first.created is True
    assert first.feature_count == 2
    assert second.created is False
    assert second.feature_count == 2
    state = _state(memory)
    assert [feature.id for feature in state.features] == ["f1", "f2"]
    assert not any(feature.passes for feature in state.features)
    assert len(state.progress) == 1
    assert state.checkpoints["init-1"].status == "succeeded"


def test_repeat_initializer_with_new_run_id_records_noop_checkpoint() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory)
    _initialize(harness, "f1")

    result = asyncio.run(
        harness.run_initializer(
            InitializerRequest(session_id="s1", run_id="init-2", objective="Something else")
        )
    )

    assert result.created is False
    state = _state(memory)
    assert state.manifest is not None
    assert state.manifest.objective == OBJECTIVE
    assert state.checkpoints["init-2"].status == "succeeded"
    assert "already initialized" in state.checkpoints["init-2"].note
    assert len(state.progress) == 1


def test_initializer_synthesizes_starter_checklist() -> None:
    memory = InMemoryMemoryBackend()
    result = _initialize(Harness(memory))

    state = _state(memory)
    assert result.feature_count == 1
    assert len(state.features) == 1
    assert state.features[0].passes is False
    assert OBJECTIVE in state.features[0].description
    assert state.manifest is not None
    assert state.manifest.init_plan.steps[0].program == "git"
    assert state.progress[0].summary.startswith("Initializer scaffold created")


@pytest.mark.parametrize(
    ("objective", "features"),
    [
        ("   ", None),
        (OBJECTIVE, _features("f1", "f1")),
        (OBJECTIVE, [FeatureRecord(id="", description="x", steps=["y"])]),
        (OBJECTIVE, [FeatureRecord(id="f1", description="x", steps=["y"], passes=True)]),
        (OBJECTIVE, []),
    ],
)
def test_initializer_rejects_invalid_requests_without_creating_a_session(
    objective: str, features: list[FeatureRecord] | None
) -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory)

    with pytest.raises(HarnessError) as excinfo:
        asyncio.run(
            harness.run_initializer(
                InitializerRequest(
                    session_id="s1", run_id="init-1", objective=objective, features=features
                )
            )
        )

    assert excinfo.value.kind == "invalid_request"
    assert asyncio.run(memory.list_sessions()) == []


def test_invalid_initializer_on_existing_session_records_failed_checkpoint() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory)
    _initialize(harness, "f1")

    with pytest.raises(HarnessError):
        asyncio.run(
            harness.run_initializer(
                InitializerRequest(
                    session_id="s1",
                    run_id="init-2",
                    objective=OBJECTIVE,
                    features=_features("a", "a"),
                )
            )
        )

    checkpoint = _state(memory).checkpoints["init-2"]
    assert checkpoint.status == "failed"
    assert "duplicate" in checkpoint.note


def test_task_iteration_advances_exactly_one_feature() -> None:
    memory = InMemoryMemoryBackend()
    executor = ScriptedExecutor("implemented f1")
    harness = Harness(memory, turn_executor=executor)
    _initialize(harness, "f1", "f2")

    result = _iterate(harness, "run-1")

    assert result.status == "succeeded"
    assert result.selected_feature_id == "f1"
    assert result.validated is True
    assert result.session_complete is False
    assert result.assistant_message == "implemented f1"
    assert len(executor.requests) == 1
    prompt = executor.requests[0].user_input
    assert f"Objective: {OBJECTIVE}" in prompt
    assert "Feature: f1" in prompt
    assert "- run tests" in prompt

    state = _state(memory)
    assert [feature.passes for feature in state.features] == [True, False]
    assert len(state.progress) == 2
    checkpoint = state.checkpoints["run-1"]
    assert checkpoint.status == "succeeded"
    assert checkpoint.feature_id == "f1"
    assert checkpoint.completed_at is not None


def test_session_completes_after_one_run_per_feature() -> None:
    memory = InMemoryMemoryBackend()
    executor = ScriptedExecutor()
    harness = Harness(memory, turn_executor=executor)
    _initialize(harness, "f1", "f2", "f3")

    results = [_iterate(harness, f"run-{index}") for index in range(1, 4)]

    assert [result.selected_feature_id for result in results] == ["f1", "f2", "f3"]
    assert [result.session_complete for result in results] == [False, False, True]
    assert _state(memory).all_features_passing()

    extra = _iterate(harness, "run-4")

    assert extra.status == "completed"
    assert extra.no_pending_features is True
    assert extra.session_complete is True
    assert extra.selected_feature_id is None
    assert len(executor.requests) == 3
    state = _state(memory)
    assert state.checkpoints["run-4"].status == "succeeded"
    assert "completion gate" in state.progress[-1].summary
    assert len(state.progress) == 5


def test_health_check_failure_stops_before_the_turn() -> None:
    memory = InMemoryMemoryBackend()
    executor = ScriptedExecutor()
    checker = FailingHealthChecker()
    harness = Harness(memory, turn_executor=executor, health_checker=checker)
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "health_check"
    assert "read-only" in str(excinfo.value)
    assert executor.requests == []
    assert checker.plans[0].steps
    state = _state(memory)
    assert state.features[0].passes is False
    assert state.checkpoints["run-1"].status == "failed"
    assert "health_check" in state.checkpoints["run-1"].note
    assert state.progress[-1].run_id == "run-1"


def test_turn_failure_is_terminal_and_keeps_retryability() -> None:
    memory = InMemoryMemoryBackend()
    error = ChatError("rate limited", kind="provider", phase="provider", retryable=True)
    harness = Harness(memory, turn_executor=ScriptedExecutor(error=error))
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "chat"
    assert excinfo.value.retryable is True
    state = _state(memory)
    assert state.features[0].passes is False
    assert state.checkpoints["run-1"].status == "failed"
    assert state.checkpoints["run-1"].feature_id == "f1"


def test_validation_failure_leaves_feature_pending() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=ScriptedExecutor(), validator=RejectingValidator())
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "validation"
    assert "tests are still red" in str(excinfo.value)
    state = _state(memory)
    assert state.features[0].passes is False
    assert state.checkpoints["run-1"].status == "failed"
    assert len(state.progress) == 2


def test_unexpected_validator_crash_is_typed_and_checkpointed() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=ScriptedExecutor(), validator=ExplodingValidator())
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "validation"
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert _state(memory).checkpoints["run-1"].status == "failed"


def test_task_iteration_requires_initialized_session() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=ScriptedExecutor())

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "not_ready"
    assert asyncio.run(memory.list_sessions()) == []


def test_task_iteration_requires_turn_executor() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory)
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "not_ready"
    assert "run-1" not in _state(memory).checkpoints


def test_finished_run_id_is_never_reopened() -> None:
    memory = InMemoryMemoryBackend()
    executor = ScriptedExecutor()
    harness = Harness(memory, turn_executor=executor)
    _initialize(harness, "f1", "f2")
    _iterate(harness, "run-1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "invalid_request"
    assert len(executor.requests) == 1
    state = _state(memory)
    assert len(state.progress) == 2
    assert state.checkpoints["run-1"].status == "succeeded"
    assert state.features[1].passes is False


def test_failed_checkpoint_write_surfaces_both_errors() -> None:
    memory = TerminalWriteFailingMemory()
    harness = Harness(memory, turn_executor=ScriptedExecutor())
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    error = excinfo.value
    assert error.kind == "memory"
    assert error.secondary is not None
    assert error.secondary.kind == "memory"
    assert "recording the failure also failed" in str(error)
    assert _state(memory).checkpoints["run-1"].status == "started"


def test_abandoned_runs_are_closed_on_next_bearings_read() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=ScriptedExecutor())
    _initialize(harness, "f1", "f2")
    asyncio.run(memory.record_checkpoint("s1", RunCheckpoint.started("crashed-run")))

    _iterate(harness, "run-1")

    checkpoints = _state(memory).checkpoints
    assert checkpoints["crashed-run"].status == "failed"
    assert "abandoned" in checkpoints["crashed-run"].note
    assert checkpoints["run-1"].status == "succeeded"


def test_retry_budget_blocks_a_feature_that_keeps_failing() -> None:
    memory = InMemoryMemoryBackend()
    executor = ScriptedExecutor()
    harness = Harness(
        memory,
        turn_executor=executor,
        validator=RejectingValidator(),
        run_policy=RunPolicy(retry_budget=1),
    )
    _initialize(harness, "f1")

    for run_id in ("run-1", "run-2"):
        with pytest.raises(HarnessError) as excinfo:
            _iterate(harness, run_id)
        assert excinfo.value.kind == "validation"

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-3")

    assert excinfo.value.kind == "not_ready"
    assert "retry budget" in str(excinfo.value)
    assert len(executor.requests) == 2
    assert _state(memory).checkpoints["run-3"].status == "failed"


def test_started_checkpoint_names_the_feature_during_the_turn() -> None:
    memory = InMemoryMemoryBackend()
    executor = InspectingExecutor(memory)
    harness = Harness(memory, turn_executor=executor)
    _initialize(harness, "f1")

    _iterate(harness, "run-1")

    assert [(item.run_id, item.status, item.feature_id) for item in executor.seen] == [
        ("run-1", "started", "f1")
    ]


def test_crash_mid_turn_counts_against_the_retry_budget() -> None:
    memory = InMemoryMemoryBackend()
    crashing = Harness(memory, turn_executor=ScriptedExecutor(error=ProcessKilled()))
    _initialize(crashing, "f1")

    with pytest.raises(ProcessKilled):
        _iterate(crashing, "run-1")

    assert _state(memory).checkpoints["run-1"].status == "started"

    executor = ScriptedExecutor()
    guarded = Harness(memory, turn_executor=executor, run_policy=RunPolicy(retry_budget=0))
    with pytest.raises(HarnessError) as excinfo:
        _iterate(guarded, "run-2")

    assert excinfo.value.kind == "not_ready"
    assert "retry budget" in str(excinfo.value)
    assert executor.requests == []
    crashed = _state(memory).checkpoints["run-1"]
    assert crashed.status == "failed"
    assert crashed.feature_id == "f1"
    assert "abandoned" in crashed.note


def test_abandoned_run_with_feature_exhausts_zero_retry_budget() -> None:
    memory = InMemoryMemoryBackend()
    executor = ScriptedExecutor()
    harness = Harness(memory, turn_executor=executor, run_policy=RunPolicy(retry_budget=0))
    _initialize(harness, "f1")
    asyncio.run(
        memory.record_checkpoint(
            "s1", RunCheckpoint(run_id="crashed-run", status="started", feature_id="f1")
        )
    )

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1")

    assert excinfo.value.kind == "not_ready"
    assert executor.requests == []
    assert _state(memory).features[0].passes is False


def test_session_completion_is_read_back_after_the_turn() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=LandingExecutor(memory, "f2"))
    _initialize(harness, "f1", "f2")

    result = _iterate(harness, "run-1")

    assert result.selected_feature_id == "f1"
    assert result.session_complete is True
    state = _state(memory)
    assert state.all_features_passing()
    assert state.progress[-1].summary.endswith("all required features pass")
    assert _iterate(harness, "run-2").status == "completed"


def test_streaming_turn_forwards_events_to_observer() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=ScriptedExecutor("streamed"))
    _initialize(harness, "f1")
    seen: list[str] = []

    result = asyncio.run(
        harness.run_task_iteration(
            TaskIterationRequest(session=_session(), run_id="run-1", stream=True),
            event_observer=lambda event: seen.append(event.kind),
        )
    )

    assert result.used_stream is True
    assert result.assistant_message == "streamed"
    assert seen == ["text_delta", "text_delta", "assistant_message", "turn_complete"]


def test_stream_without_turn_complete_fails_the_run() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(memory, turn_executor=ScriptedExecutor(complete_stream=False))
    _initialize(harness, "f1")

    with pytest.raises(HarnessError) as excinfo:
        _iterate(harness, "run-1", stream=True)

    assert excinfo.value.kind == "chat"
    assert _state(memory).checkpoints["run-1"].status == "failed"


def test_prompt_override_replaces_feature_prompt() -> None:
    executor = ScriptedExecutor()
    harness = Harness(InMemoryMemoryBackend(), turn_executor=executor)
    _initialize(harness, "f1")

    _iterate(harness, "run-1", prompt_override="Only fix the flaky test")

    assert executor.requests[0].user_input == "Only fix the flaky test"


def test_hooks_observe_phase_lifecycle() -> None:
    hooks = RecordingHooks()
    harness = (
        Harness.builder(InMemoryMemoryBackend())
        .turn_executor(ScriptedExecutor())
        .hooks(hooks)
        .build()
    )
    _initialize(harness, "f1")
    _iterate(harness, "run-1")
    harness.health_checker = FailingHealthChecker()
    with pytest.raises(HarnessError):
        _iterate(harness, "run-2")

    assert hooks.events == [
        ("start", "initializer", "init-1"),
        ("success", "initializer", "init-1"),
        ("start", "task_iteration", "run-1"),
        ("success", "task_iteration", "run-1"),
        ("start", "task_iteration", "run-2"),
        ("failure", "task_iteration", "health_check"),
    ]


def test_safe_hooks_keep_faulty_observers_out_of_control_flow() -> None:
    memory = InMemoryMemoryBackend()
    harness = Harness(
        memory,
        turn_executor=ScriptedExecutor(),
        hooks=SafeHarnessHooks(ExplodingHooks()),
    )
    _initialize(harness, "f1")

    result = _iterate(harness, "run-1")

    assert result.validated is True
    assert _state(memory).checkpoints["run-1"].status == "succeeded"


def test_run_dispatches_on_session_phase() -> None:
    executor = ScriptedExecutor()
    harness = Harness(InMemoryMemoryBackend(), turn_executor=executor)
    request = RuntimeRunRequest(
        session=_session(), run_id="run-1", objective=OBJECTIVE, features=_features("f1")
    )

    first = asyncio.run(harness.run(request))
    second = asyncio.run(
        harness.run(RuntimeRunRequest(session=_session(), run_id="run-2"))
    )

    assert first.phase == "initializer"
    assert first.initializer is not None and first.initializer.created is True
    assert second.phase == "task_iteration"
    assert second.task_iteration is not None
    assert second.task_iteration.selected_feature_id == "f1"
    assert len(executor.requests) == 1


def test_run_policy_is_validated_when_building() -> None:
    builder = Harness.builder(InMemoryMemoryBackend()).run_policy(
        RunPolicy(max_features_per_run=2)
    )

    with pytest.raises(HarnessError) as excinfo:
        builder.build()

    assert excinfo.value.kind == "invalid_request"


@pytest.mark.parametrize("turns", [0, 2, 3])
def test_run_policy_rejects_turn_limits_other_than_one(turns: int) -> None:
    builder = Harness.builder(InMemoryMemoryBackend()).run_policy(
        RunPolicy(max_turns_per_run=turns)
    )

    with pytest.raises(HarnessError) as excinfo:
        builder.build()

    assert excinfo.value.kind == "invalid_request"
    assert "max_turns_per_run" in str(excinfo.value)


def test_session_survives_process_restart(tmp_path: Path) -> None:
    first = Harness(FilesystemMemoryBackend(tmp_path), turn_executor=ScriptedExecutor())
    _initialize(first, "f1", "f2")
    _iterate(first, "run-1")

    restarted = Harness(FilesystemMemoryBackend(tmp_path), turn_executor=ScriptedExecutor())
    result = _iterate(restarted, "run-2")

    assert result.selected_feature_id == "f2"
    assert result.session_complete is True
    state = _state(restarted.memory)
    assert [entry.run_id for entry in state.progress] == ["init-1", "run-1", "run-2"]
    assert isinstance(state.progress[0], ProgressEntry)

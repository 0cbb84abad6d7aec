from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import structlog

from relay.chat.types import ChatTurnResult
from relay.memory.types import FeatureRecord, InitPlan, InitStep

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class CheckOutcome:
    passed: bool
    detail: str = ""

    @classmethod
    def ok(cls, detail: str = "") -> CheckOutcome:
        return cls(passed=True, detail=detail)

    @classmethod
    def fail(cls, detail: str) -> CheckOutcome:
        return cls(passed=False, detail=detail)


@dataclass(slots=True)
class CommandResult:
    command: str
    exit_code: int | None
    stdout_tail: str = ""
    stderr_tail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def summary(self) -> str:
        if self.exit_code is None:
            return f"`{self.command}` did not finish: {self.stderr_tail}"
        tail = self.stderr_tail or self.stdout_tail
        return f"`{self.command}` exited with {self.exit_code}" + (f": {tail}" if tail else "")


async def run_step(
    step: InitStep,
    *,
    cwd: Path | None = None,
    timeout_seconds: float = 60.0,
    env: dict[str, str] | None = None,
) -> CommandResult:
    description = step.describe()
    if step.kind == "command":
        argv = [step.program, *step.args]
    else:
        argv = [step.shell, "-c", step.script]
    process_env = {**os.environ, **env} if env else None
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return CommandResult(command=description, exit_code=None, stderr_tail=str(exc))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(
            command=description,
            exit_code=None,
            stderr_tail=f"timed out after {timeout_seconds:.1f}s",
        )
    return CommandResult(
        command=description,
        exit_code=proc.returncode,
        stdout_tail=stdout.decode("utf-8", errors="replace").strip()[-1000:],
        stderr_tail=stderr.decode("utf-8", errors="replace").strip()[-1000:],
    )


class HealthChecker(ABC):
    @abstractmethod
    async def check(self, init_plan: InitPlan) -> CheckOutcome:
        """Decide whether the environment is fit for a task-iteration run."""


class NoopHealthChecker(HealthChecker):
    async def check(self, init_plan: InitPlan) -> CheckOutcome:
        return CheckOutcome.ok("health check skipped")


class CommandHealthChecker(HealthChecker):
    """Runs every init-plan step in order and fails on the first non-zero exit."""

    def __init__(self, *, cwd: Path | None = None, timeout_seconds: float = 60.0) -> None:
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    async def check(self, init_plan: InitPlan) -> CheckOutcome:
        for step in init_plan.steps:
            result = await run_step(step, cwd=self.cwd, timeout_seconds=self.timeout_seconds)
            logger.debug(
                "health.step_finished", command=result.command, exit_code=result.exit_code
            )
            if not result.succeeded:
                return CheckOutcome.fail(result.summary())
        return CheckOutcome.ok(f"{len(init_plan.steps)} init step(s) passed")


class OutcomeValidator(ABC):
    @abstractmethod
    async def validate(self, turn: ChatTurnResult, feature: FeatureRecord) -> CheckOutcome:
        """Decide whether ``turn`` demonstrably completed ``feature``."""


class AcceptAllValidator(OutcomeValidator):
    """Accepts every turn. Only meant for tests and dry runs."""

    async def validate(self, turn: ChatTurnResult, feature: FeatureRecord) -> CheckOutcome:
        return CheckOutcome.ok()


class MarkerOutcomeValidator(OutcomeValidator):
    def __init__(self, marker: str = "FEATURE_COMPLETE") -> None:
        self.marker = marker

    def expected(self, feature: FeatureRecord) -> str:
        return f"{self.marker}: {feature.id}"

    async def validate(self, turn: ChatTurnResult, feature: FeatureRecord) -> CheckOutcome:
        if turn.tool_round_limit_reached:
            return CheckOutcome.fail("turn stopped at the tool round limit")
        if self.expected(feature) in turn.assistant_message:
            return CheckOutcome.ok()
        return CheckOutcome.fail(f"assistant did not report '{self.expected(feature)}'")


class CommandOutcomeValidator(OutcomeValidator):
    """Runs a verification command; exit code 0 accepts the feature.

    The command sees the feature id in ``RELAY_FEATURE_ID``.
    """

    def __init__(
        self,
        command: str,
        *,
        cwd: Path | None = None,
        timeout_seconds: float = 600.0,
    ) -> None:
        self.step = InitStep.parse(command)
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    async def validate(self, turn: ChatTurnResult, feature: FeatureRecord) -> CheckOutcome:
        result = await run_step(
            self.step,
            cwd=self.cwd,
            timeout_seconds=self.timeout_seconds,
            env={"RELAY_FEATURE_ID": feature.id},
        )
        if result.succeeded:
            return CheckOutcome.ok(result.summary())
        return CheckOutcome.fail(result.summary())


class FeatureSelector(ABC):
    @abstractmethod
    def select(self, features: list[FeatureRecord]) -> FeatureRecord | None:
        """Pick the feature this run works on, or None."""


class FirstPendingFeatureSelector(FeatureSelector):
    def select(self, features: list[FeatureRecord]) -> FeatureRecord | None:
        for feature in features:
            if not feature.passes:
                return feature
        return None

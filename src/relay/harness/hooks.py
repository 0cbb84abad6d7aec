from __future__ import annotations

from abc import ABC, abstractmethod

import structlog

from relay.harness.errors import HarnessError
from relay.harness.types import HarnessPhase

logger = structlog.get_logger(__name__)


class HarnessHooks(ABC):
    """Phase lifecycle observer. Implementations must not affect control flow."""

    @abstractmethod
    def on_phase_start(self, phase: HarnessPhase, session_id: str, run_id: str) -> None: ...

    @abstractmethod
    def on_phase_success(
        self, phase: HarnessPhase, session_id: str, run_id: str, elapsed: float
    ) -> None: ...

    @abstractmethod
    def on_phase_failure(
        self,
        phase: HarnessPhase,
        session_id: str,
        run_id: str,
        error: HarnessError,
        elapsed: float,
    ) -> None: ...


class NoopHarnessHooks(HarnessHooks):
    def on_phase_start(self, phase: HarnessPhase, session_id: str, run_id: str) -> None:
        pass

    def on_phase_success(
        self, phase: HarnessPhase, session_id: str, run_id: str, elapsed: float
    ) -> None:
        pass

    def on_phase_failure(
        self,
        phase: HarnessPhase,
        session_id: str,
        run_id: str,
        error: HarnessError,
        elapsed: float,
    ) -> None:
        pass


class LoggingHarnessHooks(HarnessHooks):
    def on_phase_start(self, phase: HarnessPhase, session_id: str, run_id: str) -> None:
        logger.info("harness.phase_started", phase=phase, session_id=session_id, run_id=run_id)

    def on_phase_success(
        self, phase: HarnessPhase, session_id: str, run_id: str, elapsed: float
    ) -> None:
        logger.info(
            "harness.phase_succeeded",
            phase=phase,
            session_id=session_id,
            run_id=run_id,
            elapsed_ms=round(elapsed * 1000),
        )

    def on_phase_failure(
        self,
        phase: HarnessPhase,
        session_id: str,
        run_id: str,
        error: HarnessError,
        elapsed: float,
    ) -> None:
        logger.error(
            "harness.phase_failed",
            phase=phase,
            session_id=session_id,
            run_id=run_id,
            kind=error.kind,
            error=str(error),
            elapsed_ms=round(elapsed * 1000),
        )


class SafeHarnessHooks(HarnessHooks):
    """Wraps another observer and logs, rather than propagates, its exceptions."""

    def __init__(self, inner: HarnessHooks) -> None:
        self.inner = inner

    @staticmethod
    def _report(callback: str, exc: Exception) -> None:
        logger.warning("harness.hook_failed", callback=callback, error=repr(exc))

    def on_phase_start(self, phase: HarnessPhase, session_id: str, run_id: str) -> None:
        try:
            self.inner.on_phase_start(phase, session_id, run_id)
        except Exception as exc:
            self._report("on_phase_start", exc)

    def on_phase_success(
        self, phase: HarnessPhase, session_id: str, run_id: str, elapsed: float
    ) -> None:
        try:
            self.inner.on_phase_success(phase, session_id, run_id, elapsed)
        except Exception as exc:
            self._report("on_phase_success", exc)

    def on_phase_failure(
        self,
        phase: HarnessPhase,
        session_id: str,
        run_id: str,
        error: HarnessError,
        elapsed: float,
    ) -> None:
        try:
            self.inner.on_phase_failure(phase, session_id, run_id, error, elapsed)
        except Exception as exc:
            self._report("on_phase_failure", exc)

from __future__ import annotations

from typing import Literal

from relay.memory.base import MemoryStoreError

HarnessErrorKind = Literal[
    "invalid_request",
    "memory",
    "chat",
    "validation",
    "health_check",
    "not_ready",
]


class HarnessError(RuntimeError):
    """Typed failure of an initializer or task-iteration run.

    ``secondary`` holds the error raised while recording the failure itself,
    for example when the failed checkpoint could not be written.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: HarnessErrorKind,
        retryable: bool = False,
        secondary: HarnessError | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.retryable = retryable
        self.secondary = secondary

    def __str__(self) -> str:
        if self.secondary is None:
            return self.message
        return f"{self.message} (recording the failure also failed: {self.secondary.message})"

    @classmethod
    def invalid_request(cls, message: str) -> HarnessError:
        return cls(message, kind="invalid_request")

    @classmethod
    def validation(cls, message: str) -> HarnessError:
        return cls(message, kind="validation")

    @classmethod
    def health_check(cls, message: str) -> HarnessError:
        return cls(message, kind="health_check")

    @classmethod
    def not_ready(cls, message: str) -> HarnessError:
        return cls(message, kind="not_ready")

    @classmethod
    def chat(cls, message: str, *, retryable: bool = False) -> HarnessError:
        return cls(message, kind="chat", retryable=retryable)

    @classmethod
    def from_memory(cls, exc: MemoryStoreError) -> HarnessError:
        kind: HarnessErrorKind = "invalid_request" if exc.kind == "invalid_request" else "memory"
        return cls(str(exc), kind=kind, retryable=exc.kind == "storage")

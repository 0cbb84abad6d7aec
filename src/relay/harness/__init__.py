from relay.harness.errors import HarnessError
from relay.harness.harness import (
    Harness,
    HarnessBuilder,
    build_feature_prompt,
    select_phase,
    starter_features,
)
from relay.harness.hooks import (
    HarnessHooks,
    LoggingHarnessHooks,
    NoopHarnessHooks,
    SafeHarnessHooks,
)
from relay.harness.strategies import (
    AcceptAllValidator,
    CheckOutcome,
    CommandHealthChecker,
    CommandOutcomeValidator,
    FeatureSelector,
    FirstPendingFeatureSelector,
    HealthChecker,
    MarkerOutcomeValidator,
    NoopHealthChecker,
    OutcomeValidator,
)
from relay.harness.types import (
    InitializerRequest,
    InitializerResult,
    RunPolicy,
    RuntimeRunOutcome,
    RuntimeRunRequest,
    TaskIterationRequest,
    TaskIterationResult,
)

__all__ = [
    "AcceptAllValidator",
    "CheckOutcome",
    "CommandHealthChecker",
    "CommandOutcomeValidator",
    "FeatureSelector",
    "FirstPendingFeatureSelector",
    "Harness",
    "HarnessBuilder",
    "HarnessError",
    "HarnessHooks",
    "HealthChecker",
    "InitializerRequest",
    "InitializerResult",
    "LoggingHarnessHooks",
    "MarkerOutcomeValidator",
    "NoopHarnessHooks",
    "NoopHealthChecker",
    "OutcomeValidator",
    "RunPolicy",
    "RuntimeRunOutcome",
    "RuntimeRunRequest",
    "SafeHarnessHooks",
    "TaskIterationRequest",
    "TaskIterationResult",
    "build_feature_prompt",
    "select_phase",
    "starter_features",
]

"""Planning and convergence engine."""

from converge.engine.adapters import AdapterContext, ProviderAdapter
from converge.engine.driver import Driver
from converge.engine.errors import (
    AdapterError,
    ApplyCanceled,
    ConflictError,
    CycleError,
    DependencyCycleError,
    EngineError,
    PermanentError,
    StateLockError,
    TransientError,
    UnknownKindError,
    ValidationError,
)
from converge.engine.executor import Executor
from converge.engine.planner import Planner
from converge.engine.registry import KindRegistration, KindRegistry
from converge.engine.retry import RetryPolicy
from converge.engine.store import StateStore
from converge.engine.types import (
    Action,
    ApplyResult,
    ChangePlan,
    ChangeStep,
    RunReport,
    StepResult,
    StepStatus,
)

__all__ = [
    "Action",
    "AdapterContext",
    "AdapterError",
    "ApplyCanceled",
    "ApplyResult",
    "ChangePlan",
    "ChangeStep",
    "ConflictError",
    "CycleError",
    "DependencyCycleError",
    "Driver",
    "EngineError",
    "Executor",
    "KindRegistration",
    "KindRegistry",
    "PermanentError",
    "Planner",
    "ProviderAdapter",
    "RetryPolicy",
    "RunReport",
    "StateLockError",
    "StateStore",
    "StepResult",
    "StepStatus",
    "TransientError",
    "UnknownKindError",
    "ValidationError",
]

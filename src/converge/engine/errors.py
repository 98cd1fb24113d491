"""Engine error types."""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base exception for engine errors."""


class UnknownKindError(EngineError):
    """Raised when a resource kind has no registration/adapter."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"Unknown resource kind: {kind}")
        self.kind = kind


class DependencyCycleError(EngineError):
    """Raised when dependencies contain a cycle."""

    def __init__(self, identities: list[str]) -> None:
        msg = "Dependency cycle detected"
        if identities:
            msg += f": {', '.join(identities)}"
        super().__init__(msg)
        self.identities = identities


CycleError = DependencyCycleError


class StateLockError(EngineError):
    """Raised when a state lock cannot be acquired or released."""


class ValidationError(EngineError):
    """One or more resources failed validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)


class ApplyCanceled(EngineError):
    """Raised when a run is interrupted a second time after a graceful cancel."""


# ---------------------------------------------------------------------------
# Adapter errors
# ---------------------------------------------------------------------------


class AdapterError(EngineError):
    """Base class for errors reported by provider adapters."""

    def __init__(self, message: str, *, identity: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.identity = identity
        self.details = details


class TransientError(AdapterError):
    """Network failure, timeout or throttling. The caller may retry."""


class ConflictError(AdapterError):
    """The resource was modified concurrently. The caller must re-plan."""


class PermanentError(AdapterError):
    """Invalid input or missing permission. The caller must not retry."""

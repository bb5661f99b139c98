"""
shipyard — error taxonomy

Purpose
- Typed failures raised by the orchestrator core and recorded on stage results.

Functional requirements
- Definition errors are raised before any run starts and are never retried.
- Every error kind maps to an ``ErrorKind`` tag persisted with the stage result.
- Error messages never include resolved secret values.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure attribution recorded on terminal stage results."""

    DEFINITION = "DefinitionError"
    SECRET_NOT_FOUND = "SecretNotFoundError"
    STEP_EXECUTION = "StepExecutionError"
    TIMEOUT = "Timeout"
    CANCELLED = "CancelledError"
    DEPENDENCY_FAILED = "DependencyFailed"
    INTERNAL = "InternalError"


class ShipyardError(RuntimeError):
    """Base class for orchestrator failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    @property
    def retryable(self) -> bool:
        return False


class DefinitionError(ShipyardError, ValueError):
    """Pipeline definition is invalid and must be rejected before any run."""

    kind = ErrorKind.DEFINITION

    def __init__(self, message: str, *, path: str | None = None) -> None:
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class CycleError(DefinitionError):
    """Raised when ``needs`` relationships contain one or more cycles."""

    def __init__(self, cycles: Iterable[Sequence[str]]) -> None:
        normalized = tuple(tuple(cycle) for cycle in cycles)
        self.cycles = normalized
        rendered = "; ".join(" -> ".join(cycle) for cycle in normalized) or "<unknown>"
        super().__init__(f"Stage graph contains cycle(s): {rendered}")


class UnknownDependencyError(DefinitionError):
    """Raised when a stage ``needs`` a stage that is not defined."""

    def __init__(self, stage: str, missing: str) -> None:
        self.stage = stage
        self.missing = missing
        super().__init__(f"stage {stage!r} needs undefined stage {missing!r}")


class SecretNotFoundError(ShipyardError):
    """Raised by secret stores for undeclared secret names."""

    kind = ErrorKind.SECRET_NOT_FOUND

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"secret {name!r} is not declared in the secret store")


class StepExecutionError(ShipyardError):
    """A step exited non-zero or could not be launched."""

    kind = ErrorKind.STEP_EXECUTION

    def __init__(self, step: str, message: str, *, exit_code: int | None = None) -> None:
        self.step = step
        self.exit_code = exit_code
        super().__init__(f"step {step!r} {message}")

    @property
    def retryable(self) -> bool:
        return True


class StepTimeoutError(StepExecutionError):
    """A step exceeded its configured timeout and was terminated."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, step: str, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(step, f"timed out after {timeout_seconds:g}s")


class RunCancelledError(ShipyardError):
    """A run or stage ended because of an external cancel request."""

    kind = ErrorKind.CANCELLED

    def __init__(self, reason: str = "cancel requested") -> None:
        self.reason = reason
        super().__init__(reason)


__all__ = [
    "CycleError",
    "DefinitionError",
    "ErrorKind",
    "RunCancelledError",
    "SecretNotFoundError",
    "ShipyardError",
    "StepExecutionError",
    "StepTimeoutError",
    "UnknownDependencyError",
]

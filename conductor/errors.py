"""
Conductor error taxonomy.

Only ConfigurationError, ConflictError, InvalidTransitionError and
InputValidationError ever reach a caller. TransientStepError and
FatalStepError describe one failed step attempt; the engine records them
in the task history instead of raising them out of the loop.
"""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(ConductorError):
    """The plan cannot be executed at all (cycle, unknown action, bad reference)."""


class TransientStepError(ConductorError):
    """A tool error, timeout or transport failure. Subject to the retry policy."""

    def __init__(self, step_id: str, kind: str, message: str):
        super().__init__(f"{step_id}: {kind}: {message}")
        self.step_id = step_id
        self.kind = kind
        self.message = message


class FatalStepError(ConductorError):
    """Retries for a step are exhausted (or the failure is not retryable)."""

    def __init__(self, step_id: str, message: str, attempt: int | None = None):
        super().__init__(f"Step {step_id} failed: {message}")
        self.step_id = step_id
        self.message = message
        self.attempt = attempt


class MissingInputError(ConductorError):
    """Raised internally when a step cannot run until the user supplies data."""

    def __init__(self, missing: list):
        fields = ", ".join(f"{m.step}.{m.field}" for m in missing)
        super().__init__(f"Missing input: {fields}")
        self.missing = missing


class ConflictError(ConductorError):
    """Optimistic-lock collision on a task record."""


class TaskNotFoundError(ConductorError):
    pass


class PlanNotFoundError(ConductorError):
    pass


class InvalidTransitionError(ConductorError):
    """A task status change that the lifecycle does not allow."""


class InputValidationError(ConductorError):
    """Resume inputs that do not match the task's pending inputs."""

    def __init__(self, message: str, rejected: list[tuple[str, str]] | None = None):
        super().__init__(message)
        self.rejected = rejected or []

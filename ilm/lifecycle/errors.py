"""
Error hierarchy for the ILM engine.

Validation and configuration errors are raised synchronously to the caller.
Tracking, evaluation, execution and merge errors are caught per item at the
batch boundary and recorded in audit rows and result objects.
"""

from __future__ import annotations


class IlmError(Exception):
    """Base class for all ILM errors."""


# =============================================================================
# Write-time validation
# =============================================================================


class ValidationError(IlmError, ValueError):
    """A policy or profile definition was rejected before persistence."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ObjectNotFound(ValidationError):
    pass


class ObjectNotPartitioned(ValidationError):
    pass


class InvalidLocation(ValidationError):
    pass


class InvalidCodec(ValidationError):
    pass


class IncompatibleAction(ValidationError):
    pass


class MissingRequiredParameter(ValidationError):
    pass


class NoTriggerCondition(ValidationError):
    pass


class InvalidTriggerValue(ValidationError):
    pass


class InvalidCustomCondition(ValidationError):
    pass


class PriorityOutOfRange(ValidationError):
    pass


class DuplicatePolicyName(ValidationError):
    pass


class PolicyNotFound(ValidationError):
    pass


class ProfileNotFound(ValidationError):
    pass


class InvalidThresholdProfile(ValidationError):
    pass


class ProfileInUse(ValidationError):
    """A profile cannot be deleted while policies reference it."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(IlmError):
    """Required configuration is missing or malformed."""


class InvalidTierConfig(ConfigurationError, ValueError):
    """A tier configuration is structurally invalid."""


# =============================================================================
# Batch errors (caught per item)
# =============================================================================


class TrackingError(IlmError):
    """A single partition could not be tracked."""


class EvaluationError(IlmError):
    """A single policy could not be evaluated."""


class ExecutionError(IlmError):
    """A single queued action failed."""


class MergeError(IlmError):
    """A single merge attempt failed."""


class LockTimeoutError(ExecutionError, MergeError):
    """A lock could not be obtained in time. Retried on the next run."""

    def __init__(self, lock_key: str, timeout_seconds: float):
        super().__init__(f"Timed out after {timeout_seconds:g}s waiting for lock {lock_key}")
        self.lock_key = lock_key
        self.timeout_seconds = timeout_seconds

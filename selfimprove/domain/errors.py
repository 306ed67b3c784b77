"""
Error taxonomy for the self-improvement loop.

Two families live here:
- Failures (configuration, allowlist, pipe, storage, rollback) raised where
  they happen and absorbed or escalated at phase boundaries.
- Blocked outcomes (analysis, execution, learning) that are expected business
  results. They are exceptions so they can travel inside `Result.err(...)`.
"""

from enum import Enum
from typing import Any


class SelfImprovementError(Exception):
    """Base class for every error raised by the loop."""


class ConfigurationError(SelfImprovementError):
    """Invalid configuration detected at startup. Prevents the loop from starting."""


class InvalidStatusTransition(SelfImprovementError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move diagnosis from {current} to {target}")
        self.current = current
        self.target = target


# Allowlist


class AllowlistError(SelfImprovementError):
    """A proposed action was rejected by the allowlist. Never fatal."""


class UnknownActionKind(AllowlistError):
    def __init__(self, kind: str) -> None:
        super().__init__(f"Action kind '{kind}' is not registered")
        self.kind = kind


class UnknownTarget(AllowlistError):
    def __init__(self, kind: str, target: str) -> None:
        super().__init__(f"'{target}' is not an allowed target for {kind}")
        self.kind = kind
        self.target = target


class ParamOutOfBounds(AllowlistError):
    def __init__(self, param: str, min: float, max: float, got: float) -> None:
        super().__init__(f"{param}={got} outside allowed range [{min}, {max}]")
        self.param = param
        self.min = min
        self.max = max
        self.got = got


class StepTooLarge(AllowlistError):
    def __init__(self, param: str, change: float, max_step: float) -> None:
        super().__init__(f"{param} change of {change} exceeds max step {max_step}")
        self.param = param
        self.change = change
        self.max_step = max_step


class StaleAction(AllowlistError):
    """The action was built against a value that is no longer live."""

    def __init__(self, target: str, live: str, assumed: str) -> None:
        super().__init__(f"{target} is {live} now, the action assumed {assumed}")
        self.target = target
        self.live = live
        self.assumed = assumed


class TypeMismatch(AllowlistError):
    def __init__(self, param: str, expected: str, got: str) -> None:
        super().__init__(f"{param} expects {expected}, got {got}")
        self.param = param
        self.expected = expected
        self.got = got


class IllegalValue(AllowlistError):
    def __init__(self, param: str, allowed: list[str], got: str) -> None:
        super().__init__(f"{param}={got} is not one of {', '.join(allowed)}")
        self.param = param
        self.allowed = allowed
        self.got = got


# External pipes


class PipeError(SelfImprovementError):
    """A reasoning pipe call failed. Degrades the owning phase."""

    def __init__(self, pipe: str, message: str) -> None:
        super().__init__(f"Pipe '{pipe}': {message}")
        self.pipe = pipe


class PipeTimeoutError(PipeError):
    def __init__(self, pipe: str, timeout_ms: int) -> None:
        super().__init__(pipe, f"timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms


class PipeHttpError(PipeError):
    pass


class PipeParseError(PipeError):
    pass


# Storage, breaker, rollback


class StorageError(SelfImprovementError):
    """Persistence failed. Counts as a cycle failure."""


class CircuitOpenError(SelfImprovementError):
    """Automation is halted by the circuit breaker. Expected, not exceptional."""

    def __init__(self, remaining_secs: float | None) -> None:
        detail = f", {remaining_secs:.0f}s until recovery" if remaining_secs is not None else ""
        super().__init__(f"Circuit breaker is open{detail}")
        self.remaining_secs = remaining_secs


class RollbackFailure(SelfImprovementError):
    """A regressed action could not be reverted. Requires operator intervention."""

    def __init__(self, action_id: str, reason: str) -> None:
        super().__init__(f"Rollback of {action_id} failed: {reason}")
        self.action_id = action_id
        self.reason = reason


# Blocked outcomes


class AnalysisBlockReason(str, Enum):
    CIRCUIT_OPEN = "circuit_open"
    PENDING_QUEUE_FULL = "pending_queue_full"
    SEVERITY_BELOW_THRESHOLD = "severity_below_threshold"
    PIPE_TIMEOUT = "pipe_timeout"
    PIPE_ERROR = "pipe_error"


class ExecutionBlockReason(str, Enum):
    CIRCUIT_OPEN = "circuit_open"
    RATE_LIMITED = "rate_limited"
    IN_COOLDOWN = "in_cooldown"
    ALLOWLIST_REJECTED = "allowlist_rejected"
    REQUIRES_APPROVAL = "requires_approval"
    NO_OP_ACTION = "no_op_action"


class LearningBlockReason(str, Enum):
    INSUFFICIENT_SAMPLES = "insufficient_samples"
    EXECUTION_NOT_COMPLETED = "execution_not_completed"
    PIPE_UNAVAILABLE = "pipe_unavailable"


class _Blocked(SelfImprovementError):
    def __init__(self, reason: Enum, message: str, **details: Any) -> None:
        super().__init__(f"{reason.value}: {message}")
        self.reason = reason
        self.message = message
        self.details = details


class AnalysisBlocked(_Blocked):
    """The analyzer declined to produce an actionable diagnosis.

    `diagnosis` is set when a diagnosis was still recorded (severity below the
    action threshold, or a pipe failure degraded it to "observed, no action").
    """

    def __init__(
        self,
        reason: AnalysisBlockReason,
        message: str,
        diagnosis: Any = None,
        **details: Any,
    ) -> None:
        super().__init__(reason, message, **details)
        self.diagnosis = diagnosis


class ExecutionBlocked(_Blocked):
    def __init__(self, reason: ExecutionBlockReason, message: str, **details: Any) -> None:
        super().__init__(reason, message, **details)


class LearningBlocked(_Blocked):
    def __init__(self, reason: LearningBlockReason, message: str, **details: Any) -> None:
        super().__init__(reason, message, **details)

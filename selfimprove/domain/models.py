"""
Domain models for the self-improvement loop.

These models are the shared vocabulary of every phase (monitor, analyzer,
executor, learner) and of storage. They carry no loop behavior; the few helpers
here only derive values from their own fields.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, ClassVar, Literal, NewType
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from selfimprove.domain.errors import InvalidStatusTransition

DiagnosisId = NewType("DiagnosisId", str)
ActionId = NewType("ActionId", str)


def new_diagnosis_id() -> DiagnosisId:
    return DiagnosisId(f"diag_{uuid4()}")


def new_action_id() -> ActionId:
    return ActionId(f"action_{uuid4()}")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Severity(str, Enum):
    """Ordered severity of a detected degradation."""

    INFO = "info"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "Severity") -> bool:
        return self.rank >= other.rank

    @classmethod
    def from_deviation(cls, deviation_pct: float) -> "Severity":
        """Map an absolute deviation from baseline (in percent) to a severity."""
        deviation = abs(deviation_pct)
        if deviation >= 100.0:
            return cls.CRITICAL
        if deviation >= 50.0:
            return cls.HIGH
        if deviation >= 25.0:
            return cls.WARNING
        return cls.INFO

    @classmethod
    def most_severe(cls, *severities: "Severity") -> "Severity":
        return max(severities, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class MonitoredMetric(str, Enum):
    """The fixed set of metrics the loop watches."""

    ERROR_RATE = "error_rate"
    LATENCY_P95 = "latency_p95_ms"
    QUALITY_SCORE = "quality_score"
    FALLBACK_RATE = "fallback_rate"

    @property
    def inverted(self) -> bool:
        """True when a lower value is worse (quality)."""
        return self is MonitoredMetric.QUALITY_SCORE


class TriggerLevel(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"
    INSUFFICIENT_DATA = "insufficient_data"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class ResourceType(str, Enum):
    MAX_CONCURRENT_REQUESTS = "max_concurrent_requests"
    CONNECTION_POOL_SIZE = "connection_pool_size"
    CACHE_SIZE = "cache_size"
    TIMEOUT_MS = "timeout_ms"
    MAX_RETRIES = "max_retries"
    RETRY_DELAY_MS = "retry_delay_ms"


class ServiceComponent(str, Enum):
    PIPE_CLIENT = "pipe_client"
    STORAGE = "storage"
    REASONING_ENGINE = "reasoning_engine"
    REQUEST_HANDLER = "request_handler"


class InvocationEvent(BaseModel):
    """Outcome of a single served request, as reported by request handlers."""

    model_config = ConfigDict(frozen=True)

    tool_name: str = Field(default="unknown", description="Tool or endpoint that was invoked")
    success: bool
    latency_ms: float = Field(ge=0.0)
    quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    fallback_used: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)


class MetricsSnapshot(BaseModel):
    """Aggregated metrics over one window. Bounds every executed action."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=_utcnow)
    error_rate: float = Field(ge=0.0, le=1.0)
    latency_p95_ms: float = Field(ge=0.0)
    quality_score: float = Field(ge=0.0, le=1.0)
    fallback_rate: float = Field(ge=0.0, le=1.0)
    sample_count: int = Field(ge=0)

    def value_of(self, metric: MonitoredMetric) -> float:
        return float(getattr(self, metric.value))

    @classmethod
    def empty(cls) -> "MetricsSnapshot":
        return cls(
            error_rate=0.0,
            latency_p95_ms=0.0,
            quality_score=1.0,
            fallback_rate=0.0,
            sample_count=0,
        )


class BaselineSnapshot(BaseModel):
    """Point-in-time view of one metric's adaptive baseline."""

    model_config = ConfigDict(frozen=True)

    metric: MonitoredMetric
    ema_value: float | None
    rolling_avg: float | None
    sample_count: int = Field(ge=0)
    is_valid: bool
    warning_threshold: float | None = None
    critical_threshold: float | None = None


class BaselinesSnapshot(BaseModel):
    """Baselines of every monitored metric, persisted after each cycle."""

    model_config = ConfigDict(frozen=True)

    metrics: dict[MonitoredMetric, BaselineSnapshot] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=_utcnow)

    def reference(self, metric: MonitoredMetric) -> float | None:
        """EMA reference value for a metric, or None if it has never been fed."""
        snapshot = self.metrics.get(metric)
        return snapshot.ema_value if snapshot else None


class TriggerMetric(BaseModel):
    """A monitored metric that crossed a threshold or its adaptive baseline."""

    model_config = ConfigDict(frozen=True)

    metric: MonitoredMetric
    observed: float
    baseline: float
    threshold: float
    level: TriggerLevel = TriggerLevel.WARNING
    severity: Severity = Severity.WARNING
    source: Literal["threshold", "baseline"] = "threshold"

    def deviation_pct(self) -> float:
        """Deviation from baseline in percent, positive meaning worse."""
        if self.baseline == 0.0:
            return 100.0 if self.observed > 0.0 else 0.0
        if self.metric.inverted:
            return (self.baseline - self.observed) / self.baseline * 100.0
        return (self.observed - self.baseline) / self.baseline * 100.0


class HealthReport(BaseModel):
    """Result of one monitor check."""

    model_config = ConfigDict(frozen=True)

    current: MetricsSnapshot
    baselines: BaselinesSnapshot
    triggers: list[TriggerMetric] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_healthy(self) -> bool:
        return not self.triggers

    @property
    def most_severe_trigger(self) -> TriggerMetric | None:
        if not self.triggers:
            return None
        return max(self.triggers, key=lambda t: (t.severity.rank, t.deviation_pct()))

    @property
    def needs_action(self) -> bool:
        return any(t.severity.at_least(Severity.WARNING) for t in self.triggers)


# Configuration values and scopes


class ParamKind(str, Enum):
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    DURATION_MS = "duration_ms"
    BOOLEAN = "boolean"


class ParamValue(BaseModel):
    """A typed configuration value."""

    model_config = ConfigDict(frozen=True)

    kind: ParamKind
    value: bool | int | float | str

    @model_validator(mode="after")
    def value_matches_kind(self) -> "ParamValue":
        value = self.value
        if self.kind in (ParamKind.INTEGER, ParamKind.DURATION_MS):
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif self.kind is ParamKind.FLOAT:
            ok = isinstance(value, int | float) and not isinstance(value, bool)
        elif self.kind is ParamKind.BOOLEAN:
            ok = isinstance(value, bool)
        else:
            ok = isinstance(value, str)
        if not ok:
            raise ValueError(f"value {value!r} is not a valid {self.kind.value}")
        return self

    @classmethod
    def integer(cls, value: int) -> "ParamValue":
        return cls(kind=ParamKind.INTEGER, value=value)

    @classmethod
    def floating(cls, value: float) -> "ParamValue":
        return cls(kind=ParamKind.FLOAT, value=float(value))

    @classmethod
    def duration_ms(cls, value: int) -> "ParamValue":
        return cls(kind=ParamKind.DURATION_MS, value=value)

    @classmethod
    def boolean(cls, value: bool) -> "ParamValue":
        return cls(kind=ParamKind.BOOLEAN, value=value)

    @classmethod
    def string(cls, value: str) -> "ParamValue":
        return cls(kind=ParamKind.STRING, value=value)

    @property
    def is_numeric(self) -> bool:
        return self.kind in (ParamKind.INTEGER, ParamKind.FLOAT, ParamKind.DURATION_MS)

    def as_float(self) -> float | None:
        if not self.is_numeric:
            return None
        return float(self.value)

    def __str__(self) -> str:
        if self.kind is ParamKind.BOOLEAN:
            return "true" if self.value else "false"
        return str(self.value)


class ConfigScopeKind(str, Enum):
    ENVIRONMENT = "environment"
    CONFIG_FILE = "config_file"
    RUNTIME = "runtime"


class ConfigScope(BaseModel):
    """Where a configuration change lands."""

    model_config = ConfigDict(frozen=True)

    kind: ConfigScopeKind = ConfigScopeKind.RUNTIME
    path: str | None = None

    @model_validator(mode="after")
    def path_only_for_files(self) -> "ConfigScope":
        if self.kind is ConfigScopeKind.CONFIG_FILE and not self.path:
            raise ValueError("config_file scope requires a path")
        if self.kind is not ConfigScopeKind.CONFIG_FILE and self.path is not None:
            raise ValueError(f"{self.kind.value} scope does not take a path")
        return self

    @classmethod
    def runtime(cls) -> "ConfigScope":
        return cls(kind=ConfigScopeKind.RUNTIME)

    @classmethod
    def environment(cls) -> "ConfigScope":
        return cls(kind=ConfigScopeKind.ENVIRONMENT)

    @classmethod
    def config_file(cls, path: str) -> "ConfigScope":
        return cls(kind=ConfigScopeKind.CONFIG_FILE, path=path)

    def __str__(self) -> str:
        return f"config_file:{self.path}" if self.path else self.kind.value


# Suggested actions (closed set of tagged variants)


class ActionKind(str, Enum):
    ADJUST_PARAM = "adjust_param"
    TOGGLE_FEATURE = "toggle_feature"
    RESTART_SERVICE = "restart_service"
    CLEAR_CACHE = "clear_cache"
    SCALE_RESOURCE = "scale_resource"
    NO_OP = "no_op"


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    reversible: ClassVar[bool] = True

    @property
    def action_kind(self) -> ActionKind:
        return ActionKind(getattr(self, "kind"))

    def signature(self) -> str:
        """Stable key used to group effectiveness history."""
        return self.action_kind.value

    def describe(self) -> str:
        return self.signature()


class AdjustParamAction(_ActionBase):
    kind: Literal["adjust_param"] = "adjust_param"
    key: str
    old_value: ParamValue
    new_value: ParamValue
    scope: ConfigScope = Field(default_factory=ConfigScope.runtime)

    def signature(self) -> str:
        old, new = self.old_value.as_float(), self.new_value.as_float()
        if old is None or new is None:
            direction = "change"
        else:
            direction = "increase" if new > old else "decrease"
        return f"adjust_param:{self.key}:{direction}"

    def describe(self) -> str:
        return f"set {self.key} {self.old_value} -> {self.new_value} ({self.scope})"


class ToggleFeatureAction(_ActionBase):
    kind: Literal["toggle_feature"] = "toggle_feature"
    feature_name: str
    desired_state: bool
    reason: str = ""

    def signature(self) -> str:
        return f"toggle_feature:{self.feature_name}:{str(self.desired_state).lower()}"

    def describe(self) -> str:
        state = "on" if self.desired_state else "off"
        return f"turn {self.feature_name} {state}"


class RestartServiceAction(_ActionBase):
    kind: Literal["restart_service"] = "restart_service"
    reversible: ClassVar[bool] = False
    component: ServiceComponent
    graceful: bool = True

    def signature(self) -> str:
        return f"restart_service:{self.component.value}"


class ClearCacheAction(_ActionBase):
    kind: Literal["clear_cache"] = "clear_cache"
    reversible: ClassVar[bool] = False
    cache_name: str

    def signature(self) -> str:
        return f"clear_cache:{self.cache_name}"


class ScaleResourceAction(_ActionBase):
    kind: Literal["scale_resource"] = "scale_resource"
    resource: ResourceType
    old_value: int = Field(ge=0)
    new_value: int = Field(ge=0)

    def signature(self) -> str:
        direction = "increase" if self.new_value > self.old_value else "decrease"
        return f"scale_resource:{self.resource.value}:{direction}"

    def describe(self) -> str:
        return f"scale {self.resource.value} {self.old_value} -> {self.new_value}"


class NoOpAction(_ActionBase):
    kind: Literal["no_op"] = "no_op"
    reason: str = "No action required"
    revisit_after_secs: int = Field(default=0, ge=0)


SuggestedAction = Annotated[
    AdjustParamAction
    | ToggleFeatureAction
    | RestartServiceAction
    | ClearCacheAction
    | ScaleResourceAction
    | NoOpAction,
    Field(discriminator="kind"),
]


# Diagnoses


class DiagnosisStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"

    def can_transition_to(self, target: "DiagnosisStatus") -> bool:
        return target in _STATUS_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _STATUS_TRANSITIONS[self]


_STATUS_TRANSITIONS: dict[DiagnosisStatus, frozenset[DiagnosisStatus]] = {
    DiagnosisStatus.PENDING: frozenset(
        {
            DiagnosisStatus.APPROVED,
            DiagnosisStatus.EXECUTING,
            DiagnosisStatus.REJECTED,
            DiagnosisStatus.SUPERSEDED,
        }
    ),
    DiagnosisStatus.APPROVED: frozenset(
        {DiagnosisStatus.EXECUTING, DiagnosisStatus.REJECTED, DiagnosisStatus.SUPERSEDED}
    ),
    DiagnosisStatus.EXECUTING: frozenset(
        {DiagnosisStatus.COMPLETED, DiagnosisStatus.ROLLED_BACK, DiagnosisStatus.REJECTED}
    ),
    DiagnosisStatus.COMPLETED: frozenset({DiagnosisStatus.ROLLED_BACK}),
    DiagnosisStatus.ROLLED_BACK: frozenset(),
    DiagnosisStatus.REJECTED: frozenset(),
    DiagnosisStatus.SUPERSEDED: frozenset(),
}


class SelfDiagnosis(BaseModel):
    """Links an observed anomaly to a proposed corrective action.

    Immutable except for `status`, which is advanced by building a copy through
    `with_status()`.
    """

    model_config = ConfigDict(frozen=True)

    id: DiagnosisId = Field(default_factory=new_diagnosis_id)
    trigger: TriggerMetric
    severity: Severity
    description: str
    suspected_cause: str
    suggested_action: SuggestedAction | None = None
    action_rationale: str = ""
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[str] = Field(default_factory=list)
    status: DiagnosisStatus = DiagnosisStatus.PENDING
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def observed_value(self) -> float:
        return self.trigger.observed

    @property
    def baseline_value(self) -> float:
        return self.trigger.baseline

    @property
    def is_actionable(self) -> bool:
        return self.suggested_action is not None and not isinstance(
            self.suggested_action, NoOpAction
        )

    def with_status(self, status: DiagnosisStatus) -> "SelfDiagnosis":
        """Copy of this diagnosis moved forward to `status`."""
        if not self.status.can_transition_to(status):
            raise InvalidStatusTransition(self.status.value, status.value)
        return self.model_copy(update={"status": status})


# Outcomes and rewards


class ActionOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    REGRESSED = "regressed"
    INCONCLUSIVE = "inconclusive"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class RewardWeights(BaseModel):
    """Per-metric weights of the composite reward."""

    model_config = ConfigDict(frozen=True)

    error_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    latency: float = Field(default=0.3, ge=0.0, le=1.0)
    quality: float = Field(default=0.2, ge=0.0, le=1.0)
    fallback: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def weights_sum_to_one(self) -> "RewardWeights":
        total = self.error_rate + self.latency + self.quality + self.fallback
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"reward weights must sum to 1.0, got {total:.3f}")
        return self

    @classmethod
    def for_trigger(cls, metric: MonitoredMetric) -> "RewardWeights":
        return _TRIGGER_WEIGHTS[metric]


_TRIGGER_WEIGHTS = {
    MonitoredMetric.ERROR_RATE: RewardWeights(error_rate=0.7, latency=0.2, quality=0.1),
    MonitoredMetric.LATENCY_P95: RewardWeights(error_rate=0.3, latency=0.6, quality=0.1),
    MonitoredMetric.QUALITY_SCORE: RewardWeights(error_rate=0.3, latency=0.2, quality=0.5),
    MonitoredMetric.FALLBACK_RATE: RewardWeights(
        error_rate=0.3, latency=0.2, quality=0.1, fallback=0.4
    ),
}


class RewardBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    error_rate_reward: float = Field(ge=-1.0, le=1.0)
    latency_reward: float = Field(ge=-1.0, le=1.0)
    quality_reward: float = Field(ge=-1.0, le=1.0)
    fallback_reward: float = Field(ge=-1.0, le=1.0)
    weights: RewardWeights


class NormalizedReward(BaseModel):
    """Weighted, per-metric clamped improvement score in [-1, 1]."""

    model_config = ConfigDict(frozen=True)

    value: float = Field(ge=-1.0, le=1.0)
    breakdown: RewardBreakdown
    confidence: float = Field(ge=0.0, le=1.0)

    @property
    def is_positive(self) -> bool:
        return self.value > 0.0

    @property
    def is_negative(self) -> bool:
        return self.value < 0.0


class ActionRecord(BaseModel):
    """Audit record of one executed action, written once per cycle."""

    model_config = ConfigDict(frozen=True)

    id: ActionId
    diagnosis_id: DiagnosisId
    action: SuggestedAction
    metrics_before: MetricsSnapshot
    metrics_after: MetricsSnapshot | None = None
    outcome: ActionOutcome = ActionOutcome.PENDING
    reward: NormalizedReward | None = None
    rollback_reason: str | None = None
    lessons: list[str] = Field(default_factory=list)
    executed_at: datetime = Field(default_factory=_utcnow)
    verified_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def action_kind(self) -> ActionKind:
        return self.action.action_kind


class ActionEffectivenessRecord(BaseModel):
    """Aggregated effectiveness of one action signature."""

    model_config = ConfigDict(frozen=True)

    action_kind: ActionKind
    signature: str
    total_attempts: int = Field(default=0, ge=0)
    successful_attempts: int = Field(default=0, ge=0)
    failed_attempts: int = Field(default=0, ge=0)
    rolled_back_attempts: int = Field(default=0, ge=0)
    avg_reward: float = 0.0
    max_reward: float | None = None
    min_reward: float | None = None
    effectiveness_score: float = 0.0
    first_attempt: datetime = Field(default_factory=_utcnow)
    last_attempt: datetime = Field(default_factory=_utcnow)


# Breaker and system status


class CircuitBreakerSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: CircuitState
    consecutive_failures: int = Field(ge=0)
    consecutive_successes: int = Field(ge=0)
    total_failures: int = Field(ge=0)
    total_successes: int = Field(ge=0)
    last_state_change: datetime
    time_until_recovery_secs: float | None = None


class CycleResult(BaseModel):
    """Outcome of one orchestrated cycle."""

    success: bool
    action_taken: bool = False
    diagnosis: SelfDiagnosis | None = None
    action_record: ActionRecord | None = None
    reward: float | None = None
    lessons: str | None = None
    error: str | None = None
    duration_ms: int = Field(default=0, ge=0)


class SystemStatus(BaseModel):
    """Read-only snapshot for operator-facing status surfaces."""

    enabled: bool
    circuit: CircuitBreakerSummary
    in_cooldown: bool
    cooldown_remaining_secs: float
    paused_until: datetime | None = None
    actions_this_hour: int
    max_actions_per_hour: int
    pending_diagnoses: int
    total_cycles: int
    total_successes: int
    total_rollbacks: int
    last_cycle_at: datetime | None = None
    baselines: BaselinesSnapshot
    recent_actions: list[ActionRecord] = Field(default_factory=list)

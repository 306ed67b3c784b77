"""
Configuration management with environment variable support and validation.

Design principles:
- One immutable config object for the lifetime of the process
- Validation at startup (fail fast with ConfigurationError)
- Type safety with Pydantic
- Conservative defaults (loop disabled, rollback on regression, low action rate)
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from selfimprove.domain.errors import ConfigurationError
from selfimprove.domain.models import MonitoredMetric, RewardWeights, Severity

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class MonitorConfig(BaseModel):
    """Health monitoring thresholds and windows."""

    model_config = ConfigDict(frozen=True)

    check_interval_secs: int = Field(
        default=300, gt=0, description="Seconds between scheduled health checks"
    )
    error_rate_threshold: float = Field(
        default=0.05, gt=0.0, le=1.0, description="Absolute error rate that always triggers"
    )
    latency_threshold_ms: float = Field(
        default=5000.0, gt=0.0, description="Absolute p95 latency that always triggers"
    )
    quality_threshold: float = Field(
        default=0.7, ge=0.0, le=1.0, description="Quality score below which a trigger fires"
    )
    fallback_rate_threshold: float = Field(
        default=0.1, gt=0.0, le=1.0, description="Absolute fallback rate that always triggers"
    )
    min_sample_size: int = Field(
        default=50, gt=0, description="Events required before a window is meaningful"
    )
    aggregation_window_secs: int = Field(
        default=3600, gt=0, description="Maximum age of events kept for aggregation"
    )
    event_buffer_size: int = Field(
        default=10_000, gt=0, description="Maximum buffered invocation events"
    )


class AnalyzerConfig(BaseModel):
    """Diagnosis generation limits."""

    model_config = ConfigDict(frozen=True)

    max_pending_diagnoses: int = Field(default=10, gt=0)
    min_action_severity: Severity = Field(
        default=Severity.WARNING, description="Lowest severity that may produce an action"
    )
    diagnosis_timeout_ms: int = Field(default=30_000, gt=0)
    use_decision_pipe: bool = Field(
        default=True, description="Ask the decision pipe to pick among candidate actions"
    )
    max_consecutive_pipe_failures: int = Field(
        default=3, gt=0, description="Pipe failures in a row that count as a cycle failure"
    )


def _default_regression_tolerances() -> dict[MonitoredMetric, float]:
    return {
        MonitoredMetric.ERROR_RATE: 0.005,
        MonitoredMetric.LATENCY_P95: 50.0,
        MonitoredMetric.QUALITY_SCORE: 0.01,
        MonitoredMetric.FALLBACK_RATE: 0.005,
    }


class ExecutorConfig(BaseModel):
    """Action execution safety limits."""

    model_config = ConfigDict(frozen=True)

    max_actions_per_hour: int = Field(default=3, gt=0)
    cooldown_duration_secs: int = Field(default=3600, ge=0)
    verification_timeout_secs: float = Field(default=60.0, gt=0.0)
    rollback_on_regression: bool = True
    stabilization_period_secs: float = Field(default=120.0, ge=0.0)
    require_approval: bool = False
    regression_relative_tolerance: float = Field(
        default=0.05, ge=0.0, le=1.0, description="Worsening within this share of 'before' is noise"
    )
    regression_absolute_tolerance: dict[MonitoredMetric, float] = Field(
        default_factory=_default_regression_tolerances,
        description="Worsening within this absolute delta is noise",
    )


class LearnerConfig(BaseModel):
    """Reward and effectiveness tuning."""

    model_config = ConfigDict(frozen=True)

    effective_reward_threshold: float = Field(default=0.1, ge=-1.0, le=1.0)
    history_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    max_history_per_action: int = Field(default=100, gt=0)
    min_post_samples: int = Field(default=10, ge=0)
    use_learning_pipe: bool = True
    reward_weights: RewardWeights | None = Field(
        default=None, description="Fixed weights; None selects weights by trigger metric"
    )


class CircuitBreakerConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=3, gt=0)
    success_threshold: int = Field(default=2, gt=0)
    recovery_timeout_secs: float = Field(default=3600.0, ge=0.0)


class BaselineConfig(BaseModel):
    """Adaptive baseline tuning."""

    model_config = ConfigDict(frozen=True)

    ema_alpha: float = Field(default=0.1, gt=0.0, lt=1.0)
    rolling_window_secs: int = Field(default=86_400, gt=0)
    min_samples: int = Field(default=100, gt=0)
    warning_multiplier: float = Field(default=1.5, gt=1.0)
    critical_multiplier: float = Field(default=2.0, gt=1.0)

    @model_validator(mode="after")
    def critical_above_warning(self) -> "BaselineConfig":
        if self.critical_multiplier <= self.warning_multiplier:
            raise ValueError("critical_multiplier must be greater than warning_multiplier")
        return self


class PipeConfig(BaseModel):
    """Reasoning pipe identifiers and call limits."""

    model_config = ConfigDict(frozen=True)

    diagnosis_pipe: str = "reflection-v1"
    decision_pipe: str = "decision-framework-v1"
    detection_pipe: str = "detection-v1"
    learning_pipe: str = "reflection-v1"
    enable_validation: bool = True
    pipe_timeout_ms: int = Field(default=30_000, gt=0)
    model_name: str = Field(
        default="openai:gpt-4o-mini", description="Model backing the reasoning pipes"
    )


class StorageConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend: Literal["memory", "jsonl"] = "memory"
    path: str = Field(default="./self_improvement_data", description="Directory for jsonl files")


class LoggingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: LogLevel = "INFO"
    format: Literal["json", "console"] = "json"


class SelfImprovementConfig(BaseModel):
    """Main configuration combining every phase."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    learner: LearnerConfig = Field(default_factory=LearnerConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    baseline: BaselineConfig = Field(default_factory=BaselineConfig)
    pipes: PipeConfig = Field(default_factory=PipeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def diagnosis_fits_pipe_timeout(self) -> "SelfImprovementConfig":
        if self.analyzer.diagnosis_timeout_ms > self.pipes.pipe_timeout_ms:
            raise ValueError("analyzer.diagnosis_timeout_ms cannot exceed pipes.pipe_timeout_ms")
        return self


def load_config_from_env() -> SelfImprovementConfig:
    """Load configuration from SI_* environment variables with validation."""

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    def _level_to_literal(val: str) -> LogLevel:
        v = val.strip().upper()
        known = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        return cast(LogLevel, v if v in known else "INFO")

    def _severity(val: str) -> Severity:
        try:
            return Severity(val.strip().lower())
        except ValueError:
            return Severity.WARNING

    env = os.getenv

    try:
        monitor = MonitorConfig(
            check_interval_secs=int(env("SI_CHECK_INTERVAL_SECS", "300")),
            error_rate_threshold=float(env("SI_ERROR_RATE_THRESHOLD", "0.05")),
            latency_threshold_ms=float(env("SI_LATENCY_THRESHOLD_MS", "5000")),
            quality_threshold=float(env("SI_QUALITY_THRESHOLD", "0.7")),
            fallback_rate_threshold=float(env("SI_FALLBACK_RATE_THRESHOLD", "0.1")),
            min_sample_size=int(env("SI_MIN_SAMPLE_SIZE", "50")),
            aggregation_window_secs=int(env("SI_AGGREGATION_WINDOW_SECS", "3600")),
        )
        analyzer = AnalyzerConfig(
            max_pending_diagnoses=int(env("SI_MAX_PENDING_DIAGNOSES", "10")),
            min_action_severity=_severity(env("SI_MIN_ACTION_SEVERITY", "warning")),
            diagnosis_timeout_ms=int(env("SI_DIAGNOSIS_TIMEOUT_MS", "30000")),
        )
        executor = ExecutorConfig(
            max_actions_per_hour=int(env("SI_MAX_ACTIONS_PER_HOUR", "3")),
            cooldown_duration_secs=int(env("SI_COOLDOWN_SECS", "3600")),
            verification_timeout_secs=float(env("SI_VERIFICATION_TIMEOUT_SECS", "60")),
            rollback_on_regression=_parse_bool(env("SI_ROLLBACK_ON_REGRESSION"), True),
            stabilization_period_secs=float(env("SI_STABILIZATION_SECS", "120")),
            require_approval=_parse_bool(env("SI_REQUIRE_APPROVAL"), False),
        )
        learner = LearnerConfig(
            effective_reward_threshold=float(env("SI_EFFECTIVE_REWARD_THRESHOLD", "0.1")),
            history_weight=float(env("SI_HISTORY_WEIGHT", "0.3")),
            max_history_per_action=int(env("SI_MAX_HISTORY_PER_ACTION", "100")),
        )
        circuit_breaker = CircuitBreakerConfig(
            failure_threshold=int(env("SI_CB_FAILURE_THRESHOLD", "3")),
            success_threshold=int(env("SI_CB_SUCCESS_THRESHOLD", "2")),
            recovery_timeout_secs=float(env("SI_CB_RECOVERY_TIMEOUT_SECS", "3600")),
        )
        baseline = BaselineConfig(
            ema_alpha=float(env("SI_EMA_ALPHA", "0.1")),
            rolling_window_secs=int(env("SI_ROLLING_WINDOW_SECS", "86400")),
            min_samples=int(env("SI_MIN_SAMPLES", "100")),
            warning_multiplier=float(env("SI_WARNING_MULTIPLIER", "1.5")),
            critical_multiplier=float(env("SI_CRITICAL_MULTIPLIER", "2.0")),
        )
        pipes = PipeConfig(
            diagnosis_pipe=env("SI_DIAGNOSIS_PIPE", "reflection-v1"),
            decision_pipe=env("SI_DECISION_PIPE", "decision-framework-v1"),
            detection_pipe=env("SI_DETECTION_PIPE", "detection-v1"),
            learning_pipe=env("SI_LEARNING_PIPE", "reflection-v1"),
            enable_validation=_parse_bool(env("SI_ENABLE_VALIDATION"), True),
            pipe_timeout_ms=int(env("SI_PIPE_TIMEOUT_MS", "30000")),
            model_name=env("SI_PIPE_MODEL", "openai:gpt-4o-mini"),
        )
        storage = StorageConfig(
            backend="jsonl" if env("SI_STORAGE_BACKEND", "memory") == "jsonl" else "memory",
            path=env("SI_STORAGE_PATH", "./self_improvement_data"),
        )
        logging_config = LoggingConfig(
            level=_level_to_literal(env("LOG_LEVEL", "INFO")),
            format="console" if env("LOG_FORMAT", "json").strip().lower() == "console" else "json",
        )
        return SelfImprovementConfig(
            enabled=_parse_bool(env("SELF_IMPROVEMENT_ENABLED"), False),
            monitor=monitor,
            analyzer=analyzer,
            executor=executor,
            learner=learner,
            circuit_breaker=circuit_breaker,
            baseline=baseline,
            pipes=pipes,
            storage=storage,
            logging=logging_config,
        )
    except (ValidationError, ValueError) as e:
        raise ConfigurationError(f"Invalid self-improvement configuration: {e}") from e


@lru_cache
def get_config() -> SelfImprovementConfig:
    """Get cached configuration."""
    return load_config_from_env()


def validate_config() -> SelfImprovementConfig:
    """Validate configuration at startup. Raises ConfigurationError when invalid."""
    try:
        config = get_config()
        print(f"✅ Self-improvement configuration loaded (enabled={config.enabled})")
        return config
    except ConfigurationError as e:
        print(f"❌ Configuration validation failed: {e}")
        raise


# Development helpers
def print_config_summary(config: SelfImprovementConfig | None = None) -> None:
    """Print configuration summary for debugging."""
    config = config or get_config()

    print("\n🔧 SELF-IMPROVEMENT CONFIGURATION")
    print(f"Enabled: {config.enabled}")
    print(f"Log Level: {config.logging.level}")

    print("\n📊 MONITOR")
    print(f"Check Interval: {config.monitor.check_interval_secs}s")
    print(f"Error Rate Threshold: {config.monitor.error_rate_threshold:.1%}")
    print(f"Latency Threshold: {config.monitor.latency_threshold_ms:.0f}ms")
    print(f"Min Sample Size: {config.monitor.min_sample_size}")

    print("\n⚙️ EXECUTOR")
    print(f"Max Actions/Hour: {config.executor.max_actions_per_hour}")
    print(f"Cooldown: {config.executor.cooldown_duration_secs}s")
    print(f"Rollback On Regression: {config.executor.rollback_on_regression}")
    print(f"Require Approval: {config.executor.require_approval}")

    print("\n🛡️ CIRCUIT BREAKER")
    print(f"Failure Threshold: {config.circuit_breaker.failure_threshold}")
    print(f"Recovery Timeout: {config.circuit_breaker.recovery_timeout_secs:.0f}s")

    print("\n🤖 PIPES")
    print(f"Model: {config.pipes.model_name}")
    print(f"Diagnosis/Decision: {config.pipes.diagnosis_pipe} / {config.pipes.decision_pipe}")
    print(f"Validation Enabled: {config.pipes.enable_validation}")


if __name__ == "__main__":
    validate_config()
    print_config_summary()

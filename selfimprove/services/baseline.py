"""
Adaptive per-metric baselines.

Each monitored metric keeps an exponential moving average (the reference for
classification) and a time-bounded rolling buffer whose average is exposed for
diagnostics only.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog

from selfimprove.config import BaselineConfig
from selfimprove.domain.errors import ConfigurationError
from selfimprove.domain.models import (
    BaselineSnapshot,
    BaselinesSnapshot,
    MonitoredMetric,
    TriggerLevel,
)

logger = structlog.get_logger(__name__)


@dataclass
class MetricBaseline:
    """Mutable baseline state of one metric."""

    metric: MonitoredMetric
    ema_value: float | None = None
    sample_count: int = 0
    window: deque[tuple[datetime, float]] = field(default_factory=deque)
    last_updated: datetime | None = None

    @property
    def rolling_avg(self) -> float | None:
        if not self.window:
            return None
        return sum(value for _, value in self.window) / len(self.window)

    def has_minimum_samples(self, min_samples: int) -> bool:
        return self.sample_count >= min_samples


class BaselineCalculator:
    """Hybrid EMA plus rolling-window baselines for the monitored metrics."""

    def __init__(
        self,
        ema_alpha: float = 0.1,
        min_samples: int = 100,
        warning_multiplier: float = 1.5,
        critical_multiplier: float = 2.0,
        rolling_window_secs: int = 86_400,
    ) -> None:
        if not 0.0 < ema_alpha < 1.0:
            raise ConfigurationError(f"ema_alpha must be in (0, 1), got {ema_alpha}")
        if warning_multiplier <= 1.0 or critical_multiplier <= 1.0:
            raise ConfigurationError("baseline multipliers must be greater than 1.0")
        if critical_multiplier <= warning_multiplier:
            raise ConfigurationError("critical_multiplier must be greater than warning_multiplier")
        if min_samples <= 0 or rolling_window_secs <= 0:
            raise ConfigurationError("min_samples and rolling_window_secs must be positive")

        self.ema_alpha = ema_alpha
        self.min_samples = min_samples
        self.warning_multiplier = warning_multiplier
        self.critical_multiplier = critical_multiplier
        self.rolling_window = timedelta(seconds=rolling_window_secs)
        self._baselines = {metric: MetricBaseline(metric=metric) for metric in MonitoredMetric}
        self.logger = logger.bind(component="baseline_calculator")

    @classmethod
    def from_config(cls, config: BaselineConfig) -> "BaselineCalculator":
        return cls(
            ema_alpha=config.ema_alpha,
            min_samples=config.min_samples,
            warning_multiplier=config.warning_multiplier,
            critical_multiplier=config.critical_multiplier,
            rolling_window_secs=config.rolling_window_secs,
        )

    def get(self, metric: MonitoredMetric) -> MetricBaseline:
        return self._baselines[metric]

    def update(
        self, metric: MonitoredMetric, value: float, timestamp: datetime | None = None
    ) -> MetricBaseline:
        """Fold one sample into the EMA and the rolling buffer."""
        timestamp = timestamp or datetime.now(UTC)
        baseline = self._baselines[metric]

        if baseline.ema_value is None:
            baseline.ema_value = value
        else:
            alpha = self.ema_alpha
            baseline.ema_value = alpha * value + (1.0 - alpha) * baseline.ema_value

        baseline.window.append((timestamp, value))
        cutoff = timestamp - self.rolling_window
        while baseline.window and baseline.window[0][0] < cutoff:
            baseline.window.popleft()

        baseline.sample_count += 1
        baseline.last_updated = timestamp
        return baseline

    def thresholds(self, metric: MonitoredMetric) -> tuple[float, float] | None:
        """(warning, critical) thresholds derived from the EMA, if any."""
        ema = self._baselines[metric].ema_value
        if ema is None:
            return None
        if metric.inverted:
            return ema / self.warning_multiplier, ema / self.critical_multiplier
        return ema * self.warning_multiplier, ema * self.critical_multiplier

    def classify(self, metric: MonitoredMetric, value: float) -> TriggerLevel:
        baseline = self._baselines[metric]
        if not baseline.has_minimum_samples(self.min_samples) or baseline.ema_value is None:
            return TriggerLevel.INSUFFICIENT_DATA

        ema = baseline.ema_value
        warning, critical = self.thresholds(metric)  # type: ignore[misc]

        if metric.inverted:
            # Lower quality is worse
            if value >= ema:
                return TriggerLevel.NORMAL
            if value <= critical:
                return TriggerLevel.CRITICAL
            if value <= warning:
                return TriggerLevel.WARNING
            return TriggerLevel.NORMAL

        if value <= ema:
            return TriggerLevel.NORMAL
        if value >= critical:
            return TriggerLevel.CRITICAL
        if value >= warning:
            return TriggerLevel.WARNING
        return TriggerLevel.NORMAL

    def snapshot_of(self, metric: MonitoredMetric) -> BaselineSnapshot:
        baseline = self._baselines[metric]
        thresholds = self.thresholds(metric)
        return BaselineSnapshot(
            metric=metric,
            ema_value=baseline.ema_value,
            rolling_avg=baseline.rolling_avg,
            sample_count=baseline.sample_count,
            is_valid=baseline.has_minimum_samples(self.min_samples),
            warning_threshold=thresholds[0] if thresholds else None,
            critical_threshold=thresholds[1] if thresholds else None,
        )

    def snapshot(self) -> BaselinesSnapshot:
        return BaselinesSnapshot(metrics={m: self.snapshot_of(m) for m in MonitoredMetric})

    def restore(self, snapshot: BaselinesSnapshot) -> None:
        """Seed EMA values and sample counts from a persisted snapshot.

        The rolling buffer is not persisted and starts empty.
        """
        for metric, saved in snapshot.metrics.items():
            baseline = self._baselines[metric]
            baseline.ema_value = saved.ema_value
            baseline.sample_count = saved.sample_count
            baseline.window.clear()
            baseline.last_updated = snapshot.captured_at
        self.logger.info(
            "baselines_restored",
            metrics=[m.value for m in snapshot.metrics],
            captured_at=snapshot.captured_at.isoformat(),
        )

    def all_valid(self) -> bool:
        return all(b.has_minimum_samples(self.min_samples) for b in self._baselines.values())

"""
Health monitor: turns raw invocation events into windowed metrics and triggers.

Request handlers call `record()` / `ingest()` synchronously; appending to the
bounded buffer never awaits, so serving is never blocked by a running check.
A check folds each window into the baselines as one sample, after the window
has been classified against them.
"""

import asyncio
import math
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import BaseModel

from selfimprove.config import MonitorConfig
from selfimprove.domain.models import (
    BaselinesSnapshot,
    HealthReport,
    InvocationEvent,
    MetricsSnapshot,
    MonitoredMetric,
    Severity,
    TriggerLevel,
    TriggerMetric,
)
from selfimprove.services.baseline import BaselineCalculator

logger = structlog.get_logger(__name__)

# Below these references a baseline ratio is meaningless; only absolute thresholds apply
_BASELINE_FLOOR = {
    MonitoredMetric.ERROR_RATE: 0.001,
    MonitoredMetric.LATENCY_P95: 1.0,
    MonitoredMetric.QUALITY_SCORE: 0.0,
    MonitoredMetric.FALLBACK_RATE: 0.001,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


def aggregate(
    events: Sequence[InvocationEvent], timestamp: datetime | None = None
) -> MetricsSnapshot:
    """Aggregate a window of events into a snapshot."""
    n = len(events)
    if n == 0:
        return MetricsSnapshot.empty()

    failures = sum(1 for e in events if not e.success)
    fallbacks = sum(1 for e in events if e.fallback_used)
    latencies = sorted(e.latency_ms for e in events)
    p95_index = min(max(math.ceil(n * 0.95) - 1, 0), n - 1)
    scores = [e.quality_score for e in events if e.quality_score is not None]

    return MetricsSnapshot(
        timestamp=timestamp or _utcnow(),
        error_rate=failures / n,
        latency_p95_ms=latencies[p95_index],
        quality_score=sum(scores) / len(scores) if scores else 1.0,
        fallback_rate=fallbacks / n,
        sample_count=n,
    )


class MonitorStats(BaseModel):
    buffered_events: int
    pending_events: int
    total_checks: int
    total_triggers: int
    dropped_ticks: int
    baselines_valid: bool
    last_check_at: datetime | None = None


class Monitor:
    """Aggregates invocation events and classifies each window."""

    def __init__(
        self,
        config: MonitorConfig,
        baselines: BaselineCalculator,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.baselines = baselines
        self._clock = clock
        self._events: deque[tuple[int, InvocationEvent]] = deque(maxlen=config.event_buffer_size)
        self._seq = 0
        self._last_checked_seq = 0
        self._last_check_at: datetime | None = None
        self._last_window: MetricsSnapshot | None = None
        self._last_report: HealthReport | None = None
        self._check_lock = asyncio.Lock()
        self._total_checks = 0
        self._total_triggers = 0
        self._dropped_ticks = 0
        self.logger = logger.bind(component="monitor")

    # Ingestion (request-serving side)

    def record(self, event: InvocationEvent) -> None:
        self._seq += 1
        self._events.append((self._seq, event))
        self._evict(self._clock())

    def ingest(self, events: Iterable[InvocationEvent]) -> None:
        for event in events:
            self._seq += 1
            self._events.append((self._seq, event))
        self._evict(self._clock())

    def _evict(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.config.aggregation_window_secs)
        while self._events and self._events[0][1].timestamp < cutoff:
            self._events.popleft()

    def _pending(self) -> list[InvocationEvent]:
        return [event for seq, event in self._events if seq > self._last_checked_seq]

    # Checks (cycle side)

    async def check(self) -> HealthReport | None:
        """Scheduled check. Returns None when the tick is dropped, early, or under-sampled."""
        if self._check_lock.locked():
            self._dropped_ticks += 1
            self.logger.warning("check_tick_dropped", dropped_ticks=self._dropped_ticks)
            return None

        async with self._check_lock:
            now = self._clock()
            if self._last_check_at is not None:
                elapsed = (now - self._last_check_at).total_seconds()
                if elapsed < self.config.check_interval_secs:
                    return None
            return self._run_check(now)

    async def force_check(self) -> HealthReport | None:
        """Check immediately, ignoring the check interval."""
        if self._check_lock.locked():
            self._dropped_ticks += 1
            self.logger.warning("check_tick_dropped", dropped_ticks=self._dropped_ticks)
            return None

        async with self._check_lock:
            return self._run_check(self._clock())

    def _run_check(self, now: datetime) -> HealthReport | None:
        self._evict(now)
        window = [(seq, event) for seq, event in self._events if seq > self._last_checked_seq]

        if len(window) < self.config.min_sample_size:
            self.logger.debug(
                "insufficient_samples",
                samples=len(window),
                min_required=self.config.min_sample_size,
            )
            return None

        current = aggregate([event for _, event in window], now)
        reference = self.baselines.snapshot()

        triggers = [
            trigger
            for metric in MonitoredMetric
            if (trigger := self._evaluate(metric, current.value_of(metric))) is not None
        ]

        for metric in MonitoredMetric:
            self.baselines.update(metric, current.value_of(metric), now)

        self._last_checked_seq = window[-1][0]
        self._last_check_at = now
        self._last_window = current
        self._total_checks += 1
        self._total_triggers += len(triggers)

        report = HealthReport(current=current, baselines=reference, triggers=triggers)
        self._last_report = report

        self.logger.info(
            "health_check_completed",
            is_healthy=report.is_healthy,
            trigger_count=len(triggers),
            samples=current.sample_count,
            error_rate=round(current.error_rate, 4),
            latency_p95_ms=round(current.latency_p95_ms, 1),
        )
        return report

    def _absolute_threshold(self, metric: MonitoredMetric) -> float:
        return {
            MonitoredMetric.ERROR_RATE: self.config.error_rate_threshold,
            MonitoredMetric.LATENCY_P95: self.config.latency_threshold_ms,
            MonitoredMetric.QUALITY_SCORE: self.config.quality_threshold,
            MonitoredMetric.FALLBACK_RATE: self.config.fallback_rate_threshold,
        }[metric]

    def _evaluate(self, metric: MonitoredMetric, observed: float) -> TriggerMetric | None:
        absolute = self._absolute_threshold(metric)
        threshold_hit = observed < absolute if metric.inverted else observed > absolute

        reference = self.baselines.get(metric).ema_value
        level = TriggerLevel.INSUFFICIENT_DATA
        if reference is not None and reference >= _BASELINE_FLOOR[metric]:
            level = self.baselines.classify(metric, observed)
        baseline_hit = level in (TriggerLevel.WARNING, TriggerLevel.CRITICAL)

        if not threshold_hit and not baseline_hit:
            return None

        if baseline_hit:
            warning, _ = self.baselines.thresholds(metric)  # type: ignore[misc]
            draft = TriggerMetric(
                metric=metric,
                observed=observed,
                baseline=reference,  # type: ignore[arg-type]
                threshold=warning,
                source="baseline",
            )
        else:
            draft = TriggerMetric(
                metric=metric,
                observed=observed,
                baseline=reference if reference is not None else absolute,
                threshold=absolute,
                source="threshold",
            )

        severity = Severity.most_severe(
            Severity.WARNING,
            Severity.from_deviation(draft.deviation_pct()),
            Severity.CRITICAL if level is TriggerLevel.CRITICAL else Severity.WARNING,
        )
        trigger_level = (
            TriggerLevel.CRITICAL if severity is Severity.CRITICAL else TriggerLevel.WARNING
        )
        return draft.model_copy(update={"severity": severity, "level": trigger_level})

    # Read side

    def current_snapshot(self) -> MetricsSnapshot:
        """Metrics of the freshest data available.

        Events since the last check when there are any, otherwise the last
        checked window, otherwise everything still inside the aggregation window.
        """
        now = self._clock()
        self._evict(now)
        pending = self._pending()
        if pending:
            return aggregate(pending, now)
        if self._last_window is not None:
            return self._last_window
        return aggregate([event for _, event in self._events], now)

    def mark(self) -> int:
        """Position in the event stream, for `snapshot_since()`."""
        return self._seq

    def snapshot_since(self, mark: int) -> MetricsSnapshot | None:
        """Metrics of the events recorded after `mark`, or None if there are none yet."""
        now = self._clock()
        self._evict(now)
        events = [event for seq, event in self._events if seq > mark]
        if not events:
            return None
        return aggregate(events, now)

    def baselines_snapshot(self) -> BaselinesSnapshot:
        return self.baselines.snapshot()

    @property
    def last_report(self) -> HealthReport | None:
        return self._last_report

    def stats(self) -> MonitorStats:
        return MonitorStats(
            buffered_events=len(self._events),
            pending_events=len(self._pending()),
            total_checks=self._total_checks,
            total_triggers=self._total_triggers,
            dropped_ticks=self._dropped_ticks,
            baselines_valid=self.baselines.all_valid(),
            last_check_at=self._last_check_at,
        )

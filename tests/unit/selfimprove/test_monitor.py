"""
Tests for the health monitor.

Covers:
- Window aggregation (error rate, p95, quality defaults, fallback rate)
- Minimum sample size and check interval gating
- Absolute-threshold and baseline triggers with severity
- Baselines folded in after classification
- Overlapping checks drop the tick
- Post-action snapshots through mark() / snapshot_since()
- Eviction of events older than the aggregation window
"""

from datetime import timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fakes import FakeClock, event, window
from selfimprove.config import MonitorConfig
from selfimprove.domain.models import MonitoredMetric, Severity
from selfimprove.services.baseline import BaselineCalculator
from selfimprove.services.monitor import Monitor, aggregate


def _monitor(min_samples: int = 5, clock: FakeClock | None = None, **overrides: float) -> Monitor:
    config = MonitorConfig(min_sample_size=50, check_interval_secs=300, **overrides)
    baselines = BaselineCalculator(min_samples=min_samples)
    if clock is None:
        return Monitor(config, baselines)
    return Monitor(config, baselines, clock)


async def _warm(monitor: Monitor, windows: int = 5, errors: int = 1) -> None:
    for _ in range(windows):
        monitor.ingest(window(50, errors))
        await monitor.force_check()


class TestAggregate:
    def test_empty_window(self) -> None:
        snapshot = aggregate([])

        assert snapshot.sample_count == 0
        assert snapshot.quality_score == 1.0

    def test_rates_and_p95(self) -> None:
        events = [event(success=i >= 2, latency_ms=float(i + 1)) for i in range(20)]
        events[0] = event(success=False, latency_ms=1.0, fallback=True)

        snapshot = aggregate(events)

        assert snapshot.error_rate == pytest.approx(0.1)
        assert snapshot.fallback_rate == pytest.approx(0.05)
        assert snapshot.latency_p95_ms == 19.0

    def test_quality_averages_scored_events_only(self) -> None:
        events = [event(quality=0.6), event(quality=0.8), event()]

        assert aggregate(events).quality_score == pytest.approx(0.7)

    @given(latencies=st.lists(st.floats(min_value=0.0, max_value=1e5), min_size=1, max_size=200))
    def test_p95_is_an_observed_latency(self, latencies: list[float]) -> None:
        snapshot = aggregate([event(latency_ms=latency) for latency in latencies])

        assert snapshot.latency_p95_ms in latencies
        assert snapshot.latency_p95_ms <= max(latencies)


class TestCheck:
    async def test_under_sampled_window_returns_none(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(49, 0))

        assert await monitor.force_check() is None
        assert monitor.stats().total_checks == 0

    async def test_healthy_window(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(50, 1))

        report = await monitor.force_check()

        assert report is not None
        assert report.is_healthy
        assert report.current.error_rate == pytest.approx(0.02)
        assert monitor.stats().pending_events == 0

    async def test_absolute_threshold_triggers_without_baseline(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(50, 5))

        report = await monitor.force_check()

        assert report is not None
        trigger = report.most_severe_trigger
        assert trigger is not None
        assert trigger.metric is MonitoredMetric.ERROR_RATE
        assert trigger.source == "threshold"
        assert trigger.severity.at_least(Severity.WARNING)

    async def test_baseline_trigger_is_critical(self) -> None:
        monitor = _monitor()
        await _warm(monitor)
        monitor.ingest(window(50, 4))

        report = await monitor.force_check()

        assert report is not None
        trigger = report.most_severe_trigger
        assert trigger is not None
        assert trigger.source == "baseline"
        assert trigger.baseline == pytest.approx(0.02)
        assert trigger.severity is Severity.CRITICAL
        assert report.needs_action

    async def test_window_is_classified_before_it_joins_the_baseline(self) -> None:
        monitor = _monitor()
        await _warm(monitor)
        monitor.ingest(window(50, 4))

        report = await monitor.force_check()

        assert report is not None
        assert report.baselines.reference(MonitoredMetric.ERROR_RATE) == pytest.approx(0.02)
        assert monitor.baselines_snapshot().reference(MonitoredMetric.ERROR_RATE) == (
            pytest.approx(0.1 * 0.08 + 0.9 * 0.02)
        )

    async def test_latency_threshold(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(50, 0, latency_ms=8000.0))

        report = await monitor.force_check()

        assert report is not None
        assert [t.metric for t in report.triggers] == [MonitoredMetric.LATENCY_P95]

    async def test_scheduled_check_respects_interval(self) -> None:
        clock = FakeClock()
        monitor = _monitor(clock=clock)
        monitor.ingest(window(50, 0))
        assert await monitor.check() is not None

        monitor.ingest(window(50, 0))
        assert await monitor.check() is None

        clock.advance(300)
        assert await monitor.check() is not None

    async def test_overlapping_check_drops_the_tick(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(50, 0))

        async with monitor._check_lock:
            assert await monitor.force_check() is None

        assert monitor.stats().dropped_ticks == 1
        assert await monitor.force_check() is not None


class TestSnapshots:
    async def test_snapshot_since_mark(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(50, 10))
        mark = monitor.mark()
        assert monitor.snapshot_since(mark) is None

        monitor.ingest(window(20, 1))

        after = monitor.snapshot_since(mark)
        assert after is not None
        assert after.sample_count == 20
        assert after.error_rate == pytest.approx(0.05)

    async def test_current_snapshot_prefers_pending_events(self) -> None:
        monitor = _monitor()
        monitor.ingest(window(50, 5))
        await monitor.force_check()
        assert monitor.current_snapshot().error_rate == pytest.approx(0.1)

        monitor.ingest(window(10, 0))

        assert monitor.current_snapshot().error_rate == 0.0
        assert monitor.current_snapshot().sample_count == 10

    def test_old_events_are_evicted(self) -> None:
        clock = FakeClock()
        monitor = _monitor(clock=clock, aggregation_window_secs=60)
        monitor.ingest([event(timestamp=clock.now - timedelta(seconds=120))])
        monitor.record(event(timestamp=clock.now))

        assert monitor.stats().buffered_events == 1

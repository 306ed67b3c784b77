"""
End-to-end tests of the self-improvement loop.

Covers:
- A full cycle: error burst -> diagnosis -> MAX_RETRIES 3 -> 4 -> verified -> rewarded
- Regression rolled back before the reward is computed
- Disabled, paused and circuit-open cycles take no action but keep monitoring
- No-op diagnoses rejected, approval-gated diagnoses kept pending
- Repeated pipe failures feed the circuit breaker
- Manual rollback, also after the analyzer evicted the diagnosis
- History queries and state restored on start()
- Overlapping cycles dropped, rollback failures propagated
"""

from datetime import timedelta
from pathlib import Path

import pytest

from fakes import (
    TEST_PIPES,
    ScriptedPipeClient,
    TrafficConfigStore,
    completion,
    diagnosis_payload,
    scripted_client,
    window,
)
from selfimprove.config import BaselineConfig, ExecutorConfig, SelfImprovementConfig
from selfimprove.domain.errors import PipeHttpError, RollbackFailure
from selfimprove.domain.models import (
    ActionOutcome,
    CircuitState,
    CycleResult,
    DiagnosisStatus,
    InvocationEvent,
    MonitoredMetric,
    ParamValue,
)
from selfimprove.services.allowlist import ActionAllowlist
from selfimprove.services.storage import InMemoryStorage, JsonlStorage
from selfimprove.services.system import HistoryKind, SelfImprovementSystem

CONFIG = SelfImprovementConfig(
    enabled=True,
    baseline=BaselineConfig(min_samples=5),
    executor=ExecutorConfig(stabilization_period_secs=0, verification_timeout_secs=1),
    pipes=TEST_PIPES,
)


def _system(
    after_apply: list[InvocationEvent] | None = None,
    config: SelfImprovementConfig = CONFIG,
    client: ScriptedPipeClient | None = None,
    storage: InMemoryStorage | None = None,
) -> tuple[SelfImprovementSystem, TrafficConfigStore]:
    allowlist = ActionAllowlist.default()
    store = TrafficConfigStore(allowlist, after_apply if after_apply is not None else window(40, 1))
    system = SelfImprovementSystem(
        config,
        pipe_client=client or scripted_client(),
        storage=storage or InMemoryStorage(),
        config_store=store,
        allowlist=allowlist,
    )
    store.monitor = system.monitor
    return system, store


async def _warm(system: SelfImprovementSystem) -> None:
    """Five healthy windows at a 2% error rate, enough for valid baselines."""
    for _ in range(5):
        system.monitor.ingest(window(50, 1))
        await system.monitor.force_check()


async def _burst(system: SelfImprovementSystem) -> CycleResult | None:
    system.monitor.ingest(window(50, 4))
    return await system.force_cycle()


class TestFullCycle:
    async def test_error_burst_is_fixed_and_rewarded(self) -> None:
        system, store = _system()
        await _warm(system)

        result = await _burst(system)

        assert result is not None
        assert result.success
        assert result.action_taken
        record = result.action_record
        assert record is not None
        assert record.outcome is ActionOutcome.SUCCESS
        assert record.metrics_before.error_rate == pytest.approx(0.08)
        assert record.metrics_after is not None
        assert record.metrics_after.error_rate == pytest.approx(0.025)
        assert result.reward == pytest.approx(0.7)
        assert result.lessons == "Retries help with transient upstream errors"
        assert result.diagnosis is not None
        assert result.diagnosis.status is DiagnosisStatus.COMPLETED
        assert store.state.params["MAX_RETRIES"] == ParamValue.integer(4)
        assert system.allowlist.params["MAX_RETRIES"].current == ParamValue.integer(4)

        status = system.status()
        assert status.total_successes == 1
        assert status.in_cooldown
        assert status.actions_this_hour == 1
        assert status.pending_diagnoses == 0
        assert [r.id for r in status.recent_actions] == [record.id]
        assert status.circuit.total_successes == 1

    async def test_results_are_persisted(self) -> None:
        storage = InMemoryStorage()
        system, _ = _system(storage=storage)
        await _warm(system)

        result = await _burst(system)

        assert result is not None and result.action_record is not None
        saved = await storage.get_action(result.action_record.id)
        assert saved is not None and saved.reward is not None
        effectiveness = await storage.get_effectiveness("adjust_param:MAX_RETRIES:increase")
        assert effectiveness is not None and effectiveness.successful_attempts == 1
        assert await storage.load_breaker() is not None
        assert await storage.load_baselines() is not None

    async def test_regression_is_rolled_back_before_reward(self) -> None:
        system, store = _system(after_apply=window(50, 10))
        await _warm(system)

        result = await _burst(system)

        assert result is not None
        assert not result.success
        record = result.action_record
        assert record is not None
        assert record.outcome is ActionOutcome.ROLLED_BACK
        assert record.reward is not None and record.reward.is_negative
        assert result.diagnosis is not None
        assert result.diagnosis.status is DiagnosisStatus.ROLLED_BACK
        assert store.state.params["MAX_RETRIES"] == ParamValue.integer(3)
        assert system.status().total_rollbacks == 1
        assert system.state.breaker.consecutive_failures == 1


class TestSkippedCycles:
    async def test_disabled_loop_only_monitors(self) -> None:
        storage = InMemoryStorage()
        disabled = CONFIG.model_copy(update={"enabled": False})
        system, store = _system(config=disabled, storage=storage)
        await _warm(system)

        result = await _burst(system)

        assert result is not None
        assert result.success and not result.action_taken
        assert system.monitor.last_report is not None
        assert system.analyzer.stats().total_diagnoses == 0
        assert store.state.params["MAX_RETRIES"] == ParamValue.integer(3)
        assert await storage.load_baselines() is not None

    async def test_paused_loop_takes_no_action(self) -> None:
        system, _ = _system()
        await _warm(system)
        system.pause(timedelta(minutes=10))
        assert system.is_paused()
        assert system.status().paused_until is not None

        result = await _burst(system)

        assert result is not None and not result.action_taken
        assert system.analyzer.stats().total_diagnoses == 0

        system.resume()
        assert not system.is_paused()

    async def test_open_circuit_skips_the_cycle(self) -> None:
        system, _ = _system()
        await _warm(system)
        system.state.breaker.force_open("test")

        result = await _burst(system)

        assert result is not None
        assert result.success and not result.action_taken
        assert result.error is not None and "Circuit breaker is open" in result.error

    async def test_overlapping_cycle_is_dropped(self) -> None:
        system, _ = _system()

        async with system._cycle_lock:
            assert await system.force_cycle() is None


class TestDiagnosisHandling:
    async def test_no_op_diagnosis_is_rejected(self) -> None:
        client = scripted_client(diagnosis=completion(diagnosis_payload("no_op", None)))
        system, _ = _system(client=client)
        await _warm(system)

        result = await _burst(system)

        assert result is not None
        assert not result.action_taken
        assert result.diagnosis is not None
        assert result.diagnosis.status is DiagnosisStatus.REJECTED
        assert result.error is not None and "no_op_action" in result.error
        assert system.analyzer.stats().pending_count == 0

    async def test_approval_gate(self) -> None:
        config = CONFIG.model_copy(
            update={"executor": CONFIG.executor.model_copy(update={"require_approval": True})}
        )
        system, store = _system(config=config)
        await _warm(system)

        waiting = await _burst(system)

        assert waiting is not None and not waiting.action_taken
        assert waiting.diagnosis is not None
        assert waiting.error is not None and "requires_approval" in waiting.error
        assert system.analyzer.stats().pending_count == 1

        approved = await system.approve(waiting.diagnosis.id)
        assert approved.status is DiagnosisStatus.APPROVED

        result = await system.force_cycle()

        assert result is not None and result.action_taken
        assert store.state.params["MAX_RETRIES"] == ParamValue.integer(4)

    async def test_repeated_pipe_failures_feed_the_breaker(self) -> None:
        client = scripted_client(diagnosis=PipeHttpError("diagnosis", "503"))
        system, _ = _system(client=client)
        await _warm(system)

        for _ in range(3):
            result = await _burst(system)
            assert result is not None and not result.action_taken

        assert system.state.breaker.total_failures == 1
        assert system.analyzer.stats().consecutive_pipe_failures == 0
        rejected = await system.storage.list_diagnoses(status=DiagnosisStatus.REJECTED)
        assert len(rejected) == 3


class TestOperatorControls:
    async def test_manual_rollback(self) -> None:
        system, store = _system()
        await _warm(system)
        result = await _burst(system)
        assert result is not None and result.action_record is not None
        action_id = result.action_record.id

        rolled_back = await system.rollback(action_id, "operator request")

        assert rolled_back is not None
        assert rolled_back.outcome is ActionOutcome.ROLLED_BACK
        assert store.state.params["MAX_RETRIES"] == ParamValue.integer(3)
        diagnosis = system.analyzer.get(rolled_back.diagnosis_id)
        assert diagnosis is not None and diagnosis.status is DiagnosisStatus.ROLLED_BACK
        assert system.status().total_rollbacks == 1
        assert await system.rollback(action_id) is None

    async def test_manual_rollback_of_an_evicted_diagnosis(self) -> None:
        storage = InMemoryStorage()
        system, _ = _system(storage=storage)
        await _warm(system)
        result = await _burst(system)
        assert result is not None and result.action_record is not None
        diagnosis_id = result.action_record.diagnosis_id
        system.analyzer._diagnoses.pop(diagnosis_id)

        rolled_back = await system.rollback(result.action_record.id)

        assert rolled_back is not None
        stored = await storage.get_diagnosis(diagnosis_id)
        assert stored is not None and stored.status is DiagnosisStatus.ROLLED_BACK

    async def test_history(self) -> None:
        system, _ = _system()
        await _warm(system)
        await _burst(system)

        diagnoses = await system.history(HistoryKind.DIAGNOSES)
        actions = await system.history(HistoryKind.ACTIONS, limit=5)
        effectiveness = await system.history(HistoryKind.EFFECTIVENESS)

        assert len(diagnoses) == 1
        assert len(actions) == 1
        assert [r.signature for r in effectiveness] == ["adjust_param:MAX_RETRIES:increase"]

    async def test_start_restores_breaker_and_baselines(self, tmp_path: Path) -> None:
        first, _ = _system(storage=JsonlStorage(tmp_path))
        await first.start()
        await _warm(first)
        first.state.breaker.force_open("test")
        await first.force_cycle()

        second, _ = _system(storage=JsonlStorage(tmp_path))
        await second.start()

        assert second.state.breaker.state is CircuitState.OPEN
        baselines = second.monitor.baselines_snapshot()
        assert baselines.reference(MonitoredMetric.ERROR_RATE) == pytest.approx(0.02)

    async def test_rollback_failure_propagates(self) -> None:
        storage = InMemoryStorage()
        system, store = _system(after_apply=window(50, 10), storage=storage)
        store.fail_revert = True
        await _warm(system)

        with pytest.raises(RollbackFailure):
            await _burst(system)

        assert system.state.breaker.state is CircuitState.OPEN
        actions = await storage.list_actions()
        assert [a.outcome for a in actions] == [ActionOutcome.FAILED]
        diagnoses = await storage.list_diagnoses()
        assert diagnoses[-1].status is DiagnosisStatus.REJECTED

    async def test_run_forever_yields_cycles(self) -> None:
        system, _ = _system(config=CONFIG.model_copy(update={"enabled": False}))
        cycles = system.run_forever(interval_secs=0.01)

        first = await anext(cycles)
        second = await anext(cycles)
        await cycles.aclose()

        assert first.success and second.success
        assert system.status().total_cycles == 2

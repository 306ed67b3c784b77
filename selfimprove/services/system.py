"""
Orchestrator of the self-improvement loop.

One cycle: check health -> diagnose the most severe trigger -> execute the
oldest pending diagnosis -> verify (rollback before reward) -> learn -> persist
breaker state and baselines. Cycles never overlap; a tick that arrives while a
cycle is running is dropped. Request handlers only ever call `on_invocation()`.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

import structlog

from selfimprove.config import SelfImprovementConfig
from selfimprove.domain.errors import (
    AnalysisBlockReason,
    CircuitOpenError,
    ExecutionBlockReason,
    RollbackFailure,
    SelfImprovementError,
    StorageError,
)
from selfimprove.domain.models import (
    ActionEffectivenessRecord,
    ActionId,
    ActionOutcome,
    ActionRecord,
    CycleResult,
    DiagnosisId,
    DiagnosisStatus,
    HealthReport,
    InvocationEvent,
    SelfDiagnosis,
    SystemStatus,
)
from selfimprove.services.allowlist import ActionAllowlist
from selfimprove.services.analyzer import Analyzer
from selfimprove.services.baseline import BaselineCalculator
from selfimprove.services.circuit_breaker import CircuitBreaker
from selfimprove.services.executor import (
    ActionPhase,
    ConfigStore,
    ExecutionResult,
    Executor,
    InMemoryConfigStore,
)
from selfimprove.services.learner import Learner
from selfimprove.services.monitor import Monitor
from selfimprove.services.pipes import AgentPipeClient, PipeClient, SelfImprovementPipes
from selfimprove.services.storage import Storage, create_storage

logger = structlog.get_logger(__name__)

_RECENT_ACTIONS = 10

# Diagnosis status after an execution ends in a given phase
_STATUS_AFTER = {
    ActionPhase.COMMITTED: DiagnosisStatus.COMPLETED,
    ActionPhase.REGRESSED: DiagnosisStatus.COMPLETED,
    ActionPhase.STABILIZING: DiagnosisStatus.COMPLETED,
    ActionPhase.ROLLED_BACK: DiagnosisStatus.ROLLED_BACK,
    ActionPhase.FAILED: DiagnosisStatus.REJECTED,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HistoryKind(str, Enum):
    DIAGNOSES = "diagnoses"
    ACTIONS = "actions"
    EFFECTIVENESS = "effectiveness"


@dataclass
class SystemState:
    """Everything the loop owns across cycles."""

    baselines: BaselineCalculator
    breaker: CircuitBreaker
    paused_until: datetime | None = None
    total_cycles: int = 0
    total_successes: int = 0
    total_rollbacks: int = 0
    last_cycle_at: datetime | None = None


class SelfImprovementSystem:
    def __init__(
        self,
        config: SelfImprovementConfig,
        pipe_client: PipeClient | None = None,
        storage: Storage | None = None,
        config_store: ConfigStore | None = None,
        allowlist: ActionAllowlist | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self._clock = clock
        self.allowlist = allowlist or ActionAllowlist.default()
        self.state = SystemState(
            baselines=BaselineCalculator.from_config(config.baseline),
            breaker=CircuitBreaker(config.circuit_breaker, clock),
        )

        pipes = SelfImprovementPipes(pipe_client or AgentPipeClient(config.pipes), config.pipes)
        self.storage: Storage = storage or create_storage(config.storage)
        self.config_store: ConfigStore = config_store or InMemoryConfigStore(self.allowlist)

        self.monitor = Monitor(config.monitor, self.state.baselines, clock)
        self.learner = Learner(config.learner, pipes)
        self.analyzer = Analyzer(
            config.analyzer,
            pipes,
            self.allowlist,
            learner=self.learner,
            breaker=self.state.breaker,
            state_provider=self.config_store.snapshot,
        )
        self.executor = Executor(
            config.executor,
            self.allowlist,
            self.config_store,
            self.monitor,
            self.state.breaker,
            clock,
        )

        self._cycle_lock = asyncio.Lock()
        self.logger = logger.bind(component="self_improvement_system")

    async def start(self) -> None:
        """Open storage and restore baselines and breaker state from it."""
        await self.storage.initialize()
        baselines = await self.storage.load_baselines()
        if baselines is not None:
            self.state.baselines.restore(baselines)
        breaker = await self.storage.load_breaker()
        if breaker is not None:
            self.state.breaker.restore(breaker)
        self.logger.info(
            "self_improvement_started",
            enabled=self.config.enabled,
            circuit_state=self.state.breaker.state.value,
        )

    # Serving side

    def on_invocation(self, event: InvocationEvent) -> None:
        """Record one served request. Never blocks."""
        self.monitor.record(event)

    async def check_health(self) -> HealthReport | None:
        return await self.monitor.check()

    # Cycles

    async def run_cycle(self) -> CycleResult | None:
        """Run one scheduled cycle. None when a cycle is already in flight."""
        return await self._guarded_cycle(force=False)

    async def force_cycle(self) -> CycleResult | None:
        """Run a cycle now, checking health regardless of the check interval."""
        return await self._guarded_cycle(force=True)

    async def _guarded_cycle(self, force: bool) -> CycleResult | None:
        if self._cycle_lock.locked():
            self.logger.warning("cycle_tick_dropped")
            return None
        async with self._cycle_lock:
            return await self._cycle(force)

    async def _cycle(self, force: bool) -> CycleResult:
        start = time.perf_counter()
        self.state.total_cycles += 1
        self.state.last_cycle_at = self._clock()

        report = await (self.monitor.force_check() if force else self.monitor.check())

        try:
            result = await self._improve(report)
            await self._persist_state()
        except StorageError as e:
            self.logger.error("cycle_storage_failure", error=str(e))
            self.state.breaker.record_failure()
            result = CycleResult(success=False, error=str(e))

        result = result.model_copy(
            update={"duration_ms": int((time.perf_counter() - start) * 1000)}
        )
        self.logger.info(
            "cycle_completed",
            success=result.success,
            action_taken=result.action_taken,
            reward=result.reward,
            duration_ms=result.duration_ms,
        )
        return result

    async def _improve(self, report: HealthReport | None) -> CycleResult:
        if not self.config.enabled:
            return CycleResult(success=True)

        if self.is_paused():
            self.logger.debug("cycle_skipped_paused", paused_until=self.state.paused_until)
            return CycleResult(success=True)

        breaker = self.state.breaker
        if not breaker.allow_cycle():
            remaining = breaker.time_until_recovery()
            skipped = CircuitOpenError(remaining.total_seconds() if remaining is not None else None)
            self.logger.info("cycle_skipped_circuit_open", message=str(skipped))
            return CycleResult(success=True, error=str(skipped))

        if report is not None and report.needs_action:
            await self._diagnose(report)

        diagnosis = self.analyzer.next_pending()
        if diagnosis is None:
            return CycleResult(success=True)
        return await self._act(diagnosis)

    async def _diagnose(self, report: HealthReport) -> None:
        analysis = await self.analyzer.analyze(report)
        if analysis.is_ok():
            await self.storage.save_diagnosis(analysis.unwrap())
            return

        blocked = analysis.unwrap_err()
        if blocked.diagnosis is not None:
            await self.storage.save_diagnosis(blocked.diagnosis)
        pipe_reasons = (AnalysisBlockReason.PIPE_TIMEOUT, AnalysisBlockReason.PIPE_ERROR)
        if blocked.reason in pipe_reasons and self.analyzer.pipe_failures_exceeded:
            self.logger.warning("repeated_pipe_failures", reason=blocked.reason.value)
            self.state.breaker.record_failure()
            self.analyzer.reset_pipe_failures()

    async def _act(self, diagnosis: SelfDiagnosis) -> CycleResult:
        checked = self.executor.check(diagnosis)
        if checked.is_err():
            blocked = checked.unwrap_err()
            if blocked.reason in (
                ExecutionBlockReason.NO_OP_ACTION,
                ExecutionBlockReason.ALLOWLIST_REJECTED,
            ):
                diagnosis = await self._set_status(diagnosis.id, DiagnosisStatus.REJECTED)
            return CycleResult(success=True, diagnosis=diagnosis, error=str(blocked))

        diagnosis = await self._set_status(diagnosis.id, DiagnosisStatus.EXECUTING)
        try:
            execution = await self.executor.run(diagnosis, checked.unwrap())
        except RollbackFailure:
            await self._set_status(diagnosis.id, DiagnosisStatus.REJECTED)
            failed = self.executor.history()[-1].record
            await self.storage.save_action(failed)
            await self.storage.save_breaker(self.state.breaker.summary())
            raise

        diagnosis = await self._set_status(diagnosis.id, _STATUS_AFTER[execution.phase])
        record = await self._learn(execution, diagnosis)

        if record.outcome is ActionOutcome.SUCCESS:
            self.state.total_successes += 1
        elif execution.phase is ActionPhase.ROLLED_BACK:
            self.state.total_rollbacks += 1

        return CycleResult(
            success=record.outcome is ActionOutcome.SUCCESS,
            action_taken=True,
            diagnosis=diagnosis,
            action_record=record,
            reward=record.reward.value if record.reward is not None else None,
            lessons="; ".join(record.lessons) or None,
        )

    async def _learn(self, execution: ExecutionResult, diagnosis: SelfDiagnosis) -> ActionRecord:
        record = execution.record
        learning = await self.learner.learn(
            record, diagnosis, self.monitor.baselines_snapshot()
        )
        if learning.is_err():
            self.logger.info("learning_skipped", reason=learning.unwrap_err().reason.value)
            await self.storage.save_action(record)
            return record

        outcome = learning.unwrap()
        record = record.model_copy(
            update={
                "reward": outcome.reward,
                "outcome": outcome.outcome,
                "lessons": outcome.lessons,
            }
        )
        await self.storage.save_action(record)
        await self.storage.update_effectiveness(record, success=outcome.is_effective)
        return record

    async def _set_status(
        self, diagnosis_id: DiagnosisId, status: DiagnosisStatus
    ) -> SelfDiagnosis:
        updated = self.analyzer.mark_status(diagnosis_id, status)
        await self.storage.save_diagnosis(updated)
        return updated

    async def _persist_state(self) -> None:
        await self.storage.save_breaker(self.state.breaker.summary())
        await self.storage.save_baselines(self.state.baselines.snapshot())

    async def run_forever(self, interval_secs: float | None = None) -> AsyncIterator[CycleResult]:
        """Periodic driver yielding each cycle's result.

        Errors of one cycle are logged and the loop keeps going, except
        RollbackFailure, which needs an operator and is re-raised.
        """
        interval = interval_secs or self.config.monitor.check_interval_secs
        while True:
            try:
                result = await self.run_cycle()
            except RollbackFailure as e:
                self.logger.critical("rollback_failure", action_id=e.action_id, reason=e.reason)
                raise
            except SelfImprovementError as e:
                self.logger.error("cycle_failed", error=str(e), exc_info=True)
                result = CycleResult(success=False, error=str(e))
            if result is not None:
                yield result
            await asyncio.sleep(interval)

    # Operator controls

    async def rollback(
        self, action_id: ActionId, reason: str = "Manual rollback"
    ) -> ActionRecord | None:
        async with self._cycle_lock:
            result = await self.executor.force_rollback(action_id, reason)
            if result is None:
                return None
            await self.storage.save_action(result.record)
            diagnosis_id = result.record.diagnosis_id
            diagnosis = self.analyzer.get(diagnosis_id)
            if diagnosis is not None:
                if diagnosis.status.can_transition_to(DiagnosisStatus.ROLLED_BACK):
                    await self._set_status(diagnosis_id, DiagnosisStatus.ROLLED_BACK)
            else:
                # evicted from the analyzer's history
                stored = await self.storage.get_diagnosis(diagnosis_id)
                if stored is not None and stored.status.can_transition_to(
                    DiagnosisStatus.ROLLED_BACK
                ):
                    await self.storage.update_diagnosis_status(
                        diagnosis_id, DiagnosisStatus.ROLLED_BACK
                    )
            self.state.total_rollbacks += 1
            return result.record

    def pause(self, duration: timedelta) -> datetime:
        self.state.paused_until = self._clock() + duration
        self.logger.info("self_improvement_paused", until=self.state.paused_until.isoformat())
        return self.state.paused_until

    def resume(self) -> None:
        self.state.paused_until = None
        self.logger.info("self_improvement_resumed")

    def is_paused(self) -> bool:
        paused_until = self.state.paused_until
        return paused_until is not None and self._clock() < paused_until

    async def approve(self, diagnosis_id: DiagnosisId) -> SelfDiagnosis:
        """Approve a pending diagnosis so it may run when approval is required."""
        return await self._set_status(diagnosis_id, DiagnosisStatus.APPROVED)

    # Read side

    def status(self) -> SystemStatus:
        executor = self.executor.stats()
        recent = [r.record for r in self.executor.history()[-_RECENT_ACTIONS:]]
        return SystemStatus(
            enabled=self.config.enabled,
            circuit=self.state.breaker.summary(),
            in_cooldown=executor.in_cooldown,
            cooldown_remaining_secs=executor.cooldown_remaining_secs,
            paused_until=self.state.paused_until if self.is_paused() else None,
            actions_this_hour=executor.actions_this_hour,
            max_actions_per_hour=self.config.executor.max_actions_per_hour,
            pending_diagnoses=self.analyzer.stats().pending_count,
            total_cycles=self.state.total_cycles,
            total_successes=self.state.total_successes,
            total_rollbacks=self.state.total_rollbacks,
            last_cycle_at=self.state.last_cycle_at,
            baselines=self.state.baselines.snapshot(),
            recent_actions=recent,
        )

    async def history(
        self, kind: HistoryKind, limit: int | None = None
    ) -> list[SelfDiagnosis] | list[ActionRecord] | list[ActionEffectivenessRecord]:
        if kind is HistoryKind.DIAGNOSES:
            return await self.storage.list_diagnoses(limit=limit)
        if kind is HistoryKind.ACTIONS:
            return await self.storage.list_actions(limit=limit)
        records = await self.storage.list_effectiveness()
        return records[:limit] if limit else records

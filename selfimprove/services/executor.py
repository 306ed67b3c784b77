"""
Executor: applies a validated action, watches it settle and keeps or reverts it.

Per-action lifecycle:
PROPOSED -> VALIDATED -> APPLIED -> STABILIZING -> {VERIFIED, REGRESSED}
-> {COMMITTED, ROLLED_BACK}

Deliberate refusals (circuit, no-op, cooldown, rate limit, allowlist, approval)
come back as `ExecutionBlocked` and never touch the breaker. Executions feed
it: a commit is a success, a regression or failure is a failure, and a revert
that fails forces it open and raises `RollbackFailure`.

Cooldown and the hourly rate limit count every applied action, whatever its
outcome.
"""

import asyncio
import os
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol

import structlog
from pydantic import BaseModel

from selfimprove.config import ExecutorConfig
from selfimprove.domain.errors import (
    AllowlistError,
    ExecutionBlocked,
    ExecutionBlockReason,
    RollbackFailure,
)
from selfimprove.domain.models import (
    ActionId,
    ActionOutcome,
    ActionRecord,
    AdjustParamAction,
    ClearCacheAction,
    ConfigScopeKind,
    DiagnosisStatus,
    MetricsSnapshot,
    MonitoredMetric,
    NoOpAction,
    RestartServiceAction,
    ScaleResourceAction,
    SelfDiagnosis,
    ServiceComponent,
    SuggestedAction,
    ToggleFeatureAction,
)
from selfimprove.services.allowlist import ActionAllowlist, ConfigState, ValidatedAction
from selfimprove.services.circuit_breaker import CircuitBreaker
from selfimprove.services.monitor import Monitor
from selfimprove.services.result import Result

logger = structlog.get_logger(__name__)

_RATE_WINDOW = timedelta(hours=1)
_VERIFY_POLL_SECS = 0.5
_HISTORY_SIZE = 100


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ActionPhase(str, Enum):
    PROPOSED = "proposed"
    VALIDATED = "validated"
    APPLIED = "applied"
    STABILIZING = "stabilizing"
    VERIFIED = "verified"
    REGRESSED = "regressed"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


# Configuration store


class ConfigStore(Protocol):
    """Where actions land. The executor only talks to the live system through this."""

    def snapshot(self) -> ConfigState: ...

    async def apply(self, action: SuggestedAction) -> None: ...

    async def revert(self, action: SuggestedAction, previous: ConfigState) -> None: ...


class InMemoryConfigStore:
    """Runtime configuration held in process, seeded from the allowlist.

    Parameters changed with ENVIRONMENT scope are mirrored to `os.environ`.
    Restarts and cache clears are recorded for whoever wires them up.
    """

    def __init__(self, allowlist: ActionAllowlist) -> None:
        self.state = ConfigState.from_allowlist(allowlist)
        self.restarts: list[ServiceComponent] = []
        self.cleared_caches: list[str] = []
        self.logger = logger.bind(component="config_store")

    def snapshot(self) -> ConfigState:
        return self.state.model_copy(deep=True)

    async def apply(self, action: SuggestedAction) -> None:
        state = self.snapshot()
        if isinstance(action, AdjustParamAction):
            state.params[action.key] = action.new_value
            if action.scope.kind is ConfigScopeKind.ENVIRONMENT:
                os.environ[action.key] = str(action.new_value)
        elif isinstance(action, ToggleFeatureAction):
            state.features[action.feature_name] = action.desired_state
        elif isinstance(action, ScaleResourceAction):
            state.resources[action.resource] = action.new_value
        elif isinstance(action, ClearCacheAction):
            self.cleared_caches.append(action.cache_name)
        elif isinstance(action, RestartServiceAction):
            self.restarts.append(action.component)

        self.state = state.model_copy(update={"timestamp": _utcnow()})
        self.logger.debug("config_applied", action=action.describe())

    async def revert(self, action: SuggestedAction, previous: ConfigState) -> None:
        state = self.snapshot()
        if isinstance(action, AdjustParamAction):
            old = previous.params.get(action.key)
            if old is None:
                state.params.pop(action.key, None)
            else:
                state.params[action.key] = old
            if action.scope.kind is ConfigScopeKind.ENVIRONMENT:
                if old is None:
                    os.environ.pop(action.key, None)
                else:
                    os.environ[action.key] = str(old)
        elif isinstance(action, ToggleFeatureAction):
            if action.feature_name in previous.features:
                state.features[action.feature_name] = previous.features[action.feature_name]
        elif isinstance(action, ScaleResourceAction):
            if action.resource in previous.resources:
                state.resources[action.resource] = previous.resources[action.resource]
        else:
            self.logger.warning("revert_not_supported", action=action.signature())
            return

        self.state = state.model_copy(update={"timestamp": _utcnow()})
        self.logger.debug("config_reverted", action=action.describe())


# Results


class ExecutionResult(BaseModel):
    record: ActionRecord
    phase: ActionPhase
    pre_state: ConfigState
    post_state: ConfigState | None = None

    @property
    def action_id(self) -> ActionId:
        return self.record.id

    @property
    def outcome(self) -> ActionOutcome:
        return self.record.outcome


class ExecutorStats(BaseModel):
    total_executions: int
    total_rollbacks: int
    in_cooldown: bool
    cooldown_remaining_secs: float
    actions_this_hour: int


class Executor:
    def __init__(
        self,
        config: ExecutorConfig,
        allowlist: ActionAllowlist,
        store: ConfigStore,
        monitor: Monitor,
        breaker: CircuitBreaker,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config
        self.allowlist = allowlist
        self.store = store
        self.monitor = monitor
        self.breaker = breaker
        self._clock = clock
        self._cooldown_until: datetime | None = None
        self._recent_actions: deque[datetime] = deque()
        self._history: deque[ExecutionResult] = deque(maxlen=_HISTORY_SIZE)
        self._total_executions = 0
        self._total_rollbacks = 0
        self.logger = logger.bind(component="executor")

    # Gates

    def check(self, diagnosis: SelfDiagnosis) -> Result[ValidatedAction, ExecutionBlocked]:
        """Run every gate in order. Blocks are expected outcomes, not failures."""
        if self.breaker.is_open:
            remaining = self.breaker.time_until_recovery()
            return self._blocked(
                ExecutionBlockReason.CIRCUIT_OPEN,
                "Circuit breaker is open",
                remaining_secs=remaining.total_seconds() if remaining is not None else None,
            )

        action = diagnosis.suggested_action
        if action is None or isinstance(action, NoOpAction):
            reason = action.reason if action is not None else "No action suggested"
            return self._blocked(ExecutionBlockReason.NO_OP_ACTION, reason)

        remaining_cooldown = self.cooldown_remaining_secs()
        if remaining_cooldown > 0:
            return self._blocked(
                ExecutionBlockReason.IN_COOLDOWN,
                f"{remaining_cooldown:.0f}s of cooldown left",
                remaining_secs=remaining_cooldown,
            )

        count = self.actions_this_hour()
        if count >= self.config.max_actions_per_hour:
            return self._blocked(
                ExecutionBlockReason.RATE_LIMITED,
                f"{count} actions in the last hour",
                count=count,
                max=self.config.max_actions_per_hour,
            )

        try:
            validated = self.allowlist.validate(action, self.store.snapshot())
        except AllowlistError as e:
            return self._blocked(ExecutionBlockReason.ALLOWLIST_REJECTED, str(e))

        if self.config.require_approval and diagnosis.status is not DiagnosisStatus.APPROVED:
            return self._blocked(
                ExecutionBlockReason.REQUIRES_APPROVAL,
                f"Diagnosis {diagnosis.id} is awaiting approval",
                diagnosis_id=diagnosis.id,
            )

        return Result.ok(validated)

    def _blocked(
        self, reason: ExecutionBlockReason, message: str, **details: object
    ) -> Result[ValidatedAction, ExecutionBlocked]:
        self.logger.info("execution_blocked", reason=reason.value, message=message)
        return Result.err(ExecutionBlocked(reason, message, **details))

    # Execution

    async def execute(self, diagnosis: SelfDiagnosis) -> Result[ExecutionResult, ExecutionBlocked]:
        checked = self.check(diagnosis)
        if checked.is_err():
            return Result.err(checked.unwrap_err())
        return Result.ok(await self.run(diagnosis, checked.unwrap()))

    async def run(self, diagnosis: SelfDiagnosis, validated: ValidatedAction) -> ExecutionResult:
        """Apply, stabilize, verify and commit or revert one validated action.

        Raises RollbackFailure when a revert does not go through.
        """
        action = validated.action
        log = self.logger.bind(action_id=validated.action_id, action=action.signature())
        metric = diagnosis.trigger.metric

        pre_state = self.store.snapshot()
        before = self.monitor.current_snapshot()
        mark = self.monitor.mark()
        record = ActionRecord(
            id=validated.action_id,
            diagnosis_id=diagnosis.id,
            action=action,
            metrics_before=before,
            executed_at=self._clock(),
        )

        try:
            await self.store.apply(action)
        except Exception as e:
            log.error("action_apply_failed", error=str(e), exc_info=True)
            self.breaker.record_failure()
            return self._finish(
                record.model_copy(
                    update={
                        "outcome": ActionOutcome.FAILED,
                        "rollback_reason": f"Apply failed: {e}",
                        "completed_at": self._clock(),
                    }
                ),
                ActionPhase.FAILED,
                pre_state,
            )

        self._total_executions += 1
        self._recent_actions.append(self._clock())
        self._start_cooldown()
        post_state = self.store.snapshot()
        log.info("action_applied", phase=ActionPhase.APPLIED.value, before=before.value_of(metric))

        if await self._stabilize():
            log.warning("stabilization_interrupted", reason="circuit_open")
            return await self._revert(
                record.model_copy(update={"verified_at": self._clock()}),
                pre_state,
                post_state,
                ActionOutcome.ROLLED_BACK,
                "Circuit breaker opened during stabilization",
                feed_breaker=False,
            )

        after = await self._observe_after(mark)
        if after is None:
            log.warning(
                "verification_inconclusive",
                timeout_secs=self.config.verification_timeout_secs,
            )
            inconclusive = record.model_copy(update={"verified_at": self._clock()})
            if action.reversible and self.config.rollback_on_regression:
                return await self._revert(
                    inconclusive,
                    pre_state,
                    post_state,
                    ActionOutcome.INCONCLUSIVE,
                    "No post-action metrics before the verification timeout",
                    feed_breaker=False,
                )
            self._keep(action)
            return self._finish(
                inconclusive.model_copy(
                    update={"outcome": ActionOutcome.INCONCLUSIVE, "completed_at": self._clock()}
                ),
                ActionPhase.STABILIZING,
                pre_state,
                post_state,
            )

        verified = record.model_copy(update={"metrics_after": after, "verified_at": self._clock()})

        if self.is_regression(metric, before, after):
            b, a = before.value_of(metric), after.value_of(metric)
            reason = f"{metric.value} regressed from {b:.4f} to {a:.4f}"
            log.warning("action_regressed", phase=ActionPhase.REGRESSED.value, reason=reason)

            if action.reversible and self.config.rollback_on_regression:
                return await self._revert(
                    verified, pre_state, post_state, ActionOutcome.ROLLED_BACK, reason
                )

            log.warning("regression_not_reverted", reversible=action.reversible)
            self.breaker.record_failure()
            self._keep(action)
            return self._finish(
                verified.model_copy(
                    update={
                        "outcome": ActionOutcome.REGRESSED,
                        "rollback_reason": reason,
                        "completed_at": self._clock(),
                    }
                ),
                ActionPhase.REGRESSED,
                pre_state,
                post_state,
            )

        self.breaker.record_success()
        self._keep(action)
        log.info(
            "action_committed",
            phase=ActionPhase.COMMITTED.value,
            before=before.value_of(metric),
            after=after.value_of(metric),
        )
        return self._finish(
            verified.model_copy(
                update={"outcome": ActionOutcome.SUCCESS, "completed_at": self._clock()}
            ),
            ActionPhase.COMMITTED,
            pre_state,
            post_state,
        )

    async def _stabilize(self) -> bool:
        """Wait out the stabilization period. True if the breaker opened meanwhile."""
        if self.breaker.is_open:
            return True
        period = self.config.stabilization_period_secs
        if period <= 0:
            return False
        try:
            await asyncio.wait_for(self.breaker.wait_opened(), timeout=period)
        except TimeoutError:
            return False
        return True

    async def _observe_after(self, mark: int) -> MetricsSnapshot | None:
        """First snapshot of post-action traffic, or None on verification timeout."""

        async def poll() -> MetricsSnapshot:
            while (snapshot := self.monitor.snapshot_since(mark)) is None:
                await asyncio.sleep(_VERIFY_POLL_SECS)
            return snapshot

        try:
            return await asyncio.wait_for(poll(), timeout=self.config.verification_timeout_secs)
        except TimeoutError:
            return None

    def is_regression(
        self, metric: MonitoredMetric, before: MetricsSnapshot, after: MetricsSnapshot
    ) -> bool:
        """Worse by more than max(absolute tolerance, relative tolerance * |before|)."""
        b, a = before.value_of(metric), after.value_of(metric)
        worsening = b - a if metric.inverted else a - b
        tolerance = max(
            self.config.regression_absolute_tolerance.get(metric, 0.0),
            self.config.regression_relative_tolerance * abs(b),
        )
        return worsening > tolerance

    async def _revert(
        self,
        record: ActionRecord,
        pre_state: ConfigState,
        post_state: ConfigState | None,
        outcome: ActionOutcome,
        reason: str,
        feed_breaker: bool = True,
    ) -> ExecutionResult:
        try:
            await self.store.revert(record.action, pre_state)
        except Exception as e:
            self.logger.error(
                "rollback_failed", action_id=record.id, error=str(e), exc_info=True
            )
            self._finish(
                record.model_copy(
                    update={
                        "outcome": ActionOutcome.FAILED,
                        "rollback_reason": f"{reason}; rollback failed: {e}",
                        "completed_at": self._clock(),
                    }
                ),
                ActionPhase.FAILED,
                pre_state,
                post_state,
            )
            self.breaker.force_open(f"rollback of {record.id} failed")
            raise RollbackFailure(record.id, str(e)) from e

        self._total_rollbacks += 1
        if feed_breaker:
            self.breaker.record_failure()
        self.logger.warning(
            "action_rolled_back",
            action_id=record.id,
            phase=ActionPhase.ROLLED_BACK.value,
            reason=reason,
        )
        return self._finish(
            record.model_copy(
                update={
                    "outcome": outcome,
                    "rollback_reason": reason,
                    "completed_at": self._clock(),
                }
            ),
            ActionPhase.ROLLED_BACK,
            pre_state,
            post_state,
        )

    def _finish(
        self,
        record: ActionRecord,
        phase: ActionPhase,
        pre_state: ConfigState,
        post_state: ConfigState | None = None,
    ) -> ExecutionResult:
        result = ExecutionResult(
            record=record, phase=phase, pre_state=pre_state, post_state=post_state
        )
        self._history.append(result)
        return result

    async def force_rollback(
        self, action_id: ActionId, reason: str = "Manual rollback"
    ) -> ExecutionResult | None:
        """Revert a committed action. None if it is unknown, not committed or not reversible."""
        for index, result in enumerate(self._history):
            if result.action_id != action_id:
                continue
            if result.phase is not ActionPhase.COMMITTED or not result.record.action.reversible:
                self.logger.warning(
                    "force_rollback_refused", action_id=action_id, phase=result.phase.value
                )
                return None

            action = result.record.action
            try:
                await self.store.revert(action, result.pre_state)
            except Exception as e:
                self.logger.error("rollback_failed", action_id=action_id, error=str(e))
                self.breaker.force_open(f"rollback of {action_id} failed")
                raise RollbackFailure(action_id, str(e)) from e

            if isinstance(action, AdjustParamAction):
                self.allowlist.update_param_current(action.key, action.old_value)
            self._total_rollbacks += 1
            rolled_back = result.model_copy(
                update={
                    "phase": ActionPhase.ROLLED_BACK,
                    "record": result.record.model_copy(
                        update={
                            "outcome": ActionOutcome.ROLLED_BACK,
                            "rollback_reason": reason,
                            "completed_at": self._clock(),
                        }
                    ),
                }
            )
            self._history[index] = rolled_back
            self.logger.warning("forced_rollback", action_id=action_id, reason=reason)
            return rolled_back
        return None

    def _keep(self, action: SuggestedAction) -> None:
        """Record a change that stays applied as the allowlist's current value."""
        if isinstance(action, AdjustParamAction):
            self.allowlist.update_param_current(action.key, action.new_value)

    # Cooldown and rate limit

    def _start_cooldown(self) -> None:
        duration = self.config.cooldown_duration_secs
        if duration > 0:
            self._cooldown_until = self._clock() + timedelta(seconds=duration)

    def cooldown_remaining_secs(self) -> float:
        if self._cooldown_until is None:
            return 0.0
        return max((self._cooldown_until - self._clock()).total_seconds(), 0.0)

    def clear_cooldown(self) -> None:
        self._cooldown_until = None
        self.logger.info("cooldown_cleared")

    def actions_this_hour(self) -> int:
        cutoff = self._clock() - _RATE_WINDOW
        while self._recent_actions and self._recent_actions[0] <= cutoff:
            self._recent_actions.popleft()
        return len(self._recent_actions)

    def history(self) -> list[ExecutionResult]:
        return list(self._history)

    def get(self, action_id: ActionId) -> ExecutionResult | None:
        return next((r for r in self._history if r.action_id == action_id), None)

    def stats(self) -> ExecutorStats:
        remaining = self.cooldown_remaining_secs()
        return ExecutorStats(
            total_executions=self._total_executions,
            total_rollbacks=self._total_rollbacks,
            in_cooldown=remaining > 0,
            cooldown_remaining_secs=remaining,
            actions_this_hour=self.actions_this_hour(),
        )

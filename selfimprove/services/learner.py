"""
Learner: scores executed actions and keeps per-signature effectiveness history.

The reward of an action is a weighted sum of per-metric improvements, each
normalized by the metric's baseline and clamped to [-1, 1] before weighting.
History is bounded per action signature (oldest evicted first) and feeds back
into action selection through `weighted_score()`.
"""

from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, Field

from selfimprove.config import LearnerConfig
from selfimprove.domain.errors import LearningBlocked, LearningBlockReason, PipeError
from selfimprove.domain.models import (
    ActionEffectivenessRecord,
    ActionId,
    ActionKind,
    ActionOutcome,
    ActionRecord,
    BaselinesSnapshot,
    DiagnosisId,
    MetricsSnapshot,
    MonitoredMetric,
    NormalizedReward,
    RewardBreakdown,
    RewardWeights,
    SelfDiagnosis,
    SuggestedAction,
)
from selfimprove.services.pipes import LearningResponse, SelfImprovementPipes
from selfimprove.services.result import Result

logger = structlog.get_logger(__name__)


def _clamp(value: float) -> float:
    return max(-1.0, min(1.0, value))


def _lower_is_better(before: float, after: float, reference: float | None) -> float:
    if reference is not None and reference > 0.0:
        return _clamp((before - after) / reference)
    if before > 0.0:
        return _clamp((before - after) / before)
    return 0.0


def _higher_is_better(before: float, after: float, reference: float | None) -> float:
    if reference is not None and 0.0 <= reference < 1.0:
        return _clamp((after - before) / (1.0 - reference))
    if before > 0.0:
        return _clamp((after - before) / before)
    return 0.0


def compute_reward(
    before: MetricsSnapshot,
    after: MetricsSnapshot,
    weights: RewardWeights,
    baselines: BaselinesSnapshot | None = None,
) -> NormalizedReward:
    """Direction-aware reward in [-1, 1]. Positive means the action helped."""

    def ref(metric: MonitoredMetric) -> float | None:
        return baselines.reference(metric) if baselines is not None else None

    breakdown = RewardBreakdown(
        error_rate_reward=_lower_is_better(
            before.error_rate, after.error_rate, ref(MonitoredMetric.ERROR_RATE)
        ),
        latency_reward=_lower_is_better(
            before.latency_p95_ms, after.latency_p95_ms, ref(MonitoredMetric.LATENCY_P95)
        ),
        quality_reward=_higher_is_better(
            before.quality_score, after.quality_score, ref(MonitoredMetric.QUALITY_SCORE)
        ),
        fallback_reward=_lower_is_better(
            before.fallback_rate, after.fallback_rate, ref(MonitoredMetric.FALLBACK_RATE)
        ),
        weights=weights,
    )
    value = (
        weights.error_rate * breakdown.error_rate_reward
        + weights.latency * breakdown.latency_reward
        + weights.quality * breakdown.quality_reward
        + weights.fallback * breakdown.fallback_reward
    )
    return NormalizedReward(
        value=_clamp(value),
        breakdown=breakdown,
        confidence=min(after.sample_count / 100.0, 1.0),
    )


def effectiveness_score(total: int, successful: int, avg_reward: float) -> float:
    """Success rate and average reward, discounted until ten attempts are seen."""
    if total == 0:
        return 0.0
    success_rate = successful / total
    normalized_reward = (avg_reward + 1.0) / 2.0
    return (success_rate * 0.6 + normalized_reward * 0.4) * min(total / 10.0, 1.0)


@dataclass
class _HistoryEntry:
    action_id: ActionId
    reward: float
    successful: bool
    recorded_at: datetime


class LearningOutcome(BaseModel):
    action_id: ActionId
    diagnosis_id: DiagnosisId
    signature: str
    reward: NormalizedReward
    outcome: ActionOutcome
    is_effective: bool
    synthesis: LearningResponse | None = None
    lessons: list[str] = Field(default_factory=list)
    completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LearnerStats(BaseModel):
    total_cycles: int
    total_actions_tracked: int
    positive_reward_count: int
    negative_reward_count: int
    avg_reward: float
    most_effective_action: str | None = None
    least_effective_action: str | None = None
    last_learning_at: datetime | None = None


class Learner:
    def __init__(self, config: LearnerConfig, pipes: SelfImprovementPipes | None = None) -> None:
        self.config = config
        self.pipes = pipes
        self._history: dict[str, deque[_HistoryEntry]] = {}
        self._first_attempt: dict[str, datetime] = {}
        self._total_cycles = 0
        self._last_learning_at: datetime | None = None
        self.logger = logger.bind(component="learner")

    async def learn(
        self,
        record: ActionRecord,
        diagnosis: SelfDiagnosis | None = None,
        baselines: BaselinesSnapshot | None = None,
    ) -> Result[LearningOutcome, LearningBlocked]:
        """Score a finished action and fold it into the effectiveness history."""
        if record.outcome is ActionOutcome.PENDING:
            return Result.err(
                LearningBlocked(
                    LearningBlockReason.EXECUTION_NOT_COMPLETED,
                    f"Action {record.id} has not finished",
                    outcome=record.outcome.value,
                )
            )

        after = record.metrics_after
        samples = after.sample_count if after is not None else 0
        if after is None or samples < self.config.min_post_samples:
            self.logger.debug(
                "insufficient_samples_for_learning",
                action_id=record.id,
                samples=samples,
                required=self.config.min_post_samples,
            )
            return Result.err(
                LearningBlocked(
                    LearningBlockReason.INSUFFICIENT_SAMPLES,
                    f"{samples} post-action samples, {self.config.min_post_samples} required",
                    required=self.config.min_post_samples,
                    actual=samples,
                )
            )

        weights = self.config.reward_weights or (
            RewardWeights.for_trigger(diagnosis.trigger.metric)
            if diagnosis is not None
            else RewardWeights()
        )
        reward = compute_reward(record.metrics_before, after, weights, baselines)
        is_effective = reward.value >= self.config.effective_reward_threshold
        signature = record.action.signature()

        self._remember(signature, record.id, reward.value, is_effective)

        synthesis: LearningResponse | None = None
        if self.config.use_learning_pipe and self.pipes is not None:
            try:
                synthesis, metrics = await self.pipes.synthesize_learning(
                    record.action, diagnosis, record.metrics_before, after, reward
                )
                if not metrics.parse_success:
                    synthesis = None
            except PipeError as e:
                self.logger.warning("learning_synthesis_unavailable", error=str(e))

        outcome = self._final_outcome(record.outcome, reward, is_effective)
        self._total_cycles += 1
        self._last_learning_at = datetime.now(UTC)

        self.logger.info(
            "learning_recorded",
            action_id=record.id,
            signature=signature,
            reward=round(reward.value, 4),
            is_effective=is_effective,
            confidence=reward.confidence,
            synthesized=synthesis is not None,
        )

        return Result.ok(
            LearningOutcome(
                action_id=record.id,
                diagnosis_id=record.diagnosis_id,
                signature=signature,
                reward=reward,
                outcome=outcome,
                is_effective=is_effective,
                synthesis=synthesis,
                lessons=list(synthesis.lessons) if synthesis is not None else [],
            )
        )

    @staticmethod
    def _final_outcome(
        executed: ActionOutcome, reward: NormalizedReward, is_effective: bool
    ) -> ActionOutcome:
        if executed is not ActionOutcome.SUCCESS:
            return executed
        if is_effective:
            return ActionOutcome.SUCCESS
        if reward.is_negative:
            return ActionOutcome.FAILED
        return ActionOutcome.SUCCESS

    def _remember(
        self, signature: str, action_id: ActionId, reward: float, successful: bool
    ) -> None:
        now = datetime.now(UTC)
        entries = self._history.setdefault(
            signature, deque(maxlen=self.config.max_history_per_action)
        )
        entries.append(
            _HistoryEntry(
                action_id=action_id, reward=reward, successful=successful, recorded_at=now
            )
        )
        self._first_attempt.setdefault(signature, now)

    # History queries

    def effectiveness_of(self, signature: str) -> ActionEffectivenessRecord | None:
        entries = self._history.get(signature)
        if not entries:
            return None
        rewards = [e.reward for e in entries]
        total = len(entries)
        successful = sum(1 for e in entries if e.successful)
        avg = sum(rewards) / total
        return ActionEffectivenessRecord(
            action_kind=ActionKind(signature.split(":", 1)[0]),
            signature=signature,
            total_attempts=total,
            successful_attempts=successful,
            failed_attempts=total - successful,
            avg_reward=avg,
            max_reward=max(rewards),
            min_reward=min(rewards),
            effectiveness_score=effectiveness_score(total, successful, avg),
            first_attempt=self._first_attempt[signature],
            last_attempt=entries[-1].recorded_at,
        )

    def effectiveness_records(self) -> list[ActionEffectivenessRecord]:
        records = (self.effectiveness_of(signature) for signature in self._history)
        return [r for r in records if r is not None]

    def weighted_score(self, action: SuggestedAction, judgement: float) -> float:
        """Blend an external judgement with the action's track record.

        `history_weight` controls how much history counts; unseen actions keep
        the judgement unchanged.
        """
        record = self.effectiveness_of(action.signature())
        if record is None:
            return judgement
        weight = self.config.history_weight
        return (1.0 - weight) * judgement + weight * record.effectiveness_score

    def is_effective(self, action: SuggestedAction) -> bool | None:
        record = self.effectiveness_of(action.signature())
        if record is None:
            return None
        return record.avg_reward >= self.config.effective_reward_threshold

    def stats(self) -> LearnerStats:
        entries = [e for history in self._history.values() for e in history]
        scored = [(r.signature, r.effectiveness_score) for r in self.effectiveness_records()]
        positive_scores = [s for s in scored if s[1] > 0.0]
        return LearnerStats(
            total_cycles=self._total_cycles,
            total_actions_tracked=len(entries),
            positive_reward_count=sum(1 for e in entries if e.reward > 0.0),
            negative_reward_count=sum(1 for e in entries if e.reward < 0.0),
            avg_reward=sum(e.reward for e in entries) / len(entries) if entries else 0.0,
            most_effective_action=max(scored, key=lambda s: s[1])[0] if scored else None,
            least_effective_action=(
                min(positive_scores, key=lambda s: s[1])[0] if positive_scores else None
            ),
            last_learning_at=self._last_learning_at,
        )

    def clear_history(self) -> None:
        self._history.clear()
        self._first_attempt.clear()
        self.logger.info("learning_history_cleared")

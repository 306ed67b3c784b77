"""
Tests for the learner.

Covers:
- Reward direction per metric and clamping to [-1, 1]
- Baseline normalization with fallback to the pre-action value
- Weights chosen by trigger metric
- Blocks: action not finished, too few post-action samples
- Final outcome from the reward
- Learning synthesis through the pipe, and its degradation
- Bounded per-signature history, effectiveness and weighted scores
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fakes import TEST_PIPES, error_trigger, scripted_client, snapshot
from selfimprove.config import LearnerConfig
from selfimprove.domain.errors import LearningBlockReason, PipeHttpError
from selfimprove.domain.models import (
    ActionOutcome,
    ActionRecord,
    AdjustParamAction,
    BaselineSnapshot,
    BaselinesSnapshot,
    MetricsSnapshot,
    MonitoredMetric,
    ParamValue,
    RewardWeights,
    SelfDiagnosis,
    new_action_id,
    new_diagnosis_id,
)
from selfimprove.services.learner import Learner, compute_reward, effectiveness_score
from selfimprove.services.pipes import SelfImprovementPipes

ERROR_WEIGHTS = RewardWeights.for_trigger(MonitoredMetric.ERROR_RATE)


def _action() -> AdjustParamAction:
    return AdjustParamAction(
        key="MAX_RETRIES", old_value=ParamValue.integer(3), new_value=ParamValue.integer(4)
    )


def _record(
    before: MetricsSnapshot,
    after: MetricsSnapshot | None,
    outcome: ActionOutcome = ActionOutcome.SUCCESS,
) -> ActionRecord:
    return ActionRecord(
        id=new_action_id(),
        diagnosis_id=new_diagnosis_id(),
        action=_action(),
        metrics_before=before,
        metrics_after=after,
        outcome=outcome,
    )


def _diagnosis() -> SelfDiagnosis:
    trigger = error_trigger()
    return SelfDiagnosis(
        trigger=trigger,
        severity=trigger.severity,
        description="error burst",
        suspected_cause="transient upstream failures",
        suggested_action=_action(),
    )


def _baselines(error_rate: float) -> BaselinesSnapshot:
    return BaselinesSnapshot(
        metrics={
            MonitoredMetric.ERROR_RATE: BaselineSnapshot(
                metric=MonitoredMetric.ERROR_RATE,
                ema_value=error_rate,
                rolling_avg=error_rate,
                sample_count=100,
                is_valid=True,
            )
        }
    )


def _learner(**overrides: object) -> Learner:
    config = LearnerConfig(use_learning_pipe=False).model_copy(update=overrides)
    return Learner(config)


class TestReward:
    def test_error_rate_drop_is_positive(self) -> None:
        reward = compute_reward(snapshot(error_rate=0.10), snapshot(error_rate=0.02), ERROR_WEIGHTS)

        assert reward.breakdown.error_rate_reward > 0.0
        assert reward.is_positive

    def test_error_rate_rise_is_negative(self) -> None:
        reward = compute_reward(snapshot(error_rate=0.02), snapshot(error_rate=0.10), ERROR_WEIGHTS)

        assert reward.breakdown.error_rate_reward == -1.0
        assert reward.is_negative

    def test_quality_rise_is_positive(self) -> None:
        reward = compute_reward(
            snapshot(quality_score=0.6), snapshot(quality_score=0.9), RewardWeights()
        )

        assert reward.breakdown.quality_reward == pytest.approx(0.5)

    def test_normalized_by_baseline(self) -> None:
        reward = compute_reward(
            snapshot(error_rate=0.10),
            snapshot(error_rate=0.06),
            ERROR_WEIGHTS,
            _baselines(0.08),
        )

        assert reward.breakdown.error_rate_reward == pytest.approx(0.5)
        assert reward.value == pytest.approx(0.7 * 0.5)

    def test_zero_baseline_falls_back_to_before(self) -> None:
        reward = compute_reward(
            snapshot(error_rate=0.10),
            snapshot(error_rate=0.05),
            ERROR_WEIGHTS,
            _baselines(0.0),
        )

        assert reward.breakdown.error_rate_reward == pytest.approx(0.5)

    def test_nothing_to_compare(self) -> None:
        reward = compute_reward(snapshot(error_rate=0.0), snapshot(error_rate=0.0), ERROR_WEIGHTS)

        assert reward.value == 0.0

    def test_confidence_grows_with_samples(self) -> None:
        few = compute_reward(snapshot(), snapshot(sample_count=20), ERROR_WEIGHTS)
        many = compute_reward(snapshot(), snapshot(sample_count=500), ERROR_WEIGHTS)

        assert few.confidence == pytest.approx(0.2)
        assert many.confidence == 1.0

    @given(
        before=st.floats(min_value=0.0, max_value=1.0),
        after=st.floats(min_value=0.0, max_value=1.0),
        latency_before=st.floats(min_value=0.0, max_value=1e5),
        latency_after=st.floats(min_value=0.0, max_value=1e5),
    )
    def test_reward_is_bounded(
        self, before: float, after: float, latency_before: float, latency_after: float
    ) -> None:
        """Property: every reward lies in [-1, 1] whatever the metrics."""
        reward = compute_reward(
            snapshot(error_rate=before, latency_p95_ms=latency_before, quality_score=after),
            snapshot(error_rate=after, latency_p95_ms=latency_after, quality_score=before),
            RewardWeights(),
        )

        assert -1.0 <= reward.value <= 1.0


class TestLearn:
    async def test_pending_action_is_blocked(self) -> None:
        record = _record(snapshot(), None, ActionOutcome.PENDING)

        result = await _learner().learn(record)

        assert result.unwrap_err().reason is LearningBlockReason.EXECUTION_NOT_COMPLETED

    async def test_insufficient_samples(self) -> None:
        record = _record(snapshot(), snapshot(sample_count=5))

        result = await _learner(min_post_samples=10).learn(record)

        blocked = result.unwrap_err()
        assert blocked.reason is LearningBlockReason.INSUFFICIENT_SAMPLES
        assert blocked.details == {"required": 10, "actual": 5}

    async def test_missing_after_metrics(self) -> None:
        record = _record(snapshot(), None, ActionOutcome.INCONCLUSIVE)

        result = await _learner().learn(record)

        assert result.unwrap_err().reason is LearningBlockReason.INSUFFICIENT_SAMPLES

    async def test_effective_action(self) -> None:
        learner = _learner()
        record = _record(snapshot(error_rate=0.10), snapshot(error_rate=0.02))

        outcome = (await learner.learn(record, _diagnosis())).unwrap()

        assert outcome.is_effective
        assert outcome.outcome is ActionOutcome.SUCCESS
        assert outcome.reward.breakdown.weights == ERROR_WEIGHTS
        assert outcome.signature == "adjust_param:MAX_RETRIES:increase"
        assert learner.is_effective(_action()) is True

    async def test_committed_but_harmful_becomes_failed(self) -> None:
        record = _record(snapshot(latency_p95_ms=100.0), snapshot(latency_p95_ms=140.0))

        outcome = (await _learner().learn(record)).unwrap()

        assert outcome.reward.is_negative
        assert outcome.outcome is ActionOutcome.FAILED

    async def test_rolled_back_outcome_is_kept(self) -> None:
        record = _record(
            snapshot(error_rate=0.02), snapshot(error_rate=0.10), ActionOutcome.ROLLED_BACK
        )

        outcome = (await _learner().learn(record)).unwrap()

        assert outcome.outcome is ActionOutcome.ROLLED_BACK
        assert not outcome.is_effective


class TestSynthesis:
    async def test_lessons_from_learning_pipe(self) -> None:
        client = scripted_client()
        learner = Learner(LearnerConfig(), SelfImprovementPipes(client, TEST_PIPES))
        record = _record(snapshot(error_rate=0.10), snapshot(error_rate=0.02))

        outcome = (await learner.learn(record, _diagnosis())).unwrap()

        assert outcome.synthesis is not None
        assert outcome.lessons == ["Retries help with transient upstream errors"]
        assert client.called("learning") == 1

    async def test_pipe_failure_still_records_the_reward(self) -> None:
        client = scripted_client(learning=PipeHttpError("learning", "500"))
        learner = Learner(LearnerConfig(), SelfImprovementPipes(client, TEST_PIPES))
        record = _record(snapshot(error_rate=0.10), snapshot(error_rate=0.02))

        outcome = (await learner.learn(record)).unwrap()

        assert outcome.synthesis is None
        assert outcome.lessons == []
        assert learner.effectiveness_of(outcome.signature) is not None

    async def test_unparseable_synthesis_is_dropped(self) -> None:
        client = scripted_client(learning="no idea")
        learner = Learner(LearnerConfig(), SelfImprovementPipes(client, TEST_PIPES))
        record = _record(snapshot(error_rate=0.10), snapshot(error_rate=0.02))

        outcome = (await learner.learn(record)).unwrap()

        assert outcome.synthesis is None


class TestHistory:
    async def test_history_is_bounded_per_signature(self) -> None:
        learner = _learner(max_history_per_action=3)
        for _ in range(5):
            await learner.learn(_record(snapshot(error_rate=0.10), snapshot(error_rate=0.02)))

        record = learner.effectiveness_of("adjust_param:MAX_RETRIES:increase")

        assert record is not None
        assert record.total_attempts == 3
        assert learner.stats().total_cycles == 5

    async def test_effectiveness_aggregates(self) -> None:
        learner = _learner()
        await learner.learn(_record(snapshot(error_rate=0.10), snapshot(error_rate=0.02)))
        await learner.learn(_record(snapshot(error_rate=0.02), snapshot(error_rate=0.10)))

        record = learner.effectiveness_of("adjust_param:MAX_RETRIES:increase")

        assert record is not None
        assert record.successful_attempts == 1
        assert record.failed_attempts == 1
        assert record.max_reward is not None and record.max_reward > 0.0
        assert record.min_reward is not None and record.min_reward < 0.0

    async def test_weighted_score_blends_history(self) -> None:
        learner = _learner(history_weight=0.5)
        assert learner.weighted_score(_action(), 0.8) == 0.8

        await learner.learn(_record(snapshot(error_rate=0.10), snapshot(error_rate=0.02)))
        record = learner.effectiveness_of(_action().signature())

        assert record is not None
        assert learner.weighted_score(_action(), 0.8) == pytest.approx(
            0.5 * 0.8 + 0.5 * record.effectiveness_score
        )

    def test_effectiveness_score_discounts_few_attempts(self) -> None:
        assert effectiveness_score(0, 0, 0.0) == 0.0
        assert effectiveness_score(1, 1, 1.0) == pytest.approx(0.1)
        assert effectiveness_score(10, 10, 1.0) == pytest.approx(1.0)

    async def test_clear_history(self) -> None:
        learner = _learner()
        await learner.learn(_record(snapshot(error_rate=0.10), snapshot(error_rate=0.02)))

        learner.clear_history()

        assert learner.effectiveness_records() == []
        assert learner.is_effective(_action()) is None

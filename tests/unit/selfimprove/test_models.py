"""
Unit tests for the domain models.

Covers:
- Severity ordering and mapping from deviation
- TriggerMetric deviation direction (inverted quality)
- HealthReport helpers
- ParamValue kind checking
- Action signatures and reversibility
- Diagnosis status transitions
- Reward weights validation
"""

import pytest
from pydantic import TypeAdapter, ValidationError

from fakes import error_trigger, report_for
from selfimprove.domain.errors import InvalidStatusTransition
from selfimprove.domain.models import (
    AdjustParamAction,
    ClearCacheAction,
    ConfigScope,
    DiagnosisStatus,
    MonitoredMetric,
    NoOpAction,
    ParamKind,
    ParamValue,
    ResourceType,
    RestartServiceAction,
    RewardWeights,
    ScaleResourceAction,
    SelfDiagnosis,
    ServiceComponent,
    Severity,
    SuggestedAction,
    ToggleFeatureAction,
    TriggerMetric,
)


class TestSeverity:
    def test_ordering(self) -> None:
        assert Severity.CRITICAL.at_least(Severity.HIGH)
        assert Severity.WARNING.at_least(Severity.WARNING)
        assert not Severity.INFO.at_least(Severity.WARNING)

    @pytest.mark.parametrize(
        ("deviation", "expected"),
        [
            (10.0, Severity.INFO),
            (25.0, Severity.WARNING),
            (60.0, Severity.HIGH),
            (100.0, Severity.CRITICAL),
            (-150.0, Severity.CRITICAL),
        ],
    )
    def test_from_deviation(self, deviation: float, expected: Severity) -> None:
        assert Severity.from_deviation(deviation) is expected

    def test_most_severe(self) -> None:
        assert Severity.most_severe(Severity.INFO, Severity.HIGH, Severity.WARNING) is Severity.HIGH


class TestTriggerMetric:
    def test_deviation_positive_when_error_rate_rises(self) -> None:
        trigger = error_trigger(observed=0.08, baseline=0.02)

        assert trigger.deviation_pct() == pytest.approx(300.0)

    def test_quality_drop_is_positive_deviation(self) -> None:
        trigger = TriggerMetric(
            metric=MonitoredMetric.QUALITY_SCORE, observed=0.6, baseline=0.8, threshold=0.7
        )

        assert trigger.deviation_pct() == pytest.approx(25.0)

    def test_zero_baseline(self) -> None:
        trigger = error_trigger(observed=0.1, baseline=0.0)

        assert trigger.deviation_pct() == 100.0


class TestHealthReport:
    def test_most_severe_trigger(self) -> None:
        warning = error_trigger(observed=0.06, severity=Severity.WARNING)
        critical = TriggerMetric(
            metric=MonitoredMetric.LATENCY_P95,
            observed=9000.0,
            baseline=1000.0,
            threshold=5000.0,
            severity=Severity.CRITICAL,
        )
        report = report_for(warning).model_copy(update={"triggers": [warning, critical]})

        assert report.most_severe_trigger == critical
        assert report.needs_action
        assert not report.is_healthy

    def test_info_trigger_does_not_need_action(self) -> None:
        report = report_for(error_trigger(severity=Severity.INFO))

        assert not report.needs_action


class TestParamValue:
    def test_kind_must_match_value(self) -> None:
        with pytest.raises(ValidationError):
            ParamValue(kind=ParamKind.INTEGER, value="ten")

    def test_bool_is_not_an_integer(self) -> None:
        with pytest.raises(ValidationError):
            ParamValue(kind=ParamKind.INTEGER, value=True)

    def test_as_float(self) -> None:
        assert ParamValue.integer(3).as_float() == 3.0
        assert ParamValue.boolean(True).as_float() is None

    def test_str(self) -> None:
        assert str(ParamValue.boolean(False)) == "false"
        assert str(ParamValue.duration_ms(500)) == "500"


class TestConfigScope:
    def test_file_scope_requires_path(self) -> None:
        with pytest.raises(ValidationError):
            ConfigScope(kind="config_file")

    def test_runtime_scope_rejects_path(self) -> None:
        with pytest.raises(ValidationError):
            ConfigScope(kind="runtime", path="/etc/app.toml")

    def test_str(self) -> None:
        assert str(ConfigScope.config_file("app.toml")) == "config_file:app.toml"
        assert str(ConfigScope.environment()) == "environment"


class TestActions:
    def test_signatures(self) -> None:
        increase = AdjustParamAction(
            key="MAX_RETRIES", old_value=ParamValue.integer(3), new_value=ParamValue.integer(4)
        )
        scale_down = ScaleResourceAction(
            resource=ResourceType.CACHE_SIZE, old_value=500, new_value=400
        )
        toggle = ToggleFeatureAction(feature_name="ENABLE_VERBOSE_LOGGING", desired_state=False)

        assert increase.signature() == "adjust_param:MAX_RETRIES:increase"
        assert scale_down.signature() == "scale_resource:cache_size:decrease"
        assert toggle.signature() == "toggle_feature:ENABLE_VERBOSE_LOGGING:false"
        assert NoOpAction().signature() == "no_op"

    def test_restart_and_clear_cache_are_irreversible(self) -> None:
        assert not RestartServiceAction(component=ServiceComponent.STORAGE).reversible
        assert not ClearCacheAction(cache_name="sessions").reversible
        assert ToggleFeatureAction(feature_name="X", desired_state=True).reversible

    def test_discriminated_union_round_trip(self) -> None:
        adapter = TypeAdapter(SuggestedAction)
        action = ScaleResourceAction(
            resource=ResourceType.TIMEOUT_MS, old_value=5000, new_value=10000
        )

        parsed = adapter.validate_json(adapter.dump_json(action))

        assert parsed == action


class TestDiagnosisStatus:
    def _diagnosis(self) -> SelfDiagnosis:
        trigger = error_trigger()
        return SelfDiagnosis(
            trigger=trigger,
            severity=trigger.severity,
            description="error burst",
            suspected_cause="upstream",
        )

    def test_forward_transitions(self) -> None:
        diagnosis = self._diagnosis()

        executing = diagnosis.with_status(DiagnosisStatus.EXECUTING)
        completed = executing.with_status(DiagnosisStatus.COMPLETED)

        assert completed.status is DiagnosisStatus.COMPLETED
        assert diagnosis.status is DiagnosisStatus.PENDING

    def test_backward_transition_raises(self) -> None:
        completed = (
            self._diagnosis()
            .with_status(DiagnosisStatus.EXECUTING)
            .with_status(DiagnosisStatus.COMPLETED)
        )

        with pytest.raises(InvalidStatusTransition):
            completed.with_status(DiagnosisStatus.PENDING)

    def test_terminal_states(self) -> None:
        assert DiagnosisStatus.REJECTED.is_terminal
        assert DiagnosisStatus.SUPERSEDED.is_terminal
        assert not DiagnosisStatus.COMPLETED.is_terminal

    def test_values_mirror_trigger(self) -> None:
        diagnosis = self._diagnosis()

        assert diagnosis.observed_value == 0.08
        assert diagnosis.baseline_value == 0.02
        assert not diagnosis.is_actionable


class TestRewardWeights:
    def test_must_sum_to_one(self) -> None:
        with pytest.raises(ValidationError):
            RewardWeights(error_rate=0.5, latency=0.5, quality=0.5)

    def test_trigger_weights_favour_the_trigger(self) -> None:
        weights = RewardWeights.for_trigger(MonitoredMetric.ERROR_RATE)

        assert weights.error_rate == 0.7
        assert RewardWeights.for_trigger(MonitoredMetric.FALLBACK_RATE).fallback == 0.4

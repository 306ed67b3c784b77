"""
Analyzer: turns a trigger into a SelfDiagnosis with a suggested action.

The diagnosis pipe explains the deviation and recommends an action kind.
Concrete values always come from the allowlist bounds, never from the pipe.
When the decision pipe is enabled its choice competes with the rule-based
action, both blended with the learner's track record. Every candidate is
checked against the allowlist and, when configured, the validation pipe;
anything rejected degrades to a no-op so the anomaly stays on record.
"""

from collections.abc import Callable
from enum import Enum
from typing import TypeVar

import structlog
from pydantic import BaseModel

from selfimprove.config import AnalyzerConfig
from selfimprove.domain.errors import (
    AllowlistError,
    AnalysisBlocked,
    AnalysisBlockReason,
    PipeError,
    PipeTimeoutError,
)
from selfimprove.domain.models import (
    ActionKind,
    AdjustParamAction,
    ClearCacheAction,
    DiagnosisId,
    DiagnosisStatus,
    HealthReport,
    MonitoredMetric,
    NoOpAction,
    ResourceType,
    RestartServiceAction,
    ScaleResourceAction,
    SelfDiagnosis,
    ServiceComponent,
    Severity,
    SuggestedAction,
    ToggleFeatureAction,
    TriggerMetric,
)
from selfimprove.services.allowlist import ActionAllowlist, ConfigState
from selfimprove.services.circuit_breaker import CircuitBreaker
from selfimprove.services.learner import Learner
from selfimprove.services.pipes import (
    DiagnosisResponse,
    SelfImprovementPipes,
    ValidationResponse,
)
from selfimprove.services.result import Result

logger = structlog.get_logger(__name__)

# Parameter adjusted when the pipe names no usable target
_DEFAULT_PARAM = {
    MonitoredMetric.LATENCY_P95: "REQUEST_TIMEOUT_MS",
    MonitoredMetric.ERROR_RATE: "MAX_RETRIES",
    MonitoredMetric.QUALITY_SCORE: "REFLECTION_QUALITY_THRESHOLD",
    MonitoredMetric.FALLBACK_RATE: "GOT_PRUNE_THRESHOLD",
}

_DEFAULT_RESOURCE = {
    MonitoredMetric.LATENCY_P95: ResourceType.MAX_CONCURRENT_REQUESTS,
    MonitoredMetric.ERROR_RATE: ResourceType.MAX_RETRIES,
}

_RULE_JUDGEMENT = 0.5

# Settled diagnoses kept in memory; storage holds the full record
_HISTORY_SIZE = 100

_IN_FLIGHT = frozenset(
    {DiagnosisStatus.PENDING, DiagnosisStatus.APPROVED, DiagnosisStatus.EXECUTING}
)

EnumT = TypeVar("EnumT", bound=Enum)


def _parse_kind(value: str | None) -> ActionKind:
    if not value:
        return ActionKind.NO_OP
    try:
        return ActionKind(value.strip().lower())
    except ValueError:
        return ActionKind.NO_OP


def _parse_enum(enum_type: type[EnumT], value: str | None) -> EnumT | None:
    if not value:
        return None
    try:
        return enum_type(value.strip().lower())
    except ValueError:
        return None


class AnalyzerStats(BaseModel):
    pending_count: int
    total_diagnoses: int
    total_blocked: int
    consecutive_pipe_failures: int


class Analyzer:
    def __init__(
        self,
        config: AnalyzerConfig,
        pipes: SelfImprovementPipes,
        allowlist: ActionAllowlist,
        learner: Learner | None = None,
        breaker: CircuitBreaker | None = None,
        state_provider: Callable[[], ConfigState] | None = None,
    ) -> None:
        self.config = config
        self.pipes = pipes
        self.allowlist = allowlist
        self.learner = learner
        self.breaker = breaker
        self.state_provider = state_provider
        self._diagnoses: dict[DiagnosisId, SelfDiagnosis] = {}
        self._pending: list[DiagnosisId] = []
        self._total_diagnoses = 0
        self._total_blocked = 0
        self._consecutive_pipe_failures = 0
        self.logger = logger.bind(component="analyzer")

    async def analyze(
        self, report: HealthReport, trigger: TriggerMetric | None = None
    ) -> Result[SelfDiagnosis, AnalysisBlocked]:
        """Diagnose one trigger of a health report (the most severe by default)."""
        trigger = trigger or report.most_severe_trigger
        if trigger is None:
            raise ValueError("health report has no trigger to analyze")

        if self.breaker is not None and self.breaker.is_open:
            return self._blocked(AnalysisBlockReason.CIRCUIT_OPEN, "Circuit breaker is open")

        if len(self._pending) >= self.config.max_pending_diagnoses:
            return self._blocked(
                AnalysisBlockReason.PENDING_QUEUE_FULL,
                f"{len(self._pending)} diagnoses already pending",
                pending=len(self._pending),
            )

        if not trigger.severity.at_least(self.config.min_action_severity):
            diagnosis = self._record(
                self._observation(
                    trigger,
                    "Deviation below the action threshold",
                    f"{trigger.severity.value} < {self.config.min_action_severity.value}",
                )
            )
            return self._blocked(
                AnalysisBlockReason.SEVERITY_BELOW_THRESHOLD,
                f"Severity {trigger.severity.value} below "
                f"{self.config.min_action_severity.value}",
                diagnosis=diagnosis,
            )

        try:
            response, metrics = await self.pipes.generate_diagnosis(
                report, trigger, timeout_ms=self.config.diagnosis_timeout_ms
            )
        except PipeTimeoutError as e:
            self._consecutive_pipe_failures += 1
            diagnosis = self._record(
                self._observation(trigger, "Diagnosis timed out", str(e))
            )
            return self._blocked(
                AnalysisBlockReason.PIPE_TIMEOUT,
                str(e),
                diagnosis=diagnosis,
                timeout_ms=self.config.diagnosis_timeout_ms,
            )
        except PipeError as e:
            self._consecutive_pipe_failures += 1
            diagnosis = self._record(
                self._observation(trigger, "Diagnosis unavailable", str(e))
            )
            return self._blocked(AnalysisBlockReason.PIPE_ERROR, str(e), diagnosis=diagnosis)

        self._consecutive_pipe_failures = 0
        if not metrics.parse_success:
            self.logger.warning("diagnosis_parse_degraded", metric=trigger.metric.value)

        severity = Severity.most_severe(trigger.severity, response.severity_level)
        evidence = list(response.evidence)
        draft = SelfDiagnosis(
            trigger=trigger,
            severity=severity,
            description=f"Detected {severity.value} deviation in {trigger.metric.value}",
            suspected_cause=response.suspected_cause,
            action_rationale=response.rationale,
            confidence=response.confidence,
            evidence=evidence,
        )

        action = await self._choose_action(draft, response)

        try:
            self.allowlist.validate(action, self._state())
        except AllowlistError as e:
            self.logger.warning(
                "action_rejected_by_allowlist", action=action.signature(), error=str(e)
            )
            evidence.append(f"Rejected by allowlist: {e}")
            action = NoOpAction(reason=str(e))

        if not isinstance(action, NoOpAction):
            validation = await self._validate(draft, action)
            if not validation.should_proceed:
                self.logger.info(
                    "action_vetoed_by_validation",
                    action=action.signature(),
                    warnings=validation.warnings,
                )
                evidence.extend(validation.warnings)
                action = NoOpAction(reason="Validation advised against proceeding")

        diagnosis = self._record(
            draft.model_copy(update={"suggested_action": action, "evidence": evidence})
        )
        self._pending.append(diagnosis.id)

        self.logger.info(
            "diagnosis_created",
            diagnosis_id=diagnosis.id,
            metric=trigger.metric.value,
            severity=severity.value,
            action=action.signature(),
            confidence=response.confidence,
        )
        return Result.ok(diagnosis)

    async def _choose_action(
        self, draft: SelfDiagnosis, response: DiagnosisResponse
    ) -> SuggestedAction:
        trigger = draft.trigger
        rule_action = self._build_action(
            _parse_kind(response.recommended_action_type),
            response.action_target,
            trigger,
            response.rationale,
        )
        candidates: list[tuple[SuggestedAction, float]] = []
        if not isinstance(rule_action, NoOpAction):
            candidates.append((rule_action, _RULE_JUDGEMENT))

        if self.config.use_decision_pipe:
            history = self.learner.effectiveness_records() if self.learner else []
            try:
                selection, metrics = await self.pipes.select_action(
                    draft.model_copy(update={"suggested_action": rule_action}),
                    self.allowlist.prompt_context(),
                    history,
                    timeout_ms=self.config.diagnosis_timeout_ms,
                )
            except PipeError as e:
                self.logger.warning("action_selection_unavailable", error=str(e))
            else:
                kind, _, target = selection.selected_option.partition(":")
                chosen = self._build_action(
                    _parse_kind(kind), target or None, trigger, selection.rationale
                )
                if metrics.parse_success and not isinstance(chosen, NoOpAction):
                    candidates.append((chosen, selection.total_score))

        if not candidates:
            return rule_action

        def score(candidate: tuple[SuggestedAction, float]) -> float:
            action, judgement = candidate
            if self.learner is None:
                return judgement
            return self.learner.weighted_score(action, judgement)

        return max(candidates, key=score)[0]

    async def _validate(self, draft: SelfDiagnosis, action: SuggestedAction) -> ValidationResponse:
        try:
            validation, _ = await self.pipes.validate_decision(
                draft, action, timeout_ms=self.config.diagnosis_timeout_ms
            )
        except PipeError as e:
            self.logger.warning("validation_unavailable", error=str(e))
            return ValidationResponse.default()
        return validation

    def _build_action(
        self,
        kind: ActionKind,
        target: str | None,
        trigger: TriggerMetric,
        rationale: str,
    ) -> SuggestedAction:
        """Concrete action of `kind` with values taken from the allowlist bounds."""
        target = target.strip() if target else None
        metric = trigger.metric

        if kind is ActionKind.ADJUST_PARAM:
            key = target if target in self.allowlist.params else _DEFAULT_PARAM[metric]
            bounds = self.allowlist.param_bounds(key)
            if bounds is None:
                return NoOpAction(reason=f"{key} is not adjustable")
            increase = metric in (MonitoredMetric.LATENCY_P95, MonitoredMetric.ERROR_RATE)
            new_value = bounds.stepped(increase)
            if new_value is None or new_value == bounds.current:
                return NoOpAction(reason=f"{key} is already at its limit")
            return AdjustParamAction(key=key, old_value=bounds.current, new_value=new_value)

        if kind is ActionKind.TOGGLE_FEATURE:
            if not target:
                return NoOpAction(reason="No feature named to toggle")
            state = self._state()
            enabled = state.features.get(target, True) if state is not None else True
            return ToggleFeatureAction(
                feature_name=target, desired_state=not enabled, reason=rationale
            )

        if kind is ActionKind.SCALE_RESOURCE:
            resource = _parse_enum(ResourceType, target) or _DEFAULT_RESOURCE.get(metric)
            resource_bounds = self.allowlist.resources.get(resource) if resource else None
            if resource is None or resource_bounds is None:
                return NoOpAction(reason="No scalable resource for this deviation")
            state = self._state()
            current = resource_bounds.midpoint
            if state is not None:
                current = state.resources.get(resource, current)
            new = min(current + resource_bounds.step, resource_bounds.max)
            if new == current:
                return NoOpAction(reason=f"{resource.value} is already at its maximum")
            return ScaleResourceAction(resource=resource, old_value=current, new_value=new)

        if kind is ActionKind.CLEAR_CACHE:
            return ClearCacheAction(cache_name=target or "sessions")

        if kind is ActionKind.RESTART_SERVICE:
            component = _parse_enum(ServiceComponent, target) or ServiceComponent.PIPE_CLIENT
            return RestartServiceAction(component=component)

        return NoOpAction(reason=rationale or "No action recommended")

    def _state(self) -> ConfigState | None:
        return self.state_provider() if self.state_provider is not None else None

    def _observation(self, trigger: TriggerMetric, cause: str, detail: str) -> SelfDiagnosis:
        """A diagnosis that records the anomaly without proposing an action."""
        return SelfDiagnosis(
            trigger=trigger,
            severity=trigger.severity,
            description=f"Observed {trigger.severity.value} deviation in {trigger.metric.value}",
            suspected_cause=cause,
            evidence=[detail],
            status=DiagnosisStatus.REJECTED,
        )

    def _record(self, diagnosis: SelfDiagnosis) -> SelfDiagnosis:
        self._total_diagnoses += 1
        self._diagnoses[diagnosis.id] = diagnosis
        self._evict_settled()
        return diagnosis

    def _evict_settled(self) -> None:
        """Drop the oldest settled diagnoses beyond the in-memory history size."""
        excess = len(self._diagnoses) - _HISTORY_SIZE
        if excess <= 0:
            return
        settled = [
            diagnosis_id
            for diagnosis_id, diagnosis in self._diagnoses.items()
            if diagnosis.status not in _IN_FLIGHT
        ]
        for diagnosis_id in settled[:excess]:
            del self._diagnoses[diagnosis_id]

    def _blocked(
        self,
        reason: AnalysisBlockReason,
        message: str,
        diagnosis: SelfDiagnosis | None = None,
        **details: object,
    ) -> Result[SelfDiagnosis, AnalysisBlocked]:
        self._total_blocked += 1
        self.logger.info("analysis_blocked", reason=reason.value, message=message)
        return Result.err(AnalysisBlocked(reason, message, diagnosis=diagnosis, **details))

    # Diagnosis lifecycle

    def get(self, diagnosis_id: DiagnosisId) -> SelfDiagnosis | None:
        return self._diagnoses.get(diagnosis_id)

    def mark_status(self, diagnosis_id: DiagnosisId, status: DiagnosisStatus) -> SelfDiagnosis:
        """Move a diagnosis forward. Raises InvalidStatusTransition on a backward move."""
        current = self._diagnoses.get(diagnosis_id)
        if current is None:
            raise KeyError(f"Unknown diagnosis {diagnosis_id}")
        updated = current.with_status(status)
        self._diagnoses[diagnosis_id] = updated
        if status not in (DiagnosisStatus.PENDING, DiagnosisStatus.APPROVED):
            if diagnosis_id in self._pending:
                self._pending.remove(diagnosis_id)
        self.logger.debug(
            "diagnosis_status_changed",
            diagnosis_id=diagnosis_id,
            from_status=current.status.value,
            to_status=status.value,
        )
        return updated

    def approve(self, diagnosis_id: DiagnosisId) -> SelfDiagnosis:
        return self.mark_status(diagnosis_id, DiagnosisStatus.APPROVED)

    def next_pending(self) -> SelfDiagnosis | None:
        """Oldest diagnosis still waiting for execution."""
        if not self._pending:
            return None
        return self._diagnoses[self._pending[0]]

    def pending(self) -> list[SelfDiagnosis]:
        return [self._diagnoses[d] for d in self._pending]

    def supersede_all_pending(self) -> int:
        count = 0
        for diagnosis_id in list(self._pending):
            self.mark_status(diagnosis_id, DiagnosisStatus.SUPERSEDED)
            count += 1
        if count:
            self.logger.info("pending_diagnoses_superseded", count=count)
        return count

    def diagnoses(self) -> list[SelfDiagnosis]:
        return sorted(self._diagnoses.values(), key=lambda d: d.created_at)

    @property
    def pipe_failures_exceeded(self) -> bool:
        return self._consecutive_pipe_failures >= self.config.max_consecutive_pipe_failures

    def reset_pipe_failures(self) -> None:
        self._consecutive_pipe_failures = 0

    def stats(self) -> AnalyzerStats:
        return AnalyzerStats(
            pending_count=len(self._pending),
            total_diagnoses=self._total_diagnoses,
            total_blocked=self._total_blocked,
            consecutive_pipe_failures=self._consecutive_pipe_failures,
        )

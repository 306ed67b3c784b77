"""
Reasoning pipes consumed by the loop.

The pipe service is an opaque oracle behind `PipeClient.call()`. This module
builds the four prompts (diagnosis, action selection, validation, learning),
parses the JSON completions into typed responses and falls back to safe
defaults when a completion cannot be parsed.

Transport failures raise `PipeTimeoutError` / `PipeHttpError` (`PipeParseError`
for an empty completion); malformed completions never raise, they return the
default response with `parse_success=False`.
"""

import asyncio
import time
from collections.abc import Sequence
from typing import Any, Protocol, TypeVar

import structlog
from pydantic import BaseModel, Field, ValidationError
from pydantic_ai import Agent

from selfimprove.config import PipeConfig
from selfimprove.domain.errors import PipeHttpError, PipeParseError, PipeTimeoutError
from selfimprove.domain.models import (
    ActionEffectivenessRecord,
    HealthReport,
    MetricsSnapshot,
    NormalizedReward,
    SelfDiagnosis,
    Severity,
    SuggestedAction,
    TriggerMetric,
)

logger = structlog.get_logger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)


# Response models


class DiagnosisResponse(BaseModel):
    suspected_cause: str
    severity: str = "info"
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    evidence: list[str] = Field(default_factory=list)
    recommended_action_type: str = "no_op"
    action_target: str | None = None
    rationale: str = ""

    @property
    def severity_level(self) -> Severity:
        try:
            return Severity(self.severity.strip().lower())
        except ValueError:
            return Severity.INFO

    @classmethod
    def default(cls) -> "DiagnosisResponse":
        return cls(
            suspected_cause="Unable to determine cause",
            severity="info",
            confidence=0.0,
            evidence=[],
            recommended_action_type="no_op",
            action_target=None,
            rationale="Diagnosis unavailable",
        )


class ActionScores(BaseModel):
    effectiveness: float = Field(ge=0.0, le=1.0)
    risk: float = Field(ge=0.0, le=1.0)
    reversibility: float = Field(ge=0.0, le=1.0)
    historical_success: float = Field(ge=0.0, le=1.0)


class ActionSelectionResponse(BaseModel):
    selected_option: str
    scores: ActionScores
    total_score: float = Field(ge=0.0, le=1.0)
    rationale: str = ""
    alternatives_considered: list[str] = Field(default_factory=list)

    @classmethod
    def default(cls) -> "ActionSelectionResponse":
        return cls(
            selected_option="no_op",
            scores=ActionScores(
                effectiveness=0.0, risk=1.0, reversibility=0.0, historical_success=0.0
            ),
            total_score=0.0,
            rationale="Action selection unavailable",
            alternatives_considered=[],
        )


class BiasDetection(BaseModel):
    bias_type: str
    severity: int = Field(ge=1, le=5)
    explanation: str = ""


class FallacyDetection(BaseModel):
    fallacy_type: str
    severity: int = Field(ge=1, le=5)
    explanation: str = ""


class ValidationResponse(BaseModel):
    biases_detected: list[BiasDetection] = Field(default_factory=list)
    fallacies_detected: list[FallacyDetection] = Field(default_factory=list)
    overall_quality: float = Field(ge=0.0, le=1.0)
    should_proceed: bool
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def default(cls) -> "ValidationResponse":
        return cls(
            overall_quality=0.5,
            should_proceed=False,
            warnings=["Validation unavailable - defaulting to safe behavior"],
        )

    @classmethod
    def approved(cls) -> "ValidationResponse":
        return cls(overall_quality=1.0, should_proceed=True)


class ParamAdjustment(BaseModel):
    key: str
    direction: str
    reason: str = ""


class LearningRecommendations(BaseModel):
    adjust_allowlist: bool = False
    param_adjustments: list[ParamAdjustment] = Field(default_factory=list)
    adjust_cooldown: bool = False
    new_cooldown_secs: int | None = None


class LearningResponse(BaseModel):
    outcome_assessment: str
    root_cause_accuracy: float = Field(ge=0.0, le=1.0)
    action_effectiveness: float = Field(ge=0.0, le=1.0)
    lessons: list[str] = Field(default_factory=list)
    recommendations: LearningRecommendations = Field(default_factory=LearningRecommendations)
    confidence: float = Field(ge=0.0, le=1.0)

    @classmethod
    def default(cls) -> "LearningResponse":
        return cls(
            outcome_assessment="Learning synthesis unavailable",
            root_cause_accuracy=0.0,
            action_effectiveness=0.0,
            lessons=[],
            recommendations=LearningRecommendations(),
            confidence=0.0,
        )


class PipeCallMetrics(BaseModel):
    pipe_name: str
    latency_ms: int = Field(ge=0)
    parse_success: bool
    call_success: bool


def extract_json(completion: str) -> str:
    """Pull the JSON object out of a completion that may wrap it in prose or fences."""
    fenced = "```json"
    if fenced in completion:
        start = completion.index(fenced) + len(fenced)
        end = completion.find("```", start)
        if end != -1:
            return completion[start:end].strip()

    if "```" in completion:
        start = completion.index("```") + 3
        end = completion.find("```", start)
        if end != -1:
            return completion[start:end].strip()

    first, last = completion.find("{"), completion.rfind("}")
    if first != -1 and last > first:
        return completion[first : last + 1]

    return completion.strip()


# Transport


class PipeClient(Protocol):
    """
    Narrow interface to the reasoning pipe service.

    Returns the raw completion text. Raises PipeTimeoutError, PipeHttpError or
    PipeParseError.
    """

    async def call(
        self,
        pipe_name: str,
        prompt: str,
        variables: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> str: ...


class AgentPipeClient:
    """PipeClient backed by a pydantic-ai Agent."""

    def __init__(self, config: PipeConfig) -> None:
        self.config = config
        self.logger = logger.bind(component="pipe_client")

        self.agent = Agent(
            model=self.config.model_name,
            output_type=str,
            system_prompt=self._build_system_prompt(),
            defer_model_check=True,
        )

    def _build_system_prompt(self) -> str:
        return """You are the reasoning backend of a server that tunes its own configuration.

You receive health data, proposed corrective actions and their outcomes. You
always answer with a single JSON object that matches the schema given in the
request, with no commentary outside the JSON.

Prefer small, reversible changes. Say so when the evidence is thin: a low
confidence value is more useful than a confident guess."""

    async def call(
        self,
        pipe_name: str,
        prompt: str,
        variables: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        timeout_ms = timeout_ms or self.config.pipe_timeout_ms
        user_prompt = f"[pipe: {pipe_name}]\n\n{prompt}"
        if variables:
            rendered = "\n".join(f"- {key}: {value}" for key, value in variables.items())
            user_prompt += f"\n\n### Variables\n{rendered}"

        try:
            result = await asyncio.wait_for(
                self.agent.run(user_prompt=user_prompt),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError as e:
            self.logger.warning("pipe_call_timeout", pipe=pipe_name, timeout_ms=timeout_ms)
            raise PipeTimeoutError(pipe_name, timeout_ms) from e
        except Exception as e:
            self.logger.error("pipe_call_failed", pipe=pipe_name, error=str(e))
            raise PipeHttpError(pipe_name, str(e)) from e

        completion = str(result.output or "").strip()
        if not completion:
            raise PipeParseError(pipe_name, "empty completion")
        return completion


# Prompted pipes


def _json_block(value: Any) -> str:
    if isinstance(value, BaseModel):
        body = value.model_dump_json(indent=2)
    else:
        body = "[" + ",\n".join(v.model_dump_json(indent=2) for v in value) + "]"
    return f"```json\n{body}\n```"


class SelfImprovementPipes:
    """Prompt building and response parsing for the four loop pipes."""

    def __init__(self, client: PipeClient, config: PipeConfig | None = None) -> None:
        self.client = client
        self.config = config or PipeConfig()
        self.logger = logger.bind(component="self_improvement_pipes")

    async def generate_diagnosis(
        self,
        report: HealthReport,
        trigger: TriggerMetric,
        timeout_ms: int | None = None,
    ) -> tuple[DiagnosisResponse, PipeCallMetrics]:
        prompt = self._build_diagnosis_prompt(report, trigger)
        return await self._call(
            self.config.diagnosis_pipe,
            prompt,
            DiagnosisResponse,
            DiagnosisResponse.default(),
            timeout_ms,
        )

    async def select_action(
        self,
        diagnosis: SelfDiagnosis,
        allowlist_context: str,
        history: Sequence[ActionEffectivenessRecord],
        timeout_ms: int | None = None,
    ) -> tuple[ActionSelectionResponse, PipeCallMetrics]:
        prompt = self._build_action_selection_prompt(diagnosis, allowlist_context, history)
        return await self._call(
            self.config.decision_pipe,
            prompt,
            ActionSelectionResponse,
            ActionSelectionResponse.default(),
            timeout_ms,
        )

    async def validate_decision(
        self,
        diagnosis: SelfDiagnosis,
        action: SuggestedAction,
        timeout_ms: int | None = None,
    ) -> tuple[ValidationResponse, PipeCallMetrics]:
        if not self.config.enable_validation:
            return ValidationResponse.approved(), PipeCallMetrics(
                pipe_name=self.config.detection_pipe,
                latency_ms=0,
                parse_success=True,
                call_success=True,
            )

        prompt = self._build_validation_prompt(diagnosis, action)
        return await self._call(
            self.config.detection_pipe,
            prompt,
            ValidationResponse,
            ValidationResponse.default(),
            timeout_ms,
        )

    async def synthesize_learning(
        self,
        action: SuggestedAction,
        diagnosis: SelfDiagnosis | None,
        before: MetricsSnapshot,
        after: MetricsSnapshot,
        reward: NormalizedReward,
        timeout_ms: int | None = None,
    ) -> tuple[LearningResponse, PipeCallMetrics]:
        prompt = self._build_learning_prompt(action, diagnosis, before, after, reward)
        return await self._call(
            self.config.learning_pipe,
            prompt,
            LearningResponse,
            LearningResponse.default(),
            timeout_ms,
        )

    async def _call(
        self,
        pipe_name: str,
        prompt: str,
        response_type: type[ResponseT],
        fallback: ResponseT,
        timeout_ms: int | None,
    ) -> tuple[ResponseT, PipeCallMetrics]:
        start = time.perf_counter()
        self.logger.debug("pipe_call_started", pipe=pipe_name)

        timeout_ms = timeout_ms or self.config.pipe_timeout_ms
        try:
            completion = await asyncio.wait_for(
                self.client.call(pipe_name, prompt, timeout_ms=timeout_ms),
                timeout=timeout_ms / 1000,
            )
        except TimeoutError as e:
            self.logger.warning("pipe_call_timeout", pipe=pipe_name, timeout_ms=timeout_ms)
            raise PipeTimeoutError(pipe_name, timeout_ms) from e
        latency_ms = int((time.perf_counter() - start) * 1000)

        try:
            parsed = response_type.model_validate_json(extract_json(completion))
        except ValidationError as e:
            self.logger.warning(
                "pipe_response_parse_failed",
                pipe=pipe_name,
                error=str(e),
                completion_preview=completion[:200],
            )
            return fallback, PipeCallMetrics(
                pipe_name=pipe_name, latency_ms=latency_ms, parse_success=False, call_success=True
            )

        self.logger.info("pipe_call_succeeded", pipe=pipe_name, latency_ms=latency_ms)
        return parsed, PipeCallMetrics(
            pipe_name=pipe_name, latency_ms=latency_ms, parse_success=True, call_success=True
        )

    def _build_diagnosis_prompt(self, report: HealthReport, trigger: TriggerMetric) -> str:
        return f"""## Self-Improvement System Diagnosis Request

### Context
You are analyzing system health data to diagnose issues and recommend actions.
This is an autonomous self-improvement system for a reasoning server.

### Trigger Event
{_json_block(trigger)}

### Current Metrics
{_json_block(report.current)}

### Baseline Values
{_json_block(report.baselines)}

### Task
Analyze this data and provide a diagnosis. Respond with a JSON object:

```json
{{
  "suspected_cause": "Root cause analysis - what is likely causing this trigger",
  "severity": "info|warning|high|critical",
  "confidence": 0.0-1.0,
  "evidence": ["evidence point 1", "evidence point 2"],
  "recommended_action_type": "adjust_param|toggle_feature|scale_resource|restart_service|clear_cache|no_op",
  "action_target": "parameter or feature name if applicable",
  "rationale": "Why this action would help"
}}
```

Focus on:
1. Identifying the most likely root cause
2. Recommending safe, reversible actions
3. Providing clear rationale"""

    def _build_action_selection_prompt(
        self,
        diagnosis: SelfDiagnosis,
        allowlist_context: str,
        history: Sequence[ActionEffectivenessRecord],
    ) -> str:
        return f"""## Self-Improvement Action Selection

### Diagnosis
{_json_block(diagnosis)}

### Available Actions (Allowlist)
{allowlist_context}

### Historical Effectiveness
{_json_block(list(history))}

### Task
Select the best action from the allowlist. Respond with a JSON object:

```json
{{
  "selected_option": "action type and target, e.g. adjust_param:MAX_RETRIES",
  "scores": {{
    "effectiveness": 0.0-1.0,
    "risk": 0.0-1.0,
    "reversibility": 0.0-1.0,
    "historical_success": 0.0-1.0
  }},
  "total_score": 0.0-1.0,
  "rationale": "Why this action is the best choice",
  "alternatives_considered": ["other options that were evaluated"]
}}
```

Important:
1. Only select actions within the allowlist bounds
2. Prefer reversible actions
3. Consider historical success rates
4. Balance effectiveness against risk"""

    def _build_validation_prompt(self, diagnosis: SelfDiagnosis, action: SuggestedAction) -> str:
        return f"""## Self-Improvement Decision Validation

### Diagnosis
{_json_block(diagnosis)}

### Proposed Action
{_json_block(action)}

### Task
Validate this diagnosis and action for cognitive biases and logical fallacies.
Respond with a JSON object:

```json
{{
  "biases_detected": [
    {{"bias_type": "name", "severity": 1-5, "explanation": "why this is a concern"}}
  ],
  "fallacies_detected": [
    {{"fallacy_type": "name", "severity": 1-5, "explanation": "why this is a concern"}}
  ],
  "overall_quality": 0.0-1.0,
  "should_proceed": true/false,
  "warnings": ["any important caveats"]
}}
```

Check for:
1. Confirmation bias (only seeing supporting evidence)
2. Anchoring bias (over-relying on first data point)
3. Hasty generalization (insufficient samples)
4. False cause fallacy (correlation != causation)
5. Bandwagon fallacy (because it worked before)"""

    def _build_learning_prompt(
        self,
        action: SuggestedAction,
        diagnosis: SelfDiagnosis | None,
        before: MetricsSnapshot,
        after: MetricsSnapshot,
        reward: NormalizedReward,
    ) -> str:
        diagnosis_block = _json_block(diagnosis) if diagnosis is not None else "(not available)"
        return f"""## Self-Improvement Learning Synthesis

### Original Diagnosis
{diagnosis_block}

### Executed Action
{_json_block(action)}

### Metrics Before
{_json_block(before)}

### Metrics After
{_json_block(after)}

### Calculated Reward
{_json_block(reward)}

### Task
Synthesize learning from this action execution. Respond with a JSON object:

```json
{{
  "outcome_assessment": "summary of what happened",
  "root_cause_accuracy": 0.0-1.0,
  "action_effectiveness": 0.0-1.0,
  "lessons": ["lesson 1", "lesson 2"],
  "recommendations": {{
    "adjust_allowlist": true/false,
    "param_adjustments": [
      {{"key": "param name", "direction": "increase|decrease", "reason": "why"}}
    ],
    "adjust_cooldown": true/false,
    "new_cooldown_secs": null or number
  }},
  "confidence": 0.0-1.0
}}
```

Focus on:
1. Was the root cause diagnosis accurate?
2. Did the action have the intended effect?
3. What can we learn for future actions?
4. Should we adjust any parameters or thresholds?"""

"""
Tests for configuration management in `selfimprove/config.py`.

Covers:
- Conservative defaults (loop disabled, rollback on regression)
- SI_* environment parsing, booleans and severity coercion
- Logging level coercion to the expected Literal
- Invalid values surfacing as ConfigurationError
- Cross-section validation (diagnosis timeout within pipe timeout)
- get_config cache behavior
- structlog renderer selection
"""

from __future__ import annotations

import pytest
import structlog
from pydantic import ValidationError

from selfimprove.config import (
    AnalyzerConfig,
    BaselineConfig,
    LoggingConfig,
    PipeConfig,
    SelfImprovementConfig,
    get_config,
    load_config_from_env,
)
from selfimprove.domain.errors import ConfigurationError
from selfimprove.domain.models import Severity
from selfimprove.observability import configure_logging


def test_defaults_are_conservative(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SELF_IMPROVEMENT_ENABLED", raising=False)
    monkeypatch.delenv("SI_REQUIRE_APPROVAL", raising=False)

    config = load_config_from_env()

    assert config.enabled is False
    assert config.executor.rollback_on_regression is True
    assert config.executor.require_approval is False
    assert config.executor.max_actions_per_hour == 3
    assert config.circuit_breaker.failure_threshold == 3
    assert config.storage.backend == "memory"


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SELF_IMPROVEMENT_ENABLED", "yes")
    monkeypatch.setenv("SI_MAX_ACTIONS_PER_HOUR", "5")
    monkeypatch.setenv("SI_ERROR_RATE_THRESHOLD", "0.02")
    monkeypatch.setenv("SI_MIN_ACTION_SEVERITY", "HIGH")
    monkeypatch.setenv("SI_ROLLBACK_ON_REGRESSION", "off")
    monkeypatch.setenv("SI_STORAGE_BACKEND", "jsonl")
    monkeypatch.setenv("SI_STORAGE_PATH", "/tmp/si")

    config = load_config_from_env()

    assert config.enabled is True
    assert config.executor.max_actions_per_hour == 5
    assert config.monitor.error_rate_threshold == 0.02
    assert config.analyzer.min_action_severity is Severity.HIGH
    assert config.executor.rollback_on_regression is False
    assert config.storage.backend == "jsonl"
    assert config.storage.path == "/tmp/si"


def test_unknown_severity_falls_back_to_warning(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SI_MIN_ACTION_SEVERITY", "apocalyptic")

    config = load_config_from_env()

    assert config.analyzer.min_action_severity is Severity.WARNING


def test_logging_level_literal_coercion(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_FORMAT", "console")
    config = load_config_from_env()
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "console"

    monkeypatch.setenv("LOG_LEVEL", "verbose")
    config = load_config_from_env()
    assert config.logging.level == "INFO"


def test_non_numeric_value_raises_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SI_MAX_ACTIONS_PER_HOUR", "lots")

    with pytest.raises(ConfigurationError):
        load_config_from_env()


def test_out_of_range_value_raises_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SI_EMA_ALPHA", "1.5")

    with pytest.raises(ConfigurationError):
        load_config_from_env()


def test_critical_multiplier_must_exceed_warning() -> None:
    with pytest.raises(ValidationError):
        BaselineConfig(warning_multiplier=2.0, critical_multiplier=1.8)


def test_diagnosis_timeout_cannot_exceed_pipe_timeout() -> None:
    with pytest.raises(ValidationError):
        SelfImprovementConfig(
            analyzer=AnalyzerConfig(diagnosis_timeout_ms=10_000),
            pipes=PipeConfig(pipe_timeout_ms=5_000),
        )


def test_get_config_cache(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SI_MAX_PENDING_DIAGNOSES", "4")

    first = get_config()
    monkeypatch.setenv("SI_MAX_PENDING_DIAGNOSES", "8")
    second = get_config()

    assert first is second
    assert second.analyzer.max_pending_diagnoses == 4


@pytest.mark.parametrize(
    ("log_format", "renderer"),
    [("console", structlog.dev.ConsoleRenderer), ("json", structlog.processors.JSONRenderer)],
)
def test_configure_logging_picks_renderer(log_format: str, renderer: type) -> None:
    try:
        configure_logging(LoggingConfig(level="DEBUG", format=log_format))  # type: ignore[arg-type]

        assert isinstance(structlog.get_config()["processors"][-1], renderer)
    finally:
        structlog.reset_defaults()

"""
End-to-end check of the self-improvement loop, without network access.

This script exercises:
1. Configuration loading and validation
2. Health monitoring and adaptive baselines
3. A full cycle: diagnose, apply, verify, commit and learn
4. Regression detection with automatic rollback
5. Circuit breaker and operator controls

The reasoning pipes are answered by a canned client, so no API key is needed.

Run with: uv run python system_check.py
"""

import asyncio
import json
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from selfimprove.config import (
    BaselineConfig,
    ExecutorConfig,
    SelfImprovementConfig,
    get_config,
    print_config_summary,
    validate_config,
)
from selfimprove.domain.models import CycleResult, InvocationEvent, SuggestedAction
from selfimprove.observability import configure_logging
from selfimprove.services import ActionAllowlist, InMemoryConfigStore, SelfImprovementSystem

console = Console()

CANNED_COMPLETIONS = {
    "reflection-v1": {
        "suspected_cause": "Upstream pipe calls failing transiently",
        "severity": "high",
        "confidence": 0.8,
        "evidence": ["error burst in the last window"],
        "recommended_action_type": "adjust_param",
        "action_target": "MAX_RETRIES",
        "rationale": "More retries absorb transient failures",
        # Learning fields share the reflection pipe
        "outcome_assessment": "Error rate recovered after the change",
        "root_cause_accuracy": 0.8,
        "action_effectiveness": 0.9,
        "lessons": ["Retries help with transient upstream errors"],
        "recommendations": {"adjust_allowlist": False, "param_adjustments": []},
    },
    "detection-v1": {
        "biases_detected": [],
        "fallacies_detected": [],
        "overall_quality": 0.9,
        "should_proceed": True,
        "warnings": [],
    },
}


class CannedPipeClient:
    """Answers every pipe with a fixed JSON completion."""

    async def call(
        self,
        pipe_name: str,
        prompt: str,
        variables: dict[str, str] | None = None,
        timeout_ms: int | None = None,
    ) -> str:
        await asyncio.sleep(0.01)  # Simulate a model round trip
        payload = CANNED_COMPLETIONS.get(pipe_name)
        if payload is None:
            return "I would rather not choose."
        return f"```json\n{json.dumps(payload)}\n```"


class ScriptedTrafficStore(InMemoryConfigStore):
    """Config store whose changes are followed by scripted traffic."""

    def __init__(
        self, allowlist: ActionAllowlist, system_ref: list[SelfImprovementSystem]
    ) -> None:
        super().__init__(allowlist)
        self.system_ref = system_ref
        self.next_error_rate = 0.02

    async def apply(self, action: SuggestedAction) -> None:
        await super().apply(action)
        system = self.system_ref[0]
        for event in traffic(40, self.next_error_rate):
            system.on_invocation(event)


def traffic(total: int, error_rate: float, latency_ms: float = 120.0) -> list[InvocationEvent]:
    errors = round(total * error_rate)
    now = datetime.now(UTC)
    return [
        InvocationEvent(
            tool_name="reasoning_linear",
            success=i >= errors,
            latency_ms=latency_ms,
            quality_score=0.9,
            timestamp=now,
        )
        for i in range(total)
    ]


def build_system(
    config: SelfImprovementConfig,
) -> tuple[SelfImprovementSystem, ScriptedTrafficStore]:
    allowlist = ActionAllowlist.default()
    system_ref: list[SelfImprovementSystem] = []
    store = ScriptedTrafficStore(allowlist, system_ref)
    system = SelfImprovementSystem(
        config, pipe_client=CannedPipeClient(), config_store=store, allowlist=allowlist
    )
    system_ref.append(system)
    return system, store


async def warm_up(system: SelfImprovementSystem, windows: int = 5) -> None:
    for _ in range(windows):
        for event in traffic(50, 0.02):
            system.on_invocation(event)
        await system.monitor.force_check()


async def burst(system: SelfImprovementSystem, error_rate: float) -> CycleResult | None:
    for event in traffic(50, error_rate):
        system.on_invocation(event)
    return await system.force_cycle()


def demo_config() -> SelfImprovementConfig:
    return SelfImprovementConfig(
        enabled=True,
        baseline=BaselineConfig(min_samples=5),
        executor=ExecutorConfig(stabilization_period_secs=0, verification_timeout_secs=2),
    )


def print_cycle(title: str, result: CycleResult | None) -> None:
    table = Table(title=title)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    if result is None:
        table.add_row("Cycle", "dropped")
        console.print(table)
        return

    record = result.action_record
    table.add_row("Success", str(result.success))
    table.add_row("Action Taken", str(result.action_taken))
    if result.diagnosis is not None:
        table.add_row("Diagnosis", result.diagnosis.description)
        table.add_row("Diagnosis Status", result.diagnosis.status.value)
    if record is not None:
        table.add_row("Action", record.action.describe())
        table.add_row("Outcome", record.outcome.value)
        table.add_row("Error Rate Before", f"{record.metrics_before.error_rate:.1%}")
        if record.metrics_after is not None:
            table.add_row("Error Rate After", f"{record.metrics_after.error_rate:.1%}")
        if record.rollback_reason:
            table.add_row("Rollback Reason", record.rollback_reason)
    if result.reward is not None:
        table.add_row("Reward", f"{result.reward:+.3f}")
    if result.lessons:
        table.add_row("Lessons", result.lessons)
    if result.error:
        table.add_row("Note", result.error)
    table.add_row("Duration", f"{result.duration_ms}ms")
    console.print(table)


async def check_configuration() -> bool:
    """Check configuration loading and validation."""

    console.print(Panel("🔧 Checking Configuration", style="blue"))

    try:
        validate_config()
        config = get_config()
        configure_logging(config.logging)
        print_config_summary(config)
        console.print("✅ Configuration loaded successfully", style="green")
        return True

    except Exception as e:
        console.print(f"❌ Configuration check failed: {e}", style="red")
        return False


async def check_monitoring() -> bool:
    """Check aggregation, baselines and trigger detection."""

    console.print(Panel("📊 Checking Health Monitoring", style="blue"))

    try:
        system, _ = build_system(demo_config())
        await warm_up(system)

        for event in traffic(50, 0.08):
            system.on_invocation(event)
        report = await system.monitor.force_check()
        if report is None:
            console.print("❌ Monitor produced no report", style="red")
            return False

        table = Table(title="Health Report")
        table.add_column("Metric", style="cyan")
        table.add_column("Observed", style="green")
        table.add_column("Baseline", style="yellow")
        table.add_column("Severity", style="red")
        for trigger in report.triggers:
            table.add_row(
                trigger.metric.value,
                f"{trigger.observed:.4f}",
                f"{trigger.baseline:.4f}",
                trigger.severity.value,
            )
        console.print(table)

        console.print(
            f"✅ {len(report.triggers)} trigger(s) over {report.current.sample_count} samples",
            style="green",
        )
        return report.needs_action

    except Exception as e:
        console.print(f"❌ Monitoring check failed: {e}", style="red")
        return False


async def check_full_cycle() -> bool:
    """Check one cycle that fixes an error burst."""

    console.print(Panel("🚀 Checking Full Improvement Cycle", style="blue"))

    try:
        system, store = build_system(demo_config())
        await warm_up(system)

        console.print("🔄 Injecting an error burst...", style="yellow")
        store.next_error_rate = 0.02
        result = await burst(system, 0.08)
        print_cycle("Cycle Result", result)

        retries = store.state.params["MAX_RETRIES"]
        console.print(f"MAX_RETRIES is now {retries}", style="cyan")
        return result is not None and result.action_taken and result.success

    except Exception as e:
        console.print(f"❌ Full cycle check failed: {e}", style="red")
        return False


async def check_rollback() -> bool:
    """Check that a change making things worse is reverted."""

    console.print(Panel("🛡️ Checking Regression Rollback", style="blue"))

    try:
        system, store = build_system(demo_config())
        await warm_up(system)

        store.next_error_rate = 0.2
        result = await burst(system, 0.08)
        print_cycle("Cycle Result", result)

        retries = store.state.params["MAX_RETRIES"]
        console.print(f"MAX_RETRIES restored to {retries}", style="cyan")
        return result is not None and result.action_taken and not result.success

    except Exception as e:
        console.print(f"❌ Rollback check failed: {e}", style="red")
        return False


async def check_operator_controls() -> bool:
    """Check pause, circuit breaker and status reporting."""

    console.print(Panel("🧭 Checking Operator Controls", style="blue"))

    try:
        system, _ = build_system(demo_config())
        await warm_up(system)

        system.pause(timedelta(minutes=5))
        paused = await burst(system, 0.08)
        system.resume()

        system.state.breaker.force_open("operator check")
        halted = await burst(system, 0.08)

        status = system.status()
        table = Table(title="System Status")
        table.add_column("Field", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Enabled", str(status.enabled))
        table.add_row("Circuit", status.circuit.state.value)
        table.add_row("Cycles", str(status.total_cycles))
        hourly = f"{status.actions_this_hour}/{status.max_actions_per_hour}"
        table.add_row("Actions This Hour", hourly)
        table.add_row("Pending Diagnoses", str(status.pending_diagnoses))
        console.print(table)

        return (
            paused is not None
            and not paused.action_taken
            and halted is not None
            and halted.error is not None
        )

    except Exception as e:
        console.print(f"❌ Operator controls check failed: {e}", style="red")
        return False


async def run_all_checks() -> None:
    """Run all system checks."""

    console.print(Panel("🧪 Self-Improvement Loop - System Checks", style="bold blue"))

    checks = [
        ("Configuration", check_configuration),
        ("Health Monitoring", check_monitoring),
        ("Full Cycle", check_full_cycle),
        ("Regression Rollback", check_rollback),
        ("Operator Controls", check_operator_controls),
    ]

    results = []

    for check_name, check_func in checks:
        console.print(f"\n{'=' * 60}")
        try:
            result = await check_func()
            results.append((check_name, result))
        except KeyboardInterrupt:
            console.print("\n⏹️  Checks interrupted by user", style="yellow")
            break

    console.print(f"\n{'=' * 60}")
    console.print(Panel("📋 Check Results Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Check", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for check_name, result in results:
        if result:
            summary_table.add_row(check_name, "✅ PASSED")
            passed += 1
        else:
            summary_table.add_row(check_name, "❌ FAILED")

    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} checks passed")

    if passed == len(results):
        console.print("🎉 All checks passed! The loop is ready.", style="green")
    else:
        console.print("⚠️  Some checks failed. Check the logs above for details.", style="yellow")


if __name__ == "__main__":
    try:
        asyncio.run(run_all_checks())
    except KeyboardInterrupt:
        console.print("\n👋 Checks stopped by user", style="yellow")

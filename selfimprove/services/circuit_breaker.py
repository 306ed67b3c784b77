"""
Circuit breaker that gates the whole self-improvement loop.

CLOSED -> OPEN after `failure_threshold` consecutive cycle failures,
OPEN -> HALF_OPEN once `recovery_timeout_secs` has elapsed,
HALF_OPEN -> CLOSED after `success_threshold` consecutive successes,
HALF_OPEN -> OPEN on any failure. Consecutive counters reset on every transition.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from selfimprove.config import CircuitBreakerConfig
from selfimprove.domain.models import CircuitBreakerSummary, CircuitState

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CircuitBreaker:
    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.total_failures = 0
        self.total_successes = 0
        self.last_failure: datetime | None = None
        self.last_success: datetime | None = None
        self.last_state_change = clock()
        self._opened = asyncio.Event()
        self.logger = logger.bind(component="circuit_breaker")

    @classmethod
    def from_summary(
        cls,
        summary: CircuitBreakerSummary,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> "CircuitBreaker":
        """Build a breaker from its persisted summary."""
        breaker = cls(config, clock)
        breaker.restore(summary)
        return breaker

    def restore(self, summary: CircuitBreakerSummary) -> None:
        self._state = summary.state
        self.consecutive_failures = summary.consecutive_failures
        self.consecutive_successes = summary.consecutive_successes
        self.total_failures = summary.total_failures
        self.total_successes = summary.total_successes
        self.last_state_change = summary.last_state_change
        if summary.state is CircuitState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()
        self.logger.info("circuit_restored", state=summary.state.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    def allow_cycle(self) -> bool:
        """Whether automation may run now. Moves OPEN to HALF_OPEN once recovery is due."""
        if self._state is CircuitState.OPEN:
            if self._recovery_elapsed():
                self._transition_to(CircuitState.HALF_OPEN)
                return True
            return False
        return True

    def record_success(self) -> None:
        """Count a success. Ignored while OPEN: only the recovery timeout leaves OPEN."""
        if self._state is CircuitState.OPEN:
            self.logger.warning("success_ignored_while_open")
            return

        self.consecutive_failures = 0
        self.consecutive_successes += 1
        self.total_successes += 1
        self.last_success = self._clock()

        if self._state is CircuitState.HALF_OPEN:
            if self.consecutive_successes >= self.config.success_threshold:
                self._transition_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self.consecutive_successes = 0
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure = self._clock()

        if self._state is CircuitState.CLOSED:
            if self.consecutive_failures >= self.config.failure_threshold:
                self._transition_to(CircuitState.OPEN)
        elif self._state is CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)

    def force_open(self, reason: str) -> None:
        """Halt automation immediately, regardless of counters."""
        self.logger.error("circuit_forced_open", reason=reason, previous_state=self._state.value)
        self.total_failures += 1
        self.last_failure = self._clock()
        self._transition_to(CircuitState.OPEN)

    def reset(self) -> None:
        self._transition_to(CircuitState.CLOSED)

    async def wait_opened(self) -> None:
        """Block until the breaker is OPEN."""
        await self._opened.wait()

    def time_until_recovery(self) -> timedelta | None:
        if self._state is not CircuitState.OPEN:
            return None
        remaining = self._recovery_timeout() - (self._clock() - self.last_state_change)
        return max(remaining, timedelta(0))

    def summary(self) -> CircuitBreakerSummary:
        remaining = self.time_until_recovery()
        return CircuitBreakerSummary(
            state=self._state,
            consecutive_failures=self.consecutive_failures,
            consecutive_successes=self.consecutive_successes,
            total_failures=self.total_failures,
            total_successes=self.total_successes,
            last_state_change=self.last_state_change,
            time_until_recovery_secs=remaining.total_seconds() if remaining is not None else None,
        )

    def _recovery_timeout(self) -> timedelta:
        return timedelta(seconds=self.config.recovery_timeout_secs)

    def _recovery_elapsed(self) -> bool:
        return self._clock() - self.last_state_change >= self._recovery_timeout()

    def _transition_to(self, new_state: CircuitState) -> None:
        if new_state is not self._state:
            self.logger.info(
                "circuit_state_transition",
                from_state=self._state.value,
                to_state=new_state.value,
                consecutive_failures=self.consecutive_failures,
                consecutive_successes=self.consecutive_successes,
            )
        self._state = new_state
        self.last_state_change = self._clock()
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        if new_state is CircuitState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()

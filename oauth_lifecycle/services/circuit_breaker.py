"""
Circuit breaker guarding calls to external token endpoints.

One breaker exists per endpoint category (``"broker:slack"``,
``"direct:reddit"`` ...) and is shared by every instance calling that
endpoint, so persistent failures against a provider throttle all callers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from oauth_lifecycle.core.errors import CircuitOpenError

T = TypeVar("T")

logger = logging.getLogger(__name__)


def epoch_ms() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000


class CircuitState(str, Enum):
    """Breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    CLOSED -> OPEN after ``failure_threshold`` consecutive failures; OPEN fails
    fast until ``reset_timeout_ms`` elapses; HALF_OPEN admits exactly one trial
    call whose outcome closes or reopens the breaker.

    State reads and writes for a call are serialized by an ``asyncio.Lock``;
    the protected call itself runs outside the lock.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        clock: Callable[[], float] = epoch_ms,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
        on_state_change: Optional[Callable[[str, CircuitState, CircuitState], None]] = None,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1.")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._is_failure = is_failure or (lambda exc: True)
        self._on_state_change = on_state_change
        self._lock: Optional[asyncio.Lock] = None

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.next_attempt_at: Optional[float] = None
        self.last_failure_at: Optional[float] = None
        self._trial_in_flight = False

        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.rejected_calls = 0
        self.open_count = 0
        self.last_state_change = clock()

    def _get_lock(self) -> asyncio.Lock:
        """Lazily create the lock from within the running loop."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def call(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` under breaker protection."""
        async with self._get_lock():
            self._admit()

        try:
            result = await fn()
        except asyncio.CancelledError:
            # No await between the check and the write.
            self._trial_in_flight = False
            raise
        except Exception as exc:
            async with self._get_lock():
                if self._is_failure(exc):
                    self._record_failure()
                else:
                    self._record_excluded()
            raise

        async with self._get_lock():
            self._record_success()
        return result

    def is_available(self) -> bool:
        """Whether a call made now would be admitted. Does not mutate state."""
        if self.state is CircuitState.CLOSED:
            return True
        if self.state is CircuitState.OPEN:
            return self.next_attempt_at is None or self._clock() >= self.next_attempt_at
        return not self._trial_in_flight

    def _admit(self) -> None:
        self.total_calls += 1
        if self.state is CircuitState.OPEN:
            if self.next_attempt_at is not None and self._clock() < self.next_attempt_at:
                self._reject(f"Circuit breaker is OPEN for {self.name}")
            self._set_state(CircuitState.HALF_OPEN)

        if self.state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._reject(f"Circuit breaker is HALF_OPEN and a trial call is in flight for {self.name}")
            self._trial_in_flight = True

    def _reject(self, message: str) -> None:
        self.rejected_calls += 1
        raise CircuitOpenError(
            message,
            breaker_name=self.name,
            state=self.state.value,
            next_attempt_at=self.next_attempt_at,
        )

    def _record_success(self) -> None:
        self.successful_calls += 1
        self.failure_count = 0
        if self.state is CircuitState.HALF_OPEN:
            self._set_state(CircuitState.CLOSED)

    def _record_excluded(self) -> None:
        # The streak is left as is; a half-open trial slot is released.
        self._trial_in_flight = False

    def _record_failure(self) -> None:
        self.failed_calls += 1
        self.failure_count += 1
        self.last_failure_at = self._clock()
        if self.state is CircuitState.HALF_OPEN:
            self._set_state(CircuitState.OPEN)
        elif self.state is CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._set_state(CircuitState.OPEN)
        logger.debug(
            "Circuit breaker failure: %s (state=%s, failures=%s)",
            self.name,
            self.state.value,
            self.failure_count,
        )

    def _set_state(self, new_state: CircuitState) -> None:
        previous = self.state
        self.state = new_state
        self.last_state_change = self._clock()
        self._trial_in_flight = False

        if new_state is CircuitState.OPEN:
            self.next_attempt_at = self._clock() + self.reset_timeout_ms
            self.open_count += 1
        elif new_state is CircuitState.CLOSED:
            self.failure_count = 0
            self.next_attempt_at = None

        if previous is not new_state:
            logger.info(
                "Circuit breaker state change: %s (%s -> %s)",
                self.name,
                previous.value,
                new_state.value,
            )
            if self._on_state_change is not None:
                self._on_state_change(self.name, previous, new_state)

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "next_attempt_at": self.next_attempt_at,
            "last_failure_at": self.last_failure_at,
            "metrics": {
                "total_calls": self.total_calls,
                "successful_calls": self.successful_calls,
                "failed_calls": self.failed_calls,
                "rejected_calls": self.rejected_calls,
                "open_count": self.open_count,
                "last_state_change": self.last_state_change,
            },
            "config": {
                "failure_threshold": self.failure_threshold,
                "reset_timeout_ms": self.reset_timeout_ms,
            },
        }

    def health_assessment(self) -> dict[str, Any]:
        completed = self.successful_calls + self.failed_calls
        success_rate = (self.successful_calls / completed * 100) if completed else 100.0
        return {
            "healthy": self.state is CircuitState.CLOSED,
            "state": self.state.value,
            "success_rate": round(success_rate, 2),
            "total_calls": self.total_calls,
            "recent_failures": self.failure_count,
            "recommendation": self._recommendation(),
        }

    def _recommendation(self) -> str:
        if self.state is CircuitState.OPEN:
            return "Service is unavailable. Check service health and wait for circuit to reset."
        if self.state is CircuitState.HALF_OPEN:
            return "Service is being tested. Monitor closely for recovery."
        if self.failure_count > 0:
            return "Service is healthy but has recent failures. Monitor for patterns."
        return "Service is healthy and operating normally."

    def force_state(self, state: CircuitState | str) -> None:
        """Force a state for maintenance or tests."""
        self._set_state(CircuitState(state))

    def reset(self) -> None:
        self._set_state(CircuitState.CLOSED)
        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.rejected_calls = 0
        self.open_count = 0
        self.last_failure_at = None


class CircuitBreakerRegistry:
    """Owns one breaker per endpoint category, created lazily on first use."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        clock: Callable[[], float] = epoch_ms,
        is_failure: Optional[Callable[[BaseException], bool]] = None,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock
        self._is_failure = is_failure
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                failure_threshold=self.failure_threshold,
                reset_timeout_ms=self.reset_timeout_ms,
                clock=self._clock,
                is_failure=self._is_failure,
            )
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(name)

    def names(self) -> list[str]:
        return sorted(self._breakers)

    def status_all(self) -> dict[str, dict[str, Any]]:
        return {name: self._breakers[name].status() for name in self.names()}

    def health_all(self) -> dict[str, dict[str, Any]]:
        return {name: self._breakers[name].health_assessment() for name in self.names()}

    def remove(self, name: str) -> bool:
        return self._breakers.pop(name, None) is not None

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()


__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CircuitState", "epoch_ms"]

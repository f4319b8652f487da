try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio

import pytest

from fakes import FakeClock
from oauth_lifecycle.core.errors import CircuitOpenError
from oauth_lifecycle.services import CircuitBreaker, CircuitBreakerRegistry, CircuitState


class Upstream:
    """Call-count spy standing in for a token endpoint."""

    def __init__(self) -> None:
        self.calls = 0
        self.fail = True

    async def __call__(self) -> str:
        self.calls += 1
        if self.fail:
            raise ConnectionError("upstream down")
        return "ok"


async def _trip(breaker: CircuitBreaker, upstream: Upstream, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call(upstream)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_rejects_without_calling(clock: FakeClock) -> None:
    breaker = CircuitBreaker("direct:reddit", failure_threshold=5, reset_timeout_ms=60_000, clock=clock)
    upstream = Upstream()

    await _trip(breaker, upstream, 5)
    assert breaker.state is CircuitState.OPEN
    assert breaker.next_attempt_at == clock() + 60_000

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(upstream)

    assert upstream.calls == 5
    assert excinfo.value.breaker_name == "direct:reddit"
    assert excinfo.value.retry_after_seconds(clock()) == 60
    assert breaker.rejected_calls == 1


@pytest.mark.asyncio
async def test_half_open_success_closes(clock: FakeClock) -> None:
    breaker = CircuitBreaker("broker:slack", failure_threshold=2, reset_timeout_ms=1_000, clock=clock)
    upstream = Upstream()
    await _trip(breaker, upstream, 2)

    clock.advance(1_000)
    upstream.fail = False
    assert breaker.is_available()
    assert await breaker.call(upstream) == "ok"

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 0
    assert breaker.next_attempt_at is None


@pytest.mark.asyncio
async def test_half_open_failure_reopens_with_fresh_deadline(clock: FakeClock) -> None:
    breaker = CircuitBreaker("broker:slack", failure_threshold=2, reset_timeout_ms=1_000, clock=clock)
    upstream = Upstream()
    await _trip(breaker, upstream, 2)

    clock.advance(1_500)
    await _trip(breaker, upstream, 1)

    assert breaker.state is CircuitState.OPEN
    assert breaker.next_attempt_at == clock() + 1_000
    assert breaker.open_count == 2


@pytest.mark.asyncio
async def test_half_open_admits_exactly_one_trial(clock: FakeClock) -> None:
    breaker = CircuitBreaker("direct:airtable", failure_threshold=1, reset_timeout_ms=10, clock=clock)
    await _trip(breaker, Upstream(), 1)
    clock.advance(10)

    release = asyncio.Event()
    calls = 0

    async def slow() -> str:
        nonlocal calls
        calls += 1
        await release.wait()
        return "ok"

    trial = asyncio.create_task(breaker.call(slow))
    for _ in range(5):
        await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError):
        await breaker.call(slow)

    release.set()
    assert await trial == "ok"
    assert calls == 1
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_success_resets_consecutive_failure_count(clock: FakeClock) -> None:
    breaker = CircuitBreaker("direct:reddit", failure_threshold=3, clock=clock)
    upstream = Upstream()

    await _trip(breaker, upstream, 2)
    upstream.fail = False
    await breaker.call(upstream)
    upstream.fail = True
    await _trip(breaker, upstream, 2)

    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 2


@pytest.mark.asyncio
async def test_excluded_errors_leave_failure_streak_untouched(clock: FakeClock) -> None:
    breaker = CircuitBreaker(
        "direct:reddit",
        failure_threshold=3,
        clock=clock,
        is_failure=lambda exc: not isinstance(exc, PermissionError),
    )
    upstream = Upstream()

    async def rejected() -> None:
        raise PermissionError("invalid_grant")

    await _trip(breaker, upstream, 2)
    for _ in range(3):
        with pytest.raises(PermissionError):
            await breaker.call(rejected)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.failure_count == 2
    assert breaker.successful_calls == 0

    await _trip(breaker, upstream, 1)
    assert breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_excluded_error_releases_half_open_trial(clock: FakeClock) -> None:
    breaker = CircuitBreaker(
        "direct:slack",
        failure_threshold=1,
        reset_timeout_ms=1_000,
        clock=clock,
        is_failure=lambda exc: not isinstance(exc, PermissionError),
    )
    upstream = Upstream()
    await _trip(breaker, upstream, 1)
    clock.advance(1_000)

    async def rejected() -> None:
        raise PermissionError("token_revoked")

    with pytest.raises(PermissionError):
        await breaker.call(rejected)

    assert breaker.state is CircuitState.HALF_OPEN
    assert breaker.is_available()
    upstream.fail = False
    assert await breaker.call(upstream) == "ok"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_state_change_callback_and_health(clock: FakeClock) -> None:
    transitions = []
    breaker = CircuitBreaker(
        "broker:reddit",
        failure_threshold=1,
        clock=clock,
        on_state_change=lambda name, old, new: transitions.append((name, old, new)),
    )
    await _trip(breaker, Upstream(), 1)

    health = breaker.health_assessment()
    assert transitions == [("broker:reddit", CircuitState.CLOSED, CircuitState.OPEN)]
    assert health["healthy"] is False
    assert health["success_rate"] == 0.0
    assert health["recommendation"].startswith("Service is unavailable")

    breaker.reset()
    status = breaker.status()
    assert status["state"] == "CLOSED"
    assert status["metrics"]["total_calls"] == 0
    assert breaker.health_assessment()["recommendation"] == "Service is healthy and operating normally."


def test_force_state_accepts_names(clock: FakeClock) -> None:
    breaker = CircuitBreaker("direct:slack", clock=clock)

    breaker.force_state("OPEN")

    assert breaker.state is CircuitState.OPEN
    assert not breaker.is_available()


def test_rejects_invalid_threshold() -> None:
    with pytest.raises(ValueError):
        CircuitBreaker("x", failure_threshold=0)


def test_registry_creates_one_breaker_per_key(clock: FakeClock) -> None:
    registry = CircuitBreakerRegistry(failure_threshold=2, reset_timeout_ms=500, clock=clock)

    first = registry.get_or_create("direct:reddit")
    again = registry.get_or_create("direct:reddit")
    other = registry.get_or_create("broker:reddit")

    assert first is again
    assert first is not other
    assert first.failure_threshold == 2
    assert registry.names() == ["broker:reddit", "direct:reddit"]
    assert set(registry.status_all()) == {"broker:reddit", "direct:reddit"}
    assert registry.health_all()["direct:reddit"]["healthy"] is True

    first.force_state(CircuitState.OPEN)
    registry.reset_all()
    assert first.state is CircuitState.CLOSED

    assert registry.remove("broker:reddit")
    assert not registry.remove("broker:reddit")
    assert registry.get("broker:reddit") is None

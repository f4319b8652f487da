try:
    from . import _bootstrap  # noqa: F401
except Exception:  # pragma: no cover - fallback for direct execution
    import _bootstrap  # type: ignore # noqa: F401

import asyncio

import httpx
import pytest

from fakes import (
    REDDIT_BUFFER_MS,
    ScriptedBrokerClient,
    ScriptedProviderClient,
    build_engine,
    make_credential,
)
from oauth_lifecycle.clients import ProviderOAuthClient
from oauth_lifecycle.clients.providers import get_provider_adapter
from oauth_lifecycle.core.errors import (
    BrokerUnavailableError,
    CircuitOpenError,
    CredentialNotFoundError,
    ReauthRequiredError,
    RefreshFailedError,
    TokenEndpointError,
)
from oauth_lifecycle.models.oauth import OAuthStatus, TokenRecord
from oauth_lifecycle.services import CircuitState, ErrorType, is_token_expired


async def _drain(rounds: int = 10) -> None:
    """Let every ready task run until it blocks."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("offset_ms", "expect_refresh"),
    [(1, False), (0, True), (-1, True), (60_000, False), (-60_000, True)],
)
async def test_refresh_happens_iff_inside_expiry_buffer(
    store, clock, sleep, offset_ms: int, expect_refresh: bool
) -> None:
    expires_at = clock() + REDDIT_BUFFER_MS + offset_ms
    store.put(make_credential(expires_at=expires_at))
    provider = ScriptedProviderClient()
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert (len(provider.calls) == 1) is expect_refresh
    if expect_refresh:
        assert record.access_token == "fresh-access-1"
    else:
        assert record.access_token == "stale-access-token"
        assert store.get("inst-1").status is OAuthStatus.PENDING


def test_is_token_expired_treats_unknown_expiry_as_expired() -> None:
    assert is_token_expired(TokenRecord(access_token="a"), 0, 0)
    assert not is_token_expired(TokenRecord(access_token="a", expires_at=10_000), 1_000, 8_999)
    assert is_token_expired(TokenRecord(access_token="a", expires_at=10_000), 1_000, 9_000)


@pytest.mark.asyncio
async def test_slack_uses_ten_minute_buffer(store, clock, sleep) -> None:
    store.put(make_credential(provider="slack", expires_at=clock() + 9 * 60_000))
    provider = ScriptedProviderClient({"ok": True, "access_token": "xoxe.xoxp-new", "expires_in": 43200})
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert len(provider.calls) == 1
    assert record.access_token == "xoxe.xoxp-new"
    assert record.expires_at == int(clock() + 43200 * 1000)


@pytest.mark.asyncio
async def test_buffer_override_from_configuration(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() + 20 * 60_000))
    provider = ScriptedProviderClient()
    harness = build_engine(store, provider, clock=clock, sleep=sleep, buffer_minutes=30)

    await harness.engine.ensure_valid_token("inst-1")

    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_successful_refresh_persists_active_record(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient({"access_token": "new-access", "expires_in": 1800})
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert record.access_token == "new-access"
    assert record.refresh_token == "refresh-token-1"
    assert record.token_type == "Bearer"
    assert record.scope == "identity read"
    assert record.expires_at == int(clock() + 1_800_000)

    stored = store.get("inst-1")
    assert stored.status is OAuthStatus.ACTIVE
    assert stored.error is None
    assert stored.token == record
    assert provider.calls[0]["refresh_token"] == "refresh-token-1"


@pytest.mark.asyncio
async def test_rotated_refresh_token_replaces_previous(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=None))
    provider = ScriptedProviderClient(
        {"access_token": "new-access", "refresh_token": "refresh-token-2", "scope": "identity"}
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert record.refresh_token == "refresh-token-2"
    assert record.scope == "identity"
    assert record.expires_at == int(clock() + 3600 * 1000)


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauth_without_network(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1, refresh_token=None))
    provider = ScriptedProviderClient()
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    with pytest.raises(ReauthRequiredError):
        await harness.engine.ensure_valid_token("inst-1")

    assert provider.calls == []
    assert harness.metrics.summary()["overview"]["total_attempts"] == 0


@pytest.mark.asyncio
async def test_unknown_instance_raises_not_found(store, clock, sleep) -> None:
    harness = build_engine(store, ScriptedProviderClient(), clock=clock, sleep=sleep)

    with pytest.raises(CredentialNotFoundError):
        await harness.engine.ensure_valid_token("missing")


@pytest.mark.asyncio
async def test_invalid_grant_clears_tokens_after_one_attempt(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = ProviderOAuthClient(http_client=http)
    calls = []
    original = provider.refresh_token

    async def counting_refresh(*args, **kwargs):
        calls.append(1)
        return await original(*args, **kwargs)

    provider.refresh_token = counting_refresh  # type: ignore[method-assign]
    harness = build_engine(store, provider, clock=clock, sleep=sleep, max_attempts=3)

    with pytest.raises(ReauthRequiredError) as excinfo:
        await harness.engine.ensure_valid_token("inst-1")
    await http.aclose()

    assert len(calls) == 1
    assert sleep.delays == []
    assert excinfo.value.classified.error_type is ErrorType.INVALID_REFRESH_TOKEN
    assert excinfo.value.attempts == 1

    stored = store.get("inst-1")
    assert stored.token.access_token is None
    assert stored.token.refresh_token is None
    assert stored.token.expires_at is None
    assert stored.status is OAuthStatus.FAILED
    assert stored.error == "Your Reddit authorization has expired. Please re-authenticate."


@pytest.mark.asyncio
async def test_slack_revoked_token_requires_reauth(store, clock, sleep) -> None:
    store.put(make_credential(provider="slack", expires_at=clock() - 1))
    provider = ScriptedProviderClient({"ok": False, "error": "token_revoked"})
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    with pytest.raises(ReauthRequiredError) as excinfo:
        await harness.engine.ensure_valid_token("inst-1")

    assert excinfo.value.classified.error_type is ErrorType.TOKEN_REVOKED
    assert len(provider.calls) == 1
    assert store.get("inst-1").token.refresh_token is None


@pytest.mark.asyncio
async def test_timeout_then_success_is_retried(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(
        httpx.ReadTimeout("timed out"),
        {"access_token": "after-retry", "expires_in": 3600},
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep, max_attempts=3)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert record.access_token == "after-retry"
    assert len(sleep.delays) == 1
    assert 1.0 <= sleep.delays[0] <= 2.0

    metrics = harness.metrics.instance_metrics("inst-1")
    assert metrics["total_attempts"] == 2
    assert metrics["total_successes"] == 1
    assert metrics["total_failures"] == 1
    assert metrics["recent_attempts"][0]["error_type"] == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_exhausted_retries_keep_tokens_and_raise_refresh_failed(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(
        *[TokenEndpointError("server exploded", status_code=500) for _ in range(3)]
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep, max_attempts=3)

    with pytest.raises(RefreshFailedError) as excinfo:
        await harness.engine.ensure_valid_token("inst-1")

    assert len(provider.calls) == 3
    assert len(sleep.delays) == 2
    assert sleep.delays[1] >= sleep.delays[0]
    assert excinfo.value.attempts == 3
    assert excinfo.value.classified.error_type is ErrorType.SERVER_ERROR

    stored = store.get("inst-1")
    assert stored.status is OAuthStatus.FAILED
    assert stored.token.refresh_token == "refresh-token-1"
    assert stored.token.access_token == "stale-access-token"
    assert stored.error == "Reddit authentication server error. Please try again."


@pytest.mark.asyncio
async def test_unknown_error_is_not_retried(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(TokenEndpointError("teapot", status_code=418))
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    with pytest.raises(RefreshFailedError):
        await harness.engine.ensure_valid_token("inst-1")

    assert len(provider.calls) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_rate_limited_refresh_backs_off_longer(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(
        TokenEndpointError("Too Many Requests", status_code=429),
        {"access_token": "eventually"},
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    await harness.engine.ensure_valid_token("inst-1")

    assert 5.0 <= sleep.delays[0] <= 6.0


@pytest.mark.asyncio
async def test_request_timeout_is_classified_as_network_error(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(gate=asyncio.Event())
    harness = build_engine(
        store, provider, clock=clock, sleep=sleep, max_attempts=1, request_timeout_seconds=0.01
    )

    with pytest.raises(RefreshFailedError) as excinfo:
        await harness.engine.ensure_valid_token("inst-1")

    assert excinfo.value.classified.error_type is ErrorType.NETWORK_ERROR


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    gate = asyncio.Event()
    provider = ScriptedProviderClient(gate=gate)
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    first = asyncio.create_task(harness.engine.ensure_valid_token("inst-1"))
    second = asyncio.create_task(harness.engine.ensure_valid_token("inst-1"))
    await _drain()
    gate.set()

    results = await asyncio.gather(first, second)

    assert len(provider.calls) == 1
    assert results[0] == results[1]
    assert harness.metrics.summary()["overview"]["total_attempts"] == 1


@pytest.mark.asyncio
async def test_failures_are_shared_by_concurrent_callers(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    gate = asyncio.Event()
    provider = ScriptedProviderClient(TokenEndpointError("bad", error_code="invalid_grant"), gate=gate)
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    tasks = [asyncio.create_task(harness.engine.ensure_valid_token("inst-1")) for _ in range(3)]
    await _drain()
    gate.set()
    results = await asyncio.gather(*tasks, return_exceptions=True)

    assert len(provider.calls) == 1
    assert all(isinstance(result, ReauthRequiredError) for result in results)


@pytest.mark.asyncio
async def test_cancel_event_aborts_refresh_without_store_write(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    gate = asyncio.Event()
    provider = ScriptedProviderClient(gate=gate)
    harness = build_engine(store, provider, clock=clock, sleep=sleep)
    cancel = asyncio.Event()

    task = asyncio.create_task(harness.engine.ensure_valid_token("inst-1", cancel_event=cancel))
    await _drain()
    assert len(provider.calls) == 1
    cancel.set()

    with pytest.raises(asyncio.CancelledError):
        await task

    # Even if the endpoint answers now, nothing is persisted.
    gate.set()
    await _drain()
    stored = store.get("inst-1")
    assert stored.status is OAuthStatus.PENDING
    assert stored.token.access_token == "stale-access-token"
    assert harness.metrics.summary()["overview"]["total_attempts"] == 0

    record = await harness.engine.ensure_valid_token("inst-1")
    assert len(provider.calls) == 2
    assert record.access_token == "fresh-access-2"


@pytest.mark.asyncio
async def test_cancelling_one_waiter_keeps_shared_refresh_alive(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    gate = asyncio.Event()
    provider = ScriptedProviderClient(gate=gate)
    harness = build_engine(store, provider, clock=clock, sleep=sleep)
    cancel = asyncio.Event()

    leaving = asyncio.create_task(harness.engine.ensure_valid_token("inst-1", cancel_event=cancel))
    staying = asyncio.create_task(harness.engine.ensure_valid_token("inst-1"))
    await _drain()
    cancel.set()

    with pytest.raises(asyncio.CancelledError):
        await leaving
    gate.set()
    record = await staying

    assert record.access_token == "fresh-access-1"
    assert len(provider.calls) == 1
    assert store.get("inst-1").status is OAuthStatus.ACTIVE


@pytest.mark.asyncio
async def test_sixth_call_after_five_failures_is_rejected_without_network(
    store, clock, sleep
) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(*[httpx.ConnectError("refused") for _ in range(6)])
    harness = build_engine(store, provider, clock=clock, sleep=sleep, max_attempts=1)

    for _ in range(5):
        with pytest.raises(RefreshFailedError):
            await harness.engine.ensure_valid_token("inst-1")

    before = store.get("inst-1")
    with pytest.raises(CircuitOpenError) as excinfo:
        await harness.engine.ensure_valid_token("inst-1")

    assert len(provider.calls) == 5
    assert excinfo.value.breaker_name == "direct:reddit"
    assert harness.breakers.get("direct:reddit").state is CircuitState.OPEN
    assert store.get("inst-1") == before
    assert harness.metrics.summary()["overview"]["total_attempts"] == 5


@pytest.mark.asyncio
async def test_breaker_is_shared_across_instances(store, clock, sleep) -> None:
    for index in range(3):
        store.put(make_credential(f"inst-{index}", expires_at=clock() - 1))
    provider = ScriptedProviderClient(*[httpx.ConnectError("refused") for _ in range(2)])
    harness = build_engine(
        store, provider, clock=clock, sleep=sleep, max_attempts=1, failure_threshold=2
    )

    for instance_id in ("inst-0", "inst-1"):
        with pytest.raises(RefreshFailedError):
            await harness.engine.ensure_valid_token(instance_id)

    with pytest.raises(CircuitOpenError):
        await harness.engine.ensure_valid_token("inst-2")
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_reauth_errors_do_not_trip_the_breaker(store, clock, sleep) -> None:
    provider = ScriptedProviderClient(
        *[TokenEndpointError("bad grant", error_code="invalid_grant") for _ in range(3)]
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep, failure_threshold=2)

    for index in range(3):
        store.put(make_credential(f"inst-{index}", expires_at=clock() - 1))
        with pytest.raises(ReauthRequiredError):
            await harness.engine.ensure_valid_token(f"inst-{index}")

    assert harness.breakers.get("direct:reddit").state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_unknown_errors_trip_the_breaker(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient(
        *[TokenEndpointError("Unauthorized", status_code=401) for _ in range(5)]
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep, max_attempts=1)

    for _ in range(5):
        with pytest.raises(RefreshFailedError):
            await harness.engine.ensure_valid_token("inst-1")

    with pytest.raises(CircuitOpenError):
        await harness.engine.ensure_valid_token("inst-1")
    assert len(provider.calls) == 5


@pytest.mark.asyncio
async def test_reauth_error_does_not_break_a_failure_streak(store, clock, sleep) -> None:
    store.put(make_credential("inst-1", expires_at=clock() - 1))
    store.put(make_credential("inst-2", expires_at=clock() - 1))
    provider = ScriptedProviderClient(
        *[httpx.ConnectError("refused") for _ in range(4)],
        TokenEndpointError("bad grant", error_code="invalid_grant"),
        httpx.ConnectError("refused"),
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep, max_attempts=1)

    for _ in range(4):
        with pytest.raises(RefreshFailedError):
            await harness.engine.ensure_valid_token("inst-1")
    with pytest.raises(ReauthRequiredError):
        await harness.engine.ensure_valid_token("inst-2")
    assert harness.breakers.get("direct:reddit").failure_count == 4

    with pytest.raises(RefreshFailedError):
        await harness.engine.ensure_valid_token("inst-1")

    breaker = harness.breakers.get("direct:reddit")
    assert breaker.state is CircuitState.OPEN
    assert breaker.failure_count == 5


@pytest.mark.asyncio
async def test_broker_is_preferred_when_configured(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient()
    broker = ScriptedBrokerClient({"access_token": "broker-access", "expires_in": 600})
    harness = build_engine(store, provider, clock=clock, sleep=sleep, broker=broker)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert record.access_token == "broker-access"
    assert provider.calls == []
    assert broker.calls[0]["provider"] == "reddit"
    assert broker.calls[0]["refresh_token"] == "refresh-token-1"
    assert harness.metrics.method_success_rates() == {"broker": 100.0}


@pytest.mark.asyncio
async def test_unavailable_broker_falls_back_to_direct(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient({"access_token": "direct-access"})
    broker = ScriptedBrokerClient(BrokerUnavailableError("broker down", status_code=503))
    harness = build_engine(store, provider, clock=clock, sleep=sleep, broker=broker)

    record = await harness.engine.ensure_valid_token("inst-1")

    assert record.access_token == "direct-access"
    assert len(broker.calls) == 1
    assert len(provider.calls) == 1
    assert sleep.delays == []
    assert harness.metrics.method_success_rates() == {"broker": 0.0, "direct": 100.0}
    assert harness.metrics.direct_fallback_rate() == 50.0


@pytest.mark.asyncio
async def test_broker_oauth_error_does_not_fall_back(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient()
    broker = ScriptedBrokerClient(
        TokenEndpointError(
            "Refresh token is invalid or expired - user may need to re-authorize",
            status_code=400,
        )
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep, broker=broker)

    with pytest.raises(ReauthRequiredError):
        await harness.engine.ensure_valid_token("inst-1")

    assert provider.calls == []


@pytest.mark.asyncio
async def test_open_broker_breaker_goes_straight_to_direct(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient()
    broker = ScriptedBrokerClient()
    harness = build_engine(store, provider, clock=clock, sleep=sleep, broker=broker)
    harness.breakers.get_or_create("broker:reddit").force_state(CircuitState.OPEN)

    await harness.engine.ensure_valid_token("inst-1")

    assert broker.calls == []
    assert len(provider.calls) == 1
    assert harness.metrics.direct_fallback_rate() == 100.0


@pytest.mark.asyncio
async def test_broker_bypassed_for_disabled_providers(store, clock, sleep) -> None:
    store.put(make_credential(provider="airtable", expires_at=clock() - 1))
    provider = ScriptedProviderClient()
    broker = ScriptedBrokerClient()
    harness = build_engine(
        store,
        provider,
        clock=clock,
        sleep=sleep,
        broker=broker,
        broker_disabled_providers=("airtable",),
    )

    await harness.engine.ensure_valid_token("inst-1")

    assert broker.calls == []
    assert provider.calls[0]["provider"] == "airtable"


@pytest.mark.asyncio
async def test_exchange_credentials_persists_broker_tokens(store, clock, sleep) -> None:
    store.put(make_credential(access_token=None, refresh_token=None))
    broker = ScriptedBrokerClient(
        {"access_token": "initial-access", "refresh_token": "initial-refresh", "expires_in": 3600}
    )
    harness = build_engine(store, ScriptedProviderClient(), clock=clock, sleep=sleep, broker=broker)

    record = await harness.engine.exchange_credentials("inst-1", ["identity", "read"])

    assert record.refresh_token == "initial-refresh"
    assert broker.exchanges[0]["scopes"] == ["identity", "read"]
    stored = store.get("inst-1")
    assert stored.status is OAuthStatus.ACTIVE
    assert stored.token.access_token == "initial-access"


@pytest.mark.asyncio
async def test_exchange_credentials_requires_broker(store, clock, sleep) -> None:
    store.put(make_credential())
    harness = build_engine(store, ScriptedProviderClient(), clock=clock, sleep=sleep)

    with pytest.raises(RefreshFailedError):
        await harness.engine.exchange_credentials("inst-1")


@pytest.mark.asyncio
async def test_stalled_broker_falls_back_to_direct(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    provider = ScriptedProviderClient({"access_token": "direct-access"})
    broker = ScriptedBrokerClient(gate=asyncio.Event())
    harness = build_engine(
        store,
        provider,
        clock=clock,
        sleep=sleep,
        broker=broker,
        max_attempts=1,
        request_timeout_seconds=0.01,
    )

    record = await harness.engine.ensure_valid_token("inst-1")

    assert record.access_token == "direct-access"
    assert len(broker.calls) == 1
    assert len(provider.calls) == 1
    assert harness.metrics.summary()["errors"]["errors_by_type"] == {"SERVICE_UNAVAILABLE": 1}
    assert harness.breakers.get("broker:reddit").failure_count == 1


@pytest.mark.asyncio
async def test_direct_refresh_without_broker_is_not_a_fallback(store, clock, sleep) -> None:
    store.put(make_credential(expires_at=clock() - 1))
    harness = build_engine(store, ScriptedProviderClient(), clock=clock, sleep=sleep)

    await harness.engine.ensure_valid_token("inst-1")

    assert harness.metrics.direct_fallback_rate() == 0.0


@pytest.mark.asyncio
async def test_refresh_sweep_counts_each_outcome(store, clock, sleep) -> None:
    store.put(make_credential("a-due", expires_at=clock() - 1))
    store.put(make_credential("b-fresh", expires_at=clock() + 3_600_000))
    store.put(make_credential("c-no-refresh", refresh_token=None))
    store.put(make_credential("d-revoked", expires_at=clock() - 1))
    provider = ScriptedProviderClient(
        {"access_token": "swept-access", "expires_in": 3600},
        TokenEndpointError("bad grant", error_code="invalid_grant"),
    )
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    sweep = await harness.engine.refresh_expiring()

    assert sweep.as_dict() == {
        "checked": 4,
        "fresh": 1,
        "refreshed": 1,
        "reauth_required": 2,
        "failed": 0,
        "rejected": 0,
    }
    assert [call["refresh_token"] for call in provider.calls] == ["refresh-token-1"] * 2
    assert store.get("a-due").token.access_token == "swept-access"
    assert store.get("b-fresh").token.access_token == "stale-access-token"
    assert store.get("d-revoked").token.refresh_token is None


@pytest.mark.asyncio
async def test_refresh_sweep_counts_rejections_and_unknown_providers(store, clock, sleep) -> None:
    store.put(make_credential("inst-1", expires_at=clock() - 1))
    store.put(make_credential("inst-2", provider="dropbox", expires_at=clock() - 1))
    provider = ScriptedProviderClient()
    harness = build_engine(store, provider, clock=clock, sleep=sleep)
    harness.breakers.get_or_create("direct:reddit").force_state(CircuitState.OPEN)

    sweep = await harness.engine.refresh_expiring()

    assert sweep.rejected == 1
    assert sweep.failed == 1
    assert provider.calls == []


@pytest.mark.asyncio
async def test_refresh_sweep_works_in_batches(store, clock, sleep) -> None:
    for index in range(3):
        store.put(make_credential(f"inst-{index}", expires_at=clock() - 1))
    gate = asyncio.Event()
    provider = ScriptedProviderClient(gate=gate)
    harness = build_engine(store, provider, clock=clock, sleep=sleep)

    sweep_task = asyncio.create_task(harness.engine.refresh_expiring(batch_size=2))
    await _drain()
    assert len(provider.calls) == 2

    gate.set()
    sweep = await sweep_task

    assert sweep.refreshed == 3
    assert len(provider.calls) == 3


@pytest.mark.asyncio
async def test_refresh_sweep_rejects_empty_batches(store, clock, sleep) -> None:
    harness = build_engine(store, ScriptedProviderClient(), clock=clock, sleep=sleep)

    with pytest.raises(ValueError):
        await harness.engine.refresh_expiring(batch_size=0)


@pytest.mark.asyncio
async def test_broker_path_without_client_reports_broker_unavailable(store, clock, sleep) -> None:
    harness = build_engine(store, ScriptedProviderClient(), clock=clock, sleep=sleep)

    with pytest.raises(BrokerUnavailableError):
        await harness.engine._via_broker(get_provider_adapter("reddit"), make_credential())

"""
Token refresh orchestration.

``TokenRefreshEngine.ensure_valid_token`` is the one entry point callers use
before talking to a provider API: it loads the stored credential, refreshes
it when it is inside the expiry buffer, and persists the outcome. Refreshes
go through the OAuth broker when one is configured and fall back to the
provider's own token endpoint when the broker is unavailable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, NoReturn, Optional, Sequence

from oauth_lifecycle.clients.credential_store import CredentialStore
from oauth_lifecycle.clients.oauth_broker import OAuthBrokerClient
from oauth_lifecycle.clients.provider_oauth import ProviderOAuthClient
from oauth_lifecycle.clients.providers import ProviderAdapter, get_provider_adapter
from oauth_lifecycle.core.errors import (
    BrokerUnavailableError,
    CircuitOpenError,
    CredentialNotFoundError,
    OAuthLifecycleError,
    ReauthRequiredError,
    RefreshFailedError,
)
from oauth_lifecycle.core.logging import sanitize_token
from oauth_lifecycle.models.oauth import OAuthStatusUpdate, StoredCredential, TokenRecord
from oauth_lifecycle.services.backoff import BackoffScheduler
from oauth_lifecycle.services.circuit_breaker import CircuitBreakerRegistry, epoch_ms
from oauth_lifecycle.services.error_classifier import ClassifiedError, ErrorClassifier
from oauth_lifecycle.services.token_metrics import MetricsRecorder

logger = logging.getLogger(__name__)

BROKER = "broker"
DIRECT = "direct"

TokenCall = Callable[[ProviderAdapter, StoredCredential], Awaitable[dict[str, Any]]]


def is_token_expired(record: TokenRecord, buffer_ms: float, now_ms: float) -> bool:
    """True when the token is unknown-expiry or within ``buffer_ms`` of expiring."""
    if record.expires_at is None:
        return True
    return now_ms >= record.expires_at - buffer_ms


@dataclass(frozen=True)
class RefreshStrategy:
    """One way of obtaining fresh tokens, tried in list order."""

    method: str
    invoke: TokenCall
    falls_back: bool = False


@dataclass
class RefreshSweep:
    """Outcome counts of one pass over the credential store."""

    checked: int = 0
    fresh: int = 0
    refreshed: int = 0
    reauth_required: int = 0
    failed: int = 0
    rejected: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class _PathFailure(Exception):
    def __init__(self, method: str, error: Exception, classified: ClassifiedError) -> None:
        super().__init__(str(error))
        self.method = method
        self.error = error
        self.classified = classified


class _Flight:
    """A shared refresh task and the number of callers waiting on it."""

    def __init__(self, task: asyncio.Task) -> None:
        self.task = task
        self.waiters = 0


class TokenRefreshEngine:
    """Check, refresh, classify, retry and persist OAuth tokens per instance."""

    def __init__(
        self,
        *,
        store: CredentialStore,
        provider_client: ProviderOAuthClient,
        breakers: CircuitBreakerRegistry,
        metrics: MetricsRecorder,
        classifier: Optional[ErrorClassifier] = None,
        backoff: Optional[BackoffScheduler] = None,
        broker_client: Optional[OAuthBrokerClient] = None,
        broker_disabled_providers: Sequence[str] = (),
        max_attempts: int = 3,
        buffer_minutes: Optional[float] = None,
        request_timeout_seconds: float = 15.0,
        clock: Callable[[], float] = epoch_ms,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self._store = store
        self._provider_client = provider_client
        self._broker_client = broker_client
        self._broker_disabled = frozenset(p.lower() for p in broker_disabled_providers)
        self._breakers = breakers
        self._metrics = metrics
        self._classifier = classifier or ErrorClassifier()
        self._backoff = backoff or BackoffScheduler()
        self._max_attempts = max_attempts
        self._buffer_minutes = buffer_minutes
        self._request_timeout = request_timeout_seconds
        self._clock = clock
        self._sleep = sleep
        self._in_flight: dict[str, _Flight] = {}

    async def ensure_valid_token(
        self,
        instance_id: str,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> TokenRecord:
        """
        Return a token record that is valid beyond the provider's expiry buffer.

        Concurrent calls for the same instance share one refresh. Setting
        ``cancel_event`` abandons the wait; the shared refresh is cancelled
        once no caller is left waiting on it, before anything is persisted.
        """
        flight = self._in_flight.get(instance_id)
        if flight is None:
            flight = _Flight(asyncio.ensure_future(self._run(instance_id)))
            self._in_flight[instance_id] = flight
            flight.task.add_done_callback(lambda _task: self._settle(instance_id, flight))

        flight.waiters += 1
        cancelled = False
        try:
            if cancel_event is None:
                return await asyncio.shield(flight.task)

            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            try:
                await asyncio.wait(
                    {flight.task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancel_wait.cancel()
            if flight.task.done():
                return flight.task.result()
            logger.info("Token refresh cancelled by caller for instance %s", instance_id)
            raise asyncio.CancelledError()
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            flight.waiters -= 1
            if cancelled and flight.waiters == 0 and not flight.task.done():
                flight.task.cancel()

    def buffer_ms(self, adapter: ProviderAdapter) -> float:
        minutes = (
            self._buffer_minutes
            if self._buffer_minutes is not None
            else adapter.default_buffer_minutes
        )
        return minutes * 60_000

    async def exchange_credentials(
        self, instance_id: str, scopes: Optional[Sequence[str]] = None
    ) -> TokenRecord:
        """Obtain an initial token set through the broker and persist it."""
        credential = self._load(instance_id)
        adapter = get_provider_adapter(credential.provider)
        if self._broker_client is None:
            raise RefreshFailedError(
                f"Credential exchange for {adapter.display_name} requires the OAuth broker.",
                instance_id=instance_id,
            )

        broker = self._broker_client
        breaker = self._breakers.get_or_create(f"{BROKER}:{adapter.name}")
        try:
            tokens = await breaker.call(
                lambda: asyncio.wait_for(
                    broker.exchange_credentials(
                        provider=adapter.name,
                        client_id=credential.client_id,
                        client_secret=credential.client_secret,
                        scopes=scopes or (),
                    ),
                    timeout=self._request_timeout,
                )
            )
        except CircuitOpenError:
            raise
        except Exception as exc:
            classified = self._classifier.classify(exc, provider_name=adapter.display_name)
            self._fail(instance_id, BROKER, classified, attempts=1, cause=exc)

        record = self._to_record(adapter, tokens, credential.token)
        self._store.update(instance_id, OAuthStatusUpdate.active(record))
        logger.info("Exchanged %s credentials for instance %s", adapter.display_name, instance_id)
        return record

    async def refresh_expiring(self, *, batch_size: int = 10) -> RefreshSweep:
        """
        Refresh every stored token that is inside its expiry buffer.

        Instances without a refresh token are counted as needing
        re-authorization and are not touched. Due instances go through
        ``ensure_valid_token`` ``batch_size`` at a time, so a sweep joins any
        refresh a caller has already started.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1.")
        sweep = RefreshSweep()
        due: list[str] = []
        now = self._clock()
        for instance_id in self._store.list_instance_ids():
            credential = self._store.get(instance_id)
            if credential is None:
                continue
            sweep.checked += 1
            if not credential.token.refresh_token:
                sweep.reauth_required += 1
                continue
            try:
                adapter = get_provider_adapter(credential.provider)
            except ValueError as exc:
                logger.warning("Skipping instance %s in refresh sweep: %s", instance_id, exc)
                sweep.failed += 1
                continue
            if is_token_expired(credential.token, self.buffer_ms(adapter), now):
                due.append(instance_id)
            else:
                sweep.fresh += 1

        for start in range(0, len(due), batch_size):
            batch = due[start : start + batch_size]
            outcomes = await asyncio.gather(
                *(self.ensure_valid_token(instance_id) for instance_id in batch),
                return_exceptions=True,
            )
            for instance_id, outcome in zip(batch, outcomes):
                if isinstance(outcome, TokenRecord):
                    sweep.refreshed += 1
                elif isinstance(outcome, ReauthRequiredError):
                    sweep.reauth_required += 1
                elif isinstance(outcome, CircuitOpenError):
                    sweep.rejected += 1
                elif isinstance(outcome, (OAuthLifecycleError, ValueError)):
                    sweep.failed += 1
                elif isinstance(outcome, Exception):
                    logger.error(
                        "Unexpected error refreshing instance %s in sweep",
                        instance_id,
                        exc_info=outcome,
                    )
                    sweep.failed += 1
                else:
                    raise outcome

        logger.info(
            "Refresh sweep finished: %s",
            ", ".join(f"{key}={value}" for key, value in sweep.as_dict().items()),
        )
        return sweep

    def _settle(self, instance_id: str, flight: _Flight) -> None:
        if self._in_flight.get(instance_id) is flight:
            del self._in_flight[instance_id]
        # Retrieve so an abandoned task never logs "exception was never retrieved".
        if not flight.task.cancelled():
            flight.task.exception()

    def _load(self, instance_id: str) -> StoredCredential:
        credential = self._store.get(instance_id)
        if credential is None:
            raise CredentialNotFoundError(instance_id)
        return credential

    async def _run(self, instance_id: str) -> TokenRecord:
        credential = self._load(instance_id)
        adapter = get_provider_adapter(credential.provider)
        current = credential.token

        if not current.refresh_token:
            logger.warning(
                "No refresh token stored for instance %s; re-authorization required",
                instance_id,
                extra={"instance_id": instance_id, "provider": adapter.name},
            )
            raise ReauthRequiredError(
                f"No {adapter.display_name} refresh token available. Please re-authenticate.",
                instance_id=instance_id,
            )

        if not is_token_expired(current, self.buffer_ms(adapter), self._clock()):
            return current

        logger.info(
            "Refreshing %s token for instance %s (refresh token %s)",
            adapter.display_name,
            instance_id,
            sanitize_token(current.refresh_token),
        )

        attempt = 0
        while True:
            attempt += 1
            try:
                tokens, method = await self._attempt(instance_id, credential, adapter)
            except CircuitOpenError as exc:
                logger.warning(
                    "Token refresh for instance %s rejected: %s",
                    instance_id,
                    exc,
                    extra={"instance_id": instance_id, "breaker": exc.breaker_name},
                )
                raise
            except _PathFailure as failure:
                classified = failure.classified
                if (
                    not classified.requires_reauth
                    and classified.is_temporary
                    and attempt < self._max_attempts
                ):
                    delay_ms = self._backoff.delay(attempt, classified)
                    logger.warning(
                        "Token refresh attempt %s/%s for instance %s failed (%s); retrying in %.0fms",
                        attempt,
                        self._max_attempts,
                        instance_id,
                        classified.error_type.value,
                        delay_ms,
                    )
                    await self._sleep(delay_ms / 1000)
                    continue
                self._fail(instance_id, failure.method, classified, attempts=attempt, cause=failure.error)

            record = self._to_record(adapter, tokens, current)
            self._store.update(instance_id, OAuthStatusUpdate.active(record))
            logger.info(
                "Refreshed %s token for instance %s via %s (attempt %s)",
                adapter.display_name,
                instance_id,
                method,
                attempt,
            )
            return record

    def _strategies(self, adapter: ProviderAdapter) -> list[RefreshStrategy]:
        strategies = []
        if self._broker_client is not None and adapter.name not in self._broker_disabled:
            strategies.append(RefreshStrategy(BROKER, self._via_broker, falls_back=True))
        strategies.append(RefreshStrategy(DIRECT, self._via_provider))
        return strategies

    async def _via_broker(
        self, adapter: ProviderAdapter, credential: StoredCredential
    ) -> dict[str, Any]:
        if self._broker_client is None:
            raise BrokerUnavailableError("No OAuth broker is configured.")
        return await self._broker_client.exchange_refresh_token(
            provider=adapter.name,
            refresh_token=credential.token.refresh_token or "",
            client_id=credential.client_id,
            client_secret=credential.client_secret,
        )

    async def _via_provider(
        self, adapter: ProviderAdapter, credential: StoredCredential
    ) -> dict[str, Any]:
        return await self._provider_client.refresh_token(
            adapter,
            refresh_token=credential.token.refresh_token or "",
            client_id=credential.client_id,
            client_secret=credential.client_secret,
        )

    async def _invoke(
        self, strategy: RefreshStrategy, adapter: ProviderAdapter, credential: StoredCredential
    ) -> dict[str, Any]:
        try:
            return await asyncio.wait_for(
                strategy.invoke(adapter, credential), timeout=self._request_timeout
            )
        except asyncio.TimeoutError as exc:
            if not strategy.falls_back:
                raise
            # A stalled broker is treated like an unreachable one.
            raise BrokerUnavailableError(
                f"OAuth broker did not answer within {self._request_timeout}s"
            ) from exc

    async def _attempt(
        self, instance_id: str, credential: StoredCredential, adapter: ProviderAdapter
    ) -> tuple[dict[str, Any], str]:
        """One refresh attempt across the strategy list."""
        fell_back = False
        for strategy in self._strategies(adapter):
            breaker = self._breakers.get_or_create(f"{strategy.method}:{adapter.name}")
            start = self._clock()
            try:
                tokens = await breaker.call(lambda: self._invoke(strategy, adapter, credential))
            except CircuitOpenError:
                if strategy.falls_back:
                    logger.info(
                        "Breaker %s is open; using the next refresh path for instance %s",
                        breaker.name,
                        instance_id,
                    )
                    fell_back = True
                    continue
                raise
            except Exception as exc:
                classified = self._classifier.classify(exc, provider_name=adapter.display_name)
                self._metrics.record(
                    instance_id,
                    strategy.method,
                    False,
                    classified.error_type.value,
                    str(exc),
                    start_time=start,
                    end_time=self._clock(),
                    fallback=fell_back,
                )
                if strategy.falls_back and isinstance(exc, BrokerUnavailableError):
                    logger.warning(
                        "OAuth broker unavailable for instance %s, falling back to direct refresh: %s",
                        instance_id,
                        exc,
                    )
                    fell_back = True
                    continue
                logger.debug(
                    "Refresh via %s failed for instance %s: %r",
                    strategy.method,
                    instance_id,
                    exc,
                )
                raise _PathFailure(strategy.method, exc, classified) from exc

            self._metrics.record(
                instance_id,
                strategy.method,
                True,
                start_time=start,
                end_time=self._clock(),
                fallback=fell_back,
            )
            return tokens, strategy.method

        # Unreachable: the direct strategy never falls back.
        raise RuntimeError("No refresh strategy available")

    def _to_record(
        self, adapter: ProviderAdapter, tokens: dict[str, Any], previous: TokenRecord
    ) -> TokenRecord:
        expires_in = int(tokens.get("expires_in") or adapter.default_expires_in)
        return TokenRecord(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token") or previous.refresh_token,
            expires_at=int(self._clock() + expires_in * 1000),
            token_type=tokens.get("token_type") or "Bearer",
            scope=tokens.get("scope") or previous.scope,
        )

    def _fail(
        self,
        instance_id: str,
        method: str,
        classified: ClassifiedError,
        *,
        attempts: int,
        cause: Optional[BaseException] = None,
    ) -> NoReturn:
        """Persist a terminal failure, log it and raise the matching error."""
        context = {
            "instance_id": instance_id,
            "method": method,
            "error_type": classified.error_type.value,
            "attempts": attempts,
        }
        logger.log(
            self._classifier.log_level(classified),
            "Token refresh failed for instance %s via %s: %s after %s attempt(s)",
            instance_id,
            method,
            classified.error_type.value,
            attempts,
            extra=context,
        )

        if classified.requires_reauth:
            self._store.update(instance_id, OAuthStatusUpdate.cleared(classified.user_message))
            raise ReauthRequiredError(
                classified.user_message,
                instance_id=instance_id,
                classified=classified,
                attempts=attempts,
            ) from cause

        self._store.update(instance_id, OAuthStatusUpdate.failed(classified.user_message))
        raise RefreshFailedError(
            classified.user_message,
            instance_id=instance_id,
            classified=classified,
            attempts=attempts,
        ) from cause


__all__ = [
    "BROKER",
    "DIRECT",
    "RefreshStrategy",
    "RefreshSweep",
    "TokenRefreshEngine",
    "is_token_expired",
]

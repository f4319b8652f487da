"""
Process-wide container for the token lifecycle components.

Every component with state (breakers, metrics, validation cache, in-flight
refreshes) is owned by one ``AuthContext`` so tests and the application
build, share and tear down exactly one set of them.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from oauth_lifecycle.clients.credential_store import CredentialStore, SQLiteCredentialStore
from oauth_lifecycle.clients.oauth_broker import OAuthBrokerClient
from oauth_lifecycle.clients.provider_oauth import ProviderOAuthClient
from oauth_lifecycle.core.config import AppSettings
from oauth_lifecycle.services.backoff import BackoffScheduler
from oauth_lifecycle.services.circuit_breaker import CircuitBreakerRegistry, epoch_ms
from oauth_lifecycle.services.credential_validator import CredentialValidator
from oauth_lifecycle.services.error_classifier import ErrorClassifier
from oauth_lifecycle.services.token_cipher import TokenCipherService
from oauth_lifecycle.services.token_metrics import MetricsRecorder
from oauth_lifecycle.services.token_refresh import TokenRefreshEngine

logger = logging.getLogger(__name__)


@dataclass
class AuthContext:
    settings: AppSettings
    http_client: httpx.AsyncClient
    store: CredentialStore
    classifier: ErrorClassifier
    backoff: BackoffScheduler
    breakers: CircuitBreakerRegistry
    metrics: MetricsRecorder
    provider_client: ProviderOAuthClient
    broker_client: Optional[OAuthBrokerClient]
    engine: TokenRefreshEngine
    validator: CredentialValidator
    owns_http_client: bool = True

    async def aclose(self) -> None:
        if self.owns_http_client:
            await self.http_client.aclose()
        logger.debug("Auth context closed")


def build_auth_context(
    settings: AppSettings,
    *,
    store: Optional[CredentialStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = epoch_ms,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> AuthContext:
    """Wire every component from ``settings``; collaborators may be injected."""
    owns_http_client = http_client is None
    http = http_client or httpx.AsyncClient(timeout=settings.refresh.request_timeout_seconds)

    if store is None:
        cipher = TokenCipherService(
            secret=settings.security.token_encryption_secret,
            previous_secrets=settings.security.previous_token_encryption_secrets,
        )
        store = SQLiteCredentialStore(settings.storage.credential_db_path, cipher=cipher)

    classifier = ErrorClassifier()
    breakers = CircuitBreakerRegistry(
        failure_threshold=settings.circuit_breaker.failure_threshold,
        reset_timeout_ms=settings.circuit_breaker.reset_timeout_ms,
        clock=clock,
        is_failure=classifier.counts_against_breaker,
    )
    metrics = MetricsRecorder(
        recent_activity_size=settings.metrics.recent_activity_size,
        clock=clock,
    )
    backoff = BackoffScheduler(max_delay_ms=settings.refresh.max_backoff_ms, rng=rng)
    provider_client = ProviderOAuthClient(
        timeout_seconds=settings.refresh.request_timeout_seconds,
        http_client=http,
    )

    broker_client: Optional[OAuthBrokerClient] = None
    if settings.broker.url is not None:
        broker_client = OAuthBrokerClient(
            str(settings.broker.url),
            timeout_seconds=settings.broker.timeout_seconds,
            http_client=http,
        )

    engine = TokenRefreshEngine(
        store=store,
        provider_client=provider_client,
        broker_client=broker_client,
        broker_disabled_providers=settings.broker.disabled_providers,
        breakers=breakers,
        metrics=metrics,
        classifier=classifier,
        backoff=backoff,
        max_attempts=settings.refresh.max_attempts,
        buffer_minutes=settings.refresh.buffer_minutes,
        request_timeout_seconds=settings.refresh.request_timeout_seconds,
        clock=clock,
        sleep=sleep,
    )
    validator = CredentialValidator(
        provider_client=provider_client,
        cache_ttl_seconds=settings.validation.cache_ttl_seconds,
        probe_enabled=settings.validation.probe_enabled,
        clock=clock,
    )

    logger.info(
        "Auth context ready (broker=%s, max_attempts=%s, breaker_threshold=%s)",
        broker_client.base_url if broker_client else "disabled",
        settings.refresh.max_attempts,
        settings.circuit_breaker.failure_threshold,
    )
    return AuthContext(
        settings=settings,
        http_client=http,
        store=store,
        classifier=classifier,
        backoff=backoff,
        breakers=breakers,
        metrics=metrics,
        provider_client=provider_client,
        broker_client=broker_client,
        engine=engine,
        validator=validator,
        owns_http_client=owns_http_client,
    )


__all__ = ["AuthContext", "build_auth_context"]

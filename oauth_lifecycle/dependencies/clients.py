"""
Factory functions to provide the shared auth context and its components as
FastAPI dependencies.
"""

from functools import lru_cache

from oauth_lifecycle.clients import CredentialStore
from oauth_lifecycle.core.config import get_settings
from oauth_lifecycle.services import (
    AuthContext,
    CircuitBreakerRegistry,
    CredentialValidator,
    MetricsRecorder,
    TokenRefreshEngine,
    build_auth_context,
)


@lru_cache()
def get_auth_context() -> AuthContext:
    """Create the process-wide auth context on first use."""
    return build_auth_context(get_settings())


def get_refresh_engine() -> TokenRefreshEngine:
    """Provide the token refresh engine."""
    return get_auth_context().engine


def get_credential_validator() -> CredentialValidator:
    """Provide the credential validator and its cache."""
    return get_auth_context().validator


def get_metrics_recorder() -> MetricsRecorder:
    return get_auth_context().metrics


def get_circuit_breakers() -> CircuitBreakerRegistry:
    return get_auth_context().breakers


def get_credential_store() -> CredentialStore:
    return get_auth_context().store


__all__ = [
    "get_auth_context",
    "get_circuit_breakers",
    "get_credential_store",
    "get_credential_validator",
    "get_metrics_recorder",
    "get_refresh_engine",
]

"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_auth_context,
    get_circuit_breakers,
    get_credential_store,
    get_credential_validator,
    get_metrics_recorder,
    get_refresh_engine,
)

__all__ = [
    "get_auth_context",
    "get_circuit_breakers",
    "get_credential_store",
    "get_credential_validator",
    "get_metrics_recorder",
    "get_refresh_engine",
]

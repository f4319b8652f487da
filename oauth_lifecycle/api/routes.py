"""
FastAPI routes for the OAuth token lifecycle service.
"""

from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Annotated, Any, NoReturn

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from oauth_lifecycle.clients import CredentialStore
from oauth_lifecycle.core.errors import (
    AuthenticationError,
    CircuitOpenError,
    CredentialNotFoundError,
    ReauthRequiredError,
    RefreshFailedError,
    ValidationError,
)
from oauth_lifecycle.dependencies import (
    get_circuit_breakers,
    get_credential_store,
    get_credential_validator,
    get_metrics_recorder,
    get_refresh_engine,
)
from oauth_lifecycle.models.oauth import StoredCredential
from oauth_lifecycle.schemas import (
    CredentialValidationRequest,
    CredentialValidationResponse,
    ErrorResponse,
    ExchangeCredentialsRequest,
    TokenStatusResponse,
)
from oauth_lifecycle.services import (
    CircuitBreakerRegistry,
    CredentialValidator,
    MetricsRecorder,
    TokenRefreshEngine,
)
from oauth_lifecycle.services.circuit_breaker import epoch_ms

router = APIRouter()
logger = logging.getLogger(__name__)


def _error(status: HTTPStatus, body: ErrorResponse, headers: dict[str, str] | None = None) -> HTTPException:
    return HTTPException(status_code=status, detail=body.model_dump(), headers=headers)


def _raise_for_refresh_error(exc: Exception) -> NoReturn:
    """Translate engine errors into HTTP errors."""
    if isinstance(exc, CredentialNotFoundError):
        raise _error(HTTPStatus.NOT_FOUND, ErrorResponse(message=str(exc))) from exc
    if isinstance(exc, ReauthRequiredError):
        raise _error(
            HTTPStatus.UNAUTHORIZED,
            ErrorResponse(
                message=exc.user_message,
                error_type=exc.classified.error_type.value if exc.classified else None,
                requires_reauth=True,
            ),
        ) from exc
    if isinstance(exc, CircuitOpenError):
        raise _error(
            HTTPStatus.SERVICE_UNAVAILABLE,
            ErrorResponse(message=str(exc), error_type="CIRCUIT_OPEN"),
            headers={"Retry-After": str(exc.retry_after_seconds(epoch_ms()))},
        ) from exc
    if isinstance(exc, RefreshFailedError):
        raise _error(
            HTTPStatus.BAD_GATEWAY,
            ErrorResponse(
                message=exc.user_message,
                error_type=exc.classified.error_type.value if exc.classified else None,
            ),
        ) from exc
    raise exc


def _stored(store: CredentialStore, instance_id: str) -> StoredCredential:
    """Reload an instance after a refresh; it may have been deleted meanwhile."""
    credential = store.get(instance_id)
    if credential is None:
        _raise_for_refresh_error(CredentialNotFoundError(instance_id))
    return credential


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.get("/health/tokens", status_code=HTTPStatus.OK)
async def token_health(
    metrics: Annotated[MetricsRecorder, Depends(get_metrics_recorder)],
) -> dict[str, Any]:
    """Health verdict derived from refresh metrics."""
    return metrics.health_assessment()


@router.get("/metrics/tokens", status_code=HTTPStatus.OK)
async def export_token_metrics(
    metrics: Annotated[MetricsRecorder, Depends(get_metrics_recorder)],
) -> dict[str, Any]:
    return metrics.export()


@router.get("/metrics/tokens/{instance_id}", status_code=HTTPStatus.OK)
async def instance_token_metrics(
    instance_id: str,
    metrics: Annotated[MetricsRecorder, Depends(get_metrics_recorder)],
) -> dict[str, Any]:
    data = metrics.instance_metrics(instance_id)
    if data is None:
        raise HTTPException(
            status_code=HTTPStatus.NOT_FOUND,
            detail="No refresh metrics recorded for this instance.",
        )
    return data


@router.get("/circuit-breakers", status_code=HTTPStatus.OK)
async def circuit_breaker_status(
    breakers: Annotated[CircuitBreakerRegistry, Depends(get_circuit_breakers)],
) -> dict[str, Any]:
    return {"breakers": breakers.status_all(), "health": breakers.health_all()}


@router.post("/circuit-breakers/{name}/reset", status_code=HTTPStatus.OK)
async def reset_circuit_breaker(
    name: str,
    breakers: Annotated[CircuitBreakerRegistry, Depends(get_circuit_breakers)],
) -> dict[str, Any]:
    """Close a breaker by hand after the upstream has recovered."""
    breaker = breakers.get(name)
    if breaker is None:
        raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Circuit breaker not found.")
    breaker.reset()
    logger.info("Circuit breaker %s reset by operator", name)
    return breaker.status()


@router.post(
    "/instances/{instance_id}/token",
    status_code=HTTPStatus.OK,
    response_model=TokenStatusResponse,
)
async def ensure_instance_token(
    instance_id: str,
    engine: Annotated[TokenRefreshEngine, Depends(get_refresh_engine)],
    store: Annotated[CredentialStore, Depends(get_credential_store)],
) -> TokenStatusResponse:
    """Make sure the instance holds a valid access token, refreshing it if needed."""
    before = store.get(instance_id)
    try:
        record = await engine.ensure_valid_token(instance_id)
    except (
        CredentialNotFoundError,
        ReauthRequiredError,
        CircuitOpenError,
        RefreshFailedError,
    ) as exc:
        _raise_for_refresh_error(exc)

    after = _stored(store, instance_id)
    return TokenStatusResponse(
        instance_id=instance_id,
        provider=after.provider,
        status=after.status,
        token_type=record.token_type,
        expires_at=record.expires_at,
        scope=record.scope,
        refreshed=before is None or before.token.access_token != record.access_token,
    )


@router.post(
    "/instances/{instance_id}/exchange",
    status_code=HTTPStatus.OK,
    response_model=TokenStatusResponse,
)
async def exchange_instance_credentials(
    instance_id: str,
    engine: Annotated[TokenRefreshEngine, Depends(get_refresh_engine)],
    store: Annotated[CredentialStore, Depends(get_credential_store)],
    payload: Annotated[ExchangeCredentialsRequest, Body()] = ExchangeCredentialsRequest(),
) -> TokenStatusResponse:
    """Obtain the first token set for an instance through the OAuth broker."""
    try:
        record = await engine.exchange_credentials(instance_id, payload.scopes)
    except (
        CredentialNotFoundError,
        ReauthRequiredError,
        CircuitOpenError,
        RefreshFailedError,
    ) as exc:
        _raise_for_refresh_error(exc)

    stored = _stored(store, instance_id)
    return TokenStatusResponse(
        instance_id=instance_id,
        provider=stored.provider,
        status=stored.status,
        token_type=record.token_type,
        expires_at=record.expires_at,
        scope=record.scope,
        refreshed=True,
    )


@router.post("/tokens/refresh-expiring", status_code=HTTPStatus.OK)
async def refresh_expiring_tokens(
    engine: Annotated[TokenRefreshEngine, Depends(get_refresh_engine)],
    batch_size: int = Query(10, ge=1, le=100),
) -> dict[str, int]:
    """Run one refresh sweep now instead of waiting for the background schedule."""
    sweep = await engine.refresh_expiring(batch_size=batch_size)
    return sweep.as_dict()


@router.post(
    "/credentials/validate",
    status_code=HTTPStatus.OK,
    response_model=CredentialValidationResponse,
)
async def validate_credentials(
    payload: CredentialValidationRequest,
    validator: Annotated[CredentialValidator, Depends(get_credential_validator)],
) -> CredentialValidationResponse:
    try:
        result = await validator.validate_and_test(
            payload.credentials(), use_cache=payload.use_cache, probe=payload.probe
        )
    except ValidationError as exc:
        raise _error(
            HTTPStatus.BAD_REQUEST,
            ErrorResponse(message=str(exc), error_type="VALIDATION_ERROR", errors=exc.errors),
        ) from exc
    except AuthenticationError as exc:
        raise _error(
            HTTPStatus.UNAUTHORIZED,
            ErrorResponse(message=str(exc), error_type="AUTHENTICATION_ERROR"),
        ) from exc

    return CredentialValidationResponse(
        valid=result.valid,
        provider=result.provider,
        instance_id=result.instance_id,
        auth_type=result.auth_type,
        token_type=result.token_type,
        probed=result.probed,
        validated_at=result.validated_at,
    )


@router.get("/credentials/validation-cache", status_code=HTTPStatus.OK)
async def validation_cache_stats(
    validator: Annotated[CredentialValidator, Depends(get_credential_validator)],
) -> dict[str, Any]:
    return validator.cache_stats()


@router.delete("/credentials/validation-cache", status_code=HTTPStatus.OK)
async def clear_validation_cache(
    validator: Annotated[CredentialValidator, Depends(get_credential_validator)],
) -> dict[str, Any]:
    validator.clear()
    return validator.cache_stats()


__all__ = ["router"]

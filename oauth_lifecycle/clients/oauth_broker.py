"""Client for the central OAuth broker service."""

from __future__ import annotations

import logging
from typing import Any, Optional, Sequence

import httpx

from oauth_lifecycle.core.errors import BrokerUnavailableError, TokenEndpointError
from oauth_lifecycle.utils.http import json_or_none, oauth_error_fields

logger = logging.getLogger(__name__)


class OAuthBrokerClient:
    """
    Thin wrapper over the broker's token exchange endpoints.

    Connection failures, timeouts and 5xx answers raise
    ``BrokerUnavailableError`` so the refresh engine can fall back to the
    provider's own endpoint. A 4xx answer is the broker's verdict on the
    credentials and raises ``TokenEndpointError``.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._http = http_client

    @property
    def base_url(self) -> str:
        return self._base_url

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            if self._http is not None:
                return await self._http.request(method, url, timeout=self._timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            raise BrokerUnavailableError(f"OAuth broker unreachable: {exc}") from exc

    async def _exchange(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._send("POST", path, json=body)

        if response.status_code >= 500:
            raise BrokerUnavailableError(
                f"OAuth broker returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            error_code, description = oauth_error_fields(response)
            raise TokenEndpointError(
                description or error_code or f"OAuth broker returned {response.status_code}",
                status_code=response.status_code,
                error_code=error_code,
                error_description=description,
                payload=json_or_none(response),
            )

        payload = json_or_none(response)
        tokens = payload.get("tokens") if isinstance(payload, dict) else None
        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            raise BrokerUnavailableError("OAuth broker returned no access token")
        return tokens

    async def exchange_refresh_token(
        self,
        *,
        provider: str,
        refresh_token: str,
        client_id: str,
        client_secret: str,
    ) -> dict[str, Any]:
        tokens = await self._exchange(
            "/exchange-refresh-token",
            {
                "provider": provider,
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
        )
        logger.debug("Broker refresh succeeded for provider %s", provider)
        return tokens

    async def exchange_credentials(
        self,
        *,
        provider: str,
        client_id: str,
        client_secret: str,
        scopes: Sequence[str] = (),
    ) -> dict[str, Any]:
        """Client-credentials style exchange used when onboarding an instance."""
        return await self._exchange(
            "/exchange-credentials",
            {
                "provider": provider,
                "client_id": client_id,
                "client_secret": client_secret,
                "scopes": list(scopes),
            },
        )

    async def health(self) -> bool:
        try:
            response = await self._send("GET", "/health")
        except BrokerUnavailableError:
            return False
        return response.status_code < 400


__all__ = ["OAuthBrokerClient"]

"""
Direct calls to provider token endpoints.

Used for the "direct" refresh path and for credential validation probes.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from oauth_lifecycle.clients.providers import ProviderAdapter
from oauth_lifecycle.core.errors import AuthenticationError, TokenEndpointError
from oauth_lifecycle.utils.http import json_or_none, oauth_error_fields

logger = logging.getLogger(__name__)


class ProviderOAuthClient:
    """Refresh tokens and probe access tokens against provider endpoints."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._http = http_client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if self._http is not None:
            return await self._http.request(method, url, timeout=self._timeout, **kwargs)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, **kwargs)

    async def refresh_token(
        self,
        adapter: ProviderAdapter,
        *,
        refresh_token: str,
        client_id: str,
        client_secret: str,
    ) -> dict[str, Any]:
        """
        Exchange a refresh token at the provider's token endpoint.

        Returns the provider payload with defaults applied. Raises
        ``TokenEndpointError`` for OAuth errors and lets ``httpx`` transport
        errors propagate so they classify as network failures.
        """
        request = adapter.build_refresh_request(refresh_token, client_id, client_secret)
        response = await self._request(
            "POST", request.url, headers=request.headers, data=request.data
        )

        if response.status_code >= 400:
            error_code, description = oauth_error_fields(response)
            normalized = adapter.normalize_error_code(error_code)
            raise TokenEndpointError(
                f"{adapter.display_name} token endpoint returned {response.status_code}: "
                f"{normalized or description or 'no error detail'}",
                status_code=response.status_code,
                error_code=normalized,
                error_description=description,
                payload=json_or_none(response),
            )

        payload = json_or_none(response)
        if payload is None:
            raise TokenEndpointError(
                f"{adapter.display_name} token endpoint returned a non-JSON response",
                status_code=response.status_code,
            )
        tokens = adapter.parse_token_response(payload)
        logger.debug("Direct token refresh succeeded against %s", adapter.display_name)
        return tokens

    async def probe(self, adapter: ProviderAdapter, access_token: str) -> dict[str, Any]:
        """Make one cheap authenticated call; raise ``AuthenticationError`` if rejected."""
        request = adapter.build_probe_request(access_token)
        response = await self._request(request.method, request.url, headers=request.headers)
        payload = json_or_none(response)

        reason = adapter.check_probe_response(response.status_code, payload)
        if reason:
            raise AuthenticationError(reason, status_code=response.status_code)
        if response.status_code >= 400:
            raise AuthenticationError(
                f"{adapter.display_name} probe failed with status {response.status_code}",
                status_code=response.status_code,
            )
        return payload if isinstance(payload, dict) else {}


__all__ = ["ProviderOAuthClient"]

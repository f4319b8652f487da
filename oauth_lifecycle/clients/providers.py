"""
Provider adapters.

Every supported SaaS provider is described by one adapter: where its token
endpoint lives, how a refresh request is built and authenticated, how the
token response is parsed, how its provider-specific error codes map onto the
standard OAuth codes, and what its tokens look like. The refresh engine and
the credential validator are generic over these adapters.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from oauth_lifecycle.core.errors import TokenEndpointError
from oauth_lifecycle.utils.http import basic_auth_header


@dataclass(frozen=True)
class RefreshRequest:
    """Everything needed to POST a refresh grant to a token endpoint."""

    url: str
    headers: dict[str, str]
    data: dict[str, str]


@dataclass(frozen=True)
class ProbeRequest:
    """A cheap authenticated call used to confirm a token is accepted."""

    method: str
    url: str
    headers: dict[str, str]


@dataclass(frozen=True)
class ProviderAdapter:
    """Base adapter. Subclasses fill in endpoints and provider quirks."""

    name: str
    display_name: str
    token_endpoint_url: str
    probe_url: str
    default_expires_in: int = 3600
    default_buffer_minutes: float = 5.0
    basic_auth: bool = True
    probe_method: str = "GET"
    extra_headers: Mapping[str, str] = field(default_factory=dict)
    # Provider error code -> standard OAuth error code understood by the classifier.
    error_signatures: Mapping[str, str] = field(default_factory=dict)
    token_patterns: Mapping[str, str] = field(default_factory=dict)
    client_id_pattern: Optional[str] = None
    client_secret_pattern: Optional[str] = None

    def build_refresh_request(
        self, refresh_token: str, client_id: str, client_secret: str
    ) -> RefreshRequest:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
            **self.extra_headers,
        }
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if self.basic_auth:
            headers["Authorization"] = basic_auth_header(client_id, client_secret)
        else:
            data["client_id"] = client_id
            data["client_secret"] = client_secret
        return RefreshRequest(url=self.token_endpoint_url, headers=headers, data=data)

    def build_probe_request(self, access_token: str) -> ProbeRequest:
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            **self.extra_headers,
        }
        return ProbeRequest(method=self.probe_method, url=self.probe_url, headers=headers)

    def normalize_error_code(self, code: Optional[str]) -> Optional[str]:
        if not code:
            return None
        code = code.strip().lower()
        return self.error_signatures.get(code, code)

    def parse_token_response(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """
        Validate a successful token response and fill in provider defaults.

        Raises ``TokenEndpointError`` when the payload carries an OAuth error or
        no access token.
        """
        if not isinstance(payload, Mapping):
            raise TokenEndpointError(f"{self.display_name} token response is not a JSON object")

        error_code = payload.get("error")
        if error_code:
            normalized = self.normalize_error_code(str(error_code))
            raise TokenEndpointError(
                f"{self.display_name} token refresh failed: {normalized}",
                error_code=normalized,
                error_description=payload.get("error_description"),
                payload=dict(payload),
            )
        if not payload.get("access_token"):
            raise TokenEndpointError(
                f"No access token received from {self.display_name} token refresh"
            )

        tokens = dict(payload)
        tokens.setdefault("token_type", "Bearer")
        if not tokens.get("expires_in"):
            tokens["expires_in"] = self.default_expires_in
        return tokens

    def check_probe_response(self, status_code: int, payload: Any) -> Optional[str]:
        """Return a rejection reason for a probe response, or ``None`` when accepted."""
        if status_code in (401, 403):
            return f"{self.display_name} rejected the token ({status_code})"
        return None

    def token_type_of(self, token: str) -> Optional[str]:
        """Name of the first token pattern the token matches."""
        for token_type, pattern in self.token_patterns.items():
            if re.fullmatch(pattern, token):
                return token_type
        return None

    def validate_format(self, credentials: Mapping[str, Any]) -> list[str]:
        """Format errors for already structurally valid credentials."""
        errors: list[str] = []
        access_token = credentials.get("access_token")
        if access_token is not None and self.token_type_of(access_token) is None:
            errors.append(f"Invalid {self.display_name} access token format")

        client_id = credentials.get("client_id")
        if client_id is not None and self.client_id_pattern and not re.fullmatch(
            self.client_id_pattern, client_id
        ):
            errors.append(f"Invalid {self.display_name} client ID format")

        client_secret = credentials.get("client_secret")
        if (
            client_secret is not None
            and self.client_secret_pattern
            and not re.fullmatch(self.client_secret_pattern, client_secret)
        ):
            errors.append(f"Invalid {self.display_name} client secret format")
        return errors


@dataclass(frozen=True)
class SlackAdapter(ProviderAdapter):
    """Slack answers HTTP 200 with ``{"ok": false, "error": ...}`` on failure."""

    def parse_token_response(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        if isinstance(payload, Mapping) and payload.get("ok") is False:
            code = self.normalize_error_code(str(payload.get("error") or "unknown_error"))
            raise TokenEndpointError(
                f"Slack token refresh failed: {code}",
                error_code=code,
                payload=dict(payload),
            )
        return super().parse_token_response(payload)

    def check_probe_response(self, status_code: int, payload: Any) -> Optional[str]:
        reason = super().check_probe_response(status_code, payload)
        if reason:
            return reason
        if isinstance(payload, Mapping) and payload.get("ok") is False:
            return f"Slack rejected the token: {payload.get('error') or 'unknown error'}"
        return None


REDDIT = ProviderAdapter(
    name="reddit",
    display_name="Reddit",
    token_endpoint_url="https://www.reddit.com/api/v1/access_token",
    probe_url="https://oauth.reddit.com/api/v1/me",
    default_expires_in=3600,
    default_buffer_minutes=5.0,
    basic_auth=True,
    extra_headers={"User-Agent": "MCP Reddit Service/1.0"},
    error_signatures={"unsupported_grant_type": "invalid_request"},
    token_patterns={"bearer": r"[A-Za-z0-9._-]{20,1024}"},
    client_id_pattern=r"[A-Za-z0-9_-]{15,30}",
    client_secret_pattern=r"[A-Za-z0-9_-]{20,40}",
)

SLACK = SlackAdapter(
    name="slack",
    display_name="Slack",
    token_endpoint_url="https://slack.com/api/oauth.v2.access",
    probe_url="https://slack.com/api/auth.test",
    default_expires_in=43200,
    default_buffer_minutes=10.0,
    basic_auth=False,
    probe_method="POST",
    error_signatures={
        "invalid_refresh_token": "invalid_grant",
        "invalid_grant_type": "invalid_request",
        "bad_client_secret": "invalid_client",
        "invalid_client_id": "invalid_client",
        "ratelimited": "rate_limited",
    },
    token_patterns={
        "bot_token": r"(xoxe\.)?xoxb-[A-Za-z0-9-]{40,}",
        "user_token": r"(xoxe\.)?xoxp-[A-Za-z0-9-]{40,}",
    },
)

AIRTABLE = ProviderAdapter(
    name="airtable",
    display_name="Airtable",
    token_endpoint_url="https://airtable.com/oauth2/v1/token",
    probe_url="https://api.airtable.com/v0/meta/whoami",
    default_expires_in=3600,
    default_buffer_minutes=5.0,
    basic_auth=True,
    token_patterns={
        "personal_access_token": r"pat[a-zA-Z0-9]{14}\.[a-zA-Z0-9]{32,64}",
        "legacy_api_key": r"key[a-zA-Z0-9]{14}",
        "oauth_access_token": r"[A-Za-z0-9._-]{20,1024}",
    },
)

PROVIDER_ADAPTERS: dict[str, ProviderAdapter] = {
    adapter.name: adapter for adapter in (REDDIT, SLACK, AIRTABLE)
}


def get_provider_adapter(provider: str) -> ProviderAdapter:
    """Look up the adapter for a provider name."""
    adapter = PROVIDER_ADAPTERS.get((provider or "").lower())
    if adapter is None:
        raise ValueError(f"Unsupported OAuth provider: {provider}")
    return adapter


__all__ = [
    "AIRTABLE",
    "PROVIDER_ADAPTERS",
    "ProbeRequest",
    "ProviderAdapter",
    "REDDIT",
    "RefreshRequest",
    "SLACK",
    "SlackAdapter",
    "get_provider_adapter",
]

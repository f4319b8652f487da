"""
Credential validation with a short-lived result cache.

Validation runs in three stages: structure (required fields and types),
format (provider token and client id patterns) and an optional API probe.
The first two are pure; only the probe touches the network. Successful
results are cached per instance and token prefix so repeated tool calls do
not re-probe the provider.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Mapping, Optional

import httpx

from oauth_lifecycle.clients.provider_oauth import ProviderOAuthClient
from oauth_lifecycle.clients.providers import PROVIDER_ADAPTERS, get_provider_adapter
from oauth_lifecycle.core.errors import (
    AuthenticationError,
    TokenEndpointError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX_LENGTH = 10


@dataclass(frozen=True)
class StructureResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a successful validation."""

    valid: bool
    provider: str
    instance_id: Optional[str]
    auth_type: str
    token_type: Optional[str]
    probed: bool
    validated_at: float
    identity: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class _CacheEntry:
    result: ValidationResult
    timestamp: float


def _is_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


class CredentialValidator:
    """Validate credentials and cache the verdicts for ``cache_ttl_seconds``."""

    def __init__(
        self,
        *,
        provider_client: ProviderOAuthClient,
        cache_ttl_seconds: int = 300,
        probe_enabled: bool = True,
        clock: Callable[[], float] = lambda: time.time() * 1000,
    ) -> None:
        self._provider_client = provider_client
        self._ttl_ms = cache_ttl_seconds * 1000
        self._probe_enabled = probe_enabled
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}

    @staticmethod
    def validate_structure(credentials: Any) -> StructureResult:
        if not isinstance(credentials, Mapping):
            return StructureResult(False, ["Credentials must be an object"])

        errors: list[str] = []
        provider = credentials.get("provider")
        if not _is_text(provider):
            errors.append("Provider is required and must be a string")
        elif provider.lower() not in PROVIDER_ADAPTERS:
            errors.append(f"Unsupported provider: {provider}")

        instance_id = credentials.get("instance_id")
        if instance_id is not None and not _is_text(instance_id):
            errors.append("Instance ID must be a non-empty string")

        access_token = credentials.get("access_token")
        client_id = credentials.get("client_id")
        client_secret = credentials.get("client_secret")
        if access_token is not None:
            if not _is_text(access_token):
                errors.append("Access token must be a non-empty string")
        elif client_id is None and client_secret is None:
            errors.append("Either an access token or client ID and client secret are required")
        else:
            if not _is_text(client_id):
                errors.append("Client ID is required and must be a string")
            if not _is_text(client_secret):
                errors.append("Client secret is required and must be a string")

        return StructureResult(not errors, errors)

    @staticmethod
    def cache_key(credentials: Mapping[str, Any]) -> str:
        secret = credentials.get("access_token") or credentials.get("client_id") or ""
        instance_id = credentials.get("instance_id") or "anonymous"
        return f"{instance_id}_{secret[:CACHE_KEY_PREFIX_LENGTH]}"

    def _fresh(self, entry: _CacheEntry, now: float) -> bool:
        return now - entry.timestamp < self._ttl_ms

    async def validate_and_test(
        self,
        credentials: Mapping[str, Any],
        *,
        use_cache: bool = True,
        probe: Optional[bool] = None,
    ) -> ValidationResult:
        """
        Validate ``credentials`` and, for bearer tokens, probe the provider.

        Raises ``ValidationError`` for structure or format problems without any
        I/O, and ``AuthenticationError`` when the provider rejects the token.
        """
        structure = self.validate_structure(credentials)
        if not structure.valid:
            raise ValidationError("Invalid credential structure", structure.errors)

        key = self.cache_key(credentials)
        if use_cache:
            entry = self._cache.get(key)
            if entry is not None and self._fresh(entry, self._clock()):
                logger.debug("Using cached validation result for %s", credentials.get("instance_id"))
                return entry.result

        adapter = get_provider_adapter(credentials["provider"])
        format_errors = adapter.validate_format(credentials)
        if format_errors:
            raise ValidationError("Invalid credential format", format_errors)

        access_token = credentials.get("access_token")
        should_probe = self._probe_enabled if probe is None else probe
        identity: dict[str, Any] = {}
        probed = False
        if access_token and should_probe:
            try:
                identity = await self._provider_client.probe(adapter, access_token)
            except AuthenticationError:
                raise
            except (httpx.HTTPError, TokenEndpointError) as exc:
                raise AuthenticationError(f"Token validation failed: {exc}") from exc
            probed = True

        result = ValidationResult(
            valid=True,
            provider=adapter.name,
            instance_id=credentials.get("instance_id"),
            auth_type="bearer_token" if access_token else "oauth_client",
            token_type=adapter.token_type_of(access_token) if access_token else None,
            probed=probed,
            validated_at=self._clock(),
            identity=identity,
        )
        if use_cache:
            self._cache[key] = _CacheEntry(result=result, timestamp=self._clock())
        logger.info(
            "Validated %s credentials for instance %s",
            adapter.display_name,
            result.instance_id,
        )
        return result

    async def refresh(self, credentials: Mapping[str, Any]) -> ValidationResult:
        """Evict any cached verdict and validate again without the cache."""
        self._cache.pop(self.cache_key(credentials), None)
        return await self.validate_and_test(credentials, use_cache=False)

    def clear(self) -> None:
        self._cache.clear()

    def cleanup_expired(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if not self._fresh(entry, now)]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("Evicted %s expired validation cache entries", len(expired))
        return len(expired)

    def cache_stats(self) -> dict[str, Any]:
        now = self._clock()
        timestamps = [entry.timestamp for entry in self._cache.values()]
        valid = sum(1 for entry in self._cache.values() if self._fresh(entry, now))
        return {
            "size": len(self._cache),
            "keys": sorted(self._cache),
            "oldest": min(timestamps) if timestamps else None,
            "newest": max(timestamps) if timestamps else None,
            "valid_entries": valid,
            "expired_entries": len(self._cache) - valid,
            "ttl_seconds": self._ttl_ms // 1000,
        }


__all__ = [
    "CredentialValidator",
    "StructureResult",
    "ValidationResult",
]

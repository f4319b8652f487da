"""
Exception taxonomy surfaced by the token lifecycle core.

Callers (route handlers, MCP adapters) catch these to decide between asking
the user to re-authorize, retrying later, or reporting a configuration fault.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

if TYPE_CHECKING:  # pragma: no cover
    from oauth_lifecycle.services.error_classifier import ClassifiedError


class OAuthLifecycleError(Exception):
    """Base class for every error raised by this package."""


class ReauthRequiredError(OAuthLifecycleError):
    """The stored refresh token is unusable; the user must re-authorize."""

    def __init__(
        self,
        message: str,
        *,
        instance_id: str,
        classified: Optional["ClassifiedError"] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.user_message = message
        self.instance_id = instance_id
        self.classified = classified
        self.attempts = attempts


class RefreshFailedError(OAuthLifecycleError):
    """Refresh failed permanently or exhausted its retries; tokens were kept."""

    def __init__(
        self,
        message: str,
        *,
        instance_id: str,
        classified: Optional["ClassifiedError"] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.user_message = message
        self.instance_id = instance_id
        self.classified = classified
        self.attempts = attempts


class CredentialNotFoundError(OAuthLifecycleError):
    """No credential record exists for the requested instance."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"No OAuth credentials stored for instance {instance_id}.")
        self.instance_id = instance_id


class CircuitOpenError(OAuthLifecycleError):
    """Raised without any network I/O while a circuit breaker rejects calls."""

    def __init__(
        self,
        message: str,
        *,
        breaker_name: str,
        state: str,
        next_attempt_at: Optional[float] = None,
    ) -> None:
        super().__init__(message)
        self.breaker_name = breaker_name
        self.state = state
        self.next_attempt_at = next_attempt_at

    def retry_after_seconds(self, now_ms: float) -> int:
        """Whole seconds until the breaker admits a trial call."""
        if self.next_attempt_at is None:
            return 1
        return max(1, int((self.next_attempt_at - now_ms + 999) // 1000))


class ValidationError(OAuthLifecycleError):
    """Credentials are structurally or syntactically invalid. Never involves I/O."""

    def __init__(self, message: str, errors: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors) or [message]


class AuthenticationError(OAuthLifecycleError):
    """The provider rejected a token during a validation probe."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenEndpointError(OAuthLifecycleError):
    """A token endpoint answered with an OAuth error or an unusable payload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        error_description: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_description = error_description
        self.payload = payload


class BrokerUnavailableError(OAuthLifecycleError):
    """The OAuth broker could not be reached; callers fall back to direct refresh."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


__all__ = [
    "AuthenticationError",
    "BrokerUnavailableError",
    "CircuitOpenError",
    "CredentialNotFoundError",
    "OAuthLifecycleError",
    "ReauthRequiredError",
    "RefreshFailedError",
    "TokenEndpointError",
    "ValidationError",
]

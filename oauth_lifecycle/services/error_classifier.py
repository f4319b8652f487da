"""
Classification of token endpoint failures.

Maps raw exceptions from the broker, the provider token endpoints and the
transport layer onto a small taxonomy that decides whether the refresh engine
retries, clears the stored tokens, or gives up.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from oauth_lifecycle.core.errors import BrokerUnavailableError, CircuitOpenError


class ErrorType(str, Enum):
    """Refresh failure categories."""

    INVALID_REFRESH_TOKEN = "INVALID_REFRESH_TOKEN"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    INVALID_CLIENT = "INVALID_CLIENT"
    INVALID_REQUEST = "INVALID_REQUEST"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    SERVER_ERROR = "SERVER_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


_USER_MESSAGES: dict[ErrorType, str] = {
    ErrorType.INVALID_REFRESH_TOKEN: "Your {provider} authorization has expired. Please re-authenticate.",
    ErrorType.TOKEN_REVOKED: "Your {provider} access was revoked. Please re-authenticate.",
    ErrorType.INVALID_CLIENT: "Invalid {provider} OAuth credentials. Please contact support.",
    ErrorType.INVALID_REQUEST: "{provider} OAuth request format error. Please try again.",
    ErrorType.NETWORK_ERROR: "Network error. Please try again.",
    ErrorType.RATE_LIMITED: "{provider} is rate limiting token requests. Please try again shortly.",
    ErrorType.SERVICE_UNAVAILABLE: "{provider} authentication service temporarily unavailable. Please try again.",
    ErrorType.SERVER_ERROR: "{provider} authentication server error. Please try again.",
    ErrorType.UNKNOWN_ERROR: "{provider} authentication error. Please try again.",
}

_NETWORK_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED"})

_REFRESH_TOKEN_SIGNALS = (
    "invalid_grant",
    "invalid_refresh_token",
    "authorization grant is invalid",
    "invalid refresh token",
    "refresh token expired",
    "refresh token is invalid",
    "user may need to re-authorize",
)
_REVOKED_SIGNALS = (
    "token_revoked",
    "token revoked",
    "invalid_auth",
    "not_authed",
    "account_inactive",
)
_CLIENT_SIGNALS = (
    "invalid_client",
    "client authentication failed",
    "oauth client was not found",
)
_REQUEST_SIGNALS = (
    "invalid_request",
    "missing a required parameter",
    "malformed",
)
_RATE_LIMIT_SIGNALS = ("rate_limited", "ratelimited", "too many requests")
_UNAVAILABLE_SIGNALS = (
    "service unavailable",
    "oauth service",
    "temporarily_unavailable",
)


@dataclass(frozen=True)
class ClassifiedError:
    """Verdict for a single raw error."""

    error_type: ErrorType
    requires_reauth: bool
    is_temporary: bool
    user_message: str
    http_status: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "error_type": self.error_type.value,
            "requires_reauth": self.requires_reauth,
            "is_temporary": self.is_temporary,
            "user_message": self.user_message,
            "http_status": self.http_status,
        }


def _http_status(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    return None


def _is_network_error(error: BaseException) -> bool:
    if isinstance(
        error,
        (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError),
    ):
        return True
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in _NETWORK_CODES:
        return True
    return type(error).__name__ == "AbortError"


class ErrorClassifier:
    """
    Deterministic, side-effect free mapping from raw error to ``ClassifiedError``.

    Rules are evaluated top to bottom; the first match wins. Text signals are
    matched against the OAuth ``error`` code carried by the exception (when
    present) and the lower-cased exception message.
    """

    def __init__(self, provider_name: str = "Provider") -> None:
        self._provider_name = provider_name

    def classify(
        self, error: BaseException, *, provider_name: Optional[str] = None
    ) -> ClassifiedError:
        provider = provider_name or self._provider_name
        status = _http_status(error)
        error_code = (getattr(error, "error_code", None) or "").lower()
        text = f"{error_code} {str(error).lower()}"

        def verdict(
            error_type: ErrorType, *, requires_reauth: bool, is_temporary: bool
        ) -> ClassifiedError:
            return ClassifiedError(
                error_type=error_type,
                requires_reauth=requires_reauth,
                is_temporary=is_temporary,
                user_message=_USER_MESSAGES[error_type].format(provider=provider),
                http_status=status,
            )

        if any(signal in text for signal in _REFRESH_TOKEN_SIGNALS):
            return verdict(
                ErrorType.INVALID_REFRESH_TOKEN, requires_reauth=True, is_temporary=False
            )
        if any(signal in text for signal in _REVOKED_SIGNALS):
            return verdict(ErrorType.TOKEN_REVOKED, requires_reauth=True, is_temporary=False)
        if any(signal in text for signal in _CLIENT_SIGNALS):
            return verdict(ErrorType.INVALID_CLIENT, requires_reauth=True, is_temporary=False)
        if any(signal in text for signal in _REQUEST_SIGNALS):
            return verdict(ErrorType.INVALID_REQUEST, requires_reauth=False, is_temporary=True)
        if _is_network_error(error):
            return verdict(ErrorType.NETWORK_ERROR, requires_reauth=False, is_temporary=True)
        if status == 429 or any(signal in text for signal in _RATE_LIMIT_SIGNALS):
            return verdict(ErrorType.RATE_LIMITED, requires_reauth=False, is_temporary=True)
        if (
            isinstance(error, (BrokerUnavailableError, CircuitOpenError))
            or status in (502, 503, 504)
            or any(signal in text for signal in _UNAVAILABLE_SIGNALS)
        ):
            return verdict(
                ErrorType.SERVICE_UNAVAILABLE, requires_reauth=False, is_temporary=True
            )
        if (status is not None and status >= 500) or "server_error" in text:
            return verdict(ErrorType.SERVER_ERROR, requires_reauth=False, is_temporary=True)
        return verdict(ErrorType.UNKNOWN_ERROR, requires_reauth=False, is_temporary=False)

    def counts_against_breaker(self, error: BaseException) -> bool:
        """Every failure except a verdict on one instance's credentials."""
        return not self.classify(error).requires_reauth

    @staticmethod
    def log_level(classified: ClassifiedError) -> int:
        """Logging level for a failure with this classification."""
        if classified.error_type in (ErrorType.INVALID_CLIENT, ErrorType.UNKNOWN_ERROR):
            return logging.ERROR
        return logging.WARNING


__all__ = ["ClassifiedError", "ErrorClassifier", "ErrorType"]

"""
Domain models for OAuth token persistence.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current UTC time with timezone info."""
    return datetime.now(timezone.utc)


class OAuthStatus(str, Enum):
    """Lifecycle status of an instance's OAuth credentials."""

    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


class TokenRecord(BaseModel):
    """Token fields owned by the credential store. ``expires_at`` is epoch milliseconds."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def masked(self) -> dict[str, Any]:
        """Metadata safe to return to API callers."""
        return {
            "has_access_token": bool(self.access_token),
            "has_refresh_token": bool(self.refresh_token),
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "scope": self.scope,
        }


class StoredCredential(BaseModel):
    """A credential store row: the instance's OAuth app credentials plus its tokens."""

    instance_id: str
    provider: str
    client_id: str
    client_secret: str
    token: TokenRecord = Field(default_factory=TokenRecord)
    status: OAuthStatus = OAuthStatus.PENDING
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)


class OAuthStatusUpdate(BaseModel):
    """
    Partial update written by the refresh engine after each terminal outcome.

    Only explicitly provided fields are applied by the store, so an update that
    omits the token fields leaves the stored tokens untouched while one that
    passes ``None`` clears them.
    """

    status: OAuthStatus
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_expires_at: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def active(cls, record: TokenRecord) -> "OAuthStatusUpdate":
        return cls(
            status=OAuthStatus.ACTIVE,
            access_token=record.access_token,
            refresh_token=record.refresh_token,
            token_expires_at=record.expires_at,
            token_type=record.token_type,
            scope=record.scope,
            error=None,
        )

    @classmethod
    def failed(cls, error: str) -> "OAuthStatusUpdate":
        """Failed status that keeps the stored tokens."""
        return cls(status=OAuthStatus.FAILED, error=error)

    @classmethod
    def cleared(cls, error: str) -> "OAuthStatusUpdate":
        """Failed status with every token field cleared."""
        return cls(
            status=OAuthStatus.FAILED,
            access_token=None,
            refresh_token=None,
            token_expires_at=None,
            scope=None,
            error=error,
        )

    def changes(self) -> dict[str, Any]:
        """Fields explicitly set on this update."""
        return self.model_dump(exclude_unset=True)


__all__ = [
    "OAuthStatus",
    "OAuthStatusUpdate",
    "StoredCredential",
    "TokenRecord",
    "utc_now",
]

"""Schemas for the token and credential endpoints."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from oauth_lifecycle.models.oauth import OAuthStatus


class TokenStatusResponse(BaseModel):
    """Token metadata returned by ensure-token; never includes the token itself."""

    instance_id: str
    provider: str
    status: OAuthStatus
    token_type: str
    expires_at: Optional[int] = Field(None, description="Expiry in epoch milliseconds.")
    scope: Optional[str] = None
    refreshed: bool = Field(
        False, description="Whether the call obtained a new access token."
    )


class ExchangeCredentialsRequest(BaseModel):
    scopes: list[str] = Field(default_factory=list)


class CredentialValidationRequest(BaseModel):
    """Credentials submitted for validation."""

    provider: str = Field(..., description="One of reddit, slack or airtable.")
    instance_id: Optional[str] = None
    access_token: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    use_cache: bool = True
    probe: Optional[bool] = Field(
        None, description="Override the configured probe setting for this request."
    )

    def credentials(self) -> dict[str, Any]:
        return self.model_dump(
            exclude={"use_cache", "probe"}, exclude_none=True
        )


class CredentialValidationResponse(BaseModel):
    valid: bool
    provider: str
    instance_id: Optional[str] = None
    auth_type: Literal["bearer_token", "oauth_client"]
    token_type: Optional[str] = None
    probed: bool
    validated_at: float


class ErrorResponse(BaseModel):
    """Body of 4xx/5xx answers raised from domain errors."""

    message: str
    error_type: Optional[str] = None
    requires_reauth: bool = False
    errors: list[str] = Field(default_factory=list)


__all__ = [
    "CredentialValidationRequest",
    "CredentialValidationResponse",
    "ErrorResponse",
    "ExchangeCredentialsRequest",
    "TokenStatusResponse",
]

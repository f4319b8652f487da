"""Public schema exports."""

from .auth import (
    CredentialValidationRequest,
    CredentialValidationResponse,
    ErrorResponse,
    ExchangeCredentialsRequest,
    TokenStatusResponse,
)

__all__ = [
    "CredentialValidationRequest",
    "CredentialValidationResponse",
    "ErrorResponse",
    "ExchangeCredentialsRequest",
    "TokenStatusResponse",
]

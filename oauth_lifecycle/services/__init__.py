"""Service layer exports."""

from .backoff import BackoffScheduler
from .circuit_breaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .context import AuthContext, build_auth_context
from .credential_validator import CredentialValidator, StructureResult, ValidationResult
from .error_classifier import ClassifiedError, ErrorClassifier, ErrorType
from .token_cipher import TokenCipherService
from .token_metrics import MetricsRecorder, RefreshAttempt
from .token_refresh import RefreshSweep, TokenRefreshEngine, is_token_expired

__all__ = [
    "AuthContext",
    "BackoffScheduler",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "ClassifiedError",
    "CredentialValidator",
    "ErrorClassifier",
    "ErrorType",
    "MetricsRecorder",
    "RefreshAttempt",
    "RefreshSweep",
    "StructureResult",
    "TokenCipherService",
    "TokenRefreshEngine",
    "ValidationResult",
    "build_auth_context",
    "is_token_expired",
]

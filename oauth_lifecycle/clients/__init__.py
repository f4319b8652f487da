"""Expose constructed client wrappers."""

from .credential_store import CredentialStore, InMemoryCredentialStore, SQLiteCredentialStore
from .oauth_broker import OAuthBrokerClient
from .provider_oauth import ProviderOAuthClient
from .providers import PROVIDER_ADAPTERS, ProviderAdapter, get_provider_adapter

__all__ = [
    "CredentialStore",
    "InMemoryCredentialStore",
    "OAuthBrokerClient",
    "PROVIDER_ADAPTERS",
    "ProviderAdapter",
    "ProviderOAuthClient",
    "SQLiteCredentialStore",
    "get_provider_adapter",
]

"""Provider OAuth connection storage and token management."""

from reviewsync.connectors.auth.connection_store import (
    ConnectionStore,
    InMemoryConnectionStore,
    PostgresConnectionStore,
    ProviderTokens,
)
from reviewsync.connectors.auth.token_manager import TokenManager, is_reauth_failure

__all__ = [
    "ConnectionStore",
    "InMemoryConnectionStore",
    "PostgresConnectionStore",
    "ProviderTokens",
    "TokenManager",
    "is_reauth_failure",
]

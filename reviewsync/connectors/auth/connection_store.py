"""
Connection Storage

Encrypted storage for each tenant's provider OAuth grant.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta

import structlog
from cryptography.fernet import Fernet
from pydantic import BaseModel, ConfigDict
from sqlalchemy import text

from reviewsync.db.client import get_db_session
from reviewsync.kernel.time import coerce_utc, utc_now

logger = structlog.get_logger()

DEFAULT_PROVIDER = "google"


class ProviderTokens(BaseModel):
    """Decrypted OAuth grant for one tenant."""

    model_config = ConfigDict(extra="allow")

    tenant_id: str
    provider: str = DEFAULT_PROVIDER
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = "Bearer"
    scope: str | None = None
    expires_at: datetime | None = None

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        """True when there is no usable token or it expires inside the window."""
        if not self.access_token or self.expires_at is None:
            return True
        current = now or utc_now()
        return coerce_utc(self.expires_at) - current <= timedelta(seconds=seconds)


class ConnectionStore(ABC):
    """
    Abstract base class for provider connection storage.

    Implementations should handle:
    - Encryption at rest
    - One connection per (tenant, provider)
    """

    @abstractmethod
    async def get_connection(self, tenant_id: str, provider: str = DEFAULT_PROVIDER) -> ProviderTokens | None:
        pass

    @abstractmethod
    async def save_tokens(self, tokens: ProviderTokens) -> None:
        """Insert or replace the grant for `tokens.tenant_id`."""
        pass

    @abstractmethod
    async def delete_connection(self, tenant_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        """
        Remove the grant so the tenant must re-authorize.

        Returns:
            True if deleted, False if not found
        """
        pass

    @abstractmethod
    async def list_tenants(self, provider: str = DEFAULT_PROVIDER) -> list[str]:
        pass


class _FernetMixin:
    _fernet: Fernet

    def _encrypt(self, data: str | None) -> bytes | None:
        if not data:
            return None
        return self._fernet.encrypt(data.encode())

    def _decrypt(self, data: bytes | None) -> str | None:
        if not data:
            return None
        return self._fernet.decrypt(bytes(data)).decode()


class InMemoryConnectionStore(_FernetMixin, ConnectionStore):
    """
    In-memory connection storage for development/testing.

    Tokens are encrypted in memory but not persisted.
    """

    def __init__(self, encryption_key: bytes | None = None):
        self._fernet = Fernet(encryption_key or Fernet.generate_key())
        self._rows: dict[tuple[str, str], dict] = {}

    async def get_connection(self, tenant_id: str, provider: str = DEFAULT_PROVIDER) -> ProviderTokens | None:
        row = self._rows.get((tenant_id, provider))
        if not row:
            return None
        return ProviderTokens(
            tenant_id=tenant_id,
            provider=provider,
            access_token=self._decrypt(row["access_token"]),
            refresh_token=self._decrypt(row["refresh_token"]),
            token_type=row["token_type"],
            scope=row["scope"],
            expires_at=row["expires_at"],
        )

    async def save_tokens(self, tokens: ProviderTokens) -> None:
        self._rows[(tokens.tenant_id, tokens.provider)] = {
            "access_token": self._encrypt(tokens.access_token),
            "refresh_token": self._encrypt(tokens.refresh_token),
            "token_type": tokens.token_type,
            "scope": tokens.scope,
            "expires_at": tokens.expires_at,
        }

    async def delete_connection(self, tenant_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        if (tenant_id, provider) in self._rows:
            del self._rows[(tenant_id, provider)]
            logger.debug("Deleted connection", tenant_id=tenant_id, provider=provider)
            return True
        return False

    async def list_tenants(self, provider: str = DEFAULT_PROVIDER) -> list[str]:
        return sorted(tenant for (tenant, prov) in self._rows if prov == provider)


class PostgresConnectionStore(_FernetMixin, ConnectionStore):
    """PostgreSQL-backed connection storage (`provider_connections`)."""

    def __init__(self, encryption_key: str | bytes | None):
        if not encryption_key:
            # Grants written with a per-process key are unreadable after a restart.
            logger.warning("TOKEN_ENCRYPTION_KEY not set; using an ephemeral key")
            encryption_key = Fernet.generate_key()
        self._fernet = Fernet(encryption_key)

    async def get_connection(self, tenant_id: str, provider: str = DEFAULT_PROVIDER) -> ProviderTokens | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT access_token_encrypted, refresh_token_encrypted,
                           token_type, scope, expires_at
                    FROM provider_connections
                    WHERE tenant_id = :tenant_id AND provider = :provider
                    """
                ),
                {"tenant_id": tenant_id, "provider": provider},
            )
            row = result.fetchone()

        if not row:
            return None

        return ProviderTokens(
            tenant_id=tenant_id,
            provider=provider,
            access_token=self._decrypt(row.access_token_encrypted),
            refresh_token=self._decrypt(row.refresh_token_encrypted),
            token_type=row.token_type,
            scope=row.scope,
            expires_at=row.expires_at,
        )

    async def save_tokens(self, tokens: ProviderTokens) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO provider_connections (
                        tenant_id, provider, access_token_encrypted, refresh_token_encrypted,
                        token_type, scope, expires_at, created_at, updated_at
                    ) VALUES (
                        :tenant_id, :provider, :access_token, :refresh_token,
                        :token_type, :scope, :expires_at, NOW(), NOW()
                    )
                    ON CONFLICT (tenant_id, provider) DO UPDATE SET
                        access_token_encrypted = EXCLUDED.access_token_encrypted,
                        refresh_token_encrypted = COALESCE(
                            EXCLUDED.refresh_token_encrypted,
                            provider_connections.refresh_token_encrypted
                        ),
                        token_type = EXCLUDED.token_type,
                        scope = COALESCE(EXCLUDED.scope, provider_connections.scope),
                        expires_at = EXCLUDED.expires_at,
                        updated_at = NOW()
                    """
                ),
                {
                    "tenant_id": tokens.tenant_id,
                    "provider": tokens.provider,
                    "access_token": self._encrypt(tokens.access_token),
                    "refresh_token": self._encrypt(tokens.refresh_token),
                    "token_type": tokens.token_type,
                    "scope": tokens.scope,
                    "expires_at": tokens.expires_at,
                },
            )

        logger.debug("Stored provider tokens", tenant_id=tokens.tenant_id, provider=tokens.provider)

    async def delete_connection(self, tenant_id: str, provider: str = DEFAULT_PROVIDER) -> bool:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    DELETE FROM provider_connections
                    WHERE tenant_id = :tenant_id AND provider = :provider
                    """
                ),
                {"tenant_id": tenant_id, "provider": provider},
            )
        return result.rowcount > 0

    async def list_tenants(self, provider: str = DEFAULT_PROVIDER) -> list[str]:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT tenant_id
                    FROM provider_connections
                    WHERE provider = :provider AND refresh_token_encrypted IS NOT NULL
                    ORDER BY tenant_id
                    """
                ),
                {"provider": provider},
            )
            rows = result.fetchall()
        return [row.tenant_id for row in rows]

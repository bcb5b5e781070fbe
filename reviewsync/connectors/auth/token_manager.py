"""
Token Manager

Hands out provider access tokens, refreshing them shortly before expiry.
A revoked grant deletes the stored connection and raises ReauthRequired.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable

import httpx
import structlog

from reviewsync.config import Settings, get_settings
from reviewsync.connectors.auth.connection_store import DEFAULT_PROVIDER, ConnectionStore, ProviderTokens
from reviewsync.connectors.http import request_with_retry
from reviewsync.kernel.errors import ProviderError, RateLimited, ReauthRequired
from reviewsync.kernel.retry import RetryPolicy
from reviewsync.kernel.time import utc_now

logger = structlog.get_logger()

_TRANSIENT_HINTS = ("429", "5xx", "500", "502", "503", "504", "520", "cloudflare", "timeout", "network")
_REAUTH_HINTS = (
    "invalid_grant",
    "invalid authentication credentials",
    "expired or revoked",
    "insufficient authentication scopes",
)


def is_reauth_failure(message: str) -> bool:
    """Decide whether an auth-looking failure means the grant is really gone.

    Transient hints win: a 503 page that happens to mention credentials is not
    a revocation.
    """
    normalized = (message or "").lower()
    if any(hint in normalized for hint in _TRANSIENT_HINTS):
        return False
    return any(hint in normalized for hint in _REAUTH_HINTS)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            # Google API style: {"error": {"status": ..., "message": ...}}
            return f"{error.get('status') or ''} {error.get('message') or ''}".strip()
        return f"{error or ''} {body.get('error_description') or ''}".strip()
    return str(body)


class TokenManager:
    """Resolve a valid access token per tenant.

    One instance lives for one orchestrator invocation; refreshed tokens are
    cached for its lifetime so each tenant refreshes at most once per run.
    """

    def __init__(
        self,
        store: ConnectionStore,
        *,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        provider: str = DEFAULT_PROVIDER,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.provider = provider
        self._http_client = http_client
        self._clock = clock
        self._sleep = sleep
        self._cache: dict[str, ProviderTokens] = {}
        self._policy = RetryPolicy(
            max_attempts=self.settings.provider_max_retries + 1,
            base_delay=self.settings.provider_retry_base_seconds,
            max_delay=self.settings.provider_retry_max_seconds,
        )

    async def get_valid_access_token(self, tenant_id: str) -> str:
        skew = self.settings.token_refresh_skew_seconds
        cached = self._cache.get(tenant_id)
        if cached and not cached.expires_within(skew, now=self._clock()):
            return cached.access_token or ""

        tokens = await self.store.get_connection(tenant_id, self.provider)
        if tokens is None:
            raise ReauthRequired(tenant_id=tenant_id, reason=ReauthRequired.MISSING_CONNECTION)

        if not tokens.expires_within(skew, now=self._clock()):
            self._cache[tenant_id] = tokens
            return tokens.access_token or ""

        if not tokens.refresh_token:
            raise ReauthRequired(tenant_id=tenant_id, reason=ReauthRequired.MISSING_REFRESH_TOKEN)

        refreshed = await self._refresh(tokens)
        self._cache[tenant_id] = refreshed
        return refreshed.access_token or ""

    def invalidate(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id, None)

    async def _refresh(self, tokens: ProviderTokens) -> ProviderTokens:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": tokens.refresh_token,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
        }

        if self._http_client is not None:
            response = await self._post_refresh(self._http_client, data)
        else:
            async with httpx.AsyncClient(timeout=self.settings.provider_timeout_seconds) as client:
                response = await self._post_refresh(client, data)

        if response.is_success:
            payload = response.json()
            expires_in = payload.get("expires_in")
            expires_at = (
                self._clock() + timedelta(seconds=int(expires_in))
                if expires_in and int(expires_in) > 0
                else None
            )
            refreshed = ProviderTokens(
                tenant_id=tokens.tenant_id,
                provider=tokens.provider,
                access_token=payload.get("access_token"),
                # Preserve refresh token if not returned
                refresh_token=payload.get("refresh_token") or tokens.refresh_token,
                token_type=payload.get("token_type") or tokens.token_type,
                scope=payload.get("scope") or tokens.scope,
                expires_at=expires_at,
            )
            await self.store.save_tokens(refreshed)
            logger.info(
                "Provider tokens refreshed",
                tenant_id=tokens.tenant_id,
                expires_at=expires_at,
            )
            return refreshed

        message = _error_text(response)
        if response.status_code in (400, 401) and is_reauth_failure(message):
            deleted = await self.store.delete_connection(tokens.tenant_id, tokens.provider)
            self.invalidate(tokens.tenant_id)
            logger.warning(
                "Provider grant revoked; connection removed",
                tenant_id=tokens.tenant_id,
                deleted=deleted,
            )
            raise ReauthRequired(tenant_id=tokens.tenant_id, reason=ReauthRequired.TOKEN_REVOKED)

        if response.status_code == 429:
            raise RateLimited(message="Token refresh rate limited", meta={"tenant_id": tokens.tenant_id})

        raise ProviderError(
            message=f"Token refresh failed: {message or response.status_code}",
            upstream_status=response.status_code,
            meta={"tenant_id": tokens.tenant_id},
        )

    async def _post_refresh(self, client: httpx.AsyncClient, data: dict) -> httpx.Response:
        try:
            return await request_with_retry(
                client,
                "POST",
                self.settings.google_token_url,
                policy=self._policy,
                operation="token_refresh",
                sleep=self._sleep,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            raise ProviderError(message=f"Token refresh network error: {exc}") from exc

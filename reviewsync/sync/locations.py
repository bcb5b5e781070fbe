"""
Location list sync.

Lists the tenant's provider accounts, then each account's locations, and
upserts them on (tenant, location resource name). Every run leaves a
`location_sync_runs` row with its counts and per-account failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import structlog

from reviewsync.connectors.auth.token_manager import TokenManager, is_reauth_failure
from reviewsync.connectors.google.client import ProviderClient
from reviewsync.connectors.google.models import NotFound
from reviewsync.kernel.errors import ProviderError, ReauthRequired
from reviewsync.kernel.time import utc_now
from reviewsync.sync.repository import LocationRow, LocationSyncRun, SyncRepository

logger = structlog.get_logger()


@dataclass
class LocationSyncResult:
    tenant_id: str
    status: str = "ok"
    accounts: int = 0
    locations: int = 0
    upserted: int = 0
    failures: list[dict[str, Any]] = field(default_factory=list)


class LocationSync:
    def __init__(
        self,
        repository: SyncRepository,
        client: ProviderClient,
        tokens: TokenManager,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.client = client
        self.tokens = tokens
        self._clock = clock

    async def sync_tenant(self, tenant_id: str) -> LocationSyncResult:
        started_at = self._clock()
        result = LocationSyncResult(tenant_id=tenant_id)
        try:
            await self._sync(tenant_id, result)
        except ReauthRequired:
            result.status = "error"
            result.failures.append({"account": None, "message": "reauth_required"})
            raise
        except ProviderError as exc:
            result.status = "error"
            result.failures.append({"account": None, "message": exc.message})
            raise
        finally:
            await self.repository.record_location_sync_run(
                LocationSyncRun(
                    tenant_id=tenant_id,
                    started_at=started_at,
                    finished_at=self._clock(),
                    status=result.status,
                    accounts_count=result.accounts,
                    locations_count=result.locations,
                    upserted_count=result.upserted,
                    failures=tuple(result.failures),
                )
            )

        logger.info(
            "Location sync finished",
            tenant_id=tenant_id,
            status=result.status,
            accounts=result.accounts,
            locations=result.locations,
            failures=len(result.failures),
        )
        return result

    async def _sync(self, tenant_id: str, result: LocationSyncResult) -> None:
        access_token = await self.tokens.get_valid_access_token(tenant_id)
        try:
            accounts = await self.client.list_accounts(access_token)
        except ProviderError as exc:
            if exc.upstream_status in (401, 403) or is_reauth_failure(exc.message):
                raise ReauthRequired(
                    tenant_id=tenant_id,
                    reason=ReauthRequired.TOKEN_REVOKED,
                    message=f"reauth_required: {exc.message}",
                ) from exc
            raise
        result.accounts = len(accounts)

        for account in accounts:
            try:
                locations = await self.client.list_locations(access_token, account.name)
            except ProviderError as exc:
                result.failures.append({"account": account.name, "message": exc.message})
                continue
            if isinstance(locations, NotFound):
                result.failures.append({"account": account.name, "message": "Account not found on provider."})
                continue

            for location in locations:
                result.locations += 1
                latlng = location.latlng
                await self.repository.upsert_location(
                    LocationRow(
                        tenant_id=tenant_id,
                        account_resource_name=account.name,
                        location_resource_name=location.name,
                        title=location.title,
                        latitude=latlng.latitude if latlng else None,
                        longitude=latlng.longitude if latlng else None,
                    )
                )
                result.upserted += 1

        if result.failures:
            result.status = "partial" if result.upserted else "error"

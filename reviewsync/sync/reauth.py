"""Per-tenant reauth markers stored in `cron_state`."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import structlog

from reviewsync.kernel.errors import ReauthRequired
from reviewsync.kernel.time import isoformat_z, utc_now
from reviewsync.sync.cron_state import CronStateStore

logger = structlog.get_logger()

REAUTH_KEY = "provider_last_error"


class ReauthTracker:
    def __init__(self, state: CronStateStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.state = state
        self._clock = clock

    async def record(self, exc: ReauthRequired) -> None:
        await self.state.put(
            REAUTH_KEY,
            {
                "code": exc.code,
                "reason": exc.reason,
                "message": exc.message,
                "at": isoformat_z(self._clock()),
            },
            tenant_id=exc.tenant_id,
        )
        logger.warning("Tenant needs to reconnect provider", tenant_id=exc.tenant_id, reason=exc.reason)

    async def clear(self, tenant_id: str) -> None:
        if await self.state.delete(REAUTH_KEY, tenant_id=tenant_id):
            logger.info("Reauth marker cleared", tenant_id=tenant_id)

    async def get(self, tenant_id: str) -> dict[str, Any] | None:
        return await self.state.get(REAUTH_KEY, tenant_id=tenant_id)

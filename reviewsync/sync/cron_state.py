"""
Keyed JSON checkpoints (`cron_state`).

Holds the sweep cursor, the schedule gate timestamp and per-tenant reauth
markers. Global rows use an empty tenant id.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog
from sqlalchemy import text

from reviewsync.db.client import get_db_session
from reviewsync.kernel.hashing import canonical_json

logger = structlog.get_logger()

GLOBAL_TENANT = ""


class CronStateStore(ABC):
    @abstractmethod
    async def get(self, key: str, tenant_id: str = GLOBAL_TENANT) -> dict[str, Any] | None:
        pass

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any], tenant_id: str = GLOBAL_TENANT) -> None:
        pass

    @abstractmethod
    async def delete(self, key: str, tenant_id: str = GLOBAL_TENANT) -> bool:
        pass


class PostgresCronStateStore(CronStateStore):
    async def get(self, key: str, tenant_id: str = GLOBAL_TENANT) -> dict[str, Any] | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT value
                    FROM cron_state
                    WHERE key = :key AND tenant_id = :tenant_id
                    """
                ),
                {"key": key, "tenant_id": tenant_id},
            )
            row = result.mappings().first()
        if not row:
            return None
        value = row.get("value")
        return value if isinstance(value, dict) else None

    async def put(self, key: str, value: dict[str, Any], tenant_id: str = GLOBAL_TENANT) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO cron_state (key, tenant_id, value, updated_at)
                    VALUES (:key, :tenant_id, CAST(:value AS JSONB), NOW())
                    ON CONFLICT (key, tenant_id)
                    DO UPDATE SET value = EXCLUDED.value, updated_at = NOW()
                    """
                ),
                {"key": key, "tenant_id": tenant_id, "value": canonical_json(value)},
            )

    async def delete(self, key: str, tenant_id: str = GLOBAL_TENANT) -> bool:
        async with get_db_session() as session:
            result = await session.execute(
                text("DELETE FROM cron_state WHERE key = :key AND tenant_id = :tenant_id"),
                {"key": key, "tenant_id": tenant_id},
            )
        return result.rowcount > 0

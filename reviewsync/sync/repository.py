"""
Sync Repository

Data access for locations, reviews and reply history. Every write is a
conflict-aware upsert on the natural key, so re-applying a page or racing a
second invocation converges on the same rows.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import bindparam, text

from reviewsync.db.client import get_db_session
from reviewsync.kernel.hashing import canonical_json

logger = structlog.get_logger()


@dataclass(frozen=True)
class LocationRef:
    id: int
    tenant_id: str
    account_resource_name: str
    location_resource_name: str
    title: str | None = None

    @property
    def parent(self) -> str:
        """Provider path for the review listing (`accounts/x/locations/y`)."""
        if self.location_resource_name.startswith("accounts/"):
            return self.location_resource_name
        return f"{self.account_resource_name}/{self.location_resource_name}"

    @property
    def display_name(self) -> str:
        return self.title or self.location_resource_name


@dataclass(frozen=True)
class LocationRow:
    tenant_id: str
    account_resource_name: str
    location_resource_name: str
    title: str | None = None
    latitude: float | None = None
    longitude: float | None = None


@dataclass(frozen=True)
class StoredReviewState:
    id: int
    last_synced_at: datetime | None
    status: str | None
    reply_text: str | None


@dataclass(frozen=True)
class ReviewRow:
    tenant_id: str
    location_id: str
    provider_review_id: str
    review_name: str
    location_name: str | None = None
    author_name: str | None = None
    rating: int | None = None
    comment: str | None = None
    create_time: datetime | None = None
    update_time: datetime | None = None
    reply_text: str | None = None
    replied_at: datetime | None = None
    last_synced_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LocationSyncRun:
    tenant_id: str
    started_at: datetime
    finished_at: datetime | None = None
    status: str = "running"
    accounts_count: int = 0
    locations_count: int = 0
    upserted_count: int = 0
    failures: tuple[dict[str, Any], ...] = ()


class SyncRepository(ABC):
    @abstractmethod
    async def list_locations(
        self,
        *,
        after_id: int | None = None,
        tenant_id: str | None = None,
        limit: int = 1000,
    ) -> list[LocationRef]:
        """Locations in ascending id order, strictly after `after_id`."""
        pass

    @abstractmethod
    async def recent_unreplied_locations(
        self,
        *,
        since: datetime,
        limit: int,
        tenant_id: str | None = None,
    ) -> list[LocationRef]:
        """Distinct locations owning unreplied reviews updated since `since`, freshest first."""
        pass

    @abstractmethod
    async def get_review_states(
        self,
        tenant_id: str,
        location_id: str,
        provider_review_ids: list[str],
    ) -> dict[str, StoredReviewState]:
        pass

    @abstractmethod
    async def upsert_review(self, row: ReviewRow) -> int:
        """Insert or update by (tenant, location, provider review id); returns the row id."""
        pass

    @abstractmethod
    async def upsert_reply(
        self,
        *,
        tenant_id: str,
        review_pk: int,
        location_pk: int | None,
        business_name: str | None,
        reply_text: str,
        sent_at: datetime,
    ) -> None:
        pass

    @abstractmethod
    async def touch_location(self, tenant_id: str, location_resource_name: str, synced_at: datetime) -> None:
        pass

    @abstractmethod
    async def upsert_location(self, row: LocationRow) -> None:
        pass

    @abstractmethod
    async def record_location_sync_run(self, run: LocationSyncRun) -> None:
        pass


_LOCATION_COLUMNS = "id, tenant_id, account_resource_name, location_resource_name, title"


def _location_from_row(row: Any) -> LocationRef:
    return LocationRef(
        id=int(row["id"]),
        tenant_id=row["tenant_id"],
        account_resource_name=row["account_resource_name"],
        location_resource_name=row["location_resource_name"],
        title=row.get("title"),
    )


class PostgresSyncRepository(SyncRepository):
    async def list_locations(
        self,
        *,
        after_id: int | None = None,
        tenant_id: str | None = None,
        limit: int = 1000,
    ) -> list[LocationRef]:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    f"""
                    SELECT {_LOCATION_COLUMNS}
                    FROM locations
                    WHERE (CAST(:after_id AS BIGINT) IS NULL OR id > :after_id)
                      AND (CAST(:tenant_id AS TEXT) IS NULL OR tenant_id = :tenant_id)
                    ORDER BY id ASC
                    LIMIT :limit
                    """
                ),
                {"after_id": after_id, "tenant_id": tenant_id, "limit": int(max(1, limit))},
            )
            rows = result.mappings().all()
        return [_location_from_row(row) for row in rows]

    async def recent_unreplied_locations(
        self,
        *,
        since: datetime,
        limit: int,
        tenant_id: str | None = None,
    ) -> list[LocationRef]:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    WITH recent AS (
                        SELECT r.tenant_id, r.location_id, MAX(r.update_time) AS freshest
                        FROM reviews r
                        WHERE r.status <> 'replied'
                          AND r.update_time >= :since
                          AND (CAST(:tenant_id AS TEXT) IS NULL OR r.tenant_id = :tenant_id)
                        GROUP BY r.tenant_id, r.location_id
                    )
                    SELECT l.id, l.tenant_id, l.account_resource_name,
                           l.location_resource_name, l.title, recent.freshest
                    FROM recent
                    JOIN locations l
                      ON l.tenant_id = recent.tenant_id
                     AND l.location_resource_name = recent.location_id
                    ORDER BY recent.freshest DESC, l.id ASC
                    LIMIT :limit
                    """
                ),
                {"since": since, "tenant_id": tenant_id, "limit": int(max(1, limit))},
            )
            rows = result.mappings().all()
        return [_location_from_row(row) for row in rows]

    async def get_review_states(
        self,
        tenant_id: str,
        location_id: str,
        provider_review_ids: list[str],
    ) -> dict[str, StoredReviewState]:
        if not provider_review_ids:
            return {}
        query = text(
            """
            SELECT id, provider_review_id, last_synced_at, status, reply_text
            FROM reviews
            WHERE tenant_id = :tenant_id
              AND location_id = :location_id
              AND provider_review_id IN :ids
            """
        ).bindparams(bindparam("ids", expanding=True))
        async with get_db_session() as session:
            result = await session.execute(
                query,
                {"tenant_id": tenant_id, "location_id": location_id, "ids": list(provider_review_ids)},
            )
            rows = result.mappings().all()
        return {
            row["provider_review_id"]: StoredReviewState(
                id=int(row["id"]),
                last_synced_at=row["last_synced_at"],
                status=row["status"],
                reply_text=row["reply_text"],
            )
            for row in rows
        }

    async def upsert_review(self, row: ReviewRow) -> int:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    INSERT INTO reviews (
                        tenant_id, location_id, location_name, provider_review_id, review_name,
                        author_name, rating, comment, create_time, update_time,
                        reply_text, replied_at, status, raw, last_synced_at,
                        created_at, updated_at
                    ) VALUES (
                        :tenant_id, :location_id, :location_name, :provider_review_id, :review_name,
                        :author_name, :rating, :comment, :create_time, :update_time,
                        :reply_text, :replied_at,
                        CASE WHEN CAST(:reply_text AS TEXT) IS NULL THEN 'new' ELSE 'replied' END,
                        CAST(:raw AS JSONB), :last_synced_at,
                        NOW(), NOW()
                    )
                    ON CONFLICT (tenant_id, location_id, provider_review_id) DO UPDATE SET
                        location_name = EXCLUDED.location_name,
                        review_name = EXCLUDED.review_name,
                        author_name = EXCLUDED.author_name,
                        rating = EXCLUDED.rating,
                        comment = EXCLUDED.comment,
                        create_time = EXCLUDED.create_time,
                        update_time = EXCLUDED.update_time,
                        reply_text = COALESCE(EXCLUDED.reply_text, reviews.reply_text),
                        replied_at = COALESCE(EXCLUDED.replied_at, reviews.replied_at),
                        status = CASE
                            WHEN EXCLUDED.reply_text IS NOT NULL THEN 'replied'
                            ELSE reviews.status
                        END,
                        raw = EXCLUDED.raw,
                        last_synced_at = EXCLUDED.last_synced_at,
                        updated_at = NOW()
                    RETURNING id
                    """
                ),
                {
                    "tenant_id": row.tenant_id,
                    "location_id": row.location_id,
                    "location_name": row.location_name,
                    "provider_review_id": row.provider_review_id,
                    "review_name": row.review_name,
                    "author_name": row.author_name,
                    "rating": row.rating,
                    "comment": row.comment,
                    "create_time": row.create_time,
                    "update_time": row.update_time,
                    "reply_text": row.reply_text,
                    "replied_at": row.replied_at,
                    "raw": canonical_json(row.raw),
                    "last_synced_at": row.last_synced_at,
                },
            )
            review_pk = result.scalar_one()
        return int(review_pk)

    async def upsert_reply(
        self,
        *,
        tenant_id: str,
        review_pk: int,
        location_pk: int | None,
        business_name: str | None,
        reply_text: str,
        sent_at: datetime,
    ) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO review_replies (
                        tenant_id, review_id, location_pk, source, business_name,
                        reply_text, status, sent_at, created_at
                    ) VALUES (
                        :tenant_id, :review_id, :location_pk, 'google', :business_name,
                        :reply_text, 'sent', :sent_at, NOW()
                    )
                    ON CONFLICT (review_id, source) DO UPDATE SET
                        reply_text = EXCLUDED.reply_text,
                        sent_at = EXCLUDED.sent_at,
                        status = 'sent'
                    """
                ),
                {
                    "tenant_id": tenant_id,
                    "review_id": review_pk,
                    "location_pk": location_pk,
                    "business_name": business_name,
                    "reply_text": reply_text,
                    "sent_at": sent_at,
                },
            )

    async def touch_location(self, tenant_id: str, location_resource_name: str, synced_at: datetime) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    UPDATE locations
                    SET last_synced_at = :synced_at, updated_at = NOW()
                    WHERE tenant_id = :tenant_id AND location_resource_name = :name
                    """
                ),
                {"tenant_id": tenant_id, "name": location_resource_name, "synced_at": synced_at},
            )

    async def upsert_location(self, row: LocationRow) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO locations (
                        tenant_id, account_resource_name, location_resource_name,
                        title, latitude, longitude, created_at, updated_at
                    ) VALUES (
                        :tenant_id, :account, :name, :title, :latitude, :longitude, NOW(), NOW()
                    )
                    ON CONFLICT (tenant_id, location_resource_name) DO UPDATE SET
                        account_resource_name = EXCLUDED.account_resource_name,
                        title = COALESCE(EXCLUDED.title, locations.title),
                        latitude = COALESCE(EXCLUDED.latitude, locations.latitude),
                        longitude = COALESCE(EXCLUDED.longitude, locations.longitude),
                        updated_at = NOW()
                    """
                ),
                {
                    "tenant_id": row.tenant_id,
                    "account": row.account_resource_name,
                    "name": row.location_resource_name,
                    "title": row.title,
                    "latitude": row.latitude,
                    "longitude": row.longitude,
                },
            )

    async def record_location_sync_run(self, run: LocationSyncRun) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO location_sync_runs (
                        tenant_id, started_at, finished_at, status,
                        accounts_count, locations_count, upserted_count, failures
                    ) VALUES (
                        :tenant_id, :started_at, :finished_at, :status,
                        :accounts_count, :locations_count, :upserted_count, CAST(:failures AS JSONB)
                    )
                    """
                ),
                {
                    "tenant_id": run.tenant_id,
                    "started_at": run.started_at,
                    "finished_at": run.finished_at,
                    "status": run.status,
                    "accounts_count": run.accounts_count,
                    "locations_count": run.locations_count,
                    "upserted_count": run.upserted_count,
                    "failures": canonical_json(list(run.failures)),
                },
            )

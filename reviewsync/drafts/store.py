"""
Draft Store

Reads candidate reviews and writes draft requests, AI jobs and draft-run
bookkeeping. Uniqueness of (review, mode) draft requests and of in-flight AI
jobs per review lives in the database; `insert_ai_job` surfaces a violation
as `EnqueueConflict`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError

from reviewsync.db.client import get_db_session
from reviewsync.db.models.jobs import AI_JOB_IN_FLIGHT_STATUSES
from reviewsync.kernel.errors import EnqueueConflict
from reviewsync.kernel.hashing import canonical_json

logger = structlog.get_logger()

DRAFT_MODE = "draft"
AI_JOB_TYPE = "review_draft"

UNIQUE_VIOLATION = "23505"


@dataclass(frozen=True)
class DraftCandidate:
    id: int | None
    tenant_id: str
    location_id: str
    comment: str | None = None
    reply_text: str | None = None
    update_time: datetime | None = None
    create_time: datetime | None = None

    @property
    def activity_time(self) -> datetime | None:
        return self.update_time or self.create_time


@dataclass(frozen=True)
class ExistingDraft:
    review_id: int
    status: str
    draft_text: str | None = None
    identity_hash: str = "none"


@dataclass(frozen=True)
class AiJobRequest:
    tenant_id: str
    review_id: int
    location_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    type: str = AI_JOB_TYPE


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == UNIQUE_VIOLATION or "duplicate key" in str(orig).lower()


class DraftStore(ABC):
    @abstractmethod
    async def get_draft_run(self, tenant_id: str, location_id: str) -> datetime | None:
        """Last batch preparation time for (tenant, location)."""
        pass

    @abstractmethod
    async def record_draft_run(
        self,
        tenant_id: str,
        location_id: str,
        *,
        last_run_at: datetime,
        requested_limit: int,
        generated_count: int,
    ) -> None:
        pass

    @abstractmethod
    async def list_candidates(self, tenant_id: str, location_id: str, limit: int) -> list[DraftCandidate]:
        """Most recently active reviews of the location, newest first."""
        pass

    @abstractmethod
    async def get_review(self, tenant_id: str, review_id: int) -> DraftCandidate | None:
        pass

    @abstractmethod
    async def get_draft_requests(self, review_ids: list[int], mode: str = DRAFT_MODE) -> dict[int, ExistingDraft]:
        pass

    @abstractmethod
    async def in_flight_review_ids(self, review_ids: list[int], job_type: str = AI_JOB_TYPE) -> set[int]:
        pass

    @abstractmethod
    async def upsert_draft_request(
        self,
        *,
        tenant_id: str,
        review_id: int,
        location_id: str | None,
        identity_hash: str,
        mode: str = DRAFT_MODE,
    ) -> None:
        """Insert or reset the (review, mode) request to `queued`."""
        pass

    @abstractmethod
    async def insert_ai_job(self, request: AiJobRequest) -> int:
        """Insert a pending AI job. Raises `EnqueueConflict` if one is already in flight."""
        pass

    @abstractmethod
    async def mark_draft_error(self, review_id: int, message: str, mode: str = DRAFT_MODE) -> None:
        pass

    @abstractmethod
    async def get_brand_voice(self, tenant_id: str) -> dict[str, Any] | None:
        pass


class PostgresDraftStore(DraftStore):
    async def get_draft_run(self, tenant_id: str, location_id: str) -> datetime | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT last_run_at
                    FROM ai_draft_runs
                    WHERE tenant_id = :tenant_id AND location_id = :location_id
                    """
                ),
                {"tenant_id": tenant_id, "location_id": location_id},
            )
            return result.scalar_one_or_none()

    async def record_draft_run(
        self,
        tenant_id: str,
        location_id: str,
        *,
        last_run_at: datetime,
        requested_limit: int,
        generated_count: int,
    ) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO ai_draft_runs (
                        tenant_id, location_id, last_run_at, requested_limit, generated_count
                    ) VALUES (
                        :tenant_id, :location_id, :last_run_at, :requested_limit, :generated_count
                    )
                    ON CONFLICT (tenant_id, location_id) DO UPDATE SET
                        last_run_at = EXCLUDED.last_run_at,
                        requested_limit = EXCLUDED.requested_limit,
                        generated_count = EXCLUDED.generated_count
                    """
                ),
                {
                    "tenant_id": tenant_id,
                    "location_id": location_id,
                    "last_run_at": last_run_at,
                    "requested_limit": requested_limit,
                    "generated_count": generated_count,
                },
            )

    async def list_candidates(self, tenant_id: str, location_id: str, limit: int) -> list[DraftCandidate]:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT id, tenant_id, location_id, comment, reply_text, update_time, create_time
                    FROM reviews
                    WHERE tenant_id = :tenant_id
                      AND location_id = :location_id
                      AND status <> 'archived'
                    ORDER BY update_time DESC NULLS LAST,
                             create_time DESC NULLS LAST,
                             id DESC
                    LIMIT :limit
                    """
                ),
                {"tenant_id": tenant_id, "location_id": location_id, "limit": int(max(1, limit))},
            )
            rows = result.mappings().all()
        return [_candidate_from_row(row) for row in rows]

    async def get_review(self, tenant_id: str, review_id: int) -> DraftCandidate | None:
        async with get_db_session() as session:
            result = await session.execute(
                text(
                    """
                    SELECT id, tenant_id, location_id, comment, reply_text, update_time, create_time
                    FROM reviews
                    WHERE tenant_id = :tenant_id AND id = :review_id
                    """
                ),
                {"tenant_id": tenant_id, "review_id": review_id},
            )
            row = result.mappings().first()
        return _candidate_from_row(row) if row else None

    async def get_draft_requests(self, review_ids: list[int], mode: str = DRAFT_MODE) -> dict[int, ExistingDraft]:
        if not review_ids:
            return {}
        query = text(
            """
            SELECT review_id, status, draft_text, identity_hash
            FROM draft_requests
            WHERE mode = :mode AND review_id IN :ids
            """
        ).bindparams(bindparam("ids", expanding=True))
        async with get_db_session() as session:
            result = await session.execute(query, {"mode": mode, "ids": list(review_ids)})
            rows = result.mappings().all()
        return {
            int(row["review_id"]): ExistingDraft(
                review_id=int(row["review_id"]),
                status=row["status"],
                draft_text=row["draft_text"],
                identity_hash=row["identity_hash"] or "none",
            )
            for row in rows
        }

    async def in_flight_review_ids(self, review_ids: list[int], job_type: str = AI_JOB_TYPE) -> set[int]:
        if not review_ids:
            return set()
        query = text(
            """
            SELECT DISTINCT review_id
            FROM ai_jobs
            WHERE type = :type
              AND review_id IN :ids
              AND status IN :statuses
            """
        ).bindparams(bindparam("ids", expanding=True), bindparam("statuses", expanding=True))
        async with get_db_session() as session:
            result = await session.execute(
                query,
                {"type": job_type, "ids": list(review_ids), "statuses": list(AI_JOB_IN_FLIGHT_STATUSES)},
            )
            return {int(value) for value in result.scalars().all()}

    async def upsert_draft_request(
        self,
        *,
        tenant_id: str,
        review_id: int,
        location_id: str | None,
        identity_hash: str,
        mode: str = DRAFT_MODE,
    ) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO draft_requests (
                        tenant_id, review_id, location_id, mode, identity_hash,
                        status, created_at, updated_at
                    ) VALUES (
                        :tenant_id, :review_id, :location_id, :mode, :identity_hash,
                        'queued', NOW(), NOW()
                    )
                    ON CONFLICT (review_id, mode) DO UPDATE SET
                        location_id = COALESCE(EXCLUDED.location_id, draft_requests.location_id),
                        identity_hash = EXCLUDED.identity_hash,
                        status = 'queued',
                        last_error = NULL,
                        updated_at = NOW()
                    """
                ),
                {
                    "tenant_id": tenant_id,
                    "review_id": review_id,
                    "location_id": location_id,
                    "mode": mode,
                    "identity_hash": identity_hash,
                },
            )

    async def insert_ai_job(self, request: AiJobRequest) -> int:
        try:
            async with get_db_session() as session:
                result = await session.execute(
                    text(
                        """
                        INSERT INTO ai_jobs (
                            type, tenant_id, review_id, location_id, payload,
                            status, created_at, updated_at
                        ) VALUES (
                            :type, :tenant_id, :review_id, :location_id, CAST(:payload AS JSONB),
                            'pending', NOW(), NOW()
                        )
                        RETURNING id
                        """
                    ),
                    {
                        "type": request.type,
                        "tenant_id": request.tenant_id,
                        "review_id": request.review_id,
                        "location_id": request.location_id,
                        "payload": canonical_json(request.payload),
                    },
                )
                job_id = result.scalar_one()
        except IntegrityError as exc:
            if _is_unique_violation(exc):
                raise EnqueueConflict(meta={"review_id": request.review_id}) from exc
            raise
        return int(job_id)

    async def mark_draft_error(self, review_id: int, message: str, mode: str = DRAFT_MODE) -> None:
        async with get_db_session() as session:
            await session.execute(
                text(
                    """
                    UPDATE draft_requests
                    SET status = 'error', last_error = :message, updated_at = NOW()
                    WHERE review_id = :review_id AND mode = :mode
                    """
                ),
                {"review_id": review_id, "mode": mode, "message": message},
            )

    async def get_brand_voice(self, tenant_id: str) -> dict[str, Any] | None:
        async with get_db_session() as session:
            result = await session.execute(
                text("SELECT settings FROM brand_voice WHERE tenant_id = :tenant_id"),
                {"tenant_id": tenant_id},
            )
            value = result.scalar_one_or_none()
        return value if isinstance(value, dict) and value else None


def _candidate_from_row(row: Any) -> DraftCandidate:
    return DraftCandidate(
        id=int(row["id"]) if row["id"] is not None else None,
        tenant_id=row["tenant_id"],
        location_id=row["location_id"],
        comment=row["comment"],
        reply_text=row["reply_text"],
        update_time=row["update_time"],
        create_time=row["create_time"],
    )

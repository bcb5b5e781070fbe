"""Postgres-backed durable sync job queue."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable
from uuid import uuid4

import asyncpg
import structlog

from reviewsync.db import client as db_client
from reviewsync.kernel.time import utc_now

logger = structlog.get_logger()


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


PROVIDER_SYNC = "provider_sync"
RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class EnqueueJobRequest:
    tenant_id: str
    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    run_at: datetime | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    tenant_id: str
    type: str
    status: str
    attempts: int
    run_at: datetime
    payload: dict[str, Any]


@dataclass(frozen=True)
class JobPatch:
    """Caller-driven transition. `last_error=None` clears the column."""

    status: JobStatus
    last_error: str | None = None
    run_at: datetime | None = None


class JobQueue(ABC):
    @abstractmethod
    async def enqueue(self, request: EnqueueJobRequest) -> str:
        pass

    @abstractmethod
    async def claim(self, max_jobs: int) -> list[ClaimedJob]:
        """
        Atomically move up to `max_jobs` runnable rows to `running` and return them.

        A row is never returned to two concurrent claimers.
        """
        pass

    @abstractmethod
    async def update(self, job_id: str, patch: JobPatch) -> None:
        pass

    @abstractmethod
    async def running_tenants(self, tenant_ids: Iterable[str], *, exclude_ids: Iterable[str]) -> set[str]:
        """Tenants that already have a `running` job outside `exclude_ids`."""
        pass

    @abstractmethod
    async def requeue_stale_running(self, *, stale_after_seconds: int, limit: int = 500) -> int:
        pass

    @abstractmethod
    async def count_runnable(self) -> int:
        pass


def _row_to_job(row: Any) -> ClaimedJob:
    return ClaimedJob(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        type=row["type"],
        status=row["status"],
        attempts=int(row["attempts"] or 0),
        run_at=row["run_at"],
        payload=row["payload"] or {},
    )


class PostgresJobQueue(JobQueue):
    async def enqueue(self, request: EnqueueJobRequest) -> str:
        """
        Enqueue a durable job.

        Idempotency: if `idempotency_key` is provided, the (tenant_id, idempotency_key)
        unique constraint ensures deduplication.
        """
        job_id = str(uuid4())
        now = utc_now()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO sync_jobs (
                    id, tenant_id, type, status, payload, attempts,
                    idempotency_key, run_at, created_at, updated_at
                )
                VALUES ($1, $2, $3, 'queued', $4, 0, $5, $6, $7, $7)
                ON CONFLICT (tenant_id, idempotency_key)
                DO UPDATE SET updated_at = EXCLUDED.updated_at
                RETURNING id
                """,
                job_id,
                request.tenant_id,
                request.job_type,
                request.payload,
                request.idempotency_key,
                request.run_at or now,
                now,
            )

        # If we hit the idempotency constraint, we return the existing row's id.
        return str(row["id"]) if row else job_id

    async def claim(self, max_jobs: int) -> list[ClaimedJob]:
        """
        Claim runnable jobs with FOR UPDATE SKIP LOCKED.

        At most one job per tenant is claimed, and never for a tenant that already
        has a running job; the `sync_jobs_running_tenant_uq` partial index backs
        this up when two claimers race on the same tenant.
        """
        now = utc_now()
        limit = int(max(1, max_jobs))
        pool = await db_client.get_db_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    WITH candidates AS (
                        SELECT sj.id, sj.tenant_id, sj.run_at, sj.created_at
                        FROM sync_jobs sj
                        WHERE sj.status = 'queued'
                          AND sj.run_at <= $2
                        ORDER BY sj.run_at ASC, sj.created_at ASC
                        LIMIT $1
                        FOR UPDATE SKIP LOCKED
                    ),
                    picked AS (
                        SELECT DISTINCT ON (c.tenant_id) c.id
                        FROM candidates c
                        WHERE NOT EXISTS (
                            SELECT 1
                            FROM sync_jobs running
                            WHERE running.status = 'running'
                              AND running.tenant_id = c.tenant_id
                        )
                        ORDER BY c.tenant_id, c.run_at ASC, c.created_at ASC
                    )
                    UPDATE sync_jobs sj
                    SET status = 'running',
                        attempts = sj.attempts + 1,
                        started_at = $2,
                        updated_at = $2
                    FROM picked
                    WHERE sj.id = picked.id
                    RETURNING sj.id::text, sj.tenant_id, sj.type, sj.status,
                              sj.attempts, sj.run_at, sj.payload
                    """,
                    limit,
                    now,
                )
        except asyncpg.UniqueViolationError:
            # Another claimer took a job for one of these tenants first.
            logger.warning("Job claim lost a tenant race; nothing claimed this round")
            return []

        jobs = sorted((_row_to_job(row) for row in rows or []), key=lambda job: job.run_at)
        if jobs:
            logger.info("Claimed sync jobs", count=len(jobs))
        return jobs

    async def update(self, job_id: str, patch: JobPatch) -> None:
        now = utc_now()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE sync_jobs
                SET status = $2,
                    last_error = $3,
                    run_at = COALESCE($4::timestamptz, run_at),
                    completed_at = CASE WHEN $2 IN ('done', 'failed') THEN $5::timestamptz ELSE NULL END,
                    updated_at = $5::timestamptz
                WHERE id = $1
                """,
                job_id,
                patch.status.value,
                patch.last_error,
                patch.run_at,
                now,
            )

    async def running_tenants(self, tenant_ids: Iterable[str], *, exclude_ids: Iterable[str]) -> set[str]:
        tenants = sorted(set(tenant_ids))
        if not tenants:
            return set()
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT tenant_id
                FROM sync_jobs
                WHERE status = 'running'
                  AND tenant_id = ANY($1::text[])
                  AND NOT (id = ANY($2::text[]))
                """,
                tenants,
                sorted(set(exclude_ids)),
            )
        return {row["tenant_id"] for row in rows or []}

    async def requeue_stale_running(self, *, stale_after_seconds: int, limit: int = 500) -> int:
        """
        Requeue jobs left `running` by an invocation that died mid-job.

        Without this, a crash would hold the tenant's running slot forever.
        """
        now = utc_now()
        cutoff = now - timedelta(seconds=max(60, stale_after_seconds))
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                WITH stale AS (
                    SELECT id
                    FROM sync_jobs
                    WHERE status = 'running'
                      AND started_at < $2::timestamptz
                    ORDER BY started_at ASC
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE sync_jobs sj
                SET status = 'queued',
                    last_error = COALESCE(sj.last_error, 'Stale running job requeued'),
                    run_at = $3::timestamptz,
                    updated_at = $3::timestamptz
                FROM stale
                WHERE sj.id = stale.id
                RETURNING sj.id::text
                """,
                int(max(1, limit)),
                cutoff,
                now,
            )
        return len(rows or [])

    async def count_runnable(self) -> int:
        pool = await db_client.get_db_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT COUNT(*) FROM sync_jobs WHERE status = 'queued' AND run_at <= $1",
                utc_now(),
            )
        return int(value or 0)

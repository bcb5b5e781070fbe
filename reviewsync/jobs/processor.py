"""
Sync job processing.

Claims a batch of runnable jobs and executes them one at a time. A tenant never
has two jobs in flight: a claimed job whose tenant is already running another
one (in an earlier invocation or earlier in this batch) goes back to `queued`
with a short delay and `last_error = "rate_limited"`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

import structlog

from reviewsync.config import Settings, get_settings
from reviewsync.jobs.queue import RATE_LIMITED, ClaimedJob, JobPatch, JobQueue, JobStatus
from reviewsync.kernel.time import utc_now
from reviewsync.monitoring.metrics import jobs_processed_total

logger = structlog.get_logger()

JobHandler = Callable[[ClaimedJob], Awaitable[dict[str, Any] | None]]


@dataclass
class JobStats:
    processed: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"processed": self.processed, "failed": self.failed, "skipped": self.skipped}


class JobProcessor:
    def __init__(
        self,
        queue: JobQueue,
        handlers: dict[str, JobHandler],
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.handlers = dict(handlers)
        self.settings = settings or get_settings()
        self._clock = clock

    async def process(self, max_jobs: int | None = None) -> JobStats:
        stats = JobStats()
        limit = max_jobs or self.settings.sync_job_batch_size

        requeued = await self.queue.requeue_stale_running(
            stale_after_seconds=self.settings.job_stale_after_seconds
        )
        if requeued:
            logger.warning("Requeued stale running jobs", count=requeued)

        jobs = await self.queue.claim(limit)
        if not jobs:
            return stats

        busy = await self.queue.running_tenants(
            {job.tenant_id for job in jobs},
            exclude_ids={job.id for job in jobs},
        )
        started: set[str] = set()

        for job in jobs:
            if job.tenant_id in busy or job.tenant_id in started:
                await self._defer(job)
                stats.skipped += 1
                continue
            started.add(job.tenant_id)

            if await self._execute(job):
                stats.processed += 1
            else:
                stats.failed += 1

        logger.info("Job batch processed", claimed=len(jobs), **stats.to_dict())
        return stats

    async def _defer(self, job: ClaimedJob) -> None:
        run_at = self._clock() + timedelta(seconds=self.settings.job_rate_limit_delay_seconds)
        await self.queue.update(
            job.id,
            JobPatch(status=JobStatus.QUEUED, last_error=RATE_LIMITED, run_at=run_at),
        )
        jobs_processed_total.labels(job_type=job.type, outcome="deferred").inc()
        logger.info("Job deferred; tenant already has a job in flight", job_id=job.id, tenant_id=job.tenant_id)

    async def _execute(self, job: ClaimedJob) -> bool:
        handler = self.handlers.get(job.type)
        if handler is None:
            await self.queue.update(
                job.id,
                JobPatch(status=JobStatus.FAILED, last_error=f"Unknown job type: {job.type}"),
            )
            jobs_processed_total.labels(job_type=job.type, outcome="unknown_type").inc()
            logger.warning("Unknown job type", job_id=job.id, job_type=job.type)
            return False

        logger.info(
            "Executing job",
            job_id=job.id,
            job_type=job.type,
            tenant_id=job.tenant_id,
            attempts=job.attempts,
        )
        try:
            await handler(job)
        except Exception as exc:
            await self.queue.update(
                job.id,
                JobPatch(status=JobStatus.FAILED, last_error=str(exc) or exc.__class__.__name__),
            )
            jobs_processed_total.labels(job_type=job.type, outcome="failed").inc()
            logger.warning("Job failed", job_id=job.id, job_type=job.type, error=str(exc))
            return False

        await self.queue.update(job.id, JobPatch(status=JobStatus.DONE, last_error=None))
        jobs_processed_total.labels(job_type=job.type, outcome="done").inc()
        logger.info("Job succeeded", job_id=job.id, job_type=job.type)
        return True

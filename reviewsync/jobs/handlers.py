"""Job handlers keyed by job type."""

from __future__ import annotations

from typing import Any

import structlog

from reviewsync.jobs.processor import JobHandler
from reviewsync.jobs.queue import PROVIDER_SYNC, ClaimedJob
from reviewsync.kernel.errors import ReauthRequired
from reviewsync.sync.locations import LocationSync
from reviewsync.sync.reauth import ReauthTracker
from reviewsync.sync.repository import SyncRepository
from reviewsync.sync.reviews import LocationReviewSync

logger = structlog.get_logger()


class ProviderSyncHandler:
    """
    Full provider sync for one tenant: refresh the location list, then import
    every page of every location. Runs without the orchestrator's budget; a
    failing location is logged and does not stop the others, but a reauth
    failure fails the job.
    """

    def __init__(
        self,
        repository: SyncRepository,
        location_sync: LocationSync,
        review_sync: LocationReviewSync,
        reauth: ReauthTracker,
        *,
        location_limit: int = 1000,
    ) -> None:
        self.repository = repository
        self.location_sync = location_sync
        self.review_sync = review_sync
        self.reauth = reauth
        self.location_limit = location_limit

    async def __call__(self, job: ClaimedJob) -> dict[str, Any]:
        try:
            locations_result = await self.location_sync.sync_tenant(job.tenant_id)
            locations = await self.repository.list_locations(
                tenant_id=job.tenant_id, limit=self.location_limit
            )
            reviews = 0
            failures = 0
            for location in locations:
                try:
                    outcome = await self.review_sync.sync_location(location, phase="job")
                except ReauthRequired:
                    raise
                except Exception as exc:
                    failures += 1
                    logger.warning(
                        "Location import failed during provider sync",
                        job_id=job.id,
                        tenant_id=job.tenant_id,
                        location_id=location.id,
                        error=str(exc),
                    )
                    continue
                reviews += outcome.report.upserted
        except ReauthRequired as exc:
            await self.reauth.record(exc)
            raise

        await self.reauth.clear(job.tenant_id)
        return {
            "locations": locations_result.locations,
            "reviews_upserted": reviews,
            "location_failures": failures,
        }


def build_handlers(provider_sync: ProviderSyncHandler) -> dict[str, JobHandler]:
    return {PROVIDER_SYNC: provider_sync}

"""
Wiring for one orchestrator invocation against Postgres and the Google APIs.

Shared by the cron API route and the worker loop. A fresh `TokenManager` is
built per invocation so refreshed tokens are cached for exactly one run.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from reviewsync.config import Settings, get_settings
from reviewsync.connectors.auth.connection_store import PostgresConnectionStore
from reviewsync.connectors.auth.token_manager import TokenManager
from reviewsync.connectors.google.client import GoogleBusinessClient
from reviewsync.drafts.pipeline import DraftPreparer
from reviewsync.drafts.store import PostgresDraftStore
from reviewsync.jobs.handlers import ProviderSyncHandler, build_handlers
from reviewsync.jobs.processor import JobProcessor
from reviewsync.jobs.queue import PostgresJobQueue
from reviewsync.sync.cron_state import PostgresCronStateStore
from reviewsync.sync.locations import LocationSync
from reviewsync.sync.orchestrator import SyncOrchestrator
from reviewsync.sync.reauth import ReauthTracker
from reviewsync.sync.repository import PostgresSyncRepository
from reviewsync.sync.reviews import LocationReviewSync
from reviewsync.sync.status import PostgresStatusStore
from reviewsync.sync.upserter import ReviewUpserter


@asynccontextmanager
async def sync_orchestrator(settings: Settings | None = None) -> AsyncIterator[SyncOrchestrator]:
    settings = settings or get_settings()
    async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as http_client:
        repository = PostgresSyncRepository()
        cron_state = PostgresCronStateStore()
        status_store = PostgresStatusStore()
        queue = PostgresJobQueue()

        tokens = TokenManager(
            PostgresConnectionStore(settings.token_encryption_key),
            settings=settings,
            http_client=http_client,
        )
        client = GoogleBusinessClient(settings=settings, http_client=http_client)
        review_sync = LocationReviewSync(client, tokens, ReviewUpserter(repository), status_store)
        provider_sync = ProviderSyncHandler(
            repository,
            LocationSync(repository, client, tokens),
            review_sync,
            ReauthTracker(cron_state),
            location_limit=settings.sync_location_limit,
        )

        yield SyncOrchestrator(
            repository=repository,
            cron_state=cron_state,
            job_queue=queue,
            job_processor=JobProcessor(queue, build_handlers(provider_sync), settings=settings),
            review_sync=review_sync,
            settings=settings,
        )


def draft_preparer(settings: Settings | None = None) -> DraftPreparer:
    return DraftPreparer(PostgresDraftStore(), PostgresStatusStore(), settings=settings or get_settings())

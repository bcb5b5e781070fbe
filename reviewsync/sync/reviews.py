"""
Per-location review import.

Walks a location's review pages from a starting token, upserting each page and
keeping the location's `sync_status` import record current. With a budget the
walk stops between pages once the budget is spent and reports the token to
resume from; without one it runs until the provider has no more pages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Literal

import structlog

from reviewsync.connectors.auth.token_manager import TokenManager
from reviewsync.connectors.google.client import ProviderClient
from reviewsync.connectors.google.models import NotFound
from reviewsync.kernel.time import utc_now
from reviewsync.sync.budget import RunBudget
from reviewsync.sync.repository import LocationRef
from reviewsync.sync.status import LocationStatusTracker, StatusStore
from reviewsync.sync.upserter import ReviewUpserter, UpsertReport

logger = structlog.get_logger()

LOCATION_NOT_FOUND = "Location not found on provider."

PageCheckpoint = Callable[[str], Awaitable[None]]


@dataclass
class LocationOutcome:
    status: Literal["done", "aborted", "not_found"]
    report: UpsertReport = field(default_factory=UpsertReport)
    pages: int = 0
    next_page_token: str | None = None


class LocationReviewSync:
    def __init__(
        self,
        client: ProviderClient,
        tokens: TokenManager,
        upserter: ReviewUpserter,
        status_store: StatusStore,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self.tokens = tokens
        self.upserter = upserter
        self.status_store = status_store
        self._clock = clock

    async def sync_location(
        self,
        location: LocationRef,
        *,
        start_token: str | None = None,
        budget: RunBudget | None = None,
        phase: str = "sweep",
        on_page: PageCheckpoint | None = None,
    ) -> LocationOutcome:
        """
        Import one location's reviews.

        `on_page` is awaited with the next page token after every page that
        leaves more to fetch. Provider and auth errors close the import record
        as `error` and propagate.
        """
        tracker = LocationStatusTracker(
            self.status_store,
            location.tenant_id,
            location.location_resource_name,
            clock=self._clock,
        )
        await tracker.start()
        outcome = LocationOutcome(status="done")

        try:
            access_token = await self.tokens.get_valid_access_token(location.tenant_id)
            token = start_token
            while True:
                page = await self.client.list_reviews_page(access_token, location.parent, token)
                if isinstance(page, NotFound):
                    await tracker.finish_error(LOCATION_NOT_FOUND)
                    outcome.status = "not_found"
                    return outcome

                report = await self.upserter.upsert_reviews(
                    location.tenant_id, location, list(page.items), phase=phase
                )
                outcome.report.merge(report)
                outcome.pages += 1
                if budget is not None:
                    budget.consume(report.scanned)
                await tracker.record_page(scanned=report.scanned, upserted=report.upserted)

                if page.next_page_token is None:
                    await tracker.finish_done()
                    return outcome

                token = page.next_page_token
                if on_page is not None:
                    await on_page(token)
                if budget is not None and budget.exhausted():
                    await tracker.mark_aborted()
                    outcome.status = "aborted"
                    outcome.next_page_token = token
                    logger.info(
                        "Location import paused on budget",
                        tenant_id=location.tenant_id,
                        location_id=location.id,
                        pages=outcome.pages,
                        items=budget.items,
                    )
                    return outcome
        except Exception as exc:
            await tracker.finish_error(str(exc) or exc.__class__.__name__)
            raise

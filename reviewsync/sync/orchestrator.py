"""
Sync Orchestrator

One invocation runs:

    schedule gate -> process job queue -> priority locations -> cursor sweep -> persist cursor

bounded by a wall-clock deadline and a max-items budget. Running out of budget
stops the loop between pages or locations, checkpoints the cursor and reports
`aborted: True`; it is an expected outcome, not an error.

The priority pass visits locations with recent unreplied reviews from their
first page and never touches the durable cursor. The sweep walks locations in
ascending id after `location_cursor`, skipping any location the priority pass
already handled in this invocation. A failing location is recorded in the
error list and the cursor still moves past it. A sweep that finds nothing after
a stored cursor starts a new pass from the first location.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

import structlog

from reviewsync.config import Settings, get_settings
from reviewsync.jobs.processor import JobProcessor, JobStats
from reviewsync.jobs.queue import JobQueue
from reviewsync.kernel.errors import ReauthRequired
from reviewsync.kernel.time import isoformat_z, parse_optional_iso8601, utc_now
from reviewsync.monitoring.metrics import sync_run_duration_seconds
from reviewsync.sync.budget import RunBudget
from reviewsync.sync.cron_state import CronStateStore
from reviewsync.sync.cursor import CursorStore, SyncCursor
from reviewsync.sync.reauth import ReauthTracker
from reviewsync.sync.repository import LocationRef, SyncRepository
from reviewsync.sync.reviews import LOCATION_NOT_FOUND, LocationReviewSync

logger = structlog.get_logger()

LAST_RUN_KEY = "sync_last_run_at"


@dataclass(frozen=True)
class RunOptions:
    force: bool = False
    dry_run: bool = False
    tenant_id: str | None = None
    cursor: int | None = None


@dataclass
class RunStats:
    locations: int = 0
    reviews_scanned: int = 0
    reviews_upserted: int = 0
    replies_upserted: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def add_error(self, location: LocationRef, message: str) -> None:
        self.errors.append({"location_id": location.id, "message": message})

    def to_dict(self) -> dict[str, Any]:
        return {
            "locations": self.locations,
            "reviews_scanned": self.reviews_scanned,
            "reviews_upserted": self.reviews_upserted,
            "replies_upserted": self.replies_upserted,
            "errors": list(self.errors),
        }


@dataclass
class RunReport:
    request_id: str
    aborted: bool = False
    skipped: str | None = None
    dry_run: bool = False
    jobs: JobStats = field(default_factory=JobStats)
    stats: RunStats = field(default_factory=RunStats)
    cursor: SyncCursor | None = None
    plan: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": True,
            "request_id": self.request_id,
            "aborted": self.aborted,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "jobs": self.jobs.to_dict(),
            "stats": self.stats.to_dict(),
            "cursor": self.cursor.to_dict() if self.cursor else None,
        }
        if self.plan is not None:
            payload["plan"] = self.plan
        return payload


@dataclass
class _RunState:
    """Mutable bookkeeping for a single invocation."""

    budget: RunBudget
    report: RunReport
    cursor: SyncCursor
    persist_cursor: bool
    handled: set[int] = field(default_factory=set)
    reauth_tenants: set[str] = field(default_factory=set)
    healthy_tenants: set[str] = field(default_factory=set)


class SyncOrchestrator:
    def __init__(
        self,
        *,
        repository: SyncRepository,
        cron_state: CronStateStore,
        job_queue: JobQueue,
        job_processor: JobProcessor,
        review_sync: LocationReviewSync,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.cron_state = cron_state
        self.job_queue = job_queue
        self.job_processor = job_processor
        self.review_sync = review_sync
        self.settings = settings or get_settings()
        self.cursor_store = CursorStore(cron_state)
        self.reauth = ReauthTracker(cron_state, clock=clock)
        self._clock = clock
        self._monotonic = monotonic

    async def run(self, options: RunOptions | None = None, *, request_id: str | None = None) -> RunReport:
        options = options or RunOptions()
        request_id = request_id or str(uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        started = self._monotonic()
        report = RunReport(request_id=request_id, dry_run=options.dry_run)
        try:
            if options.dry_run:
                report.plan = await self._plan(options)
                report.cursor = await self._starting_cursor(options)
                return report

            if not options.force and await self._too_soon():
                report.skipped = "too_soon"
                logger.info("Sync skipped; last run too recent")
                return report
            await self.cron_state.put(LAST_RUN_KEY, {"at": isoformat_z(self._clock())})

            await self._execute(options, report)
            return report
        finally:
            duration = self._monotonic() - started
            if not options.dry_run and report.skipped is None:
                sync_run_duration_seconds.labels(aborted=str(report.aborted).lower()).observe(duration)
            logger.info(
                "Sync run finished",
                aborted=report.aborted,
                skipped=report.skipped,
                dry_run=options.dry_run,
                duration_seconds=round(duration, 3),
                locations=report.stats.locations,
                reviews_upserted=report.stats.reviews_upserted,
                errors=len(report.stats.errors),
            )
            structlog.contextvars.unbind_contextvars("request_id")

    async def _too_soon(self) -> bool:
        value = await self.cron_state.get(LAST_RUN_KEY)
        last_run = parse_optional_iso8601((value or {}).get("at"))
        if last_run is None:
            return False
        return self._clock() - last_run < timedelta(seconds=self.settings.sync_min_interval_seconds)

    async def _starting_cursor(self, options: RunOptions) -> SyncCursor:
        if options.cursor is not None:
            return SyncCursor(location_cursor=options.cursor)
        if options.tenant_id is not None:
            return SyncCursor()
        return await self.cursor_store.load()

    async def _execute(self, options: RunOptions, report: RunReport) -> None:
        state = _RunState(
            budget=RunBudget(
                max_seconds=self.settings.sync_max_seconds,
                max_items=self.settings.sync_max_items,
                clock=self._monotonic,
            ),
            report=report,
            cursor=await self._starting_cursor(options),
            persist_cursor=options.tenant_id is None,
        )

        report.jobs = await self.job_processor.process(self.settings.sync_job_batch_size)

        await self._priority_pass(state, options)
        if not report.aborted:
            await self._sweep(state, options)

        state.cursor = state.cursor.with_errors(len(report.stats.errors))
        await self._checkpoint(state)
        report.cursor = state.cursor

    async def _priority_pass(self, state: _RunState, options: RunOptions) -> None:
        since = self._clock() - timedelta(hours=self.settings.sync_priority_window_hours)
        locations = await self.repository.recent_unreplied_locations(
            since=since,
            limit=self.settings.sync_priority_limit,
            tenant_id=options.tenant_id,
        )
        for location in locations:
            if location.id in state.handled:
                continue
            if state.budget.exhausted():
                state.report.aborted = True
                return
            await self._process_location(state, location, in_sweep=False)
            if state.report.aborted:
                return

    async def _sweep_locations(
        self, cursor: SyncCursor, options: RunOptions
    ) -> tuple[SyncCursor, list[LocationRef]]:
        """Locations after the cursor; a stored cursor past the last location wraps to the start."""
        locations = await self.repository.list_locations(
            after_id=cursor.location_cursor,
            tenant_id=options.tenant_id,
            limit=self.settings.sync_location_limit,
        )
        if locations or cursor.location_cursor is None or options.cursor is not None:
            return cursor, locations
        logger.info("Sweep pass complete; starting over", previous_cursor=cursor.location_cursor)
        cursor = cursor.restart()
        locations = await self.repository.list_locations(
            after_id=None,
            tenant_id=options.tenant_id,
            limit=self.settings.sync_location_limit,
        )
        return cursor, locations

    async def _sweep(self, state: _RunState, options: RunOptions) -> None:
        state.cursor, locations = await self._sweep_locations(state.cursor, options)

        for location in locations:
            if location.id in state.handled:
                continue
            if state.budget.exhausted():
                state.report.aborted = True
                return
            await self._process_location(state, location, in_sweep=True)
            if state.report.aborted:
                return

    async def _process_location(self, state: _RunState, location: LocationRef, *, in_sweep: bool) -> None:
        state.handled.add(location.id)
        stats = state.report.stats

        if location.tenant_id in state.reauth_tenants:
            if in_sweep:
                await self._complete(state, location)
            return

        stats.locations += 1
        start_token = state.cursor.resume_token_for(location.id) if in_sweep else None

        async def checkpoint(page_token: str) -> None:
            state.cursor = state.cursor.with_page(location.id, page_token)
            await self._checkpoint(state)

        try:
            outcome = await self.review_sync.sync_location(
                location,
                start_token=start_token,
                budget=state.budget,
                phase="sweep" if in_sweep else "priority",
                on_page=checkpoint if in_sweep else None,
            )
        except ReauthRequired as exc:
            state.reauth_tenants.add(location.tenant_id)
            stats.add_error(location, exc.message)
            await self.reauth.record(exc)
            if in_sweep:
                await self._complete(state, location)
            return
        except Exception as exc:
            stats.add_error(location, str(exc) or exc.__class__.__name__)
            logger.warning(
                "Location sync failed; skipping",
                tenant_id=location.tenant_id,
                location_id=location.id,
                error=str(exc),
            )
            if in_sweep:
                await self._complete(state, location)
            return

        stats.reviews_scanned += outcome.report.scanned
        stats.reviews_upserted += outcome.report.upserted
        stats.replies_upserted += outcome.report.replies

        if location.tenant_id not in state.healthy_tenants:
            state.healthy_tenants.add(location.tenant_id)
            await self.reauth.clear(location.tenant_id)

        if outcome.status == "not_found":
            stats.add_error(location, LOCATION_NOT_FOUND)
            if in_sweep:
                await self._complete(state, location)
            return

        if outcome.status == "aborted":
            state.report.aborted = True
            return

        if in_sweep:
            await self._complete(state, location)

    async def _complete(self, state: _RunState, location: LocationRef) -> None:
        state.cursor = state.cursor.complete_location(location.id)
        await self._checkpoint(state)

    async def _checkpoint(self, state: _RunState) -> None:
        if state.persist_cursor:
            await self.cursor_store.save(state.cursor)

    async def _plan(self, options: RunOptions) -> dict[str, Any]:
        cursor = await self._starting_cursor(options)
        since = self._clock() - timedelta(hours=self.settings.sync_priority_window_hours)
        priority = await self.repository.recent_unreplied_locations(
            since=since,
            limit=self.settings.sync_priority_limit,
            tenant_id=options.tenant_id,
        )
        priority_ids = [location.id for location in priority]
        _, sweep = await self._sweep_locations(cursor, options)
        return {
            "jobs_runnable": await self.job_queue.count_runnable(),
            "priority_location_ids": priority_ids,
            "sweep_location_ids": [location.id for location in sweep if location.id not in set(priority_ids)],
            "max_items": self.settings.sync_max_items,
            "max_seconds": self.settings.sync_max_seconds,
        }

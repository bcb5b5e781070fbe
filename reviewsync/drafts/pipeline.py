"""
Draft Preparation Pipeline

`prepare_drafts` enqueues AI draft jobs for a location's eligible reviews,
gated by a per-(tenant, location) cooldown. `ensure_draft` does the same for a
single review on demand and ignores the cooldown.

Enqueue order is fixed: the draft request is upserted to `queued` first, then
the AI job is inserted. A uniqueness conflict on the job means one is already
in flight; any other failure moves the draft request to `error`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

import structlog

from reviewsync.config import Settings, get_settings
from reviewsync.drafts.store import DRAFT_MODE, AiJobRequest, DraftCandidate, DraftStore, ExistingDraft
from reviewsync.kernel.errors import EnqueueConflict, NotFoundError, ReviewSyncError
from reviewsync.kernel.hashing import build_identity_hash
from reviewsync.kernel.time import coerce_utc, utc_now
from reviewsync.monitoring.metrics import draft_enqueue_total
from reviewsync.sync.status import LocationStatusTracker, StatusKind, StatusStore

logger = structlog.get_logger()

ACTIVE_DRAFT_STATUSES = frozenset({"draft", "queued", "processing", "generating"})


class SkipReason(str, Enum):
    NO_COMMENT = "no_comment"
    HAS_OWNER_REPLY = "has_owner_reply"
    ALREADY_HAS_DRAFT = "already_has_draft"
    JOB_IN_PROGRESS = "job_in_progress"
    OUTSIDE_LOOKBACK = "outside_lookback"
    LIMIT_REACHED = "limit_reached"
    ENQUEUE_ERROR = "enqueue_error"
    MISSING_REVIEW_ID = "missing_review_id"


class EnsureStatus(str, Enum):
    EXISTS = "exists"
    ALREADY_RUNNING = "already_running"
    ENQUEUED = "enqueued"


@dataclass(frozen=True)
class DraftOutcome:
    review_id: int | None
    queued: bool
    skipped_reason: SkipReason | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "review_id": self.review_id,
            "status": "queued" if self.queued else "skipped",
            "skipped_reason": self.skipped_reason.value if self.skipped_reason else None,
        }


@dataclass
class PrepareResult:
    limit: int
    queued: int = 0
    skipped: int = 0
    cooldown: bool = False
    outcomes: list[DraftOutcome] = field(default_factory=list)

    def add(self, outcome: DraftOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.queued:
            self.queued += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "queued": self.queued,
            "skipped": self.skipped,
            "cooldown": self.cooldown,
            "limit": self.limit,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass(frozen=True)
class EnsureResult:
    review_id: int
    status: EnsureStatus

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "review_id": self.review_id, "status": self.status.value}


def clamp_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    """Parse `value` as an int (falling back to `default`) and clamp it."""
    try:
        parsed = int(value) if value is not None else default
    except (TypeError, ValueError):
        parsed = default
    return min(maximum, max(minimum, parsed))


def _has_text(value: str | None) -> bool:
    return bool((value or "").strip())


class DraftPreparer:
    def __init__(
        self,
        store: DraftStore,
        status_store: StatusStore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.status_store = status_store
        self.settings = settings or get_settings()
        self._clock = clock

    async def prepare_drafts(
        self,
        tenant_id: str,
        location_id: str,
        *,
        limit: Any = None,
        cooldown_minutes: Any = None,
        lookback_days: Any = None,
    ) -> PrepareResult:
        s = self.settings
        limit = clamp_int(limit, default=s.draft_default_limit, minimum=1, maximum=s.draft_max_limit)
        cooldown = clamp_int(
            cooldown_minutes,
            default=s.draft_default_cooldown_minutes,
            minimum=1,
            maximum=s.draft_max_cooldown_minutes,
        )
        lookback = clamp_int(
            lookback_days,
            default=s.draft_default_lookback_days,
            minimum=0,
            maximum=s.draft_max_lookback_days,
        )
        result = PrepareResult(limit=limit)
        now = self._clock()

        last_run = await self.store.get_draft_run(tenant_id, location_id)
        if last_run is not None and now - coerce_utc(last_run) < timedelta(minutes=cooldown):
            # The attempt is still recorded so rapid polling keeps the gate closed.
            await self.store.record_draft_run(
                tenant_id, location_id, last_run_at=now, requested_limit=limit, generated_count=0
            )
            result.cooldown = True
            draft_enqueue_total.labels(outcome="cooldown").inc()
            logger.info("Draft preparation in cooldown", tenant_id=tenant_id, location_id=location_id)
            return result

        tracker = LocationStatusTracker(
            self.status_store, tenant_id, location_id, kind=StatusKind.AI, clock=self._clock
        )
        await tracker.start()
        try:
            since = now - timedelta(days=lookback) if lookback else None
            await self._prepare(tenant_id, location_id, limit, since, result)
        except Exception as exc:
            await tracker.finish_error(str(exc) or exc.__class__.__name__)
            raise

        await tracker.record_page(scanned=len(result.outcomes), upserted=result.queued)
        errors = sum(1 for outcome in result.outcomes if outcome.skipped_reason is SkipReason.ENQUEUE_ERROR)
        if errors:
            await tracker.finish_error(f"{errors} draft job(s) failed to enqueue")
        else:
            await tracker.finish_done()

        await self.store.record_draft_run(
            tenant_id,
            location_id,
            last_run_at=self._clock(),
            requested_limit=limit,
            generated_count=result.queued,
        )
        logger.info(
            "Drafts prepared",
            tenant_id=tenant_id,
            location_id=location_id,
            queued=result.queued,
            skipped=result.skipped,
            limit=limit,
        )
        return result

    async def _prepare(
        self,
        tenant_id: str,
        location_id: str,
        limit: int,
        since: datetime | None,
        result: PrepareResult,
    ) -> None:
        candidates = await self.store.list_candidates(
            tenant_id, location_id, limit * self.settings.draft_candidate_multiplier
        )
        if not candidates:
            return

        review_ids = [candidate.id for candidate in candidates if candidate.id is not None]
        drafts = await self.store.get_draft_requests(review_ids)
        in_flight = await self.store.in_flight_review_ids(review_ids)
        identity_hash = build_identity_hash(await self.store.get_brand_voice(tenant_id))

        for candidate in candidates:
            reason = self._skip_reason(candidate, drafts, in_flight, since)
            if reason is None and result.queued >= limit:
                reason = SkipReason.LIMIT_REACHED
            if reason is not None:
                result.add(DraftOutcome(review_id=candidate.id, queued=False, skipped_reason=reason))
                continue

            outcome = await self._enqueue(candidate, identity_hash)
            result.add(outcome)

    def _skip_reason(
        self,
        candidate: DraftCandidate,
        drafts: dict[int, ExistingDraft],
        in_flight: set[int],
        since: datetime | None,
    ) -> SkipReason | None:
        if candidate.id is None:
            return SkipReason.MISSING_REVIEW_ID
        if not _has_text(candidate.comment):
            return SkipReason.NO_COMMENT
        if _has_text(candidate.reply_text):
            return SkipReason.HAS_OWNER_REPLY
        activity = candidate.activity_time
        if since is not None and activity is not None and coerce_utc(activity) < since:
            return SkipReason.OUTSIDE_LOOKBACK
        existing = drafts.get(candidate.id)
        if existing is not None and (existing.status in ACTIVE_DRAFT_STATUSES or _has_text(existing.draft_text)):
            return SkipReason.ALREADY_HAS_DRAFT
        if candidate.id in in_flight:
            return SkipReason.JOB_IN_PROGRESS
        return None

    async def _enqueue(self, candidate: DraftCandidate, identity_hash: str) -> DraftOutcome:
        review_id = candidate.id
        await self.store.upsert_draft_request(
            tenant_id=candidate.tenant_id,
            review_id=review_id,
            location_id=candidate.location_id,
            identity_hash=identity_hash,
        )
        try:
            await self.store.insert_ai_job(
                AiJobRequest(
                    tenant_id=candidate.tenant_id,
                    review_id=review_id,
                    location_id=candidate.location_id,
                    payload={
                        "review_id": review_id,
                        "location_id": candidate.location_id,
                        "tenant_id": candidate.tenant_id,
                        "identity_hash": identity_hash,
                        "mode": DRAFT_MODE,
                    },
                )
            )
        except EnqueueConflict:
            draft_enqueue_total.labels(outcome="conflict").inc()
            return DraftOutcome(review_id=review_id, queued=False, skipped_reason=SkipReason.JOB_IN_PROGRESS)
        except Exception as exc:
            await self.store.mark_draft_error(review_id, str(exc) or exc.__class__.__name__)
            draft_enqueue_total.labels(outcome="error").inc()
            logger.warning("Draft enqueue failed", review_id=review_id, error=str(exc))
            return DraftOutcome(review_id=review_id, queued=False, skipped_reason=SkipReason.ENQUEUE_ERROR)

        draft_enqueue_total.labels(outcome="queued").inc()
        return DraftOutcome(review_id=review_id, queued=True)

    async def ensure_draft(self, tenant_id: str, review_id: int, location_id: str | None = None) -> EnsureResult:
        review = await self.store.get_review(tenant_id, review_id)
        if review is None:
            raise NotFoundError(message="Review not found", meta={"review_id": review_id})

        existing = (await self.store.get_draft_requests([review_id])).get(review_id)
        if existing is not None and _has_text(existing.draft_text):
            return EnsureResult(review_id=review_id, status=EnsureStatus.EXISTS)

        if review_id in await self.store.in_flight_review_ids([review_id]):
            return EnsureResult(review_id=review_id, status=EnsureStatus.ALREADY_RUNNING)

        if location_id:
            review = replace(review, location_id=location_id)
        identity_hash = build_identity_hash(await self.store.get_brand_voice(tenant_id))
        outcome = await self._enqueue(review, identity_hash)
        if outcome.queued:
            return EnsureResult(review_id=review_id, status=EnsureStatus.ENQUEUED)
        if outcome.skipped_reason is SkipReason.JOB_IN_PROGRESS:
            return EnsureResult(review_id=review_id, status=EnsureStatus.ALREADY_RUNNING)
        raise ReviewSyncError(
            code="drafts.enqueue_failed",
            message="Failed to enqueue draft",
            status_code=500,
            meta={"review_id": review_id},
        )

"""
Review Upserter

Maps provider reviews onto `reviews` rows and writes them idempotently.

A review is skipped when its provider `updateTime` is not newer than our
`last_synced_at`, unless the provider now shows an owner reply we have not
stored: reply arrival is always captured.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog

from reviewsync.connectors.google.models import ProviderReview, map_star_rating
from reviewsync.kernel.time import parse_optional_iso8601, utc_now
from reviewsync.monitoring.metrics import reviews_upserted_total
from reviewsync.sync.repository import LocationRef, ReviewRow, StoredReviewState, SyncRepository

logger = structlog.get_logger()


@dataclass
class UpsertReport:
    scanned: int = 0
    upserted: int = 0
    unchanged: int = 0
    missing_review_id: int = 0
    replies: int = 0

    def merge(self, other: "UpsertReport") -> None:
        self.scanned += other.scanned
        self.upserted += other.upserted
        self.unchanged += other.unchanged
        self.missing_review_id += other.missing_review_id
        self.replies += other.replies


def resolve_review_identity(review: ProviderReview, location_resource_name: str) -> tuple[str, str] | None:
    """Return (provider_review_id, normalized review name), or None if neither is present."""
    name = (review.name or "").strip() or None
    raw_id = (review.review_id or "").strip() or None

    if name is None and raw_id is not None:
        name = raw_id if "/reviews/" in raw_id else f"{location_resource_name}/reviews/{raw_id}"
    if name is None:
        return None

    review_id = name.rsplit("/", 1)[-1] or None
    if review_id is None and raw_id and "/reviews/" not in raw_id:
        review_id = raw_id
    if not review_id:
        return None
    return review_id, name


def _reply_is_new(stored: StoredReviewState, reply: str | None) -> bool:
    if not reply:
        return False
    return (stored.reply_text or "").strip() != reply.strip()


def is_unchanged(stored: StoredReviewState | None, update_time: datetime | None, reply: str | None) -> bool:
    if stored is None or stored.last_synced_at is None or update_time is None:
        return False
    if update_time > stored.last_synced_at:
        return False
    return not _reply_is_new(stored, reply)


class ReviewUpserter:
    def __init__(
        self,
        repository: SyncRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self._clock = clock

    def build_row(
        self,
        tenant_id: str,
        location: LocationRef,
        review: ProviderReview,
        identity: tuple[str, str],
        synced_at: datetime,
    ) -> ReviewRow:
        provider_review_id, review_name = identity
        reply = review.reply_comment
        replied_at = None
        if reply:
            replied_at = parse_optional_iso8601(review.review_reply.update_time) or synced_at
        return ReviewRow(
            tenant_id=tenant_id,
            location_id=location.location_resource_name,
            location_name=location.display_name,
            provider_review_id=provider_review_id,
            review_name=review_name,
            author_name=review.reviewer.display_name if review.reviewer else None,
            rating=map_star_rating(review.star_rating),
            comment=review.text,
            create_time=parse_optional_iso8601(review.create_time),
            update_time=parse_optional_iso8601(review.update_time),
            reply_text=reply,
            replied_at=replied_at,
            last_synced_at=synced_at,
            raw=review.model_dump(by_alias=True, exclude_none=True),
        )

    async def upsert_reviews(
        self,
        tenant_id: str,
        location: LocationRef,
        reviews: list[ProviderReview],
        *,
        phase: str = "sweep",
    ) -> UpsertReport:
        report = UpsertReport(scanned=len(reviews))
        if not reviews:
            return report

        identities: list[tuple[ProviderReview, tuple[str, str]]] = []
        for review in reviews:
            identity = resolve_review_identity(review, location.location_resource_name)
            if identity is None:
                report.missing_review_id += 1
                continue
            identities.append((review, identity))

        stored = await self.repository.get_review_states(
            tenant_id,
            location.location_resource_name,
            [identity[0] for _, identity in identities],
        )

        synced_at = self._clock()
        for review, identity in identities:
            existing = stored.get(identity[0])
            if is_unchanged(existing, parse_optional_iso8601(review.update_time), review.reply_comment):
                report.unchanged += 1
                continue

            row = self.build_row(tenant_id, location, review, identity, synced_at)
            review_pk = await self.repository.upsert_review(row)
            report.upserted += 1

            if row.reply_text:
                await self.repository.upsert_reply(
                    tenant_id=tenant_id,
                    review_pk=review_pk,
                    location_pk=location.id,
                    business_name=location.display_name,
                    reply_text=row.reply_text,
                    sent_at=row.replied_at or synced_at,
                )
                report.replies += 1

        await self.repository.touch_location(tenant_id, location.location_resource_name, synced_at)
        if report.upserted:
            reviews_upserted_total.labels(phase=phase).inc(report.upserted)

        logger.debug(
            "Review page upserted",
            tenant_id=tenant_id,
            location_id=location.location_resource_name,
            scanned=report.scanned,
            upserted=report.upserted,
            unchanged=report.unchanged,
            replies=report.replies,
        )
        return report

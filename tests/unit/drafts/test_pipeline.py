from __future__ import annotations

from datetime import timedelta

import pytest

from reviewsync.drafts.pipeline import DraftPreparer, EnsureStatus, SkipReason, clamp_int
from reviewsync.kernel.errors import EnqueueConflict, NotFoundError, ReviewSyncError
from reviewsync.kernel.hashing import build_identity_hash
from reviewsync.sync.status import Lifecycle, StatusKind

LOCATION = "accounts/1/locations/1"


@pytest.fixture
def preparer(draft_store, status_store, settings, fake_clock):
    return DraftPreparer(draft_store, status_store, settings=settings, clock=fake_clock.now)


def _reasons(result):
    return {outcome.review_id: outcome.skipped_reason for outcome in result.outcomes}


@pytest.mark.unit
@pytest.mark.parametrize(
    "value,expected",
    [(None, 10), ("7", 7), ("abc", 10), (0, 1), (-3, 1), (100, 25)],
)
def test_clamp_int(value, expected):
    assert clamp_int(value, default=10, minimum=1, maximum=25) == expected


@pytest.mark.asyncio
async def test_eligible_review_is_queued_request_first_then_job(preparer, draft_store, fake_clock):
    review = draft_store.add_review("t1", LOCATION, update_time=fake_clock.now() - timedelta(days=1))
    draft_store.brand_voice["t1"] = {"tone": "warm"}

    result = await preparer.prepare_drafts("t1", LOCATION)

    assert (result.queued, result.skipped, result.cooldown) == (1, 0, False)
    assert draft_store.calls == [f"upsert_draft_request:{review.id}", f"insert_ai_job:{review.id}"]
    identity = build_identity_hash({"tone": "warm"})
    assert draft_store.draft_requests[(review.id, "draft")]["identity_hash"] == identity
    job = draft_store.ai_jobs[0]
    assert job["type"] == "review_draft"
    assert job["payload"] == {
        "review_id": review.id,
        "location_id": LOCATION,
        "tenant_id": "t1",
        "identity_hash": identity,
        "mode": "draft",
    }


@pytest.mark.asyncio
async def test_empty_comment_is_skipped_with_no_comment(preparer, draft_store):
    review = draft_store.add_review("t1", LOCATION, comment="   ")

    result = await preparer.prepare_drafts("t1", LOCATION)

    assert _reasons(result) == {review.id: SkipReason.NO_COMMENT}
    assert result.to_dict()["outcomes"] == [
        {"review_id": review.id, "status": "skipped", "skipped_reason": "no_comment"}
    ]
    assert draft_store.ai_jobs == []
    assert draft_store.draft_requests == {}


@pytest.mark.asyncio
async def test_skip_reasons(preparer, draft_store, fake_clock):
    now = fake_clock.now()
    replied = draft_store.add_review("t1", LOCATION, reply_text="Thanks!", update_time=now)
    old = draft_store.add_review("t1", LOCATION, update_time=now - timedelta(days=181))
    drafted = draft_store.add_review("t1", LOCATION, update_time=now)
    queued = draft_store.add_review("t1", LOCATION, update_time=now)
    running = draft_store.add_review("t1", LOCATION, update_time=now)
    undated = draft_store.add_review("t1", LOCATION, update_time=None)
    draft_store.draft_requests[(drafted.id, "draft")] = {"status": "ready", "draft_text": "Thank you"}
    draft_store.draft_requests[(queued.id, "draft")] = {"status": "queued", "draft_text": None}
    draft_store.add_ai_job(running.id, status="processing")

    result = await preparer.prepare_drafts("t1", LOCATION)

    assert _reasons(result) == {
        replied.id: SkipReason.HAS_OWNER_REPLY,
        old.id: SkipReason.OUTSIDE_LOOKBACK,
        drafted.id: SkipReason.ALREADY_HAS_DRAFT,
        queued.id: SkipReason.ALREADY_HAS_DRAFT,
        running.id: SkipReason.JOB_IN_PROGRESS,
        undated.id: None,
    }
    assert result.queued == 1


@pytest.mark.asyncio
async def test_lookback_override_widens_window(preparer, draft_store, fake_clock):
    draft_store.add_review("t1", LOCATION, update_time=fake_clock.now() - timedelta(days=400))

    result = await preparer.prepare_drafts("t1", LOCATION, lookback_days=500)

    assert result.queued == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("lookback_days", [0, "0", -5])
async def test_zero_lookback_means_no_cutoff(preparer, draft_store, fake_clock, lookback_days):
    ancient = draft_store.add_review("t1", LOCATION, update_time=fake_clock.now() - timedelta(days=4000))
    recent = draft_store.add_review("t1", LOCATION, update_time=fake_clock.now() - timedelta(days=400))

    result = await preparer.prepare_drafts("t1", LOCATION, lookback_days=lookback_days)

    assert _reasons(result) == {ancient.id: None, recent.id: None}
    assert result.queued == 2


@pytest.mark.asyncio
async def test_lookback_is_capped_at_3650_days(preparer, draft_store, fake_clock):
    old = draft_store.add_review("t1", LOCATION, update_time=fake_clock.now() - timedelta(days=4000))

    result = await preparer.prepare_drafts("t1", LOCATION, lookback_days=9999)

    assert _reasons(result) == {old.id: SkipReason.OUTSIDE_LOOKBACK}


@pytest.mark.asyncio
async def test_limit_caps_queued_and_reports_limit_reached(preparer, draft_store, fake_clock):
    for offset in range(4):
        draft_store.add_review("t1", LOCATION, update_time=fake_clock.now() - timedelta(hours=offset))

    result = await preparer.prepare_drafts("t1", LOCATION, limit=2)

    assert result.limit == 2
    assert result.queued == 2
    assert [outcome.skipped_reason for outcome in result.outcomes] == [
        None,
        None,
        SkipReason.LIMIT_REACHED,
        SkipReason.LIMIT_REACHED,
    ]


@pytest.mark.asyncio
async def test_limit_is_capped_at_25(preparer, draft_store):
    for _ in range(30):
        draft_store.add_review("t1", LOCATION)

    result = await preparer.prepare_drafts("t1", LOCATION, limit=100)

    assert result.limit == 25
    assert result.queued == 25


@pytest.mark.asyncio
async def test_second_call_inside_cooldown_is_noop_but_recorded(preparer, draft_store, fake_clock):
    draft_store.add_review("t1", LOCATION)
    await preparer.prepare_drafts("t1", LOCATION)
    draft_store.add_review("t1", LOCATION)
    fake_clock.advance(timedelta(minutes=5))

    result = await preparer.prepare_drafts("t1", LOCATION)

    assert result.to_dict()["queued"] == 0
    assert result.cooldown is True
    assert len(draft_store.ai_jobs) == 1
    run = draft_store.draft_runs[("t1", LOCATION)]
    assert run["last_run_at"] == fake_clock.now()
    assert run["generated_count"] == 0


@pytest.mark.asyncio
async def test_cooldown_elapses(preparer, draft_store, fake_clock):
    draft_store.add_review("t1", LOCATION)
    await preparer.prepare_drafts("t1", LOCATION, cooldown_minutes=1)
    draft_store.add_review("t1", LOCATION)
    fake_clock.advance(timedelta(minutes=2))

    result = await preparer.prepare_drafts("t1", LOCATION, cooldown_minutes=1)

    assert result.cooldown is False
    assert result.queued == 1


@pytest.mark.asyncio
async def test_enqueue_conflict_is_job_in_progress_and_request_left_queued(preparer, draft_store):
    review = draft_store.add_review("t1", LOCATION)
    draft_store.failing_inserts[review.id] = EnqueueConflict()

    result = await preparer.prepare_drafts("t1", LOCATION)

    assert _reasons(result) == {review.id: SkipReason.JOB_IN_PROGRESS}
    assert draft_store.draft_requests[(review.id, "draft")]["status"] == "queued"


@pytest.mark.asyncio
async def test_enqueue_failure_marks_request_error(preparer, draft_store, status_store):
    review = draft_store.add_review("t1", LOCATION)
    draft_store.failing_inserts[review.id] = RuntimeError("connection reset")

    result = await preparer.prepare_drafts("t1", LOCATION)

    assert _reasons(result) == {review.id: SkipReason.ENQUEUE_ERROR}
    request = draft_store.draft_requests[(review.id, "draft")]
    assert (request["status"], request["last_error"]) == ("error", "connection reset")
    record = await status_store.get("t1", LOCATION, StatusKind.AI)
    assert record.status is Lifecycle.ERROR


@pytest.mark.asyncio
async def test_prepare_updates_ai_status_and_draft_run(preparer, draft_store, status_store, fake_clock):
    draft_store.add_review("t1", LOCATION)
    draft_store.add_review("t1", LOCATION, comment=None)

    await preparer.prepare_drafts("t1", LOCATION, limit=5)

    record = await status_store.get("t1", LOCATION, StatusKind.AI)
    assert record.status is Lifecycle.DONE
    assert (record.scanned, record.upserted) == (2, 1)
    assert draft_store.draft_runs[("t1", LOCATION)] == {
        "last_run_at": fake_clock.now(),
        "requested_limit": 5,
        "generated_count": 1,
    }


@pytest.mark.asyncio
async def test_ensure_draft_enqueues_once(preparer, draft_store):
    review = draft_store.add_review("t1", LOCATION)

    first = await preparer.ensure_draft("t1", review.id)
    second = await preparer.ensure_draft("t1", review.id)

    assert first.status is EnsureStatus.ENQUEUED
    assert second.status is EnsureStatus.ALREADY_RUNNING
    assert len(draft_store.ai_jobs) == 1


@pytest.mark.asyncio
async def test_ensure_draft_ignores_cooldown(preparer, draft_store):
    first = draft_store.add_review("t1", LOCATION)
    await preparer.prepare_drafts("t1", LOCATION)
    review = draft_store.add_review("t1", LOCATION)

    result = await preparer.ensure_draft("t1", review.id)

    assert first.id != review.id
    assert result.status is EnsureStatus.ENQUEUED


@pytest.mark.asyncio
async def test_ensure_draft_existing_text(preparer, draft_store):
    review = draft_store.add_review("t1", LOCATION)
    draft_store.draft_requests[(review.id, "draft")] = {"status": "ready", "draft_text": "Hello"}

    result = await preparer.ensure_draft("t1", review.id)

    assert result.to_dict() == {"ok": True, "review_id": review.id, "status": "exists"}
    assert draft_store.ai_jobs == []


@pytest.mark.asyncio
async def test_ensure_draft_location_override_is_carried(preparer, draft_store):
    review = draft_store.add_review("t1", LOCATION)

    await preparer.ensure_draft("t1", review.id, "accounts/1/locations/other")

    assert draft_store.ai_jobs[0]["payload"]["location_id"] == "accounts/1/locations/other"


@pytest.mark.asyncio
async def test_ensure_draft_unknown_review(preparer, draft_store):
    draft_store.add_review("t2", LOCATION, review_id=5)

    with pytest.raises(NotFoundError):
        await preparer.ensure_draft("t1", 5)


@pytest.mark.asyncio
async def test_ensure_draft_conflict_and_failure(preparer, draft_store):
    racing = draft_store.add_review("t1", LOCATION)
    broken = draft_store.add_review("t1", LOCATION)
    draft_store.failing_inserts[racing.id] = EnqueueConflict()
    draft_store.failing_inserts[broken.id] = RuntimeError("boom")

    assert (await preparer.ensure_draft("t1", racing.id)).status is EnsureStatus.ALREADY_RUNNING
    with pytest.raises(ReviewSyncError) as exc_info:
        await preparer.ensure_draft("t1", broken.id)
    assert exc_info.value.code == "drafts.enqueue_failed"

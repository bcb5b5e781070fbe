from __future__ import annotations

from datetime import timedelta

import httpx
import pytest

from reviewsync.connectors.auth.connection_store import InMemoryConnectionStore, ProviderTokens
from reviewsync.connectors.auth.token_manager import TokenManager
from reviewsync.jobs.processor import JobProcessor
from reviewsync.kernel.errors import ProviderError
from reviewsync.sync.cursor import CURSOR_KEY, SyncCursor
from reviewsync.sync.orchestrator import LAST_RUN_KEY, RunOptions, SyncOrchestrator
from reviewsync.sync.reauth import REAUTH_KEY
from reviewsync.sync.repository import ReviewRow
from reviewsync.sync.reviews import LocationReviewSync
from reviewsync.sync.status import Lifecycle
from reviewsync.sync.upserter import ReviewUpserter
from tests.support.provider import FakeProviderClient, StaticTokens

LOC_A = "accounts/1/locations/A"
LOC_B = "accounts/1/locations/B"
LOC_C = "accounts/1/locations/C"


@pytest.fixture
def provider():
    return FakeProviderClient(page_size=40)


@pytest.fixture
def build(provider, repository, cron_state, status_store, job_queue, settings, fake_clock, fake_monotonic):
    def _build(*, tokens=None, handlers=None) -> SyncOrchestrator:
        review_sync = LocationReviewSync(
            provider,
            tokens or StaticTokens(),
            ReviewUpserter(repository, clock=fake_clock.now),
            status_store,
            clock=fake_clock.now,
        )
        return SyncOrchestrator(
            repository=repository,
            cron_state=cron_state,
            job_queue=job_queue,
            job_processor=JobProcessor(job_queue, handlers or {}, settings=settings, clock=fake_clock.now),
            review_sync=review_sync,
            settings=settings,
            clock=fake_clock.now,
            monotonic=fake_monotonic,
        )

    return _build


def _pages_fetched(provider, parent):
    return [call.page_token for call in provider.calls if call.parent == parent]


@pytest.mark.asyncio
async def test_item_budget_aborts_and_next_run_resumes_mid_location(build, provider, repository, cron_state):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)
    provider.add_reviews(LOC_A, 120)
    provider.add_reviews(LOC_B, 10)
    orchestrator = build()

    first = await orchestrator.run(RunOptions(force=True))

    assert first.aborted is True
    assert first.stats.reviews_scanned == 80
    assert _pages_fetched(provider, LOC_A) == [None, f"{LOC_A}#1"]
    assert _pages_fetched(provider, LOC_B) == []
    saved = SyncCursor.from_dict(cron_state.values[(CURSOR_KEY, "")])
    assert saved.location_cursor is None
    assert (saved.page_location_id, saved.page_token) == (a.id, f"{LOC_A}#2")

    second = await orchestrator.run(RunOptions(force=True))

    assert second.aborted is False
    assert _pages_fetched(provider, LOC_A) == [None, f"{LOC_A}#1", f"{LOC_A}#2"]
    assert _pages_fetched(provider, LOC_B) == [None]
    assert second.stats.reviews_scanned == 50
    assert len(repository.reviews) == 130
    assert SyncCursor.from_dict(cron_state.values[(CURSOR_KEY, "")]) == SyncCursor(location_cursor=b.id)


@pytest.mark.asyncio
async def test_cursor_moves_forward_across_runs_with_a_failing_location(build, provider, repository, cron_state, status_store):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)
    c = repository.add_location("t1", LOC_C)
    provider.errors[LOC_A] = ProviderError(message="HTTP 500", upstream_status=500)
    provider.missing.add(LOC_B)
    provider.add_reviews(LOC_C, 5)

    report = await build().run(RunOptions(force=True))

    assert report.aborted is False
    assert report.stats.errors == [
        {"location_id": a.id, "message": "HTTP 500"},
        {"location_id": b.id, "message": "Location not found on provider."},
    ]
    assert report.stats.reviews_upserted == 5
    assert report.cursor == SyncCursor(location_cursor=c.id, errors_count=2)
    assert (await status_store.get("t1", LOC_A)).status is Lifecycle.ERROR
    assert (await status_store.get("t1", LOC_C)).status is Lifecycle.DONE

    cursors = [
        SyncCursor.from_dict(value).location_cursor
        for key, _, value in cron_state.writes
        if key == CURSOR_KEY
    ]
    assert cursors == sorted(cursors, key=lambda value: value or 0)


@pytest.mark.asyncio
async def test_sweep_starts_a_new_pass_after_the_last_location(build, provider, repository, cron_state):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)
    provider.add_reviews(LOC_A, 2)
    provider.add_reviews(LOC_B, 2)
    orchestrator = build()

    first = await orchestrator.run(RunOptions(force=True))
    provider.add_reviews(LOC_B, 3, prefix="late")
    second = await orchestrator.run(RunOptions(force=True))
    third = await orchestrator.run(RunOptions(force=True))

    assert first.cursor.location_cursor == b.id
    assert (second.stats.locations, second.stats.reviews_scanned, second.stats.reviews_upserted) == (2, 7, 3)
    assert (third.stats.locations, third.stats.reviews_scanned, third.stats.reviews_upserted) == (2, 7, 0)
    assert _pages_fetched(provider, LOC_A) == [None, None, None]
    assert _pages_fetched(provider, LOC_B) == [None, None, None]
    assert len(repository.reviews) == 7
    assert SyncCursor.from_dict(cron_state.values[(CURSOR_KEY, "")]) == SyncCursor(location_cursor=b.id)
    assert a.id < b.id


@pytest.mark.asyncio
async def test_cursor_override_past_last_location_does_not_wrap(build, provider, repository):
    repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)

    report = await build().run(RunOptions(force=True, cursor=b.id))

    assert provider.calls == []
    assert report.stats.locations == 0


@pytest.mark.asyncio
async def test_dry_run_plan_wraps_a_finished_pass(build, repository, cron_state):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)
    await cron_state.put(CURSOR_KEY, SyncCursor(location_cursor=b.id).to_dict())

    report = await build().run(RunOptions(dry_run=True))

    assert report.plan["sweep_location_ids"] == [a.id, b.id]


@pytest.mark.asyncio
async def test_priority_locations_run_first_and_leave_cursor_alone(build, provider, repository, cron_state, fake_clock):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)
    c = repository.add_location("t1", LOC_C)
    await repository.upsert_review(
        ReviewRow(
            tenant_id="t1",
            location_id=LOC_C,
            provider_review_id="hot",
            review_name=f"{LOC_C}/reviews/hot",
            update_time=fake_clock.now() - timedelta(hours=2),
        )
    )
    for parent in (LOC_A, LOC_B, LOC_C):
        provider.add_reviews(parent, 3)

    report = await build().run(RunOptions(force=True))

    assert [call.parent for call in provider.calls] == [LOC_C, LOC_A, LOC_B]
    assert report.stats.locations == 3
    assert report.cursor.location_cursor == b.id
    assert a.id < b.id < c.id


@pytest.mark.asyncio
async def test_priority_window_excludes_old_and_replied_reviews(build, provider, repository, fake_clock):
    repository.add_location("t1", LOC_A)
    repository.add_location("t1", LOC_B)
    await repository.upsert_review(
        ReviewRow(
            tenant_id="t1",
            location_id=LOC_B,
            provider_review_id="old",
            review_name=f"{LOC_B}/reviews/old",
            update_time=fake_clock.now() - timedelta(hours=49),
        )
    )
    await repository.upsert_review(
        ReviewRow(
            tenant_id="t1",
            location_id=LOC_B,
            provider_review_id="answered",
            review_name=f"{LOC_B}/reviews/answered",
            update_time=fake_clock.now() - timedelta(hours=1),
            reply_text="Thanks",
        )
    )

    await build().run(RunOptions(force=True))

    assert [call.parent for call in provider.calls] == [LOC_A, LOC_B]


@pytest.mark.asyncio
async def test_jobs_are_processed_before_locations(build, provider, repository, job_queue):
    repository.add_location("t1", LOC_A)
    job_queue.add("t1", "provider_sync")
    seen_calls: list[int] = []

    async def handler(job):
        seen_calls.append(len(provider.calls))
        return {}

    report = await build(handlers={"provider_sync": handler}).run(RunOptions(force=True))

    assert seen_calls == [0]
    assert report.jobs.processed == 1
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_dry_run_plans_without_provider_calls_or_writes(build, provider, repository, cron_state, job_queue, fake_clock):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)
    await repository.upsert_review(
        ReviewRow(
            tenant_id="t1",
            location_id=LOC_B,
            provider_review_id="hot",
            review_name=f"{LOC_B}/reviews/hot",
            update_time=fake_clock.now() - timedelta(hours=1),
        )
    )
    writes_before = repository.review_writes
    job_queue.add("t1")

    report = await build().run(RunOptions(dry_run=True))

    assert report.dry_run is True
    assert report.plan["jobs_runnable"] == 1
    assert report.plan["priority_location_ids"] == [b.id]
    assert report.plan["sweep_location_ids"] == [a.id]
    assert provider.calls == []
    assert cron_state.writes == []
    assert repository.review_writes == writes_before
    assert job_queue.updates == []
    assert report.to_dict()["plan"]["max_items"] == 80


@pytest.mark.asyncio
async def test_runs_too_close_together_are_skipped_unless_forced(build, provider, repository, cron_state, fake_clock):
    repository.add_location("t1", LOC_A)
    orchestrator = build()

    first = await orchestrator.run()
    second = await orchestrator.run()
    forced = await orchestrator.run(RunOptions(force=True))
    fake_clock.advance(timedelta(seconds=61))
    later = await orchestrator.run()

    assert first.skipped is None
    assert second.skipped == "too_soon"
    assert second.to_dict()["skipped"] == "too_soon"
    assert forced.skipped is None
    assert later.skipped is None
    assert cron_state.values[(LAST_RUN_KEY, "")]["at"] == "2026-01-01T00:01:01Z"


@pytest.mark.asyncio
async def test_tenant_override_uses_ephemeral_cursor(build, provider, repository, cron_state):
    repository.add_location("t1", LOC_A)
    other = repository.add_location("t2", LOC_B)
    await cron_state.put(CURSOR_KEY, SyncCursor(location_cursor=99).to_dict())

    report = await build().run(RunOptions(force=True, tenant_id="t2"))

    assert [call.parent for call in provider.calls] == [LOC_B]
    assert report.cursor.location_cursor == other.id
    assert cron_state.values[(CURSOR_KEY, "")] == SyncCursor(location_cursor=99).to_dict()


@pytest.mark.asyncio
async def test_cursor_override_starts_after_given_location(build, provider, repository, cron_state):
    a = repository.add_location("t1", LOC_A)
    b = repository.add_location("t1", LOC_B)

    await build().run(RunOptions(force=True, cursor=a.id))

    assert [call.parent for call in provider.calls] == [LOC_B]
    assert SyncCursor.from_dict(cron_state.values[(CURSOR_KEY, "")]).location_cursor == b.id


@pytest.mark.asyncio
async def test_revoked_grant_stops_tenant_and_run_continues(build, provider, repository, cron_state, settings, fake_clock):
    store = InMemoryConnectionStore()
    await store.save_tokens(
        ProviderTokens(
            tenant_id="t1",
            access_token="stale",
            refresh_token="revoked",
            expires_at=fake_clock.now() + timedelta(seconds=30),
        )
    )
    await store.save_tokens(
        ProviderTokens(
            tenant_id="t2",
            access_token="fresh",
            refresh_token="ok",
            expires_at=fake_clock.now() + timedelta(hours=1),
        )
    )
    refresh_calls = 0

    def token_endpoint(request: httpx.Request) -> httpx.Response:
        nonlocal refresh_calls
        refresh_calls += 1
        return httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})

    tokens = TokenManager(
        store,
        settings=settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)),
        clock=fake_clock.now,
    )
    first = repository.add_location("t1", LOC_A)
    repository.add_location("t1", LOC_B)
    third = repository.add_location("t2", LOC_C)
    provider.add_reviews(LOC_C, 2)

    report = await build(tokens=tokens).run(RunOptions(force=True))

    assert refresh_calls == 1
    assert await store.get_connection("t1") is None
    assert report.stats.errors == [{"location_id": first.id, "message": "reauth_required: token_revoked"}]
    assert [call.parent for call in provider.calls] == [LOC_C]
    assert report.stats.reviews_upserted == 2
    assert report.cursor.location_cursor == third.id
    marker = cron_state.values[(REAUTH_KEY, "t1")]
    assert (marker["code"], marker["reason"]) == ("auth.reauth_required", "token_revoked")


@pytest.mark.asyncio
async def test_successful_location_clears_reauth_marker(build, provider, repository, cron_state):
    repository.add_location("t1", LOC_A)
    await cron_state.put(REAUTH_KEY, {"code": "auth.reauth_required"}, tenant_id="t1")

    await build().run(RunOptions(force=True))

    assert (REAUTH_KEY, "t1") not in cron_state.values


@pytest.mark.asyncio
async def test_time_budget_stops_before_next_location(build, provider, repository, fake_monotonic):
    repository.add_location("t1", LOC_A)
    repository.add_location("t1", LOC_B)
    orchestrator = build()

    original = orchestrator.review_sync.sync_location

    async def slow_sync(location, **kwargs):
        outcome = await original(location, **kwargs)
        fake_monotonic.advance(30)
        return outcome

    orchestrator.review_sync.sync_location = slow_sync

    report = await orchestrator.run(RunOptions(force=True))

    assert report.aborted is True
    assert [call.parent for call in provider.calls] == [LOC_A]
    assert report.to_dict()["aborted"] is True

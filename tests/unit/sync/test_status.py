from __future__ import annotations

from datetime import timedelta

import pytest

from reviewsync.sync.status import (
    IllegalTransition,
    Lifecycle,
    LocationStatusTracker,
    StatusKind,
    StatusRecord,
)


@pytest.mark.unit
def test_idle_cannot_jump_to_done():
    with pytest.raises(IllegalTransition):
        StatusRecord(tenant_id="t1", location_id="loc").transition(Lifecycle.DONE)


@pytest.mark.unit
def test_transition_bumps_version():
    record = StatusRecord(tenant_id="t1", location_id="loc").transition(Lifecycle.RUNNING)
    assert record.status is Lifecycle.RUNNING
    assert record.version == 1


@pytest.mark.asyncio
async def test_tracker_counts_pages_and_finishes_done_once(status_store, fake_clock):
    tracker = LocationStatusTracker(status_store, "t1", "loc", clock=fake_clock.now)

    await tracker.start()
    await tracker.record_page(scanned=10, upserted=4)
    await tracker.record_page(scanned=0, upserted=0)
    await tracker.record_page(scanned=5, upserted=5)
    fake_clock.advance(timedelta(seconds=3))
    await tracker.finish_done()
    await tracker.finish_error("late failure")

    record = await status_store.get("t1", "loc")
    assert record.status is Lifecycle.DONE
    assert (record.scanned, record.upserted) == (15, 9)
    assert record.pages_exhausted is True
    assert record.last_error is None
    assert record.last_run_at == fake_clock.now()
    assert [r.status for r in status_store.history] == [
        Lifecycle.RUNNING,
        Lifecycle.RUNNING,
        Lifecycle.RUNNING,
        Lifecycle.DONE,
    ]


@pytest.mark.asyncio
async def test_tracker_error_keeps_counters(status_store, fake_clock):
    tracker = LocationStatusTracker(status_store, "t1", "loc", clock=fake_clock.now)
    await tracker.start()
    await tracker.record_page(scanned=3, upserted=2)
    await tracker.finish_error("Location not found on provider.")

    record = await status_store.get("t1", "loc")
    assert record.status is Lifecycle.ERROR
    assert record.last_error == "Location not found on provider."
    assert (record.scanned, record.upserted, record.errors_count) == (3, 2, 1)


@pytest.mark.asyncio
async def test_next_run_resets_counters_and_error(status_store, fake_clock):
    first = LocationStatusTracker(status_store, "t1", "loc", clock=fake_clock.now)
    await first.start()
    await first.finish_error("boom")

    second = LocationStatusTracker(status_store, "t1", "loc", clock=fake_clock.now)
    await second.start()

    record = await status_store.get("t1", "loc")
    assert record.status is Lifecycle.RUNNING
    assert record.last_error is None
    assert record.scanned == 0


@pytest.mark.asyncio
async def test_aborted_run_stays_running(status_store, fake_clock):
    tracker = LocationStatusTracker(status_store, "t1", "loc", clock=fake_clock.now)
    await tracker.start()
    await tracker.record_page(scanned=40, upserted=40)
    await tracker.mark_aborted()
    await tracker.finish_done()

    record = await status_store.get("t1", "loc")
    assert record.status is Lifecycle.RUNNING
    assert record.aborted is True


@pytest.mark.asyncio
async def test_stale_write_is_rejected(status_store):
    newer = StatusRecord(tenant_id="t1", location_id="loc", status=Lifecycle.DONE, version=5)
    assert await status_store.put(newer) is True

    stale = StatusRecord(tenant_id="t1", location_id="loc", status=Lifecycle.RUNNING, version=4)
    assert await status_store.put(stale) is False
    assert (await status_store.get("t1", "loc")).status is Lifecycle.DONE


@pytest.mark.asyncio
async def test_ai_and_import_records_are_independent(status_store, fake_clock):
    ai = LocationStatusTracker(status_store, "t1", "loc", kind=StatusKind.AI, clock=fake_clock.now)
    await ai.start()

    assert await status_store.get("t1", "loc", StatusKind.AI) is not None
    assert await status_store.get("t1", "loc") is None

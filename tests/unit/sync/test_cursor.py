from __future__ import annotations

import pytest

from reviewsync.sync.cursor import CURSOR_KEY, CursorStore, SyncCursor


@pytest.mark.unit
def test_from_dict_tolerates_garbage():
    cursor = SyncCursor.from_dict({"location_cursor": "12", "page_token": "", "page_location_id": True, "errors_count": "x"})
    assert cursor == SyncCursor(location_cursor=12)


@pytest.mark.unit
def test_resume_token_only_for_issuing_location():
    cursor = SyncCursor(location_cursor=3).with_page(5, "tok")

    assert cursor.resume_token_for(5) == "tok"
    assert cursor.resume_token_for(6) is None
    assert cursor.location_cursor == 3


@pytest.mark.unit
def test_complete_location_clears_page_and_never_regresses():
    cursor = SyncCursor().with_page(5, "tok").complete_location(5)
    assert cursor == SyncCursor(location_cursor=5)

    assert cursor.complete_location(2).location_cursor == 5


@pytest.mark.asyncio
async def test_store_roundtrip(cron_state):
    store = CursorStore(cron_state)
    assert await store.load() == SyncCursor()

    await store.save(SyncCursor(location_cursor=4, page_token="p", page_location_id=7, errors_count=1))

    assert cron_state.values[(CURSOR_KEY, "")]["page_token"] == "p"
    assert await store.load() == SyncCursor(location_cursor=4, page_token="p", page_location_id=7, errors_count=1)

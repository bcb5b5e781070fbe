from __future__ import annotations

from datetime import timedelta

import pytest

from reviewsync.connectors.google.models import ProviderReview
from reviewsync.sync.upserter import ReviewUpserter, resolve_review_identity
from tests.support.provider import make_review

LOCATION = "accounts/1/locations/1"


@pytest.fixture
def location(repository):
    return repository.add_location("t1", LOCATION, title="Downtown")


@pytest.fixture
def upserter(repository, fake_clock):
    return ReviewUpserter(repository, clock=fake_clock.now)


@pytest.mark.unit
@pytest.mark.parametrize(
    "raw,expected",
    [
        ({"reviewId": "abc"}, ("abc", f"{LOCATION}/reviews/abc")),
        ({"name": f"{LOCATION}/reviews/xyz"}, ("xyz", f"{LOCATION}/reviews/xyz")),
        ({"reviewId": f"{LOCATION}/reviews/q"}, ("q", f"{LOCATION}/reviews/q")),
        ({}, None),
        ({"reviewId": "  "}, None),
    ],
)
def test_resolve_review_identity(raw, expected):
    assert resolve_review_identity(ProviderReview.model_validate(raw), LOCATION) == expected


@pytest.mark.asyncio
async def test_same_page_twice_is_idempotent(repository, upserter, location):
    page = [make_review("r1", location=LOCATION), make_review("r2", location=LOCATION)]

    first = await upserter.upsert_reviews("t1", location, page)
    snapshot = {key: dict(row) for key, row in repository.reviews.items()}
    second = await upserter.upsert_reviews("t1", location, page)

    assert first.upserted == 2
    assert second.upserted == 0
    assert second.unchanged == 2
    assert len(repository.reviews) == 2
    assert {key: dict(row) for key, row in repository.reviews.items()} == snapshot


@pytest.mark.asyncio
async def test_newer_update_time_is_written(repository, upserter, location, fake_clock):
    await upserter.upsert_reviews("t1", location, [make_review("r1", location=LOCATION, comment="ok")])

    later = (fake_clock.now() + timedelta(hours=1)).isoformat().replace("+00:00", "Z")
    fake_clock.advance(timedelta(hours=2))
    report = await upserter.upsert_reviews(
        "t1", location, [make_review("r1", location=LOCATION, comment="edited", update_time=later)]
    )

    assert report.upserted == 1
    assert repository.review("t1", LOCATION, "r1")["comment"] == "edited"


@pytest.mark.asyncio
async def test_reply_arrival_is_captured_even_when_not_newer(repository, upserter, location):
    await upserter.upsert_reviews("t1", location, [make_review("r1", location=LOCATION)])
    assert repository.review("t1", LOCATION, "r1")["status"] == "new"

    report = await upserter.upsert_reviews(
        "t1", location, [make_review("r1", location=LOCATION, reply="Thank you!")]
    )

    stored = repository.review("t1", LOCATION, "r1")
    assert report.upserted == 1
    assert report.replies == 1
    assert stored["reply_text"] == "Thank you!"
    assert stored["status"] == "replied"
    assert repository.replies[(stored["id"], "google")]["reply_text"] == "Thank you!"


@pytest.mark.asyncio
async def test_star_ratings_map_and_unknown_is_null(repository, upserter, location):
    page = [
        make_review("r1", location=LOCATION, star_rating="THREE"),
        make_review("r2", location=LOCATION, star_rating="STAR_RATING_UNSPECIFIED"),
        make_review("r3", location=LOCATION, star_rating=None),
    ]
    await upserter.upsert_reviews("t1", location, page)

    assert repository.review("t1", LOCATION, "r1")["rating"] == 3
    assert repository.review("t1", LOCATION, "r2")["rating"] is None
    assert repository.review("t1", LOCATION, "r3")["rating"] is None


@pytest.mark.asyncio
async def test_reviews_without_identity_are_counted_not_written(repository, upserter, location):
    page = [ProviderReview.model_validate({"comment": "anonymous"}), make_review("r1", location=LOCATION)]

    report = await upserter.upsert_reviews("t1", location, page)

    assert report.scanned == 2
    assert report.missing_review_id == 1
    assert report.upserted == 1


@pytest.mark.asyncio
async def test_original_text_preferred_over_comment(repository, upserter, location):
    review = ProviderReview.model_validate(
        {"reviewId": "r1", "comment": "(Translated) Great", "originalText": {"text": "Genial"}}
    )
    await upserter.upsert_reviews("t1", location, [review])

    assert repository.review("t1", LOCATION, "r1")["comment"] == "Genial"


@pytest.mark.asyncio
async def test_empty_page_writes_nothing(repository, upserter, location):
    report = await upserter.upsert_reviews("t1", location, [])

    assert report.scanned == 0
    assert repository.review_writes == 0
    assert repository.location_synced_at == {}

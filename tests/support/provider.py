from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from reviewsync.connectors.google.client import ProviderClient
from reviewsync.connectors.google.models import (
    NotFound,
    ProviderAccount,
    ProviderLocation,
    ProviderReview,
    ReviewPage,
)


def make_review(
    review_id: str,
    *,
    location: str = "accounts/1/locations/1",
    update_time: str = "2025-12-01T00:00:00Z",
    comment: str | None = "Lovely place",
    star_rating: str | None = "FIVE",
    reply: str | None = None,
) -> ProviderReview:
    raw: dict[str, Any] = {
        "name": f"{location}/reviews/{review_id}",
        "reviewId": review_id,
        "starRating": star_rating,
        "createTime": update_time,
        "updateTime": update_time,
        "reviewer": {"displayName": f"Reviewer {review_id}"},
    }
    if comment is not None:
        raw["comment"] = comment
    if reply is not None:
        raw["reviewReply"] = {"comment": reply, "updateTime": update_time}
    return ProviderReview.model_validate(raw)


@dataclass
class PageCall:
    parent: str
    page_token: str | None


@dataclass
class FakeProviderClient(ProviderClient):
    """
    Scripted provider. Reviews registered per parent path are served in pages
    of `page_size` with tokens `"<parent>#<n>"`.
    """

    page_size: int = 40
    reviews: dict[str, list[ProviderReview]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    missing: set[str] = field(default_factory=set)
    accounts: list[ProviderAccount] = field(default_factory=list)
    account_locations: dict[str, list[ProviderLocation]] = field(default_factory=dict)
    account_errors: Exception | None = None
    calls: list[PageCall] = field(default_factory=list)

    def add_reviews(self, parent: str, count: int, *, prefix: str = "r", **kwargs: Any) -> list[ProviderReview]:
        items = [make_review(f"{prefix}{n}", location=parent, **kwargs) for n in range(1, count + 1)]
        self.reviews.setdefault(parent, []).extend(items)
        return items

    async def list_reviews_page(
        self,
        access_token: str,
        parent: str,
        page_token: str | None = None,
    ) -> ReviewPage | NotFound:
        self.calls.append(PageCall(parent=parent, page_token=page_token))
        if parent in self.errors:
            raise self.errors[parent]
        if parent in self.missing:
            return NotFound(resource=parent)

        index = int(page_token.rsplit("#", 1)[-1]) if page_token else 0
        items = self.reviews.get(parent, [])
        start = index * self.page_size
        chunk = items[start:start + self.page_size]
        has_more = start + self.page_size < len(items)
        return ReviewPage(items=chunk, next_page_token=f"{parent}#{index + 1}" if has_more else None)

    async def list_accounts(self, access_token: str) -> list[ProviderAccount]:
        if self.account_errors is not None:
            raise self.account_errors
        return list(self.accounts)

    async def list_locations(self, access_token: str, account_name: str) -> list[ProviderLocation] | NotFound:
        if account_name not in self.account_locations:
            return NotFound(resource=account_name)
        return list(self.account_locations[account_name])


class StaticTokens:
    """Token source that always returns the same access token."""

    def __init__(self, token: str = "access-token") -> None:
        self.token = token
        self.requests: list[str] = []

    async def get_valid_access_token(self, tenant_id: str) -> str:
        self.requests.append(tenant_id)
        return self.token

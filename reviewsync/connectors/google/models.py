"""Provider payload models for the Business Profile APIs."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

STAR_RATINGS: dict[str, int] = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}


def map_star_rating(value: str | None) -> int | None:
    """ONE..FIVE -> 1..5; anything else (incl. STAR_RATING_UNSPECIFIED) -> None."""
    if not value:
        return None
    return STAR_RATINGS.get(value.strip().upper())


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Reviewer(_ProviderModel):
    display_name: str | None = Field(default=None, alias="displayName")


class ReviewReply(_ProviderModel):
    comment: str | None = None
    update_time: str | None = Field(default=None, alias="updateTime")


class OriginalText(_ProviderModel):
    text: str | None = None


class ProviderReview(_ProviderModel):
    name: str | None = None
    review_id: str | None = Field(default=None, alias="reviewId")
    reviewer: Reviewer | None = None
    star_rating: str | None = Field(default=None, alias="starRating")
    comment: str | None = None
    original_text: OriginalText | None = Field(default=None, alias="originalText")
    create_time: str | None = Field(default=None, alias="createTime")
    update_time: str | None = Field(default=None, alias="updateTime")
    review_reply: ReviewReply | None = Field(default=None, alias="reviewReply")

    @property
    def text(self) -> str | None:
        if self.original_text and isinstance(self.original_text.text, str):
            return self.original_text.text
        return self.comment

    @property
    def reply_comment(self) -> str | None:
        if self.review_reply and self.review_reply.comment and self.review_reply.comment.strip():
            return self.review_reply.comment
        return None


class LatLng(_ProviderModel):
    latitude: float | None = None
    longitude: float | None = None


class ProviderAccount(_ProviderModel):
    name: str
    account_name: str | None = Field(default=None, alias="accountName")


class ProviderLocation(_ProviderModel):
    name: str
    title: str | None = None
    latlng: LatLng | None = None


@dataclass(frozen=True)
class ReviewPage:
    items: list[ProviderReview] = field(default_factory=list)
    next_page_token: str | None = None


@dataclass(frozen=True)
class NotFound:
    """The referenced resource no longer exists upstream."""

    resource: str

"""Business Profile API client and payload models."""

from reviewsync.connectors.google.client import GoogleBusinessClient, ProviderClient
from reviewsync.connectors.google.models import (
    NotFound,
    ProviderAccount,
    ProviderLocation,
    ProviderReview,
    ReviewPage,
    map_star_rating,
)

__all__ = [
    "GoogleBusinessClient",
    "NotFound",
    "ProviderAccount",
    "ProviderClient",
    "ProviderLocation",
    "ProviderReview",
    "ReviewPage",
    "map_star_rating",
]

"""Database models."""

from reviewsync.db.models.base import Base
from reviewsync.db.models.core import (
    CronState,
    Location,
    LocationSyncRun,
    ProviderConnection,
    Review,
    ReviewReply,
    SyncStatus,
)
from reviewsync.db.models.drafts import BrandVoice, DraftRequest, DraftRun
from reviewsync.db.models.jobs import AI_JOB_IN_FLIGHT_STATUSES, AiJob, SyncJob

__all__ = [
    "AI_JOB_IN_FLIGHT_STATUSES",
    "AiJob",
    "Base",
    "BrandVoice",
    "CronState",
    "DraftRequest",
    "DraftRun",
    "Location",
    "LocationSyncRun",
    "ProviderConnection",
    "Review",
    "ReviewReply",
    "SyncJob",
    "SyncStatus",
]

"""AI draft preparation."""

from reviewsync.drafts.pipeline import DraftPreparer, EnsureStatus, SkipReason
from reviewsync.drafts.store import DraftStore, PostgresDraftStore

__all__ = ["DraftPreparer", "DraftStore", "EnsureStatus", "PostgresDraftStore", "SkipReason"]

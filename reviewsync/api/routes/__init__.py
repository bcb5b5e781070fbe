"""API route modules."""

from reviewsync.api.routes import cron, drafts, health

__all__ = ["cron", "drafts", "health"]

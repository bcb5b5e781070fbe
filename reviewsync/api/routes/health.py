"""Health check endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter

from reviewsync import __version__

router = APIRouter()

_startup_time = datetime.now(timezone.utc)


@router.get("/health")
async def health_check():
    """Returns 200 while the process is up."""
    now = datetime.now(timezone.utc)
    return {
        "status": "healthy",
        "service": "reviewsync",
        "version": __version__,
        "timestamp": now.isoformat(),
        "uptime_seconds": (now - _startup_time).total_seconds(),
    }

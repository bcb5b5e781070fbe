"""Logging and Prometheus metrics."""

from reviewsync.monitoring.logging import configure_logging
from reviewsync.monitoring.metrics import (
    draft_enqueue_total,
    jobs_processed_total,
    provider_http_retries_total,
    reviews_upserted_total,
    sync_run_duration_seconds,
)

__all__ = [
    "configure_logging",
    "draft_enqueue_total",
    "jobs_processed_total",
    "provider_http_retries_total",
    "reviews_upserted_total",
    "sync_run_duration_seconds",
]

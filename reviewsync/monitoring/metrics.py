"""
Prometheus Metrics

Process-wide collectors for the sync engine, job queue and draft pipeline.
Exposed by the API under /metrics.
"""

from prometheus_client import Counter, Histogram

provider_http_retries_total = Counter(
    "reviewsync_provider_http_retries_total",
    "Total provider HTTP retries by operation and reason",
    ["operation", "reason", "status_code"],
)

jobs_processed_total = Counter(
    "reviewsync_jobs_processed_total",
    "Sync jobs handled by the queue processor",
    ["job_type", "outcome"],
)

reviews_upserted_total = Counter(
    "reviewsync_reviews_upserted_total",
    "Reviews written by the upserter",
    ["phase"],
)

draft_enqueue_total = Counter(
    "reviewsync_draft_enqueue_total",
    "Draft preparation outcomes",
    ["outcome"],
)

sync_run_duration_seconds = Histogram(
    "reviewsync_sync_run_duration_seconds",
    "Orchestrator invocation duration in seconds",
    ["aborted"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0, 60.0],
)

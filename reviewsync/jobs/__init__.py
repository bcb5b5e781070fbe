"""Durable sync job queue and its processor."""

from reviewsync.jobs.processor import JobProcessor, JobStats
from reviewsync.jobs.queue import (
    PROVIDER_SYNC,
    ClaimedJob,
    EnqueueJobRequest,
    JobPatch,
    JobQueue,
    JobStatus,
    PostgresJobQueue,
)

__all__ = [
    "PROVIDER_SYNC",
    "ClaimedJob",
    "EnqueueJobRequest",
    "JobPatch",
    "JobProcessor",
    "JobQueue",
    "JobStats",
    "JobStatus",
    "PostgresJobQueue",
]

"""Durable sync job queue and AI job models."""

from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, String, Text, UniqueConstraint, text

from reviewsync.db.models.base import Base

AI_JOB_IN_FLIGHT_STATUSES = ("pending", "queued", "processing", "generating")


class SyncJob(Base):
    __tablename__ = "sync_jobs"

    id = Column(Text, primary_key=True, default=lambda: str(uuid4()))
    tenant_id = Column(String(100), nullable=False, index=True)

    type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, index=True)  # queued, running, done, failed
    payload = Column(JSON, nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    idempotency_key = Column(Text, nullable=True)

    run_at = Column(DateTime(timezone=True), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="sync_jobs_tenant_idempotency_uq"),
        Index("sync_jobs_claim_idx", "status", "run_at", "created_at"),
        # At most one running job per tenant, enforced by storage.
        Index(
            "sync_jobs_running_tenant_uq",
            "tenant_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
        ),
    )


class AiJob(Base):
    """Work item for the external draft generator."""

    __tablename__ = "ai_jobs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    type = Column(String(50), nullable=False)
    tenant_id = Column(String(100), nullable=False, index=True)
    review_id = Column(BigInteger, nullable=False)
    location_id = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default="pending")
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index(
            "ai_jobs_in_flight_uq",
            "type",
            "review_id",
            unique=True,
            postgresql_where=text(
                "status IN ('pending', 'queued', 'processing', 'generating')"
            ),
        ),
    )

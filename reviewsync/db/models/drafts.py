"""Draft request, draft run and brand-voice models."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Integer, PrimaryKeyConstraint, String, Text, UniqueConstraint

from reviewsync.db.models.base import Base


class DraftRequest(Base):
    __tablename__ = "draft_requests"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    review_id = Column(BigInteger, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False)
    location_id = Column(String(255), nullable=True)
    mode = Column(String(20), nullable=False, default="draft")
    identity_hash = Column(String(64), nullable=False, default="none")
    status = Column(String(20), nullable=False, default="queued")  # queued, processing, generating, draft, error
    draft_text = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("review_id", "mode", name="draft_requests_review_mode_uq"),
    )


class DraftRun(Base):
    """Last batch preparation per (tenant, location); gates the cooldown."""

    __tablename__ = "ai_draft_runs"

    tenant_id = Column(String(100), nullable=False)
    location_id = Column(String(255), nullable=False)
    last_run_at = Column(DateTime(timezone=True), nullable=False)
    requested_limit = Column(Integer, nullable=False, default=0)
    generated_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "location_id", name="ai_draft_runs_pk"),
    )


class BrandVoice(Base):
    __tablename__ = "brand_voice"

    tenant_id = Column(String(100), primary_key=True)
    settings = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

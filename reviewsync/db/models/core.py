"""
Sync Database Models

Provider connections, synced locations and reviews, reply history, and the
small state tables the sync engine checkpoints into.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)

from reviewsync.db.models.base import Base


class ProviderConnection(Base):
    """OAuth grant for one tenant and provider. Deleted when the grant is revoked."""

    __tablename__ = "provider_connections"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="google")

    access_token_encrypted = Column(LargeBinary, nullable=True)
    refresh_token_encrypted = Column(LargeBinary, nullable=True)
    token_type = Column(String(30), nullable=True)
    scope = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="provider_connections_tenant_provider_uq"),
    )


class Location(Base):
    __tablename__ = "locations"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    account_resource_name = Column(String(255), nullable=False)
    location_resource_name = Column(String(255), nullable=False)
    title = Column(String(500), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "location_resource_name", name="locations_tenant_resource_uq"),
    )


class Review(Base):
    """Provider review. Never hard-deleted by sync; only status moves."""

    __tablename__ = "reviews"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    location_id = Column(String(255), nullable=False, index=True)  # location resource name
    location_name = Column(String(500), nullable=True)
    provider_review_id = Column(String(255), nullable=False)
    review_name = Column(String(500), nullable=True)

    author_name = Column(String(255), nullable=True)
    rating = Column(Integer, nullable=True)  # 1..5, NULL when the provider enum is unknown
    comment = Column(Text, nullable=True)
    create_time = Column(DateTime(timezone=True), nullable=True)
    update_time = Column(DateTime(timezone=True), nullable=True, index=True)

    reply_text = Column(Text, nullable=True)
    replied_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, default="new")  # new, reading, replied, archived

    raw = Column(JSON, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "location_id",
            "provider_review_id",
            name="reviews_tenant_location_review_uq",
        ),
    )


class ReviewReply(Base):
    __tablename__ = "review_replies"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    review_id = Column(BigInteger, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False)
    location_pk = Column(BigInteger, nullable=True)
    source = Column(String(30), nullable=False, default="google")
    business_name = Column(String(500), nullable=True)
    reply_text = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="sent")
    sent_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("review_id", "source", name="review_replies_review_source_uq"),
    )


class CronState(Base):
    """Keyed JSON checkpoints. Global rows use an empty tenant id."""

    __tablename__ = "cron_state"

    key = Column(String(200), nullable=False)
    tenant_id = Column(String(100), nullable=False, default="")
    value = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (PrimaryKeyConstraint("key", "tenant_id", name="cron_state_pk"),)


class SyncStatus(Base):
    """Per (tenant, location, kind) lifecycle record; overwritten on each transition."""

    __tablename__ = "sync_status"

    tenant_id = Column(String(100), nullable=False)
    location_id = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)  # import, ai
    status = Column(String(20), nullable=False, default="idle")
    version = Column(Integer, nullable=False, default=0)
    last_run_at = Column(DateTime(timezone=True), nullable=True)
    scanned = Column(Integer, nullable=False, default=0)
    upserted = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    aborted = Column(Boolean, nullable=False, default=False)
    pages_exhausted = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "location_id", "kind", name="sync_status_pk"),
    )


class LocationSyncRun(Base):
    __tablename__ = "location_sync_runs"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    tenant_id = Column(String(100), nullable=False, index=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, default="running")  # running, ok, partial, error
    accounts_count = Column(Integer, nullable=False, default=0)
    locations_count = Column(Integer, nullable=False, default=0)
    upserted_count = Column(Integer, nullable=False, default=0)
    failures = Column(JSON, nullable=False, default=list)

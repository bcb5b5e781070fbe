"""Create sync engine, job queue and draft pipeline tables.

Revision ID: 001_create_sync_tables
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001_create_sync_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Provider connections (one per tenant + provider)
    # ==========================================================================
    op.create_table(
        "provider_connections",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("provider", sa.String(50), nullable=False, server_default="google"),
        sa.Column("access_token_encrypted", sa.LargeBinary, nullable=True),
        sa.Column("refresh_token_encrypted", sa.LargeBinary, nullable=True),
        sa.Column("token_type", sa.String(30), nullable=True),
        sa.Column("scope", sa.Text, nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "provider", name="provider_connections_tenant_provider_uq"),
    )

    # ==========================================================================
    # Locations and reviews
    # ==========================================================================
    op.create_table(
        "locations",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("account_resource_name", sa.String(255), nullable=False),
        sa.Column("location_resource_name", sa.String(255), nullable=False),
        sa.Column("title", sa.String(500), nullable=True),
        sa.Column("latitude", sa.Float, nullable=True),
        sa.Column("longitude", sa.Float, nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "location_resource_name", name="locations_tenant_resource_uq"),
    )
    op.create_index("idx_locations_tenant", "locations", ["tenant_id"])

    op.create_table(
        "reviews",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("location_id", sa.String(255), nullable=False),
        sa.Column("location_name", sa.String(500), nullable=True),
        sa.Column("provider_review_id", sa.String(255), nullable=False),
        sa.Column("review_name", sa.String(500), nullable=True),
        sa.Column("author_name", sa.String(255), nullable=True),
        sa.Column("rating", sa.Integer, nullable=True),
        sa.Column("comment", sa.Text, nullable=True),
        sa.Column("create_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("update_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reply_text", sa.Text, nullable=True),
        sa.Column("replied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="new"),
        sa.Column("raw", JSONB, nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "tenant_id",
            "location_id",
            "provider_review_id",
            name="reviews_tenant_location_review_uq",
        ),
        sa.CheckConstraint(
            "status IN ('new', 'reading', 'replied', 'archived')",
            name="reviews_status_check",
        ),
        sa.CheckConstraint("rating IS NULL OR rating BETWEEN 1 AND 5", name="reviews_rating_check"),
    )
    op.create_index("idx_reviews_tenant_location", "reviews", ["tenant_id", "location_id"])
    op.create_index("idx_reviews_update_time", "reviews", ["update_time"])

    op.create_table(
        "review_replies",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("review_id", sa.BigInteger, sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("location_pk", sa.BigInteger, nullable=True),
        sa.Column("source", sa.String(30), nullable=False, server_default="google"),
        sa.Column("business_name", sa.String(500), nullable=True),
        sa.Column("reply_text", sa.Text, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="sent"),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("review_id", "source", name="review_replies_review_source_uq"),
    )

    # ==========================================================================
    # Sync state
    # ==========================================================================
    op.create_table(
        "cron_state",
        sa.Column("key", sa.String(200), nullable=False),
        sa.Column("tenant_id", sa.String(100), nullable=False, server_default=""),
        sa.Column("value", JSONB, nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("key", "tenant_id", name="cron_state_pk"),
    )

    op.create_table(
        "sync_status",
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("location_id", sa.String(255), nullable=False),
        sa.Column("kind", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="idle"),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("scanned", sa.Integer, nullable=False, server_default="0"),
        sa.Column("upserted", sa.Integer, nullable=False, server_default="0"),
        sa.Column("errors_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("aborted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("pages_exhausted", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("tenant_id", "location_id", "kind", name="sync_status_pk"),
        sa.CheckConstraint("status IN ('idle', 'running', 'done', 'error')", name="sync_status_status_check"),
    )

    op.create_table(
        "location_sync_runs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="running"),
        sa.Column("accounts_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("locations_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("upserted_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failures", JSONB, nullable=False, server_default="[]"),
    )
    op.create_index("idx_location_sync_runs_tenant", "location_sync_runs", ["tenant_id", "started_at"])

    # ==========================================================================
    # Durable sync job queue
    # ==========================================================================
    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Text, primary_key=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("payload", JSONB, nullable=False, server_default="{}"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("idempotency_key", sa.Text, nullable=True),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="sync_jobs_tenant_idempotency_uq"),
        sa.CheckConstraint("status IN ('queued', 'running', 'done', 'failed')", name="sync_jobs_status_check"),
    )
    op.create_index("sync_jobs_claim_idx", "sync_jobs", ["status", "run_at", "created_at"])
    op.create_index(
        "sync_jobs_running_tenant_uq",
        "sync_jobs",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status = 'running'"),
    )

    # ==========================================================================
    # Draft pipeline
    # ==========================================================================
    op.create_table(
        "draft_requests",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("review_id", sa.BigInteger, sa.ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False),
        sa.Column("location_id", sa.String(255), nullable=True),
        sa.Column("mode", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("identity_hash", sa.String(64), nullable=False, server_default="none"),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("draft_text", sa.Text, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("review_id", "mode", name="draft_requests_review_mode_uq"),
    )
    op.create_index("idx_draft_requests_tenant", "draft_requests", ["tenant_id"])

    op.create_table(
        "ai_jobs",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column("type", sa.String(50), nullable=False),
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("review_id", sa.BigInteger, nullable=False),
        sa.Column("location_id", sa.String(255), nullable=True),
        sa.Column("payload", JSONB, nullable=False, server_default="{}"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text, nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ai_jobs_in_flight_uq",
        "ai_jobs",
        ["type", "review_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'queued', 'processing', 'generating')"),
    )

    op.create_table(
        "ai_draft_runs",
        sa.Column("tenant_id", sa.String(100), nullable=False),
        sa.Column("location_id", sa.String(255), nullable=False),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requested_limit", sa.Integer, nullable=False, server_default="0"),
        sa.Column("generated_count", sa.Integer, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("tenant_id", "location_id", name="ai_draft_runs_pk"),
    )

    op.create_table(
        "brand_voice",
        sa.Column("tenant_id", sa.String(100), primary_key=True),
        sa.Column("settings", JSONB, nullable=False, server_default="{}"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("brand_voice")
    op.drop_table("ai_draft_runs")
    op.drop_index("ai_jobs_in_flight_uq", table_name="ai_jobs")
    op.drop_table("ai_jobs")
    op.drop_index("idx_draft_requests_tenant", table_name="draft_requests")
    op.drop_table("draft_requests")
    op.drop_index("sync_jobs_running_tenant_uq", table_name="sync_jobs")
    op.drop_index("sync_jobs_claim_idx", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_index("idx_location_sync_runs_tenant", table_name="location_sync_runs")
    op.drop_table("location_sync_runs")
    op.drop_table("sync_status")
    op.drop_table("cron_state")
    op.drop_table("review_replies")
    op.drop_index("idx_reviews_update_time", table_name="reviews")
    op.drop_index("idx_reviews_tenant_location", table_name="reviews")
    op.drop_table("reviews")
    op.drop_index("idx_locations_tenant", table_name="locations")
    op.drop_table("locations")
    op.drop_table("provider_connections")

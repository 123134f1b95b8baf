"""Initial schema: orgs, jobs, ad analyses, quota usage, webhook events"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    json_type = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
    now = sa.text("CURRENT_TIMESTAMP")

    op.create_table(
        "orgs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("external_id", sa.Text(), nullable=True, unique=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("plan", sa.Text(), nullable=False, server_default=sa.text("'free'")),
        sa.Column("quota_limit", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("quota_used", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("quota_period", sa.String(7), nullable=True),
        sa.Column("billing_status", sa.Text(), nullable=False, server_default=sa.text("'active'")),
        sa.Column("subscription_id", sa.Text(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
        sa.CheckConstraint("quota_used >= 0", name="ck_orgs_quota_used_non_negative"),
    )

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("org_id", sa.String(64), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("keyword", sa.Text(), nullable=False),
        sa.Column("requested_count", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("input", json_type, nullable=False),
        sa.Column("raw_result", json_type, nullable=True),
        sa.Column("scrape_run_id", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("output", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("analysis_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
    )
    op.create_index("idx_jobs_org_created", "jobs", ["org_id", "created_at"])
    op.create_index("idx_jobs_status", "jobs", ["status"])

    op.create_table(
        "ad_analyses",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("job_id", sa.String(128), sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("org_id", sa.String(64), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("ad_archive_id", sa.Text(), nullable=True),
        sa.Column("content_category", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("rewritten_copy", sa.Text(), nullable=True),
        sa.Column("key_insights", json_type, nullable=False),
        sa.Column("competitor_strategy", sa.Text(), nullable=True),
        sa.Column("recommendations", json_type, nullable=False),
        sa.Column("media_analysis", json_type, nullable=True),
        sa.Column("strategic_analysis", json_type, nullable=True),
        sa.Column("combined_analysis", json_type, nullable=True),
        sa.Column("models_used", json_type, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_details", json_type, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
        sa.UniqueConstraint("job_id", "position", name="uq_ad_analyses_job_position"),
    )
    op.create_index("idx_ad_analyses_ad_archive", "ad_analyses", ["ad_archive_id"])

    op.create_table(
        "quota_usage",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("org_id", sa.String(64), sa.ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.String(128), nullable=True),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("period", sa.String(7), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
    )
    op.create_index("idx_quota_usage_org_period", "quota_usage", ["org_id", "period"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("payload", json_type, nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=now, nullable=False),
    )


def downgrade() -> None:
    op.drop_table("webhook_events")
    op.drop_index("idx_quota_usage_org_period", table_name="quota_usage")
    op.drop_table("quota_usage")
    op.drop_index("idx_ad_analyses_ad_archive", table_name="ad_analyses")
    op.drop_table("ad_analyses")
    op.drop_index("idx_jobs_status", table_name="jobs")
    op.drop_index("idx_jobs_org_created", table_name="jobs")
    op.drop_table("jobs")
    op.drop_table("orgs")

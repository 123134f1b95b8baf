from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

import sqlalchemy as sa
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from adintel.db.base import Base
from adintel.periods import billing_period

JSONType = sa.JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


def _uuid_str() -> str:
    return str(uuid4())


class Org(Base):
    __tablename__ = "orgs"
    __table_args__ = (CheckConstraint("quota_used >= 0", name="ck_orgs_quota_used_non_negative"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)
    external_id: Mapped[Optional[str]] = mapped_column(Text, unique=True, nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    plan: Mapped[str] = mapped_column(Text, nullable=False, default="free", server_default="free")
    quota_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=10, server_default="10")
    quota_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    quota_period: Mapped[Optional[str]] = mapped_column(String(7), nullable=True, default=billing_period)
    billing_status: Mapped[str] = mapped_column(
        Text, nullable=False, default="active", server_default="active"
    )
    subscription_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        sa.Index("idx_jobs_org_created", "org_id", "created_at"),
        sa.Index("idx_jobs_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True, default=_uuid_str)
    org_id: Mapped[str] = mapped_column(ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)
    keyword: Mapped[str] = mapped_column(Text, nullable=False)
    requested_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending", server_default="pending")
    input: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    raw_result: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONType, nullable=True)
    scrape_run_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    analysis_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class AdAnalysis(Base):
    __tablename__ = "ad_analyses"
    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_ad_analyses_job_position"),
        sa.Index("idx_ad_analyses_ad_archive", "ad_archive_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False)
    org_id: Mapped[str] = mapped_column(ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    ad_archive_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    content_category: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    fallback: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rewritten_copy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    key_insights: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    competitor_strategy: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    recommendations: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    media_analysis: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    strategic_analysis: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    combined_analysis: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    models_used: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class QuotaUsage(Base):
    __tablename__ = "quota_usage"
    __table_args__ = (sa.Index("idx_quota_usage_org_period", "org_id", "period"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid_str)
    org_id: Mapped[str] = mapped_column(ForeignKey("orgs.id", ondelete="CASCADE"), nullable=False)
    job_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    kind: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    source: Mapped[str] = mapped_column(Text, nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobCreateRequest(BaseModel):
    keyword: str = Field(min_length=1, max_length=200)
    count: int = Field(default=10, ge=1, le=2000)
    job_id: Optional[str] = Field(default=None, max_length=128)
    region: Optional[str] = Field(default=None, min_length=2, max_length=8)
    active_status: Optional[str] = None
    fallback_enabled: Optional[bool] = None


class JobCreateResponse(BaseModel):
    job_id: str
    status: str
    quota_used: int
    quota_limit: int
    quota_remaining: int
    estimate: dict[str, Any]


class AdAnalysisResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    ad_archive_id: Optional[str] = None
    content_category: str
    status: str
    fallback: bool
    attempts: int
    summary: Optional[str] = None
    rewritten_copy: Optional[str] = None
    key_insights: list[str] = Field(default_factory=list)
    competitor_strategy: Optional[str] = None
    recommendations: list[str] = Field(default_factory=list)
    media_analysis: Optional[dict[str, Any]] = None
    strategic_analysis: Optional[dict[str, Any]] = None
    combined_analysis: Optional[dict[str, Any]] = None
    models_used: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_details: list[dict[str, Any]] = Field(default_factory=list)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    org_id: str
    keyword: str
    requested_count: int
    status: str
    input: dict[str, Any] = Field(default_factory=dict)
    scrape_run_id: Optional[str] = None
    error: Optional[str] = None
    output: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    analyses: list[AdAnalysisResponse] = Field(default_factory=list)


class QuotaStatusResponse(BaseModel):
    org_id: str
    plan: str
    used: int
    limit: int
    remaining: int
    percentage: int
    period: str
    resets_at: datetime
    billing_status: str

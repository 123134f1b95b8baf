from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from adintel.db.deps import get_session
from adintel.routers.deps import get_org_id
from adintel.schemas.jobs import QuotaStatusResponse
from adintel.services.delay_processor import calculate_processing_time
from adintel.services.quota_ledger import QuotaLedger
from adintel.services.rate_limiter import get_rate_limiter

router = APIRouter(tags=["quota"])


@router.get("/quota", response_model=QuotaStatusResponse)
def get_quota(
    org_id: str = Depends(get_org_id),
    session: Session = Depends(get_session),
) -> QuotaStatusResponse:
    quota = QuotaLedger(session).get_status(org_id)
    return QuotaStatusResponse(
        org_id=quota.org_id,
        plan=quota.plan,
        used=quota.used,
        limit=quota.limit,
        remaining=quota.remaining,
        percentage=quota.percentage,
        period=quota.period,
        resets_at=quota.resets_at,
        billing_status=quota.billing_status,
    )


@router.get("/quota/estimate")
def estimate_job(
    count: int = Query(ge=1, le=2000),
    org_id: str = Depends(get_org_id),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    quota = QuotaLedger(session).get_status(org_id)
    return {
        "count": count,
        "remaining": quota.remaining,
        "allowed": count <= quota.remaining,
        "estimate": calculate_processing_time(count),
    }


@router.get("/rate-limits")
def rate_limits() -> dict[str, Any]:
    return {"models": get_rate_limiter().status()}

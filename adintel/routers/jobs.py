from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from adintel.db.deps import get_session
from adintel.db.repositories.analyses import AnalysesRepository
from adintel.db.repositories.jobs import JobsRepository
from adintel.events.dispatcher import CollectingEventDispatcher, EventDispatcher
from adintel.routers.deps import get_event_dispatcher, get_job_state_machine, get_org_id
from adintel.schemas.jobs import AdAnalysisResponse, JobCreateRequest, JobCreateResponse, JobResponse
from adintel.services.delay_processor import calculate_processing_time
from adintel.services.job_state_machine import JobStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=JobCreateResponse)
async def create_job(
    body: JobCreateRequest,
    org_id: str = Depends(get_org_id),
    machine: JobStateMachine = Depends(get_job_state_machine),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> JobCreateResponse:
    collector = CollectingEventDispatcher()
    result = machine.admit(
        org_id,
        body.keyword,
        body.count,
        dispatcher=collector,
        job_id=body.job_id,
        region=body.region,
        active_status=body.active_status,
        fallback_enabled=body.fallback_enabled,
    )
    try:
        await dispatcher.publish(collector.drain())
    except Exception as exc:  # noqa: BLE001
        logger.exception("jobs.dispatch_failed", extra={"job_id": result.job_id, "org_id": result.org_id})
        machine.abandon(result, f"Job dispatch failed: {exc}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job could not be scheduled; its quota was released. Submit it again with a new job_id.",
        ) from exc
    return JobCreateResponse(
        job_id=result.job_id,
        status=result.status,
        quota_used=result.reservation.used,
        quota_limit=result.reservation.limit,
        quota_remaining=result.reservation.remaining,
        estimate=calculate_processing_time(body.count),
    )


@router.get("", response_model=list[JobResponse])
def list_jobs(
    limit: int = 50,
    org_id: str = Depends(get_org_id),
    session: Session = Depends(get_session),
) -> list[JobResponse]:
    jobs = JobsRepository(session).list_for_org(org_id, limit=max(1, min(limit, 200)))
    return [JobResponse.model_validate(job) for job in jobs]


@router.get("/{job_id}", response_model=JobResponse)
def get_job(
    job_id: str,
    org_id: str = Depends(get_org_id),
    session: Session = Depends(get_session),
) -> JobResponse:
    job = JobsRepository(session).get_for_org(job_id, org_id=org_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    response = JobResponse.model_validate(job)
    response.analyses = [
        AdAnalysisResponse.model_validate(row) for row in AnalysesRepository(session).list_for_job(job.id)
    ]
    return response

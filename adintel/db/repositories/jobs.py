from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from adintel.db.models import Job
from adintel.db.repositories.base import Repository
from adintel.periods import utcnow


JOB_STATUS_PENDING = "pending"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

TERMINAL_JOB_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)

MAX_ERROR_LENGTH = 5000


class JobsRepository(Repository):
    """Job rows and their lifecycle transitions.

    Every mutating statement carries its own status guard in the WHERE clause,
    so a job that reached a terminal status can never be written again and
    a late duplicate event simply matches no row.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session)

    def get(self, job_id: str) -> Optional[Job]:
        stmt = select(Job).where(Job.id == job_id)
        return self.session.scalars(stmt).first()

    def get_for_org(self, job_id: str, *, org_id: str) -> Optional[Job]:
        stmt = select(Job).where(Job.id == job_id, Job.org_id == org_id)
        return self.session.scalars(stmt).first()

    def list_for_org(self, org_id: str, *, limit: int = 50) -> list[Job]:
        stmt = select(Job).where(Job.org_id == org_id).order_by(Job.created_at.desc()).limit(limit)
        return list(self.session.scalars(stmt).all())

    def exists(self, job_id: str) -> bool:
        stmt = select(Job.id).where(Job.id == job_id)
        return self.session.execute(stmt).first() is not None

    def add_pending(
        self,
        *,
        job_id: str,
        org_id: str,
        keyword: str,
        requested_count: int,
        input_payload: Optional[dict[str, Any]] = None,
    ) -> Job:
        job = Job(
            id=job_id,
            org_id=org_id,
            keyword=keyword,
            requested_count=requested_count,
            input=input_payload or {},
            status=JOB_STATUS_PENDING,
        )
        self.session.add(job)
        self.session.flush()
        return job

    def mark_running(self, job_id: str) -> Optional[Job]:
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_STATUS_PENDING)
            .values(status=JOB_STATUS_RUNNING, started_at=now, updated_at=now)
            .returning(Job)
        )
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

    def store_raw_result(
        self,
        job_id: str,
        *,
        raw_result: list[dict[str, Any]],
        scrape_run_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Attach the scrape payload once; a second delivery matches no row."""
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JOB_STATUS_RUNNING,
                Job.raw_result.is_(None),
            )
            .values(raw_result=raw_result, scrape_run_id=scrape_run_id, updated_at=now)
            .returning(Job)
        )
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

    def claim_analysis(self, job_id: str) -> Optional[Job]:
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JOB_STATUS_RUNNING,
                Job.analysis_started_at.is_(None),
            )
            .values(analysis_started_at=now, updated_at=now)
            .returning(Job)
        )
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

    def set_output(self, job_id: str, *, output: dict[str, Any]) -> Optional[Job]:
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.notin_(TERMINAL_JOB_STATUSES))
            .values(output=output, updated_at=now)
            .returning(Job)
        )
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

    def mark_completed(self, job_id: str, *, output: Optional[dict[str, Any]] = None) -> Optional[Job]:
        now = utcnow()
        values: dict[str, Any] = {
            "status": JOB_STATUS_COMPLETED,
            "completed_at": now,
            "updated_at": now,
        }
        if output is not None:
            values["output"] = output
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status == JOB_STATUS_RUNNING)
            .values(**values)
            .returning(Job)
        )
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

    def mark_failed(
        self,
        job_id: str,
        *,
        error: str,
        output: Optional[dict[str, Any]] = None,
    ) -> Optional[Job]:
        now = utcnow()
        values: dict[str, Any] = {
            "status": JOB_STATUS_FAILED,
            "error": error[:MAX_ERROR_LENGTH],
            "completed_at": now,
            "updated_at": now,
        }
        if output is not None:
            values["output"] = output
        stmt = (
            update(Job)
            .where(Job.id == job_id, Job.status.notin_(TERMINAL_JOB_STATUSES))
            .values(**values)
            .returning(Job)
        )
        job = self.session.execute(stmt).scalar_one_or_none()
        if job:
            self.session.commit()
        return job

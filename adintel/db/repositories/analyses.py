from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adintel.db.models import AdAnalysis
from adintel.db.repositories.base import Repository


class AnalysesRepository(Repository):
    def __init__(self, session: Session) -> None:
        super().__init__(session)

    def get_by_position(self, job_id: str, position: int) -> Optional[AdAnalysis]:
        stmt = select(AdAnalysis).where(AdAnalysis.job_id == job_id, AdAnalysis.position == position)
        return self.session.scalars(stmt).first()

    def list_for_job(self, job_id: str) -> list[AdAnalysis]:
        stmt = select(AdAnalysis).where(AdAnalysis.job_id == job_id).order_by(AdAnalysis.position)
        return list(self.session.scalars(stmt).all())

    def count_by_status(self, job_id: str) -> dict[str, int]:
        stmt = (
            select(AdAnalysis.status, func.count())
            .where(AdAnalysis.job_id == job_id)
            .group_by(AdAnalysis.status)
        )
        return {status: int(count) for status, count in self.session.execute(stmt).all()}

    def add(self, *, job_id: str, org_id: str, position: int, fields: dict[str, Any]) -> AdAnalysis:
        """
        Insert the analysis for one item of a job.

        (job_id, position) is unique; replaying the same item returns the
        stored row instead of writing a second one.
        """
        existing = self.get_by_position(job_id, position)
        if existing:
            return existing
        row = AdAnalysis(job_id=job_id, org_id=org_id, position=position, **fields)
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get_by_position(job_id, position)
            if existing:
                return existing
            raise
        self.session.refresh(row)
        return row

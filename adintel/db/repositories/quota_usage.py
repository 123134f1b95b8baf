from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from adintel.db.models import QuotaUsage
from adintel.db.repositories.base import Repository


class QuotaUsageRepository(Repository):
    def __init__(self, session: Session) -> None:
        super().__init__(session)

    def add(
        self,
        *,
        org_id: str,
        kind: str,
        amount: int,
        period: str,
        job_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> QuotaUsage:
        # Flushed, not committed: the row belongs to the caller's counter update.
        entry = QuotaUsage(
            org_id=org_id,
            job_id=job_id,
            kind=kind,
            amount=amount,
            period=period,
            description=description,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_for_org(self, org_id: str, *, period: Optional[str] = None) -> list[QuotaUsage]:
        stmt = select(QuotaUsage).where(QuotaUsage.org_id == org_id)
        if period:
            stmt = stmt.where(QuotaUsage.period == period)
        return list(self.session.scalars(stmt.order_by(QuotaUsage.created_at)).all())

    def net_usage(self, org_id: str, *, period: str) -> int:
        stmt = select(func.coalesce(func.sum(QuotaUsage.amount), 0)).where(
            QuotaUsage.org_id == org_id,
            QuotaUsage.period == period,
        )
        return int(self.session.execute(stmt).scalar_one())

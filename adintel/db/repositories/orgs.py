from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from adintel.db.models import Org
from adintel.db.repositories.base import Repository
from adintel.periods import utcnow


class OrgsRepository(Repository):
    """Row-level access to organizations.

    Quota counters are only ever changed through the conditional UPDATE
    statements below; callers own the surrounding transaction.
    """

    def __init__(self, session: Session) -> None:
        super().__init__(session)

    def get(self, org_id: str) -> Optional[Org]:
        stmt = select(Org).where(Org.id == org_id)
        return self.session.scalars(stmt).first()

    def get_by_external_id(self, external_id: str) -> Optional[Org]:
        stmt = select(Org).where(Org.external_id == external_id)
        return self.session.scalars(stmt).first()

    def get_by_subscription_id(self, subscription_id: str) -> Optional[Org]:
        stmt = select(Org).where(Org.subscription_id == subscription_id)
        return self.session.scalars(stmt).first()

    def create(
        self,
        *,
        name: str,
        plan: str = "free",
        quota_limit: int = 10,
        external_id: Optional[str] = None,
        org_id: Optional[str] = None,
    ) -> Org:
        org = Org(name=name, plan=plan, quota_limit=quota_limit, external_id=external_id)
        if org_id:
            org.id = org_id
        return self.save(org)

    def rollover_period(self, org_id: str, *, period: str) -> bool:
        """Zero the counter if it still belongs to an earlier billing period."""
        stmt = (
            update(Org)
            .where(Org.id == org_id, Org.quota_period.is_not(None), Org.quota_period != period)
            .values(quota_used=0, quota_period=period, updated_at=utcnow())
            .returning(Org.id)
        )
        return self.session.execute(stmt).first() is not None

    def rollover_all(self, *, period: str) -> list[str]:
        stmt = (
            update(Org)
            .where(Org.quota_period.is_not(None), Org.quota_period != period)
            .values(quota_used=0, quota_period=period, updated_at=utcnow())
            .returning(Org.id)
        )
        return [row[0] for row in self.session.execute(stmt).all()]

    def reserve_quota(self, org_id: str, *, units: int, period: str) -> Optional[Tuple[int, int]]:
        """
        Atomically add `units` to quota_used when it fits under quota_limit.

        Returns (quota_used, quota_limit) after the increment, or None when the
        organization is missing or the reservation would exceed the limit.
        """
        stmt = (
            update(Org)
            .where(Org.id == org_id, Org.quota_used + units <= Org.quota_limit)
            .values(quota_used=Org.quota_used + units, quota_period=period, updated_at=utcnow())
            .returning(Org.quota_used, Org.quota_limit)
        )
        row = self.session.execute(stmt).first()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    def release_quota(self, org_id: str, *, units: int) -> Optional[Tuple[int, int]]:
        remaining = Org.quota_used - units
        stmt = (
            update(Org)
            .where(Org.id == org_id)
            .values(quota_used=sa.case((remaining < 0, 0), else_=remaining), updated_at=utcnow())
            .returning(Org.quota_used, Org.quota_limit)
        )
        row = self.session.execute(stmt).first()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    def set_plan(
        self,
        org_id: str,
        *,
        plan: str,
        quota_limit: int,
        reset_usage: bool,
        period: str,
        billing_status: Optional[str] = None,
    ) -> Optional[Org]:
        values: dict[str, Any] = {"plan": plan, "quota_limit": quota_limit, "updated_at": utcnow()}
        if reset_usage:
            values["quota_used"] = 0
            values["quota_period"] = period
        if billing_status is not None:
            values["billing_status"] = billing_status
        stmt = update(Org).where(Org.id == org_id).values(**values).returning(Org)
        return self.session.execute(stmt).scalar_one_or_none()

    def set_billing(
        self,
        org_id: str,
        *,
        billing_status: str,
        subscription_id: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
        external_id: Optional[str] = None,
    ) -> Optional[Org]:
        values: dict[str, Any] = {"billing_status": billing_status, "updated_at": utcnow()}
        if subscription_id is not None:
            values["subscription_id"] = subscription_id
        if current_period_end is not None:
            values["current_period_end"] = current_period_end
        if external_id is not None:
            values["external_id"] = external_id
        stmt = update(Org).where(Org.id == org_id).values(**values).returning(Org)
        return self.session.execute(stmt).scalar_one_or_none()

    def list_canceled_past_period_end(self, *, now: datetime) -> list[Org]:
        stmt = (
            select(Org)
            .where(
                Org.billing_status == "canceled",
                Org.current_period_end.is_not(None),
                Org.current_period_end < now,
            )
            .order_by(Org.current_period_end)
        )
        return list(self.session.scalars(stmt).all())

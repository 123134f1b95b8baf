from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from adintel.db.enums import BillingStatusEnum, PlanEnum, QuotaUsageKindEnum
from adintel.db.models import Org
from adintel.db.repositories.orgs import OrgsRepository
from adintel.db.repositories.quota_usage import QuotaUsageRepository
from adintel.periods import billing_period, month_reset_at, utcnow

logger = logging.getLogger(__name__)

PLAN_LIMITS: dict[str, int] = {
    PlanEnum.free.value: 10,
    PlanEnum.pro.value: 500,
    PlanEnum.enterprise.value: 2000,
}

# Placeholder ids that callers sometimes send when no real organization is known.
SENTINEL_ORG_IDS = frozenset(
    {
        "",
        "default",
        "default-org",
        "default_org",
        "anonymous",
        "none",
        "null",
        "undefined",
        "unknown",
        "fallback",
        "system",
        "public",
    }
)


class QuotaError(Exception):
    pass


class QuotaExceeded(QuotaError):
    def __init__(self, *, used: int, limit: int, requested: int) -> None:
        super().__init__(f"Quota exceeded: used {used} of {limit}, requested {requested}")
        self.used = used
        self.limit = limit
        self.requested = requested


class InvalidOrganization(QuotaError):
    def __init__(self, org_id: Optional[str], reason: str = "not_found") -> None:
        super().__init__(f"Invalid organization {org_id!r}: {reason}")
        self.org_id = org_id
        self.reason = reason


@dataclass
class QuotaReservation:
    org_id: str
    reserved: int
    used: int
    limit: int

    @property
    def ok(self) -> bool:
        return True

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)


@dataclass
class QuotaStatus:
    org_id: str
    plan: str
    used: int
    limit: int
    period: str
    resets_at: datetime
    billing_status: str

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def percentage(self) -> int:
        if self.limit <= 0:
            return 100
        return round(self.used / self.limit * 100)

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit


def limit_for_plan(plan: str) -> int:
    try:
        return PLAN_LIMITS[plan]
    except KeyError as exc:
        raise ValueError(f"Unknown plan: {plan}") from exc


def per_request_cap(plan: str) -> int:
    """Largest number of ads a single job may request on `plan`."""
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[PlanEnum.free.value])


def validate_org_id(org_id: Optional[str]) -> str:
    if org_id is None:
        raise InvalidOrganization(org_id, reason="missing")
    normalized = org_id.strip()
    if normalized.lower() in SENTINEL_ORG_IDS:
        raise InvalidOrganization(org_id, reason="placeholder")
    return normalized


class QuotaLedger:
    """
    Per-organization monthly quota counters.

    This is the only writer of orgs.plan / quota_limit / quota_used. Reserving
    is one conditional UPDATE so concurrent admissions cannot both pass a
    tight cap.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.orgs = OrgsRepository(session)
        self.usage = QuotaUsageRepository(session)

    def _finish(self, commit: bool) -> None:
        # Callers applying several writes as one unit pass commit=False and commit themselves.
        if commit:
            self.session.commit()
        else:
            self.session.flush()

    def _require_org(self, org_id: Optional[str]) -> Org:
        normalized = validate_org_id(org_id)
        org = self.orgs.get(normalized)
        if not org:
            raise InvalidOrganization(org_id)
        return org

    def check_and_reserve(
        self,
        org_id: Optional[str],
        requested_units: int,
        *,
        job_id: Optional[str] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> QuotaReservation:
        normalized = validate_org_id(org_id)
        if requested_units < 1:
            raise ValueError("requested_units must be at least 1")
        period = billing_period(now)

        try:
            if self.orgs.rollover_period(normalized, period=period):
                self.session.commit()
                logger.info("quota.period_rollover", extra={"org_id": normalized, "period": period})
            reserved = self.orgs.reserve_quota(normalized, units=requested_units, period=period)
            if reserved is None:
                self.session.rollback()
                org = self.orgs.get(normalized)
                if not org:
                    raise InvalidOrganization(org_id)
                logger.info(
                    "quota.exceeded",
                    extra={
                        "org_id": normalized,
                        "used": org.quota_used,
                        "limit": org.quota_limit,
                        "requested": requested_units,
                    },
                )
                raise QuotaExceeded(used=org.quota_used, limit=org.quota_limit, requested=requested_units)

            used, limit = reserved
            self.usage.add(
                org_id=normalized,
                job_id=job_id,
                kind=QuotaUsageKindEnum.scrape.value,
                amount=requested_units,
                period=period,
                description=description,
            )
            self.session.commit()
        except QuotaError:
            raise
        except Exception:
            self.session.rollback()
            raise

        logger.info(
            "quota.reserved",
            extra={"org_id": normalized, "job_id": job_id, "units": requested_units, "used": used, "limit": limit},
        )
        return QuotaReservation(org_id=normalized, reserved=requested_units, used=used, limit=limit)

    def release(
        self,
        org_id: str,
        units: int,
        *,
        job_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[QuotaReservation]:
        """Give back a reservation whose job could not be created."""
        if units < 1:
            return None
        released = self.orgs.release_quota(org_id, units=units)
        if released is None:
            self.session.rollback()
            return None
        self.usage.add(
            org_id=org_id,
            job_id=job_id,
            kind=QuotaUsageKindEnum.release.value,
            amount=-units,
            period=billing_period(),
            description=description,
        )
        self.session.commit()
        used, limit = released
        logger.warning("quota.released", extra={"org_id": org_id, "job_id": job_id, "units": units})
        return QuotaReservation(org_id=org_id, reserved=-units, used=used, limit=limit)

    def reset_on_upgrade(
        self, org_id: str, new_plan: str, new_limit: Optional[int] = None, *, commit: bool = True
    ) -> Org:
        org = self._require_org(org_id)
        limit = new_limit if new_limit is not None else limit_for_plan(new_plan)
        previous_used = org.quota_used
        period = billing_period()
        updated = self.orgs.set_plan(
            org.id,
            plan=new_plan,
            quota_limit=limit,
            reset_usage=True,
            period=period,
        )
        if updated is None:
            self.session.rollback()
            raise InvalidOrganization(org_id)
        self.usage.add(
            org_id=org.id,
            kind=QuotaUsageKindEnum.reset.value,
            amount=-previous_used,
            period=period,
            description=f"plan changed to {new_plan}",
        )
        self._finish(commit)
        logger.info(
            "quota.reset_on_upgrade",
            extra={"org_id": org.id, "plan": new_plan, "limit": limit, "previous_used": previous_used},
        )
        return updated

    def change_plan(self, org_id: str, new_plan: str, *, commit: bool = True) -> Org:
        """Switch plan and limit while keeping this period's usage (paid downgrades)."""
        org = self._require_org(org_id)
        updated = self.orgs.set_plan(
            org.id,
            plan=new_plan,
            quota_limit=limit_for_plan(new_plan),
            reset_usage=False,
            period=billing_period(),
        )
        if updated is None:
            self.session.rollback()
            raise InvalidOrganization(org_id)
        self._finish(commit)
        logger.info("quota.plan_changed", extra={"org_id": org.id, "plan": new_plan})
        return updated

    def get_status(self, org_id: str, *, now: Optional[datetime] = None) -> QuotaStatus:
        org = self._require_org(org_id)
        period = billing_period(now)
        used = org.quota_used
        # A counter from an earlier month has not been rolled over yet but is already spent.
        if org.quota_period and org.quota_period != period:
            used = 0
        return QuotaStatus(
            org_id=org.id,
            plan=org.plan,
            used=used,
            limit=org.quota_limit,
            period=period,
            resets_at=month_reset_at(now),
            billing_status=org.billing_status,
        )

    def rollover_period(self, *, now: Optional[datetime] = None) -> list[str]:
        period = billing_period(now)
        org_ids = self.orgs.rollover_all(period=period)
        self.session.commit()
        if org_ids:
            logger.info("quota.monthly_reset", extra={"period": period, "orgs": len(org_ids)})
        return org_ids

    def set_billing_status(
        self,
        org_id: str,
        billing_status: str,
        *,
        subscription_id: Optional[str] = None,
        current_period_end: Optional[datetime] = None,
        external_id: Optional[str] = None,
        commit: bool = True,
    ) -> Org:
        org = self.orgs.set_billing(
            validate_org_id(org_id),
            billing_status=billing_status,
            subscription_id=subscription_id,
            current_period_end=current_period_end,
            external_id=external_id,
        )
        if org is None:
            self.session.rollback()
            raise InvalidOrganization(org_id)
        self._finish(commit)
        return org

    def downgrade_to_free(self, org_id: str, *, commit: bool = True) -> Org:
        org = self.orgs.set_plan(
            org_id,
            plan=PlanEnum.free.value,
            quota_limit=PLAN_LIMITS[PlanEnum.free.value],
            reset_usage=False,
            period=billing_period(),
            billing_status=BillingStatusEnum.canceled_downgraded.value,
        )
        if org is None:
            self.session.rollback()
            raise InvalidOrganization(org_id)
        self._finish(commit)
        logger.info("quota.downgraded_to_free", extra={"org_id": org_id})
        return org

    def downgrade_canceled_orgs(self, *, now: Optional[datetime] = None) -> list[str]:
        """Move canceled subscriptions whose paid period has ended back to the free plan."""
        now = now or utcnow()
        downgraded: list[str] = []
        for org in self.orgs.list_canceled_past_period_end(now=now):
            self.downgrade_to_free(org.id)
            downgraded.append(org.id)
        return downgraded

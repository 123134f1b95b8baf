from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from adintel.config import settings
from adintel.db.enums import BillingStatusEnum
from adintel.db.models import Org
from adintel.db.repositories.orgs import OrgsRepository
from adintel.db.repositories.webhook_events import WebhookEventsRepository
from adintel.periods import utcnow
from adintel.services.quota_ledger import PLAN_LIMITS, QuotaLedger

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)

PAID_STATUSES = {"active": BillingStatusEnum.active.value, "trialing": BillingStatusEnum.trialing.value}
DELINQUENT_STATUSES = {"past_due", "unpaid", "incomplete"}
ENDED_STATUSES = {"canceled", "incomplete_expired"}


class BillingEventError(ValueError):
    pass


@dataclass
class BillingOutcome:
    event_id: str
    event_type: str
    action: str
    org_id: Optional[str] = None
    plan: Optional[str] = None


def _timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    for item in items:
        price = item.get("price") or item.get("plan") or {}
        if price.get("id"):
            return price["id"]
    return None


class BillingEventHandler:
    """
    Applies Stripe subscription events to organizations.

    The event id row and the organization changes commit together, so a
    redelivered webhook is a no-op and a failed one can be redelivered. Plan upgrades reset the period's usage through the ledger.
    """

    def __init__(
        self,
        session: Session,
        *,
        price_plan_map: Optional[Dict[str, str]] = None,
        autodowngrade_enabled: Optional[bool] = None,
    ) -> None:
        self.session = session
        self.orgs = OrgsRepository(session)
        self.events = WebhookEventsRepository(session)
        self.ledger = QuotaLedger(session)
        self.price_plan_map = price_plan_map if price_plan_map is not None else settings.STRIPE_PRICE_PLAN_MAP
        self.autodowngrade_enabled = (
            settings.BILLING_AUTODOWNGRADE_ENABLED if autodowngrade_enabled is None else autodowngrade_enabled
        )

    def handle(self, event: Dict[str, Any]) -> BillingOutcome:
        event_id = event.get("id")
        event_type = event.get("type") or ""
        if not event_id:
            raise BillingEventError("Missing event id")
        if event_type not in SUBSCRIPTION_EVENTS:
            return BillingOutcome(event_id=event_id, event_type=event_type, action="ignored")

        data = event.get("data") or {}
        subscription = data.get("object") if isinstance(data, dict) else None
        if not isinstance(subscription, dict):
            raise BillingEventError("Missing subscription payload")

        org = self._resolve_org(subscription)
        if org is None:
            logger.warning(
                "billing.org_not_found",
                extra={"event_id": event_id, "subscription_id": subscription.get("id")},
            )
            return BillingOutcome(event_id=event_id, event_type=event_type, action="org_not_found")

        if not self.events.record(event_id=event_id, source="stripe", event_type=event_type, payload=dict(event)):
            logger.info("billing.duplicate_event", extra={"event_id": event_id, "event_type": event_type})
            return BillingOutcome(event_id=event_id, event_type=event_type, action="duplicate", org_id=org.id)

        try:
            outcome = self._apply(org, event_id, event_type, subscription)
        except Exception:
            self.session.rollback()
            raise
        # The webhook row and every ledger write land in one commit.
        self.session.commit()
        logger.info(
            "billing.event_applied",
            extra={"event_id": event_id, "event_type": event_type, "org_id": org.id, "action": outcome.action},
        )
        return outcome

    def _resolve_org(self, subscription: Dict[str, Any]) -> Optional[Org]:
        metadata = subscription.get("metadata") or {}
        org_id = metadata.get("org_id")
        if org_id:
            org = self.orgs.get(org_id)
            if org:
                return org
        subscription_id = subscription.get("id")
        if subscription_id:
            org = self.orgs.get_by_subscription_id(subscription_id)
            if org:
                return org
        customer = subscription.get("customer")
        if customer:
            return self.orgs.get_by_external_id(customer)
        return None

    def _apply(
        self,
        org: Org,
        event_id: str,
        event_type: str,
        subscription: Dict[str, Any],
    ) -> BillingOutcome:
        status = (subscription.get("status") or "").lower()
        period_end = _timestamp(subscription.get("current_period_end"))
        common = {
            "subscription_id": subscription.get("id"),
            "current_period_end": period_end,
            "external_id": subscription.get("customer"),
        }

        if event_type == "customer.subscription.deleted" or status in ENDED_STATUSES:
            self.ledger.set_billing_status(org.id, BillingStatusEnum.canceled.value, commit=False, **common)
            if self.autodowngrade_enabled and (period_end is None or period_end <= utcnow()):
                self.ledger.downgrade_to_free(org.id, commit=False)
                return BillingOutcome(event_id, event_type, "downgraded", org.id, "free")
            return BillingOutcome(event_id, event_type, "canceled", org.id, org.plan)

        if status in DELINQUENT_STATUSES:
            self.ledger.set_billing_status(org.id, BillingStatusEnum.past_due.value, commit=False, **common)
            return BillingOutcome(event_id, event_type, "past_due", org.id, org.plan)

        if status not in PAID_STATUSES:
            return BillingOutcome(event_id, event_type, "ignored", org.id, org.plan)

        current_plan = org.plan
        current_limit = org.quota_limit
        self.ledger.set_billing_status(org.id, PAID_STATUSES[status], commit=False, **common)

        price_id = _price_id(subscription)
        plan = self.price_plan_map.get(price_id) if price_id else None
        if plan is None or plan not in PLAN_LIMITS:
            logger.warning("billing.unknown_price", extra={"event_id": event_id, "price_id": price_id})
            return BillingOutcome(event_id, event_type, "status_updated", org.id, current_plan)
        if plan == current_plan:
            return BillingOutcome(event_id, event_type, "status_updated", org.id, plan)
        if PLAN_LIMITS[plan] > current_limit:
            self.ledger.reset_on_upgrade(org.id, plan, commit=False)
            return BillingOutcome(event_id, event_type, "upgraded", org.id, plan)
        self.ledger.change_plan(org.id, plan, commit=False)
        return BillingOutcome(event_id, event_type, "plan_changed", org.id, plan)


def run_autodowngrade(session: Session, *, now: Optional[datetime] = None) -> list[str]:
    """Downgrade canceled organizations past their paid period, when enabled."""
    if not settings.BILLING_AUTODOWNGRADE_ENABLED:
        return []
    return QuotaLedger(session).downgrade_canceled_orgs(now=now)

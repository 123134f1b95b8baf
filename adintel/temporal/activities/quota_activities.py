from __future__ import annotations

from typing import Any, Dict

from temporalio import activity

from adintel.db.base import session_scope
from adintel.services.billing import run_autodowngrade
from adintel.services.quota_ledger import QuotaLedger


@activity.defn(name="quota.rollover_period")
def rollover_quota_period_activity(params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    with session_scope() as session:
        org_ids = QuotaLedger(session).rollover_period()
    activity.logger.info("quota.rollover_period.done", extra={"orgs": len(org_ids)})
    return {"reset_org_ids": org_ids}


@activity.defn(name="quota.downgrade_canceled_orgs")
def downgrade_canceled_orgs_activity(params: Dict[str, Any] | None = None) -> Dict[str, Any]:
    with session_scope() as session:
        org_ids = run_autodowngrade(session)
    activity.logger.info("quota.downgrade_canceled_orgs.done", extra={"orgs": len(org_ids)})
    return {"downgraded_org_ids": org_ids}

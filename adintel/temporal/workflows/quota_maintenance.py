from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from adintel.temporal.activities.quota_activities import (
        downgrade_canceled_orgs_activity,
        rollover_quota_period_activity,
    )

QUOTA_MAINTENANCE_WORKFLOW_ID = "quota-maintenance"
# Hourly keeps the month boundary reset and post-period downgrades within an hour of due.
QUOTA_MAINTENANCE_CRON = "0 * * * *"


@workflow.defn
class QuotaMaintenanceWorkflow:
    @workflow.run
    async def run(self) -> Dict[str, Any]:
        rollover = await workflow.execute_activity(
            rollover_quota_period_activity,
            {},
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=RetryPolicy(maximum_attempts=3),
        )
        downgrades = await workflow.execute_activity(
            downgrade_canceled_orgs_activity,
            {},
            start_to_close_timeout=timedelta(minutes=5),
            retry_policy=RetryPolicy(maximum_attempts=3),
        )
        return {**rollover, **downgrades}

from __future__ import annotations

import asyncio
import concurrent.futures
import logging

from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

from adintel.config import settings
from adintel.temporal.activities.job_event_activities import fail_job_activity, handle_job_event_activity
from adintel.temporal.activities.quota_activities import (
    downgrade_canceled_orgs_activity,
    rollover_quota_period_activity,
)
from adintel.temporal.client import get_temporal_client
from adintel.temporal.workflows.job_events import JobEventsWorkflow
from adintel.temporal.workflows.quota_maintenance import (
    QUOTA_MAINTENANCE_CRON,
    QUOTA_MAINTENANCE_WORKFLOW_ID,
    QuotaMaintenanceWorkflow,
)

logger = logging.getLogger(__name__)


async def ensure_quota_maintenance(client) -> None:
    try:
        await client.start_workflow(
            QuotaMaintenanceWorkflow.run,
            id=QUOTA_MAINTENANCE_WORKFLOW_ID,
            task_queue=settings.TEMPORAL_TASK_QUEUE,
            cron_schedule=QUOTA_MAINTENANCE_CRON,
        )
        logger.info("worker.quota_maintenance_started", extra={"workflow_id": QUOTA_MAINTENANCE_WORKFLOW_ID})
    except WorkflowAlreadyStartedError:
        logger.info("worker.quota_maintenance_running", extra={"workflow_id": QUOTA_MAINTENANCE_WORKFLOW_ID})


async def main() -> None:
    client = await get_temporal_client()
    await ensure_quota_maintenance(client)
    with concurrent.futures.ThreadPoolExecutor(max_workers=settings.TEMPORAL_ACTIVITY_WORKERS) as activity_executor:
        worker = Worker(
            client,
            task_queue=settings.TEMPORAL_TASK_QUEUE,
            workflows=[
                JobEventsWorkflow,
                QuotaMaintenanceWorkflow,
            ],
            activities=[
                handle_job_event_activity,
                fail_job_activity,
                rollover_quota_period_activity,
                downgrade_canceled_orgs_activity,
            ],
            activity_executor=activity_executor,
        )
        await worker.run()


def run() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())


if __name__ == "__main__":
    run()

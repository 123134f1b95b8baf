from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import os
from typing import Any, Dict, List

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from adintel.events.dispatcher import STAGE_EVENTS
    from adintel.temporal.activities.job_event_activities import fail_job_activity, handle_job_event_activity

# Analysis of a large job is paced at several seconds per ad, so the stage activity may run for hours.
JOB_STAGE_START_TO_CLOSE_HOURS = int(os.getenv("JOB_STAGE_START_TO_CLOSE_HOURS", "12"))
# Must outlast the longest silent step, a scrape run polled for up to SCRAPE_MAX_WAIT_SECONDS.
JOB_STAGE_HEARTBEAT_MINUTES = int(os.getenv("JOB_STAGE_HEARTBEAT_MINUTES", "15"))
JOB_MAX_EVENTS = int(os.getenv("JOB_MAX_EVENTS", "32"))


@dataclass
class JobEventsInput:
    job_id: str
    events: List[Dict[str, Any]] = field(default_factory=list)


def _error_message(exc: BaseException) -> str:
    # ActivityError wraps the activity's own exception in `cause`.
    return str(getattr(exc, "cause", None) or exc)


@workflow.defn
class JobEventsWorkflow:
    """
    Delivers a job's events in order; each stage event becomes one activity.

    A stage activity that times out, loses its worker or raises past its
    handler fails the job through the jobs.fail activity, so a job never
    stays running after its workflow ends.
    """

    @workflow.run
    async def run(self, input: JobEventsInput) -> Dict[str, Any]:
        queue: List[Dict[str, Any]] = list(input.events)
        delivered: List[str] = []

        while queue:
            if len(delivered) >= JOB_MAX_EVENTS:
                workflow.logger.error(
                    "job_events.too_many_events",
                    extra={"job_id": input.job_id, "delivered": delivered, "pending": [e.get("name") for e in queue]},
                )
                failed = await self._fail(input.job_id, f"Job exceeded {JOB_MAX_EVENTS} events")
                delivered.extend(str(e.get("name")) for e in failed)
                break
            event = queue.pop(0)
            name = event.get("name")
            delivered.append(str(name))
            if name not in STAGE_EVENTS:
                workflow.logger.info(
                    "job_events.notification",
                    extra={"job_id": input.job_id, "event": name, "data": event.get("data")},
                )
                continue

            try:
                result = await workflow.execute_activity(
                    handle_job_event_activity,
                    event,
                    start_to_close_timeout=timedelta(hours=JOB_STAGE_START_TO_CLOSE_HOURS),
                    heartbeat_timeout=timedelta(minutes=JOB_STAGE_HEARTBEAT_MINUTES),
                    retry_policy=RetryPolicy(maximum_attempts=1),
                )
            except Exception as exc:  # noqa: BLE001
                workflow.logger.error(
                    "job_events.stage_failed",
                    extra={"job_id": input.job_id, "event": name, "error": _error_message(exc)},
                )
                queue.extend(await self._fail(input.job_id, f"{name} failed: {_error_message(exc)}"))
                continue
            queue.extend(result.get("events") or [])

        return {"job_id": input.job_id, "events": delivered}

    async def _fail(self, job_id: str, error: str) -> List[Dict[str, Any]]:
        result = await workflow.execute_activity(
            fail_job_activity,
            {"job_id": job_id, "error": error},
            start_to_close_timeout=timedelta(minutes=2),
            retry_policy=RetryPolicy(maximum_attempts=5),
        )
        return list(result.get("events") or [])

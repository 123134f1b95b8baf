from __future__ import annotations

from typing import Any, Dict

from temporalio import activity

from adintel.events.dispatcher import CollectingEventDispatcher, JobEvent
from adintel.services.job_state_machine import JobStateMachine, build_job_state_machine

_state_machine: JobStateMachine | None = None


def _machine() -> JobStateMachine:
    global _state_machine
    if _state_machine is None:
        _state_machine = build_job_state_machine()
    return _state_machine


@activity.defn(name="jobs.handle_event")
def handle_job_event_activity(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Run one stage of a job and hand the events it emitted back to the workflow."""
    event = JobEvent.from_dict(payload)
    activity.logger.info(
        "jobs.handle_event.start",
        extra={"job_id": event.job_id, "event": event.name, "event_id": event.id},
    )
    activity.heartbeat(event.name)
    collector = CollectingEventDispatcher()
    _machine().handle_event(event, collector, heartbeat=lambda: activity.heartbeat(event.name))
    emitted = collector.drain()
    activity.logger.info(
        "jobs.handle_event.done",
        extra={"job_id": event.job_id, "event": event.name, "emitted": [e.name for e in emitted]},
    )
    return {"job_id": event.job_id, "events": [e.to_dict() for e in emitted]}


@activity.defn(name="jobs.fail")
def fail_job_activity(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Mark a job failed after its stage activity could not finish; a terminal job is left as is."""
    job_id = payload.get("job_id")
    if not job_id:
        raise ValueError("jobs.fail needs a job_id")
    error = str(payload.get("error") or "Job stage failed")
    collector = CollectingEventDispatcher()
    _machine().fail_job(str(job_id), error, collector)
    emitted = collector.drain()
    activity.logger.warning("jobs.fail.done", extra={"job_id": job_id, "emitted": [e.name for e in emitted]})
    return {"job_id": job_id, "events": [e.to_dict() for e in emitted]}

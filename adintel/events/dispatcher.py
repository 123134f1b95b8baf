"""
Job lifecycle events and the ways they get delivered.

Emitters never wait for handlers: the local dispatcher queues events behind
the one currently being handled (or hands them to a thread pool), and the
Temporal dispatcher starts a JobEventsWorkflow that runs each stage as its
own activity.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

JOB_CREATED = "job/created"
SCRAPE_REQUESTED = "scrape/requested"
SCRAPE_COMPLETED = "scrape/completed"
SCRAPE_FAILED = "scrape/failed"
ANALYSIS_REQUESTED = "analysis/requested"
JOB_COMPLETED = "job/completed"
JOB_FAILED = "job/failed"

# Events that drive a job forward; the rest are notifications.
STAGE_EVENTS = (SCRAPE_REQUESTED, SCRAPE_COMPLETED, SCRAPE_FAILED, ANALYSIS_REQUESTED)
NOTIFICATION_EVENTS = (JOB_CREATED, JOB_COMPLETED, JOB_FAILED)
ALL_EVENTS = STAGE_EVENTS + NOTIFICATION_EVENTS


@dataclass
class JobEvent:
    name: str
    job_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "job_id": self.job_id, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "JobEvent":
        name = payload.get("name")
        job_id = payload.get("job_id")
        if not name or not job_id:
            raise ValueError("Job events require a name and a job_id")
        return cls(
            name=str(name),
            job_id=str(job_id),
            data=dict(payload.get("data") or {}),
            id=str(payload.get("id") or uuid4()),
        )


EventHandler = Callable[[JobEvent], None]


class EventDispatcher:
    def emit(self, event: JobEvent) -> None:
        raise NotImplementedError

    def emit_all(self, events: Iterable[JobEvent]) -> None:
        for event in events:
            self.emit(event)

    async def publish(self, events: Iterable[JobEvent]) -> None:
        self.emit_all(events)


class CollectingEventDispatcher(EventDispatcher):
    """Buffers emitted events for the caller to hand on (API requests, Temporal activities)."""

    def __init__(self) -> None:
        self.events: List[JobEvent] = []

    def emit(self, event: JobEvent) -> None:
        self.events.append(event)

    def drain(self) -> List[JobEvent]:
        events, self.events = self.events, []
        return events


class LocalEventDispatcher(EventDispatcher):
    """
    In-process delivery.

    Without an executor, events emitted while a handler runs are queued and
    delivered after that handler returns, in emit order. With an executor,
    each event is delivered on a pool thread.
    """

    def __init__(self, executor: Optional[Executor] = None) -> None:
        self._executor = executor
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._queue: Deque[JobEvent] = deque()
        self._draining = False
        self._lock = threading.Lock()

    def subscribe(self, name: str, handler: EventHandler) -> None:
        if name not in ALL_EVENTS:
            raise ValueError(f"Unknown job event: {name}")
        self._handlers.setdefault(name, []).append(handler)

    def emit(self, event: JobEvent) -> None:
        logger.info("events.emitted", extra={"event": event.name, "job_id": event.job_id, "event_id": event.id})
        if self._executor is not None:
            self._executor.submit(self._deliver, event)
            return

        with self._lock:
            self._queue.append(event)
            if self._draining:
                return
            self._draining = True
        try:
            while True:
                with self._lock:
                    if not self._queue:
                        break
                    next_event = self._queue.popleft()
                self._deliver(next_event)
        finally:
            with self._lock:
                self._draining = False

    def _deliver(self, event: JobEvent) -> None:
        for handler in list(self._handlers.get(event.name, ())):
            try:
                handler(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "events.handler_failed",
                    extra={"event": event.name, "job_id": event.job_id, "event_id": event.id},
                )


class TemporalEventDispatcher(EventDispatcher):
    """Starts a JobEventsWorkflow per published batch; the workflow carries the job to a terminal state."""

    def __init__(self, client: Any = None, *, task_queue: Optional[str] = None) -> None:
        self._client = client
        self._task_queue = task_queue

    def emit(self, event: JobEvent) -> None:
        raise TypeError("TemporalEventDispatcher is async; use `await publish(events)`")

    async def publish(self, events: Iterable[JobEvent]) -> None:
        from adintel.config import settings
        from adintel.temporal.client import get_temporal_client
        from adintel.temporal.workflows.job_events import JobEventsInput, JobEventsWorkflow

        batch = list(events)
        if not batch:
            return
        client = self._client or await get_temporal_client()
        first = batch[0]
        workflow_id = f"job-events-{first.job_id}-{first.id}"
        await client.start_workflow(
            JobEventsWorkflow.run,
            JobEventsInput(job_id=first.job_id, events=[event.to_dict() for event in batch]),
            id=workflow_id,
            task_queue=self._task_queue or settings.TEMPORAL_TASK_QUEUE,
        )
        logger.info(
            "events.workflow_started",
            extra={"job_id": first.job_id, "workflow_id": workflow_id, "events": [e.name for e in batch]},
        )

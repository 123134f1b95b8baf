from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from functools import lru_cache
from typing import Optional

from fastapi import Header

from adintel.config import settings
from adintel.events.dispatcher import EventDispatcher, LocalEventDispatcher, TemporalEventDispatcher
from adintel.services.job_state_machine import JobStateMachine, build_job_state_machine
from adintel.services.quota_ledger import validate_org_id


def get_org_id(x_org_id: Optional[str] = Header(default=None, alias="X-Org-Id")) -> str:
    """Organization of the caller; authentication happens in front of this service."""
    return validate_org_id(x_org_id)


@lru_cache
def get_job_state_machine() -> JobStateMachine:
    return build_job_state_machine()


@lru_cache
def get_event_dispatcher() -> EventDispatcher:
    if settings.EVENT_DISPATCHER == "local":
        dispatcher = LocalEventDispatcher(
            executor=ThreadPoolExecutor(
                max_workers=settings.LOCAL_DISPATCHER_WORKERS,
                thread_name_prefix="job-events",
            )
        )
        get_job_state_machine().register(dispatcher)
        return dispatcher
    return TemporalEventDispatcher()

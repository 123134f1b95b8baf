from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from adintel.ads.classifier import ProviderRoute
from adintel.ads.normalization import normalize_ad_items
from adintel.ads.scrape_provider import ApifyScrapeProvider, ScrapeFailed, ScrapeProvider
from adintel.ads.types import ScrapeRequest
from adintel.config import settings
from adintel.db.base import session_scope
from adintel.db.repositories.analyses import AnalysesRepository
from adintel.db.repositories.jobs import JOB_STATUS_RUNNING, MAX_ERROR_LENGTH, JobsRepository
from adintel.db.repositories.orgs import OrgsRepository
from adintel.events.dispatcher import (
    ANALYSIS_REQUESTED,
    JOB_COMPLETED,
    JOB_CREATED,
    JOB_FAILED,
    SCRAPE_COMPLETED,
    SCRAPE_FAILED,
    SCRAPE_REQUESTED,
    STAGE_EVENTS,
    EventDispatcher,
    JobEvent,
    LocalEventDispatcher,
)
from adintel.llm.providers import AnalysisProvider, build_default_providers
from adintel.services.delay_processor import DelayProcessor, ItemOutcome
from adintel.services.fallback_analyzer import FallbackAnalyzer
from adintel.services.quota_ledger import (
    InvalidOrganization,
    QuotaLedger,
    QuotaReservation,
    per_request_cap,
    validate_org_id,
)
from adintel.services.rate_limiter import RateLimiter
from adintel.services.wait_policy import WaitPolicy

logger = logging.getLogger(__name__)

MAX_KEYWORD_LENGTH = 200
MAX_JOB_ID_LENGTH = 128
MAX_ERRORS_IN_MESSAGE = 5

SessionFactory = Callable[[], ContextManager[Session]]


class JobAlreadyExists(Exception):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class InvalidJobRequest(ValueError):
    pass


@dataclass
class AdmissionResult:
    job_id: str
    org_id: str
    status: str
    reservation: QuotaReservation
    events: List[JobEvent] = field(default_factory=list)


def _aggregate_error(outcomes: List[ItemOutcome]) -> str:
    shown = [f"#{o.position} ({o.item.ad_archive_id or 'unknown'}): {o.error}" for o in outcomes[:MAX_ERRORS_IN_MESSAGE]]
    message = f"All {len(outcomes)} ads failed analysis: " + "; ".join(shown)
    if len(outcomes) > MAX_ERRORS_IN_MESSAGE:
        message += f"; and {len(outcomes) - MAX_ERRORS_IN_MESSAGE} more"
    return message


class JobStateMachine:
    """
    Moves a job from admission to a terminal status, one event at a time.

    Each stage handler reads the job, does its work, writes through a
    status-guarded repository method and emits the next event. Handlers are
    safe to replay: a guard that matches no row means another delivery already
    advanced the job, and the handler stops without emitting.
    """

    def __init__(
        self,
        *,
        scrape_provider: Optional[ScrapeProvider] = None,
        providers: Optional[Mapping[ProviderRoute, AnalysisProvider]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        wait_policy: Optional[WaitPolicy] = None,
        fallback_analyzer: Optional[FallbackAnalyzer] = None,
        session_factory: SessionFactory = session_scope,
    ) -> None:
        self._scrape_provider = scrape_provider
        self._providers = providers
        self.rate_limiter = rate_limiter
        self.wait_policy = wait_policy
        self.fallback_analyzer = fallback_analyzer
        self.session_factory = session_factory

    @property
    def scrape_provider(self) -> ScrapeProvider:
        if self._scrape_provider is None:
            self._scrape_provider = ApifyScrapeProvider()
        return self._scrape_provider

    @property
    def providers(self) -> Mapping[ProviderRoute, AnalysisProvider]:
        if self._providers is None:
            self._providers = build_default_providers()
        return self._providers

    def build_processor(
        self,
        *,
        fallback_enabled: Optional[bool] = None,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> DelayProcessor:
        return DelayProcessor(
            providers=self.providers,
            rate_limiter=self.rate_limiter,
            wait_policy=self.wait_policy,
            fallback_analyzer=self.fallback_analyzer,
            fallback_enabled=fallback_enabled,
            heartbeat=heartbeat,
        )

    def register(self, dispatcher: LocalEventDispatcher) -> None:
        for name in STAGE_EVENTS:
            dispatcher.subscribe(name, lambda event, d=dispatcher: self.handle_event(event, d))

    # Admission

    def admit(
        self,
        org_id: Optional[str],
        keyword: str,
        requested_count: int,
        *,
        dispatcher: EventDispatcher,
        job_id: Optional[str] = None,
        region: Optional[str] = None,
        active_status: Optional[str] = None,
        fallback_enabled: Optional[bool] = None,
    ) -> AdmissionResult:
        keyword = (keyword or "").strip()
        if not keyword:
            raise InvalidJobRequest("keyword is required")
        if len(keyword) > MAX_KEYWORD_LENGTH:
            raise InvalidJobRequest(f"keyword must be at most {MAX_KEYWORD_LENGTH} characters")
        if isinstance(requested_count, bool) or not isinstance(requested_count, int) or requested_count < 1:
            raise InvalidJobRequest("requested_count must be a positive integer")
        if job_id is not None:
            job_id = job_id.strip()
            if not job_id or len(job_id) > MAX_JOB_ID_LENGTH:
                raise InvalidJobRequest(f"job_id must be 1-{MAX_JOB_ID_LENGTH} characters")
        normalized_org = validate_org_id(org_id)
        job_id = job_id or str(uuid4())
        input_payload: Dict[str, Any] = {
            "region": (region or settings.SCRAPE_DEFAULT_REGION).upper(),
            "active_status": active_status or settings.SCRAPE_ACTIVE_STATUS,
            "fallback_enabled": settings.ANALYSIS_FALLBACK_ENABLED if fallback_enabled is None else fallback_enabled,
        }

        with self.session_factory() as session:
            org = OrgsRepository(session).get(normalized_org)
            if not org:
                raise InvalidOrganization(org_id)
            cap = per_request_cap(org.plan)
            if requested_count > cap:
                raise InvalidJobRequest(f"requested_count exceeds the {org.plan} plan limit of {cap} ads per job")

            jobs = JobsRepository(session)
            if jobs.exists(job_id):
                raise JobAlreadyExists(job_id)

            ledger = QuotaLedger(session)
            reservation = ledger.check_and_reserve(
                normalized_org,
                requested_count,
                job_id=job_id,
                description=f"scrape {keyword!r}",
            )
            try:
                jobs.add_pending(
                    job_id=job_id,
                    org_id=normalized_org,
                    keyword=keyword,
                    requested_count=requested_count,
                    input_payload=input_payload,
                )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                ledger.release(normalized_org, requested_count, job_id=job_id, description="job creation conflict")
                raise JobAlreadyExists(job_id) from exc
            except Exception:
                session.rollback()
                ledger.release(normalized_org, requested_count, job_id=job_id, description="job creation failed")
                raise

            job = jobs.mark_running(job_id)
            status = job.status if job else JOB_STATUS_RUNNING

        events = [
            JobEvent(
                JOB_CREATED,
                job_id,
                {"org_id": normalized_org, "keyword": keyword, "requested_count": requested_count},
            ),
            JobEvent(
                SCRAPE_REQUESTED,
                job_id,
                {
                    "keyword": keyword,
                    "max_items": requested_count,
                    "region": input_payload["region"],
                    "active_status": input_payload["active_status"],
                },
            ),
        ]
        logger.info(
            "jobs.admitted",
            extra={
                "job_id": job_id,
                "org_id": normalized_org,
                "keyword": keyword,
                "requested_count": requested_count,
                "quota_used": reservation.used,
                "quota_limit": reservation.limit,
            },
        )
        dispatcher.emit_all(events)
        return AdmissionResult(
            job_id=job_id,
            org_id=normalized_org,
            status=status,
            reservation=reservation,
            events=events,
        )

    def abandon(self, admission: AdmissionResult, error: str) -> bool:
        """
        Fail an admitted job whose events never left the process.

        Nothing was scraped, so the reservation is given back. Returns False
        when the job had already moved on and was left untouched.
        """
        with self.session_factory() as session:
            job = JobsRepository(session).mark_failed(admission.job_id, error=error)
            if job is None:
                logger.info("jobs.abandon_ignored", extra={"job_id": admission.job_id})
                return False
            QuotaLedger(session).release(
                admission.org_id,
                admission.reservation.reserved,
                job_id=admission.job_id,
                description="job dispatch failed",
            )
        logger.warning("jobs.abandoned", extra={"job_id": admission.job_id, "error": error})
        return True

    def fail_job(self, job_id: str, error: str, dispatcher: EventDispatcher) -> None:
        """Fail a running job from outside its stage handlers (lost worker, runaway event loop)."""
        self._fail(job_id, error, dispatcher)

    # Stage handlers

    def handle_event(
        self,
        event: JobEvent,
        dispatcher: EventDispatcher,
        *,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> None:
        """Run the stage handler for one event; `heartbeat` is called while analysis makes progress."""
        handlers = {
            SCRAPE_REQUESTED: self.on_scrape_requested,
            SCRAPE_COMPLETED: self.on_scrape_completed,
            SCRAPE_FAILED: self.on_scrape_failed,
            ANALYSIS_REQUESTED: self.on_analysis_requested,
        }
        handler = handlers.get(event.name)
        if handler is None:
            logger.debug("jobs.event_ignored", extra={"event": event.name, "job_id": event.job_id})
            return
        if heartbeat is not None and event.name == ANALYSIS_REQUESTED:
            handler = functools.partial(handler, heartbeat=heartbeat)
        try:
            handler(event, dispatcher)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "jobs.stage_failed",
                extra={"event": event.name, "job_id": event.job_id, "event_id": event.id},
            )
            self._fail(event.job_id, f"{event.name} failed: {exc}", dispatcher)

    def on_scrape_requested(self, event: JobEvent, dispatcher: EventDispatcher) -> None:
        with self.session_factory() as session:
            job = JobsRepository(session).get(event.job_id)
            if job is None or job.status != JOB_STATUS_RUNNING or job.raw_result is not None:
                logger.info(
                    "jobs.scrape_skipped",
                    extra={"job_id": event.job_id, "status": job.status if job else None},
                )
                return
            job_input = dict(job.input or {})
            request = ScrapeRequest(
                keyword=event.data.get("keyword") or job.keyword,
                max_items=job.requested_count,
                region=event.data.get("region") or job_input.get("region") or settings.SCRAPE_DEFAULT_REGION,
                active_status=(
                    event.data.get("active_status")
                    or job_input.get("active_status")
                    or settings.SCRAPE_ACTIVE_STATUS
                ),
            )

        try:
            result = self.scrape_provider.scrape(request)
        except ScrapeFailed as exc:
            logger.warning(
                "jobs.scrape_provider_failed",
                extra={"job_id": event.job_id, "run_id": exc.run_id, "error": str(exc)},
            )
            dispatcher.emit(JobEvent(SCRAPE_FAILED, event.job_id, {"error": str(exc), "run_id": exc.run_id}))
            return

        with self.session_factory() as session:
            stored = JobsRepository(session).store_raw_result(
                event.job_id,
                raw_result=list(result.items),
                scrape_run_id=result.run_id,
            )
        if stored is None:
            logger.info("jobs.scrape_result_discarded", extra={"job_id": event.job_id, "run_id": result.run_id})
            return
        dispatcher.emit(
            JobEvent(SCRAPE_COMPLETED, event.job_id, {"run_id": result.run_id, "item_count": len(result.items)})
        )

    def on_scrape_completed(self, event: JobEvent, dispatcher: EventDispatcher) -> None:
        items = event.data.get("items")
        with self.session_factory() as session:
            jobs = JobsRepository(session)
            if items is not None:
                jobs.store_raw_result(event.job_id, raw_result=list(items), scrape_run_id=event.data.get("run_id"))
            job = jobs.get(event.job_id)
            if job is None or job.status != JOB_STATUS_RUNNING:
                logger.info(
                    "jobs.scrape_completed_ignored",
                    extra={"job_id": event.job_id, "status": job.status if job else None},
                )
                return
            item_count = len(job.raw_result or [])
        logger.info("jobs.scrape_completed", extra={"job_id": event.job_id, "items": item_count})
        dispatcher.emit(JobEvent(ANALYSIS_REQUESTED, event.job_id, {"item_count": item_count}))

    def on_scrape_failed(self, event: JobEvent, dispatcher: EventDispatcher) -> None:
        error = event.data.get("error") or "Scrape provider failed"
        # Quota reserved at admission is not refunded on scrape failure.
        self._fail(event.job_id, f"Scrape failed: {error}", dispatcher)

    def on_analysis_requested(
        self,
        event: JobEvent,
        dispatcher: EventDispatcher,
        *,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> None:
        with self.session_factory() as session:
            job = JobsRepository(session).claim_analysis(event.job_id)
            if job is None:
                logger.info("jobs.analysis_already_claimed", extra={"job_id": event.job_id})
                return
            org_id = job.org_id
            raw_items = list(job.raw_result or [])
            job_input = dict(job.input or {})

        items = normalize_ad_items(raw_items)
        if not items:
            self._fail(
                event.job_id,
                "No ads returned by the scrape provider",
                dispatcher,
                output={"total": 0, "raw_items": len(raw_items)},
            )
            return

        processor = self.build_processor(fallback_enabled=job_input.get("fallback_enabled"), heartbeat=heartbeat)

        def persist(outcome: ItemOutcome) -> None:
            with self.session_factory() as session:
                AnalysesRepository(session).add(
                    job_id=event.job_id,
                    org_id=org_id,
                    position=outcome.position,
                    fields=outcome.record_fields(),
                )

        report = processor.process(items, on_outcome=persist, job_id=event.job_id)
        output = report.summary()
        output["raw_items"] = len(raw_items)

        if not report.any_usable:
            self._fail(event.job_id, _aggregate_error(report.errors), dispatcher, output=output)
            return

        with self.session_factory() as session:
            job = JobsRepository(session).mark_completed(event.job_id, output=output)
        if job is None:
            logger.info("jobs.completion_ignored", extra={"job_id": event.job_id})
            return
        logger.info(
            "jobs.completed",
            extra={
                "job_id": event.job_id,
                "succeeded": output["succeeded"],
                "fallback": output["fallback"],
                "failed": output["failed"],
            },
        )
        dispatcher.emit(
            JobEvent(
                JOB_COMPLETED,
                event.job_id,
                {"succeeded": output["succeeded"], "fallback": output["fallback"], "failed": output["failed"]},
            )
        )

    def _fail(
        self,
        job_id: str,
        error: str,
        dispatcher: EventDispatcher,
        *,
        output: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self.session_factory() as session:
            job = JobsRepository(session).mark_failed(job_id, error=error, output=output)
        if job is None:
            logger.info("jobs.failure_ignored", extra={"job_id": job_id, "error": error})
            return
        logger.warning("jobs.failed", extra={"job_id": job_id, "error": error})
        dispatcher.emit(JobEvent(JOB_FAILED, job_id, {"error": error[:MAX_ERROR_LENGTH]}))


def build_job_state_machine() -> JobStateMachine:
    return JobStateMachine()

"""
Sequential, rate-limited analysis of a job's scraped ads.

One processor instance drives one job: items are handled strictly in order,
each one waiting on the shared RateLimiter before its provider calls, retried
with exponential backoff on transient failures, and followed by a fixed
pacing delay. Every item ends as succeeded, fallback, or failed.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from adintel.ads.classifier import ROLE_MEDIA, ProviderRoute, classify, routes_for
from adintel.ads.types import AdItem
from adintel.config import settings
from adintel.db.enums import AnalysisStatusEnum, ContentCategoryEnum
from adintel.llm.providers import AnalysisProvider, ProviderError, ProviderResult
from adintel.services.ad_analysis import (
    build_call_content,
    combine_analysis,
    extract_competitor_strategy,
    extract_key_insights,
    extract_recommendations,
    extract_rewritten_copy,
    extract_summary,
    has_analyzable_content,
)
from adintel.services.fallback_analyzer import FALLBACK_MODEL, FallbackAnalyzer
from adintel.services.rate_limiter import CallSpec, RateDecision, RateLimiter, RateTicket, get_rate_limiter
from adintel.services.wait_policy import WaitPolicy

logger = logging.getLogger(__name__)

PROCESSING_SECONDS_PER_AD = 5.0
NO_CONTENT_REASON = "No analyzable content (missing text, images, and videos)"


@dataclass
class AttemptError:
    attempt: int
    message: str
    error_type: str
    status_code: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    retryable: bool = True

    @classmethod
    def from_exception(cls, attempt: int, exc: BaseException) -> "AttemptError":
        if isinstance(exc, ProviderError):
            return cls(
                attempt=attempt,
                message=str(exc),
                error_type=type(exc).__name__,
                status_code=exc.status_code,
                provider=exc.provider,
                model=exc.model,
                retryable=exc.retryable,
            )
        return cls(attempt=attempt, message=str(exc) or repr(exc), error_type=type(exc).__name__)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemOutcome:
    position: int
    item: AdItem
    category: ContentCategoryEnum
    status: str
    attempts: int = 0
    analysis: Dict[str, Any] = field(default_factory=dict)
    models_used: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_details: List[AttemptError] = field(default_factory=list)

    @property
    def fallback(self) -> bool:
        return self.status == AnalysisStatusEnum.fallback.value

    @property
    def usable(self) -> bool:
        return self.status in (AnalysisStatusEnum.succeeded.value, AnalysisStatusEnum.fallback.value)

    def record_fields(self) -> Dict[str, Any]:
        """Column values for the ad_analyses row of this item."""
        return {
            "ad_archive_id": self.item.ad_archive_id,
            "content_category": self.category.value,
            "status": self.status,
            "fallback": self.fallback,
            "attempts": self.attempts,
            "summary": extract_summary(self.analysis),
            "rewritten_copy": extract_rewritten_copy(self.analysis),
            "key_insights": extract_key_insights(self.analysis),
            "competitor_strategy": extract_competitor_strategy(self.analysis),
            "recommendations": extract_recommendations(self.analysis),
            "media_analysis": self.analysis.get("media_analysis"),
            "strategic_analysis": self.analysis.get("strategic_analysis"),
            "combined_analysis": self.analysis.get("combined_analysis"),
            "models_used": list(self.models_used),
            "error": self.error,
            "error_details": [detail.to_dict() for detail in self.error_details],
        }

    def error_entry(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "ad_archive_id": self.item.ad_archive_id,
            "content_type": self.category.value,
            "error": self.error,
            "attempts": self.attempts,
            "error_details": [detail.to_dict() for detail in self.error_details],
        }


@dataclass
class ProcessingReport:
    outcomes: List[ItemOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.status == AnalysisStatusEnum.succeeded.value]

    @property
    def fallbacks(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.status == AnalysisStatusEnum.fallback.value]

    @property
    def errors(self) -> List[ItemOutcome]:
        return [o for o in self.outcomes if o.status == AnalysisStatusEnum.failed.value]

    @property
    def any_usable(self) -> bool:
        return any(o.usable for o in self.outcomes)

    def by_category(self) -> Dict[str, List[ItemOutcome]]:
        grouped: Dict[str, List[ItemOutcome]] = {category.value: [] for category in ContentCategoryEnum}
        for outcome in self.outcomes:
            if outcome.usable:
                grouped[outcome.category.value].append(outcome)
        return grouped

    def summary(self) -> Dict[str, Any]:
        return {
            "total": len(self.outcomes),
            "succeeded": len(self.succeeded),
            "fallback": len(self.fallbacks),
            "failed": len(self.errors),
            "by_category": {key: len(value) for key, value in self.by_category().items()},
            "errors": [o.error_entry() for o in self.errors],
        }


def calculate_processing_time(
    ad_count: int,
    *,
    item_delay_seconds: Optional[float] = None,
    processing_seconds_per_ad: float = PROCESSING_SECONDS_PER_AD,
) -> Dict[str, Any]:
    """Rough wall-clock estimate for analyzing `ad_count` ads with pacing."""
    delay = settings.ANALYSIS_ITEM_DELAY_SECONDS if item_delay_seconds is None else item_delay_seconds
    count = max(0, int(ad_count))
    total_delay = delay * max(0, count - 1)
    processing = processing_seconds_per_ad * count
    total = total_delay + processing
    return {
        "ads": count,
        "delay_per_ad_seconds": delay,
        "total_delay_seconds": total_delay,
        "processing_seconds": processing,
        "total_seconds": total,
        "estimated_minutes": round(total / 60.0, 1),
    }


class DelayProcessor:
    def __init__(
        self,
        *,
        providers: Mapping[ProviderRoute, AnalysisProvider],
        rate_limiter: Optional[RateLimiter] = None,
        wait_policy: Optional[WaitPolicy] = None,
        fallback_analyzer: Optional[FallbackAnalyzer] = None,
        fallback_enabled: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        estimated_tokens: Optional[int] = None,
        fallback_min_wait_seconds: Optional[float] = None,
        heartbeat: Optional[Callable[[], None]] = None,
    ) -> None:
        self.providers = dict(providers)
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.wait_policy = wait_policy or WaitPolicy()
        self.fallback_analyzer = fallback_analyzer or FallbackAnalyzer()
        self.fallback_enabled = (
            settings.ANALYSIS_FALLBACK_ENABLED if fallback_enabled is None else fallback_enabled
        )
        self.max_attempts = max(1, max_attempts or settings.ANALYSIS_MAX_ATTEMPTS)
        self.estimated_tokens = estimated_tokens or settings.ANALYSIS_ESTIMATED_TOKENS
        self.fallback_min_wait_seconds = (
            settings.ANALYSIS_FALLBACK_MIN_WAIT_SECONDS
            if fallback_min_wait_seconds is None
            else fallback_min_wait_seconds
        )
        self._heartbeat = heartbeat

    def _beat(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat()

    def _falls_back(self, decision: RateDecision) -> bool:
        """Fallback replaces only waits longer than the configured minimum (daily budgets, in practice)."""
        return self.fallback_enabled and decision.wait_seconds > self.fallback_min_wait_seconds

    def process(
        self,
        items: Sequence[AdItem],
        *,
        on_outcome: Optional[Callable[[ItemOutcome], None]] = None,
        job_id: Optional[str] = None,
    ) -> ProcessingReport:
        report = ProcessingReport()
        total = len(items)
        logger.info(
            "analysis.started",
            extra={"job_id": job_id, "items": total, "estimate": calculate_processing_time(total)},
        )
        for position, item in enumerate(items):
            self._beat()
            outcome = self.process_item(position, item, job_id=job_id)
            report.outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)
            if position < total - 1:
                self._beat()
                self.wait_policy.pause_between_items()

        logger.info("analysis.finished", extra={"job_id": job_id, **report.summary()})
        return report

    def process_item(self, position: int, item: AdItem, *, job_id: Optional[str] = None) -> ItemOutcome:
        # Classified once; retries reuse the same routes.
        category = classify(item)
        if not has_analyzable_content(item):
            return self._fallback_outcome(position, item, category, attempts=0, reason=NO_CONTENT_REASON)

        routes = routes_for(category)
        calls = [CallSpec(route.provider, route.model, self.estimated_tokens) for route in routes]
        while True:
            decision = self.rate_limiter.can_proceed_all(calls)
            if decision.allowed:
                break
            logger.info(
                "analysis.rate_limited",
                extra={
                    "job_id": job_id,
                    "position": position,
                    "provider": decision.provider,
                    "model": decision.model,
                    "reason": decision.reason,
                    "wait_millis": decision.wait_millis,
                    "fallback_enabled": self.fallback_enabled,
                },
            )
            if self._falls_back(decision):
                return self._fallback_outcome(position, item, category, attempts=0)
            self._beat()
            self.wait_policy.wait_for_rate_limit(decision.wait_seconds)

        completed: Dict[ProviderRoute, ProviderResult] = {}
        errors: List[AttemptError] = []
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            try:
                for route in routes:
                    if route in completed:
                        continue
                    media_result = completed.get(routes[0]) if routes[0].role == ROLE_MEDIA else None
                    content = build_call_content(
                        item,
                        category,
                        route,
                        media_result.analysis if media_result else None,
                    )
                    ticket = self._acquire(route, job_id=job_id, position=position)
                    if ticket is None:
                        return self._fallback_outcome(
                            position, item, category, attempts=attempt, error_details=errors
                        )
                    result = self._provider(route).analyze(content=content, content_type=category.value)
                    self.rate_limiter.settle(ticket, result.tokens_used)
                    completed[route] = result
                return self._success_outcome(position, item, category, routes, completed, attempts=attempt)
            except Exception as exc:  # noqa: BLE001
                detail = AttemptError.from_exception(attempt, exc)
                errors.append(detail)
                logger.warning(
                    "analysis.attempt_failed",
                    extra={
                        "job_id": job_id,
                        "position": position,
                        "ad_archive_id": item.ad_archive_id,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "status_code": detail.status_code,
                        "retryable": detail.retryable,
                        "error": detail.message,
                    },
                )
                if not detail.retryable:
                    break
                if attempt < self.max_attempts:
                    self._beat()
                    self.wait_policy.wait_before_retry(attempt)

        # A vendor-side 429 that outlasted every retry is a rate limit, not a content problem.
        if self.fallback_enabled and errors and errors[-1].status_code == 429:
            return self._fallback_outcome(position, item, category, attempts=attempt, error_details=errors)

        last = errors[-1] if errors else None
        message = f"Analysis failed after {attempt} attempt(s)"
        if last is not None:
            message = f"{message}: {last.message}"
        logger.error(
            "analysis.item_failed",
            extra={
                "job_id": job_id,
                "position": position,
                "ad_archive_id": item.ad_archive_id,
                "content_type": category.value,
                "attempts": attempt,
                "error": message,
            },
        )
        return ItemOutcome(
            position=position,
            item=item,
            category=category,
            status=AnalysisStatusEnum.failed.value,
            attempts=attempt,
            models_used=[f"{r.provider}:{r.model}" for r in completed.values()],
            error=message,
            error_details=list(errors),
        )

    def _provider(self, route: ProviderRoute) -> AnalysisProvider:
        provider = self.providers.get(route)
        if provider is None:
            raise ProviderError(
                f"No provider configured for {route.role} {route.provider}:{route.model}",
                provider=route.provider,
                model=route.model,
                retryable=False,
            )
        return provider

    def _acquire(self, route: ProviderRoute, *, job_id: Optional[str], position: int) -> Optional[RateTicket]:
        """Reserve a slot for one call; None means fall back instead of waiting."""
        while True:
            decision = self.rate_limiter.acquire(route.provider, route.model, self.estimated_tokens)
            if decision.allowed:
                return decision.ticket
            if self._falls_back(decision):
                return None
            logger.info(
                "analysis.waiting_for_rate_limit",
                extra={
                    "job_id": job_id,
                    "position": position,
                    "provider": route.provider,
                    "model": route.model,
                    "reason": decision.reason,
                    "wait_millis": decision.wait_millis,
                },
            )
            self._beat()
            self.wait_policy.wait_for_rate_limit(decision.wait_seconds)

    def _success_outcome(
        self,
        position: int,
        item: AdItem,
        category: ContentCategoryEnum,
        routes: Sequence[ProviderRoute],
        completed: Mapping[ProviderRoute, ProviderResult],
        *,
        attempts: int,
    ) -> ItemOutcome:
        media = next((completed[r].analysis for r in routes if r.role == ROLE_MEDIA), None)
        strategic = next(completed[r].analysis for r in routes if r.role != ROLE_MEDIA)
        analysis = {
            "media_analysis": media,
            "strategic_analysis": strategic,
            "combined_analysis": combine_analysis(category, media, strategic),
        }
        return ItemOutcome(
            position=position,
            item=item,
            category=category,
            status=AnalysisStatusEnum.succeeded.value,
            attempts=attempts,
            analysis=analysis,
            models_used=[f"{completed[r].provider}:{completed[r].model}" for r in routes],
        )

    def _fallback_outcome(
        self,
        position: int,
        item: AdItem,
        category: ContentCategoryEnum,
        *,
        attempts: int,
        reason: Optional[str] = None,
        error_details: Optional[List[AttemptError]] = None,
    ) -> ItemOutcome:
        analysis = self.fallback_analyzer.analyze(item, category)
        if reason:
            analysis["reason"] = reason
        return ItemOutcome(
            position=position,
            item=item,
            category=category,
            status=AnalysisStatusEnum.fallback.value,
            attempts=attempts,
            analysis=analysis,
            models_used=[FALLBACK_MODEL],
            error_details=list(error_details or []),
        )

    def rate_limit_status(self) -> Dict[str, Dict[str, Any]]:
        return self.rate_limiter.status()

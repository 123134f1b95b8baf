from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from adintel.ads.classifier import ROLE_MEDIA, ROUTES, ProviderRoute
from adintel.ads.scrape_provider import ScrapeFailed, ScrapeProvider
from adintel.ads.types import ScrapeRequest, ScrapeResult
from adintel.db.base import Base
from adintel.db.deps import get_session
from adintel.db.models import Org
from adintel.db.repositories.orgs import OrgsRepository
from adintel.events.dispatcher import CollectingEventDispatcher
from adintel.llm.providers import AnalysisProvider, ProviderResult
from adintel.main import app
from adintel.routers.deps import get_event_dispatcher, get_job_state_machine
from adintel.services.job_state_machine import JobStateMachine
from adintel.services.quota_ledger import PLAN_LIMITS
from adintel.services.rate_limiter import DEFAULT_LIMITS, RateLimiter
from adintel.services.wait_policy import WaitPolicy


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def strategic_analysis(ad_id: Optional[str]) -> Dict[str, Any]:
    return {
        "summary": f"Summary for {ad_id}",
        "rewrittenAdCopy": f"Rewritten copy for {ad_id}",
        "keyInsights": ["Clear offer", "Strong urgency"],
        "competitorStrategy": "Discount-led acquisition",
        "recommendations": ["Test a testimonial hook"],
    }


def media_analysis(ad_id: Optional[str]) -> Dict[str, Any]:
    return {
        "visualElements": ["Product shot"],
        "visualAppeal": "High",
        "brandConsistency": "Consistent",
        "contentSummary": f"Media for {ad_id}",
        "recommendations": ["Add captions"],
    }


class FakeProvider(AnalysisProvider):
    """Scripted provider: each call consumes the next script entry (an exception or an analysis dict)."""

    def __init__(self, route: ProviderRoute, script: Optional[Iterable[Any]] = None, tokens: int = 500) -> None:
        super().__init__(route.model)
        self.route = route
        self.role = route.role
        self.provider = route.provider
        self.script = list(script or [])
        self.tokens = tokens
        self.calls: List[Dict[str, Any]] = []

    def analyze(self, *, content: Dict[str, Any], content_type: str) -> ProviderResult:
        self.calls.append(dict(content, content_type=content_type))
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, BaseException):
                raise step
            analysis = step
        elif self.role == ROLE_MEDIA:
            analysis = media_analysis(content.get("ad_archive_id"))
        else:
            analysis = strategic_analysis(content.get("ad_archive_id"))
        return ProviderResult(analysis=analysis, provider=self.provider, model=self.model, tokens_used=self.tokens)


def build_fake_providers() -> Dict[ProviderRoute, FakeProvider]:
    providers: Dict[ProviderRoute, FakeProvider] = {}
    for routes in ROUTES.values():
        for route in routes:
            providers.setdefault(route, FakeProvider(route))
    return providers


class FakeScrapeProvider(ScrapeProvider):
    def __init__(self, items: Optional[List[Dict[str, Any]]] = None, error: Optional[str] = None) -> None:
        self.items = items or []
        self.error = error
        self.requests: List[ScrapeRequest] = []

    def scrape(self, request: ScrapeRequest) -> ScrapeResult:
        self.requests.append(request)
        if self.error:
            raise ScrapeFailed(self.error, run_id="run-failed")
        return ScrapeResult(items=list(self.items[: request.max_items]), run_id="run-1")


def ad_payload(
    ad_id: str,
    text: str = "Shop the spring sale today!",
    *,
    images: Optional[List[str]] = None,
    videos: Optional[List[str]] = None,
    page_name: str = "Acme",
) -> Dict[str, Any]:
    return {
        "ad_archive_id": ad_id,
        "snapshot": {
            "body": {"text": text},
            "page_name": page_name,
            "cta_text": "Shop now",
            "title": "Spring sale",
            "images": [{"original_image_url": url} for url in images or []],
            "videos": [{"video_hd_url": url} for url in videos or []],
        },
    }


class FakeTemporalHandle:
    def __init__(self, workflow_id: str):
        self.id = workflow_id
        self.first_execution_run_id = f"{workflow_id}-run"


class FakeTemporalClient:
    def __init__(self) -> None:
        self.started: list[str] = []
        self.calls: list[tuple[tuple, dict]] = []

    async def start_workflow(self, *args, **kwargs) -> FakeTemporalHandle:
        workflow_id = kwargs.get("id") or "test-workflow"
        self.started.append(workflow_id)
        self.calls.append((args, kwargs))
        return FakeTemporalHandle(workflow_id)


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

    @contextmanager
    def factory():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    return factory


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def make_org(session_factory) -> Callable[..., str]:
    def _make(
        org_id: str = "org-acme",
        *,
        plan: str = "free",
        used: int = 0,
        limit: Optional[int] = None,
        **fields: Any,
    ) -> str:
        with session_factory() as session:
            org = OrgsRepository(session).create(
                name=f"{org_id} inc",
                plan=plan,
                quota_limit=PLAN_LIMITS[plan] if limit is None else limit,
                org_id=org_id,
            )
            org.quota_used = used
            for key, value in fields.items():
                setattr(org, key, value)
            session.commit()
            return org_id

    return _make


def load_org(session_factory, org_id: str) -> Org:
    with session_factory() as session:
        org = OrgsRepository(session).get(org_id)
        session.expunge(org)
        return org


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def rate_limiter(fake_clock) -> RateLimiter:
    return RateLimiter(DEFAULT_LIMITS, clock=fake_clock)


@pytest.fixture()
def wait_policy(fake_clock) -> WaitPolicy:
    return WaitPolicy(
        item_delay_seconds=8.0,
        backoff_base_seconds=1.0,
        max_backoff_seconds=60.0,
        sleep=fake_clock.sleep,
    )


@pytest.fixture()
def fake_providers() -> Dict[ProviderRoute, FakeProvider]:
    return build_fake_providers()


@pytest.fixture()
def scrape_provider() -> FakeScrapeProvider:
    return FakeScrapeProvider(items=[ad_payload(f"ad-{i}") for i in range(3)])


@pytest.fixture()
def state_machine(session_factory, scrape_provider, fake_providers, rate_limiter, wait_policy) -> JobStateMachine:
    return JobStateMachine(
        scrape_provider=scrape_provider,
        providers=fake_providers,
        rate_limiter=rate_limiter,
        wait_policy=wait_policy,
        session_factory=session_factory,
    )


@pytest.fixture()
def published_events() -> CollectingEventDispatcher:
    return CollectingEventDispatcher()


@pytest.fixture()
def api_client(session_factory, state_machine, published_events):
    def _get_session():
        with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_job_state_machine] = lambda: state_machine
    app.dependency_overrides[get_event_dispatcher] = lambda: published_events
    try:
        with TestClient(app) as client:
            yield client
    finally:
        app.dependency_overrides.clear()

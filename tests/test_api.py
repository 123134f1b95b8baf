from fastapi.testclient import TestClient

from adintel.events.dispatcher import JOB_CREATED, SCRAPE_REQUESTED, LocalEventDispatcher, TemporalEventDispatcher
from adintel.main import app
from adintel.routers.deps import get_event_dispatcher

HEADERS = {"X-Org-Id": "org-acme"}


def test_health_endpoints():
    with TestClient(app) as client:
        health = client.get("/health")
        db_health = client.get("/health/db")

    assert health.status_code == 200
    assert health.json() == {"ok": True}
    assert db_health.status_code == 200
    assert "db" in db_health.json()


def test_create_job_admits_and_publishes(api_client, published_events, make_org):
    make_org("org-acme", used=2)

    resp = api_client.post("/jobs", headers=HEADERS, json={"keyword": "running shoes", "count": 3, "job_id": "job-1"})

    assert resp.status_code == 202
    body = resp.json()
    assert body["job_id"] == "job-1"
    assert body["status"] == "running"
    assert (body["quota_used"], body["quota_limit"], body["quota_remaining"]) == (5, 10, 5)
    assert body["estimate"]["ads"] == 3
    assert [e.name for e in published_events.events] == [JOB_CREATED, SCRAPE_REQUESTED]
    assert all(e.job_id == "job-1" for e in published_events.events)


def test_create_job_over_quota_returns_402(api_client, published_events, make_org):
    make_org("org-acme", used=8)

    resp = api_client.post("/jobs", headers=HEADERS, json={"keyword": "shoes", "count": 5})

    assert resp.status_code == 402
    body = resp.json()
    assert (body["used"], body["limit"], body["requested"], body["remaining"]) == (8, 10, 5, 2)
    assert published_events.events == []
    assert api_client.get("/jobs", headers=HEADERS).json() == []


def test_placeholder_org_header_returns_400(api_client):
    resp = api_client.post("/jobs", headers={"X-Org-Id": "default"}, json={"keyword": "shoes", "count": 1})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "placeholder"


def test_missing_org_header_returns_400(api_client):
    resp = api_client.get("/quota")
    assert resp.status_code == 400
    assert resp.json()["reason"] == "missing"


def test_unknown_org_returns_404(api_client):
    resp = api_client.post("/jobs", headers={"X-Org-Id": "org-ghost"}, json={"keyword": "shoes", "count": 1})
    assert resp.status_code == 404


def test_duplicate_job_id_returns_409(api_client, make_org):
    make_org("org-acme")
    payload = {"keyword": "shoes", "count": 2, "job_id": "job-dup"}

    assert api_client.post("/jobs", headers=HEADERS, json=payload).status_code == 202
    resp = api_client.post("/jobs", headers=HEADERS, json=payload)

    assert resp.status_code == 409
    assert resp.json()["job_id"] == "job-dup"
    assert api_client.get("/quota", headers=HEADERS).json()["used"] == 2


def test_count_over_plan_cap_returns_422(api_client, make_org):
    make_org("org-acme", limit=500)
    resp = api_client.post("/jobs", headers=HEADERS, json={"keyword": "shoes", "count": 50})
    assert resp.status_code == 422


def test_invalid_body_returns_422(api_client, make_org):
    make_org("org-acme")
    assert api_client.post("/jobs", headers=HEADERS, json={"keyword": "", "count": 1}).status_code == 422
    assert api_client.post("/jobs", headers=HEADERS, json={"keyword": "shoes", "count": 0}).status_code == 422


def test_get_job_returns_status_and_analyses(api_client, published_events, state_machine, make_org):
    make_org("org-acme")
    api_client.post("/jobs", headers=HEADERS, json={"keyword": "shoes", "count": 3, "job_id": "job-1"})

    running = api_client.get("/jobs/job-1", headers=HEADERS)
    assert running.status_code == 200
    assert running.json()["status"] == "running"
    assert running.json()["analyses"] == []

    dispatcher = LocalEventDispatcher()
    state_machine.register(dispatcher)
    dispatcher.emit_all(published_events.drain())

    resp = api_client.get("/jobs/job-1", headers=HEADERS)
    body = resp.json()
    assert body["status"] == "completed"
    assert body["output"]["succeeded"] == 3
    assert [a["position"] for a in body["analyses"]] == [0, 1, 2]
    assert body["analyses"][0]["summary"] == "Summary for ad-0"
    assert body["analyses"][0]["models_used"] == ["openai:gpt-4o-mini"]

    listed = api_client.get("/jobs", headers=HEADERS).json()
    assert [job["id"] for job in listed] == ["job-1"]


def test_job_of_another_org_is_not_found(api_client, make_org):
    make_org("org-acme")
    make_org("org-other")
    api_client.post("/jobs", headers=HEADERS, json={"keyword": "shoes", "count": 1, "job_id": "job-1"})

    resp = api_client.get("/jobs/job-1", headers={"X-Org-Id": "org-other"})
    assert resp.status_code == 404


def test_quota_status_and_estimate(api_client, make_org):
    make_org("org-acme", used=4)

    quota = api_client.get("/quota", headers=HEADERS).json()
    assert (quota["plan"], quota["used"], quota["limit"], quota["remaining"], quota["percentage"]) == (
        "free",
        4,
        10,
        6,
        40,
    )

    estimate = api_client.get("/quota/estimate", params={"count": 8}, headers=HEADERS).json()
    assert estimate["allowed"] is False
    assert estimate["remaining"] == 6
    assert estimate["estimate"]["ads"] == 8


def test_rate_limits_lists_configured_models(api_client):
    resp = api_client.get("/rate-limits")
    assert resp.status_code == 200
    models = resp.json()["models"]
    assert models["openai:gpt-4o-mini"]["limits"]["rpm"] == 3
    assert "gemini:gemini-2.5-flash" in models


class _UnreachableTemporalClient:
    async def start_workflow(self, *args, **kwargs):
        raise RuntimeError("temporal unreachable")


def test_dispatch_failure_fails_job_and_releases_quota(api_client, make_org):
    make_org("org-acme", used=2)
    app.dependency_overrides[get_event_dispatcher] = lambda: TemporalEventDispatcher(
        _UnreachableTemporalClient(), task_queue="adintel-test"
    )

    resp = api_client.post("/jobs", headers=HEADERS, json={"keyword": "shoes", "count": 3, "job_id": "job-x"})

    assert resp.status_code == 503
    job = api_client.get("/jobs/job-x", headers=HEADERS).json()
    assert job["status"] == "failed"
    assert "temporal unreachable" in job["error"]
    assert api_client.get("/quota", headers=HEADERS).json()["used"] == 2

import httpx
import pytest

from adintel.ads.apify_client import ApifyClient
from adintel.ads.scrape_provider import ApifyScrapeProvider, ScrapeFailed, build_ad_library_search_url
from adintel.ads.types import ScrapeRequest
from tests.conftest import ad_payload


def _provider(handler, sleeps=None) -> ApifyScrapeProvider:
    client = ApifyClient(
        token="apify-test",
        base_url="https://apify.test/v2",
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=(sleeps.append if sleeps is not None else lambda _seconds: None),
    )
    return ApifyScrapeProvider(client, actor_id="actor~ads", poll_interval_seconds=2, max_wait_seconds=60)


def test_scrape_runs_actor_polls_and_fetches_dataset():
    seen = []
    statuses = iter(["RUNNING", "SUCCEEDED"])
    sleeps: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        assert request.url.params["token"] == "apify-test"
        if request.url.path == "/v2/acts/actor~ads/runs":
            return httpx.Response(201, json={"data": {"id": "run-9"}})
        if request.url.path == "/v2/actor-runs/run-9":
            return httpx.Response(200, json={"data": {"status": next(statuses), "defaultDatasetId": "ds-1"}})
        if request.url.path == "/v2/datasets/ds-1/items":
            assert request.url.params["limit"] == "2"
            return httpx.Response(200, json=[ad_payload("a"), ad_payload("b"), ad_payload("c")])
        return httpx.Response(404)

    result = _provider(handler, sleeps).scrape(ScrapeRequest(keyword="shoes", max_items=2, region="GB"))

    assert result.run_id == "run-9"
    assert [item["ad_archive_id"] for item in result.items] == ["a", "b"]
    assert sleeps == [2]
    assert seen[0] == ("POST", "/v2/acts/actor~ads/runs")


def test_failed_run_raises_scrape_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"data": {"id": "run-9"}})
        return httpx.Response(200, json={"data": {"status": "FAILED", "statusMessage": "Actor crashed"}})

    with pytest.raises(ScrapeFailed) as excinfo:
        _provider(handler).scrape(ScrapeRequest(keyword="shoes", max_items=5))

    assert str(excinfo.value) == "Actor crashed"
    assert excinfo.value.run_id == "run-9"


def test_run_that_outlives_max_wait_is_aborted():
    seen = []
    sleeps: list = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.url.path == "/v2/acts/actor~ads/runs":
            return httpx.Response(201, json={"data": {"id": "run-9"}})
        if request.url.path == "/v2/actor-runs/run-9/abort":
            return httpx.Response(200, json={"data": {"status": "ABORTING"}})
        return httpx.Response(200, json={"data": {"status": "RUNNING"}})

    with pytest.raises(ScrapeFailed) as excinfo:
        _provider(handler, sleeps).scrape(ScrapeRequest(keyword="shoes", max_items=5))

    assert "still running after 60s" in str(excinfo.value)
    assert excinfo.value.run_id == "run-9"
    assert seen[-1] == ("POST", "/v2/actor-runs/run-9/abort")
    assert sum(sleeps) == 60


def test_http_error_raises_scrape_failed():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="bad token")

    with pytest.raises(ScrapeFailed) as excinfo:
        _provider(handler).scrape(ScrapeRequest(keyword="shoes", max_items=5))

    assert "HTTP 401" in str(excinfo.value)
    assert excinfo.value.run_id is None


def test_actor_input_targets_keyword_search():
    provider = _provider(lambda request: httpx.Response(404))
    payload = provider.build_actor_input(ScrapeRequest(keyword="trail shoes", max_items=7, region="DE"))

    assert payload["count"] == 7
    assert payload["scrapePageAds.countryCode"] == "DE"
    assert payload["urls"][0]["url"] == build_ad_library_search_url("trail shoes", country="DE")
    assert "q=trail+shoes" in payload["urls"][0]["url"]


def test_client_requires_token(monkeypatch):
    from adintel.config import settings

    monkeypatch.setattr(settings, "APIFY_API_TOKEN", None)
    with pytest.raises(RuntimeError):
        ApifyClient()

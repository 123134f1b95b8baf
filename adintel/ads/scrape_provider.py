from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from adintel.ads.apify_client import ApifyClient
from adintel.ads.types import ScrapeRequest, ScrapeResult
from adintel.config import settings

logger = logging.getLogger(__name__)

AD_LIBRARY_URL = "https://www.facebook.com/ads/library/"


class ScrapeFailed(RuntimeError):
    def __init__(self, message: str, *, run_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class ScrapeProvider:
    """Collects ads matching a keyword. Implementations raise ScrapeFailed on any provider error."""

    def scrape(self, request: ScrapeRequest) -> ScrapeResult:
        raise NotImplementedError


def build_ad_library_search_url(keyword: str, *, country: str, active_status: str = "all") -> str:
    query = urlencode(
        {
            "active_status": active_status,
            "ad_type": "all",
            "country": country,
            "q": keyword,
            "search_type": "keyword_unordered",
            "media_type": "all",
        }
    )
    return f"{AD_LIBRARY_URL}?{query}"


class ApifyScrapeProvider(ScrapeProvider):
    """Keyword search against the Meta Ad Library through an Apify actor run."""

    def __init__(
        self,
        apify_client: Optional[ApifyClient] = None,
        *,
        actor_id: Optional[str] = None,
        poll_interval_seconds: Optional[float] = None,
        max_wait_seconds: Optional[float] = None,
    ) -> None:
        self.apify_client = apify_client or ApifyClient()
        self.actor_id = actor_id or settings.APIFY_ACTOR_ID
        self.poll_interval_seconds = poll_interval_seconds or settings.SCRAPE_POLL_INTERVAL_SECONDS
        self.max_wait_seconds = max_wait_seconds or settings.SCRAPE_MAX_WAIT_SECONDS

    def build_actor_input(self, request: ScrapeRequest) -> Dict[str, Any]:
        return {
            "count": request.max_items,
            "scrapeAdDetails": False,
            "scrapePageAds.activeStatus": request.active_status,
            "scrapePageAds.countryCode": request.region,
            "urls": [
                {"url": build_ad_library_search_url(request.keyword, country=request.region)},
            ],
        }

    def scrape(self, request: ScrapeRequest) -> ScrapeResult:
        payload = self.build_actor_input(request)
        run_id: Optional[str] = None
        try:
            run = self.apify_client.start_actor_run(self.actor_id, input_payload=payload)
            run_id = run.get("id") or run.get("runId")
            if not run_id:
                raise ScrapeFailed("Apify actor run did not return an id")
            logger.info(
                "scrape.run_started",
                extra={"run_id": run_id, "actor_id": self.actor_id, "keyword": request.keyword},
            )
            final_run = self.apify_client.wait_for_run(
                run_id,
                poll_interval_seconds=self.poll_interval_seconds,
                max_wait_seconds=self.max_wait_seconds,
            )
            status = (final_run.get("status") or "").upper()
            if status != "SUCCEEDED":
                message = final_run.get("statusMessage") or f"Apify run {run_id} finished with status {status}"
                raise ScrapeFailed(message, run_id=run_id)
            dataset_id = final_run.get("defaultDatasetId")
            if not dataset_id:
                raise ScrapeFailed(f"Apify run {run_id} has no dataset", run_id=run_id)
            items = self.apify_client.fetch_dataset_items(dataset_id, limit=request.max_items)
        except httpx.HTTPStatusError as exc:
            raise ScrapeFailed(
                f"Apify request failed with HTTP {exc.response.status_code}: {exc.response.text[:500]}",
                run_id=run_id,
            ) from exc
        except (httpx.HTTPError, TimeoutError) as exc:
            raise ScrapeFailed(f"Apify request failed: {exc}", run_id=run_id) from exc

        logger.info(
            "scrape.run_completed",
            extra={"run_id": run_id, "items": len(items), "keyword": request.keyword},
        )
        return ScrapeResult(items=items[: request.max_items], run_id=run_id)

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from adintel.config import settings

logger = logging.getLogger(__name__)

TERMINAL_RUN_STATUSES = frozenset({"SUCCEEDED", "FAILED", "TIMED_OUT", "ABORTED"})


class ApifyRunTimeout(TimeoutError):
    def __init__(self, run_id: str, waited_seconds: float) -> None:
        super().__init__(f"Apify run {run_id} still running after {int(waited_seconds)}s")
        self.run_id = run_id
        self.waited_seconds = waited_seconds


class ApifyClient:
    """Apify REST client for the Ad Library actor: start a run, wait for it, read its dataset."""

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        base_url: str | None = None,
        timeout_seconds: int = 30,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.token = token or settings.APIFY_API_TOKEN or ""
        if not self.token:
            raise RuntimeError("APIFY_API_TOKEN is required for Apify client")
        self.base_url = (base_url or settings.APIFY_API_URL).rstrip("/")
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep

    def _request(self, method: str, path: str, *, params: Optional[Dict[str, Any]] = None, **kwargs: Any) -> Any:
        query = {"token": self.token, **(params or {})}
        response = self._http.request(method, f"{self.base_url}{path}", params=query, **kwargs)
        response.raise_for_status()
        return response.json()

    def start_actor_run(self, actor_id: str, *, input_payload: Dict[str, Any]) -> Dict[str, Any]:
        body = self._request("POST", f"/acts/{actor_id}/runs", json=input_payload)
        return body.get("data") or {}

    def fetch_run(self, run_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/actor-runs/{run_id}").get("data") or {}

    def abort_run(self, run_id: str) -> None:
        try:
            self._request("POST", f"/actor-runs/{run_id}/abort")
        except httpx.HTTPError as exc:
            logger.warning("apify.abort_failed", extra={"run_id": run_id, "error": str(exc)})

    def wait_for_run(
        self, run_id: str, *, poll_interval_seconds: float = 5, max_wait_seconds: float = 300
    ) -> Dict[str, Any]:
        """Poll until the run reaches a terminal status; a run that outlives the wait is aborted."""
        waited = 0.0
        while True:
            run = self.fetch_run(run_id)
            if (run.get("status") or "").upper() in TERMINAL_RUN_STATUSES:
                return run
            if waited >= max_wait_seconds:
                self.abort_run(run_id)
                raise ApifyRunTimeout(run_id, waited)
            self._sleep(poll_interval_seconds)
            waited += poll_interval_seconds

    def fetch_dataset_items(self, dataset_id: str, *, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"format": "json", "clean": "true"}
        if limit:
            params["limit"] = limit
        items = self._request("GET", f"/datasets/{dataset_id}/items", params=params)
        return items if isinstance(items, list) else []

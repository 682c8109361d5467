from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx

from jobhunter.core.config import Settings, get_settings
from jobhunter.core.errors import ProviderError
from jobhunter.core.http import client_session, response_detail

logger = logging.getLogger(__name__)

APIFY_RUNNING_STATUSES = frozenset({"READY", "RUNNING"})
APIFY_SUCCEEDED = "SUCCEEDED"
QUOTA_STATUS_CODES = frozenset({402, 403, 429})


@dataclass(frozen=True, slots=True)
class ProviderRun:
    run_id: str
    status: str
    dataset_id: str | None = None


class ScrapeProvider(Protocol):
    name: str

    async def start_run(self, query: str, *, limit: int) -> ProviderRun: ...

    async def wait_for_run(self, run: ProviderRun) -> ProviderRun: ...

    async def fetch_items(self, run: ProviderRun) -> list[Any]: ...

    async def abort_run(self, run_id: str) -> None: ...


class ApifyProvider:
    """Runs a LinkedIn jobs actor through the Apify REST API."""

    name = "apify"

    def __init__(
        self,
        *,
        token: str | None,
        actor_id: str,
        base_url: str = "https://api.apify.com/v2",
        poll_interval_seconds: float = 5.0,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token = token
        self.actor_id = actor_id
        self.base_url = base_url.rstrip("/")
        self.poll_interval_seconds = poll_interval_seconds
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def start_run(self, query: str, *, limit: int) -> ProviderRun:
        actor_path = self.actor_id.replace("/", "~")
        payload = {
            "urls": [query],
            "count": limit,
            "scrapeCompany": True,
        }
        data = await self._request("POST", f"/acts/{actor_path}/runs", json=payload)
        run = _run_from_payload(data)
        logger.info("apify run started run_id=%s actor=%s", run.run_id, self.actor_id)
        return run

    async def wait_for_run(self, run: ProviderRun) -> ProviderRun:
        current = run
        while current.status in APIFY_RUNNING_STATUSES:
            await asyncio.sleep(self.poll_interval_seconds)
            data = await self._request("GET", f"/actor-runs/{current.run_id}")
            current = _run_from_payload(data, fallback=current)

        if current.status != APIFY_SUCCEEDED:
            raise ProviderError(f"scrape provider run {current.run_id} finished with status {current.status}")
        return current

    async def fetch_items(self, run: ProviderRun) -> list[Any]:
        if not run.dataset_id:
            raise ProviderError(f"scrape provider run {run.run_id} has no dataset")
        items = await self._request(
            "GET",
            f"/datasets/{run.dataset_id}/items",
            params={"clean": "true", "format": "json"},
        )
        if not isinstance(items, list):
            raise ProviderError("malformed provider payload: dataset items are not a list")
        return items

    async def abort_run(self, run_id: str) -> None:
        await self._request("POST", f"/actor-runs/{run_id}/abort")
        logger.info("apify run abort requested run_id=%s", run_id)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        if not self.token:
            raise ProviderError("scrape provider is not configured")

        headers = {"Authorization": f"Bearer {self.token}"}
        try:
            async with client_session(self._client, timeout=self.timeout_seconds) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderError("scrape provider timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"scrape provider unreachable: {exc}") from exc

        if response.status_code in QUOTA_STATUS_CODES:
            raise ProviderError(f"scrape provider rejected the request: {response_detail(response)}")
        if response.status_code >= 400:
            raise ProviderError(f"scrape provider error {response.status_code}: {response_detail(response)}")

        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError("malformed provider payload: response is not JSON") from exc


def _run_from_payload(payload: Any, *, fallback: ProviderRun | None = None) -> ProviderRun:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise ProviderError("malformed provider payload: missing run data")

    run_id = data.get("id") or (fallback.run_id if fallback else None)
    status = data.get("status")
    if not isinstance(run_id, str) or not isinstance(status, str):
        raise ProviderError("malformed provider payload: run id or status missing")

    dataset_id = data.get("defaultDatasetId")
    if not isinstance(dataset_id, str):
        dataset_id = fallback.dataset_id if fallback else None
    return ProviderRun(run_id=run_id, status=status, dataset_id=dataset_id)


def build_scrape_provider(settings: Settings, *, client: httpx.AsyncClient | None = None) -> ScrapeProvider:
    if settings.scrape_provider == "apify":
        return ApifyProvider(
            token=settings.apify_token,
            actor_id=settings.scrape_actor_id,
            base_url=settings.apify_base_url,
            poll_interval_seconds=settings.provider_poll_interval_seconds,
            timeout_seconds=settings.provider_request_timeout_seconds,
            client=client,
        )
    raise ValueError(f"unknown scrape provider: {settings.scrape_provider}")


@lru_cache
def get_scrape_provider() -> ScrapeProvider:
    return build_scrape_provider(get_settings())

"""
Hosted crawler client

Starts a website-content crawler run for a set of start URLs, polls its
status and pages through the resulting dataset.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import httpx

from mailrelay.core.config import resolve_settings
from mailrelay.core.exceptions import MalformedResponseError
from mailrelay.core.http_client import ResilientHTTPClient, require_credential

logger = logging.getLogger(__name__)

PROVIDER = "crawler"

RUNNING_STATUSES = ("READY", "RUNNING")
SUCCEEDED_STATUSES = ("SUCCEEDED",)
FAILED_STATUSES = ("FAILED", "TIMING-OUT", "TIMED-OUT", "ABORTING", "ABORTED")

# Pages worth mining for FAQ content
INCLUDE_GLOBS = [
    "**/faq*", "**/faqs*", "**/frequently-asked*", "**/pricing*", "**/prices*",
    "**/services*", "**/about*", "**/contact*", "**/areas*", "**/what-we-do*",
]
EXCLUDE_GLOBS = [
    "**/blog/**", "**/news/**", "**/privacy*", "**/terms*", "**/cookie*",
    "**/login*", "**/cart*", "**/checkout*", "**/*.pdf", "**/*.jpg", "**/*.png",
]


@dataclass
class CrawlerRun:
    run_id: str
    status: str
    dataset_id: Optional[str] = None

    @property
    def running(self) -> bool:
        return self.status in RUNNING_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCEEDED_STATUSES

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES


@dataclass
class DatasetPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: Optional[int] = None


def _run_from(data: Dict[str, Any]) -> CrawlerRun:
    run = data.get("data") or {}
    if not run.get("id"):
        raise MalformedResponseError("Crawler response has no run id", raw=str(data)[:500])
    return CrawlerRun(
        run_id=run["id"],
        status=str(run.get("status") or "READY").upper(),
        dataset_id=run.get("defaultDatasetId"),
    )


class CrawlerClient:

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = resolve_settings(settings)
        self.base_url = self.settings.CRAWLER_API_BASE.rstrip("/")
        self.actor_id = self.settings.CRAWLER_ACTOR_ID
        self._transport = transport
        self._http: Optional[ResilientHTTPClient] = None

    async def _client(self) -> ResilientHTTPClient:
        if self._http is None:
            token = require_credential(self.settings.CRAWLER_API_TOKEN, PROVIDER, "CRAWLER_API_TOKEN")
            self._http = ResilientHTTPClient(
                provider=PROVIDER,
                timeout=self.settings.PER_CALL_TIMEOUT_SECONDS,
                default_headers={"Authorization": f"Bearer {token}"},
                transport=self._transport,
            )
            await self._http.init()
        return self._http

    async def close(self) -> None:
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def start_run(self, start_urls: Sequence[str]) -> CrawlerRun:
        per_site = self.settings.CRAWLER_MAX_PAGES_PER_SITE
        run_input = {
            "startUrls": [{"url": url} for url in start_urls],
            "maxCrawlDepth": 2,
            "maxCrawlPagesPerHostname": per_site,
            "maxCrawlPages": len(start_urls) * per_site,
            "saveHtml": False,
            "saveMarkdown": True,
            "removeCookieWarnings": True,
            "globs": INCLUDE_GLOBS,
            "excludeGlobs": EXCLUDE_GLOBS,
        }
        client = await self._client()
        response = await client.post(f"{self.base_url}/acts/{self.actor_id}/runs", json=run_input)
        run = _run_from(response.json())
        logger.info(f"[Crawler] Started run {run.run_id} for {len(start_urls)} site(s)")
        return run

    async def get_run(self, run_id: str) -> CrawlerRun:
        client = await self._client()
        response = await client.get(f"{self.base_url}/actor-runs/{run_id}")
        return _run_from(response.json())

    async def list_items(self, dataset_id: str, offset: int, limit: int) -> DatasetPage:
        client = await self._client()
        response = await client.get(
            f"{self.base_url}/datasets/{dataset_id}/items",
            params={"offset": offset, "limit": limit, "clean": "true", "format": "json"},
        )
        items = response.json()
        if not isinstance(items, list):
            raise MalformedResponseError("Dataset items response is not a list", raw=response.text[:500])
        total = response.headers.get("X-Apify-Pagination-Total")
        return DatasetPage(items=items, total=int(total) if total and total.isdigit() else None)

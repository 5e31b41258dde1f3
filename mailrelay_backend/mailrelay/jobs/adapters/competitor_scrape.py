"""
Competitor scrape stage

1. Job creation starts one crawler run over every pending competitor site
   and records its run id on the job.
2. While the run is READY/RUNNING the stage reports waiting_on; the
   provider callback or the watchdog resumes it once the run succeeds.
3. Dataset pages are then mined for FAQs by the LLM, one call per
   sub-batch of pages, and stored as competitor_page work items.

The source cursor is the dataset offset.
"""
import hashlib
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from mailrelay.core.exceptions import ProviderPermanentError
from mailrelay.jobs.adapters.base import Page, ProviderRunStatus, StageAdapter, WorkRef
from mailrelay.jobs.results import ProcessingResult, parse_indexed
from mailrelay.models.job import JobKind, RelayJob
from mailrelay.models.work_item import SiteScrapeStatus, WorkItemKind, WorkItemStatus
from mailrelay.services.crawler_client import CrawlerClient
from mailrelay.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

WAITING_ON_CRAWLER = "crawler_run"
PAGE_TEXT_CHARS = 3000
STORED_TEXT_CHARS = 20000

SYSTEM_PROMPT = "You extract FAQs from business web pages. Return only valid JSON."

PROMPT_TEMPLATE = """Extract question-answer pairs from each competitor web page below.
Only include FAQs a prospective customer would ask (services, pricing, coverage, booking).
Return ONLY a JSON array with one object per page:
[{{"i":0,"faqs":[{{"question":"What services do you offer?","answer":"We offer...","category":"services"}}]}}]
Use "faqs": [] for pages without useful content.

PAGES ({count} total):
{pages}"""


def page_external_id(url: str) -> str:
    return "page:" + hashlib.sha1(url.encode("utf-8")).hexdigest()


def domain_of(url: str) -> str:
    host = urlparse(url).netloc.lower()
    return host[4:] if host.startswith("www.") else host


def page_row(ref: WorkRef, status: str, result: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "external_id": ref.external_id,
        "kind": WorkItemKind.COMPETITOR_PAGE.value,
        "status": status,
        "thread_id": None,
        "folder": None,
        "from_email": ref.payload["domain"],
        "subject": ref.payload["url"],
        "snippet": None,
        "received_at": None,
        "body": ref.payload["text"][:STORED_TEXT_CHARS],
        "has_body": True,
        "result": result,
    }


def build_faqs(entry: Dict[str, Any]) -> List[Dict[str, str]]:
    raw = entry.get("faqs")
    if raw is None:
        raw = []
    if not isinstance(raw, list):
        raise ValueError("faqs is not a list")
    faqs = []
    for faq in raw:
        if not isinstance(faq, dict):
            continue
        question = str(faq.get("question") or "").strip()
        answer = str(faq.get("answer") or "").strip()
        if len(question) < 10 or len(answer) < 20:
            continue
        faqs.append({
            "question": question[:500],
            "answer": answer[:2000],
            "category": str(faq.get("category") or "general")[:50],
        })
    return faqs


class CompetitorScrapeAdapter(StageAdapter):
    kind = JobKind.COMPETITOR_SCRAPE.value
    next_stage = None

    def __init__(
        self,
        destination=None,
        settings=None,
        crawler: Optional[CrawlerClient] = None,
        llm: Optional[LLMClient] = None,
    ):
        super().__init__(destination, settings)
        self.crawler = crawler or CrawlerClient(self.settings)
        self.llm = llm or LLMClient(self.settings)
        self.page_size = self.settings.SCRAPE_PAGE_SIZE
        self.sub_batch_size = self.settings.SCRAPE_SUB_BATCH_SIZE

    async def count_work(self, tenant_id: str) -> int:
        return await self.destination.count_sites(tenant_id, [SiteScrapeStatus.PENDING.value])

    async def has_more_work(self, tenant_id: str, job: Optional[RelayJob] = None) -> bool:
        return job is not None and not job.is_terminal

    async def on_job_created(self, job: RelayJob) -> Optional[str]:
        sites = await self.destination.list_sites(job.tenant_id, [SiteScrapeStatus.PENDING.value])
        if not sites:
            return None
        run = await self.crawler.start_run([site.url for site in sites])
        await self.destination.set_site_status(
            job.tenant_id,
            SiteScrapeStatus.SCRAPING.value,
            domains=[site.domain for site in sites],
        )
        return run.run_id

    async def poll_provider_run(self, job: RelayJob) -> Optional[ProviderRunStatus]:
        if not job.provider_run_id:
            return None
        run = await self.crawler.get_run(job.provider_run_id)
        if run.succeeded:
            return ProviderRunStatus.SUCCEEDED
        if run.failed:
            return ProviderRunStatus.FAILED
        return ProviderRunStatus.RUNNING

    async def fetch_page(self, tenant_id: str, cursor: Any, limit: int, job: Optional[RelayJob] = None) -> Page:
        offset = int(cursor or 0)
        if job is None or not job.provider_run_id:
            raise ProviderPermanentError("Scrape job has no crawler run", provider="crawler")

        run = await self.crawler.get_run(job.provider_run_id)
        if run.running:
            return Page(items=[], next_cursor=offset, waiting_on=WAITING_ON_CRAWLER)
        if run.failed or not run.dataset_id:
            await self.destination.set_site_status(
                tenant_id,
                SiteScrapeStatus.ERROR.value,
                from_statuses=[SiteScrapeStatus.SCRAPING.value],
            )
            raise ProviderPermanentError(
                f"Crawler run {run.run_id} ended with status {run.status}",
                provider="crawler",
            )

        dataset = await self.crawler.list_items(run.dataset_id, offset, limit)
        items = []
        for record in dataset.items:
            url = record.get("url") or (record.get("metadata") or {}).get("canonicalUrl")
            if not url:
                continue
            items.append(WorkRef(
                external_id=page_external_id(url),
                payload={
                    "url": url,
                    "domain": domain_of(url),
                    "text": record.get("markdown") or record.get("text") or "",
                },
            ))

        next_offset = offset + len(dataset.items)
        if dataset.total is not None:
            has_more = next_offset < dataset.total
        else:
            has_more = len(dataset.items) == limit
        return Page(items=items, next_cursor=next_offset, has_more=has_more, total_hint=dataset.total)

    async def process(self, tenant_id: str, sub_batch: Sequence[WorkRef]) -> List[ProcessingResult]:
        pages = "\n\n".join(
            f"### PAGE {i}: {ref.payload['url']}\n{ref.payload['text'][:PAGE_TEXT_CHARS]}"
            for i, ref in enumerate(sub_batch)
        )
        prompt = PROMPT_TEMPLATE.format(count=len(sub_batch), pages=pages)
        entries = await self.llm.complete_json_array(SYSTEM_PROMPT, prompt, temperature=0.2, max_tokens=4000)
        return parse_indexed(entries, build_faqs)

    async def commit(self, tenant_id: str, job: RelayJob, matched: Sequence[Tuple[WorkRef, Any]]) -> int:
        rows = [page_row(ref, WorkItemStatus.DONE.value, {"faqs": faqs}) for ref, faqs in matched]
        await self.destination.insert_items(tenant_id, rows)
        # A page that failed on an earlier run already has a pending row
        await self.destination.apply_results(
            tenant_id,
            [
                (row["external_id"], {"status": row["status"], "result": row["result"], "last_error": None})
                for row in rows
            ],
        )
        await self.destination.set_site_status(
            tenant_id,
            SiteScrapeStatus.SCRAPED.value,
            domains=sorted({ref.payload["domain"] for ref, _ in matched}),
            from_statuses=[SiteScrapeStatus.SCRAPING.value],
        )
        return len(rows)

    async def on_items_failed(
        self, tenant_id: str, job: RelayJob, refs: Sequence[WorkRef], error: str
    ) -> None:
        """
        Crawled pages only reach work_items on commit. Failed pages are
        stored as pending rows (so attempts and dead letters apply to them)
        and their sites go back to pending for the next crawl.
        """
        await self.destination.insert_items(
            tenant_id, [page_row(ref, WorkItemStatus.PENDING.value) for ref in refs]
        )
        reset = await self.destination.set_site_status(
            tenant_id,
            SiteScrapeStatus.PENDING.value,
            domains=sorted({ref.payload["domain"] for ref in refs}),
            from_statuses=[SiteScrapeStatus.SCRAPING.value],
        )
        logger.warning(
            f"[Scrape] {tenant_id}: {len(refs)} page(s) failed ({error[:200]}), {reset} site(s) back to pending"
        )

    async def close(self) -> None:
        await self.crawler.close()
        await self.llm.close()

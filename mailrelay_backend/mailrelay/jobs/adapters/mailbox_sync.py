"""
Mailbox sync stage (body hydration)

Walks scanned emails without a body in id order and fetches each message
from the mailbox provider, SUB_BATCH_FANOUT at a time. The source cursor is
the last work_items.id handed out, so every item carries its own resume
point.

Per-item outcomes:
- body fetched        -> Matched
- 404/410 (deleted)   -> Unmatched, retried up to MAX_ITEM_ATTEMPTS
- transient failure   -> Unmatched
- 429                 -> whole sub-batch backs off
- 401/403             -> job fails (access revoked)
"""
import logging
from typing import Any, List, Optional, Sequence, Tuple

from mailrelay.core.exceptions import ProviderPermanentError, ProviderTransientError
from mailrelay.jobs.adapters.base import Page, StageAdapter, WorkRef, gather_bounded
from mailrelay.jobs.results import Matched, ProcessingResult, Unmatched
from mailrelay.models.job import JobKind, RelayJob
from mailrelay.models.work_item import WorkItemKind, WorkItemStatus
from mailrelay.services.mail_client import MailClient, clean_body

logger = logging.getLogger(__name__)

HYDRATABLE_STATUSES = (WorkItemStatus.SCANNED.value, WorkItemStatus.PENDING.value)
GONE_STATUSES = (404, 410)


class MailboxSyncAdapter(StageAdapter):
    kind = JobKind.MAILBOX_SYNC.value
    next_stage = JobKind.EMAIL_CLASSIFY.value

    def __init__(self, destination=None, settings=None, mail_client: Optional[MailClient] = None):
        super().__init__(destination, settings)
        self.mail = mail_client or MailClient(self.settings)
        self.page_size = self.settings.HYDRATE_PAGE_SIZE
        self.sub_batch_size = self.settings.HYDRATE_SUB_BATCH_SIZE
        self.fanout = self.settings.SUB_BATCH_FANOUT

    async def count_work(self, tenant_id: str) -> int:
        return await self.destination.count(
            tenant_id, WorkItemKind.EMAIL.value, HYDRATABLE_STATUSES, has_body=False
        )

    async def has_more_work(self, tenant_id: str, job: Optional[RelayJob] = None) -> bool:
        after_id = None
        if job is not None and isinstance(job.cursor, dict):
            after_id = job.cursor.get("source")
        return await self.destination.exists(
            tenant_id, WorkItemKind.EMAIL.value, HYDRATABLE_STATUSES, has_body=False, after_id=after_id
        )

    async def fetch_page(self, tenant_id: str, cursor: Any, limit: int, job: Optional[RelayJob] = None) -> Page:
        after_id = int(cursor or 0)
        rows = await self.destination.fetch_after(
            tenant_id, WorkItemKind.EMAIL.value, HYDRATABLE_STATUSES, after_id, limit, has_body=False
        )
        items = [
            WorkRef(external_id=row.external_id, payload={"id": row.id}, cursor_after=row.id)
            for row in rows
        ]
        next_cursor = rows[-1].id if rows else after_id
        return Page(items=items, next_cursor=next_cursor, has_more=len(rows) == limit)

    async def _fetch_one(self, ref: WorkRef):
        try:
            return await self.mail.fetch_item(ref.external_id)
        except ProviderPermanentError as e:
            if e.status_code in GONE_STATUSES:
                return e
            raise
        except ProviderTransientError as e:
            return e

    async def process(self, tenant_id: str, sub_batch: Sequence[WorkRef]) -> List[ProcessingResult]:
        fetched = await gather_bounded((self._fetch_one(ref) for ref in sub_batch), self.fanout)

        results: List[ProcessingResult] = []
        for index, outcome in enumerate(fetched):
            if isinstance(outcome, ProviderTransientError):
                results.append(Unmatched(index, reason=outcome.message))
            elif isinstance(outcome, ProviderPermanentError):
                results.append(Unmatched(index, reason=f"message gone ({outcome.status_code})"))
            else:
                body = clean_body(outcome.get("textBody"), outcome.get("htmlBody"))
                results.append(Matched(index, {"body": body}))

        unmatched = sum(1 for r in results if isinstance(r, Unmatched))
        if unmatched == len(results) and results:
            # Nothing came back; let the resilience layer treat it as a failed call
            raise ProviderTransientError(
                f"No bodies fetched for {len(results)} message(s)", provider="mail"
            )
        return results

    async def commit(self, tenant_id: str, job: RelayJob, matched: Sequence[Tuple[WorkRef, Any]]) -> int:
        return await self.destination.apply_results(
            tenant_id,
            (
                (ref.external_id, {
                    "body": value["body"],
                    "has_body": True,
                    "status": WorkItemStatus.SCANNED.value,
                    "last_error": None,
                    "attempts": 0,  # Classification gets its own MAX_ITEM_ATTEMPTS
                })
                for ref, value in matched
            ),
        )

    async def close(self) -> None:
        await self.mail.close()


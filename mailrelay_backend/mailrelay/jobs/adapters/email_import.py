"""
Email import stage

Metadata scan of the SENT folder, then INBOX, newest first, capped at
IMPORT_MAX_PER_FOLDER per folder. The source cursor is

    {"folder": "SENT" | "INBOX", "token": <provider page token>, "seen": n}

where seen counts messages already listed in that folder before this page.
Rows land in the destination as status=scanned; bodies come later
(mailbox_sync) unless the listing already carried one.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mailrelay.jobs.adapters.base import Page, StageAdapter, WorkRef
from mailrelay.jobs.results import Matched, Malformed, ProcessingResult
from mailrelay.models.job import JobKind, RelayJob
from mailrelay.services.mail_client import MailClient

logger = logging.getLogger(__name__)

FOLDERS = ("SENT", "INBOX")


def _start_of(folder: str) -> Dict[str, Any]:
    return {"folder": folder, "token": None, "seen": 0}


class EmailImportAdapter(StageAdapter):
    kind = JobKind.EMAIL_IMPORT.value
    next_stage = JobKind.MAILBOX_SYNC.value

    def __init__(self, destination=None, settings=None, mail_client: Optional[MailClient] = None):
        super().__init__(destination, settings)
        self.mail = mail_client or MailClient(self.settings)
        self.page_size = self.settings.IMPORT_PAGE_SIZE
        self.sub_batch_size = self.settings.IMPORT_PAGE_SIZE
        self.per_folder = self.settings.IMPORT_MAX_PER_FOLDER

    async def count_work(self, tenant_id: str) -> int:
        # Planned upper bound; revised to the real count when the scan ends
        return self.per_folder * len(FOLDERS)

    async def has_more_work(self, tenant_id: str, job: Optional[RelayJob] = None) -> bool:
        return job is not None and not job.is_terminal

    def _after_folder(self, folder: str) -> Tuple[Any, bool]:
        index = FOLDERS.index(folder)
        if index + 1 < len(FOLDERS):
            return _start_of(FOLDERS[index + 1]), True
        return None, False

    async def fetch_page(self, tenant_id: str, cursor: Any, limit: int, job: Optional[RelayJob] = None) -> Page:
        cursor = dict(cursor) if cursor else _start_of(FOLDERS[0])
        folder = cursor.get("folder") or FOLDERS[0]
        seen = int(cursor.get("seen") or 0)

        budget = min(limit, self.per_folder - seen)
        if budget <= 0:
            next_cursor, has_more = self._after_folder(folder)
            return Page(items=[], next_cursor=next_cursor, has_more=has_more)

        listing = await self.mail.list_messages(folder, budget, cursor.get("token"))
        messages = listing.messages[:budget]
        items = [
            WorkRef(external_id=str(m["id"]), payload={"message": m, "folder": folder})
            for m in messages
            if m.get("id")
        ]

        listed = seen + len(messages)
        if listing.next_page_token and messages and listed < self.per_folder:
            next_cursor, has_more = {"folder": folder, "token": listing.next_page_token, "seen": listed}, True
        else:
            next_cursor, has_more = self._after_folder(folder)

        logger.debug(
            f"[Import] {tenant_id} {folder}: listed {len(messages)} (seen={listed}), has_more={has_more}"
        )
        return Page(items=items, next_cursor=next_cursor, has_more=has_more)

    async def process(self, tenant_id: str, sub_batch: Sequence[WorkRef]) -> List[ProcessingResult]:
        results: List[ProcessingResult] = []
        for index, ref in enumerate(sub_batch):
            try:
                results.append(Matched(index, MailClient.to_row(ref.payload["message"], ref.payload["folder"])))
            except (KeyError, TypeError, ValueError) as e:
                results.append(Malformed(raw=ref.payload.get("message"), reason=f"bad message record: {e}"))
        return results

    async def commit(self, tenant_id: str, job: RelayJob, matched: Sequence[Tuple[WorkRef, Any]]) -> int:
        await self.destination.insert_items(tenant_id, [row for _, row in matched])
        # Already-present rows count as done: re-delivery is a no-op, not a failure
        return len(matched)

    async def close(self) -> None:
        await self.mail.close()

"""
Email classification stage

Hydrated emails (status scanned/pending, has_body) are sent to the LLM
CLASSIFY_SUB_BATCH_SIZE at a time in a compact index|from|subject|snippet
format. The model answers with [{"i": 0, "c": "inquiry", "r": true}, ...]
which is reconciled back to the sub-batch by index.

When nothing is classifiable yet but bodies are still missing, the stage
reports waiting_on instead of completing, and the hydration stage hands
back control when it finishes.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mailrelay.jobs.adapters.base import Page, StageAdapter, WorkRef
from mailrelay.jobs.results import ProcessingResult, parse_indexed
from mailrelay.models.job import JobKind, RelayJob
from mailrelay.models.work_item import WorkItemKind, WorkItemStatus
from mailrelay.services.llm_client import LLMClient

logger = logging.getLogger(__name__)

CLASSIFIABLE_STATUSES = (WorkItemStatus.SCANNED.value, WorkItemStatus.PENDING.value)

CATEGORIES = (
    "inquiry",
    "booking",
    "quote",
    "complaint",
    "follow_up",
    "spam",
    "notification",
    "personal",
)

# Categories whose reply flag is fixed regardless of model output
ALWAYS_REPLY = {"inquiry", "booking", "quote", "complaint"}
NEVER_REPLY = {"spam", "notification"}

SYSTEM_PROMPT = "You classify business emails. Return only valid JSON."

PROMPT_TEMPLATE = """Classify each email into ONE category. Categories:
- inquiry: Questions about services/products
- booking: Appointment/booking requests
- quote: Price/quote requests
- complaint: Issues/problems/negative feedback
- follow_up: Replies to previous conversations
- spam: Marketing, promotions, unwanted
- notification: Automated system notifications (receipts, confirmations, alerts)
- personal: Personal/social messages

Return ONLY a JSON array. Format: [{{"i":0,"c":"inquiry","r":true}},{{"i":1,"c":"spam","r":false}}]
Where: i=index (integer), c=category (string), r=requires_reply (boolean)

Rules for requires_reply:
- spam, notification: ALWAYS false
- complaint, inquiry, quote, booking: ALWAYS true
- follow_up, personal: true if they're asking something, false if just acknowledging

EMAILS ({count} total, format: index|from|subject|snippet):
{lines}"""


def _field(value: Optional[str], limit: int, default: str) -> str:
    text = (value or default)[:limit]
    return text.replace("\n", " ").replace("\r", " ").replace("|", " ")


def format_email_line(index: int, payload: Dict[str, Any]) -> str:
    return "|".join([
        str(index),
        _field(payload.get("from_email"), 50, "unknown"),
        _field(payload.get("subject"), 100, "(none)"),
        _field(payload.get("body") or payload.get("snippet"), 150, ""),
    ])


def build_classification(entry: Dict[str, Any]) -> Dict[str, Any]:
    category = str(entry["c"]).strip().lower()
    if category not in CATEGORIES:
        raise ValueError(f"unknown category {category!r}")
    if category in ALWAYS_REPLY:
        requires_reply = True
    elif category in NEVER_REPLY:
        requires_reply = False
    else:
        requires_reply = bool(entry.get("r", False))
    return {"category": category, "requires_reply": requires_reply}


class EmailClassifyAdapter(StageAdapter):
    kind = JobKind.EMAIL_CLASSIFY.value
    next_stage = None
    depends_on = JobKind.MAILBOX_SYNC.value

    def __init__(self, destination=None, settings=None, llm: Optional[LLMClient] = None):
        super().__init__(destination, settings)
        self.llm = llm or LLMClient(self.settings)
        self.page_size = self.settings.CLASSIFY_PAGE_SIZE
        self.sub_batch_size = self.settings.CLASSIFY_SUB_BATCH_SIZE

    async def count_work(self, tenant_id: str) -> int:
        # Includes emails still waiting for a body; they are classified once hydrated
        return await self.destination.count(tenant_id, WorkItemKind.EMAIL.value, CLASSIFIABLE_STATUSES)

    async def has_more_work(self, tenant_id: str, job: Optional[RelayJob] = None) -> bool:
        after_id = None
        if job is not None and isinstance(job.cursor, dict):
            after_id = job.cursor.get("source")
        return await self.destination.exists(
            tenant_id, WorkItemKind.EMAIL.value, CLASSIFIABLE_STATUSES, has_body=True, after_id=after_id
        )

    async def fetch_page(self, tenant_id: str, cursor: Any, limit: int, job: Optional[RelayJob] = None) -> Page:
        after_id = int(cursor or 0)
        rows = await self.destination.fetch_after(
            tenant_id, WorkItemKind.EMAIL.value, CLASSIFIABLE_STATUSES, after_id, limit, has_body=True
        )
        if not rows:
            if await self._hydrating(tenant_id):
                return Page(items=[], next_cursor=after_id, waiting_on=self.depends_on)
            return Page(items=[], next_cursor=after_id)

        items = [
            WorkRef(
                external_id=row.external_id,
                payload={
                    "from_email": row.from_email,
                    "subject": row.subject,
                    "body": row.body,
                    "snippet": row.snippet,
                },
                cursor_after=row.id,
            )
            for row in rows
        ]
        # A short last page still ends in the waiting check while bodies are outstanding
        has_more = len(rows) == limit or await self._hydrating(tenant_id)
        return Page(items=items, next_cursor=rows[-1].id, has_more=has_more)

    async def _hydrating(self, tenant_id: str) -> bool:
        return await self.destination.exists(
            tenant_id, WorkItemKind.EMAIL.value, CLASSIFIABLE_STATUSES, has_body=False
        )

    async def process(self, tenant_id: str, sub_batch: Sequence[WorkRef]) -> List[ProcessingResult]:
        lines = "\n".join(format_email_line(i, ref.payload) for i, ref in enumerate(sub_batch))
        prompt = PROMPT_TEMPLATE.format(count=len(sub_batch), lines=lines)
        entries = await self.llm.complete_json_array(
            SYSTEM_PROMPT, prompt, temperature=0.1, max_tokens=max(256, 24 * len(sub_batch))
        )
        return parse_indexed(entries, build_classification)

    async def commit(self, tenant_id: str, job: RelayJob, matched: Sequence[Tuple[WorkRef, Any]]) -> int:
        return await self.destination.apply_results(
            tenant_id,
            (
                (ref.external_id, {
                    "result": value,
                    "status": WorkItemStatus.DONE.value,
                    "last_error": None,
                })
                for ref, value in matched
            ),
        )

    async def close(self) -> None:
        await self.llm.close()

"""
Stage adapter contract

An adapter plugs one pipeline stage into the Batch Runner:

    count_work()     exact size, called once when a job is created
    has_more_work()  bounded existence check for the trigger response
    fetch_page()     one page from the source, addressed by an opaque cursor
    process()        one downstream call for a sub-batch, tagged results
    commit()         idempotent write of matched results
    on_items_failed() records items that have no destination row before commit,
                      so a failed sub-batch can go back to pending

Adapters never touch job state; the runner owns cursors, counters and
checkpoints.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Iterable, List, Optional, Sequence, Tuple

from mailrelay.core.config import resolve_settings
from mailrelay.jobs.results import ProcessingResult
from mailrelay.models.job import RelayJob
from mailrelay.services.destination import DestinationStore


@dataclass
class WorkRef:
    """
    One unit of work as seen by the runner.

    cursor_after, when set, is a source cursor positioned just past this
    item. Keyset sources provide it so resume never depends on offsets into
    a result set that shrinks as items are processed.
    """
    external_id: str
    payload: dict = field(default_factory=dict)
    cursor_after: Any = None


@dataclass
class Page:
    items: List[WorkRef] = field(default_factory=list)
    next_cursor: Any = None
    has_more: bool = False
    waiting_on: Optional[str] = None  # Source has items, none processable yet
    total_hint: Optional[int] = None  # Revised items_total


class ProviderRunStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @classmethod
    def from_provider(cls, raw: Optional[str]) -> "ProviderRunStatus":
        """Map a provider run status (READY, RUNNING, SUCCEEDED, ABORTED, ...) onto ours."""
        value = (raw or "").strip().upper()
        if value in ("READY", "RUNNING"):
            return cls.RUNNING
        if value == "SUCCEEDED":
            return cls.SUCCEEDED
        return cls.FAILED


async def gather_bounded(coros: Iterable[Awaitable[Any]], limit: int) -> List[Any]:
    """Run awaitables with at most `limit` in flight; results keep input order."""
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(coro):
        async with semaphore:
            return await coro

    return list(await asyncio.gather(*(_run(c) for c in coros)))


class StageAdapter(ABC):
    kind: str = ""
    next_stage: Optional[str] = None
    depends_on: Optional[str] = None  # Stage whose output this one waits for
    page_size: int = 50
    sub_batch_size: int = 15
    fanout: int = 1

    def __init__(self, destination: Optional[DestinationStore] = None, settings=None):
        self.settings = resolve_settings(settings)
        self.destination = destination or DestinationStore()

    @abstractmethod
    async def count_work(self, tenant_id: str) -> int:
        ...

    @abstractmethod
    async def has_more_work(self, tenant_id: str, job: Optional[RelayJob] = None) -> bool:
        ...

    @abstractmethod
    async def fetch_page(self, tenant_id: str, cursor: Any, limit: int, job: Optional[RelayJob] = None) -> Page:
        ...

    @abstractmethod
    async def process(self, tenant_id: str, sub_batch: Sequence[WorkRef]) -> List[ProcessingResult]:
        ...

    @abstractmethod
    async def commit(self, tenant_id: str, job: RelayJob, matched: Sequence[Tuple[WorkRef, Any]]) -> int:
        ...

    async def on_job_created(self, job: RelayJob) -> Optional[str]:
        """Hook for stages that start an external run; returns its run id."""
        return None

    async def on_items_failed(
        self, tenant_id: str, job: RelayJob, refs: Sequence[WorkRef], error: str
    ) -> None:
        return None

    async def poll_provider_run(self, job: RelayJob) -> Optional[ProviderRunStatus]:
        """Status of job.provider_run_id, or None when the stage has no provider runs."""
        return None

    async def close(self) -> None:
        return None

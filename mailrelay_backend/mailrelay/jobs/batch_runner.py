"""
Batch Runner

The fetch -> process -> checkpoint loop for one relay invocation.

Items from source pages go into a carry-over buffer; a sub-batch is cut
whenever the buffer holds sub_batch_size items (or the source is done), so
page boundaries never produce short sub-batches.

The engine cursor wraps the adapter's page cursor:

    {"source": <page cursor>, "offset": <items of that page already flushed>}

After every sub-batch the cursor moves just past its last item and is
checkpointed with the counters in one write. Resume re-fetches the page at
"source" and skips "offset" items, so a crash replays only unflushed work.
Items that carry cursor_after (keyset sources) checkpoint that instead.

Job status is re-read before each page fetch and each sub-batch; any
status other than in_progress stops the run (cancellation by mutation).
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, List, Optional, Tuple

from mailrelay.core.config import resolve_settings
from mailrelay.core.exceptions import ProviderConfigurationError, ProviderPermanentError
from mailrelay.core.resilience import (
    Exhausted,
    RateLimited,
    RetryConfig,
    call_with_retry,
    exponential_backoff,
)
from mailrelay.core.utils import Deadline
from mailrelay.jobs.adapters.base import Page, StageAdapter, WorkRef
from mailrelay.jobs.results import reconcile
from mailrelay.models.job import JobStatus, RelayJob
from mailrelay.services.destination import DestinationStore
from mailrelay.services.job_store import CheckpointDelta, JobStore
from mailrelay.services.lock_manager import LockManager

logger = logging.getLogger(__name__)


class RunOutcome(str, Enum):
    EXHAUSTED = "exhausted"
    CONTINUING = "continuing"
    RATE_LIMITED = "rate_limited"
    PAUSED = "paused"
    WAITING = "waiting_on_dependency"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class RunResult:
    outcome: RunOutcome
    job: RelayJob
    items_processed: int = 0
    items_failed: int = 0
    delay_ms: int = 0
    message: Optional[str] = None
    error_code: Optional[str] = None
    pages_fetched: int = 0
    sub_batches: int = 0

    @property
    def exhausted(self) -> bool:
        return self.outcome == RunOutcome.EXHAUSTED


@dataclass
class _Buffered:
    ref: WorkRef
    page_cursor: Any
    index: int
    page_len: int
    page_next: Any
    page_has_more: bool


def wrap_cursor(source: Any, offset: int = 0) -> dict:
    return {"source": source, "offset": offset}


def unwrap_cursor(cursor: Any) -> Tuple[Any, int]:
    """Split a stored cursor; a bare adapter cursor (seeded resume) has offset 0."""
    if isinstance(cursor, dict) and "source" in cursor:
        return cursor.get("source"), int(cursor.get("offset") or 0)
    return cursor, 0


def position_after(item: _Buffered) -> dict:
    """Engine cursor pointing just past a flushed item."""
    if item.ref.cursor_after is not None:
        return wrap_cursor(item.ref.cursor_after)
    if item.index + 1 < item.page_len:
        return wrap_cursor(item.page_cursor, item.index + 1)
    if item.page_has_more:
        return wrap_cursor(item.page_next)
    # Last item of the last page: stay on that page, past its end
    return wrap_cursor(item.page_cursor, item.page_len)


class BatchRunner:

    def __init__(
        self,
        adapter: StageAdapter,
        job_store: JobStore,
        lock_manager: LockManager,
        destination: DestinationStore,
        *,
        holder_id: str,
        settings=None,
        retry_config: Optional[RetryConfig] = None,
        sleep=asyncio.sleep,
        rng=random.random,
    ):
        self.adapter = adapter
        self.job_store = job_store
        self.lock_manager = lock_manager
        self.destination = destination
        self.holder_id = holder_id
        self.settings = resolve_settings(settings)
        self.retry_config = retry_config or RetryConfig.from_settings(self.settings)
        self._sleep = sleep
        self._rng = rng
        self.tag = f"[BatchRunner:{adapter.kind}]"

    # =========================================================================
    # ENTRY
    # =========================================================================

    async def run(self, job: RelayJob, deadline: Deadline) -> RunResult:
        self._job = job
        self._seq = job.checkpoint_seq or 0
        self._consecutive = job.consecutive_failure_count or 0
        self._processed = 0
        self._failed = 0
        self._pages = 0
        self._sub_batches = 0
        self._since_refresh = 0
        self._pending_total: Optional[int] = None

        try:
            result = await self._run(deadline)
        except (ProviderPermanentError, ProviderConfigurationError) as e:
            logger.error(f"{self.tag} Permanent provider error for job {job.id}: {e.message}")
            result = self._result(RunOutcome.FAILED, message=e.message, error_code=e.code)

        logger.info(
            f"{self.tag} Job {job.id}: {result.outcome.value} after {result.pages_fetched} page(s), "
            f"{result.sub_batches} sub-batch(es), processed={result.items_processed}, "
            f"failed={result.items_failed}, {deadline!r}"
        )
        return result

    def _result(self, outcome: RunOutcome, **kwargs) -> RunResult:
        return RunResult(
            outcome=outcome,
            job=self._job,
            items_processed=self._processed,
            items_failed=self._failed,
            pages_fetched=self._pages,
            sub_batches=self._sub_batches,
            **kwargs,
        )

    async def _cancelled(self) -> bool:
        fresh = await self.job_store.get(self._job.id)
        if fresh is None or fresh.status != JobStatus.IN_PROGRESS.value:
            logger.info(
                f"{self.tag} Job {self._job.id} is "
                f"{fresh.status if fresh else 'gone'}, stopping"
            )
            if fresh is not None:
                self._job = fresh
            return True
        self._job = fresh
        return False

    # =========================================================================
    # LOOP
    # =========================================================================

    async def _run(self, deadline: Deadline) -> RunResult:
        adapter = self.adapter
        tenant_id = self._job.tenant_id
        size = max(1, adapter.sub_batch_size)

        fetch_cursor, skip = unwrap_cursor(self._job.cursor)
        source_done = False
        waiting_on: Optional[str] = None
        buffer: List[_Buffered] = []

        while True:
            if not source_done and len(buffer) < size:
                if deadline.expired():
                    return self._result(RunOutcome.CONTINUING)
                if await self._cancelled():
                    return self._result(RunOutcome.CANCELLED)

                fetched = await call_with_retry(
                    lambda cursor=fetch_cursor: adapter.fetch_page(
                        tenant_id, cursor, adapter.page_size, job=self._job
                    ),
                    deadline=deadline,
                    config=self.retry_config,
                    call_timeout=self.settings.PER_CALL_TIMEOUT_SECONDS,
                    sleep=self._sleep,
                    rng=self._rng,
                    label=f"{adapter.kind}:fetch",
                )
                if isinstance(fetched, RateLimited):
                    return self._result(
                        RunOutcome.RATE_LIMITED, delay_ms=fetched.delay_ms, message=str(fetched.error)
                    )
                if isinstance(fetched, Exhausted):
                    return await self._fetch_failed(fetched)

                page: Page = fetched.value
                self._pages += 1
                if page.total_hint is not None:
                    self._pending_total = page.total_hint

                for index, ref in enumerate(page.items):
                    if index < skip:
                        continue
                    buffer.append(_Buffered(
                        ref=ref,
                        page_cursor=fetch_cursor,
                        index=index,
                        page_len=len(page.items),
                        page_next=page.next_cursor,
                        page_has_more=page.has_more,
                    ))
                skip = 0

                if page.waiting_on and not page.items:
                    waiting_on = page.waiting_on
                    source_done = True
                elif page.has_more and page.next_cursor is not None:
                    fetch_cursor = page.next_cursor
                else:
                    source_done = True
                continue

            if buffer:
                if deadline.expired():
                    return self._result(RunOutcome.CONTINUING)
                if await self._cancelled():
                    return self._result(RunOutcome.CANCELLED)

                batch = buffer[:size]
                final = source_done and waiting_on is None and len(buffer) <= size
                stop = await self._flush(batch, deadline, final)
                if stop is not None:
                    return stop
                del buffer[:size]
                continue

            if waiting_on:
                logger.info(f"{self.tag} Job {self._job.id} waiting on {waiting_on}")
                return self._result(RunOutcome.WAITING, message=waiting_on)
            await self._close_total()
            return self._result(RunOutcome.EXHAUSTED)

    async def _close_total(self) -> None:
        """An empty trailing page leaves the planned total in place; settle it to what was seen."""
        job = self._job
        seen = (job.items_done or 0) + (job.items_failed or 0)
        if job.items_total != seen:
            logger.info(f"{self.tag} Job {job.id}: source exhausted, total {job.items_total} -> {seen}")
            await self._checkpoint(job.cursor, done=0, failed=0, final=True)

    async def _fetch_failed(self, outcome: Exhausted) -> RunResult:
        count = await self.job_store.record_failure(self._job)
        self._consecutive = count
        message = f"Source fetch failed: {outcome.error}"
        logger.warning(f"{self.tag} {message} (consecutive failures: {count})")
        if count >= self.settings.MAX_CONSECUTIVE_FAILURES:
            return self._result(RunOutcome.PAUSED, message=message)
        delay = exponential_backoff(count, self.retry_config, self._rng)
        return self._result(RunOutcome.RATE_LIMITED, delay_ms=int(delay * 1000), message=message)

    # =========================================================================
    # SUB-BATCH
    # =========================================================================

    async def _flush(self, batch: List[_Buffered], deadline: Deadline, final: bool) -> Optional[RunResult]:
        """Process one sub-batch and checkpoint it. Returns a result only when the run must stop."""
        adapter = self.adapter
        job = self._job
        refs = [b.ref for b in batch]
        cursor = position_after(batch[-1])
        outcome = await call_with_retry(
            lambda: adapter.process(job.tenant_id, refs),
            deadline=deadline,
            config=self.retry_config,
            call_timeout=self.settings.PER_CALL_TIMEOUT_SECONDS,
            sleep=self._sleep,
            rng=self._rng,
            label=f"{adapter.kind}:process",
        )
        self._sub_batches += 1

        if isinstance(outcome, RateLimited):
            # Cursor stays put; the whole sub-batch is replayed after the delay
            return self._result(
                RunOutcome.RATE_LIMITED, delay_ms=outcome.delay_ms, message=str(outcome.error)
            )

        if isinstance(outcome, Exhausted):
            await self._return_failed(refs, str(outcome.error))
            self._consecutive += 1
            await self._checkpoint(cursor, done=0, failed=len(refs), final=final)
            self._failed += len(refs)
            logger.warning(
                f"{self.tag} Sub-batch of {len(refs)} failed after {outcome.attempts} attempt(s): "
                f"{outcome.error} (consecutive failures: {self._consecutive})"
            )
            return self._check_degraded(str(outcome.error))

        rec = reconcile(refs, outcome.value)
        if rec.matched:
            await adapter.commit(job.tenant_id, job, rec.matched)
        if rec.unmatched:
            await self._return_failed(rec.unmatched, "no result in processing output")
        for bad in rec.malformed:
            await self.destination.dead_letter(
                job.tenant_id, adapter.kind, "malformed_output", bad.raw, job_id=job.id
            )
        if rec.malformed:
            logger.warning(f"{self.tag} Dead-lettered {len(rec.malformed)} malformed result(s)")

        if rec.matched:
            self._consecutive = 0
        else:
            self._consecutive += 1

        await self._checkpoint(cursor, done=len(rec.matched), failed=len(rec.unmatched), final=final)
        self._processed += len(rec.matched)
        self._failed += len(rec.unmatched)

        self._since_refresh += 1
        if self._since_refresh >= max(1, self.settings.LOCK_REFRESH_EVERY_SUB_BATCHES):
            # Heartbeat already moved with the checkpoint
            self._since_refresh = 0
            if not await self.lock_manager.refresh(job.tenant_id, adapter.kind, self.holder_id):
                logger.warning(f"{self.tag} Lock for job {job.id} was reclaimed, stopping")
                return self._result(RunOutcome.CANCELLED, message="lock reclaimed")

        if not rec.matched:
            return self._check_degraded("no usable results in sub-batch")
        return None

    async def _return_failed(self, refs: List[WorkRef], error: str) -> None:
        job = self._job
        await self.adapter.on_items_failed(job.tenant_id, job, refs, error)
        await self.destination.return_to_pending(
            job.tenant_id,
            [r.external_id for r in refs],
            error,
            self.settings.MAX_ITEM_ATTEMPTS,
            job_id=job.id,
            job_kind=self.adapter.kind,
        )

    def _check_degraded(self, reason: str) -> Optional[RunResult]:
        if self._consecutive >= self.settings.MAX_CONSECUTIVE_FAILURES:
            message = f"Paused after {self._consecutive} consecutive failed sub-batches: {reason}"
            logger.error(f"{self.tag} {message}")
            return self._result(RunOutcome.PAUSED, message=message)
        return None

    async def _checkpoint(self, cursor: dict, done: int, failed: int, final: bool) -> None:
        total = self._pending_total
        if final:
            # Source exhausted: the real total is everything this job has seen
            total = (self._job.items_done or 0) + (self._job.items_failed or 0) + done + failed
        self._seq += 1
        self._job = await self.job_store.checkpoint(
            self._job,
            CheckpointDelta(
                seq=self._seq,
                cursor=cursor,
                done=done,
                failed=failed,
                total=total,
                consecutive_failures=self._consecutive,
            ),
        )
        self._pending_total = None

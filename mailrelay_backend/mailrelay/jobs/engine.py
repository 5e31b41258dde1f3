"""
Relay trigger handler

One RelayHandler per stage. handle() is the whole life of an invocation:

1. Sleep on entry (capped; the remainder is relayed onward)
2. Acquire the (tenant, kind) lock, or return skipped
3. Sweep ghosts and enforce the relay-depth ceiling
4. Load or create the job
5. Run the Batch Runner until exhausted or out of budget
6. Apply the job transition for the outcome
7. Release the lock, then schedule the continuation

The lock is released on every exit path, and scheduling happens only
after release so the successor can acquire it.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mailrelay.core.config import resolve_settings
from mailrelay.core.exceptions import (
    IllegalTransitionError,
    ProviderConfigurationError,
    ProviderPermanentError,
    RelayDepthExceededError,
)
from mailrelay.core.resilience import RetryConfig
from mailrelay.core.utils import Deadline, new_id
from mailrelay.jobs.adapters.base import ProviderRunStatus, StageAdapter
from mailrelay.jobs.batch_runner import BatchRunner
from mailrelay.jobs.continuation import (
    STATUS_FOR_OUTCOME,
    ContinuationDecision,
    RelayStatus,
    decide_continuation,
)
from mailrelay.models.job import JobStatus, RelayJob
from mailrelay.services.destination import DestinationStore
from mailrelay.services.job_store import CheckpointDelta, JobStore
from mailrelay.services.lock_manager import LockManager
from mailrelay.services.scheduler import ContinuationRequest, ContinuationScheduler

logger = logging.getLogger(__name__)


@dataclass
class TriggerRequest:
    tenant_id: str
    job_id: Optional[str] = None
    resume_cursor: Any = None
    sleep_before_start_ms: int = 0
    relay_depth: int = 0

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TriggerRequest":
        return cls(
            tenant_id=payload["tenant_id"],
            job_id=payload.get("job_id"),
            resume_cursor=payload.get("resume_cursor"),
            sleep_before_start_ms=int(payload.get("sleep_before_start_ms") or 0),
            relay_depth=int(payload.get("relay_depth") or 0),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "relay_depth": self.relay_depth,
            "sleep_before_start_ms": self.sleep_before_start_ms,
        }
        if self.job_id:
            payload["job_id"] = self.job_id
        if self.resume_cursor is not None:
            payload["resume_cursor"] = self.resume_cursor
        return payload


@dataclass
class TriggerResponse:
    success: bool
    status: str
    job_id: Optional[str] = None
    processed_this_run: int = 0
    remaining: int = 0
    relay_depth: int = 0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "job_id": self.job_id,
            "processed_this_run": self.processed_this_run,
            "remaining": self.remaining,
            "relay_depth": self.relay_depth,
            "message": self.message,
        }


class RelayHandler:

    def __init__(
        self,
        adapter: StageAdapter,
        job_store: JobStore,
        lock_manager: LockManager,
        destination: DestinationStore,
        scheduler: ContinuationScheduler,
        settings=None,
        sleep=asyncio.sleep,
        clock=time.monotonic,
        rng=random.random,
    ):
        self.adapter = adapter
        self.job_store = job_store
        self.lock_manager = lock_manager
        self.destination = destination
        self.scheduler = scheduler
        self.settings = resolve_settings(settings)
        self.retry_config = RetryConfig.from_settings(self.settings)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self.kind = adapter.kind
        self.tag = f"[Relay:{adapter.kind}]"

    # =========================================================================
    # TRIGGER
    # =========================================================================

    async def handle(self, request: TriggerRequest) -> TriggerResponse:
        tenant_id = request.tenant_id

        carried = await self._sleep_on_entry(request)
        if carried is not None:
            return carried

        holder_id = new_id()
        if not await self.lock_manager.acquire(tenant_id, self.kind, holder_id):
            logger.info(f"{self.tag} {tenant_id}: another invocation is running, skipping")
            return TriggerResponse(
                success=True,
                status=RelayStatus.SKIPPED.value,
                job_id=request.job_id,
                relay_depth=request.relay_depth,
                message="Another invocation holds the lock",
            )

        job: Optional[RelayJob] = None
        decision: Optional[ContinuationDecision] = None
        response: Optional[TriggerResponse] = None
        try:
            job, decision, processed = await self._work(request, holder_id)
            response = await self._respond(request, job, decision, processed)
        except Exception as e:
            logger.exception(f"{self.tag} {tenant_id}: unexpected error: {e}")
            response = TriggerResponse(
                success=False,
                status=RelayStatus.FAILED.value,
                job_id=job.id if job else request.job_id,
                relay_depth=request.relay_depth,
                message=f"Unexpected error: {e}",
            )
        finally:
            await self.lock_manager.release(tenant_id, self.kind, holder_id)
            if decision is not None:
                await self._schedule(tenant_id, job, decision)

        return response

    async def _sleep_on_entry(self, request: TriggerRequest) -> Optional[TriggerResponse]:
        wait_ms = max(0, request.sleep_before_start_ms)
        if not wait_ms:
            return None

        cap = self.settings.MAX_SLEEP_ON_ENTRY_MS
        await self._sleep(min(wait_ms, cap) / 1000.0)
        if wait_ms <= cap:
            return None

        remainder = wait_ms - cap
        logger.info(f"{self.tag} {request.tenant_id}: carrying {remainder}ms of backoff to the next relay")
        await self._continue(
            ContinuationRequest(
                job_kind=self.kind,
                tenant_id=request.tenant_id,
                job_id=request.job_id,
                relay_depth=request.relay_depth,
                resume_cursor=request.resume_cursor,
            ),
            remainder,
        )
        return TriggerResponse(
            success=True,
            status=RelayStatus.RATE_LIMITED.value,
            job_id=request.job_id,
            relay_depth=request.relay_depth,
            message=f"Backoff carried over ({remainder}ms)",
        )

    async def _work(self, request: TriggerRequest, holder_id: str):
        """Everything that happens under the lock. Returns (job, decision, processed)."""
        tenant_id = request.tenant_id
        has_next = bool(self.adapter.next_stage)

        await self.job_store.sweep_ghosts(tenant_id)

        requested = await self.job_store.get(request.job_id) if request.job_id else None

        if request.relay_depth >= self.settings.MAX_RELAY_DEPTH:
            return await self._depth_exceeded(request, requested)

        if requested is not None and requested.is_terminal and requested.job_kind == self.kind:
            # Stale continuation of a finished or cancelled job
            reason = f"Job {requested.id} is already {requested.status}"
            logger.info(f"{self.tag} {tenant_id}: {reason}, dropping relay")
            return requested, decide_continuation(RelayStatus.CANCELLED, reason=reason), 0

        lookup = await self.job_store.get_or_create(
            tenant_id,
            self.kind,
            request.job_id,
            count_work=lambda: self.adapter.count_work(tenant_id),
        )
        for note in lookup.notes:
            logger.info(f"{self.tag} {tenant_id}: {note}")
        if lookup.no_work:
            return None, decide_continuation(RelayStatus.NO_WORK, has_next_stage=has_next), 0

        job = lookup.job

        try:
            job = await self._prepare(job, request)
        except IllegalTransitionError as e:
            logger.info(f"{self.tag} Job {job.id} changed under us: {e.message}")
            return job, decide_continuation(RelayStatus.CANCELLED, relay_depth=request.relay_depth), 0
        except (ProviderPermanentError, ProviderConfigurationError) as e:
            await self.job_store.fail(job, e.message, code=e.code)
            return job, decide_continuation(RelayStatus.FAILED, reason=e.message), 0

        runner = BatchRunner(
            self.adapter,
            self.job_store,
            self.lock_manager,
            self.destination,
            holder_id=holder_id,
            settings=self.settings,
            retry_config=self.retry_config,
            sleep=self._sleep,
            rng=self._rng,
        )
        deadline = Deadline(self.settings.effective_budget_seconds, clock=self._clock)
        result = await runner.run(job, deadline)

        decision = decide_continuation(
            STATUS_FOR_OUTCOME[result.outcome],
            processed_this_run=result.items_processed,
            relay_depth=request.relay_depth,
            delay_ms=result.delay_ms,
            degraded_delay_ms=self.settings.DEGRADED_RETRY_DELAY_SECONDS * 1000,
            has_next_stage=has_next,
            reason=result.message,
        )
        job, decision = await self._apply(result.job, decision, result.error_code)
        return job, decision, result.items_processed

    async def _depth_exceeded(self, request: TriggerRequest, requested: Optional[RelayJob]):
        """Ceiling reached: fail the relayed job (if any) without creating one."""
        error = RelayDepthExceededError(request.relay_depth, self.settings.MAX_RELAY_DEPTH)
        job = requested
        if job is None or job.job_kind != self.kind:
            job = await self.job_store.find_active(request.tenant_id, self.kind)
        if job is not None and not job.is_terminal:
            logger.error(f"{self.tag} Job {job.id}: {error.message}")
            await self.job_store.fail(job, error.message, code=error.code)
        else:
            logger.error(f"{self.tag} {request.tenant_id}: {error.message}, no active job")
        return job, decide_continuation(RelayStatus.FAILED, reason=error.message), 0

    async def _prepare(self, job: RelayJob, request: TriggerRequest) -> RelayJob:
        """Seed the cursor, start any provider run and move the job to in_progress."""
        if job.cursor is None and request.resume_cursor is not None:
            job = await self.job_store.checkpoint(
                job,
                CheckpointDelta(seq=(job.checkpoint_seq or 0) + 1, cursor=request.resume_cursor),
            )
            logger.info(f"{self.tag} Job {job.id}: seeded resume cursor")

        if job.status == JobStatus.PENDING.value and not job.provider_run_id:
            run_id = await self.adapter.on_job_created(job)
            if run_id:
                await self.job_store.set_provider_run(job, run_id)
                job.provider_run_id = run_id
                logger.info(f"{self.tag} Job {job.id}: started provider run {run_id}")

        if job.status == JobStatus.PAUSED.value:
            await self.job_store.reset_failures(job)
            job.consecutive_failure_count = 0
        if job.status in (JobStatus.PENDING.value, JobStatus.PAUSED.value):
            job = await self.job_store.transition(job, JobStatus.IN_PROGRESS.value)
        elif job.waiting_on:
            if job.waiting_on == self.adapter.depends_on and job.cursor is not None:
                # The awaited stage may have produced items behind the cursor
                job = await self.job_store.checkpoint(
                    job, CheckpointDelta(seq=(job.checkpoint_seq or 0) + 1, cursor=None)
                )
                logger.info(
                    f"{self.tag} Job {job.id}: resumed after waiting on "
                    f"{self.adapter.depends_on}, rescanning from the start"
                )
            await self.job_store.set_waiting(job, None)
            job.waiting_on = None

        await self.job_store.set_relay_depth(job, request.relay_depth)
        job.relay_depth = request.relay_depth
        return job

    async def _apply(self, job: RelayJob, decision: ContinuationDecision, error_code: Optional[str]):
        """Apply the job-side action of a decision; a lost race downgrades it to cancelled."""
        try:
            if decision.job_status == JobStatus.COMPLETED.value:
                job = await self.job_store.transition(job, JobStatus.COMPLETED.value)
            elif decision.job_status == JobStatus.PAUSED.value:
                job = await self.job_store.transition(job, JobStatus.PAUSED.value, reason=decision.reason)
            elif decision.job_status == JobStatus.FAILED.value:
                await self.job_store.fail(job, decision.reason or "Permanent provider error", code=error_code or "PROVIDER_PERMANENT")
            elif decision.status == RelayStatus.WAITING:
                await self.job_store.set_waiting(job, decision.reason)
                job.waiting_on = decision.reason
        except IllegalTransitionError as e:
            logger.info(f"{self.tag} Job {job.id}: {e.message}, not chaining")
            return job, decide_continuation(RelayStatus.CANCELLED)
        return job, decision

    async def _respond(
        self,
        request: TriggerRequest,
        job: Optional[RelayJob],
        decision: ContinuationDecision,
        processed: int,
    ) -> TriggerResponse:
        remaining = 0
        if job is not None and decision.status not in (RelayStatus.COMPLETED, RelayStatus.FAILED):
            remaining = int(await self.adapter.has_more_work(request.tenant_id, job))

        return TriggerResponse(
            success=decision.status != RelayStatus.FAILED,
            status=decision.status.value,
            job_id=job.id if job else None,
            processed_this_run=processed,
            remaining=remaining,
            relay_depth=decision.next_relay_depth,
            message=decision.reason,
        )

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    async def _continue(self, request: ContinuationRequest, delay_ms: int) -> None:
        try:
            await self.scheduler.continue_later(request, delay_ms)
        except Exception as e:
            # The watchdog picks the job up again from its stale heartbeat
            logger.error(f"{self.tag} Failed to schedule continuation for {request.tenant_id}: {e}")

    async def _schedule(self, tenant_id: str, job: Optional[RelayJob], decision: ContinuationDecision) -> None:
        if decision.relay_self:
            await self._continue(
                ContinuationRequest(
                    job_kind=self.kind,
                    tenant_id=tenant_id,
                    job_id=job.id if job else None,
                    relay_depth=decision.next_relay_depth,
                ),
                decision.delay_ms,
            )
        if decision.invoke_next_stage and self.adapter.next_stage:
            try:
                await self.scheduler.invoke_stage(self.adapter.next_stage, tenant_id)
                logger.info(f"{self.tag} {tenant_id}: invoked {self.adapter.next_stage}")
            except Exception as e:
                logger.error(f"{self.tag} {tenant_id}: failed to invoke {self.adapter.next_stage}: {e}")
        if self.adapter.depends_on and decision.status == RelayStatus.WAITING and decision.reason == self.adapter.depends_on:
            await self._start_dependency(tenant_id)

    async def _start_dependency(self, tenant_id: str) -> None:
        """Invoke the awaited stage unless it already has an active job."""
        dependency = self.adapter.depends_on
        try:
            if await self.job_store.find_active(tenant_id, dependency) is not None:
                return
            await self.scheduler.invoke_stage(dependency, tenant_id)
            logger.info(f"{self.tag} {tenant_id}: no active {dependency} job, invoked it")
        except Exception as e:
            logger.error(f"{self.tag} {tenant_id}: failed to invoke {dependency}: {e}")

    # =========================================================================
    # PROVIDER CALLBACK
    # =========================================================================

    async def handle_provider_callback(self, tenant_id: str, run_id: str, status: ProviderRunStatus) -> TriggerResponse:
        """External run finished (or moved): resume, fail or keep waiting."""
        job = await self.job_store.find_active(tenant_id, self.kind)
        if job is None or job.provider_run_id != run_id:
            logger.info(f"{self.tag} {tenant_id}: no active job for provider run {run_id}")
            return TriggerResponse(
                success=True,
                status=RelayStatus.SKIPPED.value,
                message=f"No active job for run {run_id}",
            )

        if status == ProviderRunStatus.FAILED:
            reason = f"Provider run {run_id} failed"
            await self.job_store.fail(job, reason, code="PROVIDER_RUN_FAILED")
            return TriggerResponse(success=False, status=RelayStatus.FAILED.value, job_id=job.id, message=reason)

        if status == ProviderRunStatus.RUNNING:
            await self.job_store.heartbeat(job)
            return TriggerResponse(success=True, status=RelayStatus.WAITING.value, job_id=job.id)

        await self.job_store.set_waiting(job, None)
        await self._continue(
            ContinuationRequest(job_kind=self.kind, tenant_id=tenant_id, job_id=job.id, relay_depth=0),
            0,
        )
        logger.info(f"{self.tag} Job {job.id}: provider run {run_id} succeeded, resuming")
        return TriggerResponse(success=True, status=RelayStatus.CONTINUING.value, job_id=job.id)

"""
Watchdog

Independent reconciliation sweep over the Job Store. It repairs what a
crashed or timed-out invocation leaves behind:

1. Stale locks (acquired_at older than LOCK_STALE_MINUTES) are deleted
2. Ghost jobs are force-failed
3. Jobs waiting on a provider run are reconciled with the provider
4. Stalled in_progress jobs are restarted, or failed after too many restarts.
   A job waiting on a stage that has no active job counts as stalled.
5. Paused jobs are resumed after PAUSED_RESUME_AFTER_SECONDS

Each step is isolated: a failing step is recorded in the summary and the
remaining steps still run.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from mailrelay.core.config import resolve_settings
from mailrelay.core.utils import utcnow
from mailrelay.jobs.adapters.base import ProviderRunStatus, StageAdapter
from mailrelay.models.job import RelayJob
from mailrelay.services.job_store import JobStore
from mailrelay.services.lock_manager import LockManager
from mailrelay.services.scheduler import ContinuationRequest, ContinuationScheduler

logger = logging.getLogger(__name__)


def _relay(job: RelayJob) -> ContinuationRequest:
    return ContinuationRequest(job_kind=job.job_kind, tenant_id=job.tenant_id, job_id=job.id, relay_depth=0)


async def _reconcile_provider_runs(
    job_store: JobStore,
    scheduler: ContinuationScheduler,
    adapters: Mapping[str, StageAdapter],
    summary: Dict[str, Any],
) -> int:
    checked = 0
    for job in await job_store.find_with_provider_run():
        adapter = adapters.get(job.job_kind)
        if adapter is None:
            continue
        try:
            status = await adapter.poll_provider_run(job)
        except Exception as e:
            summary["errors"].append(f"provider_runs: job {job.id}: {e}")
            logger.error(f"[Watchdog] Could not poll provider run {job.provider_run_id} for {job.id}: {e}")
            continue
        if status is None:
            continue
        checked += 1

        if status == ProviderRunStatus.FAILED:
            await job_store.fail(job, f"Provider run {job.provider_run_id} failed", code="PROVIDER_RUN_FAILED")
            summary["provider_failed"] += 1
        elif status == ProviderRunStatus.RUNNING:
            await job_store.heartbeat(job)
        elif (job.items_done or 0) + (job.items_failed or 0) == 0:
            # Finished upstream but nothing consumed yet: the callback was lost
            await job_store.set_waiting(job, None)
            await scheduler.continue_later(_relay(job), 0)
            summary["provider_resumed"] += 1
            logger.info(f"[Watchdog] Provider run {job.provider_run_id} done, resuming job {job.id}")
    return checked


async def _dependency_active(job_store: JobStore, adapters: Mapping[str, StageAdapter], job: RelayJob) -> bool:
    """True unless the job waits on a pipeline stage that has no active job for its tenant."""
    if job.waiting_on not in adapters:
        return True
    return await job_store.find_active(job.tenant_id, job.waiting_on) is not None


async def _restart_stale(
    job_store: JobStore,
    scheduler: ContinuationScheduler,
    adapters: Mapping[str, StageAdapter],
    settings,
    summary: Dict[str, Any],
) -> int:
    cutoff = utcnow() - timedelta(minutes=settings.HEARTBEAT_STALE_MINUTES)
    stale = await job_store.find_stale(cutoff)
    handled = set()

    for job in stale:
        key = (job.tenant_id, job.job_kind)
        if key in handled:
            continue
        handled.add(key)

        active = await job_store.find_active(job.tenant_id, job.job_kind)
        keep_id = active.id if active is not None else job.id
        summary["superseded"] += await job_store.supersede_older(job.tenant_id, job.job_kind, keep_id)
        if keep_id != job.id:
            continue

        if job.waiting_on and await _dependency_active(job_store, adapters, job):
            # Idle by design, not stalled: re-check without using up a restart
            await job_store.heartbeat(job)
            await scheduler.continue_later(_relay(job), 0)
            summary["waiting_reinvoked"] += 1
            continue

        if (job.retry_count or 0) >= settings.WATCHDOG_MAX_RESTARTS:
            if job.waiting_on:
                reason = f"Waiting on {job.waiting_on} with no active job after {job.retry_count} restarts"
            else:
                reason = (
                    f"Stalled after {job.retry_count} restarts (no heartbeat for "
                    f"{settings.HEARTBEAT_STALE_MINUTES} minutes)"
                )
            await job_store.fail(job, reason, code="STALLED")
            summary["stalled_failed"] += 1
            continue

        restarts = await job_store.increment_retry(job)
        await scheduler.continue_later(_relay(job), 0)
        summary["restarted"] += 1
        logger.warning(
            f"[Watchdog] Restarted stalled {job.job_kind} job {job.id} for {job.tenant_id} "
            f"(restart {restarts}/{settings.WATCHDOG_MAX_RESTARTS})"
        )
    return len(stale)


async def _resume_paused(job_store: JobStore, scheduler: ContinuationScheduler, settings) -> int:
    cutoff = utcnow() - timedelta(seconds=settings.PAUSED_RESUME_AFTER_SECONDS)
    resumed = 0
    for job in await job_store.find_paused(cutoff):
        await scheduler.continue_later(_relay(job), 0)
        resumed += 1
        logger.info(f"[Watchdog] Resuming paused {job.job_kind} job {job.id} for {job.tenant_id}")
    return resumed


async def _step(summary: Dict[str, Any], name: str, fn: Callable[[], Awaitable[int]]) -> None:
    try:
        summary[name] = await fn()
    except Exception as e:
        logger.error(f"[Watchdog] Step {name} failed: {e}", exc_info=True)
        summary["errors"].append(f"{name}: {e}")


async def run_watchdog_sweep(
    job_store: JobStore,
    lock_manager: LockManager,
    scheduler: ContinuationScheduler,
    adapters: Optional[Mapping[str, StageAdapter]] = None,
    settings=None,
) -> Dict[str, Any]:
    """Run every reconciliation step once and return counts plus errors."""
    settings = resolve_settings(settings)
    adapters = adapters or {}
    summary: Dict[str, Any] = {
        "stale_locks": 0,
        "ghosts": 0,
        "provider_runs": 0,
        "provider_resumed": 0,
        "provider_failed": 0,
        "stale_jobs": 0,
        "restarted": 0,
        "waiting_reinvoked": 0,
        "stalled_failed": 0,
        "superseded": 0,
        "paused_resumed": 0,
        "errors": [],
    }

    await _step(
        summary,
        "stale_locks",
        lambda: lock_manager.sweep_stale(utcnow() - timedelta(minutes=settings.LOCK_STALE_MINUTES)),
    )
    await _step(summary, "ghosts", lambda: job_store.sweep_ghosts())
    await _step(summary, "provider_runs", lambda: _reconcile_provider_runs(job_store, scheduler, adapters, summary))
    await _step(summary, "stale_jobs", lambda: _restart_stale(job_store, scheduler, adapters, settings, summary))
    await _step(summary, "paused_resumed", lambda: _resume_paused(job_store, scheduler, settings))

    logger.info(
        f"[Watchdog] Sweep done: locks={summary['stale_locks']} ghosts={summary['ghosts']} "
        f"restarted={summary['restarted']} stalled={summary['stalled_failed']} "
        f"paused_resumed={summary['paused_resumed']} errors={len(summary['errors'])}"
    )
    return summary


class PeriodicWatchdog:
    """
    Runs run_watchdog_sweep every WATCHDOG_INTERVAL_MINUTES.

    Call start() from the app lifespan and stop() on shutdown.
    """

    def __init__(
        self,
        job_store: JobStore,
        lock_manager: LockManager,
        scheduler: ContinuationScheduler,
        adapters: Optional[Mapping[str, StageAdapter]] = None,
        settings=None,
        initial_delay_seconds: float = 5.0,
    ):
        self.job_store = job_store
        self.lock_manager = lock_manager
        self.scheduler = scheduler
        self.adapters = adapters or {}
        self.settings = resolve_settings(settings)
        self.initial_delay_seconds = initial_delay_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.info("[Watchdog] Already running")
            return
        if not self.settings.WATCHDOG_ENABLED:
            logger.info("[Watchdog] Disabled by configuration")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="relay-watchdog")
        logger.info(f"[Watchdog] Started, sweeping every {self.settings.WATCHDOG_INTERVAL_MINUTES} minutes")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("[Watchdog] Stopped")

    async def run_now(self) -> Dict[str, Any]:
        return await run_watchdog_sweep(
            self.job_store, self.lock_manager, self.scheduler, self.adapters, self.settings
        )

    async def _loop(self) -> None:
        interval_seconds = self.settings.WATCHDOG_INTERVAL_MINUTES * 60

        # Let the app finish starting before the first sweep
        await asyncio.sleep(self.initial_delay_seconds)

        while self._running:
            try:
                await self.run_now()
            except Exception as e:
                logger.error(f"[Watchdog] Sweep failed: {e}", exc_info=True)
            await asyncio.sleep(interval_seconds)

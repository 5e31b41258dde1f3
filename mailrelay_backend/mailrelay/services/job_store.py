"""
Job Store

Persisted relay jobs: lookup-or-create, idempotent checkpoints, guarded
status transitions and ghost sweeps.

Every public method opens one short session and commits before returning;
callers never hold a session across a provider call. Mutations are
conditional UPDATEs so a concurrent status change (external cancellation,
watchdog force-fail) is detected instead of overwritten.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from mailrelay.core.database import get_db_session
from mailrelay.core.exceptions import (
    IllegalTransitionError,
    JobNotFoundError,
    JobStoreError,
)
from mailrelay.core.utils import utcnow
from mailrelay.models.job import (
    ACTIVE_STATUSES,
    JobStatus,
    RelayJob,
)

logger = logging.getLogger(__name__)

# pending -> in_progress -> {paused, completed, failed}; paused -> in_progress
LEGAL_TRANSITIONS: Dict[str, tuple] = {
    JobStatus.PENDING.value: (JobStatus.IN_PROGRESS.value,),
    JobStatus.IN_PROGRESS.value: (
        JobStatus.PAUSED.value,
        JobStatus.COMPLETED.value,
        JobStatus.FAILED.value,
    ),
    JobStatus.PAUSED.value: (JobStatus.IN_PROGRESS.value,),
    JobStatus.COMPLETED.value: (),
    JobStatus.FAILED.value: (),
}

# Statuses a job may be looked up / resumed from
RESUMABLE_STATUSES = (JobStatus.PENDING.value,) + ACTIVE_STATUSES

GHOST_JOB_MESSAGE = "Ghost job: active with zero total work (creation-path bug), force-failed by sweep"


@dataclass
class CheckpointDelta:
    """
    One durable progress step.

    seq must be exactly job.checkpoint_seq + 1. Replaying a delta whose seq
    was already applied is a no-op, so a retried checkpoint write never
    double-counts.
    """
    seq: int
    cursor: Any
    done: int = 0
    failed: int = 0
    total: Optional[int] = None
    counters: Optional[Dict[str, Any]] = None
    consecutive_failures: Optional[int] = None


@dataclass
class JobLookup:
    job: Optional[RelayJob] = None
    created: bool = False
    resumed: bool = False
    no_work: bool = False
    notes: List[str] = field(default_factory=list)


class JobStore:
    """Persistence for RelayJob rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> Optional[async_sessionmaker]:
        return self._session_factory

    def _session(self):
        return get_db_session(self._session_factory)

    async def _reload(self, db, job_id: str) -> RelayJob:
        result = await db.execute(select(RelayJob).where(RelayJob.id == job_id))
        job = result.scalar_one_or_none()
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get(self, job_id: str) -> Optional[RelayJob]:
        async with self._session() as db:
            result = await db.execute(select(RelayJob).where(RelayJob.id == job_id))
            return result.scalar_one_or_none()

    async def find_active(self, tenant_id: str, job_kind: str) -> Optional[RelayJob]:
        """Most recently updated resumable job with real work for (tenant, kind)."""
        async with self._session() as db:
            result = await db.execute(
                select(RelayJob)
                .where(
                    RelayJob.tenant_id == tenant_id,
                    RelayJob.job_kind == job_kind,
                    RelayJob.status.in_(RESUMABLE_STATUSES),
                    RelayJob.items_total > 0,
                )
                .order_by(RelayJob.updated_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def get_or_create(
        self,
        tenant_id: str,
        job_kind: str,
        job_id: Optional[str] = None,
        *,
        count_work: Callable[[], Awaitable[int]],
    ) -> JobLookup:
        """
        Resume the requested job, else the active job for (tenant, kind),
        else create one sized by count_work().

        A zero work count returns JobLookup(no_work=True) and creates nothing,
        so a zero-size job can never hang in_progress.
        """
        lookup = JobLookup()

        if job_id:
            job = await self.get(job_id)
            if job is None:
                lookup.notes.append(f"requested job {job_id} not found")
            elif job.tenant_id != tenant_id or job.job_kind != job_kind:
                lookup.notes.append(f"requested job {job_id} belongs to another tenant/kind")
            elif job.is_terminal:
                lookup.notes.append(f"requested job {job_id} is {job.status}")
            elif job.is_ghost:
                lookup.notes.append(f"requested job {job_id} is a ghost")
            else:
                lookup.job = job
                lookup.resumed = True
                return lookup

        existing = await self.find_active(tenant_id, job_kind)
        if existing is not None:
            logger.info(f"[JobStore] Resuming active {job_kind} job {existing.id} for {tenant_id}")
            lookup.job = existing
            lookup.resumed = True
            return lookup

        total = await count_work()
        if total <= 0:
            logger.info(f"[JobStore] No {job_kind} work for {tenant_id}, not creating a job")
            lookup.no_work = True
            return lookup

        now = utcnow()
        async with self._session() as db:
            job = RelayJob(
                tenant_id=tenant_id,
                job_kind=job_kind,
                status=JobStatus.PENDING.value,
                items_total=total,
                items_done=0,
                items_failed=0,
                counters={},
                last_heartbeat_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            await db.flush()

        logger.info(f"[JobStore] Created {job_kind} job {job.id} for {tenant_id} (total={total})")
        lookup.job = job
        lookup.created = True
        return lookup

    # =========================================================================
    # CHECKPOINT
    # =========================================================================

    async def checkpoint(self, job: RelayJob, delta: CheckpointDelta) -> RelayJob:
        """
        Atomically persist counters, cursor and heartbeat.

        Compare-and-swap on checkpoint_seq: the UPDATE only applies when the
        stored seq is delta.seq - 1. A replay of an applied delta returns the
        stored row unchanged.
        """
        now = utcnow()
        values: Dict[str, Any] = {
            "items_done": RelayJob.items_done + delta.done,
            "items_failed": RelayJob.items_failed + delta.failed,
            "cursor": delta.cursor,
            "checkpoint_seq": delta.seq,
            "last_heartbeat_at": now,
            "updated_at": now,
        }
        if delta.total is not None:
            values["items_total"] = delta.total
        if delta.counters:
            values["counters"] = {**(job.counters or {}), **delta.counters}
        if delta.consecutive_failures is not None:
            values["consecutive_failure_count"] = delta.consecutive_failures

        async with self._session() as db:
            result = await db.execute(
                update(RelayJob)
                .where(RelayJob.id == job.id, RelayJob.checkpoint_seq == delta.seq - 1)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = await self._reload(db, job.id)
                if current.checkpoint_seq >= delta.seq:
                    logger.debug(
                        f"[JobStore] Checkpoint seq={delta.seq} already applied to {job.id}"
                    )
                    return current
                raise JobStoreError(
                    f"Checkpoint sequence gap for job {job.id}: "
                    f"stored={current.checkpoint_seq}, delta={delta.seq}",
                    code="CHECKPOINT_SEQ_GAP",
                )
            return await self._reload(db, job.id)

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    async def transition(
        self,
        job: RelayJob,
        new_status: str,
        reason: Optional[str] = None,
        code: Optional[str] = None,
    ) -> RelayJob:
        """
        Move a job along a legal lifecycle edge.

        Raises IllegalTransitionError for edges outside LEGAL_TRANSITIONS and
        when the stored status no longer matches job.status (someone else
        moved it first).
        """
        new_status = JobStatus(new_status).value
        current = job.status
        if new_status not in LEGAL_TRANSITIONS.get(current, ()):
            raise IllegalTransitionError(job.id, current, new_status)

        now = utcnow()
        values: Dict[str, Any] = {"status": new_status, "updated_at": now}
        if new_status == JobStatus.IN_PROGRESS.value:
            values["started_at"] = func.coalesce(RelayJob.started_at, now)
            values["paused_at"] = None
            values["last_heartbeat_at"] = now
            values["waiting_on"] = None
        elif new_status == JobStatus.PAUSED.value:
            values["paused_at"] = now
            values["error_message"] = reason
        elif new_status == JobStatus.COMPLETED.value:
            values["completed_at"] = now
            values["waiting_on"] = None
            values["error_message"] = None
        elif new_status == JobStatus.FAILED.value:
            values["completed_at"] = now
            values["error_message"] = reason
            values["error_code"] = code

        async with self._session() as db:
            result = await db.execute(
                update(RelayJob)
                .where(RelayJob.id == job.id, RelayJob.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                stored = await self._reload(db, job.id)
                raise IllegalTransitionError(job.id, stored.status, new_status)
            updated = await self._reload(db, job.id)

        logger.info(
            f"[JobStore] Job {job.id} {current} -> {new_status}"
            + (f" ({reason})" if reason else "")
        )
        return updated

    async def fail(self, job: RelayJob, reason: str, code: str = "FORCE_FAILED") -> bool:
        """
        Force-fail any non-terminal job (relay ceiling, watchdog, permanent
        provider error). Returns False if the job was already terminal.
        """
        now = utcnow()
        async with self._session() as db:
            result = await db.execute(
                update(RelayJob)
                .where(RelayJob.id == job.id, RelayJob.status.in_(RESUMABLE_STATUSES))
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=reason,
                    error_code=code,
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            failed = result.rowcount > 0
        if failed:
            logger.warning(f"[JobStore] Job {job.id} force-failed [{code}]: {reason}")
        return failed

    async def sweep_ghosts(self, tenant_id: Optional[str] = None) -> int:
        """Force-fail active jobs with zero total work. Returns the count swept."""
        now = utcnow()
        stmt = (
            update(RelayJob)
            .where(RelayJob.status.in_(ACTIVE_STATUSES), RelayJob.items_total == 0)
            .values(
                status=JobStatus.FAILED.value,
                error_message=GHOST_JOB_MESSAGE,
                error_code="GHOST_JOB",
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if tenant_id:
            stmt = stmt.where(RelayJob.tenant_id == tenant_id)

        async with self._session() as db:
            result = await db.execute(stmt)
            swept = result.rowcount or 0

        if swept:
            logger.warning(
                f"[JobStore] Swept {swept} ghost job(s)"
                + (f" for {tenant_id}" if tenant_id else "")
            )
        return swept

    async def supersede_older(self, tenant_id: str, job_kind: str, keep_id: str) -> int:
        """Fail every other active job for (tenant, kind) besides keep_id."""
        now = utcnow()
        async with self._session() as db:
            result = await db.execute(
                update(RelayJob)
                .where(
                    RelayJob.tenant_id == tenant_id,
                    RelayJob.job_kind == job_kind,
                    RelayJob.status.in_(RESUMABLE_STATUSES),
                    RelayJob.id != keep_id,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message="Superseded by newer job",
                    error_code="SUPERSEDED",
                    completed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

    # =========================================================================
    # BOOKKEEPING
    # =========================================================================

    async def _set(self, job_id: str, **values) -> None:
        values.setdefault("updated_at", utcnow())
        async with self._session() as db:
            await db.execute(
                update(RelayJob)
                .where(RelayJob.id == job_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    async def heartbeat(self, job: RelayJob) -> None:
        await self._set(job.id, last_heartbeat_at=utcnow())

    async def set_relay_depth(self, job: RelayJob, depth: int) -> None:
        await self._set(job.id, relay_depth=depth)

    async def set_waiting(self, job: RelayJob, reason: Optional[str]) -> None:
        await self._set(job.id, waiting_on=reason)

    async def set_provider_run(self, job: RelayJob, run_id: Optional[str]) -> None:
        await self._set(job.id, provider_run_id=run_id)

    async def record_failure(self, job: RelayJob) -> int:
        """Bump consecutive_failure_count outside a checkpoint (failed page fetch)."""
        async with self._session() as db:
            await db.execute(
                update(RelayJob)
                .where(RelayJob.id == job.id)
                .values(
                    consecutive_failure_count=RelayJob.consecutive_failure_count + 1,
                    last_heartbeat_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            refreshed = await self._reload(db, job.id)
            return refreshed.consecutive_failure_count

    async def reset_failures(self, job: RelayJob) -> None:
        await self._set(job.id, consecutive_failure_count=0)

    async def increment_retry(self, job: RelayJob) -> int:
        async with self._session() as db:
            await db.execute(
                update(RelayJob)
                .where(RelayJob.id == job.id)
                .values(
                    retry_count=RelayJob.retry_count + 1,
                    relay_depth=0,
                    last_heartbeat_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            refreshed = await self._reload(db, job.id)
            return refreshed.retry_count

    # =========================================================================
    # WATCHDOG QUERIES
    # =========================================================================

    async def find_stale(self, heartbeat_before: datetime) -> List[RelayJob]:
        """in_progress jobs whose heartbeat is older than the cutoff, newest first."""
        async with self._session() as db:
            result = await db.execute(
                select(RelayJob)
                .where(
                    RelayJob.status == JobStatus.IN_PROGRESS.value,
                    RelayJob.items_total > 0,
                    RelayJob.last_heartbeat_at < heartbeat_before,
                )
                .order_by(RelayJob.updated_at.desc())
            )
            return list(result.scalars().all())

    async def find_paused(self, paused_before: datetime) -> List[RelayJob]:
        async with self._session() as db:
            result = await db.execute(
                select(RelayJob)
                .where(
                    RelayJob.status == JobStatus.PAUSED.value,
                    RelayJob.items_total > 0,
                    RelayJob.paused_at < paused_before,
                )
                .order_by(RelayJob.paused_at.asc())
            )
            return list(result.scalars().all())

    async def find_with_provider_run(self) -> List[RelayJob]:
        async with self._session() as db:
            result = await db.execute(
                select(RelayJob)
                .where(
                    RelayJob.status.in_(RESUMABLE_STATUSES),
                    RelayJob.provider_run_id.isnot(None),
                )
            )
            return list(result.scalars().all())

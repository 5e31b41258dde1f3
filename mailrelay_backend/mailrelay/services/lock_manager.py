"""
Lock Manager

Per-(tenant, job-kind) mutual exclusion for relay invocations.

acquire() INSERTs a row; the unique constraint is the arbiter. Contention
is an expected outcome, so acquire() returns False instead of raising.
release() is best-effort: a leaked lock is reclaimed by the watchdog's
staleness sweep, never retried synchronously. refresh() must be called
from inside long batches so that sweep does not reclaim a live lock.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from mailrelay.core.database import get_db_session
from mailrelay.core.utils import utcnow
from mailrelay.models.job import RelayLock

logger = logging.getLogger(__name__)


class LockManager:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    async def acquire(self, tenant_id: str, job_kind: str, holder_id: str) -> bool:
        """True if this holder now owns the lock; False if someone else does."""
        try:
            async with get_db_session(self._session_factory) as db:
                db.add(RelayLock(
                    tenant_id=tenant_id,
                    job_kind=job_kind,
                    holder_id=holder_id,
                    acquired_at=utcnow(),
                ))
                await db.flush()
        except IntegrityError:
            logger.info(f"[LockManager] {job_kind} lock for {tenant_id} already held")
            return False

        logger.debug(f"[LockManager] {holder_id} acquired {job_kind} lock for {tenant_id}")
        return True

    async def release(self, tenant_id: str, job_kind: str, holder_id: Optional[str] = None) -> None:
        """Delete the lock. Never raises."""
        try:
            async with get_db_session(self._session_factory) as db:
                stmt = delete(RelayLock).where(
                    RelayLock.tenant_id == tenant_id,
                    RelayLock.job_kind == job_kind,
                )
                if holder_id:
                    stmt = stmt.where(RelayLock.holder_id == holder_id)
                await db.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(
                f"[LockManager] Failed to release {job_kind} lock for {tenant_id}: {e} "
                f"(watchdog will reclaim it)"
            )
            return
        logger.debug(f"[LockManager] Released {job_kind} lock for {tenant_id}")

    async def refresh(self, tenant_id: str, job_kind: str, holder_id: Optional[str] = None) -> bool:
        """
        Bump acquired_at. Returns False if the lock row is gone (reclaimed);
        the runner stops after the sub-batch it already checkpointed.
        """
        try:
            async with get_db_session(self._session_factory) as db:
                stmt = (
                    update(RelayLock)
                    .where(
                        RelayLock.tenant_id == tenant_id,
                        RelayLock.job_kind == job_kind,
                    )
                    .values(acquired_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if holder_id:
                    stmt = stmt.where(RelayLock.holder_id == holder_id)
                result = await db.execute(stmt)
                refreshed = result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"[LockManager] Failed to refresh {job_kind} lock for {tenant_id}: {e}")
            return False

        if not refreshed:
            logger.warning(
                f"[LockManager] {job_kind} lock for {tenant_id} was reclaimed while held by {holder_id}"
            )
        return refreshed

    async def sweep_stale(self, acquired_before: datetime) -> int:
        """Delete locks not refreshed since the cutoff. Returns rows removed."""
        async with get_db_session(self._session_factory) as db:
            result = await db.execute(
                delete(RelayLock).where(RelayLock.acquired_at < acquired_before)
            )
            removed = result.rowcount or 0
        if removed:
            logger.warning(f"[LockManager] Removed {removed} stale lock(s)")
        return removed

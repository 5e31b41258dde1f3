"""
Destination Store

Idempotent writes keyed by (tenant_id, external_id):
- insert_items(): ON CONFLICT DO NOTHING, so re-delivered imports are no-ops
  and never reset an item that a later stage already advanced
- apply_results(): set-to-value updates, so applying the same result twice
  leaves one identical record
- return_to_pending(): failed sub-batch items go back for the next job run;
  items past MAX_ITEM_ATTEMPTS are marked failed and dead-lettered

Also hosts the bounded work queries the stage adapters share.
"""
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import async_sessionmaker

from mailrelay.core.database import get_db_session
from mailrelay.core.utils import utcnow
from mailrelay.models.pipeline import DeadLetter
from mailrelay.models.work_item import CompetitorSite, WorkItem, WorkItemStatus

logger = logging.getLogger(__name__)

RAW_PREVIEW_CHARS = 2000


def _dialect_insert(db):
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


class DestinationStore:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self._session_factory = session_factory

    def _session(self):
        return get_db_session(self._session_factory)

    # =========================================================================
    # WRITES
    # =========================================================================

    async def insert_items(self, tenant_id: str, rows: Sequence[Dict[str, Any]]) -> int:
        """
        Insert new work items; rows already present are left untouched.

        Returns the number of rows actually inserted.
        """
        if not rows:
            return 0
        now = utcnow()
        values = [
            {**row, "tenant_id": tenant_id, "created_at": now, "updated_at": now}
            for row in rows
        ]
        async with self._session() as db:
            insert = _dialect_insert(db)
            stmt = insert(WorkItem).values(values).on_conflict_do_nothing(
                index_elements=["tenant_id", "external_id"]
            )
            result = await db.execute(stmt)
            inserted = result.rowcount if result.rowcount and result.rowcount > 0 else 0

        if inserted < len(values):
            logger.debug(
                f"[Destination] {len(values) - inserted} of {len(values)} items already present for {tenant_id}"
            )
        return inserted

    async def apply_results(
        self,
        tenant_id: str,
        updates: Iterable[Tuple[str, Dict[str, Any]]],
    ) -> int:
        """Apply per-item field updates keyed by external_id."""
        applied = 0
        now = utcnow()
        async with self._session() as db:
            for external_id, values in updates:
                result = await db.execute(
                    update(WorkItem)
                    .where(WorkItem.tenant_id == tenant_id, WorkItem.external_id == external_id)
                    .values(**values, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                applied += result.rowcount or 0
        return applied

    async def return_to_pending(
        self,
        tenant_id: str,
        external_ids: Sequence[str],
        error: str,
        max_attempts: int,
        *,
        job_id: Optional[str] = None,
        job_kind: str = "",
    ) -> List[str]:
        """
        Hand a failed sub-batch back for retry.

        Increments attempts for every item; items that reach max_attempts are
        marked failed and dead-lettered instead. Returns the failed ids.
        """
        if not external_ids:
            return []
        ids = list(external_ids)
        now = utcnow()
        async with self._session() as db:
            await db.execute(
                update(WorkItem)
                .where(WorkItem.tenant_id == tenant_id, WorkItem.external_id.in_(ids))
                .values(
                    attempts=WorkItem.attempts + 1,
                    status=WorkItemStatus.PENDING.value,
                    last_error=error[:RAW_PREVIEW_CHARS],
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(
                select(WorkItem.external_id).where(
                    WorkItem.tenant_id == tenant_id,
                    WorkItem.external_id.in_(ids),
                    WorkItem.attempts >= max_attempts,
                )
            )
            exhausted = [row[0] for row in result.fetchall()]
            if exhausted:
                await db.execute(
                    update(WorkItem)
                    .where(WorkItem.tenant_id == tenant_id, WorkItem.external_id.in_(exhausted))
                    .values(status=WorkItemStatus.FAILED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                for external_id in exhausted:
                    db.add(DeadLetter(
                        tenant_id=tenant_id,
                        job_id=job_id,
                        job_kind=job_kind,
                        external_id=external_id,
                        reason="max_attempts",
                        raw=error[:RAW_PREVIEW_CHARS],
                    ))

        if exhausted:
            logger.warning(
                f"[Destination] {len(exhausted)} item(s) exceeded {max_attempts} attempts "
                f"for {tenant_id}, dead-lettered"
            )
        return exhausted

    async def dead_letter(
        self,
        tenant_id: str,
        job_kind: str,
        reason: str,
        raw: Any = None,
        *,
        job_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> None:
        if raw is not None and not isinstance(raw, str):
            raw = json.dumps(raw, default=str)
        async with self._session() as db:
            db.add(DeadLetter(
                tenant_id=tenant_id,
                job_id=job_id,
                job_kind=job_kind,
                external_id=external_id,
                reason=reason,
                raw=raw[:RAW_PREVIEW_CHARS] if raw else None,
            ))

    # =========================================================================
    # QUERIES
    # =========================================================================

    def _filter(self, stmt, tenant_id: str, kind: str, statuses: Sequence[str], has_body: Optional[bool]):
        stmt = stmt.where(
            WorkItem.tenant_id == tenant_id,
            WorkItem.kind == kind,
            WorkItem.status.in_(list(statuses)),
        )
        if has_body is not None:
            stmt = stmt.where(WorkItem.has_body.is_(has_body))
        return stmt

    async def count(
        self,
        tenant_id: str,
        kind: str,
        statuses: Sequence[str],
        has_body: Optional[bool] = None,
    ) -> int:
        """Exact count; only used once per job, when sizing a new job."""
        async with self._session() as db:
            stmt = self._filter(select(func.count(WorkItem.id)), tenant_id, kind, statuses, has_body)
            result = await db.execute(stmt)
            return int(result.scalar() or 0)

    async def exists(
        self,
        tenant_id: str,
        kind: str,
        statuses: Sequence[str],
        has_body: Optional[bool] = None,
        after_id: Optional[int] = None,
    ) -> bool:
        """Bounded existence check: is there at least one matching item?"""
        async with self._session() as db:
            stmt = self._filter(select(WorkItem.id), tenant_id, kind, statuses, has_body)
            if after_id is not None:
                stmt = stmt.where(WorkItem.id > after_id)
            result = await db.execute(stmt.limit(1))
            return result.first() is not None

    async def fetch_after(
        self,
        tenant_id: str,
        kind: str,
        statuses: Sequence[str],
        after_id: int,
        limit: int,
        has_body: Optional[bool] = None,
    ) -> List[WorkItem]:
        """Keyset page ordered by id."""
        async with self._session() as db:
            stmt = self._filter(select(WorkItem), tenant_id, kind, statuses, has_body)
            stmt = stmt.where(WorkItem.id > after_id).order_by(WorkItem.id.asc()).limit(limit)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    # =========================================================================
    # COMPETITOR SITES
    # =========================================================================

    async def list_sites(self, tenant_id: str, statuses: Sequence[str]) -> List[CompetitorSite]:
        async with self._session() as db:
            result = await db.execute(
                select(CompetitorSite)
                .where(
                    CompetitorSite.tenant_id == tenant_id,
                    CompetitorSite.scrape_status.in_(list(statuses)),
                )
                .order_by(CompetitorSite.id.asc())
            )
            return list(result.scalars().all())

    async def count_sites(self, tenant_id: str, statuses: Sequence[str]) -> int:
        async with self._session() as db:
            result = await db.execute(
                select(func.count(CompetitorSite.id)).where(
                    CompetitorSite.tenant_id == tenant_id,
                    CompetitorSite.scrape_status.in_(list(statuses)),
                )
            )
            return int(result.scalar() or 0)

    async def set_site_status(
        self,
        tenant_id: str,
        status: str,
        domains: Optional[Sequence[str]] = None,
        from_statuses: Optional[Sequence[str]] = None,
    ) -> int:
        """Set scrape_status for the given domains (or every site matching from_statuses)."""
        stmt = update(CompetitorSite).where(CompetitorSite.tenant_id == tenant_id)
        if domains is not None:
            if not domains:
                return 0
            stmt = stmt.where(CompetitorSite.domain.in_(list(domains)))
        if from_statuses:
            stmt = stmt.where(CompetitorSite.scrape_status.in_(list(from_statuses)))
        async with self._session() as db:
            result = await db.execute(
                stmt.values(scrape_status=status, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

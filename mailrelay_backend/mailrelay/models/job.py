"""
Relay Job Models

- RelayJob: one row per (tenant, job-kind) attempt, carrying status,
  progress counters, the opaque resume cursor and resilience bookkeeping
- RelayLock: insert-as-acquire exclusivity record per (tenant, job-kind)
"""
from enum import Enum

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, Index, UniqueConstraint
)

from mailrelay.core.database import Base
from mailrelay.core.utils import new_id, utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses that can still make progress
ACTIVE_STATUSES = (JobStatus.IN_PROGRESS.value, JobStatus.PAUSED.value)
TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class JobKind(str, Enum):
    """Pipeline stages driven by the relay engine."""
    EMAIL_IMPORT = "email_import"          # Mailbox metadata scan
    MAILBOX_SYNC = "mailbox_sync"          # Body hydration for scanned messages
    EMAIL_CLASSIFY = "email_classify"      # LLM classification
    COMPETITOR_SCRAPE = "competitor_scrape"  # Crawler run + FAQ extraction


class RelayJob(Base):
    """
    Resumable batch job.

    Invariant (enforced by JobStore lookups, not the schema): at most one job
    per (tenant_id, job_kind) is in_progress/paused with items_total > 0.
    A job that is active with items_total == 0 is a ghost and gets swept.
    """
    __tablename__ = "relay_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    tenant_id = Column(String(64), nullable=False)
    job_kind = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value)

    # Resume position; opaque to the engine, wrapped as {"source": ..., "offset": n}
    cursor = Column(JSON, nullable=True)

    # Progress counters
    items_total = Column(Integer, nullable=False, default=0)
    items_done = Column(Integer, nullable=False, default=0)
    items_failed = Column(Integer, nullable=False, default=0)
    counters = Column(JSON, nullable=True)  # Stage-specific extras

    # Resilience bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)  # Watchdog restarts
    consecutive_failure_count = Column(Integer, nullable=False, default=0)
    relay_depth = Column(Integer, nullable=False, default=0)
    checkpoint_seq = Column(Integer, nullable=False, default=0)  # Idempotency token

    # External dependencies
    provider_run_id = Column(String(100), nullable=True)
    waiting_on = Column(String(200), nullable=True)

    # Timing
    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Errors
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_relay_jobs_tenant_kind_status", "tenant_id", "job_kind", "status"),
        Index("ix_relay_jobs_status_heartbeat", "status", "last_heartbeat_at"),
    )

    @property
    def is_ghost(self) -> bool:
        return self.status in ACTIVE_STATUSES and (self.items_total or 0) == 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def progress(self) -> dict:
        return {
            "total": self.items_total or 0,
            "done": self.items_done or 0,
            "failed": self.items_failed or 0,
            **(self.counters or {}),
        }

    def __repr__(self) -> str:
        return (
            f"RelayJob(id={self.id!r}, tenant={self.tenant_id!r}, kind={self.job_kind!r}, "
            f"status={self.status!r}, done={self.items_done}/{self.items_total})"
        )


class RelayLock(Base):
    """
    Exclusivity record keyed by (tenant_id, job_kind).

    INSERT is the acquire primitive: a uniqueness violation means another
    invocation holds the lock. Refreshed from inside the batch loop and
    deleted on every exit path; the watchdog deletes locks whose
    acquired_at is older than LOCK_STALE_MINUTES.
    """
    __tablename__ = "relay_locks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False)
    job_kind = Column(String(50), nullable=False)
    holder_id = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "job_kind", name="uq_relay_locks_tenant_kind"),
    )

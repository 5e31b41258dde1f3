"""
Pytest configuration and fixtures for MailRelay tests.

Stores run against a throwaway SQLite file per test; providers are faked.
"""
import os
from typing import Any, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SERVICE_TOKEN"] = "test-service-token"

from sqlalchemy import update

from mailrelay import models  # noqa: F401  (registers tables)
from mailrelay.core.config import Settings
from mailrelay.core.database import Base, build_engine, build_session_factory
from mailrelay.jobs.adapters.base import Page, StageAdapter, WorkRef
from mailrelay.jobs.engine import RelayHandler
from mailrelay.jobs.results import Matched
from mailrelay.models.job import RelayJob, RelayLock
from mailrelay.services.destination import DestinationStore
from mailrelay.services.job_store import JobStore
from mailrelay.services.lock_manager import LockManager
from mailrelay.services.scheduler import ContinuationScheduler, TaskSupervisor

TENANT = "tenant-1"


@pytest.fixture
def test_settings() -> Settings:
    """Settings tuned for fast, deterministic tests."""
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ENVIRONMENT="development",
        SERVICE_TOKEN="test-service-token",
        INVOCATION_TIME_BUDGET_SECONDS=60.0,
        STOP_BUFFER_SECONDS=10.0,
        PER_CALL_TIMEOUT_SECONDS=5.0,
        LOCK_REFRESH_EVERY_SUB_BATCHES=2,
        MAX_RELAY_DEPTH=5,
        MAX_SLEEP_ON_ENTRY_MS=1000,
        DEGRADED_RETRY_DELAY_SECONDS=30,
        RETRY_MAX_RETRIES=2,
        RETRY_BASE_DELAY_SECONDS=1.0,
        RETRY_MAX_DELAY_SECONDS=10.0,
        RETRY_JITTER_SECONDS=0.0,
        MAX_CONSECUTIVE_FAILURES=3,
        MAX_ITEM_ATTEMPTS=3,
        WATCHDOG_MAX_RESTARTS=2,
        HEARTBEAT_STALE_MINUTES=8,
        LOCK_STALE_MINUTES=3,
        PAUSED_RESUME_AFTER_SECONDS=30,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database with every table created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'relay.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory)


@pytest.fixture
def lock_manager(session_factory) -> LockManager:
    return LockManager(session_factory)


@pytest.fixture
def destination(session_factory) -> DestinationStore:
    return DestinationStore(session_factory)


@pytest.fixture
def update_job(session_factory):
    """Write raw column values onto a job (simulate age, crashes, external edits)."""
    async def _update(job_id: str, **values):
        async with session_factory() as db:
            await db.execute(update(RelayJob).where(RelayJob.id == job_id).values(**values))
            await db.commit()
    return _update


@pytest.fixture
def insert_lock(session_factory):
    async def _insert(tenant_id: str, job_kind: str, holder_id: str, acquired_at):
        async with session_factory() as db:
            db.add(RelayLock(tenant_id=tenant_id, job_kind=job_kind, holder_id=holder_id, acquired_at=acquired_at))
            await db.commit()
    return _insert


# =============================================================================
# FAKES
# =============================================================================

class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records sleeps and advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)


class FakeAdapter(StageAdapter):
    """
    In-memory stage: `total` items served in pages of page_size.

    process_errors / fetch_errors are raised, in order, by successive calls.
    on_process is awaited with each sub-batch before results are produced.
    """
    kind = "fake_stage"

    def __init__(
        self,
        total: int = 237,
        page_size: int = 50,
        sub_batch_size: int = 15,
        next_stage: Optional[str] = "fake_next",
        settings=None,
    ):
        super().__init__(DestinationStore(), settings)
        self.items = [f"item-{i:04d}" for i in range(total)]
        self.page_size = page_size
        self.sub_batch_size = sub_batch_size
        self.next_stage = next_stage
        self.fetch_calls: List[Any] = []
        self.process_calls: List[List[str]] = []
        self.committed: List[str] = []
        self.process_errors: List[Exception] = []
        self.fetch_errors: List[Exception] = []
        self.waiting_on: Optional[str] = None
        self.on_process = None

    async def count_work(self, tenant_id: str) -> int:
        return len(self.items)

    async def has_more_work(self, tenant_id: str, job=None) -> bool:
        return len(set(self.committed)) < len(self.items)

    async def fetch_page(self, tenant_id: str, cursor: Any, limit: int, job=None) -> Page:
        self.fetch_calls.append(cursor)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        if self.waiting_on:
            return Page(items=[], next_cursor=cursor, waiting_on=self.waiting_on)
        offset = int(cursor or 0)
        chunk = self.items[offset:offset + limit]
        next_offset = offset + len(chunk)
        return Page(
            items=[WorkRef(external_id=item, payload={"n": offset + i}) for i, item in enumerate(chunk)],
            next_cursor=next_offset,
            has_more=next_offset < len(self.items),
        )

    async def process(self, tenant_id: str, sub_batch: Sequence[WorkRef]):
        self.process_calls.append([ref.external_id for ref in sub_batch])
        if self.on_process is not None:
            await self.on_process(sub_batch)
        if self.process_errors:
            raise self.process_errors.pop(0)
        return [Matched(i, ref.external_id.upper()) for i, ref in enumerate(sub_batch)]

    async def commit(self, tenant_id: str, job, matched: Sequence[Tuple[WorkRef, Any]]) -> int:
        self.committed.extend(ref.external_id for ref, _ in matched)
        return len(matched)


class RecordingScheduler(ContinuationScheduler):
    """Captures continuations and next-stage invocations instead of running them."""

    def __init__(self):
        super().__init__(TaskSupervisor("test"))
        self.continuations: List[Tuple[Any, int]] = []
        self.stages: List[Tuple[str, str]] = []

    async def continue_later(self, request, delay_ms: int = 0) -> None:
        self.continuations.append((request, delay_ms))

    async def invoke_stage(self, job_kind: str, tenant_id: str) -> None:
        self.stages.append((job_kind, tenant_id))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock) -> FakeSleep:
    return FakeSleep(clock)


@pytest.fixture
def fake_adapter(test_settings) -> FakeAdapter:
    return FakeAdapter(settings=test_settings)


@pytest.fixture
def adapter_factory(test_settings):
    def _make(**kwargs) -> FakeAdapter:
        kwargs.setdefault("settings", test_settings)
        return FakeAdapter(**kwargs)
    return _make


@pytest.fixture
def recording_scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def make_handler(job_store, lock_manager, destination, recording_scheduler, test_settings, clock, fake_sleep):
    """Build a RelayHandler around an adapter with fake time."""
    def _make(adapter: StageAdapter, settings: Optional[Settings] = None) -> RelayHandler:
        return RelayHandler(
            adapter,
            job_store,
            lock_manager,
            destination,
            recording_scheduler,
            settings=settings or test_settings,
            sleep=fake_sleep,
            clock=clock,
            rng=lambda: 0.0,
        )
    return _make

"""
Tests for the watchdog sweep and its periodic runner.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from mailrelay.core.utils import utcnow
from mailrelay.jobs.adapters.base import ProviderRunStatus
from mailrelay.jobs.watchdog import PeriodicWatchdog, run_watchdog_sweep
from mailrelay.models.job import JobStatus

from conftest import TENANT

KIND = "fake_stage"


async def make_job(job_store, total=10, kind=KIND, status=JobStatus.IN_PROGRESS.value):
    async def count():
        return total

    job = (await job_store.get_or_create(TENANT, kind, count_work=count)).job
    if status != JobStatus.PENDING.value:
        job = await job_store.transition(job, JobStatus.IN_PROGRESS.value)
    if status == JobStatus.PAUSED.value:
        job = await job_store.transition(job, JobStatus.PAUSED.value, reason="degraded")
    return job


def minutes_ago(n):
    return utcnow() - timedelta(minutes=n)


@pytest.fixture
def sweep(job_store, lock_manager, recording_scheduler, test_settings):
    async def _sweep(adapters=None):
        return await run_watchdog_sweep(
            job_store, lock_manager, recording_scheduler, adapters, test_settings
        )
    return _sweep


class TestLocksAndGhosts:

    @pytest.mark.asyncio
    async def test_stale_lock_removed(self, sweep, insert_lock, lock_manager):
        await insert_lock(TENANT, KIND, "dead-holder", minutes_ago(10))

        summary = await sweep()

        assert summary["stale_locks"] == 1
        assert summary["errors"] == []
        assert await lock_manager.acquire(TENANT, KIND, "new-holder") is True

    @pytest.mark.asyncio
    async def test_ghosts_failed(self, sweep, job_store, update_job):
        job = await make_job(job_store)
        await update_job(job.id, items_total=0)

        summary = await sweep()

        assert summary["ghosts"] == 1
        assert (await job_store.get(job.id)).error_code == "GHOST_JOB"


class TestStalledJobs:

    @pytest.mark.asyncio
    async def test_fresh_job_left_alone(self, sweep, job_store, recording_scheduler):
        await make_job(job_store)

        summary = await sweep()

        assert summary["stale_jobs"] == 0
        assert recording_scheduler.continuations == []

    @pytest.mark.asyncio
    async def test_stale_heartbeat_restarts_job(self, sweep, job_store, update_job, recording_scheduler):
        job = await make_job(job_store)
        await update_job(job.id, last_heartbeat_at=minutes_ago(20), relay_depth=7)

        summary = await sweep()

        assert summary["restarted"] == 1
        request, delay = recording_scheduler.continuations[0]
        assert request.job_id == job.id
        assert request.job_kind == KIND
        assert request.relay_depth == 0
        assert delay == 0
        stored = await job_store.get(job.id)
        assert stored.retry_count == 1
        assert stored.relay_depth == 0

    @pytest.mark.asyncio
    async def test_fails_after_max_restarts(self, sweep, job_store, update_job, recording_scheduler):
        job = await make_job(job_store)
        await update_job(job.id, last_heartbeat_at=minutes_ago(20), retry_count=2)

        summary = await sweep()

        assert summary["stalled_failed"] == 1
        assert recording_scheduler.continuations == []
        stored = await job_store.get(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == "STALLED"

    @pytest.mark.asyncio
    async def test_waiting_job_reinvoked_without_restart(self, sweep, job_store, update_job, recording_scheduler):
        """A job idling on an external run is not a stall."""
        job = await make_job(job_store)
        await update_job(job.id, last_heartbeat_at=minutes_ago(20), waiting_on="crawler run r-1", retry_count=2)

        summary = await sweep()

        assert summary["waiting_reinvoked"] == 1
        assert summary["stalled_failed"] == 0
        assert len(recording_scheduler.continuations) == 1
        stored = await job_store.get(job.id)
        assert stored.status == JobStatus.IN_PROGRESS.value
        assert stored.retry_count == 2

    @pytest.mark.asyncio
    async def test_waiting_on_idle_stage_uses_restarts(self, sweep, job_store, update_job, recording_scheduler):
        """Nothing is running the awaited stage: each re-invoke costs a restart."""
        stages = {"mailbox_sync": AsyncMock()}
        job = await make_job(job_store)
        await update_job(job.id, last_heartbeat_at=minutes_ago(20), waiting_on="mailbox_sync")

        summary = await sweep(stages)

        assert summary["waiting_reinvoked"] == 0
        assert summary["restarted"] == 1
        assert (await job_store.get(job.id)).retry_count == 1

        await update_job(job.id, last_heartbeat_at=minutes_ago(20), retry_count=2)
        summary = await sweep(stages)

        assert summary["stalled_failed"] == 1
        stored = await job_store.get(job.id)
        assert stored.status == JobStatus.FAILED.value
        assert stored.error_code == "STALLED"
        assert "mailbox_sync" in stored.error_message

    @pytest.mark.asyncio
    async def test_waiting_on_running_stage_is_free(self, sweep, job_store, update_job, recording_scheduler):
        stages = {"mailbox_sync": AsyncMock()}
        await make_job(job_store, kind="mailbox_sync")
        job = await make_job(job_store)
        await update_job(job.id, last_heartbeat_at=minutes_ago(20), waiting_on="mailbox_sync", retry_count=2)

        summary = await sweep(stages)

        assert summary["waiting_reinvoked"] == 1
        assert summary["stalled_failed"] == 0
        assert (await job_store.get(job.id)).retry_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_active_jobs_superseded(self, sweep, job_store, update_job, recording_scheduler):
        older = await make_job(job_store)
        newer = await make_job(job_store, kind="other_kind")
        await update_job(older.id, last_heartbeat_at=minutes_ago(30), updated_at=minutes_ago(30))
        await update_job(newer.id, job_kind=KIND, last_heartbeat_at=minutes_ago(20), updated_at=minutes_ago(20))

        summary = await sweep()

        assert summary["superseded"] == 1
        assert summary["restarted"] == 1
        assert recording_scheduler.continuations[0][0].job_id == newer.id
        assert (await job_store.get(older.id)).error_code == "SUPERSEDED"


class TestPausedJobs:

    @pytest.mark.asyncio
    async def test_paused_job_resumed_after_cooldown(self, sweep, job_store, update_job, recording_scheduler):
        job = await make_job(job_store, status=JobStatus.PAUSED.value)

        assert (await sweep())["paused_resumed"] == 0

        await update_job(job.id, paused_at=minutes_ago(5))
        summary = await sweep()

        assert summary["paused_resumed"] == 1
        assert recording_scheduler.continuations[0][0].job_id == job.id


class TestProviderRuns:

    @pytest.fixture
    def adapter(self, fake_adapter):
        fake_adapter.poll_provider_run = AsyncMock()
        return fake_adapter

    @pytest.mark.asyncio
    async def test_failed_run_fails_job(self, sweep, job_store, adapter):
        job = await make_job(job_store)
        await job_store.set_provider_run(job, "run-1")
        adapter.poll_provider_run.return_value = ProviderRunStatus.FAILED

        summary = await sweep({KIND: adapter})

        assert summary["provider_runs"] == 1
        assert summary["provider_failed"] == 1
        assert (await job_store.get(job.id)).error_code == "PROVIDER_RUN_FAILED"

    @pytest.mark.asyncio
    async def test_finished_run_with_lost_callback_resumes(self, sweep, job_store, adapter, recording_scheduler):
        job = await make_job(job_store)
        await job_store.set_provider_run(job, "run-1")
        await job_store.set_waiting(job, "crawler run run-1")
        adapter.poll_provider_run.return_value = ProviderRunStatus.SUCCEEDED

        summary = await sweep({KIND: adapter})

        assert summary["provider_resumed"] == 1
        assert recording_scheduler.continuations[0][0].job_id == job.id
        assert (await job_store.get(job.id)).waiting_on is None

    @pytest.mark.asyncio
    async def test_poll_error_isolated_per_job(self, sweep, job_store, adapter):
        job = await make_job(job_store)
        await job_store.set_provider_run(job, "run-1")
        adapter.poll_provider_run.side_effect = RuntimeError("crawler API down")

        summary = await sweep({KIND: adapter})

        assert summary["provider_runs"] == 0
        assert any("crawler API down" in error for error in summary["errors"])
        assert (await job_store.get(job.id)).status == JobStatus.IN_PROGRESS.value


class TestStepIsolation:

    @pytest.mark.asyncio
    async def test_failing_step_does_not_stop_sweep(self, sweep, lock_manager, job_store, update_job, monkeypatch):
        monkeypatch.setattr(lock_manager, "sweep_stale", AsyncMock(side_effect=RuntimeError("db locked")))
        job = await make_job(job_store)
        await update_job(job.id, items_total=0)

        summary = await sweep()

        assert summary["errors"] == ["stale_locks: db locked"]
        assert summary["ghosts"] == 1


class TestPeriodicWatchdog:

    @pytest.mark.asyncio
    async def test_start_runs_sweep_and_stop_cancels(self, job_store, lock_manager, recording_scheduler, test_settings):
        watchdog = PeriodicWatchdog(
            job_store, lock_manager, recording_scheduler, settings=test_settings, initial_delay_seconds=0
        )
        swept = asyncio.Event()

        async def run_now():
            swept.set()
            return {}

        watchdog.run_now = run_now

        await watchdog.start()
        assert watchdog.running is True
        await asyncio.wait_for(swept.wait(), timeout=5)

        await watchdog.stop()
        assert watchdog.running is False

    @pytest.mark.asyncio
    async def test_disabled_by_configuration(self, job_store, lock_manager, recording_scheduler, test_settings):
        disabled = test_settings.model_copy(update={"WATCHDOG_ENABLED": False})
        watchdog = PeriodicWatchdog(job_store, lock_manager, recording_scheduler, settings=disabled)

        await watchdog.start()

        assert watchdog.running is False
        await watchdog.stop()

    @pytest.mark.asyncio
    async def test_run_now_returns_summary(self, job_store, lock_manager, recording_scheduler, test_settings):
        watchdog = PeriodicWatchdog(job_store, lock_manager, recording_scheduler, settings=test_settings)

        summary = await watchdog.run_now()

        assert summary["errors"] == []
        assert summary["restarted"] == 0

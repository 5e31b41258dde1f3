"""
End-to-end tests for the relay handler and batch runner.

Every test drives a RelayHandler over a FakeAdapter with a fake clock;
continuations are captured by the RecordingScheduler and replayed by hand.
"""
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import select

from mailrelay.core.exceptions import (
    ProviderPermanentError,
    ProviderRateLimitError,
    ProviderTransientError,
)
from mailrelay.jobs.adapters.base import ProviderRunStatus
from mailrelay.jobs.batch_runner import unwrap_cursor
from mailrelay.jobs.engine import TriggerRequest
from mailrelay.jobs.results import Malformed, Matched
from mailrelay.models.job import JobStatus
from mailrelay.models.pipeline import DeadLetter

from conftest import TENANT

KIND = "fake_stage"


async def drain(handler, scheduler, limit=20):
    """Replay captured continuations until none are left."""
    responses = []
    while scheduler.continuations and limit:
        request, delay = scheduler.continuations.pop(0)
        payload = request.to_payload(delay)
        responses.append(await handler.handle(TriggerRequest.from_payload(payload)))
        limit -= 1
    return responses


def position(cursor):
    source, offset = unwrap_cursor(cursor)
    return (source or 0) + offset


class TestFullRun:

    @pytest.mark.asyncio
    async def test_single_invocation_processes_everything(
        self, make_handler, fake_adapter, recording_scheduler, job_store
    ):
        """237 items, pages of 50, sub-batches of 15: 5 fetches, 16 process calls."""
        handler = make_handler(fake_adapter)

        response = await handler.handle(TriggerRequest(tenant_id=TENANT))

        assert response.success is True
        assert response.status == "completed"
        assert response.processed_this_run == 237
        assert response.remaining == 0
        assert len(fake_adapter.fetch_calls) == 5
        assert len(fake_adapter.process_calls) == 16
        assert [len(call) for call in fake_adapter.process_calls[:-1]] == [15] * 15
        assert len(fake_adapter.process_calls[-1]) == 12
        assert recording_scheduler.continuations == []
        assert recording_scheduler.stages == [("fake_next", TENANT)]

        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.items_done == 237
        assert job.items_total == 237
        assert job.checkpoint_seq == 16

    @pytest.mark.asyncio
    async def test_sub_batches_span_page_boundaries(self, make_handler, adapter_factory):
        """Carry-over keeps sub-batches full across pages of 50."""
        adapter = adapter_factory(total=100, page_size=50, sub_batch_size=15)

        await make_handler(adapter).handle(TriggerRequest(tenant_id=TENANT))

        sizes = [len(call) for call in adapter.process_calls]
        assert sizes == [15, 15, 15, 15, 15, 15, 10]
        assert adapter.process_calls[3][0] == "item-0045"
        assert adapter.process_calls[3][-1] == "item-0059"

    @pytest.mark.asyncio
    async def test_no_work_invokes_next_stage(self, make_handler, adapter_factory, recording_scheduler, job_store):
        adapter = adapter_factory(total=0)

        response = await make_handler(adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "no_work"
        assert response.job_id is None
        assert recording_scheduler.stages == [("fake_next", TENANT)]
        assert await job_store.find_active(TENANT, KIND) is None

    @pytest.mark.asyncio
    async def test_last_stage_does_not_chain(self, make_handler, adapter_factory, recording_scheduler):
        adapter = adapter_factory(total=20, next_stage=None)

        response = await make_handler(adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "completed"
        assert recording_scheduler.stages == []


class TestRelaying:

    @pytest.mark.asyncio
    async def test_relays_across_invocations_without_duplicates(
        self, make_handler, fake_adapter, recording_scheduler, job_store, clock
    ):
        """Each sub-batch costs 20s of a 50s budget: 3 sub-batches per invocation."""
        async def slow(batch):
            clock.advance(20)

        fake_adapter.on_process = slow
        handler = make_handler(fake_adapter)

        first = await handler.handle(TriggerRequest(tenant_id=TENANT))

        assert first.status == "continuing"
        assert first.processed_this_run == 45
        assert first.remaining == 1
        assert first.relay_depth == 0
        request, delay = recording_scheduler.continuations[0]
        assert delay == 0
        assert request.job_id == first.job_id

        positions = [position((await job_store.get(first.job_id)).cursor)]
        responses = [first]
        while recording_scheduler.continuations:
            responses.extend(await drain(handler, recording_scheduler, limit=1))
            positions.append(position((await job_store.get(first.job_id)).cursor))

        assert len(responses) == 6
        assert [r.status for r in responses] == ["continuing"] * 5 + ["completed"]
        assert positions == sorted(positions)
        assert positions[0] == 45
        assert len(fake_adapter.committed) == 237
        assert len(set(fake_adapter.committed)) == 237
        assert recording_scheduler.stages == [("fake_next", TENANT)]

        job = await job_store.get(first.job_id)
        assert job.items_done == 237
        assert job.relay_depth == 0

    @pytest.mark.asyncio
    async def test_crash_before_checkpoint_replays_without_double_count(
        self, make_handler, fake_adapter, recording_scheduler, job_store, monkeypatch
    ):
        """A sub-batch committed but not checkpointed is redone; counters stay exact."""
        real_checkpoint = job_store.checkpoint
        calls = {"n": 0}

        async def crashing_checkpoint(job, delta):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("process killed")
            return await real_checkpoint(job, delta)

        monkeypatch.setattr(job_store, "checkpoint", crashing_checkpoint)
        handler = make_handler(fake_adapter)

        crashed = await handler.handle(TriggerRequest(tenant_id=TENANT))

        assert crashed.success is False
        assert crashed.status == "failed"
        assert recording_scheduler.continuations == []
        job = await job_store.find_active(TENANT, KIND)
        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.items_done == 15

        resumed = await handler.handle(TriggerRequest(tenant_id=TENANT, job_id=job.id))

        assert resumed.status == "completed"
        job = await job_store.get(job.id)
        assert job.items_done == 237
        assert len(set(fake_adapter.committed)) == 237
        assert len(fake_adapter.committed) == 252

    @pytest.mark.asyncio
    async def test_crash_after_checkpoint_does_not_replay(
        self, make_handler, fake_adapter, job_store, monkeypatch
    ):
        real_checkpoint = job_store.checkpoint
        calls = {"n": 0}

        async def lost_ack(job, delta):
            stored = await real_checkpoint(job, delta)
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("connection dropped after commit")
            return stored

        monkeypatch.setattr(job_store, "checkpoint", lost_ack)
        handler = make_handler(fake_adapter)

        await handler.handle(TriggerRequest(tenant_id=TENANT))
        job = await job_store.find_active(TENANT, KIND)
        assert job.items_done == 30
        assert job.checkpoint_seq == 2

        await handler.handle(TriggerRequest(tenant_id=TENANT, job_id=job.id))

        job = await job_store.get(job.id)
        assert job.items_done == 237
        assert len(fake_adapter.committed) == 237

    @pytest.mark.asyncio
    async def test_resume_cursor_seeds_new_job(self, make_handler, fake_adapter, job_store):
        response = await make_handler(fake_adapter).handle(
            TriggerRequest(tenant_id=TENANT, resume_cursor=200)
        )

        assert fake_adapter.fetch_calls[0] == 200
        assert response.processed_this_run == 37
        job = await job_store.get(response.job_id)
        assert job.items_done == 37

    @pytest.mark.asyncio
    async def test_relay_for_finished_job_is_dropped(
        self, make_handler, adapter_factory, recording_scheduler, job_store
    ):
        """A stale continuation must not start a fresh job."""
        adapter = adapter_factory(total=20)
        handler = make_handler(adapter)
        done = await handler.handle(TriggerRequest(tenant_id=TENANT))
        fetches = len(adapter.fetch_calls)

        stale = await handler.handle(TriggerRequest(tenant_id=TENANT, job_id=done.job_id))

        assert stale.status == "cancelled"
        assert len(adapter.fetch_calls) == fetches
        assert await job_store.find_active(TENANT, KIND) is None
        assert recording_scheduler.stages == [("fake_next", TENANT)]


class TestExclusivity:

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_skipped(self, make_handler, fake_adapter, recording_scheduler):
        handler = make_handler(fake_adapter)
        nested = []

        async def trigger_again(batch):
            if not nested:
                nested.append(await handler.handle(TriggerRequest(tenant_id=TENANT)))

        fake_adapter.on_process = trigger_again

        response = await handler.handle(TriggerRequest(tenant_id=TENANT))

        assert nested[0].status == "skipped"
        assert nested[0].success is True
        assert response.status == "completed"
        assert len(fake_adapter.committed) == 237

    @pytest.mark.asyncio
    async def test_lock_released_after_unexpected_error(self, make_handler, fake_adapter, lock_manager):
        fake_adapter.process_errors = [RuntimeError("bug in adapter")]

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.success is False
        assert "bug in adapter" in response.message
        assert await lock_manager.acquire(TENANT, KIND, "next-holder") is True

    @pytest.mark.asyncio
    async def test_ghost_job_swept_before_lookup(self, make_handler, fake_adapter, job_store, update_job):
        async def five():
            return 5

        ghost = (await job_store.get_or_create(TENANT, KIND, count_work=five)).job
        await update_job(ghost.id, status=JobStatus.IN_PROGRESS.value, items_total=0)

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "completed"
        assert response.job_id != ghost.id
        assert (await job_store.get(ghost.id)).error_code == "GHOST_JOB"


class TestBackpressure:

    @pytest.mark.asyncio
    async def test_retry_after_past_budget_becomes_delayed_relay(
        self, make_handler, fake_adapter, recording_scheduler, job_store, test_settings, fake_sleep
    ):
        """429 asking for 5s with 2s of budget left: relay with a 5s delay, no progress lost."""
        short = test_settings.model_copy(update={"INVOCATION_TIME_BUDGET_SECONDS": 12.0})
        fake_adapter.process_errors = [ProviderRateLimitError(retry_after_seconds=5)]
        handler = make_handler(fake_adapter, settings=short)

        response = await handler.handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "rate_limited"
        assert response.success is True
        assert response.remaining == 1
        assert response.relay_depth == 1
        assert fake_sleep.calls == []

        request, delay = recording_scheduler.continuations[0]
        assert delay == 5000
        assert request.to_payload(delay)["sleep_before_start_ms"] == 5000
        assert request.relay_depth == 1

        job = await job_store.get(response.job_id)
        assert job.items_done == 0
        assert job.cursor is None
        assert job.status == JobStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_sleep_on_entry_is_capped(self, make_handler, fake_adapter, recording_scheduler, fake_sleep, job_store):
        """3000ms requested, 1000ms cap: sleep 1s, carry 2000ms to the next relay."""
        response = await make_handler(fake_adapter).handle(
            TriggerRequest(tenant_id=TENANT, sleep_before_start_ms=3000, relay_depth=2)
        )

        assert response.status == "rate_limited"
        assert fake_sleep.calls == [1.0]
        request, delay = recording_scheduler.continuations[0]
        assert delay == 2000
        assert request.relay_depth == 2
        assert fake_adapter.fetch_calls == []
        assert await job_store.find_active(TENANT, KIND) is None

    @pytest.mark.asyncio
    async def test_short_sleep_on_entry_then_work(self, make_handler, fake_adapter, fake_sleep):
        response = await make_handler(fake_adapter).handle(
            TriggerRequest(tenant_id=TENANT, sleep_before_start_ms=500)
        )

        assert fake_sleep.calls[0] == 0.5
        assert response.status == "completed"

    @pytest.mark.asyncio
    async def test_relay_depth_ceiling_fails_job(self, make_handler, fake_adapter, recording_scheduler, job_store):
        """Reaching the ceiling (5 in tests) fails the relayed job."""
        async def count():
            return 237

        relayed = (await job_store.get_or_create(TENANT, KIND, count_work=count)).job

        response = await make_handler(fake_adapter).handle(
            TriggerRequest(tenant_id=TENANT, job_id=relayed.id, relay_depth=5)
        )

        assert response.success is False
        assert response.status == "failed"
        assert recording_scheduler.continuations == []
        assert recording_scheduler.stages == []
        assert fake_adapter.process_calls == []

        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_code == "RELAY_DEPTH_EXCEEDED"

    @pytest.mark.asyncio
    async def test_relay_depth_ceiling_creates_no_job(self, make_handler, fake_adapter, job_store):
        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT, relay_depth=5))

        assert response.status == "failed"
        assert response.job_id is None
        assert fake_adapter.fetch_calls == []
        assert await job_store.find_active(TENANT, KIND) is None

    @pytest.mark.asyncio
    async def test_progress_resets_relay_depth(self, make_handler, fake_adapter, recording_scheduler, clock):
        async def out_of_time(batch):
            clock.advance(60)

        fake_adapter.on_process = out_of_time

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT, relay_depth=4))

        assert response.status == "continuing"
        assert response.processed_this_run == 15
        request, _ = recording_scheduler.continuations[0]
        assert request.relay_depth == 0


class TestDegradedMode:

    @pytest.mark.asyncio
    async def test_pauses_after_consecutive_failures_then_resumes(
        self, make_handler, fake_adapter, recording_scheduler, job_store, test_settings
    ):
        no_retries = test_settings.model_copy(update={"RETRY_MAX_RETRIES": 0})
        fake_adapter.process_errors = [ProviderTransientError("503") for _ in range(3)]
        handler = make_handler(fake_adapter, settings=no_retries)

        response = await handler.handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "paused"
        request, delay = recording_scheduler.continuations[0]
        assert delay == 30000
        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.PAUSED.value
        assert job.items_failed == 45
        assert job.consecutive_failure_count == 3
        assert "Paused after 3" in job.error_message

        recording_scheduler.continuations.clear()
        resumed = await handler.handle(TriggerRequest(tenant_id=TENANT, job_id=job.id))

        assert resumed.status == "completed"
        job = await job_store.get(job.id)
        assert job.items_done == 192
        assert job.items_failed == 45
        assert job.items_total == 237
        assert job.consecutive_failure_count == 0

    @pytest.mark.asyncio
    async def test_permanent_error_fails_job(self, make_handler, fake_adapter, recording_scheduler, job_store):
        fake_adapter.process_errors = [ProviderPermanentError("access revoked", status_code=403)]

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.success is False
        assert response.status == "failed"
        assert recording_scheduler.continuations == []
        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_code == "PROVIDER_PERMANENT"

    @pytest.mark.asyncio
    async def test_malformed_and_unmatched_results(self, make_handler, adapter_factory, session_factory, job_store):
        adapter = adapter_factory(total=15)

        async def partial(tenant_id, sub_batch):
            adapter.process_calls.append([ref.external_id for ref in sub_batch])
            results = [Matched(i, ref.external_id) for i, ref in enumerate(sub_batch) if i % 2 == 0]
            return results + [Malformed(raw={"oops": True}), Matched(99, "stray")]

        adapter.process = partial

        response = await make_handler(adapter).handle(TriggerRequest(tenant_id=TENANT))

        job = await job_store.get(response.job_id)
        assert job.items_done == 8
        assert job.items_failed == 7
        assert job.items_total == 15
        async with session_factory() as db:
            rows = (await db.execute(select(DeadLetter))).scalars().all()
        assert len(rows) == 2
        assert {row.reason for row in rows} == {"malformed_output"}


class TestStopConditions:

    @pytest.mark.asyncio
    async def test_external_cancellation_stops_run(
        self, make_handler, fake_adapter, recording_scheduler, job_store
    ):
        async def cancel_on_second(batch):
            if len(fake_adapter.process_calls) == 2:
                job = await job_store.find_active(TENANT, KIND)
                await job_store.fail(job, "Cancelled by user", code="CANCELLED")

        fake_adapter.on_process = cancel_on_second

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "cancelled"
        assert len(fake_adapter.process_calls) == 2
        assert recording_scheduler.continuations == []
        assert recording_scheduler.stages == []
        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.error_code == "CANCELLED"

    @pytest.mark.asyncio
    async def test_reclaimed_lock_stops_run(
        self, make_handler, fake_adapter, recording_scheduler, job_store, lock_manager
    ):
        """Once the watchdog has taken the lock away, this invocation must not keep going."""
        async def reclaim_on_first(batch):
            if len(fake_adapter.process_calls) == 1:
                await lock_manager.release(TENANT, KIND)

        fake_adapter.on_process = reclaim_on_first

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "cancelled"
        assert len(fake_adapter.process_calls) == 2
        assert recording_scheduler.continuations == []
        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.items_done == 30

    @pytest.mark.asyncio
    async def test_waiting_on_dependency(self, make_handler, fake_adapter, recording_scheduler, job_store):
        fake_adapter.waiting_on = "crawler run run-1"

        response = await make_handler(fake_adapter).handle(TriggerRequest(tenant_id=TENANT))

        assert response.status == "waiting_on_dependency"
        assert recording_scheduler.continuations == []
        job = await job_store.get(response.job_id)
        assert job.status == JobStatus.IN_PROGRESS.value
        assert job.waiting_on == "crawler run run-1"


class TestProviderCallback:

    @pytest_asyncio.fixture
    async def waiting_job(self, make_handler, fake_adapter, job_store):
        fake_adapter.on_job_created = AsyncMock(return_value="run-1")
        fake_adapter.waiting_on = "crawler run run-1"
        handler = make_handler(fake_adapter)
        response = await handler.handle(TriggerRequest(tenant_id=TENANT))
        return handler, await job_store.get(response.job_id)

    @pytest.mark.asyncio
    async def test_provider_run_recorded(self, waiting_job):
        _, job = waiting_job

        assert job.provider_run_id == "run-1"
        assert job.waiting_on == "crawler run run-1"

    @pytest.mark.asyncio
    async def test_success_resumes(self, waiting_job, recording_scheduler, job_store):
        handler, job = waiting_job

        response = await handler.handle_provider_callback(TENANT, "run-1", ProviderRunStatus.SUCCEEDED)

        assert response.status == "continuing"
        request, delay = recording_scheduler.continuations[0]
        assert request.job_id == job.id
        assert request.relay_depth == 0
        assert delay == 0
        assert (await job_store.get(job.id)).waiting_on is None

    @pytest.mark.asyncio
    async def test_failure_fails_job(self, waiting_job, job_store):
        handler, job = waiting_job

        response = await handler.handle_provider_callback(TENANT, "run-1", ProviderRunStatus.FAILED)

        assert response.success is False
        assert (await job_store.get(job.id)).error_code == "PROVIDER_RUN_FAILED"

    @pytest.mark.asyncio
    async def test_running_keeps_waiting(self, waiting_job, recording_scheduler):
        handler, _ = waiting_job

        response = await handler.handle_provider_callback(TENANT, "run-1", ProviderRunStatus.RUNNING)

        assert response.status == "waiting_on_dependency"
        assert recording_scheduler.continuations == []

    @pytest.mark.asyncio
    async def test_unknown_run_is_skipped(self, waiting_job):
        handler, _ = waiting_job

        response = await handler.handle_provider_callback(TENANT, "run-other", ProviderRunStatus.SUCCEEDED)

        assert response.status == "skipped"


def test_trigger_payload_round_trip():
    request = TriggerRequest.from_payload(
        {"tenant_id": TENANT, "job_id": "j-1", "sleep_before_start_ms": "250", "relay_depth": 3}
    )

    assert request.sleep_before_start_ms == 250
    assert request.relay_depth == 3
    assert request.to_payload() == {
        "tenant_id": TENANT,
        "job_id": "j-1",
        "relay_depth": 3,
        "sleep_before_start_ms": 250,
    }

"""
Tests for continuation schedulers and the task supervisor.
"""
import asyncio
import json
import logging

import httpx
import pytest

from mailrelay.services.scheduler import (
    SERVICE_TOKEN_HEADER,
    ContinuationRequest,
    HttpCallbackScheduler,
    InProcessScheduler,
    TaskSupervisor,
    build_scheduler,
)


class TestContinuationRequest:

    def test_payload_carries_delay_and_depth(self):
        request = ContinuationRequest(job_kind="mailbox_sync", tenant_id="t-1", job_id="j-1", relay_depth=2)

        assert request.to_payload(5000) == {
            "tenant_id": "t-1",
            "job_id": "j-1",
            "relay_depth": 2,
            "sleep_before_start_ms": 5000,
        }

    def test_negative_delay_clamped(self):
        payload = ContinuationRequest(job_kind="email_import", tenant_id="t-1").to_payload(-10)

        assert payload["sleep_before_start_ms"] == 0
        assert "job_id" not in payload


class TestInProcessScheduler:

    @pytest.mark.asyncio
    async def test_dispatches_payload(self):
        supervisor = TaskSupervisor("test")
        received = []

        async def dispatch(kind, payload):
            received.append((kind, payload))

        scheduler = InProcessScheduler(supervisor, dispatch)
        await scheduler.continue_later(ContinuationRequest("email_classify", "t-1", "j-9", 1), 250)
        await supervisor.drain(timeout=5)

        assert received == [(
            "email_classify",
            {"tenant_id": "t-1", "job_id": "j-9", "relay_depth": 1, "sleep_before_start_ms": 250},
        )]

    @pytest.mark.asyncio
    async def test_invoke_stage_starts_fresh_chain(self):
        supervisor = TaskSupervisor("test")
        received = []

        async def dispatch(kind, payload):
            received.append((kind, payload))

        scheduler = InProcessScheduler(supervisor, dispatch)
        await scheduler.invoke_stage("email_classify", "t-1")
        await supervisor.drain(timeout=5)

        assert received == [("email_classify", {"tenant_id": "t-1", "relay_depth": 0, "sleep_before_start_ms": 0})]

    @pytest.mark.asyncio
    async def test_unbound_scheduler_raises(self):
        scheduler = InProcessScheduler(TaskSupervisor("test"))

        with pytest.raises(RuntimeError):
            await scheduler.continue_later(ContinuationRequest("email_import", "t-1"))


class TestHttpCallbackScheduler:

    @pytest.mark.asyncio
    async def test_posts_to_trigger_endpoint_with_token(self):
        captured = []

        def handler(request: httpx.Request):
            captured.append(request)
            return httpx.Response(202, json={"status": "continuing"})

        supervisor = TaskSupervisor("test")
        scheduler = HttpCallbackScheduler(
            supervisor,
            base_url="https://relay.example.com/",
            service_token="secret",
            transport=httpx.MockTransport(handler),
        )

        await scheduler.continue_later(ContinuationRequest("mailbox_sync", "t-1", "j-1", 3), 1500)
        await supervisor.drain(timeout=5)

        assert len(captured) == 1
        request = captured[0]
        assert str(request.url) == "https://relay.example.com/relay/mailbox_sync"
        assert request.headers[SERVICE_TOKEN_HEADER] == "secret"
        assert json.loads(request.content) == {
            "tenant_id": "t-1",
            "job_id": "j-1",
            "relay_depth": 3,
            "sleep_before_start_ms": 1500,
        }

    @pytest.mark.asyncio
    async def test_error_status_logged_not_raised(self, caplog):
        supervisor = TaskSupervisor("test")
        scheduler = HttpCallbackScheduler(
            supervisor,
            base_url="https://relay.example.com",
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom")),
        )

        with caplog.at_level(logging.ERROR):
            await scheduler.continue_later(ContinuationRequest("mailbox_sync", "t-1"))
            await supervisor.drain(timeout=5)

        assert "returned 500" in caplog.text

    def test_requires_base_url(self):
        with pytest.raises(ValueError):
            HttpCallbackScheduler(TaskSupervisor("test"), base_url="")


class TestTaskSupervisor:

    @pytest.mark.asyncio
    async def test_drain_waits_for_tasks(self):
        supervisor = TaskSupervisor("test")
        done = []

        async def work():
            await asyncio.sleep(0.01)
            done.append(True)

        supervisor.spawn(work())
        supervisor.spawn(work())
        assert supervisor.pending == 2

        cancelled = await supervisor.drain(timeout=5)

        assert cancelled == 0
        assert done == [True, True]
        assert supervisor.pending == 0

    @pytest.mark.asyncio
    async def test_drain_cancels_after_timeout(self):
        supervisor = TaskSupervisor("test")
        supervisor.spawn(asyncio.sleep(60))

        cancelled = await supervisor.drain(timeout=0.01)

        assert cancelled == 1
        assert supervisor.pending == 0

    @pytest.mark.asyncio
    async def test_failed_task_is_logged(self, caplog):
        supervisor = TaskSupervisor("test")

        async def broken():
            raise ValueError("lost continuation")

        with caplog.at_level(logging.ERROR):
            supervisor.spawn(broken(), name="relay:broken")
            await supervisor.drain(timeout=5)

        assert "relay:broken" in caplog.text
        assert "lost continuation" in caplog.text


def test_build_scheduler_by_mode(test_settings):
    supervisor = TaskSupervisor("test")

    assert isinstance(build_scheduler(test_settings, supervisor), InProcessScheduler)

    http_settings = test_settings.model_copy(
        update={"CONTINUATION_MODE": "http", "SELF_INVOKE_BASE_URL": "https://relay.example.com"}
    )
    assert isinstance(build_scheduler(http_settings, supervisor), HttpCallbackScheduler)

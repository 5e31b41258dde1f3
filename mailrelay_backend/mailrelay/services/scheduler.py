"""
Continuation Scheduler

How a relay invocation hands off to its successor:
- InProcessScheduler: supervised asyncio tasks call the registered handler
  directly (single process, tests, development)
- HttpCallbackScheduler: fire-and-forget POST to our own trigger endpoint,
  so the next invocation gets a fresh time budget on whichever instance
  picks it up

Delays are not slept here. They travel in the trigger payload as
sleep_before_start_ms and the receiving handler sleeps on entry.

Background work runs through a TaskSupervisor that keeps strong references
to its tasks, logs their failures and is drained on shutdown.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

import httpx

logger = logging.getLogger(__name__)

SERVICE_TOKEN_HEADER = "X-Service-Token"


@dataclass
class ContinuationRequest:
    job_kind: str
    tenant_id: str
    job_id: Optional[str] = None
    relay_depth: int = 0
    resume_cursor: Any = None

    def to_payload(self, delay_ms: int = 0) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "tenant_id": self.tenant_id,
            "relay_depth": self.relay_depth,
            "sleep_before_start_ms": max(0, int(delay_ms)),
        }
        if self.job_id:
            payload["job_id"] = self.job_id
        if self.resume_cursor is not None:
            payload["resume_cursor"] = self.resume_cursor
        return payload


class TaskSupervisor:
    """Owns fire-and-forget tasks so they are neither garbage collected nor lost on shutdown."""

    def __init__(self, name: str = "relay"):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                f"[Scheduler] Background task {task.get_name()} failed: {error!r}",
                exc_info=error,
            )

    async def drain(self, timeout: Optional[float] = None) -> int:
        """
        Wait for outstanding tasks, including tasks spawned while draining.

        Returns the number of tasks cancelled because the timeout ran out.
        """
        loop = asyncio.get_running_loop()
        stop_at = loop.time() + timeout if timeout is not None else None
        while self._tasks:
            remaining = None if stop_at is None else stop_at - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

        leftover = list(self._tasks)
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)
            logger.warning(f"[Scheduler] Cancelled {len(leftover)} task(s) still running at shutdown")
        return len(leftover)


class ContinuationScheduler(ABC):

    def __init__(self, supervisor: TaskSupervisor):
        self.supervisor = supervisor

    @abstractmethod
    async def continue_later(self, request: ContinuationRequest, delay_ms: int = 0) -> None:
        """Schedule another invocation of request.job_kind after delay_ms."""

    async def invoke_stage(self, job_kind: str, tenant_id: str) -> None:
        """Kick off the next pipeline stage with a fresh relay chain."""
        await self.continue_later(ContinuationRequest(job_kind=job_kind, tenant_id=tenant_id), 0)


Dispatcher = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class InProcessScheduler(ContinuationScheduler):
    """Runs continuations as supervised tasks in this process."""

    def __init__(self, supervisor: TaskSupervisor, dispatcher: Optional[Dispatcher] = None):
        super().__init__(supervisor)
        self._dispatcher = dispatcher

    def bind(self, dispatcher: Dispatcher) -> None:
        self._dispatcher = dispatcher

    async def continue_later(self, request: ContinuationRequest, delay_ms: int = 0) -> None:
        if self._dispatcher is None:
            raise RuntimeError("InProcessScheduler has no dispatcher bound")
        payload = request.to_payload(delay_ms)
        logger.info(
            f"[Scheduler] Continuing {request.job_kind} for {request.tenant_id} "
            f"in-process (delay={payload['sleep_before_start_ms']}ms, depth={request.relay_depth})"
        )
        self.supervisor.spawn(
            self._dispatcher(request.job_kind, payload),
            name=f"relay:{request.job_kind}:{request.tenant_id}",
        )


class HttpCallbackScheduler(ContinuationScheduler):
    """Posts the continuation to our own trigger endpoint without awaiting the result."""

    def __init__(
        self,
        supervisor: TaskSupervisor,
        base_url: str,
        service_token: str = "",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(supervisor)
        if not base_url:
            raise ValueError("HttpCallbackScheduler requires a base_url")
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self._transport = transport

    def _url(self, job_kind: str) -> str:
        return f"{self.base_url}/relay/{job_kind}"

    async def _post(self, job_kind: str, payload: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers[SERVICE_TOKEN_HEADER] = self.service_token
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(self._url(job_kind), json=payload, headers=headers)
            except httpx.HTTPError as e:
                logger.error(f"[Scheduler] Self-invoke of {job_kind} failed: {e}")
                return
        if response.status_code >= 400:
            logger.error(
                f"[Scheduler] Self-invoke of {job_kind} returned {response.status_code}: "
                f"{response.text[:200]}"
            )

    async def continue_later(self, request: ContinuationRequest, delay_ms: int = 0) -> None:
        payload = request.to_payload(delay_ms)
        logger.info(
            f"[Scheduler] Relaying {request.job_kind} for {request.tenant_id} via HTTP "
            f"(delay={payload['sleep_before_start_ms']}ms, depth={request.relay_depth})"
        )
        self.supervisor.spawn(
            self._post(request.job_kind, payload),
            name=f"relay-http:{request.job_kind}:{request.tenant_id}",
        )


def build_scheduler(settings, supervisor: TaskSupervisor, dispatcher: Optional[Dispatcher] = None) -> ContinuationScheduler:
    if settings.CONTINUATION_MODE == "http":
        return HttpCallbackScheduler(
            supervisor,
            base_url=settings.SELF_INVOKE_BASE_URL,
            service_token=settings.SERVICE_TOKEN,
        )
    return InProcessScheduler(supervisor, dispatcher)

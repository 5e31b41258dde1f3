"""
Relay registry

Wires one RelayHandler per stage around shared stores and a scheduler, and
dispatches trigger payloads by job kind. The in-process scheduler is bound
to dispatch() so continuations loop back through the same handlers.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from mailrelay.core.config import resolve_settings
from mailrelay.jobs.adapters import (
    CompetitorScrapeAdapter,
    EmailClassifyAdapter,
    EmailImportAdapter,
    MailboxSyncAdapter,
    StageAdapter,
)
from mailrelay.jobs.engine import RelayHandler, TriggerRequest, TriggerResponse
from mailrelay.services.destination import DestinationStore
from mailrelay.services.job_store import JobStore
from mailrelay.services.lock_manager import LockManager
from mailrelay.services.scheduler import ContinuationScheduler, InProcessScheduler, TaskSupervisor

logger = logging.getLogger(__name__)


class UnknownJobKindError(KeyError):
    pass


class RelayRegistry:

    def __init__(
        self,
        job_store: JobStore,
        lock_manager: LockManager,
        destination: DestinationStore,
        scheduler: ContinuationScheduler,
        settings=None,
        **handler_options,
    ):
        self.job_store = job_store
        self.lock_manager = lock_manager
        self.destination = destination
        self.scheduler = scheduler
        self.settings = resolve_settings(settings)
        self._handler_options = handler_options
        self._handlers: Dict[str, RelayHandler] = {}

        if isinstance(scheduler, InProcessScheduler):
            scheduler.bind(self.dispatch)

    @property
    def kinds(self) -> List[str]:
        return list(self._handlers)

    @property
    def adapters(self) -> Dict[str, StageAdapter]:
        return {kind: handler.adapter for kind, handler in self._handlers.items()}

    def register(self, adapter: StageAdapter) -> RelayHandler:
        handler = RelayHandler(
            adapter,
            self.job_store,
            self.lock_manager,
            self.destination,
            self.scheduler,
            settings=self.settings,
            **self._handler_options,
        )
        self._handlers[adapter.kind] = handler
        return handler

    def handler_for(self, job_kind: str) -> RelayHandler:
        try:
            return self._handlers[job_kind]
        except KeyError:
            raise UnknownJobKindError(job_kind) from None

    def adapter_for(self, job_kind: str) -> StageAdapter:
        return self.handler_for(job_kind).adapter

    async def dispatch(self, job_kind: str, payload: Dict[str, Any]) -> TriggerResponse:
        handler = self.handler_for(job_kind)
        return await handler.handle(TriggerRequest.from_payload(payload))

    async def close(self) -> None:
        for handler in self._handlers.values():
            try:
                await handler.adapter.close()
            except Exception as e:
                logger.warning(f"[Registry] Closing {handler.kind} adapter failed: {e}")


def default_adapters(destination: DestinationStore, settings) -> Iterable[StageAdapter]:
    return (
        EmailImportAdapter(destination, settings),
        MailboxSyncAdapter(destination, settings),
        EmailClassifyAdapter(destination, settings),
        CompetitorScrapeAdapter(destination, settings),
    )


def build_registry(
    settings=None,
    session_factory: Optional[async_sessionmaker] = None,
    scheduler: Optional[ContinuationScheduler] = None,
    adapters: Optional[Iterable[StageAdapter]] = None,
) -> RelayRegistry:
    settings = resolve_settings(settings)
    if scheduler is None:
        scheduler = InProcessScheduler(TaskSupervisor())
    destination = DestinationStore(session_factory)
    registry = RelayRegistry(
        JobStore(session_factory),
        LockManager(session_factory),
        destination,
        scheduler,
        settings=settings,
    )
    for adapter in adapters if adapters is not None else default_adapters(destination, settings):
        registry.register(adapter)
    logger.info(f"[Registry] Registered stages: {', '.join(registry.kinds)}")
    return registry

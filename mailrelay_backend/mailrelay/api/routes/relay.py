"""
Relay Routes

Trigger surface for the relay engine:
- POST /relay/{job_kind}                    run one invocation of a stage
- POST /relay/{job_kind}/provider-callback  external run finished
- POST /watchdog/sweep                      run the reconciliation sweep now
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from mailrelay.api.deps import get_registry, get_watchdog, verify_service_token
from mailrelay.jobs.adapters.base import ProviderRunStatus
from mailrelay.jobs.engine import TriggerRequest
from mailrelay.jobs.registry import RelayRegistry, UnknownJobKindError
from mailrelay.jobs.watchdog import PeriodicWatchdog

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_service_token)])


class TriggerPayload(BaseModel):
    tenant_id: str = Field(..., min_length=1, max_length=64)
    job_id: Optional[str] = None
    resume_cursor: Optional[Any] = None
    sleep_before_start_ms: int = Field(0, ge=0)
    relay_depth: int = Field(0, ge=0)


class TriggerResponseModel(BaseModel):
    success: bool
    status: str
    job_id: Optional[str] = None
    processed_this_run: int = 0
    remaining: int = 0
    relay_depth: int = 0
    message: Optional[str] = None


class ProviderCallbackPayload(BaseModel):
    """Webhook body; accepts the crawler's {resource: {id, status}} shape or flat fields."""
    tenant_id: str = Field(..., min_length=1, max_length=64)
    run_id: Optional[str] = None
    status: Optional[str] = None
    resource: Optional[Dict[str, Any]] = None

    def resolved(self):
        resource = self.resource or {}
        run_id = self.run_id or resource.get("id")
        raw_status = self.status or resource.get("status")
        return run_id, raw_status


class SweepResponse(BaseModel):
    stale_locks: int = 0
    ghosts: int = 0
    provider_runs: int = 0
    provider_resumed: int = 0
    provider_failed: int = 0
    stale_jobs: int = 0
    restarted: int = 0
    waiting_reinvoked: int = 0
    stalled_failed: int = 0
    superseded: int = 0
    paused_resumed: int = 0
    errors: List[str] = Field(default_factory=list)


def _handler_or_404(registry: RelayRegistry, job_kind: str):
    try:
        return registry.handler_for(job_kind)
    except UnknownJobKindError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job kind: {job_kind}",
        )


@router.post("/relay/{job_kind}", response_model=TriggerResponseModel)
async def trigger_relay(
    job_kind: str,
    payload: TriggerPayload,
    registry: RelayRegistry = Depends(get_registry),
):
    """
    Run one budget-bounded invocation of a stage.

    The response reports what this invocation did; follow-up invocations
    are scheduled by the engine itself.
    """
    handler = _handler_or_404(registry, job_kind)
    response = await handler.handle(TriggerRequest(**payload.model_dump()))
    return response.to_dict()


@router.post("/relay/{job_kind}/provider-callback", response_model=TriggerResponseModel)
async def provider_callback(
    job_kind: str,
    payload: ProviderCallbackPayload,
    registry: RelayRegistry = Depends(get_registry),
):
    """Resume (or fail) the job waiting on an external provider run."""
    handler = _handler_or_404(registry, job_kind)
    run_id, raw_status = payload.resolved()
    if not run_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Callback carries no run id",
        )
    logger.info(f"[API] Provider callback for {job_kind}/{payload.tenant_id}: run {run_id} is {raw_status}")
    response = await handler.handle_provider_callback(
        payload.tenant_id, run_id, ProviderRunStatus.from_provider(raw_status)
    )
    return response.to_dict()


@router.post("/watchdog/sweep", response_model=SweepResponse)
async def sweep_now(watchdog: PeriodicWatchdog = Depends(get_watchdog)):
    """Run the watchdog sweep immediately (cron entry point)."""
    return await watchdog.run_now()

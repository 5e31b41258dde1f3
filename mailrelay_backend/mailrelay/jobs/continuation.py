"""
Continuation decisions

Pure mapping from how an invocation ended to what happens next:

    status                  job action           chaining
    no_work                 -                    next stage
    rate_limited            (checkpointed)       self after delay
    paused                  -> paused            self after degraded delay
    waiting_on_dependency   record waiting_on    -
    continuing              (checkpointed)       self now
    completed               -> completed         next stage
    cancelled / skipped     -                    -
    failed                  -> failed            -

The handler applies the job action, releases the lock, then schedules.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from mailrelay.jobs.batch_runner import RunOutcome
from mailrelay.models.job import JobStatus


class RelayStatus(str, Enum):
    NO_WORK = "no_work"
    RATE_LIMITED = "rate_limited"
    PAUSED = "paused"
    WAITING = "waiting_on_dependency"
    CONTINUING = "continuing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


STATUS_FOR_OUTCOME = {
    RunOutcome.EXHAUSTED: RelayStatus.COMPLETED,
    RunOutcome.CONTINUING: RelayStatus.CONTINUING,
    RunOutcome.RATE_LIMITED: RelayStatus.RATE_LIMITED,
    RunOutcome.PAUSED: RelayStatus.PAUSED,
    RunOutcome.WAITING: RelayStatus.WAITING,
    RunOutcome.CANCELLED: RelayStatus.CANCELLED,
    RunOutcome.FAILED: RelayStatus.FAILED,
}


@dataclass(frozen=True)
class ContinuationDecision:
    status: RelayStatus
    relay_self: bool = False
    delay_ms: int = 0
    next_relay_depth: int = 0
    invoke_next_stage: bool = False
    job_status: Optional[str] = None  # Transition to apply before scheduling
    reason: Optional[str] = None


def next_relay_depth(current: int, processed_this_run: int) -> int:
    """Progress resets the chain; an idle hop extends it."""
    if processed_this_run > 0:
        return 0
    return (current or 0) + 1


def decide_continuation(
    status: RelayStatus,
    *,
    processed_this_run: int = 0,
    relay_depth: int = 0,
    delay_ms: int = 0,
    degraded_delay_ms: int = 0,
    has_next_stage: bool = False,
    reason: Optional[str] = None,
) -> ContinuationDecision:
    status = RelayStatus(status)
    depth = next_relay_depth(relay_depth, processed_this_run)

    if status == RelayStatus.CONTINUING:
        return ContinuationDecision(status, relay_self=True, next_relay_depth=depth, reason=reason)

    if status == RelayStatus.RATE_LIMITED:
        return ContinuationDecision(
            status,
            relay_self=True,
            delay_ms=max(0, int(delay_ms)),
            next_relay_depth=depth,
            reason=reason,
        )

    if status == RelayStatus.PAUSED:
        return ContinuationDecision(
            status,
            relay_self=True,
            delay_ms=max(0, int(degraded_delay_ms)),
            next_relay_depth=depth,
            job_status=JobStatus.PAUSED.value,
            reason=reason,
        )

    if status == RelayStatus.COMPLETED:
        return ContinuationDecision(
            status,
            invoke_next_stage=has_next_stage,
            job_status=JobStatus.COMPLETED.value,
            reason=reason,
        )

    if status == RelayStatus.NO_WORK:
        return ContinuationDecision(status, invoke_next_stage=has_next_stage, reason=reason)

    if status == RelayStatus.FAILED:
        return ContinuationDecision(status, job_status=JobStatus.FAILED.value, reason=reason)

    # waiting_on_dependency, cancelled, skipped: stop here
    return ContinuationDecision(status, next_relay_depth=relay_depth or 0, reason=reason)

"""
Tests for continuation decisions.
"""
import pytest

from mailrelay.jobs.batch_runner import RunOutcome
from mailrelay.jobs.continuation import (
    STATUS_FOR_OUTCOME,
    RelayStatus,
    decide_continuation,
    next_relay_depth,
)


class TestDecisionTable:

    def test_continuing_relays_immediately(self):
        decision = decide_continuation(RelayStatus.CONTINUING, processed_this_run=30)

        assert decision.relay_self is True
        assert decision.delay_ms == 0
        assert decision.job_status is None
        assert decision.invoke_next_stage is False

    def test_rate_limited_relays_after_delay(self):
        decision = decide_continuation(RelayStatus.RATE_LIMITED, delay_ms=5000)

        assert decision.relay_self is True
        assert decision.delay_ms == 5000

    def test_paused_uses_degraded_delay(self):
        decision = decide_continuation(
            RelayStatus.PAUSED, delay_ms=10, degraded_delay_ms=300_000, reason="3 failed sub-batches"
        )

        assert decision.relay_self is True
        assert decision.delay_ms == 300_000
        assert decision.job_status == "paused"
        assert decision.reason == "3 failed sub-batches"

    @pytest.mark.parametrize("has_next", [True, False])
    def test_completed_chains_next_stage(self, has_next):
        decision = decide_continuation(RelayStatus.COMPLETED, processed_this_run=12, has_next_stage=has_next)

        assert decision.relay_self is False
        assert decision.invoke_next_stage is has_next
        assert decision.job_status == "completed"

    def test_no_work_chains_without_transition(self):
        decision = decide_continuation(RelayStatus.NO_WORK, has_next_stage=True)

        assert decision.invoke_next_stage is True
        assert decision.job_status is None

    def test_failed_stops(self):
        decision = decide_continuation(RelayStatus.FAILED)

        assert decision.relay_self is False
        assert decision.invoke_next_stage is False
        assert decision.job_status == "failed"

    @pytest.mark.parametrize("status", [RelayStatus.WAITING, RelayStatus.CANCELLED, RelayStatus.SKIPPED])
    def test_terminal_for_this_chain(self, status):
        decision = decide_continuation(status, has_next_stage=True, relay_depth=3)

        assert decision.relay_self is False
        assert decision.invoke_next_stage is False
        assert decision.job_status is None
        assert decision.next_relay_depth == 3

    def test_accepts_raw_status_value(self):
        assert decide_continuation("rate_limited", delay_ms=1).status == RelayStatus.RATE_LIMITED

    def test_every_outcome_has_a_status(self):
        assert set(STATUS_FOR_OUTCOME) == set(RunOutcome)


class TestRelayDepth:

    def test_progress_resets_depth(self):
        assert next_relay_depth(4, processed_this_run=1) == 0

    def test_idle_hop_increments(self):
        assert next_relay_depth(4, processed_this_run=0) == 5
        assert next_relay_depth(None, processed_this_run=0) == 1

    def test_depth_carried_into_decision(self):
        idle = decide_continuation(RelayStatus.RATE_LIMITED, relay_depth=2, delay_ms=1000)
        busy = decide_continuation(RelayStatus.CONTINUING, relay_depth=2, processed_this_run=15)

        assert idle.next_relay_depth == 3
        assert busy.next_relay_depth == 0

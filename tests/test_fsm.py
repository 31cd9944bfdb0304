"""Tests for autoloop.workflow.fsm module."""

import logging

import pytest
from transitions import MachineError

from autoloop.workflow.checkpoint import Checkpoint
from autoloop.workflow.fsm import STATES, TRANSITIONS, BreakerFSM, initial_state


class TestFSMDefinitions:
    """Tests for state and transition tables."""

    def test_states(self):
        assert set(STATES) == {"healthy", "degraded", "tripped"}

    def test_tripped_only_accepts_reset(self):
        triggers = {t["trigger"] for t in TRANSITIONS if t["source"] == "tripped"}
        assert triggers == {"reset"}

    def test_conditional_before_fallback(self):
        """The threshold check must be tried before the plain degrade."""
        for source in ("healthy", "degraded"):
            rules = [t for t in TRANSITIONS if t["trigger"] == "no_progress" and t["source"] == source]
            assert rules[0]["dest"] == "tripped"
            assert rules[0]["conditions"] == "threshold_reached"


class TestInitialState:
    """Tests for initial_state() function."""

    def test_fresh(self):
        assert initial_state(Checkpoint()) == "healthy"

    def test_tripped_flag_wins(self):
        assert initial_state(Checkpoint(tripped=True, state="healthy")) == "tripped"

    def test_degraded(self):
        assert initial_state(Checkpoint(consecutive_failures=1, state="degraded")) == "degraded"


class TestBreakerFSM:
    """Tests for BreakerFSM transitions."""

    def test_no_progress_degrades_then_trips(self):
        cp = Checkpoint()
        fsm = BreakerFSM(cp, threshold=2)

        cp.consecutive_failures = 1
        fsm.no_progress()
        assert fsm.state == "degraded"
        assert cp.state == "degraded"
        assert cp.tripped is False

        cp.consecutive_failures = 2
        fsm.no_progress()
        assert fsm.state == "tripped"
        assert cp.tripped is True

    def test_threshold_one_trips_from_healthy(self):
        cp = Checkpoint()
        fsm = BreakerFSM(cp, threshold=1)
        cp.consecutive_failures = 1
        fsm.no_progress()
        assert fsm.state == "tripped"

    def test_progress_restores_healthy(self):
        cp = Checkpoint(consecutive_failures=1, state="degraded")
        fsm = BreakerFSM(cp, threshold=3)
        cp.consecutive_failures = 0
        fsm.progress()
        assert fsm.state == "healthy"
        assert cp.state == "healthy"

    def test_tripped_rejects_progress(self):
        fsm = BreakerFSM(Checkpoint(tripped=True, consecutive_failures=3), threshold=3)
        assert not fsm.can("progress")
        assert not fsm.can("no_progress")
        with pytest.raises(MachineError):
            fsm.progress()

    def test_reset_from_tripped(self):
        cp = Checkpoint(tripped=True, consecutive_failures=3)
        fsm = BreakerFSM(cp, threshold=3)
        assert fsm.get_available_triggers() == ["reset"]
        fsm.reset()
        assert fsm.state == "healthy"
        assert cp.tripped is False

    def test_callback_and_logging(self, caplog):
        caplog.set_level(logging.INFO)
        calls = []
        cp = Checkpoint()
        fsm = BreakerFSM(cp, threshold=1, on_transition=lambda *args: calls.append(args))
        cp.consecutive_failures = 1
        fsm.no_progress()
        assert calls == [("healthy", "tripped", "no_progress")]
        assert "[BREAKER] healthy -> tripped" in caplog.text

"""Checkpoint and circuit breaker.

The checkpoint is the durable record of loop health (checkpoint.json). The
circuit breaker wraps it: each iteration is recorded as progress or
no-progress, and after `threshold` consecutive no-progress iterations the
breaker trips. A tripped breaker refuses further outcomes until an
operator reset; reset never touches task statuses.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from autoloop.lib.models import format_timestamp, parse_timestamp
from autoloop.runner.state_files import load_checkpoint_data, save_checkpoint_data
from autoloop.workflow.fsm import BreakerFSM

logger = logging.getLogger(__name__)


class CircuitBreakerTripped(Exception):
    """The breaker is tripped; no outcome can be recorded until reset."""

    def __init__(self, consecutive_failures: int, threshold: int):
        self.consecutive_failures = consecutive_failures
        self.threshold = threshold
        super().__init__(
            f"Circuit breaker tripped after {consecutive_failures} iterations without progress "
            f"(threshold {threshold}); run 'loop reset' to clear"
        )


@dataclass
class Checkpoint:
    last_good_reference: Optional[str] = None   # e.g. commit sha
    last_successful_task_id: Optional[str] = None
    timestamp: Optional[datetime] = None        # when progress was last recorded
    consecutive_failures: int = 0
    failed_attempts: int = 0                    # lifetime total, never reset
    tripped: bool = False
    state: str = "healthy"
    active_task_id: Optional[str] = None        # set while a task is in flight
    iteration: int = 0

    def to_dict(self) -> dict:
        return {
            "last_good_reference": self.last_good_reference,
            "last_successful_task_id": self.last_successful_task_id,
            "timestamp": format_timestamp(self.timestamp),
            "consecutive_failures": self.consecutive_failures,
            "failed_attempts": self.failed_attempts,
            "tripped": self.tripped,
            "state": self.state,
            "active_task_id": self.active_task_id,
            "iteration": self.iteration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        try:
            timestamp = parse_timestamp(data.get("timestamp"))
        except ValueError:
            logger.warning(f"Ignoring invalid checkpoint timestamp '{data.get('timestamp')}'")
            timestamp = None
        return cls(
            last_good_reference=data.get("last_good_reference"),
            last_successful_task_id=data.get("last_successful_task_id"),
            timestamp=timestamp,
            consecutive_failures=data["consecutive_failures"],
            failed_attempts=data.get("failed_attempts", data["consecutive_failures"]),
            tripped=data["tripped"],
            state=data.get("state", "tripped" if data["tripped"] else "healthy"),
            active_task_id=data.get("active_task_id"),
            iteration=data.get("iteration", 0),
        )


def load_checkpoint(path: Path) -> Checkpoint:
    """Load checkpoint.json, or a fresh healthy checkpoint if absent.

    Raises:
        ValidationError: file exists but is invalid
    """
    data = load_checkpoint_data(path)
    return Checkpoint() if data is None else Checkpoint.from_dict(data)


def save_checkpoint(path: Path, checkpoint: Checkpoint) -> None:
    save_checkpoint_data(path, checkpoint.to_dict())


class CircuitBreaker:
    """Records iteration outcomes on a checkpoint and trips on sustained failure."""

    def __init__(self, checkpoint: Checkpoint, threshold: int = 3,
                 on_trip: Callable[[Checkpoint], None] | None = None):
        self.checkpoint = checkpoint
        self.threshold = threshold
        self.on_trip = on_trip
        self.fsm = BreakerFSM(checkpoint, threshold, on_transition=self._on_transition)

    def _on_transition(self, from_state: str, to_state: str, trigger: str) -> None:
        if to_state == "tripped" and self.on_trip:
            self.on_trip(self.checkpoint)

    @property
    def state(self) -> str:
        return self.fsm.state

    @property
    def tripped(self) -> bool:
        return self.fsm.state == "tripped"

    def _ensure_not_tripped(self) -> None:
        if self.tripped:
            raise CircuitBreakerTripped(self.checkpoint.consecutive_failures, self.threshold)

    def record_progress(self, task_id: str, reference: Optional[str], now: datetime) -> None:
        """An iteration produced a durable artifact.

        Raises:
            CircuitBreakerTripped: breaker is tripped
        """
        self._ensure_not_tripped()
        cp = self.checkpoint
        cp.consecutive_failures = 0
        cp.last_good_reference = reference
        cp.last_successful_task_id = task_id
        cp.timestamp = now
        self.fsm.progress()

    def record_no_progress(self, reason: str = "") -> bool:
        """An iteration produced nothing durable.

        Returns:
            True if this outcome tripped the breaker

        Raises:
            CircuitBreakerTripped: breaker was already tripped
        """
        self._ensure_not_tripped()
        cp = self.checkpoint
        cp.consecutive_failures += 1
        cp.failed_attempts += 1
        if reason:
            logger.info(f"[BREAKER] No progress ({cp.consecutive_failures}/{self.threshold}): {reason}")
        self.fsm.no_progress()
        return self.tripped

    def reset(self) -> None:
        """Operator reset: clear the tripped flag and the consecutive counter."""
        previous = self.state
        self.checkpoint.consecutive_failures = 0
        self.fsm.reset()
        logger.info(f"[BREAKER] Reset from {previous}")

    def describe(self) -> str:
        """Short health summary, e.g. 'degraded (1/3)'."""
        return f"{self.state} ({self.checkpoint.consecutive_failures}/{self.threshold})"

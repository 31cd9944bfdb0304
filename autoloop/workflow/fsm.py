"""Circuit breaker state machine using transitions library.

Tracks loop health across iterations:

    healthy  --no_progress-->  degraded | tripped
    degraded --no_progress-->  degraded | tripped
    healthy/degraded --progress--> healthy
    any --reset--> healthy

no_progress lands in tripped once the consecutive-failure counter reaches
the threshold. The counter itself lives on the Checkpoint and is updated
by the caller before the trigger fires (see checkpoint.CircuitBreaker);
this machine only decides where that count leads. tripped accepts nothing
but reset.

Usage:
    from autoloop.workflow.fsm import BreakerFSM

    fsm = BreakerFSM(checkpoint, threshold=3)
    checkpoint.consecutive_failures += 1
    fsm.no_progress()
"""

import logging
from typing import Callable

from transitions import Machine

logger = logging.getLogger(__name__)


STATES = [
    "healthy",
    "degraded",
    "tripped",
]

# Conditional transitions are tried in list order; the first whose
# conditions pass wins.
TRANSITIONS = [
    # Iteration without durable progress
    {"trigger": "no_progress", "source": "healthy", "dest": "tripped", "conditions": "threshold_reached"},
    {"trigger": "no_progress", "source": "healthy", "dest": "degraded"},
    {"trigger": "no_progress", "source": "degraded", "dest": "tripped", "conditions": "threshold_reached"},
    {"trigger": "no_progress", "source": "degraded", "dest": "degraded"},

    # Iteration with durable progress
    {"trigger": "progress", "source": "healthy", "dest": "healthy"},
    {"trigger": "progress", "source": "degraded", "dest": "healthy"},

    # Operator reset
    {"trigger": "reset", "source": "healthy", "dest": "healthy"},
    {"trigger": "reset", "source": "degraded", "dest": "healthy"},
    {"trigger": "reset", "source": "tripped", "dest": "healthy"},
]


def initial_state(checkpoint) -> str:
    """Derive the starting state from a loaded checkpoint."""
    if checkpoint.tripped:
        return "tripped"
    if checkpoint.state in STATES and checkpoint.state != "tripped":
        return checkpoint.state
    return "degraded" if checkpoint.consecutive_failures > 0 else "healthy"


class BreakerFSM:
    """State machine for loop health.

    Wraps the transitions library with breaker-specific logic:
    - Initial state comes from the checkpoint
    - State changes are mirrored onto the checkpoint (state, tripped)
    - All transitions are logged
    """

    def __init__(self, checkpoint, threshold: int,
                 on_transition: Callable[[str, str, str], None] | None = None):
        """Initialize FSM for a checkpoint.

        Args:
            checkpoint: Checkpoint whose state/tripped fields this machine owns
            threshold: Consecutive no-progress iterations before tripping
            on_transition: Optional callback(from_state, to_state, trigger) called after transitions
        """
        self.checkpoint = checkpoint
        self.threshold = threshold
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=initial_state(checkpoint),
            auto_transitions=False,  # Only explicit transitions
            send_event=True,  # Pass EventData to callbacks
            after_state_change="on_state_change",  # Callback after any transition
        )
        self._sync()

    def _sync(self) -> None:
        self.checkpoint.state = self.state
        self.checkpoint.tripped = self.state == "tripped"

    def threshold_reached(self, event) -> bool:
        """Condition: the failure counter has hit the threshold."""
        return self.checkpoint.consecutive_failures >= self.threshold

    def on_state_change(self, event) -> None:
        """Callback after any state transition.

        Mirrors the state onto the checkpoint and logs the transition.
        """
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name

        self._sync()

        counter = f"{self.checkpoint.consecutive_failures}/{self.threshold}"
        if from_state == to_state:
            logger.debug(f"[BREAKER] {to_state} ({trigger}, {counter})")
        elif to_state == "tripped":
            logger.error(f"[BREAKER] {from_state} -> {to_state} ({trigger}, {counter})")
        else:
            logger.info(f"[BREAKER] {from_state} -> {to_state} ({trigger}, {counter})")

        if self.on_transition:
            self.on_transition(from_state, to_state, trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available in current state."""
        return self.machine.get_triggers(self.state)

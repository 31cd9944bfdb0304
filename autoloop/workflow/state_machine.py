"""Task lifecycle with explicit transitions.

    pending -> in-progress -> complete
    in-progress -> pending        (partial/blocked outcome, timeout, crash recovery)
    pending -> blocked            (a new blocker is attached)
    blocked -> pending            (blocking set emptied by the resolver)

complete is terminal.

Usage:
    from autoloop.workflow.state_machine import transition

    transition(task, "in-progress", now, reason="selected")
"""

import logging
from datetime import datetime

from autoloop.lib.models import BLOCKED, COMPLETE, IN_PROGRESS, PENDING, TASK_STATUSES, Task

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {IN_PROGRESS, BLOCKED},
    IN_PROGRESS: {COMPLETE, PENDING},
    BLOCKED: {PENDING},
    COMPLETE: set(),
}


class InvalidTransition(Exception):
    """Raised when attempting an invalid task status transition."""

    def __init__(self, from_status: str, to_status: str, task_id: str = ""):
        self.from_status = from_status
        self.to_status = to_status
        self.task_id = task_id
        super().__init__(
            f"Invalid transition: {from_status} -> {to_status}"
            + (f" (task: {task_id})" if task_id else "")
        )


def can_transition(task: Task, to_status: str) -> bool:
    """Check if a transition to the given status is valid. Self-transitions are no-ops and allowed."""
    if task.status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(task.status, set())


def transition(task: Task, to_status: str, now: datetime, reason: str = "") -> None:
    """Move a task to a new status, stamping start/completion times.

    Raises:
        InvalidTransition: unknown status or transition not allowed
    """
    if to_status not in TASK_STATUSES:
        raise InvalidTransition(task.status, to_status, task.id)

    reason_str = f" ({reason})" if reason else ""

    if task.status == to_status:
        logger.debug(f"[STATE] {task.id}: already {to_status}, no-op")
        return

    if not can_transition(task, to_status):
        raise InvalidTransition(task.status, to_status, task.id)

    logger.info(f"[STATE] {task.id}: {task.status} -> {to_status}{reason_str}")
    task.status = to_status

    if to_status == IN_PROGRESS:
        task.started_at = now
    elif to_status == COMPLETE:
        task.completed_at = now
    elif to_status == PENDING:
        task.started_at = None

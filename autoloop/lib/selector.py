"""
Queue selection and read-only operator queries.

select_next() only looks at stored scores; rescoring is the driver's job.
It knows nothing about the circuit breaker either: the driver decides
whether to ask at all.
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass
from typing import Optional

from autoloop.lib.models import TASK_STATUSES, TASK_TYPES, Backlog, Task

logger = logging.getLogger(__name__)


def _rank_key(task: Task) -> tuple[int, str]:
    return (-task.score, task.id)


def eligible(backlog: Backlog) -> list[Task]:
    """Pending tasks with an empty blocking set, best first."""
    return sorted((t for t in backlog if t.is_eligible), key=_rank_key)


def select_next(backlog: Backlog) -> Optional[str]:
    """Id of the highest-scoring eligible task (ties broken by id), or None."""
    candidates = eligible(backlog)
    if not candidates:
        logger.debug("[QUEUE] No eligible task")
        return None
    head = candidates[0]
    logger.debug(f"[QUEUE] Selected {head.id} (score {head.score}, {len(candidates)} eligible)")
    return head.id


def ranked(backlog: Backlog, limit: Optional[int] = None) -> list[Task]:
    """Eligible tasks in selection order, optionally truncated."""
    candidates = eligible(backlog)
    return candidates[:limit] if limit is not None else candidates


def counts_by_status(backlog: Backlog) -> dict[str, int]:
    counts = {status: 0 for status in TASK_STATUSES}
    counts.update(Counter(t.status for t in backlog))
    return counts


def counts_by_type(backlog: Backlog) -> dict[str, int]:
    counts = {task_type: 0 for task_type in TASK_TYPES}
    counts.update(Counter(t.type for t in backlog))
    return counts


@dataclass
class ChainLink:
    """A transitive blocker and how far it is from the queried task."""
    task_id: str
    depth: int
    status: Optional[str]  # None when the id names no task


def blocking_chain(backlog: Backlog, task_id: str) -> list[ChainLink]:
    """Everything standing between a task and eligibility, breadth-first.

    Depth 1 is a direct blocker. Each blocker appears once, at its
    shallowest depth. Complete blockers are listed too, since they are
    still in the set until the next resolver pass.

    Raises:
        KeyError: unknown task id
    """
    if task_id not in backlog:
        raise KeyError(task_id)

    chain: list[ChainLink] = []
    seen = {task_id}
    queue = deque((b, 1) for b in sorted(backlog[task_id].blocked_by))
    while queue:
        current, depth = queue.popleft()
        if current in seen:
            continue
        seen.add(current)
        task = backlog.get(current)
        chain.append(ChainLink(current, depth, task.status if task else None))
        if task is not None:
            queue.extend((b, depth + 1) for b in sorted(task.blocked_by))
    return chain

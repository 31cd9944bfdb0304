"""
Task scoring.

score = priority + type + sequence + milestone + review + blocking + age

All terms are pure functions of the task, the backlog and `now`; only the
age bonus depends on time, so callers that need reproducible scores pass a
fixed `now`.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from autoloop.lib.config import ScoringWeights
from autoloop.lib.models import BLOCKED, PENDING, Backlog, Task, as_utc

logger = logging.getLogger(__name__)

DIGITS_RE = re.compile(r'\d+')


class StarvationWarning(UserWarning):
    """A task has been waiting longer than the starvation threshold."""

    def __init__(self, task_id: str, age_hours: float):
        self.task_id = task_id
        self.age_hours = age_hours
        super().__init__(f"Task {task_id} has waited {age_hours:.1f}h without being selected")


@dataclass
class ScoreBreakdown:
    """Per-term contributions to a task's score."""
    priority: int
    type: int
    sequence: int
    milestone: int
    review: int
    blocking: int
    age: int

    @property
    def total(self) -> int:
        return (self.priority + self.type + self.sequence + self.milestone
                + self.review + self.blocking + self.age)


def sequence_number(sequence_key: Optional[str]) -> Optional[int]:
    """First run of digits in the key ("ch03" -> 3), or None."""
    if not sequence_key:
        return None
    match = DIGITS_RE.search(sequence_key)
    return int(match.group()) if match else None


def sequence_bonus(task: Task, weights: ScoringWeights) -> int:
    n = sequence_number(task.sequence_key)
    if n is None:
        return weights.sequence_fallback
    return max(0, (weights.sequence_max - n) * weights.sequence_step)


def milestone_bonus(task: Task, weights: ScoringWeights) -> int:
    title = task.title.lower()
    for marker, bonus in weights.milestones:
        if marker in title:
            return bonus
    return 0


def blocking_count(task: Task, backlog: Backlog) -> int:
    """Number of other non-complete tasks waiting on this one."""
    return sum(
        1 for other in backlog
        if other.id != task.id and not other.is_complete and task.id in other.blocked_by
    )


def age_hours(task: Task, now: datetime) -> Optional[float]:
    if task.created_at is None:
        return None
    return (as_utc(now) - as_utc(task.created_at)).total_seconds() / 3600


def age_bonus(task: Task, now: datetime, weights: ScoringWeights) -> int:
    age = age_hours(task, now)
    if age is None:
        return 0
    bonus = 0
    if age >= weights.age_first_hours:
        bonus += weights.age_first_bonus
    if age >= weights.age_second_hours:
        bonus += weights.age_second_bonus
    return bonus


def explain_score(task: Task, backlog: Backlog, now: datetime, weights: ScoringWeights) -> ScoreBreakdown:
    """Compute each scoring term separately."""
    return ScoreBreakdown(
        priority=weights.priority.get(task.priority, 0),
        type=weights.types.get(task.type, 0),
        sequence=sequence_bonus(task, weights),
        milestone=milestone_bonus(task, weights),
        review=weights.review_bonus if task.review_flagged else 0,
        blocking=blocking_count(task, backlog) * weights.per_block,
        age=age_bonus(task, now, weights),
    )


def score_task(task: Task, backlog: Backlog, now: datetime, weights: ScoringWeights) -> int:
    """Ranking value for a task. Higher is selected first."""
    return explain_score(task, backlog, now, weights).total


def rescore(backlog: Backlog, now: datetime, weights: ScoringWeights) -> int:
    """Recompute the score of every non-complete task in place.

    Complete tasks keep whatever score they finished with.
    Returns the number of scores that changed.
    """
    changed = 0
    for task in backlog:
        if task.is_complete:
            continue
        new_score = score_task(task, backlog, now, weights)
        if new_score != task.score:
            logger.debug(f"[QUEUE] {task.id}: score {task.score} -> {new_score}")
            task.score = new_score
            changed += 1
    return changed


def find_starved(backlog: Backlog, now: datetime, threshold_hours: float) -> list[StarvationWarning]:
    """Pending or blocked tasks whose age meets the starvation threshold, oldest first."""
    warnings = []
    for task in backlog:
        if task.status not in (PENDING, BLOCKED):
            continue
        age = age_hours(task, now)
        if age is not None and age >= threshold_hours:
            warnings.append(StarvationWarning(task.id, age))
    warnings.sort(key=lambda w: (-w.age_hours, w.task_id))
    return warnings

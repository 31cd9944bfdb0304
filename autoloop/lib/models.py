"""
Data models for the task backlog.

Tasks are closed records: every field is declared here and in
schemas/task.schema.json, and unknown keys are rejected on ingestion.
Free-form annotations go in `metadata`, whose values are restricted to
scalars (str, int, float, bool).
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional

from autoloop.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)


TASK_STATUSES = ("pending", "in-progress", "blocked", "complete")
TASK_TYPES = ("blocker", "milestone-work", "fix", "supporting-artifact", "diagram", "review", "other")
PRIORITIES = ("critical", "high", "medium", "normal", "low")

PENDING = "pending"
IN_PROGRESS = "in-progress"
BLOCKED = "blocked"
COMPLETE = "complete"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Aware UTC datetime; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Render a datetime as RFC 3339 UTC with a trailing Z."""
    if dt is None:
        return None
    return as_utc(dt).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp. Naive values are taken as UTC.

    Raises:
        ValueError: if the string is not a valid timestamp
    """
    if value is None or value == "":
        return None
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Task:
    """A unit of trackable work."""
    id: str
    type: str                                   # one of TASK_TYPES
    title: str
    status: str = PENDING                       # one of TASK_STATUSES
    priority: str = "normal"                    # one of PRIORITIES
    score: int = 0
    sequence_key: Optional[str] = None          # e.g. "ch03", "phase-2"
    blocked_by: set[str] = field(default_factory=set)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    review_flagged: bool = False
    metadata: dict[str, str | int | float | bool] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return self.status == COMPLETE

    @property
    def is_eligible(self) -> bool:
        """Pending with nothing left blocking it."""
        return self.status == PENDING and not self.blocked_by

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "status": self.status,
            "priority": self.priority,
            "score": self.score,
            "sequence_key": self.sequence_key,
            "blocked_by": sorted(self.blocked_by),
            "created_at": format_timestamp(self.created_at),
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "review_flagged": self.review_flagged,
            "metadata": dict(self.metadata),
        }


def task_from_dict(data: dict) -> Task:
    """Build a Task from a raw record, validating it first.

    Raises:
        ValidationError: missing field, unknown field, bad enum value or
            unparseable timestamp
    """
    record_id = data.get("id") if isinstance(data, dict) else None
    if not isinstance(record_id, str):
        record_id = None

    validate(data, "task", record_id=record_id)

    timestamps = {}
    for key in ("created_at", "started_at", "completed_at"):
        try:
            timestamps[key] = parse_timestamp(data.get(key))
        except ValueError:
            raise ValidationError("task", f"Invalid timestamp '{data[key]}'", key, record_id) from None

    return Task(
        id=data["id"],
        type=data["type"],
        title=data["title"],
        status=data["status"],
        priority=data["priority"],
        score=data.get("score", 0),
        sequence_key=data.get("sequence_key"),
        blocked_by=set(data.get("blocked_by") or []),
        review_flagged=data.get("review_flagged", False),
        metadata=dict(data.get("metadata") or {}),
        **timestamps,
    )


def ingest_records(records: list) -> tuple[list[Task], list[ValidationError]]:
    """Convert raw records to Tasks, rejecting invalid ones individually.

    Returns:
        (accepted tasks, validation errors for the rejected records)
    """
    accepted: list[Task] = []
    rejected: list[ValidationError] = []
    for record in records:
        try:
            accepted.append(task_from_dict(record))
        except ValidationError as e:
            logger.warning(f"Rejected task record: {e}")
            rejected.append(e)
    return accepted, rejected


class Backlog:
    """The full collection of tasks, keyed by id in insertion order."""

    def __init__(
        self,
        tasks: Optional[list[Task]] = None,
        last_updated: Optional[datetime] = None,
        rejected_records: Optional[list] = None,
    ):
        self.tasks: dict[str, Task] = {}
        self.last_updated = last_updated
        # Raw records that failed validation on load, written back untouched
        self.rejected_records: list = list(rejected_records or [])
        for task in tasks or []:
            if task.id in self.tasks:
                raise ValueError(f"Duplicate task id: {task.id}")
            self.tasks[task.id] = task

    def __iter__(self) -> Iterator[Task]:
        return iter(self.tasks.values())

    def __len__(self) -> int:
        return len(self.tasks)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self.tasks

    def get(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def __getitem__(self, task_id: str) -> Task:
        return self.tasks[task_id]

    def add(self, *tasks: Task) -> None:
        """Add tasks, refusing ones that would break the dependency graph.

        All tasks are checked together, so records in one batch may refer
        to each other. Nothing is added if any check fails.

        Raises:
            ValueError: duplicate task id
            DependencyError: dangling blocking id or a cycle
        """
        from autoloop.lib.dependencies import check_graph

        seen = set(self.tasks)
        for task in tasks:
            if task.id in seen:
                raise ValueError(f"Duplicate task id: {task.id}")
            seen.add(task.id)

        candidate = Backlog(list(self.tasks.values()) + list(tasks))
        check_graph(candidate)

        for task in tasks:
            self.tasks[task.id] = task

    def counts(self) -> dict[str, int]:
        """Counts by status plus total."""
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self:
            counts[task.status] = counts.get(task.status, 0) + 1
        counts["total"] = len(self.tasks)
        return counts

    def to_dict(self) -> dict:
        return {
            "tasks": [task.to_dict() for task in self],
            "stats": self.counts(),
            "last_updated": format_timestamp(self.last_updated),
        }

"""Loop driver.

Runs the unattended work loop one iteration at a time:

    select -> execute -> record outcome -> resolve dependencies -> rescore
           -> checkpoint -> append progress entry -> maybe compact

Store writes within an iteration happen in a fixed order so a crash at
any point is recoverable:

1. checkpoint records active_task_id
2. backlog marks the task in-progress
3. (executor runs)
4. backlog with the outcome, resolved dependencies and new scores
5. checkpoint with the breaker update, active_task_id cleared
6. progress entry

On start, recover() returns any in-progress task to pending and counts an
interrupted iteration as one no-progress outcome.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from autoloop import notifications
from autoloop.lib.compaction import CompactionFailure, CompactionResult, compact_file
from autoloop.lib.config import LoopConfig, Policy, compaction_config
from autoloop.lib.dependencies import DependencyError, resolve
from autoloop.lib.models import COMPLETE, IN_PROGRESS, PENDING, Backlog, Task, utcnow
from autoloop.lib.progress import CurrentStatus, ProgressEntry, one_line
from autoloop.lib.scoring import StarvationWarning, find_starved, rescore
from autoloop.lib.selector import select_next
from autoloop.runner.executor import ExecutionResult, Executor
from autoloop.runner.state_files import (
    StatePaths,
    append_progress_entry,
    load_backlog,
    save_backlog,
)
from autoloop.workflow.checkpoint import (
    Checkpoint,
    CircuitBreaker,
    CircuitBreakerTripped,
    load_checkpoint,
    save_checkpoint,
)
from autoloop.workflow.state_machine import transition

logger = logging.getLogger(__name__)

MAX_STATUS_BLOCKERS = 10

# Why the loop stopped
STOP_BREAKER_TRIPPED = "breaker_tripped"
STOP_QUEUE_EMPTY = "queue_empty"
STOP_ALL_COMPLETE = "all_complete"
STOP_MAX_ITERATIONS = "max_iterations"
STOP_MAX_HOURS = "max_hours"

ENTRY_LABELS = {
    "success": "COMPLETED",
    "partial": "PARTIAL",
    "blocked": "BLOCKED",
}


@dataclass
class IterationReport:
    """Outcome of one iteration. task_id is None when nothing was eligible."""
    task_id: Optional[str] = None
    outcome: Optional[str] = None               # success, partial, blocked
    timed_out: bool = False
    progress: bool = False
    unblocked: list[str] = field(default_factory=list)
    tripped: bool = False
    compaction: Optional[CompactionResult] = None


@dataclass
class RunSummary:
    iterations: int
    stop_reason: str
    completed: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)


def progress_time(dt: datetime) -> datetime:
    """Minute-resolution naive UTC time as shown in progress.md."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.replace(second=0, microsecond=0)


class LoopDriver:
    """Owns the backlog and checkpoint for one state directory."""

    def __init__(
        self,
        state_dir: Path,
        config: LoopConfig,
        policy: Policy,
        executor: Executor,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.paths = StatePaths(state_dir)
        self.config = config
        self.policy = policy
        self.executor = executor
        self.clock = clock
        self.sleep = sleep
        self.compaction = compaction_config(config, policy)

        self.backlog, rejected = load_backlog(self.paths.tasks)
        for err in rejected:
            logger.error(f"[LOOP] Skipping invalid task record (left in place): {err}")
        self.checkpoint: Checkpoint = load_checkpoint(self.paths.checkpoint)
        self.breaker = CircuitBreaker(self.checkpoint, config.breaker_threshold, on_trip=self._on_trip)

    # --- persistence ---

    def _save_backlog(self, now: datetime) -> None:
        self.backlog.last_updated = now
        save_backlog(self.paths.tasks, self.backlog)

    def _save_checkpoint(self) -> None:
        save_checkpoint(self.paths.checkpoint, self.checkpoint)

    # --- callbacks ---

    def _on_trip(self, checkpoint: Checkpoint) -> None:
        logger.error(
            f"[LOOP] Breaker tripped after {checkpoint.consecutive_failures} iterations without "
            f"progress; halting until 'loop reset'"
        )
        notifications.notify_tripped(checkpoint.consecutive_failures, checkpoint.active_task_id)

    # --- status ---

    def queue_health(self) -> str:
        counts = self.backlog.counts()
        return (
            f"{counts['pending']} pending, {counts['complete']} complete, {counts['blocked']} blocked; "
            f"breaker {self.breaker.describe()}"
        )

    def current_status(self, now: datetime) -> CurrentStatus:
        blocked = [t.id for t in self.backlog if t.status == "blocked"]
        if len(blocked) > MAX_STATUS_BLOCKERS:
            blocked = blocked[:MAX_STATUS_BLOCKERS] + [f"+{len(blocked) - MAX_STATUS_BLOCKERS} more"]
        return CurrentStatus(
            updated=progress_time(now),
            phase=one_line(self.config.phase),
            active=self.checkpoint.active_task_id or "None",
            last_completed=self.checkpoint.last_successful_task_id or "None",
            blockers=blocked,
            queue_health=self.queue_health(),
        )

    def starved(self, now: datetime) -> list[StarvationWarning]:
        warnings = find_starved(self.backlog, now, self.config.starvation_hours)
        for w in warnings:
            logger.warning(f"[QUEUE] {w}")
        return warnings

    # --- lifecycle ---

    def recover(self) -> list[str]:
        """Undo the effects of a crash mid-iteration.

        Returns the ids of tasks returned to pending.
        """
        now = self.clock()
        recovered = []
        for task in self.backlog:
            if task.status == IN_PROGRESS:
                transition(task, PENDING, now, reason="crash recovery")
                recovered.append(task.id)

        interrupted = self.checkpoint.active_task_id
        if not recovered and not interrupted:
            return []

        if recovered:
            self._save_backlog(now)

        if interrupted:
            logger.warning(f"[LOOP] Iteration on {interrupted} was interrupted; counting it as no progress")
            if not self.breaker.tripped:
                self.breaker.record_no_progress(f"interrupted while running {interrupted}")
            self.checkpoint.active_task_id = None
            self._save_checkpoint()

            task = self.backlog.get(interrupted)
            title = f"BLOCKED {interrupted}: {task.title}" if task else f"BLOCKED {interrupted}"
            self._append_entry(now, ProgressEntry(
                timestamp=progress_time(now),
                title=one_line(title),
                description="Driver stopped mid-iteration; task returned to pending",
                outcome="blocked",
            ))

        return recovered

    def select(self) -> Optional[str]:
        """Next task to run, or None when nothing is eligible or the breaker is tripped."""
        if self.breaker.tripped:
            logger.info("[QUEUE] Breaker tripped; not selecting")
            return None
        return select_next(self.backlog)

    def _execute(self, task: Task) -> ExecutionResult:
        try:
            return self.executor.execute(task, self.config.iteration_timeout)
        except Exception as e:
            logger.exception(f"[LOOP] Executor failed on {task.id}")
            return ExecutionResult(outcome="blocked", summary=f"Executor error: {e}")

    def _append_entry(self, now: datetime, entry: ProgressEntry) -> None:
        try:
            append_progress_entry(self.paths.progress, entry, self.current_status(now))
        except OSError as e:
            logger.error(f"[LOOP] Failed to append progress entry: {e}")

    def run_iteration(self) -> IterationReport:
        """Run one select/execute/record cycle.

        Raises:
            CircuitBreakerTripped: breaker is tripped
        """
        if self.breaker.tripped:
            raise CircuitBreakerTripped(self.checkpoint.consecutive_failures, self.breaker.threshold)

        task_id = self.select()
        if task_id is None:
            return IterationReport()

        task = self.backlog[task_id]
        started = self.clock()

        self.checkpoint.iteration += 1
        self.checkpoint.active_task_id = task_id
        self._save_checkpoint()
        transition(task, IN_PROGRESS, started, reason=f"iteration {self.checkpoint.iteration}")
        self._save_backlog(started)
        logger.info(f"[LOOP] Iteration {self.checkpoint.iteration}: {task_id} (score {task.score})")

        result = self._execute(task)
        finished = self.clock()

        elapsed = (finished - started).total_seconds()
        if not result.timed_out and elapsed > self.config.iteration_timeout:
            logger.warning(f"[LOOP] {task_id}: took {elapsed:.0f}s, over the {self.config.iteration_timeout}s budget")
            result.timed_out = True

        if result.timed_out:
            result.outcome = "blocked"
        if result.outcome == "success" and not result.timed_out:
            transition(task, COMPLETE, finished, reason="success")
        else:
            transition(task, PENDING, finished, reason="timeout" if result.timed_out else result.outcome)

        report = IterationReport(task_id=task_id, outcome=result.outcome, timed_out=result.timed_out)

        try:
            _, report.unblocked = resolve(self.backlog)
        except DependencyError as e:
            report.unblocked = e.unblocked
            logger.error(f"[DEPS] Left unresolved: {e}")
        rescore(self.backlog, finished, self.policy.weights)
        self._save_backlog(finished)

        report.progress = result.made_progress
        if report.progress:
            self.breaker.record_progress(task_id, result.reference, finished)
        else:
            reason = "timed out" if result.timed_out else f"{result.outcome} without a durable artifact"
            self.breaker.record_no_progress(f"{task_id} {reason}")
        report.tripped = self.breaker.tripped
        self.checkpoint.active_task_id = None
        self._save_checkpoint()

        label = "TIMEOUT" if result.timed_out else ENTRY_LABELS[result.outcome]
        self._append_entry(finished, ProgressEntry(
            timestamp=progress_time(finished),
            title=one_line(f"{label} {task_id}: {task.title}"),
            description=one_line(result.summary) or "No summary reported",
            outcome=result.outcome,
            artifacts=[one_line(a) for a in result.artifacts if a.strip()],
            next_hint=one_line(result.next_hint) if result.next_hint else None,
        ))

        try:
            report.compaction = compact_file(self.paths.progress, self.compaction)
        except CompactionFailure as e:
            logger.warning(f"[COMPACT] Skipped: {e}")

        return report

    def run(self, max_iterations: Optional[int] = None, max_hours: Optional[float] = None) -> RunSummary:
        """Iterate until the breaker trips, the queue drains or a limit is hit.

        Limits default to MAX_ITERATIONS / MAX_HOURS from loop.env; 0 means
        unbounded.
        """
        if max_iterations is None:
            max_iterations = self.config.max_iterations
        if max_hours is None:
            max_hours = self.config.max_hours

        recovered = self.recover()
        start = self.clock()
        # Stored scores may predate an idle period; age bonuses move with time
        rescore(self.backlog, start, self.policy.weights)
        starved = self.starved(start)
        if starved:
            notifications.notify_starved([w.task_id for w in starved])

        summary = RunSummary(iterations=0, stop_reason=STOP_QUEUE_EMPTY, recovered=recovered)
        while True:
            if self.breaker.tripped:
                summary.stop_reason = STOP_BREAKER_TRIPPED
                break
            if max_iterations and summary.iterations >= max_iterations:
                summary.stop_reason = STOP_MAX_ITERATIONS
                break
            elapsed_hours = (self.clock() - start).total_seconds() / 3600
            if max_hours and elapsed_hours >= max_hours:
                summary.stop_reason = STOP_MAX_HOURS
                break

            counts = self.backlog.counts()
            if counts["total"] and counts["complete"] == counts["total"]:
                summary.stop_reason = STOP_ALL_COMPLETE
                break

            if summary.iterations and self.config.sleep_between:
                self.sleep(self.config.sleep_between)

            report = self.run_iteration()
            if report.task_id is None:
                summary.stop_reason = STOP_QUEUE_EMPTY
                break
            summary.iterations += 1
            if report.outcome == "success" and not report.timed_out:
                summary.completed.append(report.task_id)

        logger.info(
            f"[LOOP] Stopped ({summary.stop_reason}) after {summary.iterations} iterations, "
            f"{len(summary.completed)} completed; {self.queue_health()}"
        )
        if summary.stop_reason in (STOP_QUEUE_EMPTY, STOP_ALL_COMPLETE):
            notifications.notify_complete(self.backlog.counts()["complete"])
        return summary

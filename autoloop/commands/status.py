"""
loop status - Show loop health and queue state.
"""

from pathlib import Path

from autoloop.lib.config import load_loop_config
from autoloop.lib.constants import EXIT_BREAKER_TRIPPED, EXIT_OK
from autoloop.lib.models import format_timestamp, utcnow
from autoloop.lib.progress import ProgressParseError
from autoloop.lib.scoring import find_starved
from autoloop.lib.selector import counts_by_status, select_next
from autoloop.runner.locking import is_locked, lock_holder_pid
from autoloop.runner.state_files import StatePaths, load_backlog, load_progress
from autoloop.workflow.checkpoint import load_checkpoint


def cmd_status(args, state_dir: Path) -> int:
    """Show breaker state, counts, next task and warnings."""
    paths = StatePaths(state_dir)
    config = load_loop_config(state_dir)
    backlog, rejected = load_backlog(paths.tasks)
    checkpoint = load_checkpoint(paths.checkpoint)
    now = utcnow()

    print(f"State dir: {state_dir}")
    if is_locked(paths.lock):
        pid = lock_holder_pid(paths.lock)
        print("Driver:    running" + (f" (pid {pid})" if pid else ""))
    else:
        print("Driver:    idle")

    print(f"Breaker:   {checkpoint.state} ({checkpoint.consecutive_failures}/{config.breaker_threshold})")
    print(f"Failed:    {checkpoint.failed_attempts} total no-progress iterations")
    print(f"Iteration: {checkpoint.iteration}")
    if checkpoint.active_task_id:
        print(f"Active:    {checkpoint.active_task_id}")
    print(f"Last good: {checkpoint.last_good_reference or '-'}"
          f" ({checkpoint.last_successful_task_id or '-'}, {format_timestamp(checkpoint.timestamp) or 'never'})")

    counts = counts_by_status(backlog)
    print("")
    print("Tasks:     " + ", ".join(f"{v} {k}" for k, v in counts.items()) + f" ({len(backlog)} total)")
    next_id = select_next(backlog)
    print(f"Next:      {next_id or '-'}")

    try:
        log = load_progress(paths.progress)
        print(f"Progress:  {len(log.entries)} recent entries, {len(log.summaries)} period summaries")
    except ProgressParseError as e:
        print(f"Progress:  UNPARSEABLE ({e})")

    starved = find_starved(backlog, now, config.starvation_hours)
    if starved:
        print(f"\nStarving (waiting >= {config.starvation_hours:g}h):")
        for w in starved:
            print(f"  {w.task_id}  {w.age_hours:.1f}h")

    if rejected:
        print(f"\nInvalid records in {paths.tasks.name}:")
        for err in rejected:
            print(f"  {err}")

    if checkpoint.tripped:
        print("\nCircuit breaker is tripped. Investigate, then run 'loop reset'.")
        return EXIT_BREAKER_TRIPPED
    return EXIT_OK

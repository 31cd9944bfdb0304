"""
loop next / counts / chain - Read-only queue queries.

None of these take the driver lock or write anything.
"""

from pathlib import Path

from autoloop.lib.config import load_policy
from autoloop.lib.constants import EXIT_INPUT_ERROR, EXIT_OK
from autoloop.lib.models import utcnow
from autoloop.lib.scoring import explain_score
from autoloop.lib.selector import blocking_chain, counts_by_status, counts_by_type, ranked, select_next
from autoloop.runner.state_files import StatePaths, load_backlog
from autoloop.workflow.checkpoint import load_checkpoint


def cmd_next(args, state_dir: Path) -> int:
    """Show the task the driver would pick next."""
    paths = StatePaths(state_dir)
    backlog, _ = load_backlog(paths.tasks)
    checkpoint = load_checkpoint(paths.checkpoint)

    task_id = select_next(backlog)
    if task_id is None:
        print("No eligible task.")
        return EXIT_OK

    if checkpoint.tripped:
        print("NOTE: Circuit breaker is tripped; the driver will not select until 'loop reset'.\n")

    task = backlog[task_id]
    print(f"{task.id}  score={task.score}  [{task.priority}/{task.type}]  {task.title}")

    if args.explain:
        policy = load_policy(state_dir)
        breakdown = explain_score(task, backlog, utcnow(), policy.weights)
        print(f"  priority:  {breakdown.priority}")
        print(f"  type:      {breakdown.type}")
        print(f"  sequence:  {breakdown.sequence}")
        print(f"  milestone: {breakdown.milestone}")
        print(f"  review:    {breakdown.review}")
        print(f"  blocking:  {breakdown.blocking}")
        print(f"  age:       {breakdown.age}")
        print(f"  total:     {breakdown.total} (stored {task.score})")

    if args.limit and args.limit > 1:
        print("\nUp next:")
        for other in ranked(backlog, args.limit)[1:]:
            print(f"  {other.id}  score={other.score}  {other.title}")

    return EXIT_OK


def cmd_counts(args, state_dir: Path) -> int:
    """Show task counts by status or type."""
    backlog, _ = load_backlog(StatePaths(state_dir).tasks)
    counts = counts_by_type(backlog) if args.by == "type" else counts_by_status(backlog)

    width = max(len(k) for k in counts)
    for key, value in counts.items():
        print(f"{key:<{width}}  {value}")
    print(f"{'total':<{width}}  {len(backlog)}")
    return EXIT_OK


def cmd_chain(args, state_dir: Path) -> int:
    """Show everything a task is waiting on."""
    backlog, _ = load_backlog(StatePaths(state_dir).tasks)
    try:
        chain = blocking_chain(backlog, args.task_id)
    except KeyError:
        print(f"ERROR: Task '{args.task_id}' not found")
        return EXIT_INPUT_ERROR

    task = backlog[args.task_id]
    print(f"{task.id} [{task.status}] {task.title}")
    if not chain:
        print("  (not blocked)")
        return EXIT_OK

    for link in chain:
        indent = "  " * link.depth
        status = link.status or "MISSING"
        title = backlog[link.task_id].title if link.status else ""
        print(f"{indent}<- {link.task_id} [{status}] {title}".rstrip())
    return EXIT_OK

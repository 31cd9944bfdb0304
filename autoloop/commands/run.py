"""
loop run - Run the work loop.

Holds the driver lock for the whole run and appends log output to
loop.log in the state directory.
"""

import logging
from pathlib import Path

from autoloop.lib.config import load_loop_config, load_policy
from autoloop.lib.constants import EXIT_BREAKER_TRIPPED, EXIT_FAILED, EXIT_INPUT_ERROR, EXIT_OK
from autoloop.runner.executor import CommandExecutor
from autoloop.runner.locking import LockTimeout, driver_lock
from autoloop.runner.state_files import StatePaths
from autoloop.workflow.engine import STOP_BREAKER_TRIPPED, LoopDriver

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _attach_file_log(path: Path) -> logging.Handler:
    handler = logging.FileHandler(path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    return handler


def cmd_run(args, state_dir: Path) -> int:
    """Run iterations until the breaker trips, the queue drains or a limit is hit."""
    config = load_loop_config(state_dir)
    policy = load_policy(state_dir)

    if not config.executor_command:
        print("ERROR: EXECUTOR_COMMAND is not set in loop.env")
        return EXIT_INPUT_ERROR

    paths = StatePaths(state_dir)
    max_iterations = 1 if args.once else args.max_iterations

    executor = CommandExecutor(
        config.executor_command,
        cwd=config.repo_path,
        repo_path=config.repo_path,
        log_dir=state_dir / "runs",
    )

    state_dir.mkdir(parents=True, exist_ok=True)
    handler = _attach_file_log(paths.log)
    try:
        with driver_lock(state_dir, timeout=config.lock_timeout):
            driver = LoopDriver(state_dir, config, policy, executor)
            if driver.breaker.tripped:
                print("ERROR: Circuit breaker is tripped. Investigate, then run 'loop reset'.")
                return EXIT_BREAKER_TRIPPED
            summary = driver.run(max_iterations=max_iterations, max_hours=args.max_hours)
    except LockTimeout as e:
        print(f"ERROR: {e}. Is another driver running?")
        return EXIT_FAILED
    finally:
        logging.getLogger().removeHandler(handler)
        handler.close()

    if summary.recovered:
        print(f"Recovered: {', '.join(summary.recovered)} (returned to pending)")
    print(f"Iterations: {summary.iterations}")
    print(f"Completed: {', '.join(summary.completed) if summary.completed else 'none'}")
    print(f"Stopped: {summary.stop_reason}")
    print(f"Queue: {driver.queue_health()}")

    if summary.stop_reason == STOP_BREAKER_TRIPPED:
        print("\nCircuit breaker tripped. Investigate, then run 'loop reset'.")
        return EXIT_BREAKER_TRIPPED
    return EXIT_OK

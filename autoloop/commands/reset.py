"""
loop reset - Clear a tripped circuit breaker.

Resets the consecutive-failure counter and the tripped flag. Task
statuses are not touched.
"""

import logging
from pathlib import Path

from autoloop.lib.config import load_loop_config
from autoloop.lib.constants import EXIT_FAILED, EXIT_OK
from autoloop.runner.locking import LockTimeout, driver_lock
from autoloop.runner.state_files import StatePaths
from autoloop.workflow.checkpoint import CircuitBreaker, load_checkpoint, save_checkpoint

logger = logging.getLogger(__name__)


def cmd_reset(args, state_dir: Path) -> int:
    """Reset the breaker to healthy."""
    config = load_loop_config(state_dir)
    paths = StatePaths(state_dir)

    try:
        with driver_lock(state_dir, timeout=config.lock_timeout):
            checkpoint = load_checkpoint(paths.checkpoint)
            breaker = CircuitBreaker(checkpoint, config.breaker_threshold)
            previous = breaker.describe()
            breaker.reset()
            save_checkpoint(paths.checkpoint, checkpoint)
    except LockTimeout as e:
        print(f"ERROR: {e}. Stop the running driver first.")
        return EXIT_FAILED

    print(f"Breaker reset: {previous} -> {breaker.describe()}")
    return EXIT_OK

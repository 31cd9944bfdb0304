"""
loop compact - Fold old progress entries into period summaries.
"""

from pathlib import Path

from autoloop.lib.compaction import CompactionFailure, compact_file
from autoloop.lib.config import compaction_config, load_loop_config, load_policy
from autoloop.lib.constants import EXIT_FAILED, EXIT_OK
from autoloop.runner.locking import LockTimeout, driver_lock
from autoloop.runner.state_files import StatePaths


def cmd_compact(args, state_dir: Path) -> int:
    """Compact progress.md (only when over the limits unless --force)."""
    config = load_loop_config(state_dir)
    policy = load_policy(state_dir)
    paths = StatePaths(state_dir)

    try:
        with driver_lock(state_dir, timeout=config.lock_timeout):
            result = compact_file(paths.progress, compaction_config(config, policy), force=args.force)
    except LockTimeout as e:
        print(f"ERROR: {e}. Stop the running driver first.")
        return EXIT_FAILED
    except CompactionFailure as e:
        print(f"ERROR: {e}")
        print("The progress log was left unchanged.")
        return EXIT_FAILED

    if not result.changed:
        print(f"Nothing to compact ({result.before_lines} lines).")
        return EXIT_OK

    print(f"Compacted {paths.progress.name}: {result.before_lines} -> {result.after_lines} lines")
    print(f"  Entries folded: {result.folded_entries}")
    if result.dropped_summaries:
        print(f"  Oldest summaries dropped: {result.dropped_summaries}")
    return EXIT_OK

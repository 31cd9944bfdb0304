"""
loop init - Create a state directory with default configuration.
"""

from pathlib import Path

from autoloop.lib.config import write_default_config
from autoloop.lib.models import Backlog, utcnow
from autoloop.lib.progress import ProgressLog
from autoloop.runner.state_files import StatePaths, save_backlog, save_progress
from autoloop.workflow.checkpoint import Checkpoint, save_checkpoint


def cmd_init(args, state_dir: Path) -> int:
    """Create loop.env, policy.yaml and empty stores. Existing files are kept unless --force."""
    paths = StatePaths(state_dir)
    written = write_default_config(state_dir, overwrite=args.force)

    if args.force or not paths.tasks.exists():
        save_backlog(paths.tasks, Backlog(last_updated=utcnow()))
        written.append(paths.tasks)
    if args.force or not paths.checkpoint.exists():
        save_checkpoint(paths.checkpoint, Checkpoint())
        written.append(paths.checkpoint)
    if args.force or not paths.progress.exists():
        save_progress(paths.progress, ProgressLog())
        written.append(paths.progress)

    if not written:
        print(f"State directory already initialized: {state_dir}")
        return 0

    print(f"Initialized {state_dir}")
    for path in written:
        print(f"  {path.name}")
    print("\nNext steps:")
    print(f"  Set EXECUTOR_COMMAND in {paths.loop_env.name}")
    print("  loop add tasks.json")
    print("  loop run")
    return 0

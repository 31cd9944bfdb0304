"""
loop validate - Check every file in the state directory.

Reports all problems rather than stopping at the first.
"""

from pathlib import Path

from autoloop.lib.config import ConfigError, load_loop_config, load_policy
from autoloop.lib.constants import EXIT_INPUT_ERROR, EXIT_OK
from autoloop.lib.dependencies import DependencyError, check_graph
from autoloop.lib.progress import ProgressParseError
from autoloop.lib.validate import ValidationError
from autoloop.runner.state_files import StatePaths, load_backlog, load_progress
from autoloop.workflow.checkpoint import load_checkpoint


def cmd_validate(args, state_dir: Path) -> int:
    """Validate configuration, backlog, dependency graph, checkpoint and progress log."""
    paths = StatePaths(state_dir)
    problems = []

    for name, loader in (("loop.env", load_loop_config), ("policy.yaml", load_policy)):
        try:
            loader(state_dir)
        except ConfigError as e:
            problems.append(f"{name}: {e}")

    try:
        backlog, rejected = load_backlog(paths.tasks)
        problems.extend(f"{paths.tasks.name}: {err}" for err in rejected)
        try:
            check_graph(backlog)
        except DependencyError as e:
            problems.append(f"{paths.tasks.name}: {e}")
        print(f"Tasks:      {len(backlog)} valid")
    except ValidationError as e:
        problems.append(f"{paths.tasks.name}: {e}")

    try:
        load_checkpoint(paths.checkpoint)
    except ValidationError as e:
        problems.append(f"{paths.checkpoint.name}: {e}")

    try:
        log = load_progress(paths.progress)
        print(f"Progress:   {len(log.entries)} entries, {len(log.summaries)} summaries")
    except ProgressParseError as e:
        problems.append(f"{paths.progress.name}: {e}")

    if problems:
        print(f"\n{len(problems)} problem(s):")
        for problem in problems:
            print(f"  ERROR: {problem}")
        return EXIT_INPUT_ERROR

    print("OK")
    return EXIT_OK

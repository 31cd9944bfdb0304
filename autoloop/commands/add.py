"""
loop add - Ingest task records into the backlog.

Accepts a JSON (or YAML) file holding either a list of task records or an
object with a "tasks" list. Invalid records are rejected one by one; the
valid ones are added together so they may refer to each other.
"""

import json
from pathlib import Path

import yaml

from autoloop.lib.config import load_loop_config, load_policy
from autoloop.lib.constants import EXIT_INPUT_ERROR, EXIT_OK
from autoloop.lib.dependencies import DependencyError, mark_blocked
from autoloop.lib.models import ingest_records, utcnow
from autoloop.lib.scoring import rescore
from autoloop.runner.locking import driver_lock
from autoloop.runner.state_files import StatePaths, load_backlog, save_backlog


def read_records(path: Path) -> list:
    """Load raw task records from a JSON or YAML file.

    Raises:
        ValueError: unreadable file or unexpected shape
    """
    text = path.read_text()
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Cannot parse {path}: {e}") from None

    if isinstance(data, dict):
        data = data.get("tasks")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of task records or an object with a 'tasks' list")
    return data


def cmd_add(args, state_dir: Path) -> int:
    """Add tasks from a file."""
    source = Path(args.file)
    if not source.exists():
        print(f"ERROR: File not found: {source}")
        return EXIT_INPUT_ERROR

    try:
        records = read_records(source)
    except ValueError as e:
        print(f"ERROR: {e}")
        return EXIT_INPUT_ERROR

    tasks, rejected = ingest_records(records)
    for err in rejected:
        print(f"REJECTED {err}")

    if not tasks:
        print("No valid task records to add.")
        return EXIT_INPUT_ERROR if rejected else EXIT_OK

    config = load_loop_config(state_dir)
    policy = load_policy(state_dir)
    paths = StatePaths(state_dir)
    now = utcnow()

    with driver_lock(state_dir, timeout=config.lock_timeout):
        backlog, stored_rejected = load_backlog(paths.tasks)
        if stored_rejected:
            print(f"WARNING: {len(stored_rejected)} invalid records in {paths.tasks.name} are kept unchanged; fix them by hand")

        for task in tasks:
            if task.created_at is None:
                task.created_at = now

        try:
            backlog.add(*tasks)
        except (DependencyError, ValueError) as e:
            print(f"ERROR: {e}")
            return EXIT_INPUT_ERROR

        mark_blocked(backlog)
        rescore(backlog, now, policy.weights)
        backlog.last_updated = now
        save_backlog(paths.tasks, backlog)

    print(f"Added {len(tasks)} task(s)" + (f", rejected {len(rejected)}" if rejected else ""))
    return EXIT_INPUT_ERROR if rejected else EXIT_OK

"""State file operations for the loop.

Handles reading/writing of the three stores in the state directory:
tasks.json (backlog), checkpoint.json (loop health) and progress.md
(activity log). Every write goes to a temp file in the same directory and
is moved into place with os.replace, so a crash leaves either the old or
the new file, never a torn one.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from autoloop.lib.constants import (
    CHECKPOINT_FILE,
    LOCK_FILE,
    LOOP_ENV_FILE,
    LOOP_LOG_FILE,
    POLICY_FILE,
    PROGRESS_FILE,
    TASKS_FILE,
)
from autoloop.lib.models import Backlog, Task, parse_timestamp, task_from_dict
from autoloop.lib.progress import (
    CurrentStatus,
    ProgressEntry,
    ProgressLog,
    ProgressParseError,
    format_progress,
    insert_entry_text,
    parse_progress,
)
from autoloop.lib.validate import ValidationError, validate, validate_before_write

logger = logging.getLogger(__name__)


@dataclass
class StatePaths:
    """File layout of a state directory."""
    root: Path

    @property
    def tasks(self) -> Path:
        return self.root / TASKS_FILE

    @property
    def checkpoint(self) -> Path:
        return self.root / CHECKPOINT_FILE

    @property
    def progress(self) -> Path:
        return self.root / PROGRESS_FILE

    @property
    def loop_env(self) -> Path:
        return self.root / LOOP_ENV_FILE

    @property
    def policy(self) -> Path:
        return self.root / POLICY_FILE

    @property
    def log(self) -> Path:
        return self.root / LOOP_LOG_FILE

    @property
    def lock(self) -> Path:
        return self.root / LOCK_FILE


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to path via a temp file in the same directory and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def read_json(path: Path, schema_name: str) -> Optional[dict]:
    """Load a JSON object. Returns None if the file does not exist.

    Raises:
        ValidationError: file is not valid JSON or not an object
    """
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"Invalid JSON in {path}: {e}") from None
    if not isinstance(data, dict):
        raise ValidationError(schema_name, f"{path}: top level must be an object")
    return data


def load_backlog(path: Path) -> tuple[Backlog, list[ValidationError]]:
    """Load tasks.json.

    Invalid task records are rejected individually and returned alongside
    the backlog built from the valid ones. The raw rejected records stay on
    the backlog (`rejected_records`) and save_backlog writes them back
    unchanged, so a bad record is kept for an operator to fix. A missing
    file is an empty backlog.

    Raises:
        ValidationError: the file as a whole is unreadable
    """
    data = read_json(path, "task")
    if data is None:
        return Backlog(), []

    records = data.get("tasks")
    if not isinstance(records, list):
        raise ValidationError("task", f"{path}: 'tasks' must be a list")

    unique: list[Task] = []
    kept: list = []
    rejected: list[ValidationError] = []
    seen = set()
    for record in records:
        try:
            task = task_from_dict(record)
            if task.id in seen:
                raise ValidationError("task", "Duplicate task id", record_id=task.id)
        except ValidationError as e:
            logger.warning(f"Rejected task record: {e}")
            rejected.append(e)
            kept.append(record)
            continue
        seen.add(task.id)
        unique.append(task)

    try:
        last_updated = parse_timestamp(data.get("last_updated"))
    except ValueError:
        logger.warning(f"{path}: ignoring invalid last_updated '{data.get('last_updated')}'")
        last_updated = None

    return Backlog(unique, last_updated=last_updated, rejected_records=kept), rejected


def save_backlog(path: Path, backlog: Backlog) -> None:
    """Validate every task record and write tasks.json atomically.

    Records rejected on load are appended as they were read.
    """
    data = backlog.to_dict()
    for record in data["tasks"]:
        validate_before_write(record, "task", path)
    data["tasks"].extend(backlog.rejected_records)
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def load_checkpoint_data(path: Path) -> Optional[dict]:
    """Load and validate checkpoint.json, or None if absent."""
    data = read_json(path, "checkpoint")
    if data is not None:
        validate(data, "checkpoint")
    return data


def save_checkpoint_data(path: Path, data: dict) -> None:
    validate_before_write(data, "checkpoint", path)
    atomic_write_text(path, json.dumps(data, indent=2) + "\n")


def load_progress(path: Path) -> ProgressLog:
    """Parse progress.md; a missing file is an empty log.

    Raises:
        ProgressParseError: document does not parse
    """
    if not path.exists():
        return ProgressLog()
    return parse_progress(path.read_text())


def save_progress(path: Path, log: ProgressLog) -> None:
    atomic_write_text(path, format_progress(log))


def append_progress_entry(path: Path, entry: ProgressEntry, status: Optional[CurrentStatus] = None) -> None:
    """Add an entry (newest first) and refresh the current status.

    If the existing document does not parse, the entry block is inserted
    textually under the Recent Activity heading and the status is left as
    it was, so the record is not lost.
    """
    try:
        log = load_progress(path)
    except ProgressParseError as e:
        logger.warning(f"{path} does not parse ({e}); inserting entry without reformatting")
        atomic_write_text(path, insert_entry_text(path.read_text(), entry))
        return

    log.entries.insert(0, entry)
    if status is not None:
        log.status = status
    save_progress(path, log)

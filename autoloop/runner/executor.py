"""
Executor integration.

The executor is an external black box that works on one task and reports
success, partial or blocked. CommandExecutor runs a configured command
(EXECUTOR_COMMAND) per task:

- {task_id}, {title}, {type}, {sequence} in the template are substituted
- the task prompt is passed via stdin
- the command prints a JSON object on stdout (schemas/execution.schema.json):
      {"outcome": "success", "summary": "...", "artifacts": ["..."],
       "next": "...", "reference": "..."}

The durable reference that counts as progress is a new git HEAD in
REPO_PATH when one is configured, else the "reference" field of the report.
"""

import json
import logging
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from autoloop.git.runner import head_sha
from autoloop.lib.models import Task
from autoloop.lib.validate import ValidationError, validate

logger = logging.getLogger(__name__)

TEMPLATE_VARIABLES = ("task_id", "title", "type", "sequence")

MAX_OUTPUT_IN_SUMMARY = 300


@dataclass
class ExecutionResult:
    """What the executor reported for one task."""
    outcome: str                                # success, partial, blocked
    summary: str = ""
    artifacts: list[str] = field(default_factory=list)
    next_hint: Optional[str] = None
    reference: Optional[str] = None             # durable artifact, e.g. commit sha
    timed_out: bool = False

    @property
    def made_progress(self) -> bool:
        return bool(self.reference) and not self.timed_out


class Executor(Protocol):
    def execute(self, task: Task, timeout: float) -> ExecutionResult:
        ...


def build_prompt(task: Task) -> str:
    """Task description handed to the executor on stdin."""
    lines = [
        f"Task: {task.id}",
        f"Title: {task.title}",
        f"Type: {task.type}",
        f"Priority: {task.priority}",
    ]
    if task.sequence_key:
        lines.append(f"Sequence: {task.sequence_key}")
    if task.review_flagged:
        lines.append("Flagged for review: yes")
    for key in sorted(task.metadata):
        lines.append(f"{key}: {task.metadata[key]}")
    lines.append("")
    lines.append(
        'When done, print one JSON object: {"outcome": "success|partial|blocked", '
        '"summary": "...", "artifacts": [...], "next": "...", "reference": "..."}'
    )
    return "\n".join(lines) + "\n"


def build_command(template: str, task: Task) -> list[str]:
    """Split the command template and substitute task variables.

    Substitution happens after shlex splitting so titles with quotes or
    spaces stay a single argument.

    Raises:
        ValueError: empty template
    """
    if not template.strip():
        raise ValueError("EXECUTOR_COMMAND is not configured")

    context = {
        "task_id": task.id,
        "title": task.title,
        "type": task.type,
        "sequence": task.sequence_key or "",
    }
    cmd = []
    for arg in shlex.split(template):
        for key, value in context.items():
            arg = arg.replace(f"{{{key}}}", value)
        cmd.append(arg)
    return cmd


def extract_report(stdout: str) -> Optional[dict]:
    """Find the JSON report in executor output.

    Accepts the whole output as JSON, a fenced ```json block, or the last
    line that parses as a JSON object. Returns None if nothing parses.
    """
    text = stdout.strip()
    if not text:
        return None

    candidates = [text]

    # Look for ```json or ``` code block anywhere in the response
    start = text.find("```json")
    if start == -1:
        start = text.find("```")
    if start != -1:
        newline_after_open = text.find("\n", start)
        if newline_after_open != -1:
            close = text.find("\n```", newline_after_open)
            if close != -1:
                candidates.append(text[newline_after_open + 1:close].strip())

    candidates.extend(line.strip() for line in reversed(text.splitlines()) if line.strip().startswith("{"))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _tail(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > MAX_OUTPUT_IN_SUMMARY:
        return "..." + text[-MAX_OUTPUT_IN_SUMMARY:]
    return text


class CommandExecutor:
    """Runs EXECUTOR_COMMAND once per task."""

    def __init__(self, command_template: str, cwd: Optional[Path] = None,
                 repo_path: Optional[Path] = None, log_dir: Optional[Path] = None):
        self.command_template = command_template
        self.cwd = cwd
        self.repo_path = repo_path
        self.log_dir = log_dir

    def _write_log(self, task: Task, cmd: list[str], returncode: int, stdout: str, stderr: str) -> None:
        if self.log_dir is None:
            return
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            (self.log_dir / f"{task.id}.log").write_text(
                f"=== COMMAND ===\n{shlex.join(cmd)}\n\n"
                f"=== EXIT CODE ===\n{returncode}\n\n"
                f"=== STDOUT ===\n{stdout}\n\n"
                f"=== STDERR ===\n{stderr}\n"
            )
        except OSError as e:
            logger.warning(f"Failed to write executor log for {task.id}: {e}")

    def execute(self, task: Task, timeout: float) -> ExecutionResult:
        """Run the command for one task within the time budget."""
        cmd = build_command(self.command_template, task)
        before = head_sha(self.repo_path) if self.repo_path else None

        logger.info(f"[LOOP] Executing {task.id}: {shlex.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.cwd) if self.cwd else None,
                input=build_prompt(task),
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"[LOOP] {task.id}: executor timed out after {timeout}s")
            return ExecutionResult(
                outcome="blocked",
                summary=f"Executor timed out after {timeout:g}s",
                timed_out=True,
            )
        except OSError as e:
            logger.error(f"[LOOP] {task.id}: failed to start executor: {e}")
            return ExecutionResult(outcome="blocked", summary=f"Failed to start executor: {e}")

        self._write_log(task, cmd, result.returncode, result.stdout, result.stderr)

        report = extract_report(result.stdout)
        if report is not None:
            try:
                validate(report, "execution", record_id=task.id)
            except ValidationError as e:
                logger.warning(f"[LOOP] {task.id}: ignoring invalid executor report: {e}")
                report = None

        if report is None:
            detail = _tail(result.stderr or result.stdout) or "no output"
            outcome = "partial" if result.returncode == 0 else "blocked"
            execution = ExecutionResult(
                outcome=outcome,
                summary=f"Executor exited {result.returncode} without a report: {detail}",
            )
        else:
            execution = ExecutionResult(
                outcome=report["outcome"],
                summary=report.get("summary", ""),
                artifacts=list(report.get("artifacts", [])),
                next_hint=report.get("next"),
                reference=report.get("reference"),
            )
            if result.returncode != 0 and execution.outcome == "success":
                logger.warning(f"[LOOP] {task.id}: executor reported success but exited {result.returncode}")
                execution.outcome = "partial"

        if self.repo_path:
            after = head_sha(self.repo_path)
            execution.reference = after if after and after != before else None

        return execution

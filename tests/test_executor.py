"""Tests for autoloop.runner.executor module."""

import json
import subprocess
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

from autoloop.lib.models import Task
from autoloop.runner.executor import (
    CommandExecutor,
    ExecutionResult,
    build_command,
    build_prompt,
    extract_report,
)


@pytest.fixture
def task():
    return Task("ch03-draft", "milestone-work", "Draft chapter 3", sequence_key="ch03",
                metadata={"file": "ch03.md"})


def completed(stdout="", returncode=0, stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


class TestExecutionResult:
    """Test ExecutionResult.made_progress."""

    def test_reference_is_progress(self):
        assert ExecutionResult("success", reference="abc").made_progress

    def test_no_reference_is_not_progress(self):
        assert not ExecutionResult("success").made_progress

    def test_timeout_is_not_progress(self):
        assert not ExecutionResult("blocked", reference="abc", timed_out=True).made_progress


class TestBuildCommand:
    """Test build_command and build_prompt."""

    def test_substitutes_after_split(self, task):
        cmd = build_command("agent --task {task_id} --title {title} --seq {sequence}", task)
        assert cmd == ["agent", "--task", "ch03-draft", "--title", "Draft chapter 3", "--seq", "ch03"]

    def test_empty_template(self, task):
        with pytest.raises(ValueError):
            build_command("  ", task)

    def test_prompt_lists_task(self, task):
        prompt = build_prompt(task)
        assert "Task: ch03-draft" in prompt
        assert "Sequence: ch03" in prompt
        assert "file: ch03.md" in prompt


class TestExtractReport:
    """Test extract_report function."""

    def test_whole_output(self):
        assert extract_report('{"outcome": "success"}') == {"outcome": "success"}

    def test_fenced_block(self):
        text = 'Done.\n```json\n{"outcome": "partial",\n "summary": "half"}\n```\nBye'
        assert extract_report(text) == {"outcome": "partial", "summary": "half"}

    def test_last_json_line(self):
        text = 'working...\n{"outcome": "blocked"}\nlog noise\n{"outcome": "success"}\n'
        assert extract_report(text) == {"outcome": "success"}

    def test_nothing(self):
        assert extract_report("") is None
        assert extract_report("no json here") is None


class TestCommandExecutor:
    """Test CommandExecutor.execute."""

    @patch("autoloop.runner.executor.subprocess.run")
    def test_success_report(self, mock_run, task, tmp_path):
        report = {"outcome": "success", "summary": "Wrote it", "artifacts": ["ch03.md"],
                  "next": "Review", "reference": "abc123"}
        mock_run.return_value = completed(json.dumps(report))
        executor = CommandExecutor("agent {task_id}", log_dir=tmp_path / "runs")

        result = executor.execute(task, timeout=60)

        assert result.outcome == "success"
        assert result.summary == "Wrote it"
        assert result.artifacts == ["ch03.md"]
        assert result.next_hint == "Review"
        assert result.reference == "abc123"
        assert mock_run.call_args.kwargs["timeout"] == 60
        assert "Task: ch03-draft" in mock_run.call_args.kwargs["input"]
        assert (tmp_path / "runs" / "ch03-draft.log").exists()

    @patch("autoloop.runner.executor.subprocess.run")
    def test_timeout(self, mock_run, task):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="agent", timeout=5)
        result = CommandExecutor("agent").execute(task, timeout=5)
        assert result.timed_out
        assert result.outcome == "blocked"
        assert not result.made_progress

    @patch("autoloop.runner.executor.subprocess.run")
    def test_missing_binary(self, mock_run, task):
        mock_run.side_effect = FileNotFoundError("agent")
        result = CommandExecutor("agent").execute(task, timeout=5)
        assert result.outcome == "blocked"

    @patch("autoloop.runner.executor.subprocess.run")
    def test_no_report(self, mock_run, task):
        mock_run.return_value = completed("just text", returncode=0)
        result = CommandExecutor("agent").execute(task, timeout=5)
        assert result.outcome == "partial"
        assert "without a report" in result.summary

    @patch("autoloop.runner.executor.subprocess.run")
    def test_invalid_report(self, mock_run, task):
        mock_run.return_value = completed('{"outcome": "done"}', returncode=1)
        result = CommandExecutor("agent").execute(task, timeout=5)
        assert result.outcome == "blocked"

    @patch("autoloop.runner.executor.subprocess.run")
    def test_success_with_nonzero_exit_is_partial(self, mock_run, task):
        mock_run.return_value = completed('{"outcome": "success", "reference": "abc"}', returncode=2)
        result = CommandExecutor("agent").execute(task, timeout=5)
        assert result.outcome == "partial"

    @patch("autoloop.runner.executor.head_sha")
    @patch("autoloop.runner.executor.subprocess.run")
    def test_repo_head_moved(self, mock_run, mock_head, task):
        mock_run.return_value = completed('{"outcome": "success", "reference": "ignored"}')
        mock_head.side_effect = ["old", "new"]
        result = CommandExecutor("agent", repo_path=Path("/repo")).execute(task, timeout=5)
        assert result.reference == "new"

    @patch("autoloop.runner.executor.head_sha")
    @patch("autoloop.runner.executor.subprocess.run")
    def test_repo_head_unchanged(self, mock_run, mock_head, task):
        mock_run.return_value = completed('{"outcome": "success", "reference": "claimed"}')
        mock_head.side_effect = ["same", "same"]
        result = CommandExecutor("agent", repo_path=Path("/repo")).execute(task, timeout=5)
        assert result.reference is None
        assert not result.made_progress

"""Git command runner with timeout handling.

The loop only asks git one question: what is HEAD now? A HEAD that moved
during an iteration is the durable artifact that counts as progress.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class GitResult:
    """Result of a git command."""
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out


def run_git(
    args: list[str],
    cwd: Path,
    timeout: int = DEFAULT_TIMEOUT,
) -> GitResult:
    """
    Run a git command with timeout handling.

    Args:
        args: Git command arguments (e.g., ["rev-parse", "HEAD"])
        cwd: Working directory for the command
        timeout: Timeout in seconds

    Returns:
        GitResult with returncode, stdout, stderr, and timed_out flag
    """
    cmd = ["git", "-C", str(cwd)] + args
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        return GitResult(
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    except subprocess.TimeoutExpired:
        return GitResult(
            returncode=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            timed_out=True,
        )
    except FileNotFoundError:
        return GitResult(returncode=-1, stdout="", stderr="git not found")


def head_sha(repo_path: Path) -> str | None:
    """Current HEAD commit, or None if unavailable (no repo, no commits)."""
    result = run_git(["rev-parse", "HEAD"], repo_path)
    if not result.success:
        logger.debug(f"git rev-parse HEAD failed in {repo_path}: {result.stderr.strip()}")
        return None
    return result.stdout.strip() or None

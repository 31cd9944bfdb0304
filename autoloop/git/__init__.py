"""Git operations for autoloop.

Only used to detect durable progress: a HEAD that moved while a task ran.
"""

from autoloop.git.runner import (
    GitResult,
    run_git,
    head_sha,
)

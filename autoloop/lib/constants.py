"""Shared constants for autoloop."""

# State directory layout
DEFAULT_STATE_DIR = ".autoloop"
TASKS_FILE = "tasks.json"
CHECKPOINT_FILE = "checkpoint.json"
PROGRESS_FILE = "progress.md"
LOOP_ENV_FILE = "loop.env"
POLICY_FILE = "policy.yaml"
LOOP_LOG_FILE = "loop.log"
LOCK_FILE = "driver.lock"

# Progress log timestamps are minute-resolution UTC, e.g. "2026-01-29 14:30"
PROGRESS_TIME_FORMAT = "%Y-%m-%d %H:%M"

# CLI exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INPUT_ERROR = 2
EXIT_BREAKER_TRIPPED = 3

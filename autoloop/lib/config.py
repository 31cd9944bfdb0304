"""
Configuration loaders for autoloop.

Two files live in the state directory:

- loop.env: scalar runtime settings (thresholds, timeouts, limits), parsed
  with the safe env parser. Every key is optional.
- policy.yaml: scoring weights and compaction heuristics. Sections present
  in the file are merged over DEFAULT_POLICY; the merged result is
  validated against schemas/policy.schema.json.

If neither file exists, the defaults reproduce the stock behavior.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from . import envparse
from . import validate
from .constants import LOOP_ENV_FILE, POLICY_FILE

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """A configuration file or value is invalid."""
    pass


VALID_PERIODS = ("day", "week", "month")

DEFAULT_LOOP_ENV = {
    "BREAKER_THRESHOLD": "3",
    "ITERATION_TIMEOUT": "1800",
    "MAX_ITERATIONS": "0",
    "MAX_HOURS": "3",
    "SLEEP_BETWEEN": "5",
    "MAX_LOG_LINES": "2000",
    "KEEP_RECENT_ENTRIES": "10",
    "MAX_RECENT_ENTRIES": "50",
    "PERIOD": "week",
    "STARVATION_HOURS": "72",
    "PHASE": "",
    "EXECUTOR_COMMAND": "",
    "REPO_PATH": "",
    "LOCK_TIMEOUT": "10",
}

DEFAULT_POLICY = {
    "priority_weights": {
        "critical": 1000,
        "high": 750,
        "medium": 500,
        "normal": 250,
        "low": 100,
    },
    "type_weights": {
        "blocker": 200,
        "milestone-work": 100,
        "fix": 80,
        "supporting-artifact": 60,
        "diagram": 40,
        "other": 20,
        "review": 10,
    },
    "sequence": {"max": 20, "step": 5, "fallback_bonus": 0},
    # Ordered: the first marker found in the lower-cased title wins
    "milestones": [
        {"marker": "work done", "bonus": 50},
        {"marker": "checked", "bonus": 45},
        {"marker": "reviewed", "bonus": 40},
        {"marker": "diagrams complete", "bonus": 35},
        {"marker": "final", "bonus": 30},
    ],
    "bonuses": {"review": 200, "per_block": 25},
    "age": {"first_hours": 24, "first_bonus": 50, "second_hours": 48, "second_bonus": 50},
    "compaction": {
        "milestone_pattern": r"\bcomplete",
        "fix_pattern": r"\bfix",
        "decision_pattern": r"\b(decision|decided|chose)\b",
        "max_milestones": 5,
        "max_issues": 3,
        "max_decisions": 3,
    },
}


@dataclass
class LoopConfig:
    """Runtime settings from loop.env"""
    breaker_threshold: int = 3
    iteration_timeout: int = 1800           # seconds
    max_iterations: int = 0                 # 0 = unbounded
    max_hours: float = 3.0
    sleep_between: float = 5.0              # seconds
    max_log_lines: int = 2000
    keep_recent_entries: int = 10
    max_recent_entries: int = 50
    period: str = "week"                    # day, week, month
    starvation_hours: float = 72.0
    phase: str = ""
    executor_command: str = ""
    repo_path: Optional[Path] = None
    lock_timeout: int = 10


@dataclass
class ScoringWeights:
    """Weights and thresholds used by the scorer."""
    priority: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_POLICY["priority_weights"]))
    types: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_POLICY["type_weights"]))
    sequence_max: int = 20
    sequence_step: int = 5
    sequence_fallback: int = 0
    milestones: list[tuple[str, int]] = field(
        default_factory=lambda: [(m["marker"], m["bonus"]) for m in DEFAULT_POLICY["milestones"]]
    )
    review_bonus: int = 200
    per_block: int = 25
    age_first_hours: float = 24
    age_first_bonus: int = 50
    age_second_hours: float = 48
    age_second_bonus: int = 50


@dataclass
class CompactionConfig:
    """Everything the compactor needs: size bounds from loop.env, heuristics from policy.yaml."""
    max_log_lines: int = 2000
    keep_recent_entries: int = 10
    max_recent_entries: int = 50
    period: str = "week"
    milestone_pattern: re.Pattern = re.compile(DEFAULT_POLICY["compaction"]["milestone_pattern"], re.IGNORECASE)
    fix_pattern: re.Pattern = re.compile(DEFAULT_POLICY["compaction"]["fix_pattern"], re.IGNORECASE)
    decision_pattern: re.Pattern = re.compile(DEFAULT_POLICY["compaction"]["decision_pattern"], re.IGNORECASE)
    max_milestones: int = 5
    max_issues: int = 3
    max_decisions: int = 3


@dataclass
class Policy:
    """Parsed policy.yaml"""
    weights: ScoringWeights = field(default_factory=ScoringWeights)
    compaction: dict = field(default_factory=lambda: dict(DEFAULT_POLICY["compaction"]))
    raw: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_POLICY))


def _get_int(env: dict, key: str, minimum: int = 0) -> int:
    value = env.get(key, DEFAULT_LOOP_ENV[key])
    try:
        result = int(value)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got '{value}'") from None
    if result < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {result}")
    return result


def _get_float(env: dict, key: str, minimum: float = 0) -> float:
    value = env.get(key, DEFAULT_LOOP_ENV[key])
    try:
        result = float(value)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got '{value}'") from None
    if result < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {result}")
    return result


def loop_config_from_env(env: dict[str, str]) -> LoopConfig:
    """Build a LoopConfig from parsed loop.env values.

    Raises:
        ConfigError: if a value is malformed or out of range
    """
    unknown = sorted(set(env) - set(DEFAULT_LOOP_ENV))
    if unknown:
        logger.warning(f"Ignoring unknown loop.env keys: {', '.join(unknown)}")

    period = env.get("PERIOD", DEFAULT_LOOP_ENV["PERIOD"]).lower()
    if period not in VALID_PERIODS:
        raise ConfigError(f"PERIOD must be one of {', '.join(VALID_PERIODS)}, got '{period}'")

    keep = _get_int(env, "KEEP_RECENT_ENTRIES", minimum=1)
    max_recent = _get_int(env, "MAX_RECENT_ENTRIES", minimum=1)
    if max_recent < keep:
        raise ConfigError(
            f"MAX_RECENT_ENTRIES ({max_recent}) must be >= KEEP_RECENT_ENTRIES ({keep})"
        )

    repo_path = env.get("REPO_PATH", "")

    return LoopConfig(
        breaker_threshold=_get_int(env, "BREAKER_THRESHOLD", minimum=1),
        iteration_timeout=_get_int(env, "ITERATION_TIMEOUT", minimum=1),
        max_iterations=_get_int(env, "MAX_ITERATIONS"),
        max_hours=_get_float(env, "MAX_HOURS"),
        sleep_between=_get_float(env, "SLEEP_BETWEEN"),
        max_log_lines=_get_int(env, "MAX_LOG_LINES", minimum=1),
        keep_recent_entries=keep,
        max_recent_entries=max_recent,
        period=period,
        starvation_hours=_get_float(env, "STARVATION_HOURS"),
        phase=env.get("PHASE", ""),
        executor_command=env.get("EXECUTOR_COMMAND", ""),
        repo_path=Path(repo_path).expanduser() if repo_path else None,
        lock_timeout=_get_int(env, "LOCK_TIMEOUT"),
    )


def load_loop_config(state_dir: Path) -> LoopConfig:
    """Load loop.env from the state directory (defaults if absent)."""
    try:
        env = envparse.load_env(state_dir / LOOP_ENV_FILE, missing_ok=True)
    except ValueError as e:
        raise ConfigError(str(e)) from None
    return loop_config_from_env(env)


def _merge_policy(data: dict) -> dict:
    """Merge user policy over DEFAULT_POLICY. Mappings merge per key, lists replace."""
    merged = copy.deepcopy(DEFAULT_POLICY)
    for section, value in data.items():
        if isinstance(value, dict) and isinstance(merged.get(section), dict):
            merged[section].update(value)
        else:
            merged[section] = value
    return merged


def _compile(pattern: str, name: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        raise ConfigError(f"compaction.{name} is not a valid regex: {e}") from None


def policy_from_dict(data: dict) -> Policy:
    """Validate and merge a policy mapping.

    Raises:
        ConfigError: if the policy does not match the schema
    """
    try:
        validate.validate(data, "policy")
    except validate.ValidationError as e:
        raise ConfigError(str(e)) from None

    merged = _merge_policy(data)

    for name in ("milestone_pattern", "fix_pattern", "decision_pattern"):
        _compile(merged["compaction"][name], name)

    weights = ScoringWeights(
        priority=merged["priority_weights"],
        types=merged["type_weights"],
        sequence_max=merged["sequence"]["max"],
        sequence_step=merged["sequence"]["step"],
        sequence_fallback=merged["sequence"]["fallback_bonus"],
        milestones=[(m["marker"].lower(), m["bonus"]) for m in merged["milestones"]],
        review_bonus=merged["bonuses"]["review"],
        per_block=merged["bonuses"]["per_block"],
        age_first_hours=merged["age"]["first_hours"],
        age_first_bonus=merged["age"]["first_bonus"],
        age_second_hours=merged["age"]["second_hours"],
        age_second_bonus=merged["age"]["second_bonus"],
    )
    return Policy(weights=weights, compaction=merged["compaction"], raw=merged)


def load_policy(state_dir: Path) -> Policy:
    """Load policy.yaml from the state directory (defaults if absent)."""
    policy_path = state_dir / POLICY_FILE
    if not policy_path.exists():
        return Policy()

    try:
        data = yaml.safe_load(policy_path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse {policy_path}: {e}") from None

    if data is None:
        return Policy()
    if not isinstance(data, dict):
        raise ConfigError(f"{policy_path}: top level must be a mapping")

    return policy_from_dict(data)


def compaction_config(config: LoopConfig, policy: Policy) -> CompactionConfig:
    """Combine size bounds and heuristics into the compactor's settings."""
    rules = policy.compaction
    return CompactionConfig(
        max_log_lines=config.max_log_lines,
        keep_recent_entries=config.keep_recent_entries,
        max_recent_entries=config.max_recent_entries,
        period=config.period,
        milestone_pattern=_compile(rules["milestone_pattern"], "milestone_pattern"),
        fix_pattern=_compile(rules["fix_pattern"], "fix_pattern"),
        decision_pattern=_compile(rules["decision_pattern"], "decision_pattern"),
        max_milestones=rules["max_milestones"],
        max_issues=rules["max_issues"],
        max_decisions=rules["max_decisions"],
    )


def write_default_config(state_dir: Path, overwrite: bool = False) -> list[Path]:
    """Write loop.env and policy.yaml with default values.

    Existing files are left alone unless overwrite is set.
    Returns the paths written.
    """
    state_dir.mkdir(parents=True, exist_ok=True)
    written = []

    env_path = state_dir / LOOP_ENV_FILE
    if overwrite or not env_path.exists():
        header = "# autoloop runtime settings (KEY=value, no shell expansion)\n"
        env_path.write_text(header + envparse.format_env(DEFAULT_LOOP_ENV))
        written.append(env_path)

    policy_path = state_dir / POLICY_FILE
    if overwrite or not policy_path.exists():
        header = "# autoloop scoring and compaction policy. Sections merge over built-in defaults.\n"
        policy_path.write_text(header + yaml.safe_dump(DEFAULT_POLICY, sort_keys=False))
        written.append(policy_path)

    return written

"""
Progress log compaction.

Keeps progress.md bounded: entries older than the newest
KEEP_RECENT_ENTRIES are folded into one summary per period (day, week or
month), keeping a success count and a few keyword-picked highlights. The
highlights are heuristics; a misfiled line is not an error.
"""

import copy
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path

from autoloop.lib.config import CompactionConfig
from autoloop.lib.progress import (
    PeriodSummary,
    ProgressEntry,
    ProgressLog,
    ProgressParseError,
    format_progress,
    line_count,
    parse_progress,
)
from autoloop.runner.state_files import atomic_write_text

logger = logging.getLogger(__name__)

COMPLETED_PREFIX_RE = re.compile(r'^COMPLETED\b[\s:-]*', re.IGNORECASE)


class CompactionFailure(Exception):
    """Compaction could not run. The progress log was left as it was."""
    pass


@dataclass
class CompactionResult:
    before_lines: int
    after_lines: int
    folded_entries: int = 0
    dropped_summaries: int = 0

    @property
    def changed(self) -> bool:
        return self.folded_entries > 0 or self.dropped_summaries > 0


def period_start(day: date, period: str) -> date:
    """First day of the period containing `day`. Weeks start on Monday."""
    if period == "day":
        return day
    if period == "week":
        return day - timedelta(days=day.weekday())
    if period == "month":
        return day.replace(day=1)
    raise ValueError(f"Unknown period: {period}")


def needs_compaction(log: ProgressLog, config: CompactionConfig) -> bool:
    return (len(log.entries) > config.max_recent_entries
            or line_count(log) > config.max_log_lines)


def _merge_items(newer: list[str], older: list[str], cap: int) -> list[str]:
    merged = []
    for item in newer + older:
        if item not in merged:
            merged.append(item)
    return merged[:cap]


def summarize(entries: list[ProgressEntry], config: CompactionConfig) -> list[PeriodSummary]:
    """One summary per period for the given entries (newest first in, most recent period first out)."""
    groups: "OrderedDict[date, list[ProgressEntry]]" = OrderedDict()
    for entry in entries:
        key = period_start(entry.timestamp.date(), config.period)
        groups.setdefault(key, []).append(entry)

    summaries = []
    for key, group in groups.items():
        milestones, issues, decisions = [], [], []
        for entry in group:
            if config.milestone_pattern.search(entry.title):
                milestones.append(COMPLETED_PREFIX_RE.sub("", entry.title).strip() or entry.title)
            if config.fix_pattern.search(entry.description):
                issues.append(entry.description)
            if config.decision_pattern.search(entry.description):
                decisions.append(entry.description)
        summaries.append(PeriodSummary(
            period_key=key,
            completed=sum(1 for e in group if e.outcome == "success"),
            milestones=_merge_items(milestones, [], config.max_milestones),
            issues=_merge_items(issues, [], config.max_issues),
            decisions=_merge_items(decisions, [], config.max_decisions),
            period=config.period,
        ))
    return summaries


def merge_summaries(newer: list[PeriodSummary], older: list[PeriodSummary],
                    config: CompactionConfig) -> list[PeriodSummary]:
    """Merge freshly folded summaries into existing ones, most recent period first."""
    by_key: dict[tuple[date, str], PeriodSummary] = {}
    for summary in older:
        by_key[(summary.period_key, summary.period)] = copy.deepcopy(summary)

    for summary in newer:
        key = (summary.period_key, summary.period)
        existing = by_key.get(key)
        if existing is None:
            by_key[key] = copy.deepcopy(summary)
            continue
        existing.completed += summary.completed
        existing.milestones = _merge_items(summary.milestones, existing.milestones, config.max_milestones)
        existing.issues = _merge_items(summary.issues, existing.issues, config.max_issues)
        existing.decisions = _merge_items(summary.decisions, existing.decisions, config.max_decisions)

    return sorted(by_key.values(), key=lambda s: (s.period_key, s.period), reverse=True)


def _fold(log: ProgressLog, keep: int, config: CompactionConfig) -> ProgressLog:
    folded = log.entries[keep:]
    return ProgressLog(
        status=copy.deepcopy(log.status),
        entries=copy.deepcopy(log.entries[:keep]),
        summaries=merge_summaries(summarize(folded, config), log.summaries, config),
    )


def compact(log: ProgressLog, config: CompactionConfig) -> ProgressLog:
    """Fold entries beyond the newest keep_recent_entries into period summaries.

    If the result is still longer than max_log_lines, more recent entries
    are folded (down to one), then the oldest summaries are dropped.
    A log with nothing to fold that already fits is returned unchanged.
    """
    return _compact(log, config)[0]


def _compact(log: ProgressLog, config: CompactionConfig) -> tuple[ProgressLog, int]:
    keep = config.keep_recent_entries
    if len(log.entries) <= keep and line_count(log) <= config.max_log_lines:
        return copy.deepcopy(log), 0

    result = _fold(log, keep, config)
    while line_count(result) > config.max_log_lines and keep > 1 and len(result.entries) > 1:
        keep = min(keep, len(result.entries)) - 1
        result = _fold(log, keep, config)

    dropped = 0
    while line_count(result) > config.max_log_lines and result.summaries:
        result.summaries.pop()
        dropped += 1
    if dropped:
        logger.warning(
            f"[COMPACT] Dropped {dropped} oldest period summaries to stay within "
            f"{config.max_log_lines} lines"
        )

    folded = len(log.entries) - len(result.entries)
    if folded:
        logger.info(
            f"[COMPACT] Folded {folded} entries into {len(result.summaries)} summaries "
            f"({len(result.entries)} recent entries kept)"
        )
    return result, dropped


def compact_file(path: Path, config: CompactionConfig, force: bool = False) -> CompactionResult:
    """Compact progress.md in place.

    Without force, only runs when the log exceeds max_log_lines or
    max_recent_entries. The replacement is written atomically.

    Raises:
        CompactionFailure: the document could not be parsed or written;
            the file is left untouched
    """
    if not path.exists():
        return CompactionResult(before_lines=0, after_lines=0)

    try:
        text = path.read_text()
        log = parse_progress(text)
    except (OSError, ProgressParseError) as e:
        logger.error(f"[COMPACT] Cannot parse {path}: {e}")
        raise CompactionFailure(f"Cannot parse {path}: {e}") from e

    before = len(text.splitlines())
    if not force and not needs_compaction(log, config):
        return CompactionResult(before_lines=before, after_lines=before)

    compacted, dropped = _compact(log, config)
    new_text = format_progress(compacted)
    result = CompactionResult(
        before_lines=before,
        after_lines=len(new_text.splitlines()),
        folded_entries=len(log.entries) - len(compacted.entries),
        dropped_summaries=dropped,
    )

    if new_text != text:
        try:
            atomic_write_text(path, new_text)
        except OSError as e:
            logger.error(f"[COMPACT] Cannot write {path}: {e}")
            raise CompactionFailure(f"Cannot write {path}: {e}") from e
        logger.info(f"[COMPACT] {path.name}: {result.before_lines} -> {result.after_lines} lines")
    return result

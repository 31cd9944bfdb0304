"""
progress.md parser and formatter.

The document has three sections:

    # Progress Log

    ## Current Status (Updated: 2026-01-29 14:30)
    - Phase: drafting
    - Active: ch03-review
    - Last Completed: ch03-draft
    - Blockers: None
    - Queue Health: 12 pending, 30 complete, 2 blocked; breaker healthy (0/3)

    ## Recent Activity

    ### 2026-01-29 14:30 - COMPLETED ch03-draft: Draft chapter 3
    - What: Wrote the first draft
    - Files: chapters/ch03.md, notes.md
    - Outcome: success
    - Next: Review chapter 3

    ## Compacted History

    ### Week of 2026-01-19
    - Completed: 14 tasks
    - Milestones:
      - ch02-draft: Draft chapter 2
    - Issues resolved:
      - Fixed broken cross references

Recent entries are newest first, summaries most recent period first.
Timestamps are minute resolution (PROGRESS_TIME_FORMAT). Parsing is strict
so that format_progress(parse_progress(text)) == text for any document this
module wrote; anything it cannot account for raises ProgressParseError.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from autoloop.lib.constants import PROGRESS_TIME_FORMAT

OUTCOMES = ("success", "partial", "blocked")

TITLE_LINE = "# Progress Log"
STATUS_HEADING = "## Current Status"
RECENT_HEADING = "## Recent Activity"
HISTORY_HEADING = "## Compacted History"

STATUS_RE = re.compile(r'^## Current Status \(Updated: (.+)\)$')
ENTRY_RE = re.compile(r'^###\s+(\d{4}-\d{2}-\d{2} \d{2}:\d{2})\s+-\s+(.+?)\s*$')
SUMMARY_RE = re.compile(r'^###\s+(Day|Week|Month) of\s+(\d{4}-\d{2}-\d{2})\s*$')
FIELD_RE = re.compile(r'^- ([A-Za-z][A-Za-z ]*):(?: (.*))?$')
ITEM_RE = re.compile(r'^  - (.+)$')
COMPLETED_RE = re.compile(r'^(\d+) tasks?$')

PERIOD_LABELS = {"day": "Day", "week": "Week", "month": "Month"}
LABEL_PERIODS = {v: k for k, v in PERIOD_LABELS.items()}

SUMMARY_LISTS = {
    "Milestones": "milestones",
    "Issues resolved": "issues",
    "Key decisions": "decisions",
}


class ProgressParseError(Exception):
    """progress.md does not follow the expected layout."""

    def __init__(self, lineno: int, message: str):
        self.lineno = lineno
        super().__init__(f"line {lineno}: {message}")


@dataclass
class CurrentStatus:
    updated: Optional[datetime] = None
    phase: str = ""
    active: str = ""
    last_completed: str = ""
    blockers: list[str] = field(default_factory=list)
    queue_health: str = ""


@dataclass
class ProgressEntry:
    """One iteration's record. Appended once, never edited."""
    timestamp: datetime
    title: str
    description: str
    outcome: str                                # one of OUTCOMES
    artifacts: list[str] = field(default_factory=list)
    next_hint: Optional[str] = None


@dataclass
class PeriodSummary:
    """Folded history for one day, week or month."""
    period_key: date                            # first day of the period
    completed: int = 0
    milestones: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    decisions: list[str] = field(default_factory=list)
    period: str = "week"


@dataclass
class ProgressLog:
    status: CurrentStatus = field(default_factory=CurrentStatus)
    entries: list[ProgressEntry] = field(default_factory=list)      # newest first
    summaries: list[PeriodSummary] = field(default_factory=list)    # most recent first


def one_line(text: str) -> str:
    """Collapse whitespace so free text fits on a single markdown line."""
    return " ".join(str(text).split())


def format_time(dt: Optional[datetime]) -> str:
    return dt.strftime(PROGRESS_TIME_FORMAT) if dt else "never"


def _parse_time(value: str, lineno: int) -> Optional[datetime]:
    if value == "never":
        return None
    try:
        return datetime.strptime(value, PROGRESS_TIME_FORMAT)
    except ValueError:
        raise ProgressParseError(lineno, f"Invalid timestamp '{value}'") from None


def _field(label: str, value: str) -> str:
    return f"- {label}: {value}".rstrip()


def format_entry(entry: ProgressEntry) -> list[str]:
    lines = [
        f"### {format_time(entry.timestamp)} - {entry.title}",
        _field("What", entry.description),
    ]
    if entry.artifacts:
        lines.append(_field("Files", ", ".join(entry.artifacts)))
    lines.append(_field("Outcome", entry.outcome))
    if entry.next_hint:
        lines.append(_field("Next", entry.next_hint))
    return lines


def format_summary(summary: PeriodSummary) -> list[str]:
    label = PERIOD_LABELS[summary.period]
    noun = "task" if summary.completed == 1 else "tasks"
    lines = [
        f"### {label} of {summary.period_key.isoformat()}",
        f"- Completed: {summary.completed} {noun}",
    ]
    for heading, attr in SUMMARY_LISTS.items():
        items = getattr(summary, attr)
        if items:
            lines.append(f"- {heading}:")
            lines.extend(f"  - {item}" for item in items)
    return lines


def format_progress(log: ProgressLog) -> str:
    """Render the full document."""
    status = log.status
    lines = [
        TITLE_LINE,
        "",
        f"{STATUS_HEADING} (Updated: {format_time(status.updated)})",
        _field("Phase", status.phase),
        _field("Active", status.active),
        _field("Last Completed", status.last_completed),
        _field("Blockers", ", ".join(status.blockers) if status.blockers else "None"),
        _field("Queue Health", status.queue_health),
        "",
        RECENT_HEADING,
        "",
    ]
    for entry in log.entries:
        lines.extend(format_entry(entry))
        lines.append("")

    lines.extend([HISTORY_HEADING, ""])
    for summary in log.summaries:
        lines.extend(format_summary(summary))
        lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"


def line_count(log: ProgressLog) -> int:
    """Lines in the rendered document."""
    return len(format_progress(log).splitlines())


def _parse_status_field(status: CurrentStatus, label: str, value: str, lineno: int) -> None:
    if label == "Phase":
        status.phase = value
    elif label == "Active":
        status.active = value
    elif label == "Last Completed":
        status.last_completed = value
    elif label == "Blockers":
        status.blockers = [] if value in ("", "None") else [b.strip() for b in value.split(",")]
    elif label == "Queue Health":
        status.queue_health = value
    else:
        raise ProgressParseError(lineno, f"Unknown status field '{label}'")


def _finish_entry(entry: Optional[dict], entries: list[ProgressEntry]) -> None:
    if entry is None:
        return
    if "description" not in entry or "outcome" not in entry:
        raise ProgressParseError(entry["lineno"], f"Entry '{entry['title']}' is missing What or Outcome")
    del entry["lineno"]
    entries.append(ProgressEntry(**entry))


def parse_progress(text: str) -> ProgressLog:
    """Parse a progress.md document.

    An empty document parses to an empty log.

    Raises:
        ProgressParseError: unexpected line, bad timestamp or outcome
    """
    log = ProgressLog()
    section = None
    entry: Optional[dict] = None
    summary: Optional[PeriodSummary] = None
    list_attr: Optional[str] = None

    for lineno, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue

        if line == TITLE_LINE and section is None:
            section = "title"
            continue

        if line.startswith("## "):
            _finish_entry(entry, log.entries)
            entry = None
            summary = None
            list_attr = None
            if line.startswith(STATUS_HEADING):
                match = STATUS_RE.match(line)
                if not match:
                    raise ProgressParseError(lineno, "Malformed Current Status heading")
                log.status.updated = _parse_time(match.group(1), lineno)
                section = "status"
            elif line.startswith(RECENT_HEADING):
                section = "recent"
            elif line.startswith(HISTORY_HEADING):
                section = "history"
            else:
                raise ProgressParseError(lineno, f"Unknown section '{line}'")
            continue

        if section == "status":
            match = FIELD_RE.match(line)
            if not match:
                raise ProgressParseError(lineno, f"Unexpected line in Current Status: '{line}'")
            _parse_status_field(log.status, match.group(1), match.group(2) or "", lineno)

        elif section == "recent":
            match = ENTRY_RE.match(line)
            if match:
                _finish_entry(entry, log.entries)
                entry = {
                    "timestamp": _parse_time(match.group(1), lineno),
                    "title": match.group(2),
                    "lineno": lineno,
                }
                continue
            match = FIELD_RE.match(line)
            if entry is None or not match:
                raise ProgressParseError(lineno, f"Unexpected line in Recent Activity: '{line}'")
            label, value = match.group(1), match.group(2) or ""
            if label == "What":
                entry["description"] = value
            elif label == "Files":
                entry["artifacts"] = [f.strip() for f in value.split(",") if f.strip()]
            elif label == "Outcome":
                if value not in OUTCOMES:
                    raise ProgressParseError(lineno, f"Invalid outcome '{value}'")
                entry["outcome"] = value
            elif label == "Next":
                entry["next_hint"] = value or None
            else:
                raise ProgressParseError(lineno, f"Unknown entry field '{label}'")

        elif section == "history":
            match = SUMMARY_RE.match(line)
            if match:
                try:
                    key = date.fromisoformat(match.group(2))
                except ValueError:
                    raise ProgressParseError(lineno, f"Invalid period date '{match.group(2)}'") from None
                summary = PeriodSummary(period_key=key, period=LABEL_PERIODS[match.group(1)])
                log.summaries.append(summary)
                list_attr = None
                continue
            if summary is None:
                raise ProgressParseError(lineno, f"Unexpected line in Compacted History: '{line}'")
            item = ITEM_RE.match(line)
            if item:
                if list_attr is None:
                    raise ProgressParseError(lineno, "List item outside a summary list")
                getattr(summary, list_attr).append(item.group(1))
                continue
            match = FIELD_RE.match(line)
            if not match:
                raise ProgressParseError(lineno, f"Unexpected line in Compacted History: '{line}'")
            label, value = match.group(1), match.group(2) or ""
            if label == "Completed":
                count = COMPLETED_RE.match(value)
                if not count:
                    raise ProgressParseError(lineno, f"Invalid completed count '{value}'")
                summary.completed = int(count.group(1))
                list_attr = None
            elif label in SUMMARY_LISTS and not value:
                list_attr = SUMMARY_LISTS[label]
            else:
                raise ProgressParseError(lineno, f"Unknown summary field '{label}'")

        else:
            raise ProgressParseError(lineno, f"Content outside any section: '{line}'")

    _finish_entry(entry, log.entries)
    return log


def insert_entry_text(text: str, entry: ProgressEntry) -> str:
    """Insert an entry block directly under the Recent Activity heading.

    Works on raw text, so an entry can still be recorded when the rest of
    the document does not parse. Appends a Recent Activity section if the
    document has none.
    """
    block = format_entry(entry) + [""]
    lines = text.splitlines()
    for i, line in enumerate(lines):
        if line.startswith(RECENT_HEADING):
            insert_at = i + 1
            if insert_at < len(lines) and not lines[insert_at].strip():
                insert_at += 1
            lines[insert_at:insert_at] = block
            return "\n".join(lines).rstrip("\n") + "\n"

    if lines and lines[-1].strip():
        lines.append("")
    lines.extend([RECENT_HEADING, ""] + block)
    return "\n".join(lines).rstrip("\n") + "\n"

"""Tests for autoloop.lib.compaction module."""

import pytest
from datetime import date, datetime, timedelta

from autoloop.lib.compaction import (
    CompactionFailure,
    compact,
    compact_file,
    merge_summaries,
    needs_compaction,
    period_start,
    summarize,
)
from autoloop.lib.config import CompactionConfig
from autoloop.lib.progress import (
    PeriodSummary,
    ProgressEntry,
    ProgressLog,
    format_progress,
    line_count,
    parse_progress,
)

BASE = datetime(2026, 1, 29, 12, 0)


def make_entries(count, step=timedelta(hours=12), start=BASE):
    """Entries newest first; every third one is partial."""
    entries = []
    for i in range(count):
        outcome = "partial" if i % 3 == 2 else "success"
        label = "PARTIAL" if outcome == "partial" else "COMPLETED"
        entries.append(ProgressEntry(
            timestamp=start - step * i,
            title=f"{label} T{i}: task {i}",
            description=f"Did thing {i}",
            outcome=outcome,
        ))
    return entries


class TestPeriodStart:
    """Tests for period_start() function."""

    def test_week_starts_monday(self):
        assert period_start(date(2026, 1, 29), "week") == date(2026, 1, 26)
        assert period_start(date(2026, 1, 26), "week") == date(2026, 1, 26)
        assert period_start(date(2026, 1, 25), "week") == date(2026, 1, 19)

    def test_day_and_month(self):
        assert period_start(date(2026, 1, 29), "day") == date(2026, 1, 29)
        assert period_start(date(2026, 1, 29), "month") == date(2026, 1, 1)

    def test_unknown_period(self):
        with pytest.raises(ValueError):
            period_start(date(2026, 1, 29), "year")


class TestSummarize:
    """Tests for summarize() function."""

    def test_groups_by_week(self):
        entries = [
            ProgressEntry(datetime(2026, 1, 26, 9, 0), "COMPLETED A: a", "x", "success"),
            ProgressEntry(datetime(2026, 1, 25, 9, 0), "COMPLETED B: b", "x", "success"),
        ]
        summaries = summarize(entries, CompactionConfig())
        assert [s.period_key for s in summaries] == [date(2026, 1, 26), date(2026, 1, 19)]

    def test_counts_only_successes(self):
        entries = [
            ProgressEntry(BASE, "COMPLETED A: a", "x", "success"),
            ProgressEntry(BASE, "PARTIAL B: b", "x", "partial"),
            ProgressEntry(BASE, "BLOCKED C: c", "x", "blocked"),
        ]
        assert summarize(entries, CompactionConfig())[0].completed == 1

    def test_highlights(self):
        entries = [
            ProgressEntry(BASE, "COMPLETED A: Draft chapter 1", "Fixed the index", "success"),
            ProgressEntry(BASE, "PARTIAL B: b", "We decided to drop appendix C", "partial"),
        ]
        summary = summarize(entries, CompactionConfig())[0]
        assert summary.milestones == ["A: Draft chapter 1"]
        assert summary.issues == ["Fixed the index"]
        assert summary.decisions == ["We decided to drop appendix C"]

    def test_caps_and_dedupes(self):
        entries = [ProgressEntry(BASE, f"COMPLETED T{i}: t", "Fix typo", "success") for i in range(8)]
        summary = summarize(entries, CompactionConfig())[0]
        assert len(summary.milestones) == 5
        assert summary.milestones[0] == "T0: t"
        assert summary.issues == ["Fix typo"]


class TestMergeSummaries:
    """Tests for merge_summaries() function."""

    def test_same_period_merges(self):
        config = CompactionConfig()
        older = [PeriodSummary(date(2026, 1, 19), completed=2, milestones=["old"])]
        newer = [PeriodSummary(date(2026, 1, 19), completed=3, milestones=["new", "old"])]
        merged = merge_summaries(newer, older, config)
        assert len(merged) == 1
        assert merged[0].completed == 5
        assert merged[0].milestones == ["new", "old"]

    def test_most_recent_first(self):
        config = CompactionConfig()
        older = [PeriodSummary(date(2026, 1, 5))]
        newer = [PeriodSummary(date(2026, 1, 26)), PeriodSummary(date(2026, 1, 12))]
        merged = merge_summaries(newer, older, config)
        assert [s.period_key for s in merged] == [date(2026, 1, 26), date(2026, 1, 12), date(2026, 1, 5)]

    def test_inputs_not_mutated(self):
        config = CompactionConfig()
        older = [PeriodSummary(date(2026, 1, 19), completed=2)]
        merge_summaries([PeriodSummary(date(2026, 1, 19), completed=3)], older, config)
        assert older[0].completed == 2


class TestCompact:
    """Tests for compact() function."""

    def test_keeps_recent_and_folds_rest(self):
        """30 entries with keep=10: newest 10 verbatim, 20 folded."""
        entries = make_entries(30)
        log = ProgressLog(entries=entries)
        config = CompactionConfig(keep_recent_entries=10)

        result = compact(log, config)

        assert result.entries == entries[:10]
        folded_successes = sum(1 for e in entries[10:] if e.outcome == "success")
        assert sum(s.completed for s in result.summaries) == folded_successes
        keys = [s.period_key for s in result.summaries]
        assert keys == sorted(keys, reverse=True)

    def test_input_not_mutated(self):
        log = ProgressLog(entries=make_entries(30))
        compact(log, CompactionConfig(keep_recent_entries=10))
        assert len(log.entries) == 30
        assert log.summaries == []

    def test_idempotent(self):
        config = CompactionConfig(keep_recent_entries=10)
        once = compact(ProgressLog(entries=make_entries(30)), config)
        twice = compact(once, config)
        assert format_progress(twice) == format_progress(once)

    def test_nothing_to_fold(self):
        log = ProgressLog(entries=make_entries(5))
        result = compact(log, CompactionConfig(keep_recent_entries=10))
        assert result == log

    def test_folds_more_to_fit_line_limit(self):
        entries = make_entries(30, step=timedelta(minutes=10))
        config = CompactionConfig(keep_recent_entries=10, max_log_lines=40)
        result = compact(ProgressLog(entries=entries), config)
        assert line_count(result) <= 40
        assert len(result.entries) == 4
        assert result.entries == entries[:4]

    def test_drops_oldest_summaries_last(self, caplog):
        summaries = [PeriodSummary(date(2026, 1, 26) - timedelta(weeks=i), completed=1) for i in range(10)]
        log = ProgressLog(entries=make_entries(1), summaries=summaries)
        config = CompactionConfig(keep_recent_entries=10, max_log_lines=30)

        result = compact(log, config)

        assert line_count(result) <= 30
        assert len(result.entries) == 1
        assert result.summaries == summaries[:4]
        assert "Dropped 6 oldest period summaries" in caplog.text


class TestNeedsCompaction:
    """Tests for needs_compaction() function."""

    def test_entry_limit(self):
        config = CompactionConfig(max_recent_entries=5)
        assert not needs_compaction(ProgressLog(entries=make_entries(5)), config)
        assert needs_compaction(ProgressLog(entries=make_entries(6)), config)

    def test_line_limit(self):
        config = CompactionConfig(max_log_lines=20)
        assert needs_compaction(ProgressLog(entries=make_entries(3)), config)


class TestCompactFile:
    """Tests for compact_file() function."""

    def test_missing_file(self, tmp_path):
        result = compact_file(tmp_path / "progress.md", CompactionConfig())
        assert not result.changed

    def test_under_limits_is_noop(self, tmp_path):
        path = tmp_path / "progress.md"
        text = format_progress(ProgressLog(entries=make_entries(20)))
        path.write_text(text)
        result = compact_file(path, CompactionConfig(keep_recent_entries=10))
        assert not result.changed
        assert path.read_text() == text

    def test_force(self, tmp_path):
        path = tmp_path / "progress.md"
        path.write_text(format_progress(ProgressLog(entries=make_entries(20))))
        result = compact_file(path, CompactionConfig(keep_recent_entries=10), force=True)
        assert result.folded_entries == 10
        assert result.after_lines < result.before_lines
        assert len(parse_progress(path.read_text()).entries) == 10

    def test_over_entry_limit(self, tmp_path):
        path = tmp_path / "progress.md"
        path.write_text(format_progress(ProgressLog(entries=make_entries(12))))
        config = CompactionConfig(keep_recent_entries=3, max_recent_entries=10)
        result = compact_file(path, config)
        assert result.changed
        assert len(parse_progress(path.read_text()).entries) == 3

    def test_unparseable_file_left_intact(self, tmp_path):
        path = tmp_path / "progress.md"
        text = "# Progress Log\n\n## Recent Activity\n\nnot an entry\n"
        path.write_text(text)
        with pytest.raises(CompactionFailure):
            compact_file(path, CompactionConfig(), force=True)
        assert path.read_text() == text
        assert list(tmp_path.iterdir()) == [path]

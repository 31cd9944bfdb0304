"""Tests for autoloop.lib.selector module."""

import pytest

from autoloop.lib.models import Backlog, Task
from autoloop.lib.selector import (
    blocking_chain,
    counts_by_status,
    counts_by_type,
    eligible,
    ranked,
    select_next,
)


class TestSelectNext:
    """Tests for select_next() function."""

    def test_highest_score_wins(self):
        backlog = Backlog([
            Task("A", "other", "a", score=100),
            Task("B", "other", "b", score=300),
            Task("C", "other", "c", score=200),
        ])
        assert select_next(backlog) == "B"

    def test_tie_broken_by_id(self):
        backlog = Backlog([
            Task("T2", "other", "b", score=100),
            Task("T1", "other", "a", score=100),
        ])
        assert select_next(backlog) == "T1"

    def test_skips_complete_blocked_and_in_progress(self):
        backlog = Backlog([
            Task("A", "other", "a", status="complete", score=900),
            Task("B", "other", "b", status="blocked", blocked_by={"D"}, score=800),
            Task("C", "other", "c", status="in-progress", score=700),
            Task("D", "other", "d", score=1),
        ])
        assert select_next(backlog) == "D"

    def test_pending_with_blockers_not_eligible(self):
        backlog = Backlog([
            Task("A", "other", "a", blocked_by={"B"}, score=900),
            Task("B", "other", "b", status="complete"),
        ])
        assert select_next(backlog) is None

    def test_empty_backlog(self):
        assert select_next(Backlog()) is None


class TestRanked:
    """Tests for eligible() and ranked()."""

    def test_order_and_limit(self):
        backlog = Backlog([
            Task("A", "other", "a", score=1),
            Task("B", "other", "b", score=3),
            Task("C", "other", "c", score=2),
        ])
        assert [t.id for t in eligible(backlog)] == ["B", "C", "A"]
        assert [t.id for t in ranked(backlog, 2)] == ["B", "C"]


class TestCounts:
    """Tests for counts_by_status() and counts_by_type()."""

    def test_all_keys_present(self):
        backlog = Backlog([
            Task("A", "fix", "a"),
            Task("B", "fix", "b", status="complete"),
            Task("C", "diagram", "c"),
        ])
        by_status = counts_by_status(backlog)
        assert by_status == {"pending": 2, "in-progress": 0, "blocked": 0, "complete": 1}
        by_type = counts_by_type(backlog)
        assert by_type["fix"] == 2
        assert by_type["diagram"] == 1
        assert by_type["review"] == 0


class TestBlockingChain:
    """Tests for blocking_chain() function."""

    def test_breadth_first_shallowest_depth(self):
        backlog = Backlog([
            Task("A", "other", "a", status="blocked", blocked_by={"B", "C"}),
            Task("B", "other", "b", status="blocked", blocked_by={"D"}),
            Task("C", "other", "c", status="blocked", blocked_by={"D"}),
            Task("D", "other", "d"),
        ])
        chain = blocking_chain(backlog, "A")
        assert [(link.task_id, link.depth) for link in chain] == [("B", 1), ("C", 1), ("D", 2)]
        assert chain[2].status == "pending"

    def test_not_blocked(self):
        backlog = Backlog([Task("A", "other", "a")])
        assert blocking_chain(backlog, "A") == []

    def test_missing_blocker_reported(self):
        backlog = Backlog([Task("A", "other", "a", status="blocked", blocked_by={"ghost"})])
        chain = blocking_chain(backlog, "A")
        assert chain[0].task_id == "ghost"
        assert chain[0].status is None

    def test_cycle_terminates(self):
        backlog = Backlog([
            Task("A", "other", "a", status="blocked", blocked_by={"B"}),
            Task("B", "other", "b", status="blocked", blocked_by={"A"}),
        ])
        assert [link.task_id for link in blocking_chain(backlog, "A")] == ["B"]

    def test_unknown_task(self):
        with pytest.raises(KeyError):
            blocking_chain(Backlog(), "nope")

"""Tests for autoloop.lib.dependencies module."""

import logging

import pytest

from autoloop.lib.dependencies import (
    DependencyError,
    add_blocker,
    check_graph,
    find_cycle,
    find_dangling,
    mark_blocked,
    resolve,
)
from autoloop.lib.models import Backlog, Task


class TestResolve:
    """Tests for resolve() function."""

    def test_completed_blocker_unblocks(self):
        """T3 waits on T1; once T1 completes, T3 becomes pending."""
        backlog = Backlog([
            Task("T1", "blocker", "t1", status="complete"),
            Task("T2", "other", "t2"),
            Task("T3", "other", "t3", status="blocked", blocked_by={"T1"}),
        ])
        _, unblocked = resolve(backlog)
        assert unblocked == ["T3"]
        assert backlog["T3"].status == "pending"
        assert backlog["T3"].blocked_by == set()

    def test_partial_unblock_keeps_blocked(self):
        backlog = Backlog([
            Task("A", "other", "a", status="complete"),
            Task("B", "other", "b"),
            Task("C", "other", "c", status="blocked", blocked_by={"A", "B"}),
        ])
        _, unblocked = resolve(backlog)
        assert unblocked == []
        assert backlog["C"].status == "blocked"
        assert backlog["C"].blocked_by == {"B"}

    def test_idempotent(self):
        backlog = Backlog([
            Task("A", "other", "a", status="complete"),
            Task("B", "other", "b", status="blocked", blocked_by={"A"}),
        ])
        resolve(backlog)
        before = [t.to_dict() for t in backlog]
        _, unblocked = resolve(backlog)
        assert unblocked == []
        assert [t.to_dict() for t in backlog] == before

    def test_complete_tasks_untouched(self):
        backlog = Backlog([
            Task("A", "other", "a", status="complete"),
            Task("B", "other", "b", status="complete", blocked_by={"A"}),
        ])
        resolve(backlog)
        assert backlog["B"].blocked_by == {"A"}

    def test_dangling_blocker_leaves_only_that_task(self, caplog):
        backlog = Backlog([
            Task("T1", "other", "t1", status="complete"),
            Task("T3", "other", "t3", status="blocked", blocked_by={"T1"}),
            Task("T5", "other", "t5", status="blocked", blocked_by={"T1", "ghost"}),
        ])
        with pytest.raises(DependencyError) as exc:
            resolve(backlog)
        assert exc.value.task_ids == ["T5"]
        assert exc.value.unblocked == ["T3"]
        assert backlog["T3"].status == "pending"
        assert backlog["T5"].status == "blocked"
        assert backlog["T5"].blocked_by == {"T1", "ghost"}
        assert "[DEPS] Unknown blocking ids: T5 -> ghost" in caplog.text

    def test_cycle_leaves_only_its_members(self):
        backlog = Backlog([
            Task("A", "other", "a", status="blocked", blocked_by={"B"}),
            Task("B", "other", "b", status="blocked", blocked_by={"A"}),
            Task("C", "other", "c", status="complete"),
            Task("D", "other", "d", status="blocked", blocked_by={"C"}),
        ])
        with pytest.raises(DependencyError) as exc:
            resolve(backlog)
        assert exc.value.task_ids == ["A", "B"]
        assert exc.value.unblocked == ["D"]
        assert backlog["D"].status == "pending"
        assert backlog["A"].blocked_by == {"B"}
        assert backlog["B"].status == "blocked"

    def test_every_cycle_reported(self):
        backlog = Backlog([
            Task("A", "other", "a", status="blocked", blocked_by={"B"}),
            Task("B", "other", "b", status="blocked", blocked_by={"A"}),
            Task("X", "other", "x", status="blocked", blocked_by={"X"}),
        ])
        with pytest.raises(DependencyError) as exc:
            resolve(backlog)
        assert exc.value.task_ids == ["A", "B", "X"]


class TestGraphChecks:
    """Tests for find_dangling(), find_cycle() and check_graph()."""

    def test_find_dangling(self):
        backlog = Backlog([Task("A", "other", "a", blocked_by={"Y", "X"})])
        assert find_dangling(backlog) == {"A": ["X", "Y"]}

    def test_find_cycle_path(self):
        backlog = Backlog([
            Task("A", "other", "a", blocked_by={"B"}),
            Task("B", "other", "b", blocked_by={"C"}),
            Task("C", "other", "c", blocked_by={"A"}),
        ])
        cycle = find_cycle(backlog)
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"A", "B", "C"}

    def test_self_cycle(self):
        backlog = Backlog([Task("A", "other", "a", blocked_by={"A"})])
        assert find_cycle(backlog) == ["A", "A"]

    def test_cycle_through_complete_task_ignored(self):
        backlog = Backlog([
            Task("A", "other", "a", status="complete", blocked_by={"B"}),
            Task("B", "other", "b", status="blocked", blocked_by={"A"}),
        ])
        assert find_cycle(backlog) is None
        check_graph(backlog)

    def test_diamond_is_not_a_cycle(self):
        backlog = Backlog([
            Task("A", "other", "a", blocked_by={"B", "C"}),
            Task("B", "other", "b", blocked_by={"D"}),
            Task("C", "other", "c", blocked_by={"D"}),
            Task("D", "other", "d"),
        ])
        assert find_cycle(backlog) is None


class TestMarkBlocked:
    """Tests for mark_blocked() function."""

    def test_pending_with_open_blocker(self):
        backlog = Backlog([
            Task("A", "other", "a"),
            Task("B", "other", "b", blocked_by={"A"}),
        ])
        assert mark_blocked(backlog) == ["B"]
        assert backlog["B"].status == "blocked"

    def test_pending_with_complete_blocker_stays_pending(self):
        backlog = Backlog([
            Task("A", "other", "a", status="complete"),
            Task("B", "other", "b", blocked_by={"A"}),
        ])
        assert mark_blocked(backlog) == []
        assert backlog["B"].status == "pending"


class TestAddBlocker:
    """Tests for add_blocker() function."""

    def test_pending_becomes_blocked(self):
        backlog = Backlog([Task("A", "other", "a"), Task("B", "other", "b")])
        add_blocker(backlog, "B", "A")
        assert backlog["B"].status == "blocked"
        assert backlog["B"].blocked_by == {"A"}

    def test_edge_closing_cycle_is_reverted(self):
        backlog = Backlog([
            Task("A", "other", "a"),
            Task("B", "other", "b", status="blocked", blocked_by={"A"}),
        ])
        with pytest.raises(DependencyError):
            add_blocker(backlog, "A", "B")
        assert backlog["A"].blocked_by == set()
        assert backlog["A"].status == "pending"

    def test_unknown_blocker(self):
        backlog = Backlog([Task("A", "other", "a")])
        with pytest.raises(DependencyError):
            add_blocker(backlog, "A", "missing")

    def test_complete_task_rejected(self):
        backlog = Backlog([Task("A", "other", "a", status="complete"), Task("B", "other", "b")])
        with pytest.raises(ValueError):
            add_blocker(backlog, "A", "B")

    def test_logs_transition(self, caplog):
        caplog.set_level(logging.INFO)
        backlog = Backlog([Task("A", "other", "a"), Task("B", "other", "b")])
        add_blocker(backlog, "B", "A")
        assert "[DEPS] B: pending -> blocked" in caplog.text

    def test_complete_blocker_not_attached(self):
        backlog = Backlog([Task("A", "other", "a", status="complete"), Task("B", "other", "b")])
        add_blocker(backlog, "B", "A")
        assert backlog["B"].blocked_by == set()
        assert backlog["B"].status == "pending"
        assert backlog["B"].is_eligible

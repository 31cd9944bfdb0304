"""
Dependency resolution for the backlog.

A task's `blocked_by` set names tasks that must complete first. The
resolver prunes completed blockers and moves tasks whose set empties from
blocked back to pending. A task whose blocker id names no task, or that
sits on a cycle among unfinished tasks, is left untouched and reported
with DependencyError once the rest of the backlog is resolved. Standalone
checks (check_graph, add_blocker) raise before anything changes.
"""

import logging

from autoloop.lib.models import BLOCKED, COMPLETE, PENDING, Backlog

logger = logging.getLogger(__name__)


class DependencyError(Exception):
    """The blocking graph references unknown tasks or contains a cycle."""

    def __init__(self, message: str, task_ids: list[str], unblocked: list[str] | None = None):
        self.task_ids = task_ids
        self.unblocked = unblocked or []
        super().__init__(f"{message}: {', '.join(task_ids)}")


def find_dangling(backlog: Backlog) -> dict[str, list[str]]:
    """Map task id -> blocker ids that name no task in the backlog."""
    dangling = {}
    for task in backlog:
        missing = sorted(b for b in task.blocked_by if b not in backlog)
        if missing:
            dangling[task.id] = missing
    return dangling


def find_cycle(backlog: Backlog, exclude: frozenset = frozenset()) -> list[str] | None:
    """Return one cycle among non-complete tasks as a list of ids, or None.

    Edges out of complete tasks are ignored: a finished task no longer
    waits on anything. Tasks in `exclude` are treated as absent.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {task.id: WHITE for task in backlog if task.id not in exclude}

    def edges(task_id: str) -> list[str]:
        task = backlog[task_id]
        if task.status == COMPLETE:
            return []
        return sorted(b for b in task.blocked_by if b in color and backlog[b].status != COMPLETE)

    for root in sorted(color):
        if color[root] != WHITE:
            continue
        # Iterative DFS; path mirrors the grey nodes on the stack
        path = [root]
        stack = [iter(edges(root))]
        color[root] = GREY
        while stack:
            advanced = False
            for nxt in stack[-1]:
                if color[nxt] == GREY:
                    return path[path.index(nxt):] + [nxt]
                if color[nxt] == WHITE:
                    color[nxt] = GREY
                    path.append(nxt)
                    stack.append(iter(edges(nxt)))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = BLACK
                stack.pop()
    return None


def find_cycles(backlog: Backlog) -> list[list[str]]:
    """Return disjoint cycles until none is left, each closed like find_cycle's."""
    cycles = []
    seen: set[str] = set()
    while True:
        cycle = find_cycle(backlog, frozenset(seen))
        if cycle is None:
            return cycles
        cycles.append(cycle)
        seen.update(cycle)


def check_graph(backlog: Backlog) -> None:
    """Validate the blocking graph.

    Raises:
        DependencyError: dangling blocker id or a cycle
    """
    dangling = find_dangling(backlog)
    if dangling:
        ids = sorted(dangling)
        details = "; ".join(f"{tid} -> {', '.join(dangling[tid])}" for tid in ids)
        logger.error(f"[DEPS] Unknown blocking ids: {details}")
        raise DependencyError("Blocked by unknown task ids", ids)

    cycle = find_cycle(backlog)
    if cycle:
        logger.error(f"[DEPS] Dependency cycle: {' -> '.join(cycle)}")
        raise DependencyError("Dependency cycle", cycle[:-1])


def resolve(backlog: Backlog) -> tuple[Backlog, list[str]]:
    """Prune completed blockers and unblock tasks whose blocking set empties.

    Tasks with a dangling blocker id or on a cycle are left exactly as they
    are; every other task is resolved. Idempotent: a second pass over the
    result reports nothing.

    Returns:
        (backlog, ids moved from blocked to pending, in backlog order)

    Raises:
        DependencyError: after the pass, naming the tasks that were left
            alone; `unblocked` on the error carries the ids that did move
    """
    dangling = find_dangling(backlog)
    cycles = find_cycles(backlog)
    broken = set(dangling)
    for cycle in cycles:
        broken.update(cycle)

    unblocked = []
    for task in backlog:
        if task.status not in (PENDING, BLOCKED) or task.id in broken:
            continue
        done = {b for b in task.blocked_by if backlog[b].status == COMPLETE}
        if done:
            task.blocked_by -= done
            logger.debug(f"[DEPS] {task.id}: cleared completed blockers {', '.join(sorted(done))}")
        if task.status == BLOCKED and not task.blocked_by:
            task.status = PENDING
            unblocked.append(task.id)
            logger.info(f"[DEPS] {task.id}: blocked -> pending")

    if dangling:
        details = "; ".join(f"{tid} -> {', '.join(dangling[tid])}" for tid in sorted(dangling))
        logger.error(f"[DEPS] Unknown blocking ids: {details}")
    for cycle in cycles:
        logger.error(f"[DEPS] Dependency cycle: {' -> '.join(cycle)}")
    if broken:
        if dangling and cycles:
            message = "Unknown blocking ids and dependency cycles"
        elif dangling:
            message = "Blocked by unknown task ids"
        else:
            message = "Dependency cycle"
        raise DependencyError(message, [t.id for t in backlog if t.id in broken], unblocked=unblocked)
    return backlog, unblocked


def mark_blocked(backlog: Backlog) -> list[str]:
    """Move pending tasks that still wait on unfinished work to blocked.

    Used after ingestion, where records may arrive as pending with a
    non-empty blocking set. Returns the ids moved.
    """
    moved = []
    for task in backlog:
        if task.status != PENDING:
            continue
        if any(backlog[b].status != COMPLETE for b in task.blocked_by if b in backlog):
            task.status = BLOCKED
            moved.append(task.id)
            logger.info(f"[DEPS] {task.id}: pending -> blocked")
    return moved


def add_blocker(backlog: Backlog, task_id: str, blocker_id: str) -> None:
    """Attach a blocker to a task; a pending task becomes blocked.

    A blocker that is already complete is not attached.

    Raises:
        KeyError: unknown task id
        DependencyError: unknown blocker or the edge would close a cycle
        ValueError: the task is complete or in progress
    """
    task = backlog[task_id]
    if task.status not in (PENDING, BLOCKED):
        raise ValueError(f"Cannot add a blocker to {task.status} task {task_id}")
    if blocker_id not in backlog:
        raise DependencyError("Blocked by unknown task ids", [task_id])
    if backlog[blocker_id].is_complete:
        logger.debug(f"[DEPS] {task_id}: {blocker_id} already complete, not attached")
        return

    task.blocked_by.add(blocker_id)
    try:
        check_graph(backlog)
    except DependencyError:
        task.blocked_by.discard(blocker_id)
        raise

    if task.status == PENDING:
        task.status = BLOCKED
        logger.info(f"[DEPS] {task_id}: pending -> blocked (by {blocker_id})")

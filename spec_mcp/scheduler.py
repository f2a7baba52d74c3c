"""Scheduling decisions over a task graph snapshot.

Every function here is pure: it reads the graph and returns new values, so a
snapshot taken with :meth:`TaskGraph.copy` can be scheduled from any number of
threads. Results always follow the insertion order of the tasks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .errors import Unverifiable
from .graph import TaskGraph
from .models import TaskStatus
from .spec_logging import log_performance


@dataclass(frozen=True)
class ContentionPair:
    """Two ready tasks that are together the last blockers of ``gates``."""

    first: str
    second: str
    gates: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"tasks": [self.first, self.second], "gates": list(self.gates)}


@dataclass(frozen=True)
class BlockedTask:
    task_id: str
    blockers: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"task_id": self.task_id, "blocked_by": list(self.blockers)}


# ----------------------------------------------------------------------
# Ready set and grouping
# ----------------------------------------------------------------------


def ready_tasks(graph: TaskGraph) -> List[str]:
    """Not Started tasks whose dependencies are all Done."""
    statuses = graph.statuses()
    return [
        task.task_id
        for task in graph.all_tasks()
        if task.status is TaskStatus.NOT_STARTED
        and all(statuses[dep] is TaskStatus.DONE for dep in task.dependencies)
    ]


def parallel_groups(graph: TaskGraph) -> List[List[str]]:
    """Groups of tasks that may be executed concurrently right now.

    Ready tasks never depend on one another, so the whole ready set forms a
    single group.
    """
    ready = ready_tasks(graph)
    return [ready] if ready else []


def contention_pairs(graph: TaskGraph) -> List[ContentionPair]:
    """Pairs of ready tasks that are the only two blockers left on a common dependent.

    A dependent still waiting on three or more tasks does not produce a pair.
    """
    ready = set(ready_tasks(graph))
    statuses = graph.statuses()
    gates: Dict[Tuple[str, str], List[str]] = {}

    for task in graph.all_tasks():
        if task.is_done:
            continue
        remaining = [dep for dep in task.dependencies if statuses[dep] is not TaskStatus.DONE]
        if len(remaining) != 2 or not all(dep in ready for dep in remaining):
            continue
        first, second = sorted(remaining, key=graph.index_of)
        gates.setdefault((first, second), []).append(task.task_id)

    pairs = [ContentionPair(first, second, tuple(dependents)) for (first, second), dependents in gates.items()]
    pairs.sort(key=lambda pair: (graph.index_of(pair.first), graph.index_of(pair.second)))
    return pairs


def blocked_tasks(graph: TaskGraph) -> List[BlockedTask]:
    """Not Started tasks waiting on at least one dependency."""
    statuses = graph.statuses()
    blocked = []
    for task in graph.all_tasks():
        if task.status is not TaskStatus.NOT_STARTED:
            continue
        blockers = tuple(dep for dep in task.dependencies if statuses[dep] is not TaskStatus.DONE)
        if blockers:
            blocked.append(BlockedTask(task.task_id, blockers))
    return blocked


def execution_waves(graph: TaskGraph) -> List[List[str]]:
    """Layer the unfinished tasks so each wave only waits on earlier waves.

    Wave 0 holds the tasks with no unfinished dependency (ready or already
    In Progress); wave ``n`` holds tasks whose deepest unfinished dependency
    sits in wave ``n - 1``.
    """
    levels: Dict[str, int] = {}
    for task_id in graph.topological_order():
        task = graph.task(task_id)
        if task.is_done:
            continue
        pending = [levels[dep] for dep in task.dependencies if dep in levels]
        levels[task_id] = max(pending) + 1 if pending else 0

    waves: List[List[str]] = [[] for _ in range(max(levels.values()) + 1)] if levels else []
    for task in graph.all_tasks():
        if task.task_id in levels:
            waves[levels[task.task_id]].append(task.task_id)
    return waves


# ----------------------------------------------------------------------
# Critical path
# ----------------------------------------------------------------------


def critical_path(graph: TaskGraph, *, remaining: bool = False) -> List[str]:
    """Longest dependency chain by number of tasks.

    Computed by dynamic programming over the topological order. Among chains
    of equal length the one whose first task was inserted earliest wins, then
    the one whose last task was inserted earliest.

    Args:
        remaining: Only consider tasks that are not Done, and only the edges
            between them.
    """
    # best[task] = (length, source index, chain)
    best: Dict[str, Tuple[int, int, List[str]]] = {}
    for task_id in graph.topological_order():
        task = graph.task(task_id)
        if remaining and task.is_done:
            continue
        candidate: Optional[Tuple[int, int, List[str]]] = None
        for dep in sorted(task.dependencies, key=graph.index_of):
            if dep not in best:
                continue
            length, source, chain = best[dep]
            if candidate is None or length > candidate[0] or (
                length == candidate[0] and source < candidate[1]
            ):
                candidate = (length, source, chain)
        if candidate is None:
            best[task_id] = (1, graph.index_of(task_id), [task_id])
        else:
            best[task_id] = (candidate[0] + 1, candidate[1], candidate[2] + [task_id])

    if not best:
        return []
    _, _, chain = min(
        best.values(),
        key=lambda entry: (-entry[0], entry[1], graph.index_of(entry[2][-1])),
    )
    return list(chain)


# ----------------------------------------------------------------------
# Report
# ----------------------------------------------------------------------


@dataclass
class ScheduleReport:
    """Everything an orchestrator needs to dispatch the next round of work."""

    project_id: Optional[str]
    total: int
    ready: List[str] = field(default_factory=list)
    parallel_groups: List[List[str]] = field(default_factory=list)
    contention: List[ContentionPair] = field(default_factory=list)
    blocked: List[BlockedTask] = field(default_factory=list)
    in_progress: List[str] = field(default_factory=list)
    done: List[str] = field(default_factory=list)
    waves: List[List[str]] = field(default_factory=list)
    critical_path: List[str] = field(default_factory=list)
    remaining_critical_path: List[str] = field(default_factory=list)
    verification: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return self.total > 0 and len(self.done) == self.total

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "project_id": self.project_id,
            "total_tasks": self.total,
            "ready": list(self.ready),
            "parallel_groups": [list(group) for group in self.parallel_groups],
            "contention": [pair.to_dict() for pair in self.contention],
            "blocked": [entry.to_dict() for entry in self.blocked],
            "in_progress": list(self.in_progress),
            "done": list(self.done),
            "waves": [list(wave) for wave in self.waves],
            "critical_path": list(self.critical_path),
            "critical_path_length": len(self.critical_path),
            "remaining_critical_path": list(self.remaining_critical_path),
            "verification": dict(self.verification),
            "complete": self.complete,
        }


def verification_entry(graph: TaskGraph, task_id: str, location: Optional[str] = None) -> Dict[str, Any]:
    """Verification result for one task, with Unverifiable reported as such."""
    try:
        return graph.verify(task_id).to_dict(location)
    except Unverifiable as e:
        return {
            "task_id": e.task_id,
            "decision": "UNVERIFIABLE",
            "reason": e.reason,
            "quoted_lines": [],
        }


@log_performance("build_schedule")
def build_schedule(graph: TaskGraph, location: Optional[str] = None) -> ScheduleReport:
    """Compute the full scheduling report for a graph snapshot.

    Args:
        graph: The graph to schedule. It is not modified.
        location: Path-like label of the tasks document, used to quote
            checklist lines as ``location:line``.
    """
    return ScheduleReport(
        project_id=graph.project_id,
        total=len(graph),
        ready=ready_tasks(graph),
        parallel_groups=parallel_groups(graph),
        contention=contention_pairs(graph),
        blocked=blocked_tasks(graph),
        in_progress=[t.task_id for t in graph.all_tasks() if t.status is TaskStatus.IN_PROGRESS],
        done=[t.task_id for t in graph.all_tasks() if t.is_done],
        waves=execution_waves(graph),
        critical_path=critical_path(graph),
        remaining_critical_path=critical_path(graph, remaining=True),
        verification={
            task_id: verification_entry(graph, task_id, location) for task_id in graph.task_ids()
        },
    )

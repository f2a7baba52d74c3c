"""In-memory dependency graph over the tasks of one project.

The graph is validated on construction (unique ids, known dependencies, known
requirement links, no cycles) and keeps the derived ``dependents`` of every
task equal to the inverse of the declared ``dependencies`` after each edit.

Mutations never raise for expected refusals. They return a
:class:`MutationResult` that carries the previous task state and the
rejection, so callers can report why a change was refused. Tasks themselves
are immutable, which makes :meth:`TaskGraph.copy` a cheap snapshot that the
scheduler can read from any thread.
"""

from __future__ import annotations

import heapq
import logging
import re
from dataclasses import dataclass, replace
from typing import (
    Any,
    Collection,
    Dict,
    Iterable,
    KeysView,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    ValuesView,
)

from .checklist import Verification, verify_task
from .errors import (
    CyclicDependency,
    DependentsActive,
    DuplicateTask,
    IllegalTransition,
    InconsistentStatus,
    TaskNotFound,
    TransitionRejected,
    UnknownDependency,
    UnknownRequirement,
    Unverifiable,
    UnmetDependency,
)
from .models import Criterion, Task, TaskStatus, TransitionRecord
from .spec_logging import ObservabilityHooks, log_reset, log_transition
from .status import check_transition, transition_path, unmet_dependencies

logger = logging.getLogger("spec_mcp.graph")

TASK_ID_PATTERN = re.compile(r"\b[A-Za-z]+-\d+(?:\.\d+)*\b")


def normalize_task_id(value: str) -> str:
    return value.strip().upper()


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for value in values:
        seen.setdefault(normalize_task_id(value), None)
    return tuple(seen)


def find_cycle(edges: Mapping[str, Sequence[str]]) -> Optional[List[str]]:
    """Return the first cycle found following ``edges``, or ``None``.

    The cycle is reported closed, e.g. ``["T-1", "T-2", "T-1"]``. Nodes are
    visited in mapping order so the result is deterministic.
    """
    # 0 = unvisited, 1 = on the current path, 2 = finished
    state = {node: 0 for node in edges}
    for root in edges:
        if state[root]:
            continue
        path = [root]
        state[root] = 1
        stack = [iter(edges[root])]
        while stack:
            for neighbor in stack[-1]:
                if neighbor not in state:
                    continue
                if state[neighbor] == 1:
                    return path[path.index(neighbor):] + [neighbor]
                if state[neighbor] == 0:
                    state[neighbor] = 1
                    path.append(neighbor)
                    stack.append(iter(edges[neighbor]))
                    break
            else:
                state[path.pop()] = 2
                stack.pop()
    return None


@dataclass(frozen=True)
class MutationResult:
    """Outcome of a guarded graph edit."""

    task_id: str
    action: str
    accepted: bool
    previous: Task
    current: Task
    error: Optional[TransitionRejected] = None
    records: Tuple[TransitionRecord, ...] = ()

    @property
    def affected(self) -> Tuple[str, ...]:
        ids = [record.task_id for record in self.records]
        return tuple(dict.fromkeys(ids))

    def raise_for_rejection(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        data: Dict[str, Any] = {
            "task_id": self.task_id,
            "action": self.action,
            "accepted": self.accepted,
            "previous_status": self.previous.status.value,
            "status": self.current.status.value,
            "task": self.current.to_dict(),
            "transitions": [record.to_dict() for record in self.records],
        }
        if self.error is not None:
            data.update(self.error.to_dict())
        return data


class TaskGraph:
    """Dependency graph of tasks for one project.

    Args:
        tasks: Tasks in document order. Insertion order is preserved and is
            the tie-break for every ordering the scheduler produces.
        known_requirements: When given, every requirement link must be one of
            these ids.
        unverifiable: Task ids whose checklist could not be located
            unambiguously in the source document, mapped to the reason.
        hooks: Receives ``task_transition`` and ``task_reset`` events.
        project_id: Included in logged events.

    Raises:
        DuplicateTask, UnknownDependency, UnknownRequirement, CyclicDependency,
        InconsistentStatus
    """

    def __init__(
        self,
        tasks: Iterable[Task] = (),
        *,
        known_requirements: Optional[Collection[str]] = None,
        unverifiable: Optional[Mapping[str, str]] = None,
        hooks: Optional[ObservabilityHooks] = None,
        project_id: Optional[str] = None,
    ):
        self._tasks: Dict[str, Task] = {}
        for task in tasks:
            task_id = normalize_task_id(task.task_id)
            if task_id in self._tasks:
                raise DuplicateTask(task_id)
            self._tasks[task_id] = replace(
                task,
                task_id=task_id,
                dependencies=_dedupe(task.dependencies),
                dependents=(),
            )

        for task in self._tasks.values():
            missing = [dep for dep in task.dependencies if dep not in self._tasks]
            if missing:
                raise UnknownDependency(task.task_id, missing)

        if known_requirements is not None:
            known = set(known_requirements)
            for task in self._tasks.values():
                missing = [req for req in task.requirements if req not in known]
                if missing:
                    raise UnknownRequirement(task.task_id, missing)

        cycle = find_cycle({task_id: task.dependencies for task_id, task in self._tasks.items()})
        if cycle:
            raise CyclicDependency(cycle)

        self._unverifiable: Dict[str, str] = {
            normalize_task_id(task_id): reason for task_id, reason in (unverifiable or {}).items()
        }
        self._check_done_tasks()

        self._reindex()
        self._history: List[TransitionRecord] = []
        self.hooks = hooks
        self.project_id = project_id

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return isinstance(task_id, str) and normalize_task_id(task_id) in self._tasks

    def task(self, task_id: str) -> Task:
        """Return a task by id.

        Raises:
            TaskNotFound: if the id is not in the graph.
        """
        try:
            return self._tasks[normalize_task_id(task_id)]
        except KeyError:
            raise TaskNotFound(task_id) from None

    def task_ids(self) -> KeysView[str]:
        return self._tasks.keys()

    def all_tasks(self) -> ValuesView[Task]:
        """Lazy, restartable view of all tasks in insertion order."""
        return self._tasks.values()

    def dependencies_of(self, task_id: str) -> Tuple[str, ...]:
        return self.task(task_id).dependencies

    def dependents_of(self, task_id: str) -> Tuple[str, ...]:
        return self.task(task_id).dependents

    def statuses(self) -> Dict[str, TaskStatus]:
        return {task_id: task.status for task_id, task in self._tasks.items()}

    def index_of(self, task_id: str) -> int:
        return self._index[normalize_task_id(task_id)]

    def topological_order(self) -> List[str]:
        """Dependencies before dependents; ties broken by insertion order."""
        return list(self._order)

    def unverifiable_reason(self, task_id: str) -> Optional[str]:
        return self._unverifiable.get(normalize_task_id(task_id))

    @property
    def history(self) -> List[TransitionRecord]:
        """Audit records produced by this graph instance, oldest first."""
        return list(self._history)

    def verify(self, task_id: str) -> Verification:
        """Run the checklist verifier for one task.

        Raises:
            Unverifiable: if the task's checklist could not be located.
        """
        task = self.task(task_id)
        reason = self._unverifiable.get(task.task_id)
        if reason:
            raise Unverifiable(task.task_id, reason)
        return verify_task(task)

    def copy(self) -> "TaskGraph":
        """Snapshot sharing the immutable task values, without hooks."""
        clone = TaskGraph.__new__(TaskGraph)
        clone._tasks = dict(self._tasks)
        clone._index = dict(self._index)
        clone._order = list(self._order)
        clone._unverifiable = dict(self._unverifiable)
        clone._history = list(self._history)
        clone.hooks = None
        clone.project_id = self.project_id
        return clone

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "project_id": self.project_id,
            "tasks": [task.to_dict() for task in self._tasks.values()],
        }

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def set_status(self, task_id: str, target: "TaskStatus | str") -> MutationResult:
        """Move a task forward, enforcing the state machine and Done gates.

        Raises:
            TaskNotFound: unknown task.
            Unverifiable: Done was requested for a task whose checklist could
                not be located.
        """
        task = self.task(task_id)
        target = TaskStatus.parse(target)
        if target is TaskStatus.DONE and task.status is not TaskStatus.DONE:
            reason = self._unverifiable.get(task.task_id)
            if reason:
                raise Unverifiable(task.task_id, reason)

        rejection = check_transition(task, target, self.statuses())
        if rejection is not None:
            logger.info(f"Rejected {task.task_id} -> {target.label}: {rejection}")
            return MutationResult(task.task_id, "status", False, task, task, rejection)

        records = []
        current = task
        for step in transition_path(task.task_id, task.status, target):
            records.append(TransitionRecord(task.task_id, current.status, step))
            current = replace(current, status=step)
        self._tasks[task.task_id] = current
        self._history.extend(records)
        for record in records:
            log_transition(record, self.hooks, self.project_id)
        return MutationResult(task.task_id, "status", True, task, current, None, tuple(records))

    def reset(self, task_id: str, *, cascade: bool = False) -> MutationResult:
        """Administrative return to Not Started.

        Started (In Progress or Done) downstream tasks block the reset unless
        ``cascade`` is set, in which case they are reset as well.
        """
        task = self.task(task_id)
        downstream = self._downstream(task.task_id)
        started = [
            dependent for dependent in downstream
            if self._tasks[dependent].status is not TaskStatus.NOT_STARTED
        ]

        if started and not cascade:
            rejection = DependentsActive(task.task_id, started)
            logger.info(f"Rejected reset of {task.task_id}: {rejection}")
            return MutationResult(task.task_id, "reset", False, task, task, rejection)

        targets = started if task.status is TaskStatus.NOT_STARTED else [task.task_id] + started
        if not targets:
            rejection = IllegalTransition(
                task.task_id,
                task.status.label,
                TaskStatus.NOT_STARTED.label,
                "task is already Not Started",
            )
            return MutationResult(task.task_id, "reset", False, task, task, rejection)

        records = []
        for target_id in targets:
            target = self._tasks[target_id]
            records.append(
                TransitionRecord(target_id, target.status, TaskStatus.NOT_STARTED, kind="reset")
            )
            self._tasks[target_id] = replace(target, status=TaskStatus.NOT_STARTED)
        self._history.extend(records)
        for record in records:
            log_reset(record, self.hooks, self.project_id)
        return MutationResult(
            task.task_id, "reset", True, task, self._tasks[task.task_id], None, tuple(records)
        )

    # ------------------------------------------------------------------
    # Checklist edits
    # ------------------------------------------------------------------

    def toggle_criterion(
        self,
        task_id: str,
        index: int,
        checked: Optional[bool] = None,
    ) -> MutationResult:
        """Set or flip the checked flag of criterion ``index`` (0-based).

        Raises:
            TaskNotFound: unknown task.
            IndexError: no criterion at ``index``.
        """
        task = self.task(task_id)
        if not 0 <= index < len(task.criteria):
            raise IndexError(
                f"Task '{task.task_id}' has {len(task.criteria)} criteria; no criterion #{index + 1}"
            )
        criterion = task.criteria[index]
        value = (not criterion.checked) if checked is None else bool(checked)

        if task.is_done and not value:
            rejection = IllegalTransition(
                task.task_id,
                task.status.label,
                "unchecked criterion",
                "criteria of a Done task are frozen; reset the task first",
            )
            return MutationResult(task.task_id, "criterion", False, task, task, rejection)

        if value == criterion.checked:
            return MutationResult(task.task_id, "criterion", True, task, task)

        criteria = list(task.criteria)
        criteria[index] = criterion.with_checked(value)
        current = replace(task, criteria=tuple(criteria))
        self._tasks[task.task_id] = current
        logger.debug(f"Criterion #{index + 1} of {task.task_id} set to {value}")
        return MutationResult(task.task_id, "criterion", True, task, current)

    def add_criterion(self, task_id: str, text: str) -> MutationResult:
        """Append a new unchecked criterion to a task that is not Done."""
        task = self.task(task_id)
        text = text.strip()
        if not text:
            raise ValueError("Criterion text cannot be empty")
        if task.is_done:
            rejection = IllegalTransition(
                task.task_id,
                task.status.label,
                "new criterion",
                "criteria of a Done task are frozen; reset the task first",
            )
            return MutationResult(task.task_id, "criterion", False, task, task, rejection)

        current = replace(task, criteria=task.criteria + (Criterion(text),))
        self._tasks[task.task_id] = current
        return MutationResult(task.task_id, "criterion", True, task, current)

    # ------------------------------------------------------------------
    # Dependency edits
    # ------------------------------------------------------------------

    def set_dependencies(self, task_id: str, dependencies: Iterable[str]) -> MutationResult:
        """Replace the "blocked by" list of a task and recompute dependents.

        Raises:
            TaskNotFound: unknown task.
            UnknownDependency: a listed dependency does not exist.
            CyclicDependency: the new edges would close a cycle.
        """
        task = self.task(task_id)
        deps = _dedupe(dependencies)
        missing = [dep for dep in deps if dep not in self._tasks]
        if missing:
            raise UnknownDependency(task.task_id, missing)

        edges = {tid: t.dependencies for tid, t in self._tasks.items()}
        edges[task.task_id] = deps
        cycle = find_cycle(edges)
        if cycle:
            raise CyclicDependency(cycle)

        if task.is_done:
            unmet = [dep for dep in deps if not self._tasks[dep].is_done]
            if unmet:
                rejection = UnmetDependency(task.task_id, unmet)
                return MutationResult(task.task_id, "dependencies", False, task, task, rejection)

        self._tasks[task.task_id] = replace(task, dependencies=deps)
        self._reindex()
        current = self._tasks[task.task_id]
        logger.info(f"Dependencies of {task.task_id} set to {list(deps) or 'none'}")
        return MutationResult(task.task_id, "dependencies", True, task, current)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_done_tasks(self) -> None:
        """Apply the Done gates to tasks that arrive already Done.

        Dependencies are checked before the checklist, as in
        :func:`check_transition`.
        """
        statuses = self.statuses()
        for task in self._tasks.values():
            if task.status is not TaskStatus.DONE:
                continue
            unmet = unmet_dependencies(task, statuses)
            if unmet:
                raise InconsistentStatus(
                    task.task_id, "dependencies", f"blocked by unfinished task(s): {', '.join(unmet)}"
                )
            reason = self._unverifiable.get(task.task_id)
            if reason:
                raise InconsistentStatus(task.task_id, "checklist", reason)
            verification = verify_task(task)
            if not verification.passed:
                raise InconsistentStatus(task.task_id, "checklist", verification.reason_text)

    def _reindex(self) -> None:
        """Recompute dependents, insertion indexes and topological order."""
        dependents: Dict[str, List[str]] = {task_id: [] for task_id in self._tasks}
        for task_id, task in self._tasks.items():
            for dep in task.dependencies:
                dependents[dep].append(task_id)
        for task_id, task in self._tasks.items():
            derived = tuple(dependents[task_id])
            if task.dependents != derived:
                self._tasks[task_id] = replace(task, dependents=derived)

        self._index = {task_id: position for position, task_id in enumerate(self._tasks)}

        remaining = {task_id: len(task.dependencies) for task_id, task in self._tasks.items()}
        heap = [self._index[task_id] for task_id, count in remaining.items() if count == 0]
        heapq.heapify(heap)
        ids = list(self._tasks)
        order: List[str] = []
        while heap:
            task_id = ids[heapq.heappop(heap)]
            order.append(task_id)
            for dependent in dependents[task_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, self._index[dependent])
        self._order = order

    def _downstream(self, task_id: str) -> List[str]:
        """Transitive dependents of ``task_id`` in topological order."""
        reached = set()
        frontier = list(self._tasks[task_id].dependents)
        while frontier:
            current = frontier.pop()
            if current in reached:
                continue
            reached.add(current)
            frontier.extend(self._tasks[current].dependents)
        return [tid for tid in self._order if tid in reached]

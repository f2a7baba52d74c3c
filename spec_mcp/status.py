"""Status state machine for tasks.

Forward transitions only::

    NotStarted -> InProgress -> Done

Returning to NotStarted is an administrative reset handled by the graph, not
a transition. A request for NotStarted -> Done is planned as the two forward
steps, and both Done gates are checked before either step is applied.
"""

from __future__ import annotations

from typing import List, Mapping, Optional

from .checklist import verify_task
from .errors import IllegalTransition, TransitionRejected, UnmetDependency
from .models import Task, TaskStatus

_FORWARD = {
    TaskStatus.NOT_STARTED: TaskStatus.IN_PROGRESS,
    TaskStatus.IN_PROGRESS: TaskStatus.DONE,
}

_ORDER = {
    TaskStatus.NOT_STARTED: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.DONE: 2,
}


def next_status(status: TaskStatus) -> Optional[TaskStatus]:
    """Return the single legal forward step from ``status``, if any."""
    return _FORWARD.get(status)


def transition_path(task_id: str, current: TaskStatus, target: TaskStatus) -> List[TaskStatus]:
    """Return the forward steps that lead from ``current`` to ``target``.

    Raises:
        IllegalTransition: for same-state, backward or reset-style requests.
    """
    if target is current:
        raise IllegalTransition(task_id, current.label, target.label, f"task is already {current.label}")
    if target is TaskStatus.NOT_STARTED or _ORDER[target] < _ORDER[current]:
        raise IllegalTransition(
            task_id,
            current.label,
            target.label,
            "status only moves forward; use reset to reopen a task",
        )

    steps: List[TaskStatus] = []
    status = current
    while status is not target:
        status = _FORWARD[status]
        steps.append(status)
    return steps


def unmet_dependencies(task: Task, statuses: Mapping[str, TaskStatus]) -> List[str]:
    """Dependencies of ``task`` that are not Done, in declaration order."""
    return [dep for dep in task.dependencies if statuses.get(dep) is not TaskStatus.DONE]


def check_transition(
    task: Task,
    target: TaskStatus,
    statuses: Mapping[str, TaskStatus],
) -> Optional[TransitionRejected]:
    """Validate a status change without applying it.

    Args:
        task: The task as currently stored.
        target: Requested status.
        statuses: Current status of every task in the graph, by id.

    Returns:
        ``None`` when the change is allowed, otherwise the rejection.
    """
    try:
        steps = transition_path(task.task_id, task.status, target)
    except IllegalTransition as rejection:
        return rejection

    if TaskStatus.DONE in steps:
        unmet = unmet_dependencies(task, statuses)
        if unmet:
            return UnmetDependency(task.task_id, unmet)
        verification = verify_task(task)
        if not verification.passed:
            return verification.to_rejection()
    return None

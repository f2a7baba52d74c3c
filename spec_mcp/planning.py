"""Bulk task creation from a plan's numbered requirements."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .graph import TaskGraph, normalize_task_id
from .models import Criterion, Evidence, Requirement, Task
from .spec_logging import ObservabilityHooks, log_operation

logger = logging.getLogger("spec_mcp.planning")


@dataclass(frozen=True)
class TaskDraft:
    """Caller-supplied outline of one task to create."""

    title: str
    criteria: Tuple[str, ...] = ()
    blocked_by: Tuple[str, ...] = ()
    requirements: Tuple[str, ...] = ()
    evidence: Optional[Evidence] = None
    task_id: Optional[str] = None
    summary: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TaskDraft":
        """Create from dictionary representation."""
        title = str(data.get("title", "")).strip()
        if not title:
            raise ValueError("Every task draft needs a title")
        evidence = data.get("evidence")
        return cls(
            title=title,
            criteria=tuple(str(item).strip() for item in data.get("criteria", []) if str(item).strip()),
            blocked_by=tuple(data.get("blocked_by", [])),
            requirements=tuple(str(item).strip().upper() for item in data.get("requirements", [])),
            evidence=Evidence(str(evidence).strip("[]").upper()) if evidence else None,
            task_id=data.get("task_id") or None,
            summary=data.get("summary") or None,
        )


@dataclass
class PlanDecomposition:
    graph: TaskGraph
    summaries: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "tasks": [task.to_dict() for task in self.graph.all_tasks()],
            "order": self.graph.topological_order(),
        }


def _criteria_for(draft: TaskDraft, by_id: Mapping[str, Requirement]) -> Tuple[Criterion, ...]:
    if draft.criteria:
        return tuple(Criterion(text) for text in draft.criteria)
    inherited: List[str] = []
    for requirement_id in draft.requirements:
        requirement = by_id.get(requirement_id)
        if requirement:
            inherited.extend(requirement.acceptance_criteria)
    return tuple(Criterion(text) for text in dict.fromkeys(inherited))


def decompose_plan(
    requirements: Sequence[Requirement],
    drafts: Optional[Iterable[TaskDraft]] = None,
    *,
    hooks: Optional[ObservabilityHooks] = None,
    project_id: Optional[str] = None,
) -> PlanDecomposition:
    """Create the task graph for a plan.

    Without drafts every requirement becomes one task carrying the
    requirement's acceptance criteria, unchecked. With drafts, ids ``T-n`` are
    assigned where missing and drafts without criteria inherit the criteria of
    the requirements they trace to.

    Raises:
        ValueError: no requirements and no drafts.
        GraphConstructionError: the drafts do not form a valid graph.
    """
    by_id = {requirement.requirement_id: requirement for requirement in requirements}
    if drafts is None:
        drafts = [
            TaskDraft(
                title=requirement.title or requirement.requirement_id,
                criteria=requirement.acceptance_criteria,
                requirements=(requirement.requirement_id,),
                evidence=Evidence.NEEDED,
                summary=requirement.description or None,
            )
            for requirement in requirements
        ]
    drafts = list(drafts)
    if not drafts:
        raise ValueError("The plan has no numbered requirements (### R-1: ...) to decompose")

    with log_operation("decompose_plan", project_id=project_id, drafts=len(drafts)):
        taken = {normalize_task_id(draft.task_id) for draft in drafts if draft.task_id}
        counter = 0
        tasks: List[Task] = []
        summaries: Dict[str, str] = {}
        for draft in drafts:
            if draft.task_id:
                task_id = normalize_task_id(draft.task_id)
            else:
                counter += 1
                while f"T-{counter}" in taken:
                    counter += 1
                task_id = f"T-{counter}"
                taken.add(task_id)
            tasks.append(
                Task(
                    task_id=task_id,
                    title=draft.title,
                    criteria=_criteria_for(draft, by_id),
                    dependencies=tuple(draft.blocked_by),
                    evidence=draft.evidence or Evidence.NEEDED,
                    requirements=draft.requirements,
                )
            )
            if draft.summary:
                summaries[task_id] = draft.summary

        graph = TaskGraph(
            tasks,
            known_requirements=by_id.keys() if by_id else None,
            hooks=hooks,
            project_id=project_id,
        )

    for task in graph.all_tasks():
        for issue in task.validate():
            logger.warning(issue)
    logger.info(f"Decomposed plan into {len(graph)} task(s)")
    return PlanDecomposition(graph, summaries)

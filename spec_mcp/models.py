"""Data models for the Spec MCP task workflow engine.

This module contains the core data structures used throughout the engine,
representing tasks, their acceptance criteria, requirements, documents and
the audit records produced by status changes.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Literal markers persisted in tasks.md. These must be preserved bit-exact.
CHECKED_PREFIX = "- [x]"
UNCHECKED_PREFIX = "- [ ]"

EARS_PATTERN = re.compile(r"^\s*WHEN\s+.+?\s+THEN\s+THE\s+SYSTEM\s+SHALL\s+.+$")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


# ----------------------------------------------------------------------
# Enums
# ----------------------------------------------------------------------


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"

    @property
    def marker(self) -> str:
        return _STATUS_MARKERS[self]

    @property
    def label(self) -> str:
        return _STATUS_MARKERS[self].split(" ", 1)[1]

    @classmethod
    def from_marker(cls, text: str) -> "TaskStatus":
        """Parse a persisted status marker such as ``🟡 In Progress``."""
        cleaned = text.strip()
        for status, marker in _STATUS_MARKERS.items():
            if cleaned == marker:
                return status
        raise ValueError(f"Unknown status marker: {text!r}")

    @classmethod
    def parse(cls, value: "TaskStatus | str") -> "TaskStatus":
        """Accept an enum, a value (``in_progress``), a label or a marker."""
        if isinstance(value, TaskStatus):
            return value
        cleaned = value.strip()
        normalized = cleaned.lower().replace(" ", "_").replace("-", "_")
        for status in cls:
            if normalized == status.value or cleaned == status.marker or cleaned == status.label:
                return status
        raise ValueError(f"Unknown task status: {value!r}")


_STATUS_MARKERS = {
    TaskStatus.NOT_STARTED: "⚪ Not Started",
    TaskStatus.IN_PROGRESS: "🟡 In Progress",
    TaskStatus.DONE: "✅ Done",
}


class Evidence(str, Enum):
    """Classification of the technical claim behind a task."""

    EXISTS = "EXISTS"
    EXAMPLE = "EXAMPLE"
    NEEDED = "NEEDED"

    @property
    def tag(self) -> str:
        return f"[{self.value}]"


class SteeringKind(str, Enum):
    PRODUCT = "product"
    TECH = "tech"
    STRUCTURE = "structure"


class DocumentKind(str, Enum):
    """Named artifacts kept per project."""

    STEERING_PRODUCT = "steering/product"
    STEERING_TECH = "steering/tech"
    STEERING_STRUCTURE = "steering/structure"
    PLAN = "plan"
    TASKS = "tasks"

    @property
    def is_steering(self) -> bool:
        return self.value.startswith("steering/")

    @classmethod
    def steering(cls, kind: "SteeringKind | str") -> "DocumentKind":
        """Return the document kind for a steering document."""
        return cls(f"steering/{SteeringKind(kind).value}")


STEERING_DOCUMENTS = (
    DocumentKind.STEERING_PRODUCT,
    DocumentKind.STEERING_TECH,
    DocumentKind.STEERING_STRUCTURE,
)


def content_version(content: str) -> str:
    """Version stamp used for optimistic-concurrency writes."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# ----------------------------------------------------------------------
# Requirements and tasks
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Criterion:
    """A single acceptance-criterion checkbox."""

    text: str
    checked: bool = False
    line: Optional[int] = None  # 1-based line in the source document

    def render(self) -> str:
        """Render as a persisted checklist line."""
        prefix = CHECKED_PREFIX if self.checked else UNCHECKED_PREFIX
        return f"{prefix} {self.text}" if self.text else prefix

    def with_checked(self, checked: bool) -> "Criterion":
        return replace(self, checked=checked)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"text": self.text, "checked": self.checked, "line": self.line}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Criterion":
        """Create from dictionary representation."""
        return cls(
            text=data["text"],
            checked=bool(data.get("checked", False)),
            line=data.get("line"),
        )


@dataclass(frozen=True, slots=True)
class Requirement:
    """A numbered requirement (``R-n``) from the plan, with EARS criteria."""

    requirement_id: str
    title: str = ""
    description: str = ""
    acceptance_criteria: Tuple[str, ...] = ()
    files_affected: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "requirement_id": self.requirement_id,
            "title": self.title,
            "description": self.description,
            "acceptance_criteria": list(self.acceptance_criteria),
            "files_affected": list(self.files_affected),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Requirement":
        """Create from dictionary representation."""
        return cls(
            requirement_id=data["requirement_id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            acceptance_criteria=tuple(data.get("acceptance_criteria", [])),
            files_affected=tuple(data.get("files_affected", [])),
        )

    def validate(self) -> List[str]:
        """Validate the requirement and return any issues."""
        issues = []

        if not self.requirement_id:
            issues.append("Requirement ID is required")
        if not self.acceptance_criteria:
            issues.append(f"{self.requirement_id}: at least one acceptance criterion is required")
        for criterion in self.acceptance_criteria:
            if not EARS_PATTERN.match(criterion):
                issues.append(f"{self.requirement_id}: criterion is not in EARS form: {criterion}")

        return issues


@dataclass(frozen=True, slots=True)
class Task:
    """A unit of work in the task graph.

    Tasks are immutable values; the graph replaces a task whenever its status,
    checklist or edges change. ``dependents`` is derived by the graph and is
    always the inverse of every task's ``dependencies``.
    """

    task_id: str
    title: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    criteria: Tuple[Criterion, ...] = ()
    dependencies: Tuple[str, ...] = ()
    dependents: Tuple[str, ...] = ()
    evidence: Optional[Evidence] = None
    requirements: Tuple[str, ...] = ()

    @property
    def checked_count(self) -> int:
        return sum(1 for criterion in self.criteria if criterion.checked)

    @property
    def unchecked_criteria(self) -> List[Criterion]:
        return [criterion for criterion in self.criteria if not criterion.checked]

    @property
    def is_done(self) -> bool:
        return self.status is TaskStatus.DONE

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status.value,
            "status_marker": self.status.marker,
            "criteria": [criterion.to_dict() for criterion in self.criteria],
            "checked": self.checked_count,
            "total": len(self.criteria),
            "blocked_by": list(self.dependencies),
            "blocks": list(self.dependents),
            "evidence": self.evidence.value if self.evidence else None,
            "requirements": list(self.requirements),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create from dictionary representation."""
        evidence = data.get("evidence")
        return cls(
            task_id=data["task_id"],
            title=data.get("title", ""),
            status=TaskStatus.parse(data.get("status", TaskStatus.NOT_STARTED)),
            criteria=tuple(
                item if isinstance(item, Criterion) else Criterion.from_dict(item)
                for item in data.get("criteria", [])
            ),
            dependencies=tuple(data.get("blocked_by", data.get("dependencies", []))),
            evidence=Evidence(evidence) if evidence else None,
            requirements=tuple(data.get("requirements", [])),
        )

    def validate(self) -> List[str]:
        """Validate task data and return any issues."""
        issues = []

        if not self.task_id:
            issues.append("Task ID is required")
        if self.task_id in self.dependencies:
            issues.append(f"Task '{self.task_id}' cannot depend on itself")
        if len(set(self.dependencies)) != len(self.dependencies):
            issues.append(f"Task '{self.task_id}' lists a dependency more than once")
        if not self.criteria:
            issues.append(f"Task '{self.task_id}' has no acceptance criteria")

        return issues


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    """Audit entry for a status change.

    ``kind`` is ``"transition"`` for organic forward progress and ``"reset"``
    for the administrative return to Not Started.
    """

    task_id: str
    previous: TaskStatus
    current: TaskStatus
    kind: str = "transition"
    at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "task_id": self.task_id,
            "from": self.previous.value,
            "to": self.current.value,
            "kind": self.kind,
            "at": self.at,
        }


# ----------------------------------------------------------------------
# Documents
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Document:
    """Snapshot of a stored artifact and the version it was read at."""

    project_id: str
    kind: DocumentKind
    content: str = ""
    version: Optional[str] = None
    exists: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "project_id": self.project_id,
            "kind": self.kind.value,
            "exists": self.exists,
            "version": self.version,
        }


# ----------------------------------------------------------------------
# Workflow guide
# ----------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WorkflowStep:
    """Represents a single step in the Spec MCP workflow."""

    step_number: int
    name: str
    tool_name: str
    description: str
    prerequisites: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "step": self.step_number,
            "name": self.name,
            "tool": self.tool_name,
            "description": self.description,
            "prerequisites": list(self.prerequisites),
        }


WORKFLOW_STEPS = (
    WorkflowStep(
        step_number=1,
        name="Steering Documents",
        tool_name="generate_codebase_analysis",
        description="Check for and store product.md, tech.md and structure.md",
    ),
    WorkflowStep(
        step_number=2,
        name="Plan",
        tool_name="save_plan",
        description="Store the plan with numbered requirements (R-1...) in EARS form",
        prerequisites=("Steering Documents",),
    ),
    WorkflowStep(
        step_number=3,
        name="Task Breakdown",
        tool_name="generate_tasks",
        description="Decompose the plan into dependency-linked tasks (T-1...)",
        prerequisites=("Plan",),
    ),
    WorkflowStep(
        step_number=4,
        name="Orchestration",
        tool_name="task_orchestrator",
        description="Compute ready tasks, parallel groups and the critical path",
        prerequisites=("Task Breakdown",),
    ),
    WorkflowStep(
        step_number=5,
        name="Execution",
        tool_name="task_executor, toggle_criterion",
        description="Claim a ready task and check off its acceptance criteria",
        prerequisites=("Orchestration",),
    ),
    WorkflowStep(
        step_number=6,
        name="Verification",
        tool_name="task_checker, complete_task",
        description="Verify the checklist and mark the task Done",
        prerequisites=("Execution",),
    ),
)

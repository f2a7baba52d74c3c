"""Error taxonomy for the Spec MCP task workflow engine.

Errors fall into four families:

* ``NotFound`` - a document or task is missing; surfaced immediately.
* ``GraphConstructionError`` - the tasks document cannot be turned into a
  valid dependency graph; aborts the whole scheduling run.
* ``Conflict`` - an optimistic write lost a race; recoverable by re-reading.
* ``TransitionRejected`` - an expected, user-facing refusal of a status or
  checklist change. These are carried inside mutation results rather than
  raised by the graph.

``Unverifiable`` stands on its own: it is raised when a task's checklist cannot
be located unambiguously and must never be read as PASS or FAIL.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Sequence


class SpecMcpError(Exception):
    """Base class for all engine errors."""

    code = "spec_mcp_error"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"error_code": self.code, "error": str(self)}


# ----------------------------------------------------------------------
# Lookup errors
# ----------------------------------------------------------------------


class NotFound(SpecMcpError, LookupError):
    """A document or task does not exist."""

    code = "not_found"


class DocumentNotFound(NotFound):
    code = "document_not_found"

    def __init__(self, project_id: str, kind: str):
        self.project_id = project_id
        self.kind = kind
        super().__init__(f"No {kind} document found for project '{project_id}'.")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"project_id": self.project_id, "kind": self.kind})
        return data


class TaskNotFound(NotFound):
    code = "task_not_found"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found.")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["task_id"] = self.task_id
        return data


# ----------------------------------------------------------------------
# Graph construction errors
# ----------------------------------------------------------------------


class GraphConstructionError(SpecMcpError):
    """The task set cannot form a valid dependency graph."""

    code = "graph_construction_error"


class CyclicDependency(GraphConstructionError):
    code = "cyclic_dependency"

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency detected: {' -> '.join(self.cycle)}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["cycle"] = list(self.cycle)
        return data


class UnknownDependency(GraphConstructionError):
    code = "unknown_dependency"

    def __init__(self, task_id: str, missing: Iterable[str], field: str = "Blocked By"):
        self.task_id = task_id
        self.missing = list(missing)
        self.field = field
        super().__init__(
            f"Task '{task_id}' lists unknown task(s) under {field}: {', '.join(self.missing)}"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"task_id": self.task_id, "missing": list(self.missing), "field": self.field})
        return data


class DuplicateTask(GraphConstructionError):
    code = "duplicate_task"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' is declared more than once.")


class UnknownRequirement(GraphConstructionError):
    code = "unknown_requirement"

    def __init__(self, task_id: str, missing: Iterable[str]):
        self.task_id = task_id
        self.missing = list(missing)
        super().__init__(
            f"Task '{task_id}' traces to unknown requirement(s): {', '.join(self.missing)}"
        )


class InconsistentStatus(GraphConstructionError):
    """A task is recorded as Done without passing the Done gates.

    ``gate`` is ``"dependencies"`` when a dependency is not Done, or
    ``"checklist"`` when the checklist does not verify.
    """

    code = "inconsistent_status"

    def __init__(self, task_id: str, gate: str, detail: str):
        self.task_id = task_id
        self.gate = gate
        self.detail = detail
        super().__init__(f"Task '{task_id}' is marked Done but fails the {gate} gate: {detail}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"task_id": self.task_id, "gate": self.gate, "detail": self.detail})
        return data


class MalformedDocument(GraphConstructionError):
    code = "malformed_document"

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        if line is not None:
            message = f"line {line}: {message}"
        super().__init__(message)


# ----------------------------------------------------------------------
# Concurrency
# ----------------------------------------------------------------------


class Conflict(SpecMcpError):
    """The stored document changed since the caller last read it."""

    code = "conflict"

    def __init__(
        self,
        project_id: str,
        kind: str,
        expected: Optional[str],
        actual: Optional[str],
        message: Optional[str] = None,
    ):
        self.project_id = project_id
        self.kind = kind
        self.expected = expected
        self.actual = actual
        super().__init__(
            message
            or f"Version conflict writing {kind} for project '{project_id}': "
            f"expected {expected or 'absent'}, found {actual or 'absent'}."
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "project_id": self.project_id,
                "kind": self.kind,
                "expected_version": self.expected,
                "actual_version": self.actual,
            }
        )
        return data


# ----------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------


class Unverifiable(SpecMcpError):
    """The task or its criteria section cannot be located unambiguously."""

    code = "unverifiable"

    def __init__(self, task_id: str, reason: str):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task '{task_id}' cannot be verified: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"task_id": self.task_id, "reason": self.reason})
        return data


# ----------------------------------------------------------------------
# Transition rejections
# ----------------------------------------------------------------------


class TransitionRejected(SpecMcpError):
    """A status or checklist change was refused for a task."""

    code = "transition_rejected"

    def __init__(self, task_id: str, message: str):
        self.task_id = task_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["task_id"] = self.task_id
        return data


class IncompleteChecklist(TransitionRejected):
    code = "incomplete_checklist"

    def __init__(self, task_id: str, reason: str, total: int, unchecked: Sequence[str] = ()):
        self.reason = reason
        self.total = total
        self.unchecked = list(unchecked)
        super().__init__(task_id, f"Task '{task_id}' cannot be Done: {reason}")

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(
            {"reason": self.reason, "total": self.total, "unchecked": list(self.unchecked)}
        )
        return data


class UnmetDependency(TransitionRejected):
    code = "unmet_dependency"

    def __init__(self, task_id: str, unmet: Sequence[str]):
        self.unmet = list(unmet)
        super().__init__(
            task_id,
            f"Task '{task_id}' is blocked by task(s) not Done: {', '.join(self.unmet)}",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["unmet"] = list(self.unmet)
        return data


class IllegalTransition(TransitionRejected):
    code = "illegal_transition"

    def __init__(self, task_id: str, current: str, requested: str, hint: str = ""):
        self.current = current
        self.requested = requested
        message = f"Task '{task_id}' cannot move from {current} to {requested}"
        if hint:
            message = f"{message}: {hint}"
        super().__init__(task_id, message)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"current": self.current, "requested": self.requested})
        return data


class DependentsActive(TransitionRejected):
    code = "dependents_active"

    def __init__(self, task_id: str, dependents: Sequence[str]):
        self.dependents = list(dependents)
        super().__init__(
            task_id,
            f"Task '{task_id}' has started dependents ({', '.join(self.dependents)}); "
            "reset with cascade=True to reset them too",
        )

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["dependents"] = list(self.dependents)
        return data

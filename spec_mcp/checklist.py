"""Checklist verification for task completion.

The decision rule is deliberately strict::

    PASS  iff  total > 0 and unchecked == 0

A task with no criteria can never pass, so every task has to carry at least
one verifiable criterion before it can be marked Done.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import IncompleteChecklist
from .models import Criterion, Task


class Decision(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"


class FailureReason(str, Enum):
    NO_CRITERIA = "NoCriteria"
    UNCHECKED = "Unchecked"


@dataclass(frozen=True, slots=True)
class Verification:
    """Outcome of checking one task's acceptance criteria."""

    task_id: str
    decision: Decision
    total: int
    unchecked: int
    reason: Optional[FailureReason] = None
    evidence: Tuple[Criterion, ...] = ()

    @property
    def passed(self) -> bool:
        return self.decision is Decision.PASS

    @property
    def checked(self) -> int:
        return self.total - self.unchecked

    @property
    def reason_text(self) -> str:
        if self.reason is FailureReason.UNCHECKED:
            return f"Unchecked({self.unchecked})"
        if self.reason is FailureReason.NO_CRITERIA:
            return "NoCriteria"
        return ""

    def summary(self) -> str:
        """Human readable one-liner, e.g. ``Checked 1/2 - FAIL (Unchecked(1))``."""
        text = f"Checked {self.checked}/{self.total} - {self.decision.value}"
        if self.reason_text:
            text = f"{text} ({self.reason_text})"
        return text

    def quoted_lines(self, location: Optional[str] = None) -> list[str]:
        """Quote the counted checklist lines, with ``location:line`` when known."""
        quoted = []
        for criterion in self.evidence:
            line = criterion.render()
            if location and criterion.line is not None:
                quoted.append(f"{location}:{criterion.line}: {line}")
            elif criterion.line is not None:
                quoted.append(f"{criterion.line}: {line}")
            else:
                quoted.append(line)
        return quoted

    def to_rejection(self) -> IncompleteChecklist:
        """Convert a failing verification into a transition rejection."""
        return IncompleteChecklist(
            self.task_id,
            self.reason_text,
            self.total,
            [criterion.text for criterion in self.evidence if not criterion.checked],
        )

    def to_dict(self, location: Optional[str] = None) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "task_id": self.task_id,
            "decision": self.decision.value,
            "counts": f"Checked {self.checked}/{self.total}",
            "total": self.total,
            "checked": self.checked,
            "unchecked": self.unchecked,
            "reason": self.reason_text or None,
            "quoted_lines": self.quoted_lines(location),
        }


def verify_criteria(task_id: str, criteria: Iterable[Criterion]) -> Verification:
    """Apply the decision rule to a list of criteria."""
    items = tuple(criteria)
    total = len(items)
    unchecked = sum(1 for criterion in items if not criterion.checked)

    if total == 0:
        return Verification(task_id, Decision.FAIL, 0, 0, FailureReason.NO_CRITERIA, items)
    if unchecked:
        return Verification(task_id, Decision.FAIL, total, unchecked, FailureReason.UNCHECKED, items)
    return Verification(task_id, Decision.PASS, total, 0, None, items)


def verify_task(task: Task) -> Verification:
    """Verify a task from its in-memory checklist state."""
    return verify_criteria(task.task_id, task.criteria)

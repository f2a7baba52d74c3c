"""Unit tests for Spec MCP models.

This module tests the core data structures and their validation,
serialization, and status marker handling.
"""

import pytest

from spec_mcp.models import (
    CHECKED_PREFIX,
    UNCHECKED_PREFIX,
    WORKFLOW_STEPS,
    Criterion,
    Document,
    DocumentKind,
    Evidence,
    Requirement,
    SteeringKind,
    Task,
    TaskStatus,
    TransitionRecord,
    content_version,
)


class TestTaskStatus:
    """Test cases for TaskStatus markers and parsing."""

    def test_markers_are_bit_exact(self):
        """Test the persisted markers."""
        assert TaskStatus.NOT_STARTED.marker == "⚪ Not Started"
        assert TaskStatus.IN_PROGRESS.marker == "🟡 In Progress"
        assert TaskStatus.DONE.marker == "✅ Done"

    def test_labels(self):
        """Test labels drop the emoji."""
        assert TaskStatus.IN_PROGRESS.label == "In Progress"

    def test_from_marker(self):
        """Test parsing an exact marker."""
        assert TaskStatus.from_marker("🟡 In Progress") is TaskStatus.IN_PROGRESS
        with pytest.raises(ValueError):
            TaskStatus.from_marker("In Progress")

    @pytest.mark.parametrize(
        "value",
        ["done", "Done", "✅ Done", "DONE", TaskStatus.DONE],
    )
    def test_parse_accepts_value_label_marker(self, value):
        """Test the lenient parser used by tool arguments."""
        assert TaskStatus.parse(value) is TaskStatus.DONE

    def test_parse_in_progress_variants(self):
        """Test separators are normalized."""
        assert TaskStatus.parse("in-progress") is TaskStatus.IN_PROGRESS
        assert TaskStatus.parse("In Progress") is TaskStatus.IN_PROGRESS

    def test_parse_unknown(self):
        """Test unknown statuses are rejected."""
        with pytest.raises(ValueError, match="Unknown task status"):
            TaskStatus.parse("blocked")


class TestCriterion:
    """Test cases for Criterion."""

    def test_render(self):
        """Test rendering both checkbox states."""
        assert Criterion("write docs").render() == f"{UNCHECKED_PREFIX} write docs"
        assert Criterion("write docs", True).render() == f"{CHECKED_PREFIX} write docs"

    def test_with_checked_returns_new_value(self):
        """Test criteria are immutable."""
        original = Criterion("a", line=4)
        toggled = original.with_checked(True)

        assert toggled.checked is True
        assert toggled.line == 4
        assert original.checked is False

    def test_dict_round_trip(self):
        """Test converting to and from a dictionary."""
        criterion = Criterion("a", True, line=7)
        assert Criterion.from_dict(criterion.to_dict()) == criterion


class TestRequirement:
    """Test cases for Requirement."""

    def test_validate_accepts_ears(self):
        """Test EARS-shaped criteria pass validation."""
        requirement = Requirement(
            "R-1",
            "Store",
            acceptance_criteria=("WHEN a document is written THEN THE SYSTEM SHALL persist it",),
        )
        assert requirement.validate() == []

    def test_validate_reports_non_ears(self):
        """Test free-form criteria are reported."""
        requirement = Requirement("R-1", acceptance_criteria=("It should work",))
        issues = requirement.validate()

        assert len(issues) == 1
        assert "EARS" in issues[0]

    def test_validate_requires_criteria(self):
        """Test a requirement without criteria is reported."""
        assert any("at least one" in issue for issue in Requirement("R-2").validate())

    def test_from_dict(self):
        """Test creating a requirement from a dictionary."""
        requirement = Requirement.from_dict(
            {"requirement_id": "R-3", "title": "T", "files_affected": ["a.py"]}
        )
        assert requirement.files_affected == ("a.py",)
        assert requirement.acceptance_criteria == ()


class TestTask:
    """Test cases for Task."""

    def test_counts(self):
        """Test checked counts and unchecked criteria."""
        task = Task("T-1", criteria=(Criterion("a", True), Criterion("b")))

        assert task.checked_count == 1
        assert [c.text for c in task.unchecked_criteria] == ["b"]
        assert not task.is_done

    def test_to_dict(self):
        """Test the serialized shape."""
        task = Task(
            "T-2",
            "Parse",
            status=TaskStatus.IN_PROGRESS,
            criteria=(Criterion("a", True),),
            dependencies=("T-1",),
            dependents=("T-3",),
            evidence=Evidence.EXISTS,
            requirements=("R-1",),
        )
        data = task.to_dict()

        assert data["status"] == "in_progress"
        assert data["status_marker"] == "🟡 In Progress"
        assert data["blocked_by"] == ["T-1"]
        assert data["blocks"] == ["T-3"]
        assert data["checked"] == 1
        assert data["total"] == 1
        assert data["evidence"] == "EXISTS"

    def test_from_dict(self):
        """Test creating a task from a dictionary."""
        task = Task.from_dict(
            {
                "task_id": "T-4",
                "status": "done",
                "criteria": [{"text": "a", "checked": True}],
                "blocked_by": ["T-1"],
                "evidence": "NEEDED",
            }
        )
        assert task.status is TaskStatus.DONE
        assert task.dependencies == ("T-1",)
        assert task.evidence is Evidence.NEEDED

    def test_validate(self):
        """Test self-dependencies and empty checklists are reported."""
        issues = Task("T-1", dependencies=("T-1",)).validate()

        assert any("itself" in issue for issue in issues)
        assert any("no acceptance criteria" in issue for issue in issues)


class TestDocuments:
    """Test cases for document kinds and versions."""

    def test_steering_kind(self):
        """Test steering document kinds."""
        assert DocumentKind.steering(SteeringKind.TECH) is DocumentKind.STEERING_TECH
        assert DocumentKind.steering("product").is_steering
        assert not DocumentKind.TASKS.is_steering

    def test_content_version_is_stable(self):
        """Test versions are content hashes."""
        assert content_version("abc") == content_version("abc")
        assert content_version("abc") != content_version("abd")

    def test_document_to_dict(self):
        """Test document metadata serialization."""
        document = Document("demo", DocumentKind.PLAN, "x", content_version("x"))
        assert document.to_dict()["kind"] == "plan"


class TestTransitionRecord:
    """Test cases for TransitionRecord."""

    def test_to_dict(self):
        """Test the audit entry shape."""
        record = TransitionRecord("T-1", TaskStatus.IN_PROGRESS, TaskStatus.DONE)
        data = record.to_dict()

        assert data["from"] == "in_progress"
        assert data["to"] == "done"
        assert data["kind"] == "transition"
        assert data["at"].endswith("Z")


class TestWorkflowSteps:
    """Test cases for the workflow guide steps."""

    def test_steps_are_ordered(self):
        """Test steps are numbered consecutively."""
        assert [step.step_number for step in WORKFLOW_STEPS] == list(range(1, len(WORKFLOW_STEPS) + 1))

    def test_step_to_dict(self):
        """Test step serialization."""
        data = WORKFLOW_STEPS[0].to_dict()
        assert data["tool"] == "generate_codebase_analysis"
        assert data["prerequisites"] == []

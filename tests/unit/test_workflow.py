"""Unit tests for Spec MCP workflow management.

This module tests the workflow manager end to end against document stores:
steering and plan handling, task generation, orchestration, verification
and the guarded updates of the tasks document.
"""

import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from spec_mcp.errors import Conflict, CyclicDependency, DocumentNotFound, UnknownRequirement
from spec_mcp.models import DocumentKind
from spec_mcp.spec_logging import ObservabilityHooks
from spec_mcp.store import FileDocumentStore, MemoryDocumentStore
from spec_mcp.workflow import WorkflowManager


def tasks_text(store, project_id="demo"):
    return store.read(project_id, DocumentKind.TASKS).content


class TestSteeringAndPlan:
    """Test cases for steering documents and plans."""

    def test_steering_status_reports_missing(self, memory_store):
        """Test a fresh project needs all steering documents."""
        status = WorkflowManager(memory_store).steering_status("demo")

        assert status["missing"] == ["product", "tech", "structure"]
        assert status["needs_generation"] is True
        assert status["next_suggested_step"] == "generate_codebase_analysis"

    def test_existing_steering_is_kept(self, memory_store):
        """Test saved steering documents are not overwritten unless forced."""
        manager = WorkflowManager(memory_store)
        for kind in ("product", "tech", "structure"):
            assert manager.save_steering_document("demo", kind, f"# {kind}")["saved"] is True

        again = manager.save_steering_document("demo", "product", "# other")
        assert again["saved"] is False
        assert memory_store.read("demo", DocumentKind.STEERING_PRODUCT).content == "# product"

        forced = manager.save_steering_document("demo", "product", "# other", force_regenerate=True)
        assert forced["saved"] is True

        status = manager.steering_status("demo")
        assert status["needs_generation"] is False
        assert status["next_suggested_step"] == "save_plan"
        assert manager.steering_status("demo", force_regenerate=True)["needs_generation"] is True

    def test_unknown_steering_kind(self, memory_store):
        """Test only the three steering documents can be saved."""
        with pytest.raises(ValueError):
            WorkflowManager(memory_store).save_steering_document("demo", "roadmap", "# x")

    def test_save_plan(self, memory_store, plan_markdown):
        """Test a plan with numbered requirements is stored once."""
        manager = WorkflowManager(memory_store)
        result = manager.save_plan("demo", plan_markdown)

        assert [req["requirement_id"] for req in result["requirements"]] == ["R-1", "R-2"]
        assert result["warnings"] == []
        assert result["next_suggested_step"] == "generate_tasks"

        with pytest.raises(ValueError, match="already exists"):
            manager.save_plan("demo", plan_markdown)
        assert manager.save_plan("demo", plan_markdown, overwrite=True)["requirements"]

    @pytest.mark.parametrize("content", ["", "   ", "# Plan\n\nNo requirements here.\n"])
    def test_save_plan_rejects_unusable_content(self, memory_store, content):
        """Test empty plans and plans without requirements are refused."""
        with pytest.raises(ValueError):
            WorkflowManager(memory_store).save_plan("demo", content)


class TestGenerateTasks:
    """Test cases for task generation."""

    def test_requires_plan(self, memory_store):
        """Test generating without a plan raises DocumentNotFound."""
        with pytest.raises(DocumentNotFound):
            WorkflowManager(memory_store).generate_tasks("demo")

    def test_default_decomposition(self, memory_store, plan_markdown):
        """Test one task per requirement, all ready."""
        manager = WorkflowManager(memory_store)
        manager.save_plan("demo", plan_markdown)
        result = manager.generate_tasks("demo")

        assert result["order"] == ["T-1", "T-2"]
        assert result["ready"] == ["T-1", "T-2"]
        assert result["location"] == "demo/specs/tasks.md"
        assert "### Task T-1: Store documents" in tasks_text(memory_store)

        with pytest.raises(ValueError, match="already exist"):
            manager.generate_tasks("demo")

    def test_drafts(self, memory_store, plan_markdown):
        """Test drafts produce a dependency-linked document that parses back."""
        manager = WorkflowManager(memory_store)
        manager.save_plan("demo", plan_markdown)
        result = manager.generate_tasks(
            "demo",
            [
                {"title": "Store", "requirements": ["R-1"]},
                {"title": "Schedule", "requirements": ["R-2"], "blocked_by": ["T-1"]},
            ],
        )

        assert result["ready"] == ["T-1"]
        assert result["critical_path"] == ["T-1", "T-2"]
        assert "T1 --> T2" in tasks_text(memory_store)

        report = manager.orchestrate("demo")
        assert report["ready"] == ["T-1"]
        assert report["blocked"] == [{"task_id": "T-2", "blocked_by": ["T-1"]}]

    def test_drafts_with_unknown_requirement(self, memory_store, plan_markdown):
        """Test drafts tracing to unknown requirements write nothing."""
        manager = WorkflowManager(memory_store)
        manager.save_plan("demo", plan_markdown)

        with pytest.raises(UnknownRequirement):
            manager.generate_tasks("demo", [{"title": "x", "requirements": ["R-9"]}])
        assert not memory_store.exists("demo", DocumentKind.TASKS)


class TestOrchestrationAndChecks:
    """Test cases for scheduling reports and checklist verification."""

    def test_orchestrate(self, seeded_store):
        """Test the report for the sample document."""
        report = WorkflowManager(seeded_store).orchestrate("demo")

        assert report["ready"] == ["T-2"]
        assert report["done"] == ["T-1"]
        assert report["critical_path"] == ["T-1", "T-2", "T-3"]
        assert report["next_suggested_step"] == "task_executor"

    def test_orchestrate_without_tasks(self, memory_store):
        """Test orchestration needs a tasks document."""
        with pytest.raises(DocumentNotFound):
            WorkflowManager(memory_store).orchestrate("demo")

    def test_check_task_pass_and_fail(self, seeded_store):
        """Test task_checker style verdicts with quoted lines."""
        manager = WorkflowManager(seeded_store)
        passed = manager.check_task("demo", "t-2")
        failed = manager.check_task("demo", "T-3")

        assert passed["decision"] == "PASS"
        assert passed["counts"] == "Checked 2/2"
        assert passed["quoted_lines"][0].startswith("demo/specs/tasks.md:")
        assert failed["decision"] == "FAIL"
        assert failed["reason"] == "Unchecked(1)"
        assert failed["next_suggested_step"] == "toggle_criterion"

    def test_check_unknown_task_is_unverifiable(self, seeded_store):
        """Test a missing task is reported as unverifiable."""
        result = WorkflowManager(seeded_store).check_task("demo", "T-9")

        assert result["decision"] == "UNVERIFIABLE"
        assert "not found" in result["reason"]


class TestTaskUpdates:
    """Test cases for claim, complete, checklist and dependency edits."""

    def test_claim_ready_task(self, seeded_store):
        """Test claiming returns the execution context and persists the status."""
        result = WorkflowManager(seeded_store).claim_task("demo", "T-2")

        assert result["accepted"] is True
        assert result["status"] == "in_progress"
        assert result["context"]["requirements"][0]["requirement_id"] == "R-1"
        assert result["context"]["unchecked_criteria"] == []
        assert "**Status**: 🟡 In Progress" in tasks_text(seeded_store)

    def test_claim_picks_first_ready(self, seeded_store):
        """Test claiming without an id takes the first ready task."""
        assert WorkflowManager(seeded_store).claim_task("demo")["task_id"] == "T-2"

    def test_claim_blocked_task_is_refused(self, seeded_store):
        """Test a task with unfinished dependencies cannot be claimed."""
        before = tasks_text(seeded_store)
        result = WorkflowManager(seeded_store).claim_task("demo", "T-3")

        assert result["accepted"] is False
        assert result["error_code"] == "unmet_dependency"
        assert result["unmet"] == ["T-2"]
        assert tasks_text(seeded_store) == before

    def test_double_claim_is_refused(self, seeded_store):
        """Test a task already In Progress cannot be claimed again."""
        manager = WorkflowManager(seeded_store)
        manager.claim_task("demo", "T-2")

        result = manager.claim_task("demo", "T-2")
        assert result["accepted"] is False
        assert result["error_code"] == "illegal_transition"

    def test_claim_with_nothing_ready(self, seeded_store):
        """Test claiming without an id fails when no task is ready."""
        manager = WorkflowManager(seeded_store)
        manager.claim_task("demo", "T-2")

        with pytest.raises(ValueError, match="No task is ready"):
            manager.claim_task("demo")

    def test_complete_task(self, seeded_store):
        """Test completion unblocks dependents and records both steps."""
        hooks = ObservabilityHooks()
        callback = MagicMock()
        hooks.register_hook("task_transition", callback)

        result = WorkflowManager(seeded_store, hooks=hooks).complete_task("demo", "T-2")

        assert result["accepted"] is True
        assert result["newly_ready"] == ["T-3"]
        assert [t["to"] for t in result["transitions"]] == ["in_progress", "done"]
        assert result["verification"]["decision"] == "PASS"
        assert callback.call_count == 2
        assert "### Task T-2: Parse tasks\n**Status**: ✅ Done" in tasks_text(seeded_store)

    def test_complete_blocked_task(self, seeded_store):
        """Test dependencies are checked before the checklist."""
        result = WorkflowManager(seeded_store).complete_task("demo", "T-3")

        assert result["accepted"] is False
        assert result["error_code"] == "unmet_dependency"
        assert result["verification"]["decision"] == "FAIL"

    def test_complete_with_unchecked_criteria(self, seeded_store):
        """Test an incomplete checklist blocks Done."""
        manager = WorkflowManager(seeded_store)
        manager.complete_task("demo", "T-2")
        result = manager.complete_task("demo", "T-3")

        assert result["accepted"] is False
        assert result["error_code"] == "incomplete_checklist"
        assert "toggle_criterion" in result["suggestion"]

    def test_toggle_then_complete(self, seeded_store):
        """Test checking the last criterion lets the task finish."""
        manager = WorkflowManager(seeded_store)
        manager.complete_task("demo", "T-2")

        toggled = manager.toggle_criterion("demo", "T-3", 1, True)
        assert toggled["accepted"] is True
        assert "- [x] WHEN tasks are ready THEN THE SYSTEM SHALL list them" in tasks_text(seeded_store)

        assert manager.complete_task("demo", "T-3")["accepted"] is True
        assert manager.orchestrate("demo")["complete"] is True

    def test_toggle_done_task_is_refused(self, seeded_store):
        """Test criteria of a Done task cannot be unchecked."""
        result = WorkflowManager(seeded_store).toggle_criterion("demo", "T-1", 1, False)

        assert result["accepted"] is False
        assert result["error_code"] == "illegal_transition"

    def test_toggle_bad_number(self, seeded_store):
        """Test criterion numbers are 1-based and bounded."""
        manager = WorkflowManager(seeded_store)
        with pytest.raises(ValueError):
            manager.toggle_criterion("demo", "T-3", 0)
        with pytest.raises(IndexError):
            manager.toggle_criterion("demo", "T-3", 5)

    def test_add_criterion(self, seeded_store):
        """Test added criteria are written unchecked inside the section."""
        result = WorkflowManager(seeded_store).add_criterion(
            "demo", "T-3", "WHEN a task is blocked THEN THE SYSTEM SHALL list its blockers"
        )

        assert result["accepted"] is True
        assert result["task"]["total"] == 2
        assert (
            "- [ ] WHEN tasks are ready THEN THE SYSTEM SHALL list them\n"
            "- [ ] WHEN a task is blocked THEN THE SYSTEM SHALL list its blockers\n"
        ) in tasks_text(seeded_store)

    def test_set_dependencies(self, seeded_store):
        """Test replacing dependencies updates the ready set."""
        result = WorkflowManager(seeded_store).set_dependencies("demo", "T-3", [])

        assert result["accepted"] is True
        assert result["ready"] == ["T-2", "T-3"]

    def test_set_dependencies_cycle(self, seeded_store):
        """Test a cycle is refused and nothing is written."""
        before = tasks_text(seeded_store)
        with pytest.raises(CyclicDependency):
            WorkflowManager(seeded_store).set_dependencies("demo", "T-1", ["T-3"])
        assert tasks_text(seeded_store) == before

    def test_reset(self, seeded_store):
        """Test reset refuses started dependents unless cascading."""
        manager = WorkflowManager(seeded_store)
        manager.claim_task("demo", "T-2")

        refused = manager.reset_task("demo", "T-1")
        assert refused["accepted"] is False
        assert refused["dependents"] == ["T-2"]
        assert "cascade" in refused["suggestion"]

        cascaded = manager.reset_task("demo", "T-1", cascade=True)
        assert cascaded["accepted"] is True
        assert cascaded["reset"] == ["T-1", "T-2"]
        assert cascaded["ready"] == ["T-1"]
        assert all(t["kind"] == "reset" for t in cascaded["transitions"])

    def test_status_batch(self, seeded_store):
        """Test per-task outcomes of a batch update."""
        result = WorkflowManager(seeded_store).apply_status_batch(
            "demo", {"T-2": "done", "T-3": "in_progress", "T-9": "done"}
        )

        assert result["accepted"] == ["T-2", "T-3"]
        assert result["rejected"] == ["T-9"]
        assert result["results"]["T-9"]["error_code"] == "task_not_found"
        assert result["ready"] == []

    def test_status_batch_requires_updates(self, seeded_store):
        """Test an empty batch is an error."""
        with pytest.raises(ValueError):
            WorkflowManager(seeded_store).apply_status_batch("demo", {})


class RacingStore(MemoryDocumentStore):
    """Memory store that lets another writer in before the first tasks update."""

    def __init__(self, interloper=None):
        super().__init__()
        self.interloper = interloper
        self.updates = 0

    def write(self, project_id, kind, content, expected_version):
        if kind == DocumentKind.TASKS and expected_version is not None:
            self.updates += 1
            if self.updates == 1 and self.interloper:
                self.interloper(self)
        return super().write(project_id, kind, content, expected_version)


class ConflictingStore(MemoryDocumentStore):
    """Memory store whose tasks updates always lose the race."""

    def __init__(self):
        super().__init__()
        self.updates = 0

    def write(self, project_id, kind, content, expected_version):
        if kind == DocumentKind.TASKS and expected_version is not None:
            self.updates += 1
            raise Conflict(project_id, kind.value, expected_version, "someone-else")
        return super().write(project_id, kind, content, expected_version)


class TestConcurrentUpdates:
    """Test cases for optimistic retries of tasks document updates."""

    def seed(self, store, plan_markdown, tasks_markdown):
        store.write("demo", DocumentKind.PLAN, plan_markdown, None)
        store.write("demo", DocumentKind.TASKS, tasks_markdown, None)

    def test_lost_race_is_retried_on_fresh_state(self, plan_markdown, tasks_markdown):
        """Test both the interloper's and the retried change survive."""
        store = RacingStore(lambda s: WorkflowManager(s).claim_task("demo", "T-2"))
        self.seed(store, plan_markdown, tasks_markdown)

        result = WorkflowManager(store).toggle_criterion("demo", "T-3", 1, True)

        assert result["accepted"] is True
        assert store.updates == 3
        text = tasks_text(store)
        assert "**Status**: 🟡 In Progress" in text
        assert "- [x] WHEN tasks are ready" in text

    def test_conflict_surfaces_after_retries(self, plan_markdown, tasks_markdown):
        """Test Conflict is raised once every attempt has lost."""
        store = ConflictingStore()
        self.seed(store, plan_markdown, tasks_markdown)

        with pytest.raises(Conflict):
            WorkflowManager(store, max_retries=2).claim_task("demo", "T-2")
        assert store.updates == 3

    def test_noop_update_does_not_write(self, plan_markdown, tasks_markdown):
        """Test an update that changes nothing skips the write."""
        store = ConflictingStore()
        self.seed(store, plan_markdown, tasks_markdown)

        result = WorkflowManager(store).toggle_criterion("demo", "T-2", 1, True)
        assert result["accepted"] is True
        assert store.updates == 0

    def test_negative_retries(self, memory_store):
        """Test max_retries must not be negative."""
        with pytest.raises(ValueError):
            WorkflowManager(memory_store, max_retries=-1)

    def test_parallel_claims_on_files(self):
        """Test concurrent executors claiming different tasks all succeed."""
        plan = "# Plan\n\n" + "".join(
            f"### R-{n}: Part {n}\n- Acceptance Criteria:\n  - WHEN part {n} runs THEN THE SYSTEM SHALL finish\n\n"
            for n in range(1, 5)
        )
        with tempfile.TemporaryDirectory() as temp_dir:
            store = FileDocumentStore(Path(temp_dir))
            WorkflowManager(store).save_plan(".", plan)
            WorkflowManager(store).generate_tasks(".")

            barrier = threading.Barrier(4)

            def claim(task_id):
                barrier.wait()
                return WorkflowManager(store, max_retries=10).claim_task(".", task_id)

            with ThreadPoolExecutor(max_workers=4) as pool:
                results = list(pool.map(claim, ["T-1", "T-2", "T-3", "T-4"]))

            assert all(result["accepted"] for result in results)
            report = WorkflowManager(store).orchestrate(".")
            assert report["in_progress"] == ["T-1", "T-2", "T-3", "T-4"]
            assert report["ready"] == []


class TestWorkflowGuide:
    """Test cases for workflow guidance."""

    def test_guide_lists_steps(self):
        """Test the guide names every step and tool."""
        guide = WorkflowManager.get_workflow_guide()

        assert guide["steps"][0]["tool"] == "generate_codebase_analysis"
        assert len(guide["steps"]) == 6
        assert guide["tips"]

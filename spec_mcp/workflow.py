"""Workflow management for Spec MCP.

This module drives the steering -> plan -> tasks -> execution -> verification
workflow on top of a :class:`DocumentStore`. A :class:`WorkflowManager` owns
no document state of its own: every call reads what it needs from the store,
and every change to the tasks document is a read -> parse -> mutate -> render
-> compare-and-write cycle that is retried on ``Conflict``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from .checklist import verify_criteria
from .documents import (
    TasksDocument,
    locate_checklist,
    parse_plan_document,
    parse_tasks_document,
    render_new_tasks_document,
    render_tasks_document,
)
from .errors import Conflict, SpecMcpError, Unverifiable, UnmetDependency
from .graph import MutationResult, TaskGraph
from .models import (
    STEERING_DOCUMENTS,
    WORKFLOW_STEPS,
    Document,
    DocumentKind,
    Requirement,
    SteeringKind,
    TaskStatus,
)
from .planning import TaskDraft, decompose_plan
from .scheduler import build_schedule, ready_tasks
from .spec_logging import ObservabilityHooks, log_conflict, log_operation, log_performance
from .store import DocumentStore

logger = logging.getLogger("spec_mcp.workflow")

T = TypeVar("T")


class WorkflowManager:
    """Manages the Spec MCP workflow for the projects of one document store.

    Args:
        store: Where steering, plan and tasks documents live.
        max_retries: How many times a tasks-document update is re-applied
            after losing a write race before ``Conflict`` is surfaced.
        hooks: Receives workflow, transition and reset events.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        max_retries: int = 3,
        hooks: Optional[ObservabilityHooks] = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        self.store = store
        self.max_retries = max_retries
        self.hooks = hooks or ObservabilityHooks()

    # ------------------------------------------------------------------
    # Steering documents
    # ------------------------------------------------------------------

    def steering_status(self, project_id: str, force_regenerate: bool = False) -> Dict[str, Any]:
        """Report which steering documents exist and whether to (re)generate them."""
        documents = {}
        for kind in STEERING_DOCUMENTS:
            name = kind.value.split("/", 1)[1]
            documents[name] = {
                "exists": self.store.exists(project_id, kind),
                "location": self.store.location(project_id, kind),
            }
        missing = [name for name, info in documents.items() if not info["exists"]]
        needs_generation = force_regenerate or bool(missing)

        if needs_generation:
            message = (
                "Regenerating all steering documents as requested."
                if force_regenerate
                else f"Missing steering documents: {', '.join(missing)}."
            )
            next_step = "generate_codebase_analysis"
            tip = "Analyze the codebase and save product, tech and structure documents"
        else:
            message = "All steering documents exist. Skipping generation."
            next_step = "save_plan"
            tip = "Next: save a plan with numbered requirements (### R-1: ...) in EARS form"

        return {
            "project_id": project_id,
            "documents": documents,
            "missing": missing,
            "needs_generation": needs_generation,
            "message": message,
            "next_suggested_step": next_step,
            "workflow_tip": tip,
        }

    def save_steering_document(
        self,
        project_id: str,
        kind: "SteeringKind | str",
        content: str,
        force_regenerate: bool = False,
    ) -> Dict[str, Any]:
        """Store caller-generated steering content; existing documents are kept unless forced."""
        if not content or not content.strip():
            raise ValueError("Steering document content cannot be empty")
        document_kind = DocumentKind.steering(kind)
        existing = self.store.read_optional(project_id, document_kind)
        location = self.store.location(project_id, document_kind)

        if existing.exists and not force_regenerate:
            return {
                "project_id": project_id,
                "kind": document_kind.value,
                "location": location,
                "saved": False,
                "message": f"{location} already exists. Skipping (use force_regenerate to overwrite).",
            }

        with log_operation("save_steering_document", project_id=project_id, kind=document_kind.value):
            version = self.store.write(project_id, document_kind, content, existing.version)
        self.hooks.log_workflow_event("steering_saved", project_id=project_id, kind=document_kind.value)
        return {
            "project_id": project_id,
            "kind": document_kind.value,
            "location": location,
            "saved": True,
            "version": version,
            "message": f"Saved {location}.",
        }

    # ------------------------------------------------------------------
    # Plan and task generation
    # ------------------------------------------------------------------

    def save_plan(self, project_id: str, content: str, overwrite: bool = False) -> Dict[str, Any]:
        """Store the plan after checking it has parseable numbered requirements."""
        if not content or not content.strip():
            raise ValueError("Plan content cannot be empty")
        requirements = parse_plan_document(content)
        if not requirements:
            raise ValueError("The plan has no numbered requirements (### R-1: Title)")

        existing = self.store.read_optional(project_id, DocumentKind.PLAN)
        if existing.exists and not overwrite:
            raise ValueError(f"A plan already exists for project '{project_id}'; pass overwrite=True to replace it")

        issues = [issue for requirement in requirements for issue in requirement.validate()]
        with log_operation("save_plan", project_id=project_id, requirements=len(requirements)):
            version = self.store.write(project_id, DocumentKind.PLAN, content, existing.version)
        self.hooks.log_workflow_event("plan_saved", project_id=project_id, requirements=len(requirements))

        return {
            "project_id": project_id,
            "location": self.store.location(project_id, DocumentKind.PLAN),
            "version": version,
            "requirements": [requirement.to_dict() for requirement in requirements],
            "warnings": issues,
            "message": f"Plan saved with {len(requirements)} requirement(s).",
            "next_suggested_step": "generate_tasks",
            "workflow_tip": "Next: decompose the plan into dependency-linked tasks with generate_tasks",
        }

    def load_requirements(self, project_id: str) -> List[Requirement]:
        """Requirements of the stored plan.

        Raises:
            DocumentNotFound: no plan has been saved.
        """
        return parse_plan_document(self.store.read(project_id, DocumentKind.PLAN).content)

    @log_performance("generate_tasks")
    def generate_tasks(
        self,
        project_id: str,
        drafts: Optional[Iterable[Mapping[str, Any]]] = None,
        overwrite: bool = False,
    ) -> Dict[str, Any]:
        """Decompose the stored plan into a new tasks document."""
        requirements = self.load_requirements(project_id)
        existing = self.store.read_optional(project_id, DocumentKind.TASKS)
        if existing.exists and not overwrite:
            raise ValueError(f"Tasks already exist for project '{project_id}'; pass overwrite=True to replace them")

        parsed_drafts = [TaskDraft.from_dict(draft) for draft in drafts] if drafts is not None else None
        decomposition = decompose_plan(requirements, parsed_drafts, hooks=self.hooks, project_id=project_id)
        content = render_new_tasks_document(decomposition.graph, decomposition.summaries)
        version = self.store.write(project_id, DocumentKind.TASKS, content, existing.version)
        self.hooks.log_workflow_event("tasks_generated", project_id=project_id, tasks=len(decomposition.graph))

        report = build_schedule(decomposition.graph)
        return {
            "project_id": project_id,
            "location": self.store.location(project_id, DocumentKind.TASKS),
            "version": version,
            **decomposition.to_dict(),
            "ready": report.ready,
            "critical_path": report.critical_path,
            "message": f"Created {len(decomposition.graph)} task(s) from {len(requirements)} requirement(s).",
            "next_suggested_step": "task_orchestrator",
            "workflow_tip": "Next: run task_orchestrator to see which tasks can start now",
        }

    # ------------------------------------------------------------------
    # Reading the task graph
    # ------------------------------------------------------------------

    def _known_requirements(self, project_id: str) -> Optional[List[str]]:
        plan = self.store.read_optional(project_id, DocumentKind.PLAN)
        if not plan.exists:
            return None
        ids = [requirement.requirement_id for requirement in parse_plan_document(plan.content)]
        return ids or None

    def load_graph(self, project_id: str) -> Tuple[Document, TasksDocument, TaskGraph]:
        """Read and validate the tasks document.

        Raises:
            DocumentNotFound: no tasks document.
            GraphConstructionError: the document does not form a valid graph.
        """
        document = self.store.read(project_id, DocumentKind.TASKS)
        parsed = parse_tasks_document(document.content)
        graph = parsed.to_graph(
            known_requirements=self._known_requirements(project_id),
            hooks=self.hooks,
            project_id=project_id,
        )
        return document, parsed, graph

    @log_performance("orchestrate")
    def orchestrate(self, project_id: str) -> Dict[str, Any]:
        """Scheduling report: ready set, parallel groups, blockers and critical path."""
        _, _, graph = self.load_graph(project_id)
        report = build_schedule(graph.copy(), self.store.location(project_id, DocumentKind.TASKS))
        result = report.to_dict()

        if report.complete:
            message = f"All {report.total} task(s) are Done."
            next_step, tip = None, "Every task is verified and Done"
        elif report.ready:
            message = (
                f"{len(report.ready)} task(s) ready to start: {', '.join(report.ready)}. "
                f"{len(report.done)}/{report.total} done."
            )
            next_step = "task_executor"
            tip = "Dispatch one task_executor per ready task; they can run in parallel"
        elif report.in_progress:
            message = f"No task is ready; waiting on {', '.join(report.in_progress)} (In Progress)."
            next_step = "task_checker"
            tip = "Verify in-progress tasks with task_checker, or reset abandoned ones with reset_task"
        else:
            message = "No tasks to schedule."
            next_step, tip = "generate_tasks", "Generate tasks from the plan first"

        result.update({"message": message, "next_suggested_step": next_step, "workflow_tip": tip})
        return result

    def check_task(self, project_id: str, task_id: str) -> Dict[str, Any]:
        """Verify one task's checklist straight from the stored document."""
        document = self.store.read(project_id, DocumentKind.TASKS)
        location = self.store.location(project_id, DocumentKind.TASKS)
        try:
            criteria = locate_checklist(document.content, task_id)
        except Unverifiable as e:
            logger.warning(str(e))
            return {
                "project_id": project_id,
                "task_id": e.task_id,
                "decision": "UNVERIFIABLE",
                "reason": e.reason,
                "quoted_lines": [],
                "message": f"UNVERIFIABLE: {e.reason}",
                "next_suggested_step": "task_orchestrator",
                "workflow_tip": "Fix the task block so the task and its criteria appear exactly once",
            }

        verification = verify_criteria(task_id.strip().upper(), criteria)
        result = verification.to_dict(location)
        result.update(
            {
                "project_id": project_id,
                "message": verification.summary(),
                "next_suggested_step": "complete_task" if verification.passed else "toggle_criterion",
                "workflow_tip": (
                    "All criteria are checked; mark the task Done with complete_task"
                    if verification.passed
                    else "Finish the remaining criteria and check them off before completing"
                ),
            }
        )
        return result

    # ------------------------------------------------------------------
    # Tasks document updates
    # ------------------------------------------------------------------

    def _update_tasks_document(
        self,
        project_id: str,
        operation: str,
        mutate: Callable[[TaskGraph], T],
    ) -> Tuple[T, TaskGraph]:
        """Apply ``mutate`` to fresh state and persist, retrying lost write races."""
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            document, parsed, graph = self.load_graph(project_id)
            with log_operation(operation, project_id=project_id, attempt=attempt):
                outcome = mutate(graph)
                content = render_tasks_document(parsed, graph)
                if content == document.content:
                    return outcome, graph
                try:
                    self.store.write(project_id, DocumentKind.TASKS, content, document.version)
                except Conflict:
                    log_conflict(project_id, DocumentKind.TASKS.value, attempt, attempts)
                    if attempt == attempts:
                        raise
                    continue
            return outcome, graph

    def _mutation_response(
        self,
        project_id: str,
        result: MutationResult,
        graph: TaskGraph,
        message: str,
    ) -> Dict[str, Any]:
        response = result.to_dict()
        response["project_id"] = project_id
        if result.accepted:
            response["message"] = message
            response["ready"] = ready_tasks(graph)
        else:
            response["message"] = f"Rejected: {result.error}"
            response["suggestion"] = _suggestion_for(result)
        return response

    def claim_task(self, project_id: str, task_id: Optional[str] = None) -> Dict[str, Any]:
        """Move a ready task to In Progress and return its execution context.

        Without ``task_id`` the first ready task is claimed. Tasks whose
        dependencies are not all Done are refused.
        """

        def mutate(graph: TaskGraph) -> MutationResult:
            target = task_id
            if target is None:
                ready = ready_tasks(graph)
                if not ready:
                    raise ValueError(f"No task is ready to start in project '{project_id}'")
                target = ready[0]
            task = graph.task(target)
            if task.status is TaskStatus.NOT_STARTED:
                unmet = [dep for dep in task.dependencies if not graph.task(dep).is_done]
                if unmet:
                    return MutationResult(task.task_id, "status", False, task, task, UnmetDependency(task.task_id, unmet))
            return graph.set_status(target, TaskStatus.IN_PROGRESS)

        result, graph = self._update_tasks_document(project_id, "claim_task", mutate)
        response = self._mutation_response(
            project_id, result, graph, f"Task {result.task_id} is now {TaskStatus.IN_PROGRESS.label}."
        )
        if result.accepted:
            response["context"] = self._execution_context(project_id, graph, result.task_id)
            response["next_suggested_step"] = "toggle_criterion"
            response["workflow_tip"] = (
                "Implement the task, check off each acceptance criterion, then run task_checker"
            )
        else:
            response["next_suggested_step"] = "task_orchestrator"
        return response

    def _execution_context(self, project_id: str, graph: TaskGraph, task_id: str) -> Dict[str, Any]:
        task = graph.task(task_id)
        requirements: List[Dict[str, Any]] = []
        if task.requirements and self.store.exists(project_id, DocumentKind.PLAN):
            by_id = {req.requirement_id: req for req in self.load_requirements(project_id)}
            requirements = [by_id[rid].to_dict() for rid in task.requirements if rid in by_id]
        steering = {
            kind.value.split("/", 1)[1]: self.store.location(project_id, kind)
            for kind in STEERING_DOCUMENTS
            if self.store.exists(project_id, kind)
        }
        return {
            "task": task.to_dict(),
            "unchecked_criteria": [
                {"number": number, "text": criterion.text}
                for number, criterion in enumerate(task.criteria, start=1)
                if not criterion.checked
            ],
            "requirements": requirements,
            "steering_documents": steering,
            "tasks_location": self.store.location(project_id, DocumentKind.TASKS),
        }

    def complete_task(self, project_id: str, task_id: str) -> Dict[str, Any]:
        """Mark a task Done; refused unless its dependencies are Done and its checklist passes."""
        before: List[str] = []

        def mutate(graph: TaskGraph) -> MutationResult:
            before[:] = ready_tasks(graph)
            return graph.set_status(task_id, TaskStatus.DONE)

        result, graph = self._update_tasks_document(project_id, "complete_task", mutate)
        response = self._mutation_response(
            project_id, result, graph, f"Task {result.task_id} is {TaskStatus.DONE.label}."
        )
        response["verification"] = verify_criteria(result.task_id, result.current.criteria).to_dict(
            self.store.location(project_id, DocumentKind.TASKS)
        )
        if result.accepted:
            response["newly_ready"] = [tid for tid in response["ready"] if tid not in before]
            response["next_suggested_step"] = "task_orchestrator"
            response["workflow_tip"] = "Run task_orchestrator to dispatch newly unblocked tasks"
        else:
            response["next_suggested_step"] = "task_checker"
        return response

    def toggle_criterion(
        self,
        project_id: str,
        task_id: str,
        number: int,
        checked: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Set or flip acceptance criterion ``number`` (1-based) of a task."""
        if number < 1:
            raise ValueError("Criterion numbers start at 1")
        result, graph = self._update_tasks_document(
            project_id,
            "toggle_criterion",
            lambda graph: graph.toggle_criterion(task_id, number - 1, checked),
        )
        state = "checked" if result.current.criteria[number - 1].checked else "unchecked"
        response = self._mutation_response(
            project_id, result, graph, f"Criterion #{number} of {result.task_id} is {state}."
        )
        response["next_suggested_step"] = "task_checker"
        return response

    def add_criterion(self, project_id: str, task_id: str, text: str) -> Dict[str, Any]:
        """Append an unchecked acceptance criterion to a task that is not Done."""
        result, graph = self._update_tasks_document(
            project_id, "add_criterion", lambda graph: graph.add_criterion(task_id, text)
        )
        return self._mutation_response(
            project_id,
            result,
            graph,
            f"Added criterion #{len(result.current.criteria)} to {result.task_id}.",
        )

    def set_dependencies(self, project_id: str, task_id: str, blocked_by: Sequence[str]) -> Dict[str, Any]:
        """Replace a task's "Blocked By" list."""
        result, graph = self._update_tasks_document(
            project_id, "set_dependencies", lambda graph: graph.set_dependencies(task_id, blocked_by)
        )
        deps = ", ".join(result.current.dependencies) or "nothing"
        return self._mutation_response(project_id, result, graph, f"{result.task_id} is now blocked by {deps}.")

    def reset_task(self, project_id: str, task_id: str, cascade: bool = False) -> Dict[str, Any]:
        """Return a task to Not Started (and, with ``cascade``, its started dependents)."""
        result, graph = self._update_tasks_document(
            project_id, "reset_task", lambda graph: graph.reset(task_id, cascade=cascade)
        )
        reset_ids = ", ".join(result.affected)
        response = self._mutation_response(project_id, result, graph, f"Reset to Not Started: {reset_ids}.")
        response["reset"] = list(result.affected)
        return response

    def apply_status_batch(self, project_id: str, updates: Mapping[str, str]) -> Dict[str, Any]:
        """Apply several status changes in one write; failures are reported per task."""
        if not updates:
            raise ValueError("No status updates given")

        def mutate(graph: TaskGraph) -> Dict[str, Dict[str, Any]]:
            outcomes: Dict[str, Dict[str, Any]] = {}
            for task_id, status in updates.items():
                try:
                    outcomes[task_id] = graph.set_status(task_id, status).to_dict()
                except (SpecMcpError, ValueError) as e:
                    error = e.to_dict() if isinstance(e, SpecMcpError) else {"error": str(e)}
                    outcomes[task_id] = {"task_id": task_id, "accepted": False, **error}
            return outcomes

        outcomes, graph = self._update_tasks_document(project_id, "apply_status_batch", mutate)
        accepted = [tid for tid, outcome in outcomes.items() if outcome.get("accepted")]
        rejected = [tid for tid in outcomes if tid not in accepted]
        return {
            "project_id": project_id,
            "results": outcomes,
            "accepted": accepted,
            "rejected": rejected,
            "ready": ready_tasks(graph),
            "message": f"Applied {len(accepted)} of {len(outcomes)} status update(s).",
            "next_suggested_step": "task_orchestrator",
        }

    # ------------------------------------------------------------------
    # Workflow guidance
    # ------------------------------------------------------------------

    @staticmethod
    def get_workflow_guide() -> Dict[str, Any]:
        """Get comprehensive workflow guidance."""
        return {
            "workflow_overview": "Steering -> plan -> tasks -> orchestration -> execution -> verification",
            "steps": [step.to_dict() for step in WORKFLOW_STEPS],
            "tips": [
                "A task can only be marked Done when every acceptance criterion is checked",
                "A task can only be marked Done when every task it is blocked by is Done",
                "Ready tasks never depend on each other and can be executed in parallel",
                "Use reset_task to reopen a task; it refuses while dependents are started unless cascade is set",
            ],
        }


def _suggestion_for(result: MutationResult) -> str:
    code = getattr(result.error, "code", "")
    if code == "incomplete_checklist":
        return f"Check off the remaining criteria of {result.task_id} with toggle_criterion"
    if code == "unmet_dependency":
        return "Complete the blocking tasks first; task_orchestrator lists what is ready"
    if code == "dependents_active":
        return "Reset again with cascade=True to reopen the dependent tasks as well"
    return "Run task_orchestrator to see the current state of every task"

"""MCP server exposing the Spec MCP workflow and task engine tools."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from spec_mcp.config import Settings, resolve_root
from spec_mcp.errors import (
    Conflict,
    DocumentNotFound,
    GraphConstructionError,
    InconsistentStatus,
    SpecMcpError,
    Unverifiable,
)
from spec_mcp.models import SteeringKind
from spec_mcp.spec_logging import ensure_logging, log_error_with_context
from spec_mcp.workflow import WorkflowManager

mcp = FastMCP("spec-mcp")

DEFAULT_PROJECT = "."


def _manager(root: Optional[str]) -> WorkflowManager:
    settings = Settings.from_env()
    ensure_logging(settings.log_level, settings.log_file)
    resolved = resolve_root(root, settings)
    return WorkflowManager(settings.store(resolved), max_retries=settings.max_retries)


def _error_response(error: Exception) -> Dict[str, Any]:
    if isinstance(error, SpecMcpError):
        response = error.to_dict()
    else:
        response = {"error_code": "invalid_request", "error": str(error)}

    if isinstance(error, DocumentNotFound):
        step = {"plan": "save_plan", "tasks": "generate_tasks"}.get(error.kind, "generate_codebase_analysis")
        suggestion = f"Create the {error.kind} document first with {step}"
    elif isinstance(error, LookupError):
        step, suggestion = "task_orchestrator", "Check the task id and criterion number against task_orchestrator"
    elif isinstance(error, InconsistentStatus):
        step, suggestion = "task_orchestrator", f"Edit the tasks document so {error.task_id} is not Done until it passes the {error.gate} gate"
    elif isinstance(error, GraphConstructionError):
        step, suggestion = "set_task_dependencies", "Fix the tasks document so every task is unique and the dependencies form a DAG"
    elif isinstance(error, Conflict):
        step, suggestion = "task_orchestrator", "Another agent kept updating the tasks document; re-read the state and retry"
    elif isinstance(error, Unverifiable):
        step, suggestion = "task_checker", "Make sure the task and its Acceptance Criteria section appear exactly once"
    else:
        step, suggestion = "get_workflow_guide", "Check the tool arguments"

    response.update({"suggestion": suggestion, "next_suggested_step": step, "message": f"Error: {error}"})
    return response


def _call(operation: str, root: Optional[str], handler: Callable[[WorkflowManager], Dict[str, Any]], **context) -> Dict[str, Any]:
    try:
        return handler(_manager(root))
    except (SpecMcpError, ValueError, LookupError) as e:
        log_error_with_context(e, {"operation": operation, "root": root, **context})
        return _error_response(e)


@mcp.tool()
def generate_codebase_analysis(
    project_id: str = DEFAULT_PROJECT,
    product: Optional[str] = None,
    tech: Optional[str] = None,
    structure: Optional[str] = None,
    force_regenerate: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Check for steering documents (product.md, tech.md, structure.md) and save the ones supplied.
    Existing documents are skipped unless force_regenerate is set."""

    supplied = {SteeringKind.PRODUCT: product, SteeringKind.TECH: tech, SteeringKind.STRUCTURE: structure}

    def handler(manager: WorkflowManager) -> Dict[str, Any]:
        saved = [
            manager.save_steering_document(project_id, kind, content, force_regenerate)
            for kind, content in supplied.items()
            if content
        ]
        status = manager.steering_status(project_id, force_regenerate and not saved)
        status["saved"] = saved
        return status

    return _call("generate_codebase_analysis", root, handler, project_id=project_id)


@mcp.tool()
def save_plan(
    content: str,
    project_id: str = DEFAULT_PROJECT,
    overwrite: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 2: Save the plan. Requirements must be numbered (### R-1: Title) with EARS acceptance criteria."""

    return _call(
        "save_plan",
        root,
        lambda manager: manager.save_plan(project_id, content, overwrite),
        project_id=project_id,
    )


@mcp.tool()
def generate_tasks(
    project_id: str = DEFAULT_PROJECT,
    tasks: Optional[List[Dict[str, Any]]] = None,
    overwrite: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3: Decompose the saved plan into dependency-linked tasks (T-1, T-2, ...).
    Each optional task draft may carry title, criteria, blocked_by, requirements, evidence, task_id and summary.
    Without drafts, one task is created per requirement."""

    return _call(
        "generate_tasks",
        root,
        lambda manager: manager.generate_tasks(project_id, tasks, overwrite),
        project_id=project_id,
    )


@mcp.tool()
def task_orchestrator(project_id: str = DEFAULT_PROJECT, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 4: Report ready tasks, parallel groups, blocked tasks, execution waves and the critical path."""

    return _call("task_orchestrator", root, lambda manager: manager.orchestrate(project_id), project_id=project_id)


@mcp.tool()
def task_executor(
    task_id: Optional[str] = None,
    project_id: str = DEFAULT_PROJECT,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 5: Claim a ready task (moves it to In Progress) and return its execution context.
    Defaults to the first ready task when task_id is omitted."""

    return _call(
        "task_executor",
        root,
        lambda manager: manager.claim_task(project_id, task_id),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def task_checker(task_id: str, project_id: str = DEFAULT_PROJECT, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 6: Verify a task's acceptance criteria. PASS only when at least one criterion exists and all are checked."""

    return _call(
        "task_checker",
        root,
        lambda manager: manager.check_task(project_id, task_id),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def complete_task(task_id: str, project_id: str = DEFAULT_PROJECT, root: Optional[str] = None) -> Dict[str, Any]:
    """Mark a task Done. Refused while any blocking task is not Done or any criterion is unchecked."""

    return _call(
        "complete_task",
        root,
        lambda manager: manager.complete_task(project_id, task_id),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def update_task_statuses(
    updates: Dict[str, str],
    project_id: str = DEFAULT_PROJECT,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply several status changes ({"T-1": "in_progress", "T-2": "done"}) in order; each is accepted or rejected on its own."""

    return _call(
        "update_task_statuses",
        root,
        lambda manager: manager.apply_status_batch(project_id, updates),
        project_id=project_id,
    )


@mcp.tool()
def toggle_criterion(
    task_id: str,
    number: int,
    checked: Optional[bool] = None,
    project_id: str = DEFAULT_PROJECT,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Check, uncheck or flip acceptance criterion `number` (1-based) of a task."""

    return _call(
        "toggle_criterion",
        root,
        lambda manager: manager.toggle_criterion(project_id, task_id, number, checked),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def add_criterion(
    task_id: str,
    text: str,
    project_id: str = DEFAULT_PROJECT,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Append a new unchecked acceptance criterion to a task that is not Done."""

    return _call(
        "add_criterion",
        root,
        lambda manager: manager.add_criterion(project_id, task_id, text),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def set_task_dependencies(
    task_id: str,
    blocked_by: List[str],
    project_id: str = DEFAULT_PROJECT,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Replace the list of tasks that block `task_id`. Cycles and unknown ids are rejected."""

    return _call(
        "set_task_dependencies",
        root,
        lambda manager: manager.set_dependencies(project_id, task_id, blocked_by),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def reset_task(
    task_id: str,
    cascade: bool = False,
    project_id: str = DEFAULT_PROJECT,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Return a task to Not Started. With cascade, started dependent tasks are reset as well."""

    return _call(
        "reset_task",
        root,
        lambda manager: manager.reset_task(project_id, task_id, cascade),
        project_id=project_id,
        task_id=task_id,
    )


@mcp.tool()
def get_workflow_guide() -> Dict[str, Any]:
    """Get the recommended order of the workflow tools."""

    return WorkflowManager.get_workflow_guide()


@mcp.resource("spec-mcp://workflow")
def resource_workflow() -> str:
    """Resource view of the workflow steps."""

    guide = get_workflow_guide()
    lines = ["Spec MCP Workflow"]
    for step in guide["steps"]:
        lines.append(f"{step['step']}. {step['name']} ({step['tool']}): {step['description']}")
    return "\n".join(lines)


def main() -> None:
    settings = Settings.from_env()
    ensure_logging(settings.log_level, settings.log_file)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()

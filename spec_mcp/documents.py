"""Parsing and rendering of the plan and tasks markdown documents.

The tasks document is parsed into a line-preserving :class:`TasksDocument`.
Only the lines the engine owns are ever rewritten (the status line, the
``Blocked By`` / ``Blocks`` lines and checklist lines); every other line is
emitted verbatim, so rendering an unmodified document reproduces it exactly.

Task block layout::

    ### Task T-2: Title
    **Status**: 🟡 In Progress
    **Evidence**: [EXISTS] src/app.py
    **Requirement Traceability**: R-1, R-2
    **Blocked By**: T-1
    **Blocks**: T-3

    #### Acceptance Criteria (EARS)
    - [x] WHEN ... THEN THE SYSTEM SHALL ...
    - [ ] WHEN ... THEN THE SYSTEM SHALL ...
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Collection, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import MalformedDocument, UnknownDependency, Unverifiable
from .graph import TASK_ID_PATTERN, TaskGraph, normalize_task_id
from .models import (
    CHECKED_PREFIX,
    UNCHECKED_PREFIX,
    Criterion,
    Evidence,
    Requirement,
    Task,
    TaskStatus,
)
from .scheduler import execution_waves
from .spec_logging import ObservabilityHooks

TASK_HEADER = re.compile(r"^###\s+Task\s+([A-Za-z]+-\d+(?:\.\d+)*)\s*:?\s*(.*?)\s*$", re.IGNORECASE)
BLOCK_BOUNDARY = re.compile(r"^#{1,3}\s")
HEADING = re.compile(r"^#{1,6}\s")
CRITERIA_HEADING = re.compile(r"^#{2,6}\s+Acceptance Criteria\b", re.IGNORECASE)
FIELD_LINE = re.compile(r"^(?P<prefix>(?:- )?\*\*(?P<name>[^*]+)\*\*:[ \t]*)(?P<value>.*?)(?P<eol>\r?\n)?$")
EVIDENCE_TAG = re.compile(r"\[(EXISTS|EXAMPLE|NEEDED)\]", re.IGNORECASE)
REQUIREMENT_ID = re.compile(r"\bR-\d+(?:\.\d+)*\b", re.IGNORECASE)
REQUIREMENT_HEADER = re.compile(r"^#{2,4}\s+(R-\d+(?:\.\d+)*)\s*:?\s*(.*?)\s*$", re.IGNORECASE)
FENCE = re.compile(r"^\s*(```|~~~)")

DEPENDENCY_FIELDS = ("blocked by", "depends on", "dependencies")
CRITERIA_HEADING_TEXT = "#### Acceptance Criteria (EARS)"


def _split_eol(line: str) -> Tuple[str, str]:
    if line.endswith("\r\n"):
        return line[:-2], "\r\n"
    if line.endswith("\n"):
        return line[:-1], "\n"
    return line, ""


def _checkbox(line: str) -> Optional[bool]:
    """``True``/``False`` for a column-0 checklist line, ``None`` otherwise."""
    if line.startswith(CHECKED_PREFIX):
        return True
    if line.startswith(UNCHECKED_PREFIX):
        return False
    return None


def _task_ids(value: str) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(normalize_task_id(m.group(0)) for m in TASK_ID_PATTERN.finditer(value)))


def _id_prefix(task_id: str) -> str:
    return task_id.split("-", 1)[0]


def _format_ids(ids: Sequence[str]) -> str:
    return ", ".join(ids) if ids else "None"


# ----------------------------------------------------------------------
# Tasks document
# ----------------------------------------------------------------------


@dataclass
class TaskBlock:
    """Location of one task inside the tasks document (0-based line indexes)."""

    task_id: str
    title: str
    header_index: int
    end_index: int
    status_text: Optional[str] = None
    status_index: Optional[int] = None
    blocked_by: Tuple[str, ...] = ()
    blocked_by_index: Optional[int] = None
    blocks: Tuple[str, ...] = ()
    blocks_index: Optional[int] = None
    evidence: Optional[Evidence] = None
    requirements: Tuple[str, ...] = ()
    last_field_index: Optional[int] = None
    criteria: List[Criterion] = field(default_factory=list)
    criteria_indexes: List[int] = field(default_factory=list)
    criteria_heading_indexes: List[int] = field(default_factory=list)

    @property
    def unverifiable_reason(self) -> Optional[str]:
        if len(self.criteria_heading_indexes) > 1:
            return "more than one Acceptance Criteria section in the task block"
        return None

    def status(self) -> TaskStatus:
        """Parse the status marker; a missing status line means Not Started."""
        if self.status_text is None:
            return TaskStatus.NOT_STARTED
        for candidate in TaskStatus:
            if self.status_text.startswith(candidate.marker):
                return candidate
        raise MalformedDocument(
            f"Task '{self.task_id}' has unknown status marker {self.status_text!r}",
            line=self.status_index + 1 if self.status_index is not None else None,
        )


def _scan_blocks(lines: Sequence[str]) -> List[TaskBlock]:
    blocks: List[TaskBlock] = []
    current: Optional[TaskBlock] = None
    in_fence = False
    in_criteria = False

    for index, raw in enumerate(lines):
        line, _ = _split_eol(raw)
        if FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        header = TASK_HEADER.match(line)
        if header or BLOCK_BOUNDARY.match(line):
            if current is not None:
                current.end_index = index
                current = None
            if header:
                current = TaskBlock(
                    task_id=normalize_task_id(header.group(1)),
                    title=header.group(2),
                    header_index=index,
                    end_index=len(lines),
                )
                blocks.append(current)
            in_criteria = False
            continue

        if current is None:
            continue

        if HEADING.match(line):
            in_criteria = bool(CRITERIA_HEADING.match(line))
            if in_criteria:
                current.criteria_heading_indexes.append(index)
            continue

        checked = _checkbox(line)
        if checked is not None:
            if in_criteria or not current.criteria_heading_indexes:
                text = line[len(CHECKED_PREFIX):].strip()
                current.criteria.append(Criterion(text, checked, line=index + 1))
                current.criteria_indexes.append(index)
            continue

        match = FIELD_LINE.match(line)
        if not match:
            continue
        name = match.group("name").strip().lower()
        value = match.group("value").strip()
        if name == "status" and current.status_index is None:
            current.status_text, current.status_index = value, index
        elif name in DEPENDENCY_FIELDS and current.blocked_by_index is None:
            current.blocked_by, current.blocked_by_index = _task_ids(value), index
        elif name == "blocks" and current.blocks_index is None:
            current.blocks, current.blocks_index = _task_ids(value), index
        elif name == "evidence" and current.evidence is None:
            tag = EVIDENCE_TAG.search(value)
            current.evidence = Evidence(tag.group(1).upper()) if tag else None
        elif name.startswith("requirement"):
            current.requirements = tuple(
                dict.fromkeys(m.group(0).upper() for m in REQUIREMENT_ID.finditer(value))
            )
        else:
            continue
        current.last_field_index = index

    # criteria lines before an Acceptance Criteria heading do not count once
    # the block turns out to have one
    for block in blocks:
        if block.criteria_heading_indexes:
            first_heading = block.criteria_heading_indexes[0]
            kept = [
                (criterion, idx)
                for criterion, idx in zip(block.criteria, block.criteria_indexes)
                if idx > first_heading
            ]
            block.criteria = [criterion for criterion, _ in kept]
            block.criteria_indexes = [idx for _, idx in kept]

    # only ids sharing a prefix with some task header are edges
    prefixes = {_id_prefix(block.task_id) for block in blocks}
    for block in blocks:
        block.blocked_by = tuple(dep for dep in block.blocked_by if _id_prefix(dep) in prefixes)
        block.blocks = tuple(dep for dep in block.blocks if _id_prefix(dep) in prefixes)
    return blocks


@dataclass
class TasksDocument:
    """A parsed tasks document that can be re-rendered without loss."""

    lines: List[str]
    blocks: List[TaskBlock]

    @property
    def newline(self) -> str:
        for line in self.lines:
            _, eol = _split_eol(line)
            if eol:
                return eol
        return "\n"

    def block(self, task_id: str) -> TaskBlock:
        """Return the single block for ``task_id``.

        Raises:
            Unverifiable: the task header is absent or appears more than once.
        """
        wanted = normalize_task_id(task_id)
        matches = [block for block in self.blocks if block.task_id == wanted]
        if not matches:
            raise Unverifiable(wanted, "task header not found in the tasks document")
        if len(matches) > 1:
            lines = ", ".join(str(block.header_index + 1) for block in matches)
            raise Unverifiable(wanted, f"task header appears more than once (lines {lines})")
        return matches[0]

    def tasks(self) -> List[Task]:
        """Tasks in document order, with edges from both dependency fields.

        Raises:
            UnknownDependency: a ``Blocks`` line names a task with no block.
        """
        known = {block.task_id for block in self.blocks}
        extra: Dict[str, List[str]] = {}
        for block in self.blocks:
            unknown = [dependent for dependent in block.blocks if dependent not in known]
            if unknown:
                raise UnknownDependency(block.task_id, unknown, field="Blocks")
            for dependent in block.blocks:
                extra.setdefault(dependent, []).append(block.task_id)

        tasks = []
        for block in self.blocks:
            dependencies = tuple(dict.fromkeys(block.blocked_by + tuple(extra.get(block.task_id, ()))))
            tasks.append(
                Task(
                    task_id=block.task_id,
                    title=block.title,
                    status=block.status(),
                    criteria=tuple(block.criteria),
                    dependencies=dependencies,
                    evidence=block.evidence,
                    requirements=block.requirements,
                )
            )
        return tasks

    def unverifiable(self) -> Dict[str, str]:
        return {
            block.task_id: block.unverifiable_reason
            for block in self.blocks
            if block.unverifiable_reason
        }

    def to_graph(
        self,
        *,
        known_requirements: Optional[Collection[str]] = None,
        hooks: Optional[ObservabilityHooks] = None,
        project_id: Optional[str] = None,
    ) -> TaskGraph:
        """Build the validated dependency graph for this document."""
        return TaskGraph(
            self.tasks(),
            known_requirements=known_requirements,
            unverifiable=self.unverifiable(),
            hooks=hooks,
            project_id=project_id,
        )


def parse_tasks_document(text: str) -> TasksDocument:
    """Parse a tasks document.

    Raises:
        MalformedDocument: a task carries an unknown status marker.
    """
    lines = text.splitlines(keepends=True)
    document = TasksDocument(lines, _scan_blocks(lines))
    for block in document.blocks:
        block.status()
    return document


def locate_checklist(text: str, task_id: str) -> Tuple[Criterion, ...]:
    """Find the checklist of one task straight from document text.

    Raises:
        Unverifiable: the task header is absent or duplicated, or its block has
            more than one Acceptance Criteria section.
    """
    lines = text.splitlines(keepends=True)
    block = TasksDocument(lines, _scan_blocks(lines)).block(task_id)
    if block.unverifiable_reason:
        raise Unverifiable(block.task_id, block.unverifiable_reason)
    return tuple(block.criteria)


def _replace_value(raw: str, value: str) -> str:
    line, eol = _split_eol(raw)
    match = FIELD_LINE.match(line)
    return f"{match.group('prefix')}{value}{eol}"


def _replace_marker(raw: str, old: str, new: str) -> str:
    """Swap the status marker at the start of a field value, keeping any note after it."""
    line, eol = _split_eol(raw)
    match = FIELD_LINE.match(line)
    note = match.group("value")[len(old):]
    return f"{match.group('prefix')}{new}{note}{eol}"


def _block_tail(lines: Sequence[str], block: TaskBlock) -> int:
    """Index of the last content line of a block, ignoring trailing rules."""
    index = block.end_index - 1
    while index > block.header_index:
        stripped = lines[index].strip()
        if stripped and stripped not in ("---", "***", "___"):
            break
        index -= 1
    return index


def render_tasks_document(document: TasksDocument, graph: TaskGraph) -> str:
    """Render ``document`` with the state of ``graph`` applied.

    Owned lines whose value did not change are emitted untouched. Missing
    fields are inserted after the task's metadata lines, new criteria after
    its last checklist line. Tasks present in the graph but not in the
    document are appended as new blocks.
    """
    lines = document.lines
    newline = document.newline
    replacements: Dict[int, str] = {}
    inserts: Dict[int, List[str]] = {}

    def insert_after(index: int, new_lines: Iterable[str]) -> None:
        inserts.setdefault(index, []).extend(line + newline for line in new_lines)

    seen = set()
    for block in document.blocks:
        if block.task_id not in graph or block.task_id in seen:
            continue
        seen.add(block.task_id)
        task = graph.task(block.task_id)
        anchor = block.last_field_index if block.last_field_index is not None else block.header_index
        missing_fields = []

        if block.status_index is None:
            missing_fields.append(f"**Status**: {task.status.marker}")
        elif block.status() is not task.status:
            replacements[block.status_index] = _replace_marker(
                lines[block.status_index], block.status().marker, task.status.marker
            )

        if block.blocked_by_index is None:
            if task.dependencies:
                missing_fields.append(f"**Blocked By**: {_format_ids(task.dependencies)}")
        elif block.blocked_by != task.dependencies:
            replacements[block.blocked_by_index] = _replace_value(
                lines[block.blocked_by_index], _format_ids(task.dependencies)
            )

        if block.blocks_index is None:
            if task.dependents:
                missing_fields.append(f"**Blocks**: {_format_ids(task.dependents)}")
        elif block.blocks != task.dependents:
            replacements[block.blocks_index] = _replace_value(
                lines[block.blocks_index], _format_ids(task.dependents)
            )

        if missing_fields:
            insert_after(anchor, missing_fields)

        for criterion, index in zip(task.criteria, block.criteria_indexes):
            if criterion.checked != _checkbox(lines[index]):
                prefix = CHECKED_PREFIX if criterion.checked else UNCHECKED_PREFIX
                replacements[index] = prefix + lines[index][len(prefix):]

        added = [criterion.render() for criterion in task.criteria[len(block.criteria_indexes):]]
        if added:
            if block.criteria_indexes:
                insert_after(block.criteria_indexes[-1], added)
            elif block.criteria_heading_indexes:
                insert_after(block.criteria_heading_indexes[0], added)
            else:
                insert_after(_block_tail(lines, block), ["", CRITERIA_HEADING_TEXT] + added)

    output: List[str] = []
    for index, line in enumerate(lines):
        line = replacements.get(index, line)
        extra = inserts.get(index)
        if extra and not _split_eol(line)[1]:
            line += newline
        output.append(line)
        if extra:
            output.extend(extra)

    new_tasks = [task for task in graph.all_tasks() if task.task_id not in seen]
    if new_tasks:
        if output and not _split_eol(output[-1])[1]:
            output[-1] += newline
        for task in new_tasks:
            output.extend(line + newline for line in render_task_block(task))
    return "".join(output)


def render_task_block(task: Task, summary: Optional[str] = None) -> List[str]:
    """Lines of a freshly generated task block (without line endings)."""
    evidence = task.evidence.tag if task.evidence else Evidence.NEEDED.tag
    lines = [
        f"### Task {task.task_id}: {task.title}".rstrip(),
        f"**Status**: {task.status.marker}",
        f"**Evidence**: {evidence}",
        f"**Requirement Traceability**: {_format_ids(task.requirements)}",
        f"**Blocked By**: {_format_ids(task.dependencies)}",
        f"**Blocks**: {_format_ids(task.dependents)}",
        "",
    ]
    if summary:
        lines.extend(["#### Summary", f"- {summary}", ""])
    lines.append(CRITERIA_HEADING_TEXT)
    lines.extend(criterion.render() for criterion in task.criteria)
    lines.extend(["", "---", ""])
    return lines


def render_new_tasks_document(
    graph: TaskGraph,
    summaries: Optional[Mapping[str, str]] = None,
    title: str = "Implementation Tasks",
) -> str:
    """Render a complete tasks document for a freshly decomposed plan."""
    summaries = summaries or {}
    lines = [f"# {title}", "", "## Task Breakdown", ""]
    for task in graph.all_tasks():
        lines.extend(render_task_block(task, summaries.get(task.task_id)))

    waves = execution_waves(graph)
    if waves:
        lines.extend(["## Phases and Dependencies", ""])
        for number, wave in enumerate(waves, start=1):
            lines.append(f"- Phase {number}: {', '.join(wave)}")
        lines.append("")

    edges = [(dep, task.task_id) for task in graph.all_tasks() for dep in task.dependencies]
    if edges:
        lines.extend(["## Dependency Graph", "", "```mermaid", "graph TD"])
        lines.extend(f"    {dep.replace('-', '')} --> {dependent.replace('-', '')}" for dep, dependent in edges)
        lines.extend(["```", ""])
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Plan document
# ----------------------------------------------------------------------


def _strip_bullet(line: str) -> str:
    return line.strip()[2:].strip() if line.strip().startswith("- ") else line.strip()


def parse_plan_document(text: str) -> List[Requirement]:
    """Extract the numbered requirements (``### R-n: Title``) from a plan.

    Raises:
        MalformedDocument: a requirement id is declared twice.
    """
    requirements: List[Requirement] = []
    seen: Dict[str, int] = {}
    current: Optional[Dict[str, object]] = None
    in_criteria = False
    in_fence = False

    def close() -> None:
        if current is not None:
            requirements.append(
                Requirement(
                    requirement_id=current["id"],
                    title=current["title"],
                    description=current["description"],
                    acceptance_criteria=tuple(current["criteria"]),
                    files_affected=tuple(current["files"]),
                )
            )

    for number, raw in enumerate(text.splitlines(), start=1):
        if FENCE.match(raw):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        header = REQUIREMENT_HEADER.match(raw)
        if header or HEADING.match(raw):
            close()
            current = None
            in_criteria = False
            if header:
                requirement_id = header.group(1).upper()
                if requirement_id in seen:
                    raise MalformedDocument(
                        f"Requirement '{requirement_id}' is declared more than once "
                        f"(first on line {seen[requirement_id]})",
                        line=number,
                    )
                seen[requirement_id] = number
                current = {"id": requirement_id, "title": header.group(2), "description": "", "criteria": [], "files": []}
            continue
        if current is None or not raw.strip():
            continue

        indented = raw[:1] in (" ", "\t")
        item = _strip_bullet(raw)
        label, _, value = item.partition(":")
        key = label.strip().lower()

        if in_criteria and indented:
            if item:
                current["criteria"].append(item)
            continue
        in_criteria = False

        if key == "user story":
            current["description"] = value.strip()
        elif key == "files affected":
            current["files"] = [
                entry.strip().strip("`") for entry in value.split(",") if entry.strip().strip("`")
            ]
        elif key == "acceptance criteria":
            in_criteria = True
            if value.strip() and value.strip() != "...":
                current["criteria"].append(value.strip())

    close()
    return requirements

"""Shared fixtures for Spec MCP tests."""

import pytest

from spec_mcp.models import DocumentKind
from spec_mcp.store import MemoryDocumentStore

TASKS_MARKDOWN = """# Implementation Tasks

## Task Breakdown

### Task T-1: Set up storage
**Status**: ✅ Done
**Evidence**: [EXISTS] spec_mcp/store.py
**Requirement Traceability**: R-1
**Blocked By**: None
**Blocks**: T-2

#### Acceptance Criteria (EARS)
- [x] WHEN a document is written THEN THE SYSTEM SHALL persist it

---

### Task T-2: Parse tasks
**Status**: ⚪ Not Started
**Evidence**: [NEEDED]
**Requirement Traceability**: R-1
**Blocked By**: T-1
**Blocks**: T-3

#### Acceptance Criteria (EARS)
- [x] WHEN a task header is read THEN THE SYSTEM SHALL create a task
- [x] WHEN a checkbox is read THEN THE SYSTEM SHALL create a criterion

#### Testing
- [ ] Unit tests for the parser

---

### Task T-3: Schedule tasks
**Status**: ⚪ Not Started
**Evidence**: [NEEDED]
**Requirement Traceability**: R-2
**Blocked By**: T-2
**Blocks**: None

#### Acceptance Criteria (EARS)
- [ ] WHEN tasks are ready THEN THE SYSTEM SHALL list them

---
"""

PLAN_MARKDOWN = """# Plan

## 1. Requirements

### R-1: Store documents
- User Story: As an agent, I want documents stored, so that work survives restarts.
- Files Affected: `spec_mcp/store.py`, spec_mcp/models.py
- Acceptance Criteria:
  - WHEN a document is written THEN THE SYSTEM SHALL persist it
  - WHEN a stale version is written THEN THE SYSTEM SHALL report a conflict

### R-2: Schedule tasks
- User Story: As an orchestrator, I want the ready tasks, so that I can dispatch work.
- Files Affected: spec_mcp/scheduler.py
- Acceptance Criteria:
  - WHEN tasks are ready THEN THE SYSTEM SHALL list them

## 2. Notes
- Content generation happens outside the engine
"""


@pytest.fixture
def tasks_markdown():
    """Three-task document: T-1 Done, T-2 ready with 2/2 checked, T-3 blocked by T-2."""
    return TASKS_MARKDOWN


@pytest.fixture
def plan_markdown():
    """Plan with requirements R-1 (two criteria) and R-2 (one criterion)."""
    return PLAN_MARKDOWN


@pytest.fixture
def memory_store():
    return MemoryDocumentStore()


@pytest.fixture
def seeded_store(memory_store):
    """Memory store holding the sample plan and tasks for project ``demo``."""
    memory_store.write("demo", DocumentKind.PLAN, PLAN_MARKDOWN, None)
    memory_store.write("demo", DocumentKind.TASKS, TASKS_MARKDOWN, None)
    return memory_store

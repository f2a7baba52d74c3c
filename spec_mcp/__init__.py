"""Spec MCP - task workflow engine package."""

from .checklist import verify_task
from .graph import TaskGraph
from .models import Criterion, Requirement, Task, TaskStatus
from .scheduler import build_schedule
from .store import DocumentStore, FileDocumentStore, MemoryDocumentStore

__all__ = [
    "Criterion",
    "Requirement",
    "Task",
    "TaskStatus",
    "TaskGraph",
    "DocumentStore",
    "FileDocumentStore",
    "MemoryDocumentStore",
    "build_schedule",
    "verify_task",
]

__version__ = "1.1.0"

"""Runestone: stateful refactoring orchestration with atomic, validated actions."""

from .errors import RunestoneError
from .memory.schema import CodebaseState, OperationKind, RefactoringAction, StateQueryOptions
from .orchestrator import CycleReport, Orchestrator

__version__ = "0.1.0"

__all__ = [
    "CodebaseState",
    "CycleReport",
    "OperationKind",
    "Orchestrator",
    "RefactoringAction",
    "RunestoneError",
    "StateQueryOptions",
    "__version__",
]

"""Closed catalog of refactoring operations and their handlers."""

from __future__ import annotations

from typing import Dict

from ..memory.schema import OperationKind
from .backup import BackupHandler
from .base import OperationHandler
from .boundaries import BoundaryHandler
from .coupling import CouplingHandler
from .cycles import CycleHandler
from .extract import ExtractHandler

HANDLERS: Dict[OperationKind, OperationHandler] = {
    OperationKind.CREATE_BACKUP: BackupHandler(),
    OperationKind.BREAK_CYCLE: CycleHandler(),
    OperationKind.ENFORCE_BOUNDARY: BoundaryHandler(),
    OperationKind.EXTRACT_MODULE: ExtractHandler(),
    OperationKind.REDUCE_COUPLING: CouplingHandler(),
}


def normalize_operation(operation: OperationKind | str) -> OperationKind:
    """Resolve ``operation`` into an ``OperationKind`` member."""
    if isinstance(operation, OperationKind):
        return operation
    try:
        return OperationKind(operation)
    except ValueError as error:
        valid = ", ".join(item.value for item in OperationKind)
        raise KeyError(f"Unknown operation '{operation}'. Expected one of: {valid}") from error


def get_handler(operation: OperationKind | str) -> OperationHandler:
    return HANDLERS[normalize_operation(operation)]


__all__ = [
    "BackupHandler",
    "BoundaryHandler",
    "CouplingHandler",
    "CycleHandler",
    "ExtractHandler",
    "HANDLERS",
    "OperationHandler",
    "get_handler",
    "normalize_operation",
]

"""Decision making and atomic execution of refactoring actions."""

from .decision import DecisionEngine
from .executor import AtomicOperationExecutor, OperationResult

__all__ = ["AtomicOperationExecutor", "DecisionEngine", "OperationResult"]

"""Error taxonomy shared by the Runestone runtime."""

from __future__ import annotations

from typing import Any

__all__ = [
    "ActionValidationError",
    "AnalysisError",
    "InputError",
    "LockTimeoutError",
    "OperationError",
    "PersistenceError",
    "PreconditionError",
    "RollbackError",
    "RunestoneError",
    "SessionConflictError",
    "SessionStateError",
]


class RunestoneError(RuntimeError):
    """Base class for all errors raised by the runtime."""


class InputError(RunestoneError, ValueError):
    """Raised when a workspace path or request argument is missing or invalid."""


class AnalysisError(RunestoneError):
    """Raised when the analyzer cannot produce a codebase state."""


class PreconditionError(RunestoneError):
    """Raised when an action's preconditions do not hold at execution time."""

    def __init__(self, message: str, *, check: str | None = None) -> None:
        super().__init__(message)
        self.check = check


class ActionValidationError(RunestoneError):
    """Raised when post-application checks reject an action's effect."""

    def __init__(self, message: str, *, failures: list[str] | None = None) -> None:
        super().__init__(message)
        self.failures = list(failures or [])


class OperationError(RunestoneError):
    """Raised by operation handlers when an effect cannot be applied."""


class RollbackError(RunestoneError):
    """Raised when restoring a checkpoint fails; atomicity can no longer be claimed."""

    def __init__(self, message: str, *, checkpoint_id: str | None = None) -> None:
        super().__init__(message)
        self.checkpoint_id = checkpoint_id


class PersistenceError(RunestoneError):
    """Raised when the state store cannot read or write a record."""


class SessionConflictError(RunestoneError):
    """Raised when a non-terminal session already exists for a workspace and goal."""

    def __init__(self, message: str, *, session: Any = None) -> None:
        super().__init__(message)
        self.session = session


class SessionStateError(RunestoneError):
    """Raised when a session transition is not allowed from its current status."""


class LockTimeoutError(RunestoneError):
    """Raised when the workspace write lock cannot be acquired in time."""

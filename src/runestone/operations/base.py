"""Shared shape of an operation handler."""

from __future__ import annotations

from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple

from ..checks import ActionContext
from ..config import GoalThresholds
from ..errors import OperationError
from ..memory.schema import CodebaseState, OperationKind, RefactoringAction, RiskLevel, SessionState

__all__ = ["CHECK_FIXES", "OperationHandler"]

# Generic remediation hints keyed by the check that failed.
CHECK_FIXES: Dict[str, str] = {
    "syntax_valid": "Inspect the generated source; the transform produced code that does not parse.",
    "imports_resolve": "Add the missing names to the imported module or adjust the import.",
    "no_new_cycles": "Break the new cycle first or choose a different import to move.",
    "commands_pass": "Run the configured validation commands locally and fix the failures.",
    "target_exists": "Re-run analysis; the target file no longer exists.",
    "target_parses": "Fix the syntax error in the target before refactoring it.",
    "no_active_checkpoint": "Resolve the unfinished checkpoint left by an interrupted run.",
}


class OperationHandler:
    """One entry of the closed operation catalog.

    Subclasses set the class attributes and implement :meth:`candidates`,
    :meth:`scope` and :meth:`apply`.
    """

    kind: ClassVar[OperationKind]
    priority: ClassVar[int]
    risk_level: ClassVar[RiskLevel]
    estimated_time: ClassVar[int]
    preconditions: ClassVar[Tuple[str, ...]] = ()
    validations: ClassVar[Tuple[str, ...]] = ()
    # True when the handler only makes sense alongside other pending work.
    needs_pending_work: ClassVar[bool] = False

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState],
        thresholds: GoalThresholds,
    ) -> List[RefactoringAction]:
        raise NotImplementedError

    def scope(self, ctx: ActionContext) -> List[str]:
        """Workspace-relative paths the action may create, modify or delete."""
        return [ctx.action.target]

    def apply(self, ctx: ActionContext) -> List[str]:
        """Apply the effect and return the touched paths."""
        raise NotImplementedError

    def suggest_fixes(self, action: RefactoringAction, failed_checks: Sequence[str], reason: str) -> List[str]:
        fixes = [CHECK_FIXES[name] for name in failed_checks if name in CHECK_FIXES]
        return fixes or [f"Review {action.target} manually: {reason}"]

    def build_action(
        self,
        target: str,
        thresholds: GoalThresholds,
        *,
        details: Optional[Dict[str, Any]] = None,
        estimated_time: Optional[int] = None,
    ) -> RefactoringAction:
        return RefactoringAction(
            operation=self.kind,
            target=target,
            priority=thresholds.priorities.get(self.kind.value, self.priority),
            preconditions=self.preconditions,
            validations=self.validations,
            estimated_time=self.estimated_time if estimated_time is None else estimated_time,
            risk_level=self.risk_level,
            details=dict(details or {}),
        )

    @staticmethod
    def read_source(ctx: ActionContext, relative: Optional[str] = None) -> str:
        path = ctx.root / (relative or ctx.action.target)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as error:
            raise OperationError(f"Unable to read {relative or ctx.action.target}: {error}") from error

    @staticmethod
    def write_source(ctx: ActionContext, relative: str, source: str) -> None:
        path = ctx.root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(source, encoding="utf-8")

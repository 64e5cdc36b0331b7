"""reduce_coupling: drop module-level imports nothing reads."""

from __future__ import annotations

from typing import List, Optional

from ..checks import ActionContext
from ..config import GoalThresholds
from ..errors import OperationError
from ..memory.schema import CodebaseState, OperationKind, RefactoringAction, RiskLevel, SessionState
from ..refactor.imports import remove_unused_imports
from .base import OperationHandler


class CouplingHandler(OperationHandler):
    kind = OperationKind.REDUCE_COUPLING
    priority = 5
    risk_level = RiskLevel.LOW
    estimated_time = 20
    preconditions = ("target_exists", "target_parses")
    validations = ("syntax_valid", "coupling_reduced", "commands_pass")

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState],
        thresholds: GoalThresholds,
    ) -> List[RefactoringAction]:
        if state.architectural_metrics.coupling_score <= thresholds.max_coupling:
            return []
        return [
            self.build_action(
                entry.path,
                thresholds,
                details={"names": list(entry.unused_imports)},
                estimated_time=self.estimated_time + 5 * len(entry.unused_imports),
            )
            for entry in sorted(state.findings.coupling, key=lambda item: item.path)
            if entry.unused_imports
        ]

    def apply(self, ctx: ActionContext) -> List[str]:
        target = ctx.action.target
        names = ctx.action.details.get("names") or None
        source = self.read_source(ctx)
        updated, removed = remove_unused_imports(source, names)
        if not removed:
            raise OperationError(f"{target} has no unused imports left to remove")
        self.write_source(ctx, target, updated)
        ctx.notes["removed_imports"] = removed
        return [target]

"""break_cycle: defer one module-level import of an import cycle into function scope."""

from __future__ import annotations

from typing import Dict, List, Optional

from ..analysis.graph import module_name_for
from ..checks import ActionContext
from ..config import GoalThresholds
from ..errors import OperationError
from ..memory.schema import CodebaseState, OperationKind, RefactoringAction, RiskLevel, SessionState
from ..refactor.imports import defer_import
from .base import OperationHandler


class CycleHandler(OperationHandler):
    kind = OperationKind.BREAK_CYCLE
    priority = 2
    risk_level = RiskLevel.HIGH
    estimated_time = 120
    preconditions = ("target_exists", "target_parses", "import_present")
    validations = ("syntax_valid", "cycle_removed", "no_new_cycles", "commands_pass")

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState],
        thresholds: GoalThresholds,
    ) -> List[RefactoringAction]:
        metrics = state.architectural_metrics
        cycles = state.findings.cycles
        if metrics.circular_dependencies <= thresholds.max_circular_dependencies or not cycles:
            return []
        # Every edge of every cycle is a candidate; the first edge per source file wins.
        actions: Dict[str, RefactoringAction] = {}
        for cycle in cycles:
            if len(cycle) < 2:
                continue
            for index, source in enumerate(cycle):
                if source in actions:
                    continue
                import_target = cycle[(index + 1) % len(cycle)]
                actions[source] = self.build_action(
                    source,
                    thresholds,
                    details={
                        "module": module_name_for(import_target),
                        "import_target": import_target,
                        "cycle": list(cycle),
                    },
                )
        return [actions[key] for key in sorted(actions)]

    def apply(self, ctx: ActionContext) -> List[str]:
        module = ctx.action.details.get("module")
        if not module:
            raise OperationError("break_cycle action does not name the module to defer")
        target = ctx.action.target
        source = self.read_source(ctx)
        updated, functions = defer_import(
            source,
            module_name=module_name_for(target),
            is_package=target.endswith("__init__.py"),
            target_module=module,
        )
        self.write_source(ctx, target, updated)
        ctx.notes["deferred_into"] = functions
        return [target]

    def suggest_fixes(self, action, failed_checks, reason):
        fixes = []
        if "cycle_removed" in failed_checks:
            fixes.append(
                f"{action.target} still imports {action.details.get('module')} at module level; "
                "move the shared code into a third module both sides can import."
            )
        if "used at module level" in reason:
            fixes.append("Move the module-level use into a function, or break the cycle from the other side.")
        return fixes + super().suggest_fixes(action, failed_checks, reason)

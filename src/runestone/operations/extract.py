"""extract_module: split a god file by moving one self-contained definition out."""

from __future__ import annotations

from typing import List, Optional

from ..analysis.graph import module_name_for
from ..checks import ActionContext
from ..config import GoalThresholds
from ..errors import OperationError
from ..memory.schema import CodebaseState, OperationKind, RefactoringAction, RiskLevel, SessionState
from ..refactor.extract import ExtractionPlan, apply_extraction, plan_extraction
from .base import OperationHandler


class ExtractHandler(OperationHandler):
    kind = OperationKind.EXTRACT_MODULE
    priority = 4
    risk_level = RiskLevel.HIGH
    estimated_time = 300
    preconditions = ("target_exists", "target_is_python", "target_parses")
    validations = ("syntax_valid", "module_extracted", "imports_resolve", "no_new_cycles", "commands_pass")

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState],
        thresholds: GoalThresholds,
    ) -> List[RefactoringAction]:
        if state.architectural_metrics.god_files_count <= thresholds.max_god_files:
            return []
        return [
            self.build_action(
                god_file.path,
                thresholds,
                details={"lines": god_file.lines, "definitions": god_file.definitions},
            )
            for god_file in sorted(state.findings.god_files, key=lambda item: item.path)
        ]

    def _plan(self, ctx: ActionContext) -> Optional[ExtractionPlan]:
        try:
            return plan_extraction(self.read_source(ctx), ctx.action.target)
        except SyntaxError:
            return None

    def scope(self, ctx: ActionContext) -> List[str]:
        paths = [ctx.action.target]
        plan = self._plan(ctx)
        if plan is not None:
            paths.append(plan.new_path)
        return paths

    def apply(self, ctx: ActionContext) -> List[str]:
        target = ctx.action.target
        plan = self._plan(ctx)
        if plan is None:
            raise OperationError(f"{target} has no self-contained top-level definition to extract")
        if (ctx.root / plan.new_path).exists():
            raise OperationError(f"{plan.new_path} already exists")
        extraction = apply_extraction(
            self.read_source(ctx),
            relative_path=target,
            module_name=module_name_for(target),
            plan=plan,
        )
        self.write_source(ctx, plan.new_path, extraction.extracted_source)
        self.write_source(ctx, target, extraction.original_source)
        ctx.notes["extracted_path"] = plan.new_path
        ctx.notes["extracted_name"] = plan.name
        ctx.notes["pruned_imports"] = extraction.pruned_imports
        return [target, plan.new_path]

    def suggest_fixes(self, action, failed_checks, reason):
        fixes = []
        if "self-contained" in reason:
            fixes.append(
                f"Every top-level definition in {action.target} depends on module state; "
                "pass that state in explicitly so a definition can move."
            )
        if "already exists" in reason:
            fixes.append("Rename or remove the existing file that blocks the extraction.")
        return fixes + super().suggest_fixes(action, failed_checks, reason)

"""enforce_boundary: route imports of private modules through the owning package."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import List, Optional

from ..analysis.graph import module_name_for, private_owner
from ..checks import ActionContext
from ..config import GoalThresholds
from ..errors import OperationError
from ..memory.schema import CodebaseState, OperationKind, RefactoringAction, RiskLevel, SessionState
from ..refactor.imports import add_reexports, redirect_private_import
from .base import OperationHandler


class BoundaryHandler(OperationHandler):
    kind = OperationKind.ENFORCE_BOUNDARY
    priority = 3
    risk_level = RiskLevel.MODERATE
    estimated_time = 60
    preconditions = ("target_exists", "target_parses", "import_present")
    validations = ("syntax_valid", "imports_resolve", "boundary_respected", "no_new_cycles", "commands_pass")

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState],
        thresholds: GoalThresholds,
    ) -> List[RefactoringAction]:
        violations = state.findings.violations
        if state.architectural_metrics.encapsulation_violations <= thresholds.max_encapsulation_violations:
            return []
        actions = {}
        for violation in violations:
            owner = private_owner(violation.imported)
            # Namespace packages have no __init__.py to re-export from.
            if not owner or not violation.owner_has_init or violation.source in actions:
                continue
            actions[violation.source] = self.build_action(
                violation.source,
                thresholds,
                details={
                    "module": violation.imported,
                    "imported": violation.imported,
                    "public_module": owner,
                    "private_path": violation.target,
                    "package_init": owner_init_path(violation.target, violation.imported, owner),
                },
            )
        return [actions[key] for key in sorted(actions)]

    def _package_init(self, ctx: ActionContext) -> Optional[str]:
        package_init = ctx.action.details.get("package_init")
        if not package_init or not (ctx.root / package_init).is_file():
            return None
        return package_init

    def scope(self, ctx: ActionContext) -> List[str]:
        paths = [ctx.action.target]
        package_init = self._package_init(ctx)
        if package_init:
            paths.append(package_init)
        return paths

    def apply(self, ctx: ActionContext) -> List[str]:
        details = ctx.action.details
        imported = details.get("imported")
        public_module = details.get("public_module")
        if not imported or not public_module:
            raise OperationError("enforce_boundary action does not name the private module")
        package_init = self._package_init(ctx)
        if package_init is None:
            raise OperationError(f"Package {public_module} has no __init__.py to re-export from")

        target = ctx.action.target
        source = self.read_source(ctx)
        updated, names = redirect_private_import(
            source,
            module_name=module_name_for(target),
            is_package=target.endswith("__init__.py"),
            private_module=imported,
            public_module=public_module,
        )
        init_source = self.read_source(ctx, package_init)
        relative_module = imported[len(public_module) + 1 :]
        init_updated, added = add_reexports(init_source, relative_module=relative_module, names=names)

        self.write_source(ctx, target, updated)
        touched = [target]
        if added:
            self.write_source(ctx, package_init, init_updated)
            touched.append(package_init)
        ctx.notes["reexported"] = added
        return touched

    def suggest_fixes(self, action, failed_checks, reason):
        fixes = []
        if "imports_resolve" in failed_checks or "no_new_cycles" in failed_checks:
            fixes.append(
                f"Re-exporting from {action.details.get('public_module')} is not safe here; "
                "consider moving the needed names into a public module."
            )
        if "cannot be redirected" in reason or "No 'from" in reason:
            fixes.append("Rewrite the private import as 'from <private module> import <name>' first.")
        return fixes + super().suggest_fixes(action, failed_checks, reason)


def owner_init_path(private_path: str, imported: str, owner: str) -> str:
    """Path of the owning package's ``__init__.py`` for a private module file.

    ``pkg/_impl/helpers.py`` imported as ``pkg._impl.helpers`` and owned by
    ``pkg`` yields ``pkg/__init__.py``.
    """

    path = PurePosixPath(private_path)
    base = path.parent if path.name == "__init__.py" else path.with_suffix("")
    depth = len(imported.split(".")) - len(owner.split("."))
    return (base.parents[depth - 1] / "__init__.py").as_posix()

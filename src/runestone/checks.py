"""Named precondition and validation checks.

Actions refer to checks by name only; the executor resolves the names against
a :class:`CheckRegistry` at execution time. An unknown name is a failed check,
never a skipped one.
"""

from __future__ import annotations

import ast
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from .analysis.analyzer import ProjectAnalyzer, ProjectScan
from .errors import InputError
from .memory.schema import CheckpointStatus, RefactoringAction
from .memory.store import StateStore
from .refactor.imports import module_bindings
from .tools.commands import CommandValidator
from .tools.snapshot import file_digest, resolve_within

__all__ = [
    "ActionContext",
    "BACKUP_MANIFEST",
    "CheckFn",
    "CheckRegistry",
    "CheckResult",
    "PROJECT_ROOT",
]

LOGGER = logging.getLogger(__name__)

PROJECT_ROOT = "project-root"
BACKUP_MANIFEST = "manifest.json"


@dataclass(slots=True)
class CheckResult:
    name: str
    passed: bool
    detail: str = ""


@dataclass(slots=True)
class ActionContext:
    """Everything a handler or check needs while one action executes."""

    root: Path
    action: RefactoringAction
    scanner: ProjectAnalyzer
    state_dir: str = ".runestone"
    store: Optional[StateStore] = None
    checkpoint_id: Optional[str] = None
    commands: Sequence[str] = ()
    command_validator: Optional[CommandValidator] = None
    touched_files: List[str] = field(default_factory=list)
    notes: Dict[str, Any] = field(default_factory=dict)
    baseline: Optional[ProjectScan] = None
    _current: Optional[ProjectScan] = None

    @property
    def target_path(self) -> Path:
        if self.action.target == PROJECT_ROOT:
            return self.root
        return resolve_within(self.root, self.action.target)

    def capture_baseline(self) -> ProjectScan:
        if self.baseline is None:
            self.baseline = self.scanner.scan(self.root)
        return self.baseline

    def current_scan(self) -> ProjectScan:
        if self._current is None:
            self._current = self.scanner.scan(self.root)
        return self._current

    def invalidate(self) -> None:
        self._current = None


CheckFn = Callable[[ActionContext], "CheckResult | bool"]


# Preconditions ----------------------------------------------------------------------------


def workspace_exists(ctx: ActionContext) -> CheckResult:
    return CheckResult("workspace_exists", ctx.root.is_dir(), str(ctx.root))


def target_exists(ctx: ActionContext) -> CheckResult:
    try:
        exists = ctx.target_path.exists()
    except InputError as error:
        return CheckResult("target_exists", False, str(error))
    return CheckResult("target_exists", exists, ctx.action.target)


def target_is_python(ctx: ActionContext) -> CheckResult:
    return CheckResult("target_is_python", ctx.action.target.endswith(".py"), ctx.action.target)


def target_parses(ctx: ActionContext) -> CheckResult:
    try:
        ast.parse(ctx.target_path.read_text(encoding="utf-8"))
    except (OSError, SyntaxError, ValueError, InputError) as error:
        return CheckResult("target_parses", False, f"{ctx.action.target}: {error}")
    return CheckResult("target_parses", True)


def no_active_checkpoint(ctx: ActionContext) -> CheckResult:
    if ctx.store is None:
        return CheckResult("no_active_checkpoint", True, "no store attached")
    active = [item.id for item in ctx.store.list_checkpoints(status=CheckpointStatus.ACTIVE)]
    if active:
        return CheckResult("no_active_checkpoint", False, f"unresolved checkpoints: {', '.join(active)}")
    return CheckResult("no_active_checkpoint", True)


def import_present(ctx: ActionContext) -> CheckResult:
    module = ctx.action.details.get("module")
    if not module:
        return CheckResult("import_present", False, "action does not name an imported module")
    dependencies = ctx.capture_baseline().dependencies.get(ctx.action.target, [])
    if module in dependencies:
        return CheckResult("import_present", True)
    return CheckResult("import_present", False, f"{ctx.action.target} does not import {module}")


# Validations ------------------------------------------------------------------------------


def backup_exists(ctx: ActionContext) -> CheckResult:
    backup_dir = ctx.notes.get("backup_dir")
    if not backup_dir:
        return CheckResult("backup_exists", False, "no backup directory recorded")
    directory = ctx.root / backup_dir
    manifest_path = directory / BACKUP_MANIFEST
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        return CheckResult("backup_exists", False, f"unreadable manifest: {error}")
    for relative, digest in manifest.get("files", {}).items():
        copy = directory / relative
        if not copy.is_file() or file_digest(copy.read_bytes()) != digest:
            return CheckResult("backup_exists", False, f"backup copy of {relative} is missing or differs")
    return CheckResult("backup_exists", True, f"{len(manifest.get('files', {}))} files in {backup_dir}")


def _python_files(ctx: ActionContext) -> Iterable[str]:
    for relative in ctx.touched_files:
        if relative.endswith(".py") and (ctx.root / relative).is_file():
            yield relative


def syntax_valid(ctx: ActionContext) -> CheckResult:
    for relative in _python_files(ctx):
        try:
            ast.parse((ctx.root / relative).read_text(encoding="utf-8"), filename=relative)
        except SyntaxError as error:
            return CheckResult("syntax_valid", False, f"{relative}:{error.lineno}: {error.msg}")
    return CheckResult("syntax_valid", True)


def imports_resolve(ctx: ActionContext) -> CheckResult:
    """Names imported from workspace modules must exist in those modules."""
    scan = ctx.current_scan()
    bindings_cache: Dict[str, set] = {}
    for relative in _python_files(ctx):
        module = scan.modules.get(relative)
        if module is None:
            return CheckResult("imports_resolve", False, f"{relative} could not be analyzed")
        for record in module.imports:
            target_path = scan.module_index.get(record.base)
            if target_path is None or not record.names:
                continue
            if target_path not in bindings_cache:
                source = (ctx.root / target_path).read_text(encoding="utf-8")
                bindings_cache[target_path] = module_bindings(source)
            bound = bindings_cache[target_path]
            if "__getattr__" in bound:
                continue
            for name in record.names:
                if name in bound or f"{record.base}.{name}" in scan.module_index:
                    continue
                return CheckResult("imports_resolve", False, f"{relative}: {record.base} has no name {name}")
    return CheckResult("imports_resolve", True)


def cycle_removed(ctx: ActionContext) -> CheckResult:
    import_target = ctx.action.details.get("import_target")
    if not import_target:
        return CheckResult("cycle_removed", False, "action does not name the import to remove")
    edges = ctx.current_scan().graph.edges.get(ctx.action.target, [])
    if import_target in edges:
        return CheckResult("cycle_removed", False, f"{ctx.action.target} still imports {import_target} at module level")
    return CheckResult("cycle_removed", True)


def no_new_cycles(ctx: ActionContext) -> CheckResult:
    before = set(ctx.capture_baseline().graph.find_cycles())
    after = set(ctx.current_scan().graph.find_cycles())
    introduced = sorted(after - before)
    if introduced:
        rendered = "; ".join(" -> ".join(cycle) for cycle in introduced)
        return CheckResult("no_new_cycles", False, f"new import cycles: {rendered}")
    return CheckResult("no_new_cycles", True)


def boundary_respected(ctx: ActionContext) -> CheckResult:
    imported = ctx.action.details.get("imported")
    dependencies = ctx.current_scan().dependencies.get(ctx.action.target, [])
    if imported and imported in dependencies:
        return CheckResult("boundary_respected", False, f"{ctx.action.target} still imports {imported}")
    return CheckResult("boundary_respected", True)


def module_extracted(ctx: ActionContext) -> CheckResult:
    new_path = ctx.notes.get("extracted_path")
    name = ctx.notes.get("extracted_name")
    if not new_path or not name:
        return CheckResult("module_extracted", False, "no extraction recorded")
    extracted = ctx.root / new_path
    if not extracted.is_file():
        return CheckResult("module_extracted", False, f"{new_path} was not created")
    tree = ast.parse(extracted.read_text(encoding="utf-8"))
    if not any(getattr(node, "name", None) == name for node in tree.body):
        return CheckResult("module_extracted", False, f"{new_path} does not define {name}")
    original = ast.parse(ctx.target_path.read_text(encoding="utf-8"))
    for node in original.body:
        if isinstance(node, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == name:
            return CheckResult("module_extracted", False, f"{ctx.action.target} still defines {name}")
    return CheckResult("module_extracted", True, f"{name} -> {new_path}")


def coupling_reduced(ctx: ActionContext) -> CheckResult:
    before = ctx.capture_baseline()
    after = ctx.current_scan()
    target = ctx.action.target
    module = after.modules.get(target)
    if module is None:
        return CheckResult("coupling_reduced", False, f"{target} could not be analyzed")
    fan_before = len(before.dependencies.get(target, []))
    fan_after = len(after.dependencies.get(target, []))
    previous = before.modules.get(target)
    unused_before = len(previous.unused_imports) if previous else 0
    if fan_after > fan_before or len(module.unused_imports) >= max(unused_before, 1):
        return CheckResult(
            "coupling_reduced",
            False,
            f"fan-out {fan_before} -> {fan_after}, unused imports {unused_before} -> {len(module.unused_imports)}",
        )
    return CheckResult("coupling_reduced", True, f"fan-out {fan_before} -> {fan_after}")


def commands_pass(ctx: ActionContext) -> CheckResult:
    if not ctx.commands:
        return CheckResult("commands_pass", True, "no validation commands configured")
    validator = ctx.command_validator or CommandValidator()
    results = validator.run(ctx.commands, ctx.root)
    failed = [command for command, passed in results.items() if not passed]
    if failed:
        return CheckResult("commands_pass", False, f"failed: {', '.join(failed)}")
    return CheckResult("commands_pass", True)


DEFAULT_CHECKS: Dict[str, CheckFn] = {
    "workspace_exists": workspace_exists,
    "target_exists": target_exists,
    "target_is_python": target_is_python,
    "target_parses": target_parses,
    "no_active_checkpoint": no_active_checkpoint,
    "import_present": import_present,
    "backup_exists": backup_exists,
    "syntax_valid": syntax_valid,
    "imports_resolve": imports_resolve,
    "cycle_removed": cycle_removed,
    "no_new_cycles": no_new_cycles,
    "boundary_respected": boundary_respected,
    "module_extracted": module_extracted,
    "coupling_reduced": coupling_reduced,
    "commands_pass": commands_pass,
}


class CheckRegistry:
    """Lookup table from check names to callables."""

    def __init__(self, checks: Optional[Dict[str, CheckFn]] = None) -> None:
        self._checks: Dict[str, CheckFn] = dict(DEFAULT_CHECKS)
        if checks:
            self._checks.update(checks)

    def register(self, name: str, check: CheckFn) -> None:
        self._checks[name] = check

    def names(self) -> List[str]:
        return sorted(self._checks)

    def __contains__(self, name: object) -> bool:
        return name in self._checks

    def run(self, name: str, ctx: ActionContext) -> CheckResult:
        check = self._checks.get(name)
        if check is None:
            return CheckResult(name, False, f"unknown check '{name}'")
        try:
            outcome = check(ctx)
        except Exception as error:  # noqa: BLE001 - a crashing check is a failed check
            LOGGER.warning("Check %s raised %s", name, error)
            return CheckResult(name, False, f"{type(error).__name__}: {error}")
        if isinstance(outcome, CheckResult):
            return outcome
        return CheckResult(name, bool(outcome))

    def run_until_failure(self, names: Sequence[str], ctx: ActionContext) -> List[CheckResult]:
        """Run ``names`` in order and stop after the first failure."""
        results: List[CheckResult] = []
        for name in names:
            result = self.run(name, ctx)
            results.append(result)
            if not result.passed:
                break
        return results

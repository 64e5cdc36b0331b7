"""Default analyzer computing architectural metrics from Python sources."""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import libcst as cst
from libcst.helpers import get_full_name_for_node

from ..config import AnalysisSettings, GoalThresholds
from ..errors import AnalysisError, InputError
from ..memory.schema import (
    ArchitecturalFindings,
    ArchitecturalMetrics,
    BoundaryViolation,
    CodebaseState,
    GodFile,
    ModuleCoupling,
    RefactoringReadiness,
    StateQueryOptions,
)
from .graph import ImportGraph, module_name_for, private_owner, resolve_import_from
from .usage import unused_import_names

LOGGER = logging.getLogger(__name__)

# Mean module fan-out is halved to land on the 0-10 coupling scale.
COUPLING_SCALE = 0.5

READINESS_WEIGHTS = {
    "circular_dependencies": 35,
    "god_files": 25,
    "encapsulation_violations": 20,
    "coupling": 20,
}


class Analyzer(Protocol):
    """Contract for anything able to describe a workspace's architecture."""

    def analyze(self, root: Path, options: StateQueryOptions) -> CodebaseState:
        ...


@dataclass(slots=True)
class ImportRecord:
    """Module-level import statement reduced to what dependency analysis needs."""

    base: str
    names: Tuple[str, ...] = ()


@dataclass(slots=True)
class ModuleSource:
    """Parsed facts about one workspace module."""

    path: str
    module: str
    is_package: bool
    lines: int
    definitions: int
    imports: List[ImportRecord] = field(default_factory=list)
    unused_imports: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ProjectScan:
    """Result of scanning a workspace: modules, their import graph, and parse failures."""

    root: Path
    modules: Dict[str, ModuleSource]
    module_index: Dict[str, str]
    graph: ImportGraph
    dependencies: Dict[str, List[str]]
    unparsable: List[str]

    def path_for(self, module: str) -> Optional[str]:
        return self.module_index.get(module)


class _ImportCollector(cst.CSTVisitor):
    """Collect imports that run at module import time."""

    def __init__(self) -> None:
        self.records: List[ImportRecord] = []
        self.levels: List[int] = []

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return False

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return False

    def visit_If(self, node: cst.If) -> bool:
        return not _is_type_checking(node.test)

    def visit_Import(self, node: cst.Import) -> bool:
        for alias in node.names:
            name = get_full_name_for_node(alias.name)
            if name:
                self.records.append(ImportRecord(base=name))
                self.levels.append(0)
        return False

    def visit_ImportFrom(self, node: cst.ImportFrom) -> bool:
        module = get_full_name_for_node(node.module) if node.module is not None else None
        if module == "__future__":
            return False
        names: Tuple[str, ...] = ()
        if not isinstance(node.names, cst.ImportStar):
            names = tuple(get_full_name_for_node(alias.name) or "" for alias in node.names)
        self.records.append(ImportRecord(base=module or "", names=names))
        self.levels.append(len(node.relative))
        return False


class _DefinitionCounter(cst.CSTVisitor):
    def __init__(self) -> None:
        self.count = 0

    def visit_FunctionDef(self, node: cst.FunctionDef) -> None:
        self.count += 1

    def visit_ClassDef(self, node: cst.ClassDef) -> None:
        self.count += 1


def _is_type_checking(test: cst.BaseExpression) -> bool:
    if isinstance(test, cst.Name):
        return test.value == "TYPE_CHECKING"
    if isinstance(test, cst.Attribute):
        return test.attr.value == "TYPE_CHECKING"
    return False


def path_matches(relative: str, pattern: str) -> bool:
    """fnmatch ``relative`` against ``pattern``, letting a leading ``**/`` match zero directories."""
    if fnmatch.fnmatch(relative, pattern):
        return True
    while pattern.startswith("**/"):
        pattern = pattern[3:]
        if fnmatch.fnmatch(relative, pattern):
            return True
    return False


def discover_sources(root: Path, settings: AnalysisSettings) -> List[str]:
    """Return workspace-relative Python files selected by include/exclude patterns."""
    selected: List[str] = []
    for path in root.rglob("*.py"):
        if not path.is_file():
            continue
        relative = path.relative_to(root).as_posix()
        if not any(path_matches(relative, pattern) for pattern in settings.include):
            continue
        if any(path_matches(relative, pattern) for pattern in settings.exclude):
            continue
        selected.append(relative)
    return sorted(selected)


def assess_readiness(
    metrics: ArchitecturalMetrics,
    thresholds: GoalThresholds,
    *,
    unparsable: Sequence[str] = (),
) -> RefactoringReadiness:
    """Derive readiness from ``metrics`` against a goal's thresholds.

    Only circular dependencies and god files block readiness; the other
    metrics lower the score and are listed as blockers for visibility.
    """

    over = {
        "circular_dependencies": metrics.circular_dependencies > thresholds.max_circular_dependencies,
        "god_files": metrics.god_files_count > thresholds.max_god_files,
        "encapsulation_violations": metrics.encapsulation_violations > thresholds.max_encapsulation_violations,
        "coupling": metrics.coupling_score > thresholds.max_coupling,
    }
    blockers = [name for name in READINESS_WEIGHTS if over[name]]
    score = 100 - sum(READINESS_WEIGHTS[name] for name in blockers)
    ready = not over["circular_dependencies"] and not over["god_files"]
    if unparsable:
        blockers.append("syntax_errors")
        ready = False
    return RefactoringReadiness(ready=ready, score=max(0, score), blockers=tuple(blockers))


class ProjectAnalyzer:
    """libcst-based analyzer for Python workspaces.

    Every call re-reads the workspace; caching is the orchestrator's concern.
    """

    def __init__(
        self,
        settings: AnalysisSettings | None = None,
        thresholds: GoalThresholds | None = None,
    ) -> None:
        self.settings = settings or AnalysisSettings()
        self.thresholds = thresholds or GoalThresholds()

    @classmethod
    def from_settings(cls, settings, goal: str | None = None) -> "ProjectAnalyzer":
        return cls(settings.analysis, settings.thresholds_for(goal))

    def analyze(self, root: Path, options: StateQueryOptions | None = None) -> CodebaseState:
        options = options or StateQueryOptions()
        root = Path(root)
        if not root.is_dir():
            raise InputError(f"Workspace does not exist or is not a directory: {root}")
        root = root.resolve()
        try:
            scan = self.scan(root, include_dependencies=options.include_dependencies)
        except OSError as error:
            raise AnalysisError(f"Unable to read workspace {root}: {error}") from error

        cycles: Tuple[Tuple[str, ...], ...] = ()
        violations: Tuple[BoundaryViolation, ...] = ()
        coupling: Tuple[ModuleCoupling, ...] = ()
        coupling_score = 0.0
        if options.include_dependencies:
            cycles = tuple(scan.graph.find_cycles())
            violations = tuple(self._violations(scan))
            coupling = tuple(
                ModuleCoupling(
                    path=path,
                    fan_out=len(scan.dependencies.get(path, [])),
                    unused_imports=tuple(module.unused_imports),
                )
                for path, module in sorted(scan.modules.items())
            )
            if coupling:
                mean_fan_out = sum(entry.fan_out for entry in coupling) / len(coupling)
                coupling_score = min(10.0, round(mean_fan_out * COUPLING_SCALE, 2))

        god_files: Tuple[GodFile, ...] = ()
        if options.include_complexity:
            god_files = tuple(
                GodFile(path=module.path, lines=module.lines, definitions=module.definitions)
                for module in sorted(scan.modules.values(), key=lambda item: item.path)
                if module.lines > self.settings.god_file_lines
                or module.definitions > self.settings.god_file_definitions
            )

        findings = ArchitecturalFindings(
            cycles=cycles,
            violations=violations,
            god_files=god_files,
            coupling=coupling,
            unparsable=tuple(scan.unparsable),
        )
        metrics = ArchitecturalMetrics()
        readiness = RefactoringReadiness()
        if options.include_metrics:
            metrics = ArchitecturalMetrics(
                circular_dependencies=len(cycles),
                encapsulation_violations=len(violations),
                coupling_score=coupling_score,
                god_files_count=len(god_files),
            )
            readiness = assess_readiness(
                metrics,
                self.thresholds,
                unparsable=scan.unparsable if options.include_validation else (),
            )
        LOGGER.debug(
            "Analyzed %s: %d modules, %d cycles, %d violations, %d god files",
            root,
            len(scan.modules),
            len(cycles),
            len(violations),
            len(god_files),
        )
        return CodebaseState(
            workspace=root.as_posix(),
            architectural_metrics=metrics,
            refactoring_readiness=readiness,
            findings=findings,
            modules_scanned=len(scan.modules),
        )

    def scan(self, root: Path, *, include_dependencies: bool = True) -> ProjectScan:
        root = Path(root).resolve()
        modules: Dict[str, ModuleSource] = {}
        unparsable: List[str] = []
        for relative in discover_sources(root, self.settings):
            source = (root / relative).read_text(encoding="utf-8", errors="replace")
            parsed = self._parse_module(relative, source, include_dependencies=include_dependencies)
            if parsed is None:
                unparsable.append(relative)
                continue
            modules[relative] = parsed

        module_index = {module.module: path for path, module in modules.items() if module.module}
        dependencies: Dict[str, List[str]] = {}
        edges: Dict[str, List[str]] = {}
        if include_dependencies:
            for path, module in modules.items():
                targets = self._dependencies(module, module_index)
                dependencies[path] = sorted(set(targets))
                edges[path] = sorted(
                    {module_index[target] for target in targets if target in module_index} - {path}
                )
        return ProjectScan(
            root=root,
            modules=modules,
            module_index=module_index,
            graph=ImportGraph(modules.keys(), edges),
            dependencies=dependencies,
            unparsable=unparsable,
        )

    def _parse_module(self, relative: str, source: str, *, include_dependencies: bool) -> Optional[ModuleSource]:
        try:
            tree = cst.parse_module(source)
        except cst.ParserSyntaxError:
            LOGGER.debug("Skipping %s: does not parse", relative)
            return None
        counter = _DefinitionCounter()
        tree.visit(counter)
        module = ModuleSource(
            path=relative,
            module=module_name_for(relative),
            is_package=relative.endswith("__init__.py"),
            lines=len(source.splitlines()),
            definitions=counter.count,
        )
        if include_dependencies:
            collector = _ImportCollector()
            tree.visit(collector)
            for record, level in zip(collector.records, collector.levels):
                if level:
                    record.base = resolve_import_from(
                        module.module,
                        is_package=module.is_package,
                        level=level,
                        target=record.base or None,
                    )
                module.imports.append(record)
            if not module.is_package:
                try:
                    module.unused_imports = unused_import_names(source)
                except SyntaxError:
                    module.unused_imports = []
        return module

    def _dependencies(self, module: ModuleSource, module_index: Dict[str, str]) -> List[str]:
        """Resolve imported modules; internal ones map to workspace modules."""
        targets: List[str] = []
        for record in module.imports:
            if not record.base:
                continue
            if record.names:
                matched = False
                for name in record.names:
                    candidate = f"{record.base}.{name}"
                    if candidate in module_index:
                        targets.append(candidate)
                        matched = True
                if not matched:
                    targets.append(_longest_known_prefix(record.base, module_index))
            else:
                targets.append(_longest_known_prefix(record.base, module_index))
        return [target for target in targets if target and target != module.module]

    def _violations(self, scan: ProjectScan) -> Iterable[BoundaryViolation]:
        for path in sorted(scan.modules):
            importer = scan.modules[path].module
            for target in scan.dependencies.get(path, []):
                target_path = scan.module_index.get(target)
                if target_path is None:
                    continue
                owner = private_owner(target)
                if not owner:
                    continue
                if importer == owner or importer.startswith(owner + "."):
                    continue
                yield BoundaryViolation(
                    source=path,
                    target=target_path,
                    imported=target,
                    owner_has_init=scan.module_index.get(owner, "").endswith("__init__.py"),
                )


def _longest_known_prefix(dotted: str, module_index: Dict[str, str]) -> str:
    parts = dotted.split(".")
    for size in range(len(parts), 0, -1):
        candidate = ".".join(parts[:size])
        if candidate in module_index:
            return candidate
    return dotted


__all__ = [
    "Analyzer",
    "ImportRecord",
    "ModuleSource",
    "ProjectAnalyzer",
    "ProjectScan",
    "assess_readiness",
    "discover_sources",
    "path_matches",
]

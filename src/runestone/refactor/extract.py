"""Move a self-contained top-level definition into its own module."""

from __future__ import annotations

import ast
import builtins
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import List, Optional, Set

import libcst as cst

from ..analysis.graph import package_for
from ..errors import OperationError
from .imports import _bound_name, _insertion_index, _with_aliases, remove_unused_imports

__all__ = ["Extraction", "ExtractionPlan", "apply_extraction", "plan_extraction", "snake_case"]

_BUILTINS = set(dir(builtins)) | {"__name__", "__file__", "__doc__", "__spec__", "__package__"}


def snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


@dataclass(slots=True)
class ExtractionPlan:
    """Which definition moves where; computed without touching the file system."""

    name: str
    new_path: str
    new_module_stem: str
    lines: int


@dataclass(slots=True)
class Extraction:
    plan: ExtractionPlan
    original_source: str
    extracted_source: str
    pruned_imports: List[str]


def _free_names(node: ast.AST, own_name: str) -> Set[str]:
    loaded: Set[str] = set()
    stored: Set[str] = {own_name}
    for child in ast.walk(node):
        if isinstance(child, ast.Name):
            if isinstance(child.ctx, ast.Load):
                loaded.add(child.id)
            else:
                stored.add(child.id)
        elif isinstance(child, ast.arg):
            stored.add(child.arg)
        elif isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            stored.add(child.name)
        elif isinstance(child, (ast.Import, ast.ImportFrom)):
            for alias in child.names:
                stored.add(alias.asname or alias.name.split(".")[0])
        elif isinstance(child, ast.ExceptHandler) and child.name:
            stored.add(child.name)
    return loaded - stored - _BUILTINS


def _imported_names(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            if isinstance(node, ast.ImportFrom) and node.module == "__future__":
                continue
            for alias in node.names:
                if alias.name != "*":
                    names.add(alias.asname or alias.name.split(".")[0])
    return names


def plan_extraction(source: str, relative_path: str) -> Optional[ExtractionPlan]:
    """Pick the largest top-level definition that depends only on imports and builtins.

    Returns ``None`` when the module has fewer than two top-level definitions or
    none of them is self-contained.
    """

    tree = ast.parse(source)
    definitions = [
        node for node in tree.body if isinstance(node, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef))
    ]
    if len(definitions) < 2:
        return None
    imported = _imported_names(tree)
    path = PurePosixPath(relative_path)
    stem = path.stem
    candidates = []
    for node in definitions:
        if _free_names(node, node.name) - imported:
            continue
        lines = (node.end_lineno or node.lineno) - node.lineno + 1
        new_stem = f"{stem}_{snake_case(node.name)}"
        candidates.append((-lines, node.name, new_stem))
    if not candidates:
        return None
    negative_lines, name, new_stem = sorted(candidates)[0]
    new_path = (path.parent / f"{new_stem}.py").as_posix()
    return ExtractionPlan(name=name, new_path=new_path, new_module_stem=new_stem, lines=-negative_lines)


def _needed_imports(module: cst.Module, needed: Set[str]) -> List[cst.SimpleStatementLine]:
    statements: List[cst.SimpleStatementLine] = []
    for statement in module.body:
        if not isinstance(statement, cst.SimpleStatementLine):
            continue
        for small in statement.body:
            if isinstance(small, cst.ImportFrom):
                if isinstance(small.names, cst.ImportStar):
                    continue
                aliases = [alias for alias in small.names if _bound_name(alias, from_import=True) in needed]
            elif isinstance(small, cst.Import):
                aliases = [alias for alias in small.names if _bound_name(alias, from_import=False) in needed]
            else:
                continue
            if aliases:
                node = _with_aliases(small, aliases).with_changes(semicolon=cst.MaybeSentinel.DEFAULT)
                statements.append(cst.SimpleStatementLine(body=[node]))
    return statements


def _has_future_annotations(module: cst.Module) -> bool:
    for statement in module.body:
        if isinstance(statement, cst.SimpleStatementLine):
            for small in statement.body:
                if (
                    isinstance(small, cst.ImportFrom)
                    and isinstance(small.module, cst.Name)
                    and small.module.value == "__future__"
                    and not isinstance(small.names, cst.ImportStar)
                    and any(_bound_name(alias, from_import=True) == "annotations" for alias in small.names)
                ):
                    return True
    return False


def apply_extraction(source: str, *, relative_path: str, module_name: str, plan: ExtractionPlan) -> Extraction:
    """Split ``plan.name`` out of ``source``.

    The original module re-imports the moved name so existing importers keep
    working; imports only the moved definition needed are pruned from it.
    """

    module = cst.parse_module(source)
    moved: Optional[cst.BaseCompoundStatement] = None
    remaining = []
    for statement in module.body:
        if isinstance(statement, (cst.ClassDef, cst.FunctionDef)) and statement.name.value == plan.name:
            moved = statement
            continue
        remaining.append(statement)
    if moved is None:
        raise OperationError(f"Definition {plan.name} not found in {relative_path}")

    tree = ast.parse(source)
    definition = next(
        node
        for node in tree.body
        if isinstance(node, (ast.ClassDef, ast.FunctionDef, ast.AsyncFunctionDef)) and node.name == plan.name
    )
    needed = _free_names(definition, plan.name)

    header: List[cst.BaseStatement] = [
        cst.parse_statement(f'"""{plan.name} split out of {PurePosixPath(relative_path).name}."""\n')
    ]
    if _has_future_annotations(module):
        header.append(cst.parse_statement("from __future__ import annotations\n"))
    header.extend(_needed_imports(module, needed))
    new_module = cst.Module(
        body=[*header, moved.with_changes(leading_lines=[cst.EmptyLine(), cst.EmptyLine()])],
    )

    package = package_for(module_name, is_package=False)
    if package:
        reimport = f"from .{plan.new_module_stem} import {plan.name}\n"
    else:
        reimport = f"from {plan.new_module_stem} import {plan.name}\n"
    remaining.insert(_insertion_index(remaining), cst.parse_statement(reimport))
    rewritten = module.with_changes(body=remaining).code
    pruned_source, pruned = remove_unused_imports(rewritten, needed, keep={plan.name})
    return Extraction(
        plan=plan,
        original_source=pruned_source,
        extracted_source=new_module.code,
        pruned_imports=pruned,
    )

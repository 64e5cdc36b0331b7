"""Name-usage queries over Python source (``ast``-based)."""

from __future__ import annotations

import ast
from typing import Iterator, List, Optional, Set

__all__ = [
    "collect_used_names",
    "has_future_annotations",
    "module_level_imports",
    "module_level_names",
    "unused_import_names",
]


def _root_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return _root_name(node.value)
    return None


def _is_type_checking(test: ast.AST) -> bool:
    if isinstance(test, ast.Name):
        return test.id == "TYPE_CHECKING"
    if isinstance(test, ast.Attribute):
        return test.attr == "TYPE_CHECKING"
    return False


def _names_in_all(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for node in tree.body:
        if not isinstance(node, (ast.Assign, ast.AugAssign)):
            continue
        targets = node.targets if isinstance(node, ast.Assign) else [node.target]
        if not any(isinstance(target, ast.Name) and target.id == "__all__" for target in targets):
            continue
        if isinstance(node.value, (ast.List, ast.Tuple)):
            for element in node.value.elts:
                if isinstance(element, ast.Constant) and isinstance(element.value, str):
                    names.add(element.value)
    return names


def collect_used_names(tree: ast.Module) -> Set[str]:
    """Names read anywhere in ``tree`` plus names re-exported through ``__all__``."""
    used: Set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Load):
            used.add(node.id)
        elif isinstance(node, ast.Attribute) and isinstance(node.ctx, ast.Load):
            root = _root_name(node.value)
            if root:
                used.add(root)
    used.update(_names_in_all(tree))
    return used


def has_future_annotations(tree: ast.Module) -> bool:
    for node in tree.body:
        if isinstance(node, ast.ImportFrom) and node.module == "__future__":
            if any(alias.name == "annotations" for alias in node.names):
                return True
    return False


def module_level_imports(tree: ast.Module) -> Iterator[ast.Import | ast.ImportFrom]:
    """Yield imports executed at module import time.

    Top-level ``if``/``try`` blocks are followed; ``if TYPE_CHECKING`` blocks,
    functions and classes are not.
    """

    pending: List[ast.stmt] = list(tree.body)
    while pending:
        node = pending.pop(0)
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            yield node
        elif isinstance(node, ast.If):
            if not _is_type_checking(node.test):
                pending[0:0] = [*node.body, *node.orelse]
        elif isinstance(node, ast.Try):
            handlers = [stmt for handler in node.handlers for stmt in handler.body]
            pending[0:0] = [*node.body, *handlers, *node.orelse, *node.finalbody]


def _type_checking_names(tree: ast.Module) -> Set[str]:
    names: Set[str] = set()
    for node in tree.body:
        if isinstance(node, ast.If) and _is_type_checking(node.test):
            for child in ast.walk(node):
                if isinstance(child, (ast.Import, ast.ImportFrom)):
                    for alias in child.names:
                        names.add(alias.asname or alias.name.split(".")[0])
    return names


def unused_import_names(source: str) -> List[str]:
    """Return names bound by module-level imports that are never read.

    ``__future__`` and star imports are ignored. Names listed in ``__all__``
    and names imported under ``if TYPE_CHECKING`` count as used. Raises
    :class:`SyntaxError` when ``source`` does not parse.
    """

    tree = ast.parse(source)
    used = collect_used_names(tree) | _type_checking_names(tree)
    unused: Set[str] = set()
    for node in module_level_imports(tree):
        if isinstance(node, ast.ImportFrom) and node.module == "__future__":
            continue
        for alias in node.names:
            if alias.name == "*":
                continue
            if isinstance(node, ast.Import):
                bound = alias.asname or alias.name.split(".")[0]
            else:
                bound = alias.asname or alias.name
            if bound not in used:
                unused.add(bound)
    return sorted(unused)


class _ModuleLevelLoads(ast.NodeVisitor):
    """Collect names read while the module body executes."""

    def __init__(self, *, skip_annotations: bool) -> None:
        self.skip_annotations = skip_annotations
        self.names: Set[str] = set()

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            self.names.add(node.id)

    def visit_Import(self, node: ast.Import) -> None:
        return None

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        return None

    def _visit_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        for decorator in node.decorator_list:
            self.visit(decorator)
        for default in [*node.args.defaults, *node.args.kw_defaults]:
            if default is not None:
                self.visit(default)
        if not self.skip_annotations:
            arguments = [*node.args.posonlyargs, *node.args.args, *node.args.kwonlyargs]
            arguments.extend(arg for arg in (node.args.vararg, node.args.kwarg) if arg is not None)
            for argument in arguments:
                if argument.annotation is not None:
                    self.visit(argument.annotation)
            if node.returns is not None:
                self.visit(node.returns)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> None:
        self._visit_function(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if not self.skip_annotations:
            self.visit(node.annotation)
        if node.value is not None:
            self.visit(node.value)
        self.visit(node.target)

    def visit_If(self, node: ast.If) -> None:
        if _is_type_checking(node.test):
            return
        self.generic_visit(node)


def module_level_names(source: str) -> Set[str]:
    """Names read at import time; function bodies are excluded, class bodies are not."""
    tree = ast.parse(source)
    collector = _ModuleLevelLoads(skip_annotations=has_future_annotations(tree))
    collector.visit(tree)
    return collector.names

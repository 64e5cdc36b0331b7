"""libcst transforms that rewrite import statements."""

from __future__ import annotations

import ast
from typing import Iterable, List, Optional, Sequence, Set, Tuple, Union

import libcst as cst
from libcst.helpers import get_full_name_for_node

from ..analysis.graph import resolve_import_from
from ..analysis.usage import module_level_names, unused_import_names
from ..errors import OperationError

__all__ = [
    "add_reexports",
    "defer_import",
    "module_bindings",
    "redirect_private_import",
    "remove_unused_imports",
]

ImportNode = Union[cst.Import, cst.ImportFrom]


def _bound_name(alias: cst.ImportAlias, *, from_import: bool) -> str:
    if alias.asname is not None and isinstance(alias.asname.name, cst.Name):
        return alias.asname.name.value
    full = get_full_name_for_node(alias.name) or ""
    return full if from_import else full.split(".")[0]


def _with_aliases(node: ImportNode, aliases: Sequence[cst.ImportAlias]) -> ImportNode:
    kept = list(aliases)
    kept[-1] = kept[-1].with_changes(comma=cst.MaybeSentinel.DEFAULT)
    return node.with_changes(names=kept)


def _is_type_checking(test: cst.BaseExpression) -> bool:
    if isinstance(test, cst.Name):
        return test.value == "TYPE_CHECKING"
    if isinstance(test, cst.Attribute):
        return test.attr.value == "TYPE_CHECKING"
    return False


def _module_of(node: cst.ImportFrom) -> Optional[str]:
    return get_full_name_for_node(node.module) if node.module is not None else None


class _NameCollector(cst.CSTVisitor):
    """Identifiers read inside a node, ignoring attribute and keyword names."""

    def __init__(self) -> None:
        self.names: Set[str] = set()

    def visit_Name(self, node: cst.Name) -> None:
        self.names.add(node.value)

    def visit_Attribute(self, node: cst.Attribute) -> bool:
        node.value.visit(self)
        return False

    def visit_Arg(self, node: cst.Arg) -> bool:
        node.value.visit(self)
        return False

    def visit_ImportAlias(self, node: cst.ImportAlias) -> bool:
        return False


def _names_in(node: cst.CSTNode) -> Set[str]:
    collector = _NameCollector()
    node.visit(collector)
    return collector.names


# Unused imports ---------------------------------------------------------------------------


class _UnusedImportRemover(cst.CSTTransformer):
    def __init__(self, names: Set[str]) -> None:
        self.names = names
        self.removed: List[str] = []

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        return False

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        return False

    def visit_If(self, node: cst.If) -> bool:
        return not _is_type_checking(node.test)

    def leave_Import(
        self, original_node: cst.Import, updated_node: cst.Import
    ) -> Union[cst.Import, cst.RemovalSentinel]:
        return self._filter(updated_node, from_import=False)

    def leave_ImportFrom(
        self, original_node: cst.ImportFrom, updated_node: cst.ImportFrom
    ) -> Union[cst.ImportFrom, cst.RemovalSentinel]:
        if _module_of(updated_node) == "__future__" or isinstance(updated_node.names, cst.ImportStar):
            return updated_node
        return self._filter(updated_node, from_import=True)

    def _filter(self, node, *, from_import: bool):
        kept = []
        for alias in node.names:
            bound = _bound_name(alias, from_import=from_import)
            if bound in self.names:
                self.removed.append(bound)
            else:
                kept.append(alias)
        if not kept:
            return cst.RemoveFromParent()
        if len(kept) == len(node.names):
            return node
        return _with_aliases(node, kept)


def remove_unused_imports(
    source: str,
    names: Optional[Iterable[str]] = None,
    *,
    keep: Iterable[str] = (),
) -> Tuple[str, List[str]]:
    """Drop module-level imports whose bound names are never read.

    ``names`` restricts removal to a subset of the unused names; ``keep``
    protects names that must stay importable from this module.
    """

    unused = set(unused_import_names(source))
    if names is not None:
        unused &= set(names)
    unused -= set(keep)
    if not unused:
        return source, []
    module = cst.parse_module(source)
    remover = _UnusedImportRemover(unused)
    updated = module.visit(remover)
    return updated.code, sorted(set(remover.removed))


# Deferred imports -------------------------------------------------------------------------


def _matching_aliases(
    node: ImportNode,
    *,
    target_module: str,
    module_name: str,
    is_package: bool,
) -> List[cst.ImportAlias]:
    if isinstance(node, cst.Import):
        return [alias for alias in node.names if get_full_name_for_node(alias.name) == target_module]
    if isinstance(node.names, cst.ImportStar):
        return []
    base = resolve_import_from(
        module_name,
        is_package=is_package,
        level=len(node.relative),
        target=_module_of(node),
    )
    if base == target_module:
        return list(node.names)
    return [
        alias
        for alias in node.names
        if f"{base}.{get_full_name_for_node(alias.name)}" == target_module
    ]


def _is_docstring(statement: cst.BaseStatement) -> bool:
    if not isinstance(statement, cst.SimpleStatementLine) or len(statement.body) != 1:
        return False
    expression = statement.body[0]
    return isinstance(expression, cst.Expr) and isinstance(
        expression.value, (cst.SimpleString, cst.ConcatenatedString)
    )


def _prepend_statements(
    body: cst.BaseSuite, statements: Sequence[cst.SimpleStatementLine]
) -> cst.IndentedBlock:
    if isinstance(body, cst.SimpleStatementSuite):
        body = cst.IndentedBlock(body=[cst.SimpleStatementLine(body=body.body)])
    existing = list(body.body)
    index = 1 if existing and _is_docstring(existing[0]) else 0
    return body.with_changes(body=[*existing[:index], *statements, *existing[index:]])


class _ImportDeferrer(cst.CSTTransformer):
    def __init__(self, targets: List[Tuple[ImportNode, List[cst.ImportAlias]]], bound: Set[str]) -> None:
        self.targets = targets
        self.bound = bound
        self.depth = 0
        self.inserted: List[str] = []

    def _local_statements(self) -> List[cst.SimpleStatementLine]:
        return [
            cst.SimpleStatementLine(
                body=[_with_aliases(node, aliases).with_changes(semicolon=cst.MaybeSentinel.DEFAULT)]
            )
            for node, aliases in self.targets
        ]

    def visit_FunctionDef(self, node: cst.FunctionDef) -> None:
        self.depth += 1

    def leave_FunctionDef(self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef) -> cst.FunctionDef:
        self.depth -= 1
        if self.depth > 0:
            return updated_node
        if not (_names_in(original_node.body) & self.bound):
            return updated_node
        self.inserted.append(original_node.name.value)
        return updated_node.with_changes(body=_prepend_statements(updated_node.body, self._local_statements()))

    def leave_SimpleStatementLine(
        self, original_node: cst.SimpleStatementLine, updated_node: cst.SimpleStatementLine
    ) -> Union[cst.SimpleStatementLine, cst.RemovalSentinel]:
        if self.depth > 0:
            return updated_node
        body = []
        for original, updated in zip(original_node.body, updated_node.body):
            match = next((aliases for node, aliases in self.targets if node is original), None)
            if match is None:
                body.append(updated)
                continue
            remaining = [alias for alias in original.names if alias not in match]
            if remaining:
                body.append(_with_aliases(updated, remaining))
        if not body:
            return cst.RemoveFromParent()
        if len(body) == len(updated_node.body):
            return updated_node.with_changes(body=body)
        body[-1] = body[-1].with_changes(semicolon=cst.MaybeSentinel.DEFAULT)
        return updated_node.with_changes(body=body)


def defer_import(source: str, *, module_name: str, is_package: bool, target_module: str) -> Tuple[str, List[str]]:
    """Move the module-level import of ``target_module`` into the functions using it.

    Returns the new source and the names of the functions that received the
    local import. Raises :class:`OperationError` when there is no such import
    or when an imported name is needed while the module body executes.
    """

    module = cst.parse_module(source)
    targets: List[Tuple[ImportNode, List[cst.ImportAlias]]] = []
    for statement in module.body:
        if not isinstance(statement, cst.SimpleStatementLine):
            continue
        for small in statement.body:
            if not isinstance(small, (cst.Import, cst.ImportFrom)):
                continue
            aliases = _matching_aliases(
                small,
                target_module=target_module,
                module_name=module_name,
                is_package=is_package,
            )
            if aliases:
                targets.append((small, aliases))
    if not targets:
        raise OperationError(f"No module-level import of {target_module} found")

    bound = {
        _bound_name(alias, from_import=isinstance(node, cst.ImportFrom))
        for node, aliases in targets
        for alias in aliases
    }
    eager = bound & module_level_names(source)
    if eager:
        raise OperationError(
            f"Cannot defer import of {target_module}: {', '.join(sorted(eager))} used at module level"
        )

    deferrer = _ImportDeferrer(targets, bound)
    updated = module.visit(deferrer)
    return updated.code, deferrer.inserted


# Private module imports -------------------------------------------------------------------


class _PrivateImportRedirect(cst.CSTTransformer):
    def __init__(self, *, module_name: str, is_package: bool, private_module: str, public_module: str) -> None:
        self.module_name = module_name
        self.is_package = is_package
        self.private_module = private_module
        self.public_module = public_module
        self.names: List[str] = []

    def leave_ImportFrom(self, original_node: cst.ImportFrom, updated_node: cst.ImportFrom) -> cst.ImportFrom:
        base = resolve_import_from(
            self.module_name,
            is_package=self.is_package,
            level=len(updated_node.relative),
            target=_module_of(updated_node),
        )
        if base != self.private_module:
            return updated_node
        if isinstance(updated_node.names, cst.ImportStar):
            raise OperationError(f"Star import from {self.private_module} cannot be redirected")
        for alias in updated_node.names:
            name = get_full_name_for_node(alias.name) or ""
            if name not in self.names:
                self.names.append(name)
        return updated_node.with_changes(
            relative=[],
            module=cst.parse_expression(self.public_module),
        )


def redirect_private_import(
    source: str,
    *,
    module_name: str,
    is_package: bool,
    private_module: str,
    public_module: str,
) -> Tuple[str, List[str]]:
    """Rewrite ``from <private_module> import X`` into ``from <public_module> import X``.

    Returns the new source and the imported names, which the public package
    must re-export.
    """

    module = cst.parse_module(source)
    redirect = _PrivateImportRedirect(
        module_name=module_name,
        is_package=is_package,
        private_module=private_module,
        public_module=public_module,
    )
    updated = module.visit(redirect)
    if not redirect.names:
        raise OperationError(f"No 'from {private_module} import ...' statement to redirect")
    return updated.code, redirect.names


def module_bindings(source: str) -> Set[str]:
    """Names bound at the top level of a module."""
    tree = ast.parse(source)
    names: Set[str] = set()
    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(node.name)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                if alias.name != "*":
                    names.add(alias.asname or alias.name.split(".")[0])
        elif isinstance(node, ast.Assign):
            for target in node.targets:
                if isinstance(target, ast.Name):
                    names.add(target.id)
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            names.add(node.target.id)
    return names


def _insertion_index(body: Sequence[cst.BaseStatement]) -> int:
    index = 0
    for position, statement in enumerate(body):
        if position == 0 and _is_docstring(statement):
            index = 1
            continue
        if isinstance(statement, cst.SimpleStatementLine) and all(
            isinstance(small, (cst.Import, cst.ImportFrom)) for small in statement.body
        ):
            index = position + 1
    return index


def add_reexports(package_source: str, *, relative_module: str, names: Iterable[str]) -> Tuple[str, List[str]]:
    """Add ``from .<relative_module> import <names>`` to a package ``__init__``.

    Names the package already binds are skipped. Returns the new source and the
    names actually added.
    """

    existing = module_bindings(package_source) if package_source.strip() else set()
    missing = [name for name in names if name not in existing]
    if not missing:
        return package_source, []
    statement = cst.parse_statement(f"from .{relative_module} import {', '.join(missing)}\n")
    module = cst.parse_module(package_source)
    body = list(module.body)
    index = _insertion_index(body)
    body.insert(index, statement)
    return module.with_changes(body=body).code, missing

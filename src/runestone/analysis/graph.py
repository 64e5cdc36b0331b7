"""Module naming helpers and the import graph over workspace files."""

from __future__ import annotations

from dataclasses import dataclass
from importlib.util import resolve_name
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Set, Tuple

SOURCE_ROOTS = ("src",)


@dataclass(frozen=True)
class NodeMetrics:
    path: str
    fan_in: int
    fan_out: int


def module_name_for(relative_path: str) -> str:
    """Return the dotted module name for a workspace-relative ``.py`` path.

    A leading ``src/`` directory is treated as a source root, so
    ``src/pkg/core.py`` maps to ``pkg.core``.
    """

    parts = list(PurePosixPath(relative_path).with_suffix("").parts)
    if len(parts) > 1 and parts[0] in SOURCE_ROOTS:
        parts = parts[1:]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(part for part in parts if part)


def package_for(module_name: str, *, is_package: bool) -> str:
    if is_package:
        return module_name
    head, _, _ = module_name.rpartition(".")
    return head


def resolve_import_from(module_name: str, *, is_package: bool, level: int, target: str | None) -> str:
    """Resolve ``from <level dots><target> import ...`` relative to ``module_name``."""
    dotted = "." * level + (target or "")
    if not level:
        return dotted
    package = package_for(module_name, is_package=is_package)
    if not package:
        return dotted.lstrip(".")
    try:
        return resolve_name(dotted, package)
    except (ImportError, ValueError):
        return dotted.lstrip(".")


def private_owner(module: str) -> str | None:
    """Return the package that owns the first private segment of ``module``.

    ``pkg._impl.helpers`` is owned by ``pkg``. Dunder segments such as
    ``__main__`` are public.
    """

    parts = module.split(".")
    for index, part in enumerate(parts):
        if part.startswith("_") and not (part.startswith("__") and part.endswith("__")):
            return ".".join(parts[:index])
    return None


class ImportGraph:
    """Directed graph of internal imports keyed by workspace-relative path."""

    def __init__(self, nodes: Iterable[str], edges: Dict[str, Iterable[str]] | None = None) -> None:
        self.nodes: Set[str] = set(nodes)
        self.edges: Dict[str, List[str]] = {node: [] for node in self.nodes}
        for source, targets in (edges or {}).items():
            bucket = self.edges.setdefault(source, [])
            self.nodes.add(source)
            for target in targets:
                if target not in bucket:
                    bucket.append(target)
                self.nodes.add(target)
                self.edges.setdefault(target, [])
        for bucket in self.edges.values():
            bucket.sort()

    def fan_in_out(self) -> Dict[str, Tuple[int, int]]:
        fan_in: Dict[str, int] = {node: 0 for node in self.nodes}
        for targets in self.edges.values():
            for target in targets:
                fan_in[target] = fan_in.get(target, 0) + 1
        return {node: (fan_in.get(node, 0), len(self.edges.get(node, []))) for node in self.nodes}

    def metrics(self) -> Dict[str, NodeMetrics]:
        return {
            node: NodeMetrics(path=node, fan_in=fan_in, fan_out=fan_out)
            for node, (fan_in, fan_out) in self.fan_in_out().items()
        }

    def strongly_connected(self) -> List[List[str]]:
        """Tarjan's algorithm, iterative so deep graphs do not hit the recursion limit."""
        index_of: Dict[str, int] = {}
        lowlink: Dict[str, int] = {}
        on_stack: Set[str] = set()
        stack: List[str] = []
        components: List[List[str]] = []
        counter = 0

        for start in sorted(self.nodes):
            if start in index_of:
                continue
            work: List[Tuple[str, int]] = [(start, 0)]
            while work:
                node, child_index = work.pop()
                if child_index == 0:
                    index_of[node] = lowlink[node] = counter
                    counter += 1
                    stack.append(node)
                    on_stack.add(node)
                children = self.edges.get(node, [])
                descended = False
                for position in range(child_index, len(children)):
                    child = children[position]
                    if child not in index_of:
                        work.append((node, position + 1))
                        work.append((child, 0))
                        descended = True
                        break
                    if child in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[child])
                if descended:
                    continue
                if lowlink[node] == index_of[node]:
                    component: List[str] = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    components.append(sorted(component))
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
        return components

    def find_cycles(self) -> List[Tuple[str, ...]]:
        """Return one elementary cycle per cyclic component.

        Each cycle starts at its lexicographically smallest path and follows
        the smallest successor that stays inside the component, which keeps the
        output deterministic for a given graph.
        """

        cycles: List[Tuple[str, ...]] = []
        for component in self.strongly_connected():
            members = set(component)
            if len(component) == 1:
                node = component[0]
                if node in self.edges.get(node, []):
                    cycles.append((node,))
                continue
            cycle = self._cycle_within(component[0], members)
            if cycle:
                cycles.append(cycle)
        cycles.sort()
        return cycles

    def _cycle_within(self, start: str, members: Set[str]) -> Tuple[str, ...]:
        # Breadth-first search for the shortest path back to ``start``.
        parents: Dict[str, str] = {}
        frontier = [start]
        seen = {start}
        while frontier:
            next_frontier: List[str] = []
            for node in frontier:
                for child in self.edges.get(node, []):
                    if child not in members:
                        continue
                    if child == start:
                        path = [node]
                        while path[-1] != start:
                            path.append(parents[path[-1]])
                        return tuple(reversed(path))
                    if child not in seen:
                        seen.add(child)
                        parents[child] = node
                        next_frontier.append(child)
            frontier = next_frontier
        return ()


def rotate_cycle(cycle: Iterable[str]) -> Tuple[str, ...]:
    """Rotate ``cycle`` so it starts at its smallest element."""
    items = list(cycle)
    if not items:
        return ()
    pivot = items.index(min(items))
    return tuple(items[pivot:] + items[:pivot])


__all__ = [
    "ImportGraph",
    "NodeMetrics",
    "module_name_for",
    "package_for",
    "private_owner",
    "resolve_import_from",
    "rotate_cycle",
]

from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Callable, Dict, Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from runestone.config import Settings  # noqa: E402
from runestone.memory.store import StateStore  # noqa: E402

CYCLE_FILES: Dict[str, str] = {
    "app/__init__.py": "",
    "app/a.py": """
        from app import b


        def call_b():
            return b.value()


        def value():
            return 1
        """,
    "app/b.py": """
        from app import a


        def call_a():
            return a.value()


        def value():
            return 2
        """,
}

BOUNDARY_FILES: Dict[str, str] = {
    "pkg/__init__.py": '''
        """Public face of pkg."""
        ''',
    "pkg/_impl.py": """
        def helper():
            return 42
        """,
    "main.py": """
        from pkg._impl import helper


        def run():
            return helper()
        """,
}

COUPLING_FILES: Dict[str, str] = {
    "util.py": """
        import os
        import sys


        def argv():
            return sys.argv
        """,
}

GOD_FILE_FILES: Dict[str, str] = {
    "big.py": '''
        """Big module."""

        import json


        def dump(data):
            return json.dumps(data)


        class Registry:
            def __init__(self):
                self.items = []

            def add(self, item):
                self.items.append(item)
                return len(self.items)
        ''',
}

CLEAN_FILES: Dict[str, str] = {
    "app/__init__.py": "",
    "app/core.py": """
        def add(left, right):
            return left + right
        """,
}


def write_files(root: Path, files: Dict[str, str]) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip("\n"), encoding="utf-8")
    return root


@pytest.fixture()
def make_workspace(tmp_path: Path) -> Callable[..., Path]:
    def factory(files: Dict[str, str], name: str = "workspace") -> Path:
        root = tmp_path / name
        root.mkdir()
        return write_files(root, files)

    return factory


@pytest.fixture()
def cyclic_workspace(make_workspace) -> Path:
    return make_workspace(CYCLE_FILES, "cyclic")


@pytest.fixture()
def boundary_workspace(make_workspace) -> Path:
    return make_workspace(BOUNDARY_FILES, "boundary")


@pytest.fixture()
def coupling_workspace(make_workspace) -> Path:
    return make_workspace(COUPLING_FILES, "coupling")


@pytest.fixture()
def god_file_workspace(make_workspace) -> Path:
    return make_workspace(GOD_FILE_FILES, "god-file")


@pytest.fixture()
def clean_workspace(make_workspace) -> Path:
    return make_workspace(CLEAN_FILES, "clean")


@pytest.fixture()
def settings() -> Settings:
    return Settings.from_mapping()


@pytest.fixture()
def strict_coupling_settings() -> Settings:
    """Settings under which any external import counts as too much coupling."""
    return Settings.from_mapping({"goals": {"hexagonal_architecture": {"max_coupling": 0.0}}})


@pytest.fixture()
def small_god_file_settings() -> Settings:
    return Settings.from_mapping({"analysis": {"god_file_definitions": 2}})


@pytest.fixture()
def store_factory() -> Iterator[Callable[[Path], StateStore]]:
    opened = []

    def factory(root: Path) -> StateStore:
        store = StateStore(root)
        opened.append(store)
        return store

    yield factory
    for store in opened:
        store.close()


def snapshot_tree(root: Path) -> Dict[str, bytes]:
    """Every file under ``root`` outside the state directory, as bytes."""
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file() and ".runestone" not in path.relative_to(root).parts
    }


@pytest.fixture()
def tree_snapshot() -> Callable[[Path], Dict[str, bytes]]:
    return snapshot_tree

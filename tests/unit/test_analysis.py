from __future__ import annotations

import pytest

from runestone.analysis.analyzer import ProjectAnalyzer, assess_readiness, path_matches
from runestone.analysis.graph import (
    ImportGraph,
    module_name_for,
    private_owner,
    resolve_import_from,
    rotate_cycle,
)
from runestone.analysis.usage import module_level_names, unused_import_names
from runestone.config import GoalThresholds
from runestone.errors import InputError
from runestone.memory.schema import ArchitecturalMetrics, StateQueryOptions


def test_module_names_follow_src_layout_and_packages() -> None:
    assert module_name_for("src/pkg/core.py") == "pkg.core"
    assert module_name_for("pkg/__init__.py") == "pkg"
    assert module_name_for("main.py") == "main"


def test_relative_imports_resolve_against_the_importing_package() -> None:
    assert resolve_import_from("pkg.sub.mod", is_package=False, level=1, target="sibling") == "pkg.sub.sibling"
    assert resolve_import_from("pkg.sub", is_package=True, level=1, target="_impl") == "pkg.sub._impl"
    assert resolve_import_from("pkg.sub.mod", is_package=False, level=2, target=None) == "pkg"
    assert resolve_import_from("main", is_package=False, level=0, target="os.path") == "os.path"


def test_private_owner_ignores_dunder_segments() -> None:
    assert private_owner("pkg._impl.helpers") == "pkg"
    assert private_owner("pkg.__main__") is None
    assert private_owner("pkg.public") is None


def test_cycles_are_deterministic_and_start_at_the_smallest_path() -> None:
    graph = ImportGraph(
        ["c.py", "a.py", "b.py", "d.py", "e.py"],
        {"b.py": ["c.py"], "c.py": ["a.py"], "a.py": ["b.py"], "d.py": ["d.py"], "e.py": ["a.py"]},
    )

    assert graph.find_cycles() == [("a.py", "b.py", "c.py"), ("d.py",)]
    assert graph.fan_in_out()["a.py"] == (2, 1)
    assert rotate_cycle(["c.py", "a.py", "b.py"]) == ("a.py", "b.py", "c.py")


def test_unused_imports_respect_all_and_type_checking() -> None:
    source = (
        "from typing import TYPE_CHECKING\n"
        "import os\n"
        "import sys\n"
        "from json import dumps\n"
        "if TYPE_CHECKING:\n"
        "    from pathlib import Path\n"
        "__all__ = ['dumps']\n"
        "print(sys.argv)\n"
    )
    assert unused_import_names(source) == ["os"]


def test_module_level_names_skip_function_bodies() -> None:
    source = "import a\nimport b\n\nVALUE = a.x\n\ndef f(arg=None):\n    return b.y\n"
    names = module_level_names(source)
    assert "a" in names
    assert "b" not in names


def test_path_matches_lets_double_star_match_zero_directories() -> None:
    assert path_matches("__pycache__/x.py", "**/__pycache__/**")
    assert path_matches(".runestone/backups/id/app.py", ".runestone/**")
    assert not path_matches("app/core.py", ".runestone/**")


def test_analyzer_reports_cycles(cyclic_workspace) -> None:
    state = ProjectAnalyzer().analyze(cyclic_workspace, StateQueryOptions())

    assert state.architectural_metrics.circular_dependencies == 1
    assert state.findings.cycles == (("app/a.py", "app/b.py"),)
    assert state.refactoring_readiness.ready is False
    assert "circular_dependencies" in state.refactoring_readiness.blockers
    assert state.modules_scanned == 3


def test_analyzer_reports_boundary_violations(boundary_workspace) -> None:
    state = ProjectAnalyzer().analyze(boundary_workspace)

    assert state.architectural_metrics.encapsulation_violations == 1
    violation = state.findings.violations[0]
    assert (violation.source, violation.target, violation.imported) == ("main.py", "pkg/_impl.py", "pkg._impl")


def test_analyzer_reports_coupling_and_unused_imports(coupling_workspace) -> None:
    state = ProjectAnalyzer().analyze(coupling_workspace)

    assert state.architectural_metrics.coupling_score == 1.0
    entry = state.findings.coupling[0]
    assert (entry.path, entry.fan_out, entry.unused_imports) == ("util.py", 2, ("os",))


def test_analyzer_option_flags_gate_the_findings(cyclic_workspace) -> None:
    analyzer = ProjectAnalyzer()
    without_dependencies = analyzer.analyze(cyclic_workspace, StateQueryOptions(include_dependencies=False))
    assert without_dependencies.findings.cycles == ()
    assert without_dependencies.architectural_metrics.circular_dependencies == 0

    without_metrics = analyzer.analyze(cyclic_workspace, StateQueryOptions(include_metrics=False))
    assert without_metrics.findings.cycles
    assert without_metrics.architectural_metrics == ArchitecturalMetrics()


def test_unparsable_files_block_readiness_when_validation_is_requested(make_workspace) -> None:
    root = make_workspace({"ok.py": "x = 1\n", "broken.py": "def oops(:\n"})

    state = ProjectAnalyzer().analyze(root, StateQueryOptions(include_validation=True))

    assert state.findings.unparsable == ("broken.py",)
    assert state.refactoring_readiness.ready is False
    assert "syntax_errors" in state.refactoring_readiness.blockers


def test_state_directory_is_not_analyzed(clean_workspace) -> None:
    backup = clean_workspace / ".runestone" / "backups" / "id" / "app" / "core.py"
    backup.parent.mkdir(parents=True)
    backup.write_text("import app.core\n", encoding="utf-8")

    state = ProjectAnalyzer().analyze(clean_workspace)

    assert state.modules_scanned == 2


def test_missing_workspace_is_an_input_error(tmp_path) -> None:
    with pytest.raises(InputError):
        ProjectAnalyzer().analyze(tmp_path / "absent")


def test_readiness_is_consistent_with_thresholds() -> None:
    thresholds = GoalThresholds(max_coupling=3.0)
    ready = assess_readiness(ArchitecturalMetrics(coupling_score=5.0), thresholds)
    assert ready.ready is True
    assert ready.blockers == ("coupling",)
    assert ready.score == 80

    blocked = assess_readiness(ArchitecturalMetrics(circular_dependencies=1, god_files_count=2), thresholds)
    assert blocked.ready is False
    assert blocked.score == 40

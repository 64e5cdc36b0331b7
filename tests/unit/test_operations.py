from __future__ import annotations

import pytest

from runestone.analysis.analyzer import ProjectAnalyzer
from runestone.checks import PROJECT_ROOT
from runestone.memory.schema import (
    ArchitecturalFindings,
    ArchitecturalMetrics,
    CodebaseState,
    GodFile,
    OperationKind,
    RiskLevel,
    SessionProgress,
    SessionState,
)
from runestone.operations import (
    HANDLERS,
    BackupHandler,
    BoundaryHandler,
    CouplingHandler,
    CycleHandler,
    ExtractHandler,
    get_handler,
    normalize_operation,
)
from runestone.operations.boundaries import owner_init_path


def test_catalog_covers_every_operation_kind() -> None:
    assert set(HANDLERS) == set(OperationKind)
    assert isinstance(get_handler("break_cycle"), CycleHandler)
    assert normalize_operation(OperationKind.EXTRACT_MODULE) is OperationKind.EXTRACT_MODULE
    with pytest.raises(KeyError, match="Unknown operation"):
        normalize_operation("rewrite_everything")


def test_cycle_candidates_name_the_import_to_defer(cyclic_workspace, settings) -> None:
    state = ProjectAnalyzer().analyze(cyclic_workspace)

    actions = CycleHandler().candidates(state, None, settings.thresholds_for(None))

    assert [action.target for action in actions] == ["app/a.py", "app/b.py"]
    first = actions[0]
    assert first.details["module"] == "app.b"
    assert first.details["import_target"] == "app/b.py"
    assert first.priority == 2
    assert first.risk_level == RiskLevel.HIGH
    assert "import_present" in first.preconditions
    assert "cycle_removed" in first.validations


def test_boundary_candidates_point_at_the_owning_package(boundary_workspace, settings) -> None:
    state = ProjectAnalyzer().analyze(boundary_workspace)

    (action,) = BoundaryHandler().candidates(state, None, settings.thresholds_for(None))

    assert action.key == "enforce_boundary:main.py"
    assert action.details["public_module"] == "pkg"
    assert action.details["package_init"] == "pkg/__init__.py"


def test_boundary_candidates_respect_the_goal_allowance(boundary_workspace, settings) -> None:
    state = ProjectAnalyzer().analyze(boundary_workspace)
    assert BoundaryHandler().candidates(state, None, settings.thresholds_for("modular_monolith")) == []


def test_namespace_package_violations_are_not_proposed(boundary_workspace, settings) -> None:
    (boundary_workspace / "pkg" / "__init__.py").unlink()
    state = ProjectAnalyzer().analyze(boundary_workspace)

    (violation,) = state.findings.violations
    assert violation.owner_has_init is False
    assert BoundaryHandler().candidates(state, None, settings.thresholds_for(None)) == []


def test_owner_init_path_walks_up_to_the_owner() -> None:
    assert owner_init_path("pkg/_impl.py", "pkg._impl", "pkg") == "pkg/__init__.py"
    assert owner_init_path("src/pkg/_impl/helpers.py", "pkg._impl.helpers", "pkg") == "src/pkg/__init__.py"
    assert owner_init_path("pkg/_impl/__init__.py", "pkg._impl", "pkg") == "pkg/__init__.py"


def test_coupling_candidates_only_when_over_threshold(coupling_workspace, settings, strict_coupling_settings) -> None:
    state = ProjectAnalyzer().analyze(coupling_workspace)
    handler = CouplingHandler()

    assert handler.candidates(state, None, settings.thresholds_for(None)) == []
    (action,) = handler.candidates(state, None, strict_coupling_settings.thresholds_for(None))
    assert action.key == "reduce_coupling:util.py"
    assert action.details == {"names": ["os"]}
    assert action.estimated_time == 25


def test_extract_candidates_follow_god_files(settings) -> None:
    state = CodebaseState(
        workspace="/ws",
        architectural_metrics=ArchitecturalMetrics(god_files_count=1),
        findings=ArchitecturalFindings(god_files=(GodFile(path="big.py", lines=900, definitions=12),)),
    )

    (action,) = ExtractHandler().candidates(state, None, settings.thresholds_for(None))

    assert action.key == "extract_module:big.py"
    assert action.details == {"lines": 900, "definitions": 12}
    assert ExtractHandler().candidates(state, None, settings.thresholds_for("modular_monolith")) == []


def test_backup_is_proposed_until_one_succeeded(settings) -> None:
    state = CodebaseState(workspace="/ws")
    thresholds = settings.thresholds_for(None)
    fresh = SessionState(id="s", workspace="/ws", target_goal="hexagonal_architecture")
    backed_up = SessionState(
        id="s",
        workspace="/ws",
        target_goal="hexagonal_architecture",
        progress=SessionProgress(operations={"create_backup": 1}),
    )

    (action,) = BackupHandler().candidates(state, fresh, thresholds)
    assert action.target == PROJECT_ROOT
    assert action.risk_level == RiskLevel.MINIMAL
    assert BackupHandler().candidates(state, backed_up, thresholds) == []


def test_goal_priorities_override_handler_defaults(boundary_workspace, settings) -> None:
    state = ProjectAnalyzer().analyze(boundary_workspace)
    (action,) = BoundaryHandler().candidates(state, None, settings.thresholds_for("layered_architecture"))
    assert action.priority == 2


def test_fix_suggestions_fall_back_to_manual_review(settings) -> None:
    handler = CouplingHandler()
    action = handler.build_action("util.py", settings.thresholds_for(None))

    assert handler.suggest_fixes(action, [], "something odd") == ["Review util.py manually: something odd"]
    assert "fix the failures" in handler.suggest_fixes(action, ["commands_pass"], "tests failed")[0]

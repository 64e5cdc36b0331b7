from __future__ import annotations

from runestone.analysis.analyzer import ProjectAnalyzer
from runestone.config import Settings
from runestone.memory.schema import (
    ArchitecturalFindings,
    ArchitecturalMetrics,
    BoundaryViolation,
    CodebaseState,
    FailureAnalysis,
    OperationKind,
    SessionProgress,
    SessionState,
)
from runestone.planning import DecisionEngine
from runestone.planning.decision import declared_scope, rank_key


def _session(goal: str = "hexagonal_architecture", **operations: int) -> SessionState:
    return SessionState(
        id="s-1",
        workspace="/ws",
        target_goal=goal,
        progress=SessionProgress(operations=dict(operations)),
    )


def _mixed_state() -> CodebaseState:
    return CodebaseState(
        workspace="/ws",
        architectural_metrics=ArchitecturalMetrics(circular_dependencies=1, encapsulation_violations=1),
        findings=ArchitecturalFindings(
            cycles=(("app/a.py", "app/b.py"),),
            violations=(BoundaryViolation(source="main.py", target="pkg/_impl.py", imported="pkg._impl"),),
        ),
    )


def test_backup_comes_first_when_work_is_pending(cyclic_workspace) -> None:
    state = ProjectAnalyzer().analyze(cyclic_workspace)
    engine = DecisionEngine()

    action = engine.get_next_action(state)

    assert action is not None
    assert action.key == "create_backup:project-root"


def test_cycles_follow_once_backed_up(cyclic_workspace) -> None:
    state = ProjectAnalyzer().analyze(cyclic_workspace)

    action = DecisionEngine().get_next_action(state, _session(create_backup=1))

    assert action.key == "break_cycle:app/a.py"
    assert action.details["module"] == "app.b"


def test_decisions_are_deterministic(cyclic_workspace) -> None:
    state = ProjectAnalyzer().analyze(cyclic_workspace)
    engine = DecisionEngine()

    first = engine.candidates(state, _session(create_backup=1))
    second = DecisionEngine().candidates(state, _session(create_backup=1))

    assert first == second
    assert [action.key for action in first] == ["break_cycle:app/a.py", "break_cycle:app/b.py"]
    assert first == sorted(first, key=rank_key)


def test_nothing_to_do_when_thresholds_are_met() -> None:
    state = CodebaseState(workspace="/ws", architectural_metrics=ArchitecturalMetrics(coupling_score=2.0))

    assert DecisionEngine().get_next_action(state, _session()) is None
    assert DecisionEngine().candidates(state) == []


def test_goal_priorities_reorder_actions() -> None:
    engine = DecisionEngine()
    state = _mixed_state()

    hexagonal = engine.get_next_action(state, _session(create_backup=1))
    layered = engine.get_next_action(state, _session("layered_architecture", create_backup=1))

    assert hexagonal.operation == OperationKind.BREAK_CYCLE
    assert layered.operation == OperationKind.ENFORCE_BOUNDARY


def test_explicit_goal_wins_over_the_session_goal() -> None:
    action = DecisionEngine().get_next_action(_mixed_state(), _session(create_backup=1), goal="layered_architecture")
    assert action.key == "enforce_boundary:main.py"


def test_configured_thresholds_drive_the_decision() -> None:
    settings = Settings.from_mapping({"goals": {"hexagonal_architecture": {"max_coupling": 1.0}}})
    state = CodebaseState(workspace="/ws", architectural_metrics=ArchitecturalMetrics(coupling_score=2.0))

    # Over the threshold but no module has unused imports to remove.
    assert DecisionEngine(settings).get_next_action(state, _session()) is None


def test_fallback_skips_the_failed_action_and_overlapping_scopes() -> None:
    engine = DecisionEngine()
    state = _mixed_state()
    session = _session(create_backup=1)
    failed = engine.get_next_action(state, session)
    assert failed.key == "break_cycle:app/a.py"

    fallback = engine.get_fallback_strategy(failed, state, session)
    assert fallback.key == "break_cycle:app/b.py"

    failure = FailureAnalysis(action_key=failed.key, reason="boom", affected_files=["app"])
    fallback = engine.get_fallback_strategy(failed, state, session, failure)
    assert fallback.key == "enforce_boundary:main.py"


def test_no_fallback_when_every_candidate_overlaps() -> None:
    engine = DecisionEngine()
    state = _mixed_state()
    session = _session(create_backup=1)
    failed = engine.get_next_action(state, session)
    failure = FailureAnalysis(action_key=failed.key, reason="boom", affected_files=["app", "main.py"])

    assert engine.get_fallback_strategy(failed, state, session, failure) is None


def test_declared_scope_includes_the_package_init() -> None:
    state = _mixed_state()
    boundary = [
        action
        for action in DecisionEngine().candidates(state, _session(create_backup=1))
        if action.operation == OperationKind.ENFORCE_BOUNDARY
    ][0]
    assert declared_scope(boundary) == ["main.py", "pkg/__init__.py"]

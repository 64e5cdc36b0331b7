from __future__ import annotations

import json

import pytest

from runestone.analysis.analyzer import ProjectAnalyzer
from runestone.checks import CheckRegistry
from runestone.config import Settings
from runestone.errors import PersistenceError, RollbackError
from runestone.memory.schema import Checkpoint, CheckpointStatus, OperationKind, RefactoringAction
from runestone.operations import CycleHandler
from runestone.planning import AtomicOperationExecutor, DecisionEngine
from runestone.planning.executor import checkpoint_id_for
from runestone.tools.snapshot import capture_scope


def _candidate(root, settings, operation: OperationKind, target: str | None = None) -> RefactoringAction:
    state = ProjectAnalyzer(settings.analysis).analyze(root)
    for action in DecisionEngine(settings).candidates(state):
        if action.operation == operation and (target is None or action.target == target):
            return action
    raise AssertionError(f"no {operation.value} candidate")


def test_checkpoint_ids_are_slugged_and_unique() -> None:
    first = checkpoint_id_for("app/Core Module.py")
    second = checkpoint_id_for("app/Core Module.py")

    assert first.startswith("app-core-module-py-")
    assert first != second
    assert checkpoint_id_for("///").startswith("workspace-")


def test_break_cycle_commits(cyclic_workspace, settings, store_factory) -> None:
    store = store_factory(cyclic_workspace)
    executor = AtomicOperationExecutor(cyclic_workspace, store, settings=settings)
    action = _candidate(cyclic_workspace, settings, OperationKind.BREAK_CYCLE, "app/a.py")

    result = executor.execute_operation(action)

    assert result.success, result.error
    assert result.touched_files == ["app/a.py"]
    source = (cyclic_workspace / "app" / "a.py").read_text(encoding="utf-8")
    assert "def call_b():\n    from app import b\n" in source
    assert store.get_checkpoint(result.checkpoint_id).status == CheckpointStatus.COMMITTED
    assert ProjectAnalyzer().analyze(cyclic_workspace).architectural_metrics.circular_dependencies == 0


def test_backup_copies_the_workspace_into_the_state_directory(cyclic_workspace, settings, store_factory) -> None:
    store = store_factory(cyclic_workspace)
    executor = AtomicOperationExecutor(cyclic_workspace, store, settings=settings)
    action = _candidate(cyclic_workspace, settings, OperationKind.CREATE_BACKUP)

    result = executor.execute_operation(action)

    assert result.success, result.error
    backup_dir = cyclic_workspace / ".runestone" / "backups" / result.checkpoint_id
    manifest = json.loads((backup_dir / "manifest.json").read_text(encoding="utf-8"))
    assert sorted(manifest["files"]) == ["app/__init__.py", "app/a.py", "app/b.py"]
    assert (backup_dir / "app" / "a.py").read_bytes() == (cyclic_workspace / "app" / "a.py").read_bytes()


def test_boundary_enforcement_re_exports_from_the_package(boundary_workspace, settings, store_factory) -> None:
    executor = AtomicOperationExecutor(boundary_workspace, store_factory(boundary_workspace), settings=settings)
    action = _candidate(boundary_workspace, settings, OperationKind.ENFORCE_BOUNDARY)

    result = executor.execute_operation(action)

    assert result.success, result.error
    assert result.touched_files == ["main.py", "pkg/__init__.py"]
    assert (boundary_workspace / "main.py").read_text(encoding="utf-8").startswith("from pkg import helper\n")
    assert "from ._impl import helper" in (boundary_workspace / "pkg" / "__init__.py").read_text(encoding="utf-8")


def test_coupling_reduction_removes_unused_imports(coupling_workspace, strict_coupling_settings, store_factory) -> None:
    executor = AtomicOperationExecutor(
        coupling_workspace, store_factory(coupling_workspace), settings=strict_coupling_settings
    )
    action = _candidate(coupling_workspace, strict_coupling_settings, OperationKind.REDUCE_COUPLING)

    result = executor.execute_operation(action)

    assert result.success, result.error
    assert (coupling_workspace / "util.py").read_text(encoding="utf-8").startswith("import sys\n")


def test_god_file_extraction(god_file_workspace, small_god_file_settings, store_factory) -> None:
    executor = AtomicOperationExecutor(
        god_file_workspace, store_factory(god_file_workspace), settings=small_god_file_settings
    )
    action = _candidate(god_file_workspace, small_god_file_settings, OperationKind.EXTRACT_MODULE)

    result = executor.execute_operation(action)

    assert result.success, result.error
    assert result.touched_files == ["big.py", "big_registry.py"]
    assert "class Registry" in (god_file_workspace / "big_registry.py").read_text(encoding="utf-8")
    assert "from big_registry import Registry" in (god_file_workspace / "big.py").read_text(encoding="utf-8")


def test_unknown_validation_rolls_back_byte_for_byte(
    coupling_workspace, strict_coupling_settings, store_factory, tree_snapshot
) -> None:
    store = store_factory(coupling_workspace)
    executor = AtomicOperationExecutor(coupling_workspace, store, settings=strict_coupling_settings)
    action = _candidate(coupling_workspace, strict_coupling_settings, OperationKind.REDUCE_COUPLING)
    action = action.model_copy(update={"validations": ("syntax_valid", "integrity_missing_check")})
    before = tree_snapshot(coupling_workspace)

    result = executor.execute_operation(action)

    assert result.success is False
    assert tree_snapshot(coupling_workspace) == before
    assert result.failure.rollback_completed is True
    assert result.failure.validation_failures == ["integrity_missing_check"]
    assert result.failure.affected_files == ["util.py"]
    assert store.get_checkpoint(result.checkpoint_id).status == CheckpointStatus.RESTORED


def test_crashing_validation_rolls_back(god_file_workspace, small_god_file_settings, store_factory, tree_snapshot) -> None:
    def explode(ctx):
        raise RuntimeError("validator crashed")

    executor = AtomicOperationExecutor(
        god_file_workspace,
        store_factory(god_file_workspace),
        settings=small_god_file_settings,
        checks=CheckRegistry({"module_extracted": explode}),
    )
    action = _candidate(god_file_workspace, small_god_file_settings, OperationKind.EXTRACT_MODULE)
    before = tree_snapshot(god_file_workspace)

    result = executor.execute_operation(action)

    assert result.success is False
    assert tree_snapshot(god_file_workspace) == before
    assert not (god_file_workspace / "big_registry.py").exists()
    assert result.failure.validation_failures == ["module_extracted"]
    assert sorted(result.failure.affected_files) == ["big.py", "big_registry.py"]


def test_apply_error_rolls_back(coupling_workspace, settings, store_factory, tree_snapshot) -> None:
    executor = AtomicOperationExecutor(coupling_workspace, store_factory(coupling_workspace), settings=settings)
    action = RefactoringAction(
        operation=OperationKind.REDUCE_COUPLING,
        target="util.py",
        preconditions=("target_exists",),
        validations=("syntax_valid",),
        details={"names": ["json"]},
    )
    before = tree_snapshot(coupling_workspace)

    result = executor.execute_operation(action)

    assert result.success is False
    assert "no unused imports left" in result.error
    assert tree_snapshot(coupling_workspace) == before


def test_failed_precondition_creates_no_checkpoint(cyclic_workspace, settings, store_factory) -> None:
    store = store_factory(cyclic_workspace)
    executor = AtomicOperationExecutor(cyclic_workspace, store, settings=settings)
    action = _candidate(cyclic_workspace, settings, OperationKind.BREAK_CYCLE, "app/a.py")
    action = action.model_copy(update={"target": "app/missing.py"})

    result = executor.execute_operation(action)

    assert result.success is False
    assert result.checkpoint_id is None
    assert result.failure.validation_failures == ["target_exists"]
    assert store.list_checkpoints() == []


def test_checkpoint_write_failure_aborts_before_apply(
    cyclic_workspace, settings, store_factory, tree_snapshot, monkeypatch
) -> None:
    store = store_factory(cyclic_workspace)
    executor = AtomicOperationExecutor(cyclic_workspace, store, settings=settings)
    action = _candidate(cyclic_workspace, settings, OperationKind.BREAK_CYCLE, "app/a.py")
    applied = []

    def failing_save(checkpoint):
        raise PersistenceError("database is locked")

    monkeypatch.setattr(store, "save_checkpoint", failing_save)
    monkeypatch.setattr(CycleHandler, "apply", lambda self, ctx: applied.append(ctx.action.key) or [])
    before = tree_snapshot(cyclic_workspace)

    result = executor.execute_operation(action)

    assert result.success is False
    assert result.error.startswith("Checkpoint could not be created: database is locked")
    assert result.checkpoint_id is None
    assert applied == []
    assert tree_snapshot(cyclic_workspace) == before
    assert store.list_checkpoints() == []


def test_failed_restore_raises_rollback_error(coupling_workspace, strict_coupling_settings, store_factory, monkeypatch) -> None:
    def broken_restore(root, files, directories):
        raise RollbackError("disk went away")

    monkeypatch.setattr("runestone.planning.executor.restore_scope", broken_restore)
    store = store_factory(coupling_workspace)
    executor = AtomicOperationExecutor(coupling_workspace, store, settings=strict_coupling_settings)
    action = _candidate(coupling_workspace, strict_coupling_settings, OperationKind.REDUCE_COUPLING)
    action = action.model_copy(update={"validations": ("integrity_missing_check",)})

    with pytest.raises(RollbackError) as excinfo:
        executor.execute_operation(action)

    assert excinfo.value.checkpoint_id is not None
    assert store.get_checkpoint(excinfo.value.checkpoint_id).status == CheckpointStatus.ROLLBACK_FAILED


def test_analyze_failure_reads_memory_then_store(coupling_workspace, settings, store_factory) -> None:
    store = store_factory(coupling_workspace)
    executor = AtomicOperationExecutor(coupling_workspace, store, settings=settings)
    action = RefactoringAction(operation=OperationKind.REDUCE_COUPLING, target="absent.py", preconditions=("target_exists",))

    with pytest.raises(KeyError):
        executor.analyze_failure(action)

    executor.execute_operation(action)

    assert executor.analyze_failure(action).validation_failures == ["target_exists"]
    fresh = AtomicOperationExecutor(coupling_workspace, store, settings=settings)
    assert fresh.analyze_failure(action).action_key == "reduce_coupling:absent.py"


def test_manual_checkpoint_can_be_restored(coupling_workspace, settings, store_factory) -> None:
    store = store_factory(coupling_workspace)
    executor = AtomicOperationExecutor(coupling_workspace, store, settings=settings)
    action = RefactoringAction(operation=OperationKind.REDUCE_COUPLING, target="util.py")
    original = (coupling_workspace / "util.py").read_bytes()

    checkpoint = executor.create_checkpoint(action)
    (coupling_workspace / "util.py").write_text("broken = (\n", encoding="utf-8")

    assert store.get_checkpoint(checkpoint.id).status == CheckpointStatus.MANUAL
    assert executor.restore_checkpoint(checkpoint.id) == ["util.py"]
    assert (coupling_workspace / "util.py").read_bytes() == original
    assert store.get_checkpoint(checkpoint.id).status == CheckpointStatus.RESTORED
    with pytest.raises(KeyError):
        executor.restore_checkpoint("missing")


def test_interrupted_checkpoints_are_recovered(coupling_workspace, settings, store_factory) -> None:
    store = store_factory(coupling_workspace)
    original = (coupling_workspace / "util.py").read_bytes()
    snapshot = capture_scope(coupling_workspace, ["util.py", "util_new.py"])
    store.save_checkpoint(
        Checkpoint(
            id="cp-interrupted",
            action_key="reduce_coupling:util.py",
            target="util.py",
            files=snapshot.files,
            directories=snapshot.directories,
        )
    )
    (coupling_workspace / "util.py").write_text("half written", encoding="utf-8")
    (coupling_workspace / "util_new.py").write_text("x = 1\n", encoding="utf-8")

    recovered = AtomicOperationExecutor(coupling_workspace, store, settings=settings).recover_interrupted()

    assert recovered == ["cp-interrupted"]
    assert (coupling_workspace / "util.py").read_bytes() == original
    assert not (coupling_workspace / "util_new.py").exists()
    assert store.get_checkpoint("cp-interrupted").status == CheckpointStatus.RESTORED


def test_committed_checkpoints_are_pruned(coupling_workspace, store_factory) -> None:
    settings = Settings.from_mapping({"checkpoints": {"retain": 1}})
    store = store_factory(coupling_workspace)
    executor = AtomicOperationExecutor(coupling_workspace, store, settings=settings)
    action = RefactoringAction(operation=OperationKind.CREATE_BACKUP, target="project-root", validations=("backup_exists",))

    first = executor.execute_operation(action)
    second = executor.execute_operation(action)

    assert first.success and second.success
    assert [item.id for item in store.list_checkpoints(status=CheckpointStatus.COMMITTED)] == [second.checkpoint_id]

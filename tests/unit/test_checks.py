from __future__ import annotations

import shlex
import sys

from runestone.analysis.analyzer import ProjectAnalyzer
from runestone.checks import ActionContext, CheckRegistry, CheckResult, PROJECT_ROOT
from runestone.memory.schema import Checkpoint, OperationKind, RefactoringAction
from runestone.tools.commands import CommandValidator


def _context(root, target: str = "util.py", **kwargs) -> ActionContext:
    action = RefactoringAction(operation=OperationKind.REDUCE_COUPLING, target=target, details=kwargs.pop("details", {}))
    return ActionContext(root=root, action=action, scanner=ProjectAnalyzer(), **kwargs)


def test_unknown_check_fails_instead_of_being_skipped(coupling_workspace) -> None:
    result = CheckRegistry().run("no_such_check", _context(coupling_workspace))

    assert result.passed is False
    assert "unknown check" in result.detail


def test_crashing_check_counts_as_failed(coupling_workspace) -> None:
    def explode(ctx):
        raise ValueError("boom")

    registry = CheckRegistry({"explode": explode})
    result = registry.run("explode", _context(coupling_workspace))

    assert result == CheckResult("explode", False, "ValueError: boom")


def test_boolean_checks_are_wrapped(coupling_workspace) -> None:
    registry = CheckRegistry()
    registry.register("always", lambda ctx: True)

    assert "always" in registry
    assert registry.run("always", _context(coupling_workspace)).passed is True


def test_run_until_failure_stops_at_the_first_failure(coupling_workspace) -> None:
    calls = []

    def record(name: str, passed: bool):
        def check(ctx):
            calls.append(name)
            return passed

        return check

    registry = CheckRegistry({"one": record("one", True), "two": record("two", False), "three": record("three", True)})
    results = registry.run_until_failure(["one", "two", "three"], _context(coupling_workspace))

    assert [result.name for result in results] == ["one", "two"]
    assert calls == ["one", "two"]


def test_target_checks(coupling_workspace) -> None:
    registry = CheckRegistry()
    (coupling_workspace / "broken.py").write_text("def oops(:\n", encoding="utf-8")

    assert registry.run("target_exists", _context(coupling_workspace)).passed
    assert registry.run("target_parses", _context(coupling_workspace)).passed
    assert not registry.run("target_exists", _context(coupling_workspace, "absent.py")).passed
    assert not registry.run("target_exists", _context(coupling_workspace, "../outside.py")).passed
    assert not registry.run("target_parses", _context(coupling_workspace, "broken.py")).passed
    assert registry.run("target_exists", _context(coupling_workspace, PROJECT_ROOT)).passed


def test_import_present_reads_the_baseline_scan(cyclic_workspace) -> None:
    registry = CheckRegistry()

    present = _context(cyclic_workspace, "app/a.py", details={"module": "app.b"})
    absent = _context(cyclic_workspace, "app/a.py", details={"module": "app.core"})

    assert registry.run("import_present", present).passed
    assert not registry.run("import_present", absent).passed


def test_no_active_checkpoint_blocks_until_resolved(coupling_workspace, store_factory) -> None:
    store = store_factory(coupling_workspace)
    ctx = _context(coupling_workspace, store=store)
    registry = CheckRegistry()

    assert registry.run("no_active_checkpoint", ctx).passed
    store.save_checkpoint(Checkpoint(id="cp-1", action_key="k", target="util.py"))
    result = registry.run("no_active_checkpoint", ctx)
    assert result.passed is False
    assert "cp-1" in result.detail


def test_syntax_valid_only_inspects_touched_files(coupling_workspace) -> None:
    (coupling_workspace / "broken.py").write_text("def oops(:\n", encoding="utf-8")
    registry = CheckRegistry()

    assert registry.run("syntax_valid", _context(coupling_workspace, touched_files=["util.py"])).passed
    failed = registry.run("syntax_valid", _context(coupling_workspace, touched_files=["broken.py"]))
    assert failed.passed is False
    assert failed.detail.startswith("broken.py:1")


def test_commands_pass_runs_configured_commands(coupling_workspace) -> None:
    python = shlex.quote(sys.executable)
    registry = CheckRegistry()
    validator = CommandValidator(timeout=60)

    passing = _context(coupling_workspace, commands=(f"{python} -c 'pass'",), command_validator=validator)
    failing = _context(
        coupling_workspace,
        commands=(f"{python} -c 'pass'", f"{python} -c 'raise SystemExit(3)'"),
        command_validator=validator,
    )

    assert registry.run("commands_pass", passing).passed
    result = registry.run("commands_pass", failing)
    assert result.passed is False
    assert "SystemExit(3)" in result.detail
    assert registry.run("commands_pass", _context(coupling_workspace)).detail == "no validation commands configured"

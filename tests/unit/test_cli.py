from __future__ import annotations

import json
import shlex
import sys

from typer.testing import CliRunner

from runestone.cli import app

runner = CliRunner()


def test_situation_describes_a_fresh_workspace(cyclic_workspace) -> None:
    result = runner.invoke(app, ["situation", "--path", str(cyclic_workspace)])

    assert result.exit_code == 0, result.output
    assert "Session: none" in result.output
    assert "create_backup on project-root" in result.output


def test_next_prints_action_details(cyclic_workspace) -> None:
    result = runner.invoke(app, ["next", "-p", str(cyclic_workspace)])

    assert result.exit_code == 0, result.output
    assert result.output.startswith("create_backup on project-root")


def test_next_on_a_clean_workspace(clean_workspace) -> None:
    result = runner.invoke(app, ["next", "-p", str(clean_workspace)])

    assert result.exit_code == 0
    assert "No action needed" in result.output


def test_state_as_json(boundary_workspace) -> None:
    result = runner.invoke(app, ["state", "-p", str(boundary_workspace), "--json", "--skip-cache"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["architectural_metrics"]["encapsulation_violations"] == 1
    assert payload["findings"]["violations"][0]["source"] == "main.py"


def test_run_reaches_the_goal(cyclic_workspace) -> None:
    result = runner.invoke(app, ["run", "-p", str(cyclic_workspace)])

    assert result.exit_code == 0, result.output
    assert "[1] create_backup:project-root: committed" in result.output
    assert "[2] break_cycle:app/a.py: committed" in result.output
    assert "[3] goal reached" in result.output
    assert "completion 100%" in result.output


def test_session_show_and_reset(clean_workspace) -> None:
    empty = runner.invoke(app, ["session", "-p", str(clean_workspace)])
    assert "No session recorded" in empty.output

    started = runner.invoke(app, ["session", "-p", str(clean_workspace), "--reset", "--goal", "clean_architecture"])
    assert started.exit_code == 0, started.output
    assert "for clean_architecture" in started.output

    shown = runner.invoke(app, ["session", "-p", str(clean_workspace), "-g", "clean_architecture"])
    assert "[created] goal=clean_architecture" in shown.output


def test_validate_exit_code_follows_the_commands(clean_workspace) -> None:
    python = shlex.quote(sys.executable)
    passing = f"{python} -c 'pass'"
    failing = f"{python} -c 'raise SystemExit(1)'"

    ok = runner.invoke(app, ["validate", passing, "-p", str(clean_workspace)])
    assert ok.exit_code == 0, ok.output
    assert f"PASS {passing}" in ok.output

    bad = runner.invoke(app, ["validate", passing, failing, "-p", str(clean_workspace)])
    assert bad.exit_code == 1
    assert f"FAIL {failing}" in bad.output


def test_unknown_goal_and_missing_workspace_exit_with_errors(clean_workspace, tmp_path) -> None:
    unknown = runner.invoke(app, ["next", "-p", str(clean_workspace), "--goal", "microkernel"])
    assert unknown.exit_code == 1
    assert "Unknown target goal" in unknown.output

    missing = runner.invoke(app, ["state", "-p", str(tmp_path / "absent")])
    assert missing.exit_code == 1
    assert "does not exist" in missing.output


def test_self_check_scores_every_probe(clean_workspace) -> None:
    result = runner.invoke(app, ["self-check", "-p", str(clean_workspace)])

    assert result.exit_code == 0, result.output
    assert "PASS Failure Recovery" in result.output
    assert "Score: 100" in result.output

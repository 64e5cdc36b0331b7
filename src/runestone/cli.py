"""Command-line entry point for the Runestone refactoring orchestrator."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Coroutine, List, Optional

import typer

from .errors import RollbackError, RunestoneError
from .memory.schema import StateQueryOptions
from .orchestrator import Orchestrator
from .report import describe_action

APP_HELP = "Runestone: stateful, atomic refactoring orchestration."

app = typer.Typer(help=APP_HELP)

PATH_OPTION = typer.Option(Path("."), "--path", "-p", help="Workspace root to operate on.")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a runestone.yaml configuration file.")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log progress at INFO level.")
GOAL_OPTION = typer.Option(None, "--goal", "-g", help="Target architecture goal (defaults to the configured one).")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _orchestrator(path: Path, config: Optional[Path], verbose: bool) -> Orchestrator:
    _configure_logging(verbose)
    return Orchestrator(path, config_path=config)


def _call(orchestrator: Orchestrator, coroutine: Coroutine[Any, Any, Any]) -> Any:
    """Run ``coroutine`` to completion, turning runtime errors into exit code 1."""
    try:
        return asyncio.run(coroutine)
    except RollbackError as error:
        typer.echo(f"Rollback failed (checkpoint {error.checkpoint_id}): {error}", err=True)
        typer.echo("The workspace may be inconsistent; restore it manually before continuing.", err=True)
        raise typer.Exit(code=1) from error
    except (RunestoneError, KeyError) as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error
    finally:
        orchestrator.close()


@app.command()
def situation(
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    goal: Optional[str] = GOAL_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Describe where the workspace stands and what could be done next."""
    orchestrator = _orchestrator(path, config, verbose)
    typer.echo(_call(orchestrator, orchestrator.get_current_situation(path, goal)))


@app.command("next")
def next_action(
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    goal: Optional[str] = GOAL_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the next action the decision engine would take."""
    orchestrator = _orchestrator(path, config, verbose)
    action = _call(orchestrator, orchestrator.get_next_action(path, goal))
    if action is None:
        typer.echo("No action needed; the goal's thresholds are met.")
        return
    typer.echo(describe_action(action))
    if action.details:
        for key, value in sorted(action.details.items()):
            typer.echo(f"  {key}: {value}")


@app.command()
def state(
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    skip_cache: bool = typer.Option(False, "--skip-cache", help="Re-analyze even if a cached state exists."),
    as_json: bool = typer.Option(False, "--json", help="Print the full state as JSON."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Analyze the workspace and print its architectural metrics."""
    orchestrator = _orchestrator(path, config, verbose)
    options = StateQueryOptions(skip_cache=skip_cache, include_validation=True)
    codebase = _call(orchestrator, orchestrator.query_state(options, path))
    if as_json:
        typer.echo(codebase.model_dump_json(indent=2))
        return
    metrics = codebase.architectural_metrics
    typer.echo(f"circular_dependencies: {metrics.circular_dependencies}")
    typer.echo(f"encapsulation_violations: {metrics.encapsulation_violations}")
    typer.echo(f"coupling_score: {metrics.coupling_score:.2f}")
    typer.echo(f"god_files_count: {metrics.god_files_count}")
    typer.echo(f"ready: {codebase.refactoring_readiness.ready}")


@app.command()
def run(
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    goal: Optional[str] = GOAL_OPTION,
    max_cycles: int = typer.Option(10, "--max-cycles", "-n", min=1, help="Upper bound on cycles to run."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run refactoring cycles until the goal is reached or nothing safe is left."""
    orchestrator = _orchestrator(path, config, verbose)
    reports = _call(orchestrator, orchestrator.run(path, goal, max_cycles))
    for index, report in enumerate(reports, start=1):
        if report.completed:
            typer.echo(f"[{index}] goal reached")
        elif report.action is None:
            typer.echo(f"[{index}] stopped: {report.error}")
        else:
            verdict = "committed" if report.success else f"rolled back ({report.error})"
            typer.echo(f"[{index}] {report.action.key}: {verdict}")
            if report.fallback is not None:
                typer.echo(f"      fallback: {report.fallback.key}")
    if reports and reports[-1].session is not None:
        progress = reports[-1].session.progress
        typer.echo(
            f"Session {reports[-1].session.id}: {progress.succeeded} succeeded, "
            f"{progress.failed} failed, completion {progress.completion_estimate:.0%}"
        )
    if reports and not (reports[-1].success or reports[-1].completed):
        raise typer.Exit(code=1)


@app.command()
def validate(
    commands: List[str] = typer.Argument(..., help="Commands to run from the workspace root."),
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Run validation commands and report which ones pass."""
    orchestrator = _orchestrator(path, config, verbose)
    results = _call(orchestrator, orchestrator.validate(commands, path))
    for command, passed in results.items():
        typer.echo(f"{'PASS' if passed else 'FAIL'} {command}")
    if not all(results.values()):
        raise typer.Exit(code=1)


@app.command()
def session(
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    goal: Optional[str] = GOAL_OPTION,
    reset: bool = typer.Option(False, "--reset", help="Discard the existing session and start a new one."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Show the current session, or start over with --reset."""
    orchestrator = _orchestrator(path, config, verbose)
    if reset:
        current = _call(orchestrator, orchestrator.create_session(path, goal, reset=True))
        typer.echo(f"Started session {current.id} for {current.target_goal}")
        return
    current = _call(orchestrator, orchestrator.get_session_state(path, goal))
    if current is None:
        typer.echo("No session recorded for this workspace.")
        return
    progress = current.progress
    typer.echo(f"Session {current.id} [{current.status.value}] goal={current.target_goal}")
    typer.echo(
        f"attempted={progress.attempted} succeeded={progress.succeeded} failed={progress.failed} "
        f"completion={progress.completion_estimate:.0%}"
    )


@app.command("self-check")
def self_check(
    path: Path = PATH_OPTION,
    config: Optional[Path] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Exercise every component and print the integrity scorecard."""
    orchestrator = _orchestrator(path, config, verbose)
    report = _call(orchestrator, orchestrator.validate_system_integrity())
    for result in report.results:
        typer.echo(f"{'PASS' if result.passed else 'FAIL'} {result.test}: {result.details or ''}".rstrip())
    typer.echo(f"Score: {report.score}")
    if not report.success:
        raise typer.Exit(code=1)


def main() -> None:  # pragma: no cover - console entry point
    app()


if __name__ == "__main__":  # pragma: no cover
    main()

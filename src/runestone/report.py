"""Plain-text rendering of the current refactoring situation."""

from __future__ import annotations

from typing import List, Optional

from .memory.schema import CodebaseState, RefactoringAction, SessionState


def _metrics_lines(state: CodebaseState) -> List[str]:
    metrics = state.architectural_metrics
    return [
        f"  circular dependencies:    {metrics.circular_dependencies}",
        f"  encapsulation violations: {metrics.encapsulation_violations}",
        f"  coupling score:           {metrics.coupling_score:.2f}",
        f"  god files:                {metrics.god_files_count}",
    ]


def describe_action(action: RefactoringAction) -> str:
    return (
        f"{action.operation.value} on {action.target} "
        f"(priority {action.priority}, risk {action.risk_level.value}, ~{action.estimated_time}s)"
    )


def render_situation(
    state: CodebaseState,
    session: Optional[SessionState],
    action: Optional[RefactoringAction],
) -> str:
    """Answer "where am I, what can I do" in a few readable lines."""

    readiness = state.refactoring_readiness
    lines = [f"Workspace: {state.workspace}", f"Modules scanned: {state.modules_scanned}", "Metrics:"]
    lines.extend(_metrics_lines(state))
    verdict = "ready" if readiness.ready else "not ready"
    lines.append(f"Readiness: {verdict} (score {readiness.score})")
    if readiness.blockers:
        lines.append(f"  blockers: {', '.join(readiness.blockers)}")
    if state.findings.unparsable:
        lines.append(f"  unparsable: {', '.join(state.findings.unparsable)}")

    if session is None:
        lines.append("Session: none")
    else:
        progress = session.progress
        lines.append(
            f"Session: {session.id} [{session.status.value}] goal={session.target_goal} "
            f"attempted={progress.attempted} succeeded={progress.succeeded} failed={progress.failed} "
            f"completion={progress.completion_estimate:.0%}"
        )

    if action is None:
        lines.append("Next action: none, the goal's thresholds are met")
    else:
        lines.append(f"Next action: {describe_action(action)}")
    return "\n".join(lines)


__all__ = ["describe_action", "render_situation"]

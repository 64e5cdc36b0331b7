"""Turn a codebase state and session progress into the next refactoring action."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import List, Mapping, Optional, Tuple

from ..config import GoalThresholds, Settings
from ..memory.schema import (
    CodebaseState,
    FailureAnalysis,
    OperationKind,
    RefactoringAction,
    SessionState,
)
from ..operations import HANDLERS, OperationHandler

LOGGER = logging.getLogger(__name__)


def rank_key(action: RefactoringAction) -> Tuple[int, int, int, str, str]:
    """Total order over actions: priority, risk, time, then target and operation."""
    return (
        action.priority,
        action.risk_level.rank,
        action.estimated_time,
        action.target,
        action.operation.value,
    )


def declared_scope(action: RefactoringAction) -> List[str]:
    """Paths an action is known to touch before it runs."""
    paths = [action.target]
    package_init = action.details.get("package_init")
    if package_init:
        paths.append(str(package_init))
    return paths


def _overlaps(left: str, right: str) -> bool:
    if left == right:
        return True
    left_path, right_path = PurePosixPath(left), PurePosixPath(right)
    return left_path in right_path.parents or right_path in left_path.parents


class DecisionEngine:
    """Rule-based, deterministic action selection over the operation catalog."""

    def __init__(
        self,
        settings: Settings | None = None,
        handlers: Mapping[OperationKind, OperationHandler] | None = None,
    ) -> None:
        self.settings = settings or Settings.from_mapping()
        self.handlers: Mapping[OperationKind, OperationHandler] = handlers if handlers is not None else HANDLERS

    def thresholds(self, session: Optional[SessionState], goal: str | None = None) -> GoalThresholds:
        if goal is None and session is not None:
            goal = session.target_goal
        return self.settings.thresholds_for(goal)

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState] = None,
        *,
        goal: str | None = None,
    ) -> List[RefactoringAction]:
        """Every action the handlers propose for ``state``, best first."""
        thresholds = self.thresholds(session, goal)
        remediation: List[RefactoringAction] = []
        support: List[RefactoringAction] = []
        for kind in OperationKind:
            handler = self.handlers.get(kind)
            if handler is None:
                continue
            proposed = handler.candidates(state, session, thresholds)
            (support if handler.needs_pending_work else remediation).extend(proposed)
        if not remediation:
            return []
        return sorted(remediation + support, key=rank_key)

    def get_next_action(
        self,
        state: CodebaseState,
        session: Optional[SessionState] = None,
        *,
        goal: str | None = None,
    ) -> Optional[RefactoringAction]:
        ranked = self.candidates(state, session, goal=goal)
        if not ranked:
            LOGGER.info("No candidate actions for %s; goal reached", state.workspace)
            return None
        action = ranked[0]
        LOGGER.info("Next action for %s: %s (priority %d)", state.workspace, action.key, action.priority)
        return action

    def get_fallback_strategy(
        self,
        failed_action: RefactoringAction,
        state: CodebaseState,
        session: Optional[SessionState] = None,
        failure: Optional[FailureAnalysis] = None,
        *,
        goal: str | None = None,
    ) -> Optional[RefactoringAction]:
        """Best-ranked candidate that neither repeats nor overlaps the failed action."""
        affected = list(failure.affected_files) if failure is not None else declared_scope(failed_action)
        for candidate in self.candidates(state, session, goal=goal):
            if candidate.key == failed_action.key:
                continue
            if any(_overlaps(path, other) for path in declared_scope(candidate) for other in affected):
                continue
            LOGGER.info("Fallback for %s: %s", failed_action.key, candidate.key)
            return candidate
        LOGGER.info("No safe fallback for %s", failed_action.key)
        return None


__all__ = ["DecisionEngine", "declared_scope", "rank_key"]

"""Session lifecycle and progress tracking for one workspace."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional
from uuid import uuid4

from .config import Settings
from .errors import SessionConflictError, SessionStateError
from .memory.schema import (
    ActionLogEntry,
    ActionOutcome,
    SessionProgress,
    SessionState,
    SessionStatus,
    utc_now,
)
from .memory.store import StateStore

LOGGER = logging.getLogger(__name__)


class SessionManager:
    """Create, advance and reset the refactoring sessions of one workspace.

    Sessions are keyed by workspace and target goal. At most one of them is
    non-terminal at a time; ``get_session_state`` keeps the last loaded
    session per goal in memory.
    """

    def __init__(
        self,
        root: Path | str,
        store: StateStore,
        *,
        settings: Settings | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.workspace = self.root.as_posix()
        self.store = store
        self.settings = settings or Settings.from_mapping()
        self._cache: Dict[str, Optional[SessionState]] = {}

    def _goal(self, goal: str | None) -> str:
        name = goal or self.settings.default_goal
        # Raises InputError for goals the configuration does not know.
        self.settings.thresholds_for(name)
        return name

    def create_session(self, goal: str | None = None, *, reset: bool = False) -> SessionState:
        goal = self._goal(goal)
        existing = self.store.find_session(self.workspace, goal, active_only=True)
        if existing is not None:
            if not reset:
                raise SessionConflictError(
                    f"Session {existing.id} for {goal} is still {existing.status.value}",
                    session=existing,
                )
            self.reset_session(goal)
        session = SessionState(id=uuid4().hex, workspace=self.workspace, target_goal=goal)
        self.store.save_session(session)
        self._cache[goal] = session
        LOGGER.info("Created session %s for %s (%s)", session.id, self.workspace, goal)
        return session

    def ensure_session(self, goal: str | None = None) -> SessionState:
        """Return the non-terminal session for ``goal``, creating one when needed."""
        goal = self._goal(goal)
        existing = self.store.find_session(self.workspace, goal, active_only=True)
        if existing is not None:
            self._cache[goal] = existing
            return existing
        return self.create_session(goal)

    def get_session_state(self, goal: str | None = None) -> Optional[SessionState]:
        goal = self._goal(goal)
        if goal not in self._cache:
            self._cache[goal] = self.store.find_session(self.workspace, goal)
        return self._cache[goal]

    def update_session(self, outcome: ActionOutcome, goal: str | None = None) -> SessionState:
        goal = self._goal(goal)
        session = self.store.find_session(self.workspace, goal, active_only=True)
        if session is None:
            latest = self.store.find_session(self.workspace, goal)
            if latest is not None:
                raise SessionStateError(f"Session {latest.id} is {latest.status.value} and cannot be updated")
            raise SessionStateError(f"No session exists for {self.workspace} ({goal})")

        progress = session.progress.model_copy(deep=True)
        if outcome.action is not None:
            progress.attempted += 1
            if outcome.success:
                progress.succeeded += 1
                operation = outcome.action.operation.value
                progress.operations[operation] = progress.operations.get(operation, 0) + 1
            else:
                progress.failed += 1

        if outcome.completed:
            status = SessionStatus.COMPLETED
            progress.completion_estimate = 1.0
        else:
            status = SessionStatus.FAILED if outcome.fatal else SessionStatus.IN_PROGRESS
            progress.completion_estimate = _completion(progress, outcome.remaining_actions)

        updated = session.model_copy(update={"status": status, "progress": progress, "updated_at": utc_now()})
        self.store.save_session(updated)
        if outcome.action is not None:
            self.store.append_action(
                ActionLogEntry(
                    id=uuid4().hex,
                    session_id=updated.id,
                    action=outcome.action,
                    success=outcome.success,
                    error=outcome.error,
                    checkpoint_id=outcome.checkpoint_id,
                )
            )
        self._cache[goal] = updated
        if status.is_terminal:
            LOGGER.info("Session %s finished as %s", updated.id, status.value)
        return updated

    def abandon_session(self, goal: str | None = None) -> SessionState:
        goal = self._goal(goal)
        session = self.store.find_session(self.workspace, goal, active_only=True)
        if session is None:
            raise SessionStateError(f"No active session to abandon for {self.workspace} ({goal})")
        abandoned = session.model_copy(update={"status": SessionStatus.ABANDONED, "updated_at": utc_now()})
        self.store.save_session(abandoned)
        self._cache[goal] = abandoned
        return abandoned

    def reset_session(self, goal: str | None = None) -> int:
        """Delete every session (and its action log) for ``goal``; return how many went."""
        goal = self._goal(goal)
        removed = 0
        for session in self.store.list_sessions(self.workspace):
            if session.target_goal == goal and self.store.delete_session(session.id):
                removed += 1
        self._cache.pop(goal, None)
        if removed:
            LOGGER.info("Reset %d session(s) for %s (%s)", removed, self.workspace, goal)
        return removed

    def action_log(self, goal: str | None = None) -> List[ActionLogEntry]:
        session = self.get_session_state(goal)
        if session is None:
            return []
        return self.store.list_actions(session.id)


def _completion(progress: SessionProgress, remaining: int) -> float:
    denominator = progress.succeeded + remaining
    if denominator <= 0:
        return 0.0
    return round(progress.succeeded / denominator, 4)


__all__ = ["SessionManager"]

"""Async facade driving the query, decide, execute and record loop."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Collection, Dict, List, Optional, Sequence, Tuple

from .analysis.analyzer import Analyzer, ProjectAnalyzer
from .config import Settings, load_settings
from .diagnostics import run_integrity_checks
from .errors import InputError, RollbackError
from .memory.schema import (
    ActionOutcome,
    Checkpoint,
    CodebaseState,
    FailureAnalysis,
    IntegrityReport,
    OperationKind,
    RefactoringAction,
    SessionState,
    StateQueryOptions,
)
from .memory.store import StateStore
from .operations import get_handler
from .planning.decision import DecisionEngine
from .planning.executor import AtomicOperationExecutor, OperationResult
from .report import render_situation
from .session import SessionManager
from .tools.commands import CommandValidator
from .tools.locking import WorkspaceLock

LOGGER = logging.getLogger(__name__)

StoreFactory = Callable[[Path, Settings], StateStore]
ExecutorFactory = Callable[[Path, Settings, StateStore], AtomicOperationExecutor]
SessionFactory = Callable[[Path, Settings, StateStore], SessionManager]


@dataclass(slots=True)
class WorkspaceContext:
    """Collaborators bound to one resolved workspace root."""

    root: Path
    settings: Settings
    store: StateStore
    analyzer: Analyzer
    engine: DecisionEngine
    executor: AtomicOperationExecutor
    sessions: SessionManager
    validator: CommandValidator
    lock: WorkspaceLock


@dataclass(slots=True)
class CycleReport:
    """What one decide/execute/record cycle did."""

    action: Optional[RefactoringAction]
    success: bool
    completed: bool
    session: Optional[SessionState] = None
    error: Optional[str] = None
    failure: Optional[FailureAnalysis] = None
    fallback: Optional[RefactoringAction] = None


async def _run_to_completion(
    func: Callable[..., Any],
    *args: Any,
    on_done: Optional[Callable[["asyncio.Future[Any]"], None]] = None,
) -> Any:
    """Run ``func`` in a worker thread; cancellation waits for it to finish first.

    ``on_done`` is attached to the worker task, so it fires once the work
    ends even when the awaiting caller was cancelled.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args))
    if on_done is not None:
        task.add_done_callback(on_done)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        if not task.done():
            LOGGER.warning("Cancellation requested mid-execution; waiting for the action to finish")
            await asyncio.wait({task})
        raise


class Orchestrator:
    """Stateful refactoring loop: where am I, what can I do, do it.

    Every public method is a coroutine. Blocking work (analysis, sqlite,
    file-system mutation, subprocesses) runs in worker threads, and every
    write to a workspace happens while that workspace's lock is held.
    """

    def __init__(
        self,
        workspace: Path | str | None = None,
        *,
        settings: Settings | None = None,
        config_path: Path | str | None = None,
        analyzer: Analyzer | None = None,
        engine: DecisionEngine | None = None,
        executor_factory: ExecutorFactory | None = None,
        session_factory: SessionFactory | None = None,
        store_factory: StoreFactory | None = None,
        command_validator: CommandValidator | None = None,
        lock: WorkspaceLock | None = None,
    ) -> None:
        self.default_root = Path(workspace) if workspace is not None else Path.cwd()
        self.settings = settings
        self.config_path = Path(config_path) if config_path is not None else None
        self.analyzer = analyzer
        self.engine = engine
        self.executor_factory = executor_factory or self._default_executor
        self.session_factory = session_factory or self._default_sessions
        self.store_factory = store_factory or StateStore.from_settings
        self.command_validator = command_validator
        self.lock = lock
        self._contexts: Dict[Path, WorkspaceContext] = {}
        self._state_cache: Dict[Tuple[str, Tuple[bool, ...]], CodebaseState] = {}

    # ------------------------------------------------------------------ wiring
    def _default_executor(self, root: Path, settings: Settings, store: StateStore) -> AtomicOperationExecutor:
        return AtomicOperationExecutor(root, store, settings=settings, command_validator=self.command_validator)

    @staticmethod
    def _default_sessions(root: Path, settings: Settings, store: StateStore) -> SessionManager:
        return SessionManager(root, store, settings=settings)

    def resolve(self, path: Path | str | None = None) -> Path:
        """Return the resolved workspace root or raise :class:`InputError`."""
        if path is not None and not str(path).strip():
            raise InputError("Workspace path must not be empty")
        candidate = Path(path) if path is not None else self.default_root
        if not candidate.is_dir():
            raise InputError(f"Workspace does not exist or is not a directory: {candidate}")
        return candidate.resolve()

    @staticmethod
    def require_path(path: Path | str | None) -> Path | str:
        """Reject an omitted workspace path before any collaborator runs."""
        if path is None:
            raise InputError("Workspace path is required")
        return path

    def context(self, path: Path | str | None = None) -> WorkspaceContext:
        root = self.resolve(path)
        ctx = self._contexts.get(root)
        if ctx is not None:
            return ctx
        settings = self.settings or load_settings(root, config_path=self.config_path)
        store = self.store_factory(root, settings)
        ctx = WorkspaceContext(
            root=root,
            settings=settings,
            store=store,
            analyzer=self.analyzer or ProjectAnalyzer.from_settings(settings),
            engine=self.engine or DecisionEngine(settings),
            executor=self.executor_factory(root, settings, store),
            sessions=self.session_factory(root, settings, store),
            validator=self.command_validator or CommandValidator(timeout=settings.validation.timeout),
            lock=self.lock or WorkspaceLock.from_settings(settings),
        )
        self._contexts[root] = ctx
        return ctx

    def close(self) -> None:
        for ctx in self._contexts.values():
            ctx.store.close()
        self._contexts.clear()
        self._state_cache.clear()

    def invalidate(self, path: Path | str | None = None) -> None:
        root = self.resolve(path).as_posix()
        for key in [key for key in self._state_cache if key[0] == root]:
            del self._state_cache[key]

    # ------------------------------------------------------------------ queries
    async def query_state(
        self,
        options: StateQueryOptions | None = None,
        path: Path | str | None = None,
    ) -> CodebaseState:
        options = options or StateQueryOptions()
        ctx = self.context(path)
        key = (ctx.root.as_posix(), options.cache_key())
        if not options.skip_cache:
            cached = self._state_cache.get(key)
            if cached is not None:
                return cached
        state = await asyncio.to_thread(ctx.analyzer.analyze, ctx.root, options)
        self._state_cache[key] = state
        return state

    async def get_session_state(
        self,
        path: Path | str | None = None,
        goal: str | None = None,
    ) -> Optional[SessionState]:
        ctx = self.context(path)
        return await asyncio.to_thread(ctx.sessions.get_session_state, goal)

    async def get_next_action(
        self,
        path: Path | str | None = None,
        goal: str | None = None,
    ) -> Optional[RefactoringAction]:
        ctx = self.context(self.require_path(path))
        state = await self.query_state(path=ctx.root)
        session = await self.get_session_state(ctx.root, goal)
        return ctx.engine.get_next_action(state, session, goal=goal)

    async def get_current_situation(self, path: Path | str | None = None, goal: str | None = None) -> str:
        ctx = self.context(self.require_path(path))
        state = await self.query_state(path=ctx.root)
        session = await self.get_session_state(ctx.root, goal)
        action = ctx.engine.get_next_action(state, session, goal=goal)
        return render_situation(state, session, action)

    async def analyze_failure(self, action: RefactoringAction, path: Path | str | None = None) -> FailureAnalysis:
        ctx = self.context(path)
        return await asyncio.to_thread(ctx.executor.analyze_failure, action)

    async def get_fallback_strategy(
        self,
        action: RefactoringAction,
        path: Path | str | None = None,
        goal: str | None = None,
    ) -> Optional[RefactoringAction]:
        ctx = self.context(path)
        state = await self.query_state(path=ctx.root)
        session = await self.get_session_state(ctx.root, goal)
        try:
            failure: Optional[FailureAnalysis] = await self.analyze_failure(action, ctx.root)
        except KeyError:
            failure = None
        return ctx.engine.get_fallback_strategy(action, state, session, failure, goal=goal)

    # ------------------------------------------------------------------ mutations
    async def execute_and_validate(self, action: RefactoringAction, path: Path | str | None = None) -> bool:
        try:
            ctx = self.context(path)
        except InputError as error:
            LOGGER.warning("Rejected %s: %s", action.key, error)
            return False
        result = await self._execute(ctx, action)
        return result.success

    async def _execute(
        self,
        ctx: WorkspaceContext,
        action: RefactoringAction,
        session_id: str | None = None,
    ) -> OperationResult:
        def invalidate_on_commit(task: "asyncio.Future[Any]") -> None:
            if not task.cancelled() and task.exception() is None and task.result().success:
                self.invalidate(ctx.root)

        async with ctx.lock.hold(ctx.root):
            result: OperationResult = await _run_to_completion(
                self._execute_locked, ctx, action, session_id, on_done=invalidate_on_commit
            )
        return result

    @staticmethod
    def _execute_locked(
        ctx: WorkspaceContext,
        action: RefactoringAction,
        session_id: str | None,
    ) -> OperationResult:
        ctx.executor.recover_interrupted()
        return ctx.executor.execute_operation(action, session_id=session_id)

    async def validate(self, commands: Sequence[str], path: Path | str | None = None) -> Dict[str, bool]:
        try:
            ctx = self.context(self.require_path(path))
        except InputError as error:
            LOGGER.warning("Validation skipped: %s", error)
            return {command: False for command in commands}
        return await asyncio.to_thread(ctx.validator.run, list(commands), ctx.root)

    async def create_session(
        self,
        path: Path | str | None = None,
        goal: str | None = None,
        reset: bool = False,
    ) -> SessionState:
        ctx = self.context(path)
        async with ctx.lock.hold(ctx.root):
            return await asyncio.to_thread(lambda: ctx.sessions.create_session(goal, reset=reset))

    async def reset_session(self, path: Path | str | None = None, goal: str | None = None) -> int:
        ctx = self.context(path)
        async with ctx.lock.hold(ctx.root):
            return await asyncio.to_thread(ctx.sessions.reset_session, goal)

    async def create_checkpoint(
        self,
        operation: OperationKind | str,
        target: str,
        path: Path | str | None = None,
    ) -> Checkpoint:
        ctx = self.context(path)
        action = get_handler(operation).build_action(target, ctx.settings.thresholds_for(None))
        async with ctx.lock.hold(ctx.root):
            return await asyncio.to_thread(ctx.executor.create_checkpoint, action)

    async def _record(self, ctx: WorkspaceContext, outcome: ActionOutcome, goal: str | None) -> SessionState:
        async with ctx.lock.hold(ctx.root):
            return await asyncio.to_thread(ctx.sessions.update_session, outcome, goal)

    # ------------------------------------------------------------------ loop
    async def run_cycle(
        self,
        path: Path | str | None = None,
        goal: str | None = None,
        *,
        action: RefactoringAction | None = None,
        exclude: Collection[str] = (),
    ) -> CycleReport:
        """Query, decide, execute and record once.

        ``action`` forces the action to run (a fallback, for instance);
        ``exclude`` lists action keys that must not be picked this cycle.
        """

        ctx = self.context(path)
        state = await self.query_state(path=ctx.root)
        async with ctx.lock.hold(ctx.root):
            session = await asyncio.to_thread(ctx.sessions.ensure_session, goal)
        goal = session.target_goal

        if action is None:
            ranked = ctx.engine.candidates(state, session, goal=goal)
            if not ranked:
                LOGGER.info("Goal %s reached for %s", goal, ctx.root)
                session = await self._record(ctx, ActionOutcome(completed=True), goal)
                return CycleReport(action=None, success=True, completed=True, session=session)
            choices = [candidate for candidate in ranked if candidate.key not in exclude]
            if not choices:
                return CycleReport(
                    action=None,
                    success=False,
                    completed=False,
                    session=session,
                    error="Every remaining action already failed in this run",
                )
            action = choices[0]

        LOGGER.info("Executing %s for session %s", action.key, session.id)
        try:
            result = await self._execute(ctx, action, session.id)
        except RollbackError as error:
            outcome = ActionOutcome(
                action=action,
                success=False,
                fatal=True,
                error=str(error),
                checkpoint_id=error.checkpoint_id,
            )
            await self._record(ctx, outcome, goal)
            raise

        after = await self.query_state(path=ctx.root)
        remaining = [
            candidate
            for candidate in ctx.engine.candidates(after, session, goal=goal)
            if not (result.success and candidate.key == action.key)
        ]
        outcome = ActionOutcome(
            action=action,
            success=result.success,
            remaining_actions=len(remaining),
            error=result.error,
            checkpoint_id=result.checkpoint_id,
        )
        session = await self._record(ctx, outcome, goal)
        return CycleReport(
            action=action,
            success=result.success,
            completed=False,
            session=session,
            error=result.error,
            failure=result.failure,
        )

    async def run(
        self,
        path: Path | str | None = None,
        goal: str | None = None,
        max_cycles: int = 10,
    ) -> List[CycleReport]:
        """Repeat cycles until the goal is reached, nothing safe is left, or ``max_cycles``."""
        reports: List[CycleReport] = []
        failed: set[str] = set()
        pending: Optional[RefactoringAction] = None
        for _ in range(max(0, max_cycles)):
            report = await self.run_cycle(path, goal, action=pending, exclude=failed)
            reports.append(report)
            pending = None
            if report.completed or report.action is None:
                break
            if report.success:
                continue
            failed.add(report.action.key)
            fallback = await self.get_fallback_strategy(report.action, path, goal)
            if fallback is None or fallback.key in failed:
                LOGGER.info("Stopping after %s failed with no safe fallback", report.action.key)
                break
            report.fallback = fallback
            pending = fallback
        return reports

    # ------------------------------------------------------------------ diagnostics
    async def validate_system_integrity(self) -> IntegrityReport:
        return await run_integrity_checks(self)


__all__ = ["CycleReport", "Orchestrator", "WorkspaceContext"]

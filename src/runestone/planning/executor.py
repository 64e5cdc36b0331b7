"""Atomic execution of refactoring actions: checkpoint, apply, validate, commit or roll back."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence
from uuid import uuid4

from ..analysis.analyzer import ProjectAnalyzer
from ..checks import ActionContext, CheckRegistry, CheckResult
from ..config import Settings
from ..errors import (
    ActionValidationError,
    PersistenceError,
    PreconditionError,
    RollbackError,
    RunestoneError,
)
from ..memory.schema import (
    Checkpoint,
    CheckpointStatus,
    FailureAnalysis,
    OperationKind,
    RefactoringAction,
    utc_now,
)
from ..memory.store import StateStore
from ..operations import HANDLERS, OperationHandler
from ..tools.commands import CommandValidator
from ..tools.snapshot import capture_scope, restore_scope

LOGGER = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def checkpoint_id_for(target: str) -> str:
    """Return a checkpoint id derived from ``target`` and the current UTC time."""
    slug = _SLUG_RE.sub("-", target.lower()).strip("-")[:48] or "workspace"
    return f"{slug}-{utc_now():%Y%m%dT%H%M%S%fZ}-{uuid4().hex[:6]}"


@dataclass(slots=True)
class OperationResult:
    """Terminal outcome of one action execution."""

    success: bool
    action: RefactoringAction
    error: Optional[str] = None
    failure: Optional[FailureAnalysis] = None
    checkpoint_id: Optional[str] = None
    touched_files: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)


class AtomicOperationExecutor:
    """Apply one action at a time so that it either fully lands or is fully undone.

    The protocol per action:

    1. run the preconditions in order; the first failure ends the attempt
       before any checkpoint exists,
    2. capture and persist a checkpoint of the handler's mutation scope,
    3. apply the handler's effect,
    4. run the validations in order,
    5. commit, or restore the checkpoint and record a failure analysis.

    A restore that fails raises :class:`RollbackError`; nothing retries it.
    """

    def __init__(
        self,
        root: Path | str,
        store: StateStore,
        *,
        settings: Settings | None = None,
        checks: CheckRegistry | None = None,
        handlers: Mapping[OperationKind, OperationHandler] | None = None,
        scanner: ProjectAnalyzer | None = None,
        command_validator: CommandValidator | None = None,
    ) -> None:
        self.root = Path(root).resolve()
        self.store = store
        self.settings = settings or Settings.from_mapping()
        self.checks = checks or CheckRegistry()
        self.handlers: Mapping[OperationKind, OperationHandler] = handlers if handlers is not None else HANDLERS
        self.scanner = scanner or ProjectAnalyzer(self.settings.analysis)
        self.command_validator = command_validator or CommandValidator(timeout=self.settings.validation.timeout)
        self._failures: Dict[str, FailureAnalysis] = {}

    @classmethod
    def from_settings(
        cls,
        root: Path | str,
        settings: Settings,
        *,
        store: StateStore | None = None,
        command_validator: CommandValidator | None = None,
    ) -> "AtomicOperationExecutor":
        store = store or StateStore.from_settings(root, settings)
        return cls(root, store, settings=settings, command_validator=command_validator)

    # ------------------------------------------------------------------ public API
    def execute_and_validate(self, action: RefactoringAction, *, session_id: str | None = None) -> bool:
        return self.execute_operation(action, session_id=session_id).success

    def execute_operation(self, action: RefactoringAction, *, session_id: str | None = None) -> OperationResult:
        handler = self.handlers.get(action.operation)
        if handler is None:
            reason = f"No handler registered for operation {action.operation.value}"
            failure = self._record_failure(action, None, reason=reason)
            return OperationResult(False, action, error=reason, failure=failure)

        ctx = self._context(action)
        preconditions = self.checks.run_until_failure(action.preconditions, ctx)
        rejected = [result for result in preconditions if not result.passed]
        if rejected:
            error = PreconditionError(
                f"Precondition {rejected[0].name} failed: {rejected[0].detail or 'check returned false'}",
                check=rejected[0].name,
            )
            LOGGER.info("Skipping %s: %s", action.key, error)
            failure = self._record_failure(
                action,
                handler,
                reason=str(error),
                validation_failures=[rejected[0].name],
            )
            return OperationResult(False, action, error=str(error), failure=failure, checks=preconditions)

        checkpoint_id = checkpoint_id_for(action.target)
        ctx.checkpoint_id = checkpoint_id
        try:
            ctx.capture_baseline()
            snapshot = capture_scope(self.root, handler.scope(ctx))
            checkpoint = Checkpoint(
                id=checkpoint_id,
                action_key=action.key,
                target=action.target,
                session_id=session_id,
                files=snapshot.files,
                directories=snapshot.directories,
            )
            self.store.save_checkpoint(checkpoint)
        except (RunestoneError, OSError) as error:
            reason = f"Checkpoint could not be created: {error}"
            LOGGER.warning("Aborting %s before apply: %s", action.key, reason)
            failure = self._record_failure(action, handler, reason=reason)
            return OperationResult(False, action, error=reason, failure=failure, checks=preconditions)

        checks: List[CheckResult] = list(preconditions)
        try:
            touched = handler.apply(ctx)
            ctx.touched_files = sorted(set(touched))
            ctx.invalidate()
            validations = self.checks.run_until_failure(action.validations, ctx)
            checks.extend(validations)
            failed = [result for result in validations if not result.passed]
            if failed:
                raise ActionValidationError(
                    f"Validation {failed[0].name} failed: {failed[0].detail or 'check returned false'}",
                    failures=[failed[0].name],
                )
            self.store.update_checkpoint_status(checkpoint_id, CheckpointStatus.COMMITTED)
        except Exception as error:  # noqa: BLE001 - every fault after apply rolls the scope back
            return self._roll_back(ctx, handler, checkpoint, error, checks)

        LOGGER.info("Committed %s (checkpoint %s)", action.key, checkpoint_id)
        self._prune()
        return OperationResult(
            True,
            action,
            checkpoint_id=checkpoint_id,
            touched_files=list(ctx.touched_files),
            checks=checks,
        )

    def create_checkpoint(self, action: RefactoringAction, *, session_id: str | None = None) -> Checkpoint:
        """Capture the mutation scope of ``action`` without applying anything."""
        handler = self.handlers.get(action.operation)
        if handler is None:
            raise KeyError(f"No handler registered for operation {action.operation.value}")
        ctx = self._context(action)
        ctx.checkpoint_id = checkpoint_id_for(action.target)
        snapshot = capture_scope(self.root, handler.scope(ctx))
        checkpoint = Checkpoint(
            id=ctx.checkpoint_id,
            action_key=action.key,
            target=action.target,
            session_id=session_id,
            status=CheckpointStatus.MANUAL,
            files=snapshot.files,
            directories=snapshot.directories,
        )
        self.store.save_checkpoint(checkpoint)
        LOGGER.info("Created checkpoint %s for %s", checkpoint.id, action.key)
        return checkpoint

    def restore_checkpoint(self, checkpoint_id: str) -> List[str]:
        checkpoint = self.store.get_checkpoint(checkpoint_id)
        if checkpoint is None:
            raise KeyError(f"Unknown checkpoint '{checkpoint_id}'")
        restored = self._restore(checkpoint)
        self._set_status(checkpoint.id, CheckpointStatus.RESTORED)
        return restored

    def recover_interrupted(self) -> List[str]:
        """Restore checkpoints left active by a run that died mid-action."""
        recovered: List[str] = []
        for checkpoint in self.store.list_checkpoints(status=CheckpointStatus.ACTIVE):
            LOGGER.warning("Restoring interrupted checkpoint %s (%s)", checkpoint.id, checkpoint.action_key)
            self._restore(checkpoint)
            self._set_status(checkpoint.id, CheckpointStatus.RESTORED)
            recovered.append(checkpoint.id)
        return recovered

    def analyze_failure(self, action: RefactoringAction) -> FailureAnalysis:
        failure = self._failures.get(action.key) or self.store.latest_failure(action.key)
        if failure is None:
            raise KeyError(f"No failure recorded for {action.key}")
        return failure

    # ------------------------------------------------------------------ internals
    def _context(self, action: RefactoringAction) -> ActionContext:
        return ActionContext(
            root=self.root,
            action=action,
            scanner=self.scanner,
            state_dir=self.settings.persistence.state_dir,
            store=self.store,
            commands=tuple(self.settings.validation.commands),
            command_validator=self.command_validator,
        )

    def _roll_back(
        self,
        ctx: ActionContext,
        handler: OperationHandler,
        checkpoint: Checkpoint,
        error: Exception,
        checks: List[CheckResult],
    ) -> OperationResult:
        action = ctx.action
        self._restore(checkpoint)
        self._set_status(checkpoint.id, CheckpointStatus.RESTORED)

        failures = list(error.failures) if isinstance(error, ActionValidationError) else []
        reason = str(error) if isinstance(error, RunestoneError) else f"{type(error).__name__}: {error}"
        affected = sorted(set(checkpoint.scope_paths()) | set(ctx.touched_files))
        LOGGER.info("Rolled back %s (checkpoint %s): %s", action.key, checkpoint.id, reason)
        failure = self._record_failure(
            action,
            handler,
            reason=reason,
            affected_files=affected,
            validation_failures=failures,
        )
        return OperationResult(
            False,
            action,
            error=reason,
            failure=failure,
            checkpoint_id=checkpoint.id,
            touched_files=list(ctx.touched_files),
            checks=checks,
        )

    def _restore(self, checkpoint: Checkpoint) -> List[str]:
        try:
            return restore_scope(self.root, checkpoint.files, checkpoint.directories)
        except RollbackError as error:
            self._set_status(checkpoint.id, CheckpointStatus.ROLLBACK_FAILED)
            LOGGER.error("Rollback of checkpoint %s (%s) failed: %s", checkpoint.id, checkpoint.action_key, error)
            raise RollbackError(str(error), checkpoint_id=checkpoint.id) from error

    def _set_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        try:
            self.store.update_checkpoint_status(checkpoint_id, status)
        except PersistenceError as error:
            LOGGER.warning("Could not mark checkpoint %s as %s: %s", checkpoint_id, status.value, error)

    def _prune(self) -> None:
        try:
            pruned = self.store.prune_checkpoints(self.settings.checkpoints.retain)
        except PersistenceError as error:
            LOGGER.warning("Checkpoint pruning failed: %s", error)
            return
        if pruned:
            LOGGER.debug("Pruned %d committed checkpoints", len(pruned))

    def _record_failure(
        self,
        action: RefactoringAction,
        handler: Optional[OperationHandler],
        *,
        reason: str,
        affected_files: Sequence[str] = (),
        validation_failures: Sequence[str] = (),
    ) -> FailureAnalysis:
        fixes = handler.suggest_fixes(action, validation_failures, reason) if handler else []
        failure = FailureAnalysis(
            action_key=action.key,
            reason=reason,
            affected_files=list(affected_files),
            validation_failures=list(validation_failures),
            suggested_fixes=fixes,
            rollback_completed=True,
        )
        self._failures[action.key] = failure
        try:
            self.store.record_failure(failure)
        except PersistenceError as error:
            LOGGER.warning("Failure analysis for %s kept in memory only: %s", action.key, error)
        return failure


__all__ = ["AtomicOperationExecutor", "OperationResult", "checkpoint_id_for"]

"""System self-validation: exercise every collaborator and score the result."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable, List, Tuple

from .checks import BACKUP_MANIFEST, PROJECT_ROOT
from .errors import RunestoneError, SessionConflictError
from .memory.schema import IntegrityCheck, IntegrityReport, OperationKind, StateQueryOptions
from .operations import get_handler

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

LOGGER = logging.getLogger(__name__)

# Validation name no registry defines; the executor must treat it as a failure.
_MISSING_CHECK = "integrity_probe_missing_check"

_PROBE_SOURCE = "import os\nimport sys\n\n\ndef main():\n    return sys.argv\n"

Probe = Callable[["Orchestrator"], Awaitable[str]]


class ProbeFailure(RunestoneError):
    """Raised by a probe whose collaborator answered incorrectly."""


async def _component_initialization(orchestrator: "Orchestrator") -> str:
    ctx = orchestrator.context()
    missing = [
        name
        for name in ("store", "analyzer", "engine", "executor", "sessions", "validator", "lock")
        if getattr(ctx, name, None) is None
    ]
    if missing:
        raise ProbeFailure(f"missing components: {', '.join(missing)}")
    return f"workspace {ctx.root}"


async def _state_detection(orchestrator: "Orchestrator") -> str:
    state = await orchestrator.query_state(StateQueryOptions(skip_cache=True))
    metrics = state.architectural_metrics
    return (
        f"{state.modules_scanned} modules, {metrics.circular_dependencies} cycles, "
        f"coupling {metrics.coupling_score:.2f}"
    )


async def _decision_making(orchestrator: "Orchestrator") -> str:
    ctx = orchestrator.context()
    state = await orchestrator.query_state()
    first = ctx.engine.get_next_action(state, None)
    second = ctx.engine.get_next_action(state, None)
    if first != second:
        raise ProbeFailure("decision engine is not deterministic for the same state")
    return first.key if first is not None else "no action needed"


def _scratch_workspace(directory: str) -> Path:
    root = Path(directory)
    (root / "probe.py").write_text(_PROBE_SOURCE, encoding="utf-8")
    return root


def _atomic_operations(orchestrator: "Orchestrator") -> str:
    settings = orchestrator.context().settings
    with tempfile.TemporaryDirectory(prefix="runestone-probe-") as directory:
        root = _scratch_workspace(directory).resolve()
        store = orchestrator.store_factory(root, settings)
        try:
            executor = orchestrator.executor_factory(root, settings, store)
            action = get_handler(OperationKind.CREATE_BACKUP).build_action(PROJECT_ROOT, settings.thresholds_for(None))
            result = executor.execute_operation(action)
            if not result.success:
                raise ProbeFailure(f"create_backup failed: {result.error}")
            manifest = root / settings.persistence.state_dir / "backups" / str(result.checkpoint_id) / BACKUP_MANIFEST
            if not manifest.is_file():
                raise ProbeFailure("create_backup reported success without a manifest")
        finally:
            store.close()
    return f"checkpoint {result.checkpoint_id} committed"


def _session_management(orchestrator: "Orchestrator") -> str:
    settings = orchestrator.context().settings
    with tempfile.TemporaryDirectory(prefix="runestone-probe-") as directory:
        root = _scratch_workspace(directory).resolve()
        store = orchestrator.store_factory(root, settings)
        try:
            sessions = orchestrator.session_factory(root, settings, store)
            session = sessions.create_session()
            try:
                sessions.create_session()
            except SessionConflictError:
                pass
            else:
                raise ProbeFailure("a second active session was created")
            if sessions.ensure_session().id != session.id:
                raise ProbeFailure("ensure_session did not return the existing session")
            if len(store.list_sessions(sessions.workspace)) != 1:
                raise ProbeFailure("session store holds duplicate records")
        finally:
            store.close()
    return f"session {session.id} created in scratch store"


def _failure_recovery(orchestrator: "Orchestrator") -> str:
    settings = orchestrator.context().settings
    with tempfile.TemporaryDirectory(prefix="runestone-probe-") as directory:
        root = _scratch_workspace(directory).resolve()
        original = (root / "probe.py").read_bytes()
        store = orchestrator.store_factory(root, settings)
        try:
            executor = orchestrator.executor_factory(root, settings, store)
            handler = get_handler(OperationKind.REDUCE_COUPLING)
            action = handler.build_action(
                "probe.py",
                settings.thresholds_for(None),
                details={"names": ["os"]},
            ).model_copy(update={"validations": ("syntax_valid", _MISSING_CHECK)})
            result = executor.execute_operation(action)
            if result.success:
                raise ProbeFailure("an action with a failing validation was committed")
            if result.failure is None or not result.failure.rollback_completed:
                raise ProbeFailure("no completed rollback was recorded")
            if (root / "probe.py").read_bytes() != original:
                raise ProbeFailure("rollback did not restore probe.py byte-for-byte")
        finally:
            store.close()
    return "induced validation failure rolled back byte-for-byte"


PROBES: List[Tuple[str, Probe]] = [
    ("Component Initialization", _component_initialization),
    ("State Detection", _state_detection),
    ("Decision Making", _decision_making),
    ("Atomic Operations", lambda orchestrator: asyncio.to_thread(_atomic_operations, orchestrator)),
    ("Session Management", lambda orchestrator: asyncio.to_thread(_session_management, orchestrator)),
    ("Failure Recovery", lambda orchestrator: asyncio.to_thread(_failure_recovery, orchestrator)),
]


async def run_integrity_checks(orchestrator: "Orchestrator") -> IntegrityReport:
    """Run every probe and return the scorecard; probes never touch the caller's sessions."""

    results: List[IntegrityCheck] = []
    for name, probe in PROBES:
        try:
            details = await probe(orchestrator)
        except Exception as error:  # noqa: BLE001 - a crashing probe is a failed probe
            LOGGER.warning("Integrity probe %s failed: %s", name, error)
            results.append(IntegrityCheck(test=name, passed=False, details=f"{type(error).__name__}: {error}"))
            continue
        results.append(IntegrityCheck(test=name, passed=True, details=details))
    passed = sum(1 for result in results if result.passed)
    score = round(100 * passed / len(results)) if results else 0
    return IntegrityReport(success=passed == len(results), score=score, results=results)


__all__ = ["PROBES", "run_integrity_checks"]

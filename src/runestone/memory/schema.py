"""Typed records exchanged between the Runestone components and persisted by the store."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class FrozenRecord(BaseModel):
    """Immutable record; instances are never mutated after construction."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class OperationKind(str, Enum):
    """Closed catalog of refactoring operations the executor knows how to apply."""

    CREATE_BACKUP = "create_backup"
    BREAK_CYCLE = "break_cycle"
    ENFORCE_BOUNDARY = "enforce_boundary"
    EXTRACT_MODULE = "extract_module"
    REDUCE_COUPLING = "reduce_coupling"


class RiskLevel(str, Enum):
    """Ordinal risk classification used as a decision tie-break."""

    MINIMAL = "minimal"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANKS[self]


_RISK_RANKS = {
    RiskLevel.MINIMAL: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MODERATE: 2,
    RiskLevel.HIGH: 3,
}


class SessionStatus(str, Enum):
    """Lifecycle states for a refactoring session."""

    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ABANDONED}


class CheckpointStatus(str, Enum):
    """Lifecycle states for a checkpoint."""

    ACTIVE = "active"
    COMMITTED = "committed"
    RESTORED = "restored"
    ROLLBACK_FAILED = "rollback_failed"
    MANUAL = "manual"


# Codebase state ------------------------------------------------------------------------


class ArchitecturalMetrics(FrozenRecord):
    """Headline metrics reported by the analyzer."""

    circular_dependencies: int = Field(default=0, ge=0)
    encapsulation_violations: int = Field(default=0, ge=0)
    coupling_score: float = Field(default=0.0, ge=0.0, le=10.0)
    god_files_count: int = Field(default=0, ge=0)


class RefactoringReadiness(FrozenRecord):
    """Derived signal stating whether the codebase meets the goal's blocking thresholds."""

    ready: bool = True
    score: int = Field(default=100, ge=0, le=100)
    blockers: Tuple[str, ...] = ()


class BoundaryViolation(FrozenRecord):
    """Import that reaches into another package's private module."""

    source: str
    target: str
    imported: str
    owner_has_init: bool = True


class GodFile(FrozenRecord):
    """Module exceeding the configured size or definition thresholds."""

    path: str
    lines: int
    definitions: int


class ModuleCoupling(FrozenRecord):
    """Outgoing internal dependencies for a single module."""

    path: str
    fan_out: int
    unused_imports: Tuple[str, ...] = ()


class ArchitecturalFindings(FrozenRecord):
    """Concrete locations behind the headline metrics."""

    cycles: Tuple[Tuple[str, ...], ...] = ()
    violations: Tuple[BoundaryViolation, ...] = ()
    god_files: Tuple[GodFile, ...] = ()
    coupling: Tuple[ModuleCoupling, ...] = ()
    unparsable: Tuple[str, ...] = ()


class CodebaseState(FrozenRecord):
    """Immutable snapshot of the workspace's architectural state."""

    workspace: str
    architectural_metrics: ArchitecturalMetrics = Field(default_factory=ArchitecturalMetrics)
    refactoring_readiness: RefactoringReadiness = Field(default_factory=RefactoringReadiness)
    findings: ArchitecturalFindings = Field(default_factory=ArchitecturalFindings)
    modules_scanned: int = Field(default=0, ge=0)
    captured_at: datetime = Field(default_factory=utc_now)


class StateQueryOptions(FrozenRecord):
    """Filters accepted by ``queryState``; everything but ``skip_cache`` keys the cache."""

    include_metrics: bool = True
    include_validation: bool = False
    include_dependencies: bool = True
    include_complexity: bool = True
    skip_cache: bool = False

    def cache_key(self) -> Tuple[bool, bool, bool, bool]:
        return (
            self.include_metrics,
            self.include_validation,
            self.include_dependencies,
            self.include_complexity,
        )


# Actions -------------------------------------------------------------------------------


class RefactoringAction(FrozenRecord):
    """Proposed unit of work constructed by the decision engine."""

    operation: OperationKind
    target: str
    priority: int = 0
    preconditions: Tuple[str, ...] = ()
    validations: Tuple[str, ...] = ()
    estimated_time: int = Field(default=0, ge=0)
    risk_level: RiskLevel = RiskLevel.LOW
    details: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.operation.value}:{self.target}"


class FailureAnalysis(RecordModel):
    """Explanation recorded when an action fails and its effect has been undone."""

    action_key: str
    reason: str
    affected_files: List[str] = Field(default_factory=list)
    validation_failures: List[str] = Field(default_factory=list)
    suggested_fixes: List[str] = Field(default_factory=list)
    rollback_completed: bool = False
    created_at: datetime = Field(default_factory=utc_now)


# Sessions ------------------------------------------------------------------------------


class SessionProgress(RecordModel):
    """Monotonic counters describing how far a session has come."""

    attempted: int = Field(default=0, ge=0)
    succeeded: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    completion_estimate: float = Field(default=0.0, ge=0.0, le=1.0)
    operations: Dict[str, int] = Field(default_factory=dict)

    def succeeded_for(self, operation: OperationKind) -> int:
        return int(self.operations.get(operation.value, 0))


class SessionState(RecordModel):
    """Durable record of a refactoring session for one workspace and goal."""

    id: str
    workspace: str
    target_goal: str
    status: SessionStatus = SessionStatus.CREATED
    progress: SessionProgress = Field(default_factory=SessionProgress)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ActionOutcome(RecordModel):
    """Result of one decide/execute cycle handed to the session manager."""

    action: Optional[RefactoringAction] = None
    success: bool = False
    completed: bool = False
    fatal: bool = False
    remaining_actions: int = Field(default=0, ge=0)
    error: Optional[str] = None
    checkpoint_id: Optional[str] = None


class ActionLogEntry(RecordModel):
    """Persisted trace of an attempted action within a session."""

    id: str
    session_id: str
    action: RefactoringAction
    success: bool
    error: Optional[str] = None
    checkpoint_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


# Checkpoints ---------------------------------------------------------------------------


class FileSnapshot(RecordModel):
    """Captured content of one path inside a checkpoint's scope."""

    path: str
    existed: bool
    content: str = ""
    encoding: str = "base64"
    mode: Optional[str] = None
    sha256: Optional[str] = None
    anchor: Optional[str] = None


class DirectorySnapshot(RecordModel):
    """Directory inside a checkpoint's scope and the files it held."""

    path: str
    existed: bool
    files: List[str] = Field(default_factory=list)
    anchor: Optional[str] = None


class Checkpoint(RecordModel):
    """Restorable snapshot taken before an action's effect is applied."""

    id: str
    action_key: str
    target: str
    session_id: Optional[str] = None
    status: CheckpointStatus = CheckpointStatus.ACTIVE
    files: List[FileSnapshot] = Field(default_factory=list)
    directories: List[DirectorySnapshot] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    def scope_paths(self) -> List[str]:
        paths = [entry.path for entry in self.files]
        paths.extend(entry.path for entry in self.directories)
        return sorted(set(paths))


# Diagnostics ---------------------------------------------------------------------------


class IntegrityCheck(RecordModel):
    """Single entry of the system self-validation scorecard."""

    test: str
    passed: bool
    details: Optional[str] = None


class IntegrityReport(RecordModel):
    """Pass/fail scorecard produced by ``validate_system_integrity``."""

    success: bool
    score: int = Field(ge=0, le=100)
    results: List[IntegrityCheck] = Field(default_factory=list)


__all__ = [
    "ActionLogEntry",
    "ActionOutcome",
    "ArchitecturalFindings",
    "ArchitecturalMetrics",
    "BoundaryViolation",
    "Checkpoint",
    "CheckpointStatus",
    "CodebaseState",
    "DirectorySnapshot",
    "FailureAnalysis",
    "FileSnapshot",
    "GodFile",
    "IntegrityCheck",
    "IntegrityReport",
    "ModuleCoupling",
    "OperationKind",
    "RecordModel",
    "RefactoringAction",
    "RefactoringReadiness",
    "RiskLevel",
    "SessionProgress",
    "SessionState",
    "SessionStatus",
    "StateQueryOptions",
    "utc_now",
]

"""Configuration loading for Runestone workspaces.

Configuration lives in ``runestone.yaml`` at the workspace root (or any path
passed explicitly).  The file is optional: values are deep-merged over
``DEFAULT_CONFIG`` so a workspace only needs to spell out what it changes.
Goal thresholds are configuration rather than code, which keeps the decision
engine free of hard-coded notions of what a "good" architecture is.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaValidationError

from .errors import InputError

DEFAULT_CONFIG_NAME = "runestone.yaml"
DEFAULT_GOAL = "hexagonal_architecture"
DEFAULT_EXCLUDES = (
    ".runestone/**",
    ".git/**",
    "**/__pycache__/**",
    ".venv/**",
    "venv/**",
    "build/**",
    "dist/**",
)

DEFAULT_CONFIG: Dict[str, Any] = {
    "session": {
        "default_goal": DEFAULT_GOAL,
    },
    "goals": {
        "hexagonal_architecture": {
            "max_circular_dependencies": 0,
            "max_encapsulation_violations": 0,
            "max_coupling": 3.0,
            "max_god_files": 0,
        },
        "layered_architecture": {
            "max_circular_dependencies": 0,
            "max_encapsulation_violations": 0,
            "max_coupling": 3.5,
            "max_god_files": 0,
            "priorities": {"enforce_boundary": 2, "break_cycle": 3},
        },
        "clean_architecture": {
            "max_circular_dependencies": 0,
            "max_encapsulation_violations": 0,
            "max_coupling": 2.5,
            "max_god_files": 0,
        },
        "modular_monolith": {
            "max_circular_dependencies": 0,
            "max_encapsulation_violations": 2,
            "max_coupling": 4.0,
            "max_god_files": 1,
        },
    },
    "analysis": {
        "include": ["**/*.py"],
        "exclude": list(DEFAULT_EXCLUDES),
        "god_file_lines": 500,
        "god_file_definitions": 40,
    },
    "validation": {
        "commands": [],
        "timeout": 600,
    },
    "checkpoints": {
        "retain": 5,
    },
    "persistence": {
        "state_dir": ".runestone",
        "read_retries": 3,
        "backoff_ms": 50,
    },
    "locking": {
        "timeout_seconds": 600,
        "stale_seconds": 7200,
    },
}


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class GoalThresholds(_Section):
    """Thresholds a workspace must meet for a target goal to count as reached."""

    name: str = DEFAULT_GOAL
    max_circular_dependencies: int = Field(default=0, ge=0)
    max_encapsulation_violations: int = Field(default=0, ge=0)
    max_coupling: float = Field(default=3.0, ge=0.0, le=10.0)
    max_god_files: int = Field(default=0, ge=0)
    priorities: Dict[str, int] = Field(default_factory=dict)


class AnalysisSettings(_Section):
    include: List[str] = Field(default_factory=lambda: ["**/*.py"])
    exclude: List[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    god_file_lines: int = Field(default=500, ge=1)
    god_file_definitions: int = Field(default=40, ge=1)


class ValidationSettings(_Section):
    commands: List[str] = Field(default_factory=list)
    timeout: int = Field(default=600, ge=1)


class CheckpointSettings(_Section):
    retain: int = Field(default=5, ge=0)


class PersistenceSettings(_Section):
    state_dir: str = ".runestone"
    read_retries: int = Field(default=3, ge=0)
    backoff_ms: int = Field(default=50, ge=0)


class LockingSettings(_Section):
    timeout_seconds: float = Field(default=600, ge=0)
    stale_seconds: float = Field(default=7200, ge=0)


class Settings(_Section):
    """Typed view over the merged configuration mapping."""

    default_goal: str = DEFAULT_GOAL
    goals: Dict[str, GoalThresholds] = Field(default_factory=dict)
    analysis: AnalysisSettings = Field(default_factory=AnalysisSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    checkpoints: CheckpointSettings = Field(default_factory=CheckpointSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)
    locking: LockingSettings = Field(default_factory=LockingSettings)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any] | None = None) -> "Settings":
        merged = merge_config(DEFAULT_CONFIG, config or {})
        goals_section = merged.get("goals") or {}
        goals: Dict[str, Any] = {}
        for name, payload in goals_section.items():
            entry = dict(payload or {})
            entry["name"] = str(name)
            goals[str(name)] = entry
        session = merged.get("session") or {}
        try:
            return cls(
                default_goal=str(session.get("default_goal") or DEFAULT_GOAL),
                goals=goals,
                analysis=merged.get("analysis") or {},
                validation=merged.get("validation") or {},
                checkpoints=merged.get("checkpoints") or {},
                persistence=merged.get("persistence") or {},
                locking=merged.get("locking") or {},
            )
        except SchemaValidationError as error:
            raise InputError(f"Invalid configuration: {error}") from error

    def thresholds_for(self, goal: str | None) -> GoalThresholds:
        """Return the thresholds for ``goal`` (or the default goal)."""
        name = goal or self.default_goal
        thresholds = self.goals.get(name)
        if thresholds is None:
            known = ", ".join(sorted(self.goals)) or "(none)"
            raise InputError(f"Unknown target goal '{name}'. Expected one of: {known}")
        return thresholds


def merge_config(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``override`` onto a copy of ``base``."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Read a YAML mapping from disk, guarding against unexpected types."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise InputError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, Mapping):
        raise InputError(f"Expected mapping at top level of {config_path}")
    return dict(data)


def load_settings(
    workspace: Path | str | None = None,
    *,
    config_path: Path | str | None = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> Settings:
    """Load settings for ``workspace``.

    Parameters
    ----------
    workspace:
        Workspace root. ``runestone.yaml`` inside it is read when present and
        no explicit ``config_path`` is given.
    config_path:
        Explicit configuration file. It must exist.
    overrides:
        In-memory mapping merged last; mostly useful for tests and embedding.
    """

    data: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if not path.is_file():
            raise InputError(f"Config file not found: {path}")
        data = _load_yaml(path)
    elif workspace is not None:
        candidate = Path(workspace) / DEFAULT_CONFIG_NAME
        if candidate.is_file():
            data = _load_yaml(candidate)
    if overrides:
        data = merge_config(data, overrides)
    return Settings.from_mapping(data)


__all__ = [
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_GOAL",
    "GoalThresholds",
    "Settings",
    "load_settings",
    "merge_config",
]

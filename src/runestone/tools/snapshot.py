"""Capture and restore the file-system scope covered by a checkpoint."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List

from ..errors import InputError, RollbackError
from ..memory.schema import DirectorySnapshot, FileSnapshot

__all__ = [
    "ScopeSnapshot",
    "capture_scope",
    "file_digest",
    "resolve_within",
    "restore_scope",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ScopeSnapshot:
    """Files and directories captured for one mutation scope."""

    files: List[FileSnapshot] = field(default_factory=list)
    directories: List[DirectorySnapshot] = field(default_factory=list)


def file_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def resolve_within(root: Path, relative: str) -> Path:
    """Resolve ``relative`` under ``root`` and reject paths escaping it."""
    root = root.resolve()
    candidate = (root / relative).resolve()
    try:
        candidate.relative_to(root)
    except ValueError as error:
        raise InputError(f"Path '{relative}' escapes workspace {root}") from error
    return candidate


def capture_scope(root: Path, paths: Iterable[str]) -> ScopeSnapshot:
    """Capture every path in ``paths`` (workspace-relative) under ``root``.

    Existing files are stored base64-encoded with their mode and sha256.
    Existing directories record their file listing and every file inside them.
    Missing paths are recorded with the nearest existing ancestor so a restore
    can remove anything the action created, parent directories included.
    """

    root = root.resolve()
    snapshot = ScopeSnapshot()
    seen: set[str] = set()
    for relative in sorted({_normalise(item) for item in paths}):
        target = resolve_within(root, relative)
        if target.is_dir():
            listing = sorted(
                path.relative_to(root).as_posix() + ("/" if path.is_dir() else "")
                for path in target.rglob("*")
            )
            snapshot.directories.append(DirectorySnapshot(path=relative, existed=True, files=listing))
            for item in listing:
                if not item.endswith("/") and item not in seen:
                    seen.add(item)
                    snapshot.files.append(_capture_file(root, item))
            continue
        if relative in seen:
            continue
        seen.add(relative)
        snapshot.files.append(_capture_file(root, relative))
    return snapshot


def restore_scope(root: Path, files: Iterable[FileSnapshot], directories: Iterable[DirectorySnapshot]) -> List[str]:
    """Return the workspace to the captured state and verify restored content.

    Raises :class:`RollbackError` when a path cannot be written or when the
    restored bytes do not match the recorded digest.
    """

    root = root.resolve()
    file_entries = list(files)
    restored: List[str] = []
    try:
        for directory in directories:
            _prune_directory(root, directory)
        for entry in file_entries:
            target = resolve_within(root, entry.path)
            if entry.existed:
                _write_file(target, entry)
            else:
                _remove_path(target)
                _remove_created_parents(root, target, entry.anchor)
            restored.append(entry.path)
    except OSError as error:
        raise RollbackError(f"Unable to restore workspace scope: {error}") from error

    mismatched = _verify(root, file_entries)
    if mismatched:
        raise RollbackError(f"Restored content does not match checkpoint for: {', '.join(mismatched)}")
    return restored


def _normalise(relative: str) -> str:
    value = Path(relative.strip() or ".").as_posix()
    return value or "."


def _capture_file(root: Path, relative: str) -> FileSnapshot:
    target = resolve_within(root, relative)
    if not target.exists():
        return FileSnapshot(path=relative, existed=False, anchor=_anchor(root, target))
    data = target.read_bytes()
    return FileSnapshot(
        path=relative,
        existed=True,
        content=base64.b64encode(data).decode("ascii"),
        encoding="base64",
        mode=_file_mode(target),
        sha256=file_digest(data),
    )


def _anchor(root: Path, target: Path) -> str:
    current = target.parent
    while current != root and not current.exists():
        current = current.parent
    if current == root:
        return "."
    return current.relative_to(root).as_posix()


def _file_mode(path: Path) -> str | None:
    try:
        return oct(path.stat().st_mode & 0o777)
    except OSError:
        return None


def _write_file(target: Path, entry: FileSnapshot) -> None:
    if target.is_dir():
        shutil.rmtree(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    data = base64.b64decode(entry.content) if entry.encoding == "base64" else entry.content.encode("utf-8")
    with target.open("wb") as handle:
        handle.write(data)
    if entry.mode:
        os.chmod(target, int(entry.mode, 8))


def _remove_path(target: Path) -> None:
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    elif target.exists() or target.is_symlink():
        target.unlink()


def _remove_created_parents(root: Path, target: Path, anchor: str | None) -> None:
    stop = root if anchor in (None, ".") else (root / anchor).resolve()
    current = target.parent
    while current != stop and current != root and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            # Still holds entries that belong to other paths in the scope.
            break
        current = current.parent


def _prune_directory(root: Path, directory: DirectorySnapshot) -> None:
    target = resolve_within(root, directory.path)
    if not directory.existed:
        _remove_path(target)
        _remove_created_parents(root, target, directory.anchor)
        return
    if not target.is_dir():
        _remove_path(target)
        target.mkdir(parents=True, exist_ok=True)
        return
    recorded = set(directory.files)
    # Deepest entries first so new directories are emptied before they are checked.
    for path in sorted(target.rglob("*"), reverse=True):
        relative = path.relative_to(root).as_posix()
        if path.is_dir() and not path.is_symlink():
            if relative + "/" not in recorded:
                LOGGER.debug("Removing directory %s created inside checkpoint scope", relative)
                shutil.rmtree(path)
        elif relative not in recorded:
            LOGGER.debug("Removing %s created inside checkpoint scope", relative)
            path.unlink()


def _verify(root: Path, entries: Iterable[FileSnapshot]) -> List[str]:
    mismatched: List[str] = []
    for entry in entries:
        target = root / entry.path
        if not entry.existed:
            if target.exists():
                mismatched.append(entry.path)
            continue
        try:
            data = target.read_bytes()
        except OSError:
            mismatched.append(entry.path)
            continue
        if entry.sha256 and file_digest(data) != entry.sha256:
            mismatched.append(entry.path)
    return mismatched

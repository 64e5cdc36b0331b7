"""Single-writer locking for a workspace.

Two layers are combined: an in-process :class:`asyncio.Lock` per resolved
workspace root serialises coroutines of one orchestrator, and an ``O_EXCL``
lock file under ``<workspace>/.runestone/locks/`` keeps separate processes
from executing against the same workspace at the same time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from ..errors import LockTimeoutError

__all__ = ["FileLock", "LOCK_FILENAME", "WorkspaceLock"]

LOGGER = logging.getLogger(__name__)

LOCK_FILENAME = "execution.lock"


class FileLock:
    """Lock file created atomically with ``O_CREAT | O_EXCL``."""

    def __init__(
        self,
        lock_path: Path,
        *,
        timeout_seconds: float = 600,
        stale_seconds: float = 7200,
        poll_interval: float = 0.05,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.timeout_seconds = timeout_seconds
        self.stale_seconds = stale_seconds
        self.poll_interval = poll_interval
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.timeout_seconds
        while True:
            if self._try_acquire():
                return
            if self._is_stale():
                LOGGER.warning("Replacing stale workspace lock %s", self.lock_path)
                self._force_release()
                continue
            if time.monotonic() >= deadline:
                holder = (self._read() or {}).get("pid", "unknown")
                raise LockTimeoutError(
                    f"Could not acquire {self.lock_path} after {self.timeout_seconds}s (held by pid {holder})"
                )
            time.sleep(self.poll_interval)

    def release(self) -> None:
        if self._token is None:
            return
        data = self._read()
        if data is not None and data.get("token") != self._token:
            LOGGER.warning("Workspace lock %s was taken over; leaving it in place", self.lock_path)
        else:
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                pass
        self._token = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    def _try_acquire(self) -> bool:
        token = uuid.uuid4().hex
        try:
            fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        metadata = {
            "token": token,
            "pid": os.getpid(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(metadata, handle)
        self._token = token
        return True

    def _read(self) -> Optional[dict]:
        try:
            with self.lock_path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _is_stale(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        if age <= self.stale_seconds:
            return False
        pid = (self._read() or {}).get("pid")
        if isinstance(pid, int) and pid != os.getpid() and _process_alive(pid):
            LOGGER.warning("Lock %s is %.0fs old but pid %s is still running", self.lock_path, age, pid)
            return False
        return True

    def _force_release(self) -> None:
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class WorkspaceLock:
    """Registry of per-workspace write locks.

    ``asyncio.Lock`` objects are bound to the event loop that first waits on
    them, so the registry keeps one set of locks per running loop.
    """

    def __init__(
        self,
        *,
        state_dir: str = ".runestone",
        timeout_seconds: float = 600,
        stale_seconds: float = 7200,
    ) -> None:
        self.state_dir = state_dir
        self.timeout_seconds = timeout_seconds
        self.stale_seconds = stale_seconds
        self._locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[Path, asyncio.Lock]]" = (
            weakref.WeakKeyDictionary()
        )

    @classmethod
    def from_settings(cls, settings) -> "WorkspaceLock":
        return cls(
            state_dir=settings.persistence.state_dir,
            timeout_seconds=settings.locking.timeout_seconds,
            stale_seconds=settings.locking.stale_seconds,
        )

    def lock_path(self, root: Path) -> Path:
        return Path(root).resolve() / self.state_dir / "locks" / LOCK_FILENAME

    def _local_lock(self, root: Path) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        locks = self._locks.setdefault(loop, {})
        lock = locks.get(root)
        if lock is None:
            lock = asyncio.Lock()
            locks[root] = lock
        return lock

    def locked(self, root: Path) -> bool:
        locks = self._locks.get(asyncio.get_running_loop(), {})
        lock = locks.get(Path(root).resolve())
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, root: Path) -> AsyncIterator[None]:
        """Hold the write lock for ``root`` for the duration of the block."""
        resolved = Path(root).resolve()
        local = self._local_lock(resolved)
        try:
            await asyncio.wait_for(local.acquire(), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as error:
            raise LockTimeoutError(f"Timed out waiting for workspace lock on {resolved}") from error
        file_lock = FileLock(
            self.lock_path(resolved),
            timeout_seconds=self.timeout_seconds,
            stale_seconds=self.stale_seconds,
        )
        try:
            await asyncio.to_thread(file_lock.acquire)
            try:
                yield
            finally:
                file_lock.release()
        finally:
            local.release()

"""Durable storage for sessions, action logs, checkpoints, and failure analyses."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, TypeVar

from ..errors import PersistenceError
from .schema import (
    ActionLogEntry,
    Checkpoint,
    CheckpointStatus,
    DirectorySnapshot,
    FailureAnalysis,
    FileSnapshot,
    RefactoringAction,
    SessionProgress,
    SessionState,
    SessionStatus,
)

SCHEMA_VERSION = 1
DEFAULT_STATE_DIR = ".runestone"
DB_FILENAME = "state.sqlite"
LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    serialisable = default if data is None else data
    return json.dumps(serialisable, sort_keys=True)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class StateStore:
    """SQLite-backed persistence for a single workspace.

    The database lives under ``<workspace>/<state_dir>/state.sqlite`` and carries
    a ``schema_version`` row in its ``meta`` table.  Reads are retried with
    exponential backoff when SQLite reports a transient ``OperationalError``
    (typically a locked database); writes are never retried and surface as
    :class:`PersistenceError`.
    """

    def __init__(
        self,
        workspace_root: Path | str,
        *,
        state_dir: str = DEFAULT_STATE_DIR,
        read_retries: int = 3,
        backoff_ms: int = 50,
    ) -> None:
        self.workspace_root = Path(workspace_root).resolve()
        self.state_dir = self.workspace_root / state_dir
        self.db_path = self.state_dir / DB_FILENAME
        self.read_retries = max(0, int(read_retries))
        self.backoff_ms = max(0, int(backoff_ms))
        self._lock = threading.RLock()
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._conn: sqlite3.Connection | None = self._open_connection()
            self._bootstrap()
        except (OSError, sqlite3.Error) as error:
            raise PersistenceError(f"Unable to open state store at {self.db_path}: {error}") from error

    @classmethod
    def from_settings(cls, workspace_root: Path | str, settings: Any) -> "StateStore":
        persistence = settings.persistence
        return cls(
            workspace_root,
            state_dir=persistence.state_dir,
            read_retries=persistence.read_retries,
            backoff_ms=persistence.backoff_ms,
        )

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        # Executions run in worker threads; access is serialised through ``self._lock``.
        connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError(f"State store at {self.db_path} is closed")
        return self._conn

    def _bootstrap(self) -> None:
        conn = self.connection
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                workspace TEXT NOT NULL,
                target_goal TEXT NOT NULL,
                status TEXT NOT NULL,
                progress TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_workspace_goal
                ON sessions(workspace, target_goal, created_at DESC);

            CREATE TABLE IF NOT EXISTS action_log (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                action TEXT NOT NULL,
                success INTEGER NOT NULL,
                error TEXT,
                checkpoint_id TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_action_log_session
                ON action_log(session_id, created_at);

            CREATE TABLE IF NOT EXISTS checkpoints (
                id TEXT PRIMARY KEY,
                action_key TEXT NOT NULL,
                target TEXT NOT NULL,
                session_id TEXT,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_checkpoints_status
                ON checkpoints(status, created_at DESC);

            CREATE TABLE IF NOT EXISTS failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action_key TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_failures_action
                ON failures(action_key, id DESC);
            """
        )
        row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
        else:
            on_disk = int(row["value"])
            if on_disk > SCHEMA_VERSION:
                raise PersistenceError(
                    f"State store schema version {on_disk} is newer than supported version {SCHEMA_VERSION}"
                )
        conn.commit()

    @property
    def schema_version(self) -> int:
        row = self._read(
            lambda conn: conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
        )
        return int(row["value"]) if row else 0

    # ------------------------------------------------------------------ plumbing
    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.connection
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as error:
                conn.rollback()
                raise PersistenceError(f"State store write failed: {error}") from error
            except Exception:
                conn.rollback()
                raise

    def _read(self, query: Callable[[sqlite3.Connection], T]) -> T:
        attempt = 0
        while True:
            try:
                with self._lock:
                    return query(self.connection)
            except sqlite3.OperationalError as error:
                if attempt >= self.read_retries:
                    raise PersistenceError(f"State store read failed: {error}") from error
                delay = (self.backoff_ms / 1000.0) * (2**attempt)
                LOGGER.warning(
                    "State store read failed (%s); retrying in %.3fs (attempt %d/%d)",
                    error,
                    delay,
                    attempt + 1,
                    self.read_retries,
                )
                time.sleep(delay)
                attempt += 1
            except sqlite3.Error as error:
                raise PersistenceError(f"State store read failed: {error}") from error

    # Session operations ---------------------------------------------------------------
    def save_session(self, session: SessionState) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, workspace, target_goal, status, progress, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    workspace = excluded.workspace,
                    target_goal = excluded.target_goal,
                    status = excluded.status,
                    progress = excluded.progress,
                    updated_at = excluded.updated_at
                """,
                (
                    session.id,
                    session.workspace,
                    session.target_goal,
                    session.status.value,
                    _dump_json(session.progress.model_dump(mode="json"), default={}),
                    _as_iso(session.created_at),
                    _as_iso(session.updated_at),
                ),
            )

    def get_session(self, session_id: str) -> Optional[SessionState]:
        row = self._read(
            lambda conn: conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        )
        return self._row_to_session(row) if row else None

    def find_session(
        self,
        workspace: str,
        target_goal: str | None = None,
        *,
        active_only: bool = False,
    ) -> Optional[SessionState]:
        """Return the most recent session for ``workspace`` (and ``target_goal``)."""
        query = "SELECT * FROM sessions WHERE workspace = ?"
        params: List[Any] = [workspace]
        if target_goal:
            query += " AND target_goal = ?"
            params.append(target_goal)
        if active_only:
            terminal = [status.value for status in SessionStatus if status.is_terminal]
            query += f" AND status NOT IN ({','.join('?' for _ in terminal)})"
            params.extend(terminal)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        row = self._read(lambda conn: conn.execute(query, params).fetchone())
        return self._row_to_session(row) if row else None

    def list_sessions(self, workspace: str | None = None) -> List[SessionState]:
        query = "SELECT * FROM sessions"
        params: List[Any] = []
        if workspace:
            query += " WHERE workspace = ?"
            params.append(workspace)
        query += " ORDER BY created_at ASC, rowid ASC"
        rows = self._read(lambda conn: conn.execute(query, params).fetchall())
        return [self._row_to_session(row) for row in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cursor.rowcount > 0

    def _row_to_session(self, row: sqlite3.Row) -> SessionState:
        return SessionState(
            id=row["id"],
            workspace=row["workspace"],
            target_goal=row["target_goal"],
            status=SessionStatus(row["status"]),
            progress=SessionProgress.model_validate(_load_json(row["progress"], default={})),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    # Action log operations ------------------------------------------------------------
    def append_action(self, entry: ActionLogEntry) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO action_log (id, session_id, action, success, error, checkpoint_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.session_id,
                    _dump_json(entry.action.model_dump(mode="json"), default={}),
                    1 if entry.success else 0,
                    entry.error,
                    entry.checkpoint_id,
                    _as_iso(entry.created_at),
                ),
            )

    def list_actions(self, session_id: str) -> List[ActionLogEntry]:
        rows = self._read(
            lambda conn: conn.execute(
                "SELECT * FROM action_log WHERE session_id = ? ORDER BY created_at ASC, rowid ASC",
                (session_id,),
            ).fetchall()
        )
        return [
            ActionLogEntry(
                id=row["id"],
                session_id=row["session_id"],
                action=RefactoringAction.model_validate(_load_json(row["action"], default={})),
                success=bool(row["success"]),
                error=row["error"],
                checkpoint_id=row["checkpoint_id"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Checkpoint operations ------------------------------------------------------------
    def save_checkpoint(self, checkpoint: Checkpoint) -> None:
        payload = {
            "files": [entry.model_dump(mode="json") for entry in checkpoint.files],
            "directories": [entry.model_dump(mode="json") for entry in checkpoint.directories],
        }
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO checkpoints (id, action_key, target, session_id, status, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    action_key = excluded.action_key,
                    target = excluded.target,
                    session_id = excluded.session_id,
                    status = excluded.status,
                    payload = excluded.payload
                """,
                (
                    checkpoint.id,
                    checkpoint.action_key,
                    checkpoint.target,
                    checkpoint.session_id,
                    checkpoint.status.value,
                    _dump_json(payload, default={}),
                    _as_iso(checkpoint.created_at),
                ),
            )

    def get_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        row = self._read(
            lambda conn: conn.execute("SELECT * FROM checkpoints WHERE id = ?", (checkpoint_id,)).fetchone()
        )
        return self._row_to_checkpoint(row) if row else None

    def update_checkpoint_status(self, checkpoint_id: str, status: CheckpointStatus) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE checkpoints SET status = ? WHERE id = ?",
                (status.value, checkpoint_id),
            )

    def list_checkpoints(
        self,
        *,
        status: CheckpointStatus | None = None,
        limit: int | None = None,
    ) -> List[Checkpoint]:
        query = "SELECT * FROM checkpoints"
        params: List[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._read(lambda conn: conn.execute(query, params).fetchall())
        return [self._row_to_checkpoint(row) for row in rows]

    def prune_checkpoints(self, retain: int) -> List[str]:
        """Delete committed checkpoints beyond the newest ``retain`` entries."""
        committed = self.list_checkpoints(status=CheckpointStatus.COMMITTED)
        stale = [checkpoint.id for checkpoint in committed[max(0, retain):]]
        if not stale:
            return []
        with self._transaction() as conn:
            conn.executemany("DELETE FROM checkpoints WHERE id = ?", [(item,) for item in stale])
        return stale

    def _row_to_checkpoint(self, row: sqlite3.Row) -> Checkpoint:
        payload = _load_json(row["payload"], default={})
        return Checkpoint(
            id=row["id"],
            action_key=row["action_key"],
            target=row["target"],
            session_id=row["session_id"],
            status=CheckpointStatus(row["status"]),
            files=[FileSnapshot.model_validate(item) for item in payload.get("files", [])],
            directories=[DirectorySnapshot.model_validate(item) for item in payload.get("directories", [])],
            created_at=_from_iso(row["created_at"]),
        )

    # Failure operations ---------------------------------------------------------------
    def record_failure(self, analysis: FailureAnalysis) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO failures (action_key, payload, created_at) VALUES (?, ?, ?)",
                (
                    analysis.action_key,
                    _dump_json(analysis.model_dump(mode="json"), default={}),
                    _as_iso(analysis.created_at),
                ),
            )

    def latest_failure(self, action_key: str) -> Optional[FailureAnalysis]:
        row = self._read(
            lambda conn: conn.execute(
                "SELECT payload FROM failures WHERE action_key = ? ORDER BY id DESC LIMIT 1",
                (action_key,),
            ).fetchone()
        )
        if row is None:
            return None
        return FailureAnalysis.model_validate(_load_json(row["payload"], default={}))

    def list_failures(self, limit: int | None = None) -> List[FailureAnalysis]:
        query = "SELECT payload FROM failures ORDER BY id DESC"
        params: List[Any] = []
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = self._read(lambda conn: conn.execute(query, params).fetchall())
        return [FailureAnalysis.model_validate(_load_json(row["payload"], default={})) for row in rows]


__all__ = ["DB_FILENAME", "DEFAULT_STATE_DIR", "SCHEMA_VERSION", "StateStore"]

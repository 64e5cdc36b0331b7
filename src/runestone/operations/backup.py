"""create_backup: copy the workspace into the state directory before riskier work."""

from __future__ import annotations

import json
import shutil
from typing import List, Optional

from ..analysis.analyzer import path_matches
from ..checks import BACKUP_MANIFEST, PROJECT_ROOT, ActionContext
from ..config import GoalThresholds
from ..errors import OperationError
from ..memory.schema import CodebaseState, OperationKind, RefactoringAction, RiskLevel, SessionState
from ..tools.snapshot import file_digest
from .base import OperationHandler


class BackupHandler(OperationHandler):
    kind = OperationKind.CREATE_BACKUP
    priority = 1
    risk_level = RiskLevel.MINIMAL
    estimated_time = 30
    preconditions = ("workspace_exists", "no_active_checkpoint")
    validations = ("backup_exists",)
    needs_pending_work = True

    def candidates(
        self,
        state: CodebaseState,
        session: Optional[SessionState],
        thresholds: GoalThresholds,
    ) -> List[RefactoringAction]:
        if session is not None and session.progress.succeeded_for(self.kind) > 0:
            return []
        return [self.build_action(PROJECT_ROOT, thresholds)]

    def backup_dir(self, ctx: ActionContext) -> str:
        if not ctx.checkpoint_id:
            raise OperationError("create_backup needs a checkpoint id to name its directory")
        return f"{ctx.state_dir}/backups/{ctx.checkpoint_id}"

    def scope(self, ctx: ActionContext) -> List[str]:
        return [self.backup_dir(ctx)]

    def sources(self, ctx: ActionContext) -> List[str]:
        excluded = [f"{ctx.state_dir}/**", *ctx.scanner.settings.exclude]
        selected: List[str] = []
        for path in ctx.root.rglob("*"):
            if not path.is_file() or path.is_symlink():
                continue
            relative = path.relative_to(ctx.root).as_posix()
            if any(path_matches(relative, pattern) for pattern in excluded):
                continue
            selected.append(relative)
        return sorted(selected)

    def apply(self, ctx: ActionContext) -> List[str]:
        relative_dir = self.backup_dir(ctx)
        destination = ctx.root / relative_dir
        if destination.exists():
            raise OperationError(f"Backup directory {relative_dir} already exists")
        manifest = {}
        for relative in self.sources(ctx):
            source = ctx.root / relative
            copy = destination / relative
            copy.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, copy)
            manifest[relative] = file_digest(source.read_bytes())
        destination.mkdir(parents=True, exist_ok=True)
        payload = {"checkpoint_id": ctx.checkpoint_id, "files": manifest}
        (destination / BACKUP_MANIFEST).write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        ctx.notes["backup_dir"] = relative_dir
        ctx.notes["backup_files"] = len(manifest)
        return [relative_dir]

    def suggest_fixes(self, action, failed_checks, reason):
        if "backup_exists" in failed_checks:
            return ["Check free disk space and permissions under the state directory, then retry the backup."]
        return super().suggest_fixes(action, failed_checks, reason)

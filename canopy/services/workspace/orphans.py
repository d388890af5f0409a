"""孤儿 worktree 检测与清理

元数据中登记的仓库出现以下情况即视为孤儿：
1. canonical 仓库已不存在
2. worktree 目录不存在
3. worktree 目录存在但缺少 .git

stat 遇到"不存在"以外的错误（权限、I/O）只记警告，不判为孤儿。
prune_worktrees 对每个 canonical 仓库执行 git worktree prune，
清掉指向已删除目录的 worktree 记录；单仓失败不影响其余仓库。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from canopy.core.exceptions import CanopyError, InternalError
from canopy.core.models import (
    ORPHAN_CANONICAL_MISSING,
    ORPHAN_DIRECTORY_MISSING,
    ORPHAN_INVALID_GIT_DIR,
    OrphanedWorktree,
)

if TYPE_CHECKING:
    from canopy.core.models import Repo, Workspace
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class OrphanDetector:
    def __init__(self, runtime: WorkspaceRuntime) -> None:
        self.rt = runtime

    def detect(self, workspace_id: str = "") -> list[OrphanedWorktree]:
        """检测全部工作空间，或只检测 workspace_id 指定的一个"""
        if workspace_id:
            workspaces = [self.rt.load(workspace_id)[0]]
        else:
            workspaces = self.rt.storage.list()
        canonical = set(self.rt.git.list())

        orphans: list[OrphanedWorktree] = []
        for ws in workspaces:
            for repo in ws.repos:
                orphan = self._check(ws, repo, canonical)
                if orphan is not None:
                    orphans.append(orphan)
        if orphans:
            logger.info("发现 %d 个孤儿 worktree", len(orphans))
        return orphans

    def _check(self, ws: Workspace, repo: Repo, canonical: set[str]) -> OrphanedWorktree | None:
        path = self.rt.worktree_path(ws, repo.name)

        def orphan(reason: str) -> OrphanedWorktree:
            return OrphanedWorktree(workspace_id=ws.id, repo=repo.name, path=path, reason=reason)

        if repo.name not in canonical:
            return orphan(ORPHAN_CANONICAL_MISSING)
        for target, reason in ((Path(path), ORPHAN_DIRECTORY_MISSING),
                               (Path(path) / ".git", ORPHAN_INVALID_GIT_DIR)):
            try:
                target.stat()
            except FileNotFoundError:
                return orphan(reason)
            except OSError as e:
                logger.warning(
                    "检查 worktree 失败: %s: %s", target, e,
                    extra={"workspace_id": ws.id, "repo": repo.name},
                )
                return None
        return None

    def prune_worktrees(self) -> list[str]:
        """返回已清理的 canonical 仓库；有失败时抛 InternalError，cause 为首个错误"""
        pruned: list[str] = []
        failures: list[tuple[str, CanopyError]] = []
        for name in self.rt.git.list():
            try:
                self.rt.git.prune_worktrees(name)
            except CanopyError as e:
                logger.warning("worktree prune 失败: %s: %s", name, e, extra={"repo": name})
                failures.append((name, e))
                continue
            pruned.append(name)

        if failures:
            names = ", ".join(name for name, _ in failures)
            raise InternalError(
                f"部分 worktree prune 失败: {names}", cause=failures[0][1], operation="prune",
            )
        return pruned

"""工作空间重命名

同时持有新旧两个 ID 的锁。步骤：
1. 分支名等于旧 ID 时逐仓重命名分支（补偿：改回旧名）
2. 移动工作空间目录并修复 worktree 链接（补偿：移回）
3. 写入新 ID 的元数据（补偿：写回旧元数据）
最后失效新旧两个 ID 的缓存。
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import (
    CanopyError,
    InvalidArgument,
    WorkspaceExists,
    WorkspaceNotFound,
)
from canopy.core.operation import Operation
from canopy.core.storage import validate_workspace_id

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import Workspace
    from canopy.services.workspace.close import WorkspaceCloser
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceRenamer:
    """重命名工作空间"""

    def __init__(self, runtime: WorkspaceRuntime, closer: WorkspaceCloser) -> None:
        self.rt = runtime
        self._closer = closer

    def rename(
        self,
        old_id: str,
        new_id: str,
        *,
        force: bool = False,
        rename_branch: bool = True,
        cancel: CancelToken | None = None,
    ) -> str:
        validate_workspace_id(new_id)
        if old_id == new_id:
            raise InvalidArgument("新旧 ID 相同", workspace_id=old_id)
        token = ensure_token(cancel)

        with self.rt.locked_many([old_id, new_id], token):
            ws = self._load_active(old_id)
            if self.rt.exists(new_id):
                if not force:
                    raise WorkspaceExists(new_id, operation="rename")
                self._closer.close_locked(
                    new_id, keep=False, force=True, continue_on_hook_error=True, token=token,
                )

            original = copy.deepcopy(ws)
            old_dir = ws.dir_name or old_id
            branches = rename_branch and ws.branch_name == old_id

            op = Operation(f"rename {old_id} -> {new_id}")
            if branches:
                op.add_step(
                    "branches",
                    lambda: self._rename_branches(ws, old_id, new_id),
                    rollback=lambda: self._rename_branches(ws, new_id, old_id),
                )
            op.add_step(
                "directory",
                lambda: self._move(ws, old_dir, new_id),
                rollback=lambda: self._move(ws, new_id, old_dir),
            )
            op.add_step(
                "metadata",
                lambda: self._write(ws, new_id, new_id if branches else ws.branch_name),
                rollback=lambda: self._restore_metadata(original, new_id),
            )
            try:
                op.execute()
            finally:
                self.rt.invalidate(old_id)
                self.rt.invalidate(new_id)

        logger.info("工作空间已重命名: %s -> %s", old_id, new_id, extra={"workspace_id": new_id})
        return self.rt.storage.workspace_path(new_id)

    def _load_active(self, workspace_id: str) -> Workspace:
        try:
            ws, _ = self.rt.load(workspace_id)
        except WorkspaceNotFound:
            if self.rt.storage.latest_closed(workspace_id) is not None:
                raise InvalidArgument(
                    f"工作空间 {workspace_id} 已关闭，请先 restore 再重命名",
                    workspace_id=workspace_id,
                ) from None
            raise
        return ws

    def _rename_branches(self, ws: Workspace, old: str, new: str) -> None:
        """逐仓重命名分支；中途失败把已改的改回去"""
        done: list[str] = []
        for repo in ws.repos:
            path = self.rt.worktree_path(ws, repo.name)
            try:
                self.rt.git.rename_branch(path, old, new)
            except CanopyError:
                for name in reversed(done):
                    try:
                        self.rt.git.rename_branch(self.rt.worktree_path(ws, name), new, old)
                    except CanopyError as e:
                        logger.debug("分支回滚失败: %s/%s: %s", ws.id, name, e)
                raise
            done.append(repo.name)

    def _move(self, ws: Workspace, src: str, dst: str) -> None:
        self.rt.storage.rename(src, dst)
        ws.dir_name = dst
        for repo in ws.repos:
            try:
                self.rt.git.repair_worktree(repo.name, self.rt.worktree_path(ws, repo.name))
            except CanopyError as e:
                logger.warning(
                    "修复 worktree 链接失败: %s/%s: %s", dst, repo.name, e,
                    extra={"workspace_id": dst, "repo": repo.name},
                )

    def _write(self, ws: Workspace, new_id: str, branch: str) -> None:
        ws.id = new_id
        ws.dir_name = new_id
        ws.branch_name = branch
        self.rt.storage.save(ws)

    def _restore_metadata(self, original: Workspace, current_dir: str) -> None:
        restored = copy.deepcopy(original)
        restored.dir_name = current_dir
        self.rt.storage.save(restored)

"""工作空间关闭

两种模式：
- delete（active → absent）：校验干净 → pre_close 钩子 → 移除 worktree → 删除目录 → 失效缓存
- archive（active → closed-archived）：同样的校验与钩子，再写归档记录并删除目录；
  归档记录写入成功但目录删除失败时回滚归档记录，避免工作空间同时"已归档"又"仍存在"

force=True 跳过干净校验（未提交修改、未推送提交）。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import GitOperationFailed, IOFailed, RepoNotClean
from canopy.core.models import ClosePreview, RepoStatus
from canopy.core.operation import Operation
from canopy.services.workspace.runtime import ok, raise_batch_error

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import ClosedWorkspace, Repo, RepoTaskResult, Workspace
    from canopy.services.workspace.create import WorkspaceCreator
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceCloser:
    """关闭工作空间"""

    def __init__(self, runtime: WorkspaceRuntime, creator: WorkspaceCreator) -> None:
        self.rt = runtime
        self._creator = creator

    def close(
        self,
        workspace_id: str,
        *,
        keep: bool = False,
        force: bool = False,
        continue_on_hook_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> ClosedWorkspace | None:
        """关闭工作空间；keep=True 时归档并返回归档记录"""
        token = ensure_token(cancel)
        with self.rt.locked(workspace_id, token):
            return self.close_locked(
                workspace_id, keep=keep, force=force,
                continue_on_hook_error=continue_on_hook_error, token=token,
            )

    def close_locked(
        self,
        workspace_id: str,
        *,
        keep: bool,
        force: bool,
        continue_on_hook_error: bool,
        token: CancelToken,
    ) -> ClosedWorkspace | None:
        ws, _ = self.rt.load(workspace_id)
        if not force:
            self.ensure_clean(ws, token)

        hooks = self.rt.hook_list("pre_close")
        if hooks:
            self.rt.hooks.run(
                hooks, self.rt.hook_context(ws),
                continue_on_error=continue_on_hook_error, cancel=token,
            )
        token.raise_if_cancelled(f"close {workspace_id}")

        if keep:
            return self._archive(ws)
        self._delete(ws)
        return None

    # ---- 干净校验 ----

    def repo_status(self, ws: Workspace, repo: Repo, token: CancelToken) -> RepoStatus:
        path = self.rt.worktree_path(ws, repo.name)
        if not Path(path).exists():
            return RepoStatus(name=repo.name, error="worktree 不存在")
        try:
            st = self.rt.git.status(path, cancel=token)
        except GitOperationFailed as e:
            raise IOFailed(
                f"读取仓库状态失败: {repo.name}", cause=e, repo=repo.name,
            ) from e
        return RepoStatus(
            name=repo.name, branch=st.branch, dirty=st.dirty,
            unpushed=st.unpushed, behind=st.behind,
        )

    def ensure_clean(self, ws: Workspace, token: CancelToken) -> None:
        """任一仓库有未提交修改或未推送提交即抛 RepoNotClean"""

        def check(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            st = self.repo_status(ws, repo, tok)
            if st.dirty:
                raise RepoNotClean(
                    f"仓库 {repo.name} 有未提交的修改", repo=repo.name, workspace_id=ws.id,
                )
            if st.unpushed:
                raise RepoNotClean(
                    f"仓库 {repo.name} 有 {st.unpushed} 个未推送的提交",
                    repo=repo.name, workspace_id=ws.id,
                )
            return ok(repo.name)

        batch = self.rt.run_repos(ws.repos, check, cancel=token)
        raise_batch_error(batch, "close", ws.id)

    # ---- 删除 / 归档 ----

    def _delete(self, ws: Workspace) -> None:
        self._creator.remove_worktrees(ws)
        try:
            self.rt.storage.delete(ws.id)
        finally:
            self.rt.invalidate(ws.id)
        logger.info("工作空间已删除: %s", ws.id, extra={"workspace_id": ws.id, "operation": "close"})

    def _archive(self, ws: Workspace) -> ClosedWorkspace:
        archived: list[ClosedWorkspace] = []

        def write_archive() -> None:
            archived.append(self.rt.storage.close(ws.id, datetime.now(timezone.utc)))

        def drop_archive() -> None:
            if archived:
                self.rt.storage.delete_closed(archived[0])

        op = Operation(f"archive {ws.id}")
        op.add_step("archive", write_archive, rollback=drop_archive)
        op.add_step("delete", lambda: self._delete(ws))
        op.execute()
        logger.info(
            "工作空间已归档: %s -> %s", ws.id, archived[0].path,
            extra={"workspace_id": ws.id, "operation": "close"},
        )
        return archived[0]

    # ---- 演练 ----

    def preview(self, workspace_id: str, *, keep: bool = False) -> ClosePreview:
        """不加锁、不修改任何状态，报告关闭时会发生什么"""
        ws, _ = self.rt.load(workspace_id)
        statuses: dict[str, RepoStatus] = {}
        token = ensure_token(None)

        def collect(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            statuses[repo.name] = self.repo_status(ws, repo, tok)
            return ok(repo.name)

        batch = self.rt.run_repos(ws.repos, collect, continue_on_error=True, cancel=token)
        repos = [
            statuses.get(r.repo) or RepoStatus(name=r.repo, error=str(r.error or ""))
            for r in batch.results
        ]
        hooks = self.rt.hooks.preview(self.rt.hook_list("pre_close"), self.rt.hook_context(ws))
        return ClosePreview(workspace_id=ws.id, keep=keep, repos=repos, hooks=hooks)

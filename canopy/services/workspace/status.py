"""工作空间查询（只读，不持锁）"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import CanopyError, OperationTimeout
from canopy.core.models import RepoStatus, WorkspaceStatus
from canopy.services.workspace.runtime import ok

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import ClosedWorkspace, Repo, RepoTaskResult, Workspace
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceQuery:
    """状态、列表与路径查询"""

    def __init__(self, runtime: WorkspaceRuntime) -> None:
        self.rt = runtime

    def get_status(
        self, workspace_id: str, *, cancel: CancelToken | None = None,
    ) -> WorkspaceStatus:
        """单仓失败只记入该仓的 error 字段，超时记为 "timeout" """
        ws, _ = self.rt.load(workspace_id)
        token = ensure_token(cancel)
        statuses: dict[str, RepoStatus] = {}

        def collect(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            statuses[repo.name] = self._repo_status(ws, repo, tok)
            return ok(repo.name)

        batch = self.rt.run_repos(ws.repos, collect, continue_on_error=True, cancel=token)
        repos = [
            statuses.get(r.repo) or RepoStatus(name=r.repo, error=str(r.error or ""))
            for r in batch.results
        ]
        return WorkspaceStatus(
            id=ws.id,
            branch_name=ws.branch_name,
            repos=repos,
            locked=self.rt.locks.is_locked(ws.id),
        )

    def _repo_status(self, ws: Workspace, repo: Repo, token: CancelToken) -> RepoStatus:
        path = self.rt.worktree_path(ws, repo.name)
        if not Path(path).exists():
            return RepoStatus(name=repo.name, error="worktree 不存在")
        try:
            st = self.rt.git.status(path, cancel=token)
        except OperationTimeout:
            return RepoStatus(name=repo.name, error="timeout")
        except CanopyError as e:
            return RepoStatus(name=repo.name, error=e.message)
        return RepoStatus(
            name=repo.name, branch=st.branch, dirty=st.dirty,
            unpushed=st.unpushed, behind=st.behind,
        )

    def list_workspaces(self, *, with_usage: bool = False) -> list[Workspace]:
        workspaces = self.rt.storage.list()
        for ws in workspaces:
            ws.locked = self.rt.locks.is_locked(ws.id)
            if not with_usage:
                continue
            usage = self.rt.usage.cached_usage(str(self.rt.workspace_dir(ws)))
            if usage.error is not None:
                logger.warning(
                    "计算磁盘占用失败: %s: %s", ws.id, usage.error,
                    extra={"workspace_id": ws.id},
                )
                continue
            ws.disk_usage = usage.size
            if usage.latest_mtime is not None:
                ws.last_modified = usage.latest_mtime
        return workspaces

    def list_closed(self) -> list[ClosedWorkspace]:
        return self.rt.storage.list_closed()

    def workspace_path(self, workspace_id: str) -> str:
        ws, _ = self.rt.load(workspace_id)
        return str(self.rt.workspace_dir(ws))

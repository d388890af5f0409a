"""工作空间内代码仓增删

add_repo: 创建 worktree（补偿：移除）→ 追加元数据
remove_repo: 校验干净（force 跳过）→ 先写元数据（补偿：写回原元数据）→ 移除 worktree
"""

from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import RepoAlreadyExists, RepoNotClean, RepoNotFound
from canopy.core.operation import Operation

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import Repo, Workspace
    from canopy.services.workspace.close import WorkspaceCloser
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceRepoEditor:
    """向已有工作空间添加 / 移除代码仓"""

    def __init__(self, runtime: WorkspaceRuntime, closer: WorkspaceCloser) -> None:
        self.rt = runtime
        self._closer = closer

    def add_repo(
        self, workspace_id: str, ref: str, *, cancel: CancelToken | None = None,
    ) -> Repo:
        repo = self.rt.resolver.resolve_one(ref)
        token = ensure_token(cancel)
        with self.rt.locked(workspace_id, token):
            ws, _ = self.rt.load(workspace_id)
            if ws.find_repo(repo.name) is not None:
                raise RepoAlreadyExists(
                    f"工作空间已包含仓库: {repo.name}", repo=repo.name, workspace_id=workspace_id,
                )
            path = self.rt.worktree_path(ws, repo.name)

            def add_worktree() -> None:
                self.rt.git.ensure_canonical(repo.url, repo.name, cancel=token)
                token.raise_if_cancelled(f"add_repo {repo.name}")
                self.rt.git.create_worktree(repo.name, path, ws.branch_name)

            def append() -> None:
                ws.repos.append(repo)
                self.rt.save(ws)

            op = Operation(f"add_repo {workspace_id}/{repo.name}")
            op.add_step(
                "worktree", add_worktree,
                rollback=lambda: self.rt.git.remove_worktree(repo.name, path),
            )
            op.add_step("metadata", append)
            op.execute()

        logger.info(
            "仓库已加入工作空间: %s/%s", workspace_id, repo.name,
            extra={"workspace_id": workspace_id, "repo": repo.name},
        )
        return repo

    def remove_repo(
        self,
        workspace_id: str,
        name: str,
        *,
        force: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        token = ensure_token(cancel)
        with self.rt.locked(workspace_id, token):
            ws, _ = self.rt.load(workspace_id)
            repo = ws.find_repo(name)
            if repo is None:
                raise RepoNotFound(
                    f"工作空间不包含仓库: {name}", repo=name, workspace_id=workspace_id,
                )
            if not force:
                self._ensure_clean(ws, repo, token)

            original = copy.deepcopy(ws)

            def drop() -> None:
                ws.repos = [r for r in ws.repos if r.name != name]
                self.rt.save(ws)

            op = Operation(f"remove_repo {workspace_id}/{name}")
            op.add_step("metadata", drop, rollback=lambda: self.rt.save(original))
            op.add_step(
                "worktree",
                lambda: self.rt.git.remove_worktree(name, self.rt.worktree_path(ws, name)),
            )
            op.execute()

        logger.info(
            "仓库已移出工作空间: %s/%s", workspace_id, name,
            extra={"workspace_id": workspace_id, "repo": name},
        )

    def _ensure_clean(self, ws: Workspace, repo: Repo, token: CancelToken) -> None:
        st = self._closer.repo_status(ws, repo, token)
        if st.dirty or st.unpushed:
            raise RepoNotClean(
                f"仓库 {repo.name} 有未提交的修改或未推送的提交",
                repo=repo.name, workspace_id=ws.id,
            )

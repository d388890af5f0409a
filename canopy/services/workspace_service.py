"""工作空间服务 — 生命周期编排的统一入口

状态机:
  absent ──create──▶ active ──close(delete)──▶ absent
                     active ──close(keep)──▶ closed-archived ──restore──▶ active
                     active ──rename──▶ active（新 ID）

所有变更操作在工作空间锁内执行，任何退出路径都释放锁并失效缓存；
读操作（list / status / path）不加锁，元数据经 TTL 缓存读取。
每个入口都接受 cancel 令牌，取消或截止时间到达时尽快返回。

按 ID 模式的批量关闭 / 同步、孤儿检测、导出 / 导入也经由本服务暴露。

CLI 通过 get_container().workspaces 获取本服务，不直接构造子模块。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from canopy.services.workspace import (
    CanonicalRepos,
    OrphanDetector,
    WorkspaceBulk,
    WorkspaceCloser,
    WorkspaceCreator,
    WorkspaceExporter,
    WorkspaceGitOps,
    WorkspaceQuery,
    WorkspaceRenamer,
    WorkspaceRepoEditor,
    WorkspaceRestorer,
)

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import (
        BulkResult,
        ClosedWorkspace,
        ClosePreview,
        OrphanedWorktree,
        Repo,
        SyncResult,
        Workspace,
        WorkspaceExport,
        WorkspaceStatus,
    )
    from canopy.core.parallel import BatchResult
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceService:
    """工作空间编排服务"""

    def __init__(self, runtime: WorkspaceRuntime) -> None:
        self.runtime = runtime
        self._creator = WorkspaceCreator(runtime)
        self._closer = WorkspaceCloser(runtime, self._creator)
        self._restorer = WorkspaceRestorer(runtime, self._creator, self._closer)
        self._renamer = WorkspaceRenamer(runtime, self._closer)
        self._repos = WorkspaceRepoEditor(runtime, self._closer)
        self._git = WorkspaceGitOps(runtime)
        self._query = WorkspaceQuery(runtime)
        self._canonical = CanonicalRepos(runtime)
        self._bulk = WorkspaceBulk(runtime, self._closer, self._git)
        self._orphans = OrphanDetector(runtime)
        self._exporter = WorkspaceExporter(runtime, self._creator, self._closer)

    # =====================================================================
    # 生命周期
    # =====================================================================

    def create(
        self,
        workspace_id: str,
        repos: list[str] | None = None,
        *,
        branch: str = "",
        template: str = "",
        run_hooks: bool = True,
        cancel: CancelToken | None = None,
    ) -> str:
        """创建工作空间，返回目录路径；任一仓库失败时不留任何残留"""
        return self._creator.create(
            workspace_id, repos, branch=branch, template=template,
            cancel=cancel, run_hooks=run_hooks,
        )

    def close(
        self,
        workspace_id: str,
        *,
        keep: bool = False,
        force: bool = False,
        continue_on_hook_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> ClosedWorkspace | None:
        """关闭工作空间；keep=True 归档，否则删除"""
        return self._closer.close(
            workspace_id, keep=keep, force=force,
            continue_on_hook_error=continue_on_hook_error, cancel=cancel,
        )

    def preview_close(self, workspace_id: str, *, keep: bool = False) -> ClosePreview:
        return self._closer.preview(workspace_id, keep=keep)

    def restore(
        self, workspace_id: str, *, force: bool = False, cancel: CancelToken | None = None,
    ) -> str:
        return self._restorer.restore(workspace_id, force=force, cancel=cancel)

    def rename(
        self,
        old_id: str,
        new_id: str,
        *,
        force: bool = False,
        rename_branch: bool = True,
        cancel: CancelToken | None = None,
    ) -> str:
        return self._renamer.rename(
            old_id, new_id, force=force, rename_branch=rename_branch, cancel=cancel,
        )

    # =====================================================================
    # 工作空间内代码仓
    # =====================================================================

    def add_repo(
        self, workspace_id: str, ref: str, *, cancel: CancelToken | None = None,
    ) -> Repo:
        return self._repos.add_repo(workspace_id, ref, cancel=cancel)

    def remove_repo(
        self,
        workspace_id: str,
        name: str,
        *,
        force: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        self._repos.remove_repo(workspace_id, name, force=force, cancel=cancel)

    # =====================================================================
    # git 操作
    # =====================================================================

    def run_git(
        self,
        workspace_id: str,
        args: list[str],
        *,
        parallel: bool = True,
        continue_on_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> BatchResult:
        return self._git.run_git(
            workspace_id, args, parallel=parallel,
            continue_on_error=continue_on_error, cancel=cancel,
        )

    def switch_branch(
        self,
        workspace_id: str,
        branch: str,
        *,
        create: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        self._git.switch_branch(workspace_id, branch, create=create, cancel=cancel)

    def sync(self, workspace_id: str, *, cancel: CancelToken | None = None) -> list[SyncResult]:
        return self._git.sync(workspace_id, cancel=cancel)

    def push(self, workspace_id: str, *, cancel: CancelToken | None = None) -> BatchResult:
        return self._git.push(workspace_id, cancel=cancel)

    # =====================================================================
    # 查询
    # =====================================================================

    def get_status(
        self, workspace_id: str, *, cancel: CancelToken | None = None,
    ) -> WorkspaceStatus:
        return self._query.get_status(workspace_id, cancel=cancel)

    def list_workspaces(self, *, with_usage: bool = False) -> list[Workspace]:
        return self._query.list_workspaces(with_usage=with_usage)

    def list_closed(self) -> list[ClosedWorkspace]:
        return self._query.list_closed()

    def workspace_path(self, workspace_id: str) -> str:
        return self._query.workspace_path(workspace_id)

    # =====================================================================
    # canonical 仓库
    # =====================================================================

    def list_canonical(self) -> list[str]:
        return self._canonical.list_canonical()

    def add_canonical(
        self, url: str, alias: str = "", *, cancel: CancelToken | None = None,
    ) -> str:
        return self._canonical.add_canonical(url, alias, cancel=cancel)

    def remove_canonical(self, name: str, *, force: bool = False) -> None:
        self._canonical.remove_canonical(name, force=force)

    def sync_canonical(self, name: str, *, cancel: CancelToken | None = None) -> None:
        self._canonical.sync_canonical(name, cancel=cancel)

    def workspaces_using_repo(self, name: str) -> list[str]:
        return self._canonical.workspaces_using_repo(name)

    # =====================================================================
    # 批量
    # =====================================================================

    def list_matching(self, pattern: str) -> list[Workspace]:
        return self._bulk.list_matching(pattern)

    def close_matching(
        self,
        pattern: str,
        *,
        keep: bool = False,
        force: bool = False,
        continue_on_hook_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> list[BulkResult]:
        """逐个关闭匹配的工作空间，单个失败记入结果"""
        return self._bulk.close_matching(
            pattern, keep=keep, force=force,
            continue_on_hook_error=continue_on_hook_error, cancel=cancel,
        )

    def sync_matching(
        self, pattern: str, *, cancel: CancelToken | None = None,
    ) -> list[BulkResult]:
        return self._bulk.sync_matching(pattern, cancel=cancel)

    # =====================================================================
    # 维护
    # =====================================================================

    def detect_orphans(self, workspace_id: str = "") -> list[OrphanedWorktree]:
        return self._orphans.detect(workspace_id)

    def prune_worktrees(self) -> list[str]:
        return self._orphans.prune_worktrees()

    def export_workspace(self, workspace_id: str) -> WorkspaceExport:
        return self._exporter.export(workspace_id)

    def import_workspace(
        self,
        export: WorkspaceExport,
        *,
        workspace_id: str = "",
        branch: str = "",
        force: bool = False,
        cancel: CancelToken | None = None,
    ) -> str:
        return self._exporter.import_(
            export, workspace_id=workspace_id, branch=branch, force=force, cancel=cancel,
        )

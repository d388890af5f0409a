"""领域协议定义

编排层只依赖这里的接口契约：git 适配器、工作空间存储、钩子执行器。
默认实现分别是 GitCli / YamlWorkspaceStorage / HookExecutor，
测试中替换为内存实现即可覆盖全部编排逻辑。

使用 typing.Protocol 而非 ABC，实现类无需继承即可满足协议。
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import ClosedWorkspace, Hook, HookContext, RepoGitStatus, Workspace
    from canopy.utils.shell import CommandResult


# =========================================================================
# git 适配器
# =========================================================================

class GitAdapter(Protocol):
    """git 操作适配器

    网络类操作（clone/fetch/push/pull）须响应 cancel 令牌。
    失败抛 GitOperationFailed。
    """

    def ensure_canonical(self, url: str, name: str, *, cancel: CancelToken | None = None) -> str:
        """确保 canonical 仓库存在（不存在则 clone），返回其路径"""
        ...

    def clone(self, url: str, name: str, *, cancel: CancelToken | None = None) -> str:
        """clone 为 canonical 仓库"""
        ...

    def fetch(self, name: str, *, cancel: CancelToken | None = None) -> None:
        """canonical 仓库 fetch"""
        ...

    def push(self, path: str, branch: str, *, cancel: CancelToken | None = None) -> None:
        """从 worktree 推送分支"""
        ...

    def pull(self, path: str, *, cancel: CancelToken | None = None) -> None:
        """worktree 快进拉取"""
        ...

    def create_worktree(self, repo_name: str, path: str, branch: str) -> None:
        """从 canonical 仓库创建 worktree 并检出分支"""
        ...

    def remove_worktree(self, repo_name: str, path: str) -> None:
        """移除 worktree"""
        ...

    def repair_worktree(self, repo_name: str, path: str) -> None:
        """worktree 目录移动后修复链接"""
        ...

    def prune_worktrees(self, repo_name: str) -> None:
        """清理 canonical 仓库中失效的 worktree 记录"""
        ...

    def status(self, path: str, *, cancel: CancelToken | None = None) -> RepoGitStatus:
        """查询 worktree 状态"""
        ...

    def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        """worktree 切换分支"""
        ...

    def rename_branch(self, path: str, old: str, new: str) -> None:
        """重命名 worktree 当前分支"""
        ...

    def list(self) -> list[str]:
        """列出所有 canonical 仓库名"""
        ...

    def remove_canonical(self, name: str) -> None:
        """删除 canonical 仓库"""
        ...

    def run_command(
        self, path: str, args: list[str], *, cancel: CancelToken | None = None,
    ) -> CommandResult:
        """在 worktree 中执行 git 子命令"""
        ...


# =========================================================================
# 工作空间存储
# =========================================================================

class WorkspaceStorage(Protocol):
    """工作空间元数据的持久化存储，缓存之下的唯一事实来源"""

    def create(self, ws: Workspace) -> str:
        """新建工作空间目录与元数据，返回目录名；已存在抛 WorkspaceExists"""
        ...

    def save(self, ws: Workspace) -> None:
        """覆盖写入元数据"""
        ...

    def load(self, dir_name: str) -> Workspace:
        """按目录名加载，不存在抛 WorkspaceNotFound"""
        ...

    def load_by_id(self, workspace_id: str) -> tuple[Workspace, str]:
        """按 ID 加载，返回 (工作空间, 目录名)"""
        ...

    def delete(self, workspace_id: str) -> None:
        """删除工作空间目录（幂等）"""
        ...

    def list(self) -> list[Workspace]:
        """列出所有 active 工作空间"""
        ...

    def close(self, workspace_id: str, closed_at: datetime) -> ClosedWorkspace:
        """写入归档记录（不删除 active 目录）"""
        ...

    def list_closed(self) -> list[ClosedWorkspace]:
        """列出归档记录，最新在前"""
        ...

    def latest_closed(self, workspace_id: str) -> ClosedWorkspace | None:
        """指定 ID 最新的归档记录"""
        ...

    def delete_closed(self, entry: ClosedWorkspace) -> None:
        """删除归档记录"""
        ...

    def rename(self, old_id: str, new_id: str) -> None:
        """重命名工作空间目录"""
        ...

    def workspace_path(self, workspace_id: str) -> str:
        """工作空间目录路径"""
        ...


# =========================================================================
# 钩子执行
# =========================================================================

class HookRunner(Protocol):
    """生命周期钩子执行器"""

    def run(
        self,
        hooks: list[Hook],
        ctx: HookContext,
        *,
        continue_on_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        """顺序执行钩子，失败抛 HookFailed / HookTimeout"""
        ...

    def preview(self, hooks: list[Hook], ctx: HookContext) -> list[str]:
        """返回渲染后的命令列表，不执行"""
        ...

"""编排运行时 — 各生命周期子模块共享的协作者与公共步骤

职责：
- 持有 git 适配器、存储、钩子执行器、锁管理器、两个缓存、并行执行器
- 元数据读取统一走缓存（未命中回源存储），写入后立即失效缓存
- locked() 保证变更操作在任何退出路径上都释放锁
- locked_many() 按锁文件名排序加锁，同时持有多把锁的调用方之间不会互相死锁
"""

from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from canopy.core.exceptions import CanopyError, WorkspaceNotFound
from canopy.core.models import Hook, HookContext, RepoTaskResult

if TYPE_CHECKING:
    from canopy.core.cache import WorkspaceCache
    from canopy.core.cancel import CancelToken
    from canopy.core.config import Config
    from canopy.core.disk_usage import DiskUsageCache
    from canopy.core.lock import LockManager
    from canopy.core.models import Repo, Workspace
    from canopy.core.parallel import BatchResult, ParallelExecutor, RepoTask
    from canopy.core.protocols import GitAdapter, HookRunner, WorkspaceStorage
    from canopy.services.repo.registry import RepoRegistry
    from canopy.services.repo.resolver import RepoResolver

logger = logging.getLogger(__name__)


@dataclass
class WorkspaceRuntime:
    """生命周期子模块共享的依赖集合"""

    config: Config
    git: GitAdapter
    storage: WorkspaceStorage
    hooks: HookRunner
    locks: LockManager
    cache: WorkspaceCache
    usage: DiskUsageCache
    executor: ParallelExecutor
    resolver: RepoResolver
    registry: RepoRegistry | None = None

    def __post_init__(self) -> None:
        self.cache.set_loader(self._load_from_storage)

    # ---- 元数据读写 ----

    def _load_from_storage(self, workspace_id: str) -> tuple[Workspace, str] | None:
        """缓存回源：load_by_id 先按 ID 直查目录，不匹配再全量扫描"""
        try:
            return self.storage.load_by_id(workspace_id)
        except WorkspaceNotFound:
            return None

    def load(self, workspace_id: str) -> tuple[Workspace, str]:
        """读取工作空间，不存在抛 WorkspaceNotFound"""
        hit = self.cache.get(workspace_id)
        if hit is None:
            raise WorkspaceNotFound(workspace_id)
        return hit

    def exists(self, workspace_id: str) -> bool:
        return self.cache.get(workspace_id) is not None

    def save(self, ws: Workspace) -> None:
        """写入存储，返回前失效缓存"""
        try:
            self.storage.save(ws)
        finally:
            self.invalidate(ws.id)

    def invalidate(self, workspace_id: str) -> None:
        self.cache.invalidate(workspace_id)
        self.usage.invalidate(self.storage.workspace_path(workspace_id))

    # ---- 路径 ----

    def workspace_dir(self, ws: Workspace) -> Path:
        return Path(self.storage.workspace_path(ws.dir_name or ws.id))

    def worktree_path(self, ws: Workspace, repo_name: str) -> str:
        return str(self.workspace_dir(ws) / repo_name)

    # ---- 锁 ----

    @contextmanager
    def locked(self, workspace_id: str, cancel: CancelToken | None = None) -> Iterator[None]:
        """持有工作空间锁执行变更"""
        with self.locks.hold(workspace_id, self.config.lock_timeout):
            if cancel is not None:
                cancel.raise_if_cancelled(f"lock {workspace_id}")
            yield

    @contextmanager
    def locked_many(self, workspace_ids: list[str], cancel: CancelToken | None = None) -> Iterator[None]:
        """按锁文件名排序依次加锁；映射到同一锁文件的 ID 只加一次"""
        by_path = {self.locks.lock_path(wid).name: wid for wid in workspace_ids}
        with ExitStack() as stack:
            for name in sorted(by_path):
                stack.enter_context(self.locked(by_path[name], cancel))
            yield

    # ---- 钩子 ----

    def hook_list(self, kind: str) -> list[Hook]:
        return [Hook.from_dict(h) for h in self.config.hooks.get(kind) or []]

    def hook_context(self, ws: Workspace) -> HookContext:
        return HookContext(
            workspace_id=ws.id,
            workspace_path=str(self.workspace_dir(ws)),
            branch=ws.branch_name,
            repos=list(ws.repos),
        )

    # ---- 并行 ----

    def run_repos(
        self,
        repos: list[Repo],
        task: RepoTask,
        *,
        parallel: bool = True,
        continue_on_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> BatchResult:
        return self.executor.run(
            repos, task, parallel=parallel,
            continue_on_error=continue_on_error, cancel=cancel,
        )


def raise_batch_error(batch: BatchResult, operation: str, workspace_id: str) -> None:
    """批量任务的首个错误补充仓库名与操作名后抛出"""
    err = batch.error
    if err is None:
        return
    if isinstance(err, CanopyError):
        repo = next((r.repo for r in batch.results if r.error is err), "")
        for key, value in (("repo", repo), ("operation", operation), ("workspace_id", workspace_id)):
            if value and key not in err.context:
                err.context[key] = value
    raise err


def ok(repo: str, stdout: str = "") -> RepoTaskResult:
    return RepoTaskResult(repo=repo, stdout=stdout)

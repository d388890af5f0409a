"""服务容器 — 统一依赖注入，消除各层对适配器、缓存、锁管理器的裸构造

同一容器内的实例共享状态：元数据缓存、磁盘占用缓存与锁表在整个进程内各只有一份，
多个编排调用（例如后台状态轮询与 close 并发）看到的是同一组结构。

依赖关系图（→ 表示依赖）:
  workspaces → git, storage, hooks, locks, cache, usage, executor, resolver
  git        → retry
  resolver   → registry

Config 注入:
  容器接受可选 Config，若不提供则使用全局 get_config()。
  池大小、重试参数、锁超时、缓存 TTL 都在首次构造对应实例时读取。

用法:
    container = ServiceContainer()
    ws = container.workspaces           # 懒加载
    ws.create("PROJ-1", ["org/api"])

    # 全局单例（CLI 共享）
    from canopy.services.container import get_container
    get_container().workspaces.list_workspaces()
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from canopy.core.cache import WorkspaceCache
    from canopy.core.config import Config
    from canopy.core.disk_usage import DiskUsageCache
    from canopy.core.hooks import HookExecutor
    from canopy.core.lock import LockManager
    from canopy.core.parallel import ParallelExecutor
    from canopy.core.retry import RetryPolicy
    from canopy.core.storage import YamlWorkspaceStorage
    from canopy.services.repo.git import GitCli
    from canopy.services.repo.registry import RepoRegistry
    from canopy.services.repo.resolver import RepoResolver
    from canopy.services.workspace.runtime import WorkspaceRuntime
    from canopy.services.workspace_service import WorkspaceService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器 — 每个实例持有一组共享的适配器、缓存与服务"""

    def __init__(self, config: Config | None = None) -> None:
        self._instances: dict[str, object] = {}
        if config is None:
            from canopy.core.config import get_config
            config = get_config()
        self._config = config

    @property
    def config(self) -> Config:
        return self._config

    # ---- 适配器 ----

    @property
    def retry(self) -> RetryPolicy:
        if "retry" not in self._instances:
            from canopy.core.retry import RetryPolicy
            self._instances["retry"] = RetryPolicy(self._config.retry_config())
        return self._instances["retry"]  # type: ignore[return-value]

    @property
    def git(self) -> GitCli:
        if "git" not in self._instances:
            from canopy.services.repo.git import GitCli
            self._instances["git"] = GitCli(
                self._config.projects_root,
                retry=self.retry,
                network_timeout=self._config.network_timeout,
                local_timeout=self._config.local_timeout,
            )
        return self._instances["git"]  # type: ignore[return-value]

    @property
    def storage(self) -> YamlWorkspaceStorage:
        if "storage" not in self._instances:
            from canopy.core.storage import YamlWorkspaceStorage
            self._instances["storage"] = YamlWorkspaceStorage(
                workspaces_root=self._config.workspaces_root,
                closed_root=self._config.closed_root,
            )
        return self._instances["storage"]  # type: ignore[return-value]

    @property
    def hooks(self) -> HookExecutor:
        if "hooks" not in self._instances:
            from canopy.core.hooks import HookExecutor
            self._instances["hooks"] = HookExecutor()
        return self._instances["hooks"]  # type: ignore[return-value]

    @property
    def registry(self) -> RepoRegistry:
        if "registry" not in self._instances:
            from canopy.services.repo.registry import RepoRegistry
            self._instances["registry"] = RepoRegistry(self._config.registry_file)
        return self._instances["registry"]  # type: ignore[return-value]

    @property
    def resolver(self) -> RepoResolver:
        if "resolver" not in self._instances:
            from canopy.services.repo.resolver import RepoResolver
            self._instances["resolver"] = RepoResolver(self.registry)
        return self._instances["resolver"]  # type: ignore[return-value]

    # ---- 共享状态 ----

    @property
    def locks(self) -> LockManager:
        if "locks" not in self._instances:
            from canopy.core.lock import LockManager
            self._instances["locks"] = LockManager(
                self._config.locks_dir,
                timeout=self._config.lock_timeout,
                stale_threshold=self._config.lock_stale_threshold,
            )
        return self._instances["locks"]  # type: ignore[return-value]

    @property
    def cache(self) -> WorkspaceCache:
        if "cache" not in self._instances:
            from canopy.core.cache import WorkspaceCache
            self._instances["cache"] = WorkspaceCache(self._config.cache_ttl)
        return self._instances["cache"]  # type: ignore[return-value]

    @property
    def usage(self) -> DiskUsageCache:
        if "usage" not in self._instances:
            from canopy.core.disk_usage import DiskUsageCache
            self._instances["usage"] = DiskUsageCache(self._config.disk_usage_ttl)
        return self._instances["usage"]  # type: ignore[return-value]

    @property
    def executor(self) -> ParallelExecutor:
        if "executor" not in self._instances:
            from canopy.core.parallel import ParallelExecutor
            self._instances["executor"] = ParallelExecutor(self._config.workers, label="repo")
        return self._instances["executor"]  # type: ignore[return-value]

    # ---- 服务层 ----

    @property
    def runtime(self) -> WorkspaceRuntime:
        if "runtime" not in self._instances:
            from canopy.services.workspace.runtime import WorkspaceRuntime
            self._instances["runtime"] = WorkspaceRuntime(
                config=self._config,
                git=self.git,
                storage=self.storage,
                hooks=self.hooks,
                locks=self.locks,
                cache=self.cache,
                usage=self.usage,
                executor=self.executor,
                resolver=self.resolver,
                registry=self.registry,
            )
        return self._instances["runtime"]  # type: ignore[return-value]

    @property
    def workspaces(self) -> WorkspaceService:
        if "workspaces" not in self._instances:
            from canopy.services.workspace_service import WorkspaceService
            self._instances["workspaces"] = WorkspaceService(self.runtime)
        return self._instances["workspaces"]  # type: ignore[return-value]


# ---- 全局单例 ----

_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """获取全局 ServiceContainer 单例（线程安全）"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def reset_container() -> None:
    """重置全局容器（仅用于测试）"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = None

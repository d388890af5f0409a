"""canonical 仓库管理

- add_canonical: clone（补偿：删除 clone）→ 登记别名（补偿：注销）
- remove_canonical: 有工作空间仍在使用时拒绝，force 跳过
- sync_canonical: fetch（经重试策略）
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import RepoInUse, RepoNotFound
from canopy.core.operation import Operation
from canopy.services.repo.resolver import is_url, repo_name_from_url

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class CanonicalRepos:
    """canonical 仓库与别名"""

    def __init__(self, runtime: WorkspaceRuntime) -> None:
        self.rt = runtime

    def list_canonical(self) -> list[str]:
        return self.rt.git.list()

    def add_canonical(
        self, url: str, alias: str = "", *, cancel: CancelToken | None = None,
    ) -> str:
        """clone 并登记别名，返回仓库名"""
        if not is_url(url):
            url = self.rt.resolver.resolve_one(url).url
        name = alias or repo_name_from_url(url)
        token = ensure_token(cancel)

        op = Operation(f"add_canonical {name}")
        op.add_step(
            "clone",
            lambda: self.rt.git.clone(url, name, cancel=token),
            rollback=lambda: self.rt.git.remove_canonical(name),
        )
        if self.rt.registry is not None:
            registry = self.rt.registry
            op.add_step(
                "alias",
                lambda: registry.register(name, url),
                rollback=lambda: registry.unregister(name),
            )
        op.execute()
        logger.info("canonical 仓库已添加: %s -> %s", name, url, extra={"repo": name})
        return name

    def workspaces_using_repo(self, name: str) -> list[str]:
        return [ws.id for ws in self.rt.storage.list() if ws.find_repo(name) is not None]

    def remove_canonical(self, name: str, *, force: bool = False) -> None:
        if name not in self.rt.git.list():
            raise RepoNotFound(f"canonical 仓库不存在: {name}", repo=name)
        users = self.workspaces_using_repo(name)
        if users and not force:
            raise RepoInUse(
                f"仓库 {name} 仍被工作空间使用: {', '.join(users)}",
                repo=name, workspaces=users,
            )
        if users:
            logger.warning("强制删除仍在使用的仓库: %s (%s)", name, ", ".join(users))
        self.rt.git.remove_canonical(name)
        if self.rt.registry is not None:
            self.rt.registry.unregister(name)

    def sync_canonical(self, name: str, *, cancel: CancelToken | None = None) -> None:
        self.rt.git.fetch(name, cancel=cancel)
        logger.info("canonical 仓库已同步: %s", name, extra={"repo": name})

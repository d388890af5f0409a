"""工作空间导出 / 导入

导出内容只包含 ID、分支与仓库（名称、地址、别名），不含本地路径，
可以在另一台机器上按同一定义重新创建工作空间。

导入时仓库按以下顺序解析：
1. 导出记录带别名且本地注册表能解析该别名：使用本地别名与地址
2. 否则使用导出记录中的地址
两者都没有则抛 RepoNotFound。
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import (
    InvalidArgument,
    IOFailed,
    RepoNotFound,
    WorkspaceExists,
)
from canopy.core.models import (
    EXPORT_FORMAT_VERSION,
    Repo,
    RepoExport,
    WorkspaceExport,
)
from canopy.utils.yaml_io import load_yaml, save_yaml

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.services.workspace.close import WorkspaceCloser
    from canopy.services.workspace.create import WorkspaceCreator
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


# =========================================================================
# 文件读写
# =========================================================================

def write_export(export: WorkspaceExport, path: str | Path) -> None:
    try:
        save_yaml(path, export.to_dict())
    except OSError as e:
        raise IOFailed("写入导出文件失败", cause=e, path=str(path)) from e


def read_export(path: str | Path) -> WorkspaceExport:
    if not Path(path).is_file():
        raise InvalidArgument(f"导出文件不存在: {path}")
    try:
        data = load_yaml(path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise IOFailed("读取导出文件失败", cause=e, path=str(path)) from e
    if not data:
        raise InvalidArgument(f"导出文件为空或格式错误: {path}")
    return WorkspaceExport.from_dict(data)


# =========================================================================
# 导出 / 导入
# =========================================================================

class WorkspaceExporter:
    def __init__(
        self, runtime: WorkspaceRuntime, creator: WorkspaceCreator, closer: WorkspaceCloser,
    ) -> None:
        self.rt = runtime
        self._creator = creator
        self._closer = closer

    def export(self, workspace_id: str) -> WorkspaceExport:
        ws, _ = self.rt.load(workspace_id)
        aliases = self.rt.registry.aliases() if self.rt.registry is not None else {}
        by_url = {url: alias for alias, url in aliases.items()}
        return WorkspaceExport(
            id=ws.id,
            branch=ws.branch_name,
            repos=[RepoExport(name=r.name, url=r.url, alias=by_url.get(r.url, "")) for r in ws.repos],
            exported_at=datetime.now(timezone.utc),
        )

    def import_(
        self,
        export: WorkspaceExport,
        *,
        workspace_id: str = "",
        branch: str = "",
        force: bool = False,
        cancel: CancelToken | None = None,
    ) -> str:
        """按导出定义创建工作空间；workspace_id / branch 覆盖导出中的值"""
        if export.version != EXPORT_FORMAT_VERSION:
            raise InvalidArgument(f"不支持的导出格式版本: {export.version!r}")
        target = workspace_id or export.id
        if not target:
            raise InvalidArgument("导出定义缺少工作空间 ID")
        branch = branch or export.branch or target
        repos = [self._resolve(r, target) for r in export.repos]
        token = ensure_token(cancel)

        if self.rt.exists(target):
            if not force:
                raise WorkspaceExists(target, hint="使用 --force 覆盖或 --id 指定其他 ID")
            logger.info("导入前删除已存在的工作空间: %s", target, extra={"workspace_id": target})
            self._closer.close(target, force=True, continue_on_hook_error=True, cancel=token)

        path = self._creator.create_from_repos(target, repos, branch=branch, cancel=token)
        logger.info(
            "工作空间已导入: %s (%d 个仓库)", target, len(repos), extra={"workspace_id": target},
        )
        return path

    def _resolve(self, exported: RepoExport, workspace_id: str) -> Repo:
        if exported.alias and self.rt.registry is not None:
            url = self.rt.registry.resolve(exported.alias)
            if url:
                return Repo(name=exported.alias, url=url)
        if exported.url:
            return Repo(name=exported.name, url=exported.url)
        raise RepoNotFound(
            f"无法解析导出的仓库: {exported.name}", repo=exported.name, workspace_id=workspace_id,
        )

"""工作空间元数据存储 — YAML 文件实现

目录布局:
    <workspaces_root>/<dir_name>/workspace.yaml               active 工作空间
    <closed_root>/<id>/<YYYYMMDDTHHMMSSZ>/workspace.yaml      归档记录

dir_name 默认等于工作空间 ID；按 ID 查找时先直查同名目录，
不匹配（历史目录名与 ID 不一致）再全量扫描。
"""

from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

import yaml

from canopy.core.exceptions import (
    InvalidArgument,
    IOFailed,
    WorkspaceExists,
    WorkspaceMetadataError,
    WorkspaceNotFound,
)
from canopy.core.models import ClosedWorkspace, Workspace
from canopy.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)

META_FILE = "workspace.yaml"
CLOSED_STAMP_FORMAT = "%Y%m%dT%H%M%SZ"

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_workspace_id(workspace_id: str) -> None:
    """ID 同时用作目录名，限制字符集"""
    if not workspace_id or not _ID_RE.match(workspace_id) or workspace_id in (".", ".."):
        raise InvalidArgument(f"工作空间 ID 非法: {workspace_id!r}", workspace_id=workspace_id)


class YamlWorkspaceStorage:
    """基于目录 + workspace.yaml 的工作空间存储"""

    def __init__(self, workspaces_root: str, closed_root: str) -> None:
        self.workspaces_root = Path(workspaces_root)
        self.closed_root = Path(closed_root)

    # ---- 路径 ----

    def workspace_path(self, workspace_id: str) -> str:
        return str(self.workspaces_root / workspace_id)

    def _meta_path(self, dir_name: str) -> Path:
        return self.workspaces_root / dir_name / META_FILE

    # ---- 读 ----

    def _read(self, meta: Path, dir_name: str) -> Workspace:
        try:
            data = load_yaml(meta)
        except (yaml.YAMLError, ValueError) as e:
            raise WorkspaceMetadataError(
                f"元数据损坏: {meta}", cause=e, workspace_id=dir_name,
            ) from e
        except OSError as e:
            raise IOFailed(f"读取元数据失败: {meta}", cause=e) from e
        if not data:
            raise WorkspaceMetadataError(f"元数据为空: {meta}", workspace_id=dir_name)
        ws = Workspace.from_dict(data)
        ws.dir_name = dir_name
        ws.last_modified = datetime.fromtimestamp(meta.stat().st_mtime, tz=timezone.utc)
        return ws

    def load(self, dir_name: str) -> Workspace:
        meta = self._meta_path(dir_name)
        if not meta.is_file():
            raise WorkspaceNotFound(dir_name)
        return self._read(meta, dir_name)

    def load_by_id(self, workspace_id: str) -> tuple[Workspace, str]:
        meta = self._meta_path(workspace_id)
        if meta.is_file():
            ws = self._read(meta, workspace_id)
            if ws.id == workspace_id:
                return ws, workspace_id
        for ws in self.list():
            if ws.id == workspace_id:
                return ws, ws.dir_name
        raise WorkspaceNotFound(workspace_id)

    def list(self) -> list[Workspace]:
        result: list[Workspace] = []
        if not self.workspaces_root.is_dir():
            return result
        for d in sorted(self.workspaces_root.iterdir()):
            meta = d / META_FILE
            if not d.is_dir() or not meta.is_file():
                continue
            try:
                result.append(self._read(meta, d.name))
            except WorkspaceMetadataError as e:
                logger.warning("跳过损坏的工作空间: %s: %s", d.name, e)
        return result

    # ---- 写 ----

    def create(self, ws: Workspace) -> str:
        validate_workspace_id(ws.id)
        ws_dir = self.workspaces_root / ws.id
        if ws_dir.exists():
            raise WorkspaceExists(ws.id)
        try:
            ws_dir.mkdir(parents=True)
            save_yaml(ws_dir / META_FILE, ws.to_dict())
        except FileExistsError as e:
            raise WorkspaceExists(ws.id) from e
        except OSError as e:
            shutil.rmtree(ws_dir, ignore_errors=True)
            raise IOFailed("创建工作空间目录失败", cause=e, workspace_id=ws.id) from e
        ws.dir_name = ws.id
        logger.info("工作空间元数据已创建: %s", ws.id, extra={"workspace_id": ws.id})
        return ws.id

    def save(self, ws: Workspace) -> None:
        dir_name = ws.dir_name or ws.id
        ws_dir = self.workspaces_root / dir_name
        if not ws_dir.is_dir():
            raise WorkspaceNotFound(ws.id)
        try:
            save_yaml(ws_dir / META_FILE, ws.to_dict())
        except OSError as e:
            raise IOFailed("保存元数据失败", cause=e, workspace_id=ws.id) from e

    def delete(self, workspace_id: str) -> None:
        ws_dir = self.workspaces_root / workspace_id
        if not ws_dir.exists():
            return
        try:
            shutil.rmtree(ws_dir)
        except OSError as e:
            raise IOFailed("删除工作空间目录失败", cause=e, workspace_id=workspace_id) from e
        logger.info("工作空间目录已删除: %s", workspace_id, extra={"workspace_id": workspace_id})

    def rename(self, old_id: str, new_id: str) -> None:
        validate_workspace_id(new_id)
        src = self.workspaces_root / old_id
        dst = self.workspaces_root / new_id
        if not src.is_dir():
            raise WorkspaceNotFound(old_id)
        if dst.exists():
            raise WorkspaceExists(new_id)
        try:
            src.rename(dst)
        except OSError as e:
            raise IOFailed("重命名工作空间目录失败", cause=e, workspace_id=old_id) from e

    # ---- 归档 ----

    def close(self, workspace_id: str, closed_at: datetime) -> ClosedWorkspace:
        ws, _ = self.load_by_id(workspace_id)
        ws.closed_at = closed_at
        stamp = closed_at.astimezone(timezone.utc).strftime(CLOSED_STAMP_FORMAT)
        entry_dir = self.closed_root / workspace_id / stamp
        try:
            save_yaml(entry_dir / META_FILE, ws.to_dict())
        except OSError as e:
            raise IOFailed("写入归档记录失败", cause=e, workspace_id=workspace_id) from e
        logger.info("工作空间已归档: %s -> %s", workspace_id, entry_dir)
        return ClosedWorkspace(workspace=ws, path=str(entry_dir))

    def list_closed(self) -> list[ClosedWorkspace]:
        entries: list[ClosedWorkspace] = []
        if not self.closed_root.is_dir():
            return entries
        for id_dir in self.closed_root.iterdir():
            if not id_dir.is_dir():
                continue
            for stamp_dir in id_dir.iterdir():
                meta = stamp_dir / META_FILE
                if not meta.is_file():
                    continue
                try:
                    ws = self._read(meta, id_dir.name)
                except WorkspaceMetadataError as e:
                    logger.warning("跳过损坏的归档记录: %s: %s", stamp_dir, e)
                    continue
                entries.append(ClosedWorkspace(workspace=ws, path=str(stamp_dir)))
        entries.sort(key=lambda e: Path(e.path).name, reverse=True)
        return entries

    def latest_closed(self, workspace_id: str) -> ClosedWorkspace | None:
        for entry in self.list_closed():
            if entry.workspace.id == workspace_id:
                return entry
        return None

    def delete_closed(self, entry: ClosedWorkspace) -> None:
        path = Path(entry.path)
        try:
            if path.exists():
                shutil.rmtree(path)
            parent = path.parent
            if parent.is_dir() and not any(parent.iterdir()):
                parent.rmdir()
        except OSError as e:
            raise IOFailed("删除归档记录失败", cause=e, workspace_id=entry.workspace.id) from e

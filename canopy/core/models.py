"""核心数据模型

工作空间、代码仓引用、单仓任务结果、状态快照等数据类集中定义，
存储层 / 编排层 / CLI 统一从此处导入。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

CURRENT_WORKSPACE_VERSION = 1


# =========================================================================
# 工作空间
# =========================================================================


@dataclass
class Repo:
    """工作空间中的代码仓引用：名称 + clone 地址"""

    name: str
    url: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "url": self.url}


@dataclass
class Workspace:
    """工作空间元数据

    active 工作空间 closed_at 为 None，归档工作空间 closed_at 有值。
    locked / dir_name / last_modified / disk_usage 为运行时字段，不落盘。
    """

    id: str
    branch_name: str = ""
    repos: list[Repo] = field(default_factory=list)
    closed_at: datetime | None = None
    setup_incomplete: bool = False
    version: int = CURRENT_WORKSPACE_VERSION

    # 运行时字段
    locked: bool = False
    dir_name: str = ""
    last_modified: datetime | None = None
    disk_usage: int = 0

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None

    def repo_names(self) -> list[str]:
        return [r.name for r in self.repos]

    def find_repo(self, name: str) -> Repo | None:
        for r in self.repos:
            if r.name == name:
                return r
        return None

    def to_dict(self) -> dict[str, Any]:
        """持久化字段（不含运行时字段）"""
        data: dict[str, Any] = {
            "version": self.version,
            "id": self.id,
            "branch_name": self.branch_name,
            "repos": [r.to_dict() for r in self.repos],
        }
        if self.closed_at is not None:
            data["closed_at"] = self.closed_at.astimezone(timezone.utc).isoformat()
        if self.setup_incomplete:
            data["setup_incomplete"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Workspace:
        closed_at = data.get("closed_at")
        if isinstance(closed_at, str):
            closed_at = datetime.fromisoformat(closed_at)
        return cls(
            id=str(data.get("id", "")),
            branch_name=str(data.get("branch_name", "")),
            repos=[
                Repo(name=str(r.get("name", "")), url=str(r.get("url", "")))
                for r in data.get("repos") or []
            ],
            closed_at=closed_at,
            setup_incomplete=bool(data.get("setup_incomplete", False)),
            version=int(data.get("version", CURRENT_WORKSPACE_VERSION)),
        )


@dataclass
class ClosedWorkspace:
    """归档记录：元数据快照 + 归档文件所在目录"""

    workspace: Workspace
    path: str

    @property
    def closed_at(self) -> datetime | None:
        return self.workspace.closed_at


# =========================================================================
# 单仓任务 / 状态
# =========================================================================


@dataclass
class RepoTaskResult:
    """单仓任务结果，按输入顺序返回"""

    repo: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    error: Exception | None = None

    @property
    def success(self) -> bool:
        return self.error is None and self.exit_code == 0

    @property
    def cancelled(self) -> bool:
        from canopy.core.exceptions import OperationCancelled
        return isinstance(self.error, OperationCancelled)


@dataclass
class RepoGitStatus:
    """git 适配器返回的单仓状态"""

    dirty: bool = False
    unpushed: int = 0
    behind: int = 0
    branch: str = ""


@dataclass
class RepoStatus:
    """工作空间状态视图中的单仓条目"""

    name: str
    branch: str = ""
    dirty: bool = False
    unpushed: int = 0
    behind: int = 0
    error: str = ""


@dataclass
class WorkspaceStatus:
    """工作空间状态视图"""

    id: str
    branch_name: str
    repos: list[RepoStatus] = field(default_factory=list)
    locked: bool = False


SYNC_STATUSES = ("updated", "up-to-date", "conflict", "timeout", "error")


@dataclass
class SyncResult:
    """单仓同步结果，status 取 SYNC_STATUSES 之一"""

    repo: str
    status: str
    updated: int = 0
    error: str = ""


@dataclass
class BulkResult:
    """按模式批量操作时单个工作空间的结果"""

    workspace_id: str
    error: Exception | None = None
    sync: list[SyncResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ClosePreview:
    """close 演练结果"""

    workspace_id: str
    keep: bool
    repos: list[RepoStatus] = field(default_factory=list)
    hooks: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return all(not r.dirty and r.unpushed == 0 and not r.error for r in self.repos)


# =========================================================================
# 钩子
# =========================================================================


@dataclass
class Hook:
    """生命周期钩子定义"""

    command: str
    repos: list[str] = field(default_factory=list)
    shell: str = "sh"
    timeout: float = 30.0
    continue_on_error: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Hook:
        return cls(
            command=str(data.get("command", "")),
            repos=list(data.get("repos") or []),
            shell=str(data.get("shell") or "sh"),
            timeout=float(data.get("timeout") or 30.0),
            continue_on_error=bool(data.get("continue_on_error", False)),
        )


@dataclass
class HookContext:
    """钩子执行上下文"""

    workspace_id: str
    workspace_path: str
    branch: str
    repos: list[Repo] = field(default_factory=list)


# =========================================================================
# 模板
# =========================================================================


@dataclass
class Template:
    """工作空间模板：默认仓库、默认分支与创建后执行的 setup 命令"""

    name: str
    repos: list[str] = field(default_factory=list)
    default_branch: str = ""
    description: str = ""
    setup_commands: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> Template:
        return cls(
            name=name,
            repos=[str(r) for r in data.get("repos") or []],
            default_branch=str(data.get("default_branch") or ""),
            description=str(data.get("description") or ""),
            setup_commands=[str(c) for c in data.get("setup_commands") or []],
        )

    def merge_repos(self, explicit: list[str]) -> list[str]:
        """模板仓库在前、显式指定的在后，去重保序"""
        merged: list[str] = []
        for ref in [*self.repos, *explicit]:
            if ref not in merged:
                merged.append(ref)
        return merged


# =========================================================================
# 孤儿 worktree
# =========================================================================

ORPHAN_CANONICAL_MISSING = "canonical_missing"
ORPHAN_DIRECTORY_MISSING = "directory_missing"
ORPHAN_INVALID_GIT_DIR = "invalid_git_dir"

_ORPHAN_DESCRIPTIONS = {
    ORPHAN_CANONICAL_MISSING: "canonical 仓库不存在",
    ORPHAN_DIRECTORY_MISSING: "worktree 目录不存在",
    ORPHAN_INVALID_GIT_DIR: "worktree 缺少 .git",
}


@dataclass
class OrphanedWorktree:
    """元数据中登记、但引用已失效的 worktree"""

    workspace_id: str
    repo: str
    path: str
    reason: str

    def describe(self) -> str:
        return _ORPHAN_DESCRIPTIONS.get(self.reason, self.reason)


# =========================================================================
# 导出 / 导入
# =========================================================================

EXPORT_FORMAT_VERSION = "1"


@dataclass
class RepoExport:
    name: str
    url: str = ""
    alias: str = ""

    def to_dict(self) -> dict[str, str]:
        data = {"name": self.name, "url": self.url}
        if self.alias:
            data["alias"] = self.alias
        return data


@dataclass
class WorkspaceExport:
    """可移植的工作空间定义，只含 ID / 分支 / 仓库，不含本地路径"""

    id: str
    branch: str = ""
    repos: list[RepoExport] = field(default_factory=list)
    version: str = EXPORT_FORMAT_VERSION
    workspace_version: int = CURRENT_WORKSPACE_VERSION
    exported_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "version": self.version,
            "workspace_version": self.workspace_version,
            "id": self.id,
            "branch": self.branch,
            "repos": [r.to_dict() for r in self.repos],
        }
        if self.exported_at is not None:
            data["exported_at"] = self.exported_at.astimezone(timezone.utc).isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkspaceExport:
        exported_at = data.get("exported_at")
        if isinstance(exported_at, str):
            exported_at = datetime.fromisoformat(exported_at)
        return cls(
            id=str(data.get("id") or ""),
            branch=str(data.get("branch") or ""),
            repos=[
                RepoExport(
                    name=str(r.get("name") or ""),
                    url=str(r.get("url") or ""),
                    alias=str(r.get("alias") or ""),
                )
                for r in data.get("repos") or []
            ],
            version=str(data.get("version") or ""),
            workspace_version=int(data.get("workspace_version") or CURRENT_WORKSPACE_VERSION),
            exported_at=exported_at if isinstance(exported_at, datetime) else None,
        )

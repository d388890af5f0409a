"""统一异常体系

所有编排层异常继承 CanopyError，每个子类携带稳定的机器可读 code，
CLI 层据此输出 `[CODE] message`，脚本可按 code 区分失败类别。

context 字典记录 operation / workspace_id / repo 等定位信息，
调用方无需解析 message 即可做程序化处理。
"""

from __future__ import annotations

from typing import Any


class CanopyError(Exception):
    """编排层基础异常"""

    code: str = "UNKNOWN"

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        **context: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v not in (None, "")}

    def with_context(self, **kv: Any) -> CanopyError:
        """追加上下文并返回自身，便于 raise err.with_context(...)"""
        for k, v in kv.items():
            if v not in (None, ""):
                self.context[k] = v
        return self

    def __str__(self) -> str:
        text = self.message
        if self.cause is not None:
            text = f"{text}: {self.cause}"
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            text = f"{text} ({ctx})"
        return text


# =========================================================================
# 工作空间
# =========================================================================

class WorkspaceNotFound(CanopyError):
    """工作空间不存在"""

    code = "WORKSPACE_NOT_FOUND"

    def __init__(self, workspace_id: str, **context: Any) -> None:
        super().__init__(f"工作空间不存在: {workspace_id}", workspace_id=workspace_id, **context)


class WorkspaceExists(CanopyError):
    """同名工作空间已存在"""

    code = "WORKSPACE_EXISTS"

    def __init__(self, workspace_id: str, **context: Any) -> None:
        super().__init__(f"工作空间已存在: {workspace_id}", workspace_id=workspace_id, **context)


class WorkspaceLocked(CanopyError):
    """工作空间正被其他操作持有锁"""

    code = "WORKSPACE_LOCKED"

    def __init__(self, workspace_id: str, **context: Any) -> None:
        super().__init__(
            f"工作空间被其他操作锁定: {workspace_id}", workspace_id=workspace_id, **context,
        )


class WorkspaceMetadataError(CanopyError):
    """workspace.yaml 内容损坏或无法解析"""

    code = "WORKSPACE_METADATA_ERROR"


# =========================================================================
# 代码仓
# =========================================================================

class RepoNotClean(CanopyError):
    """代码仓存在未提交修改或未推送提交"""

    code = "REPO_NOT_CLEAN"


class RepoInUse(CanopyError):
    """代码仓仍被工作空间引用"""

    code = "REPO_IN_USE"


class RepoNotFound(CanopyError):
    """代码仓不存在或无法解析"""

    code = "REPO_NOT_FOUND"


class RepoAlreadyExists(CanopyError):
    """代码仓已存在"""

    code = "REPO_ALREADY_EXISTS"


class NoReposConfigured(CanopyError):
    """未指定也未配置任何代码仓"""

    code = "NO_REPOS_CONFIGURED"


GIT_ERROR_KINDS = ("auth", "network", "not_found", "permission", "unknown")


class GitOperationFailed(CanopyError):
    """git 操作失败

    kind 为 auth / network / not_found / permission / unknown 之一，
    重试策略只对 network 类重试。
    """

    code = "GIT_OPERATION_FAILED"

    def __init__(self, message: str, *, kind: str = "unknown", **context: Any) -> None:
        super().__init__(message, **context)
        self.kind = kind if kind in GIT_ERROR_KINDS else "unknown"


# stderr 关键字 → 错误子类别，按顺序匹配（auth 先于 permission）
_GIT_KIND_PATTERNS: list[tuple[str, tuple[str, ...]]] = [
    ("auth", (
        "authentication failed", "could not read username",
        "permission denied (publickey", "invalid username or password",
        "http basic: access denied",
    )),
    ("network", (
        "could not resolve host", "connection refused", "connection reset",
        "connection timed out", "operation timed out", "network is unreachable",
        "no route to host", "early eof", "the remote end hung up",
        "temporary failure", "502", "503", "504",
    )),
    ("not_found", (
        "repository not found", "not found", "does not exist",
        "does not appear to be a git repository",
    )),
    ("permission", ("permission denied", "403", "forbidden")),
]


def classify_git_error(stderr: str) -> str:
    """根据 git stderr 推断失败子类别"""
    text = stderr.lower()
    for kind, patterns in _GIT_KIND_PATTERNS:
        if any(p in text for p in patterns):
            return kind
    return "unknown"


# =========================================================================
# 执行控制
# =========================================================================

class OperationCancelled(CanopyError):
    """操作被取消"""

    code = "OPERATION_CANCELLED"


class OperationTimeout(CanopyError):
    """操作超过截止时间"""

    code = "OPERATION_TIMEOUT"


class HookFailed(CanopyError):
    """生命周期钩子返回非零"""

    code = "HOOK_FAILED"


class HookTimeout(CanopyError):
    """生命周期钩子执行超时"""

    code = "HOOK_TIMEOUT"


class CommandFailed(CanopyError):
    """单仓任务以非零状态退出"""

    code = "COMMAND_FAILED"

    def __init__(self, message: str, *, exit_code: int = 1, **context: Any) -> None:
        super().__init__(message, exit_code=exit_code, **context)
        self.exit_code = exit_code


# =========================================================================
# 通用
# =========================================================================

class IOFailed(CanopyError):
    """文件系统读写失败"""

    code = "IO_FAILED"


class InternalError(CanopyError):
    """内部不变量被破坏"""

    code = "INTERNAL_ERROR"


class InvalidArgument(CanopyError):
    """输入参数校验失败"""

    code = "INVALID_ARGUMENT"


class ConfigError(CanopyError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"

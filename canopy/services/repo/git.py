"""git 命令行适配器

职责：
- canonical 仓库（<projects_root>/<name>，bare clone）的 clone / fetch / 删除
- 基于 canonical 仓库创建、移除、修复、清理 worktree
- worktree 级别的 status / checkout / push / pull / 任意 git 子命令

网络类操作（clone/fetch/push/pull）经 RetryPolicy 重试，调用方未给截止时间时套用
network_timeout（默认 5 分钟）；本地元数据操作套用 local_timeout（默认 30 秒）。
失败统一抛 GitOperationFailed，kind 由 stderr 推断。
"""

from __future__ import annotations

import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import (
    GitOperationFailed,
    InvalidArgument,
    IOFailed,
    RepoAlreadyExists,
    RepoNotFound,
    classify_git_error,
)
from canopy.core.models import RepoGitStatus
from canopy.core.retry import RetryPolicy
from canopy.utils.shell import get_executor

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.utils.shell import CommandExecutor, CommandResult

logger = logging.getLogger(__name__)

# clone 过程中的临时目录前缀，list() 不把它们当作仓库
STAGING_PREFIX = ".clone-"

_SAFE_REF_RE = re.compile(r"^[a-zA-Z0-9_./@\-]+$")


def validate_ref(ref: str) -> None:
    if not ref or not _SAFE_REF_RE.match(ref) or ref.startswith("-") or ".." in ref:
        raise InvalidArgument(f"分支名包含非法字符: {ref!r}")


class GitCli:
    """通过子进程调用 git 的适配器"""

    def __init__(
        self,
        projects_root: str,
        *,
        retry: RetryPolicy | None = None,
        executor: CommandExecutor | None = None,
        network_timeout: float = 300.0,
        local_timeout: float = 30.0,
    ) -> None:
        self.projects_root = Path(projects_root)
        self._retry = retry or RetryPolicy()
        self._executor = executor
        self.network_timeout = network_timeout
        self.local_timeout = local_timeout

    @property
    def executor(self) -> CommandExecutor:
        return self._executor or get_executor()

    def canonical_path(self, name: str) -> Path:
        return self.projects_root / name

    # =====================================================================
    # 底层调用
    # =====================================================================

    def _exec(
        self,
        args: list[str],
        *,
        cwd: str | Path,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
        repo: str = "",
    ) -> CommandResult:
        """调用执行器；git 无法启动（未安装、cwd 不存在等）转为 GitOperationFailed"""
        try:
            return self.executor.execute(
                ["git", *args], cwd=str(cwd), timeout=timeout, cancel=cancel,
            )
        except OSError as e:
            raise GitOperationFailed(
                f"git {args[0]} 无法执行: {e}",
                cause=e, kind="unknown", operation=f"git {args[0]}", repo=repo,
            ) from e

    def _git(
        self,
        args: list[str],
        *,
        cwd: str | Path = ".",
        cancel: CancelToken | None = None,
        network: bool = False,
        repo: str = "",
    ) -> CommandResult:
        """执行 git，非零退出抛 GitOperationFailed"""
        default = self.network_timeout if network else self.local_timeout
        token = ensure_token(cancel).with_default_timeout(default)
        op = f"git {args[0]}"
        result = self._exec(
            args, cwd=cwd, timeout=token.remaining(), cancel=token, repo=repo,
        )
        if not result.success:
            stderr = result.stderr.strip()
            raise GitOperationFailed(
                f"{op} 失败 (rc={result.returncode}): {stderr[:500]}",
                kind=classify_git_error(stderr), operation=op, repo=repo,
            )
        return result

    def _network(
        self,
        args: list[str],
        *,
        cwd: str | Path = ".",
        cancel: CancelToken | None = None,
        repo: str = "",
    ) -> CommandResult:
        """网络类 git 调用：整体截止时间内按重试策略执行"""
        token = ensure_token(cancel).with_default_timeout(self.network_timeout)
        return self._retry.execute(
            lambda: self._git(args, cwd=cwd, cancel=token, network=True, repo=repo),
            name=f"git {args[0]} {repo}".strip(),
            cancel=token,
        )

    # =====================================================================
    # canonical 仓库
    # =====================================================================

    def ensure_canonical(self, url: str, name: str, *, cancel: CancelToken | None = None) -> str:
        path = self.canonical_path(name)
        if path.exists():
            return str(path)
        try:
            return self.clone(url, name, cancel=cancel)
        except RepoAlreadyExists:
            # 并发调用方先一步完成了 clone
            logger.info("canonical 仓库已由并发调用创建: %s", name, extra={"repo": name})
            return str(path)

    def clone(self, url: str, name: str, *, cancel: CancelToken | None = None) -> str:
        """bare clone 到临时目录，完成后原子改名为 <projects_root>/<name>

        失败只清理本次的临时目录，不会碰到并发调用方已就位的仓库。
        """
        path = self.canonical_path(name)
        if path.exists():
            raise RepoAlreadyExists(f"canonical 仓库已存在: {name}", repo=name)
        try:
            self.projects_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailed("无法创建仓库根目录", cause=e, path=str(self.projects_root)) from e
        token = ensure_token(cancel).with_default_timeout(self.network_timeout)
        staging = self.projects_root / f"{STAGING_PREFIX}{name}.{uuid.uuid4().hex[:12]}"

        def attempt() -> CommandResult:
            try:
                return self._git(
                    ["clone", "--bare", url, str(staging)],
                    cancel=token, network=True, repo=name,
                )
            except Exception:
                # 半成品目录会让下一次 clone 失败
                shutil.rmtree(staging, ignore_errors=True)
                raise

        logger.info("克隆仓库: %s -> %s", url, path, extra={"repo": name})
        try:
            self._retry.execute(attempt, name=f"git clone {name}", cancel=token)
            self._git(
                ["config", "remote.origin.fetch", "+refs/heads/*:refs/remotes/origin/*"],
                cwd=staging, repo=name,
            )
            try:
                staging.rename(path)
            except OSError as e:
                if path.exists():
                    raise RepoAlreadyExists(f"canonical 仓库已存在: {name}", repo=name) from e
                raise IOFailed("canonical 仓库就位失败", cause=e, repo=name) from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        return str(path)

    def fetch(self, name: str, *, cancel: CancelToken | None = None) -> None:
        path = self.canonical_path(name)
        if not path.exists():
            raise RepoNotFound(f"canonical 仓库不存在: {name}", repo=name)
        self._network(["fetch", "--prune", "origin"], cwd=path, cancel=cancel, repo=name)

    def list(self) -> list[str]:
        """已就位的 canonical 仓库（跳过 clone 中的临时目录）"""
        if not self.projects_root.is_dir():
            return []
        return sorted(
            p.name for p in self.projects_root.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def remove_canonical(self, name: str) -> None:
        path = self.canonical_path(name)
        if not path.exists():
            raise RepoNotFound(f"canonical 仓库不存在: {name}", repo=name)
        shutil.rmtree(path)
        logger.info("canonical 仓库已删除: %s", name, extra={"repo": name})

    # =====================================================================
    # worktree
    # =====================================================================

    def _branch_exists(self, canonical: Path, branch: str) -> bool:
        r = self._exec(
            ["rev-parse", "--verify", "--quiet", f"refs/heads/{branch}"],
            cwd=canonical, timeout=self.local_timeout,
        )
        return r.success

    def create_worktree(self, repo_name: str, path: str, branch: str) -> None:
        validate_ref(branch)
        canonical = self.canonical_path(repo_name)
        if not canonical.exists():
            raise RepoNotFound(f"canonical 仓库不存在: {repo_name}", repo=repo_name)
        if self._branch_exists(canonical, branch):
            args = ["worktree", "add", path, branch]
        else:
            args = ["worktree", "add", "-b", branch, path]
        self._git(args, cwd=canonical, repo=repo_name)
        logger.info("worktree 已创建: %s@%s -> %s", repo_name, branch, path, extra={"repo": repo_name})

    def remove_worktree(self, repo_name: str, path: str) -> None:
        canonical = self.canonical_path(repo_name)
        if not canonical.exists():
            shutil.rmtree(path, ignore_errors=True)
            return
        if Path(path).exists():
            self._git(["worktree", "remove", "--force", path], cwd=canonical, repo=repo_name)
        self._git(["worktree", "prune"], cwd=canonical, repo=repo_name)

    def repair_worktree(self, repo_name: str, path: str) -> None:
        """工作空间目录移动后修复 canonical 与 worktree 之间的双向路径"""
        canonical = self.canonical_path(repo_name)
        if not canonical.exists():
            raise RepoNotFound(f"canonical 仓库不存在: {repo_name}", repo=repo_name)
        self._git(["worktree", "repair", path], cwd=canonical, repo=repo_name)

    def prune_worktrees(self, repo_name: str) -> None:
        """清理 canonical 仓库中指向已不存在目录的 worktree 记录"""
        canonical = self.canonical_path(repo_name)
        if not canonical.exists():
            raise RepoNotFound(f"canonical 仓库不存在: {repo_name}", repo=repo_name)
        self._git(["worktree", "prune"], cwd=canonical, repo=repo_name)

    def status(self, path: str, *, cancel: CancelToken | None = None) -> RepoGitStatus:
        porcelain = self._git(["status", "--porcelain"], cwd=path, cancel=cancel)
        branch = self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=path, cancel=cancel)

        upstream = self._exec(
            ["rev-parse", "--abbrev-ref", "@{u}"], cwd=path, timeout=self.local_timeout,
        )
        if upstream.success:
            ahead_behind = self._git(
                ["rev-list", "--left-right", "--count", "HEAD...@{u}"], cwd=path, cancel=cancel,
            ).stdout.split()
            unpushed, behind = int(ahead_behind[0]), int(ahead_behind[1])
        else:
            # 无上游：不在任何远程分支上的提交都算未推送
            unpushed = int(self._git(
                ["rev-list", "--count", "HEAD", "--not", "--remotes"], cwd=path, cancel=cancel,
            ).stdout.strip() or 0)
            behind = 0

        return RepoGitStatus(
            dirty=bool(porcelain.stdout.strip()),
            unpushed=unpushed,
            behind=behind,
            branch=branch.stdout.strip(),
        )

    def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        validate_ref(branch)
        args = ["checkout", "-b", branch] if create else ["checkout", branch]
        self._git(args, cwd=path)

    def rename_branch(self, path: str, old: str, new: str) -> None:
        validate_ref(new)
        self._git(["branch", "-m", old, new], cwd=path)

    def push(self, path: str, branch: str, *, cancel: CancelToken | None = None) -> None:
        validate_ref(branch)
        self._network(["push", "-u", "origin", branch], cwd=path, cancel=cancel)

    def pull(self, path: str, *, cancel: CancelToken | None = None) -> None:
        self._network(["pull", "--ff-only"], cwd=path, cancel=cancel)

    def run_command(
        self, path: str, args: list[str], *, cancel: CancelToken | None = None,
    ) -> CommandResult:
        """执行任意 git 子命令，非零退出码原样返回"""
        if not args:
            raise InvalidArgument("git 参数为空")
        return self._exec(args, cwd=path, cancel=cancel)

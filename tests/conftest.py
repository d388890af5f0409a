"""公共 fixture：内存 git 适配器、钩子执行器与完整装配的工作空间服务"""

from __future__ import annotations

import shutil
import threading
import time
from pathlib import Path

import pytest

from canopy.core.cache import WorkspaceCache
from canopy.core.config import Config
from canopy.core.disk_usage import DiskUsageCache
from canopy.core.exceptions import HookFailed, RepoAlreadyExists, RepoNotFound
from canopy.core.lock import LockManager
from canopy.core.models import RepoGitStatus
from canopy.core.parallel import ParallelExecutor
from canopy.core.storage import YamlWorkspaceStorage
from canopy.services.repo.registry import RepoRegistry
from canopy.services.repo.resolver import RepoResolver
from canopy.services.workspace.runtime import WorkspaceRuntime
from canopy.services.workspace_service import WorkspaceService
from canopy.utils.shell import CommandResult


class FakeGit:
    """内存 git 适配器

    failures[(op, repo)] 设定该操作抛出的异常，delays[(op, repo)] 设定耗时（秒），
    statuses[repo] 设定 status() 返回值。worktree 用真实目录表示，便于校验文件系统状态。
    """

    def __init__(self) -> None:
        self.canonical: dict[str, str] = {}
        self.worktrees: dict[str, dict[str, str]] = {}
        self.failures: dict[tuple[str, str], Exception] = {}
        self.delays: dict[tuple[str, str], float] = {}
        self.statuses: dict[str, RepoGitStatus] = {}
        self.command_rc: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _step(self, op: str, repo: str, cancel=None) -> None:
        with self._lock:
            self.calls.append((op, repo))
        delay = self.delays.get((op, repo), 0.0)
        if delay:
            if cancel is not None:
                cancel.wait(delay)
                cancel.raise_if_cancelled(f"{op} {repo}")
            else:
                time.sleep(delay)
        err = self.failures.get((op, repo))
        if err is not None:
            raise err

    def ops(self, op: str) -> list[str]:
        with self._lock:
            return [repo for name, repo in self.calls if name == op]

    # ---- canonical ----

    def ensure_canonical(self, url: str, name: str, *, cancel=None) -> str:
        self._step("ensure_canonical", name, cancel)
        self.canonical.setdefault(name, url)
        return f"/projects/{name}"

    def clone(self, url: str, name: str, *, cancel=None) -> str:
        if name in self.canonical:
            raise RepoAlreadyExists(f"canonical 仓库已存在: {name}", repo=name)
        self._step("clone", name, cancel)
        self.canonical[name] = url
        return f"/projects/{name}"

    def fetch(self, name: str, *, cancel=None) -> None:
        self._step("fetch", name, cancel)

    def list(self) -> list[str]:
        return sorted(self.canonical)

    def remove_canonical(self, name: str) -> None:
        self._step("remove_canonical", name)
        if name not in self.canonical:
            raise RepoNotFound(f"canonical 仓库不存在: {name}", repo=name)
        del self.canonical[name]

    # ---- worktree ----

    def create_worktree(self, repo_name: str, path: str, branch: str) -> None:
        self._step("create_worktree", repo_name)
        Path(path).mkdir(parents=True)
        (Path(path) / "README.md").write_text(f"{repo_name}\n", encoding="utf-8")
        with self._lock:
            self.worktrees[path] = {"repo": repo_name, "branch": branch}

    def remove_worktree(self, repo_name: str, path: str) -> None:
        self._step("remove_worktree", repo_name)
        shutil.rmtree(path, ignore_errors=True)
        with self._lock:
            self.worktrees.pop(path, None)

    def repair_worktree(self, repo_name: str, path: str) -> None:
        self._step("repair_worktree", repo_name)

    def prune_worktrees(self, repo_name: str) -> None:
        self._step("prune_worktrees", repo_name)
        if repo_name not in self.canonical:
            raise RepoNotFound(f"canonical 仓库不存在: {repo_name}", repo=repo_name)

    def status(self, path: str, *, cancel=None) -> RepoGitStatus:
        repo = Path(path).name
        self._step("status", repo, cancel)
        st = self.statuses.get(repo)
        if st is not None:
            return st
        return RepoGitStatus(branch=self.worktrees.get(path, {}).get("branch", ""))

    def checkout(self, path: str, branch: str, *, create: bool = False) -> None:
        self._step("checkout", Path(path).name)
        self.worktrees.setdefault(path, {})["branch"] = branch

    def rename_branch(self, path: str, old: str, new: str) -> None:
        self._step("rename_branch", Path(path).name)
        self.worktrees.setdefault(path, {})["branch"] = new

    def push(self, path: str, branch: str, *, cancel=None) -> None:
        self._step("push", Path(path).name, cancel)

    def pull(self, path: str, *, cancel=None) -> None:
        repo = Path(path).name
        self._step("pull", repo, cancel)
        if repo in self.statuses:
            self.statuses[repo].behind = 0

    def run_command(self, path: str, args: list[str], *, cancel=None) -> CommandResult:
        repo = Path(path).name
        self._step("run_command", repo, cancel)
        rc = self.command_rc.get(repo, 0)
        return CommandResult(returncode=rc, stdout=f"{repo}: {' '.join(args)}\n")


class FakeHooks:
    """记录钩子调用；fail 不为空时抛出，命令在 fail_commands 中时抛 HookFailed"""

    def __init__(self) -> None:
        self.runs: list[tuple[list[str], str]] = []
        self.timeouts: list[float] = []
        self.fail: Exception | None = None
        self.fail_commands: set[str] = set()

    def run(self, hooks, ctx, *, continue_on_error=False, cancel=None) -> None:
        self.runs.append(([h.command for h in hooks], ctx.workspace_id))
        self.timeouts.extend(h.timeout for h in hooks)
        if continue_on_error:
            return
        if self.fail is not None:
            raise self.fail
        for h in hooks:
            if h.command in self.fail_commands:
                raise HookFailed(f"钩子退出码 1: {h.command}")

    def preview(self, hooks, ctx) -> list[str]:
        return [h.command.format(workspace_id=ctx.workspace_id) for h in hooks]


@pytest.fixture()
def config(tmp_path: Path) -> Config:
    return Config(
        workspaces_root=str(tmp_path / "workspaces"),
        closed_root=str(tmp_path / "closed"),
        projects_root=str(tmp_path / "projects"),
        locks_dir=str(tmp_path / "locks"),
        registry_file=str(tmp_path / "repos.yml"),
        lock_timeout=0.3,
    )


@pytest.fixture()
def fake_git() -> FakeGit:
    return FakeGit()


@pytest.fixture()
def fake_hooks() -> FakeHooks:
    return FakeHooks()


@pytest.fixture()
def runtime(config: Config, fake_git: FakeGit, fake_hooks: FakeHooks) -> WorkspaceRuntime:
    registry = RepoRegistry(config.registry_file)
    return WorkspaceRuntime(
        config=config,
        git=fake_git,
        storage=YamlWorkspaceStorage(config.workspaces_root, config.closed_root),
        hooks=fake_hooks,
        locks=LockManager(config.locks_dir, timeout=config.lock_timeout, heartbeat=False),
        cache=WorkspaceCache(config.cache_ttl),
        usage=DiskUsageCache(config.disk_usage_ttl),
        executor=ParallelExecutor(config.workers, label="repo"),
        resolver=RepoResolver(registry),
        registry=registry,
    )


@pytest.fixture()
def service(runtime: WorkspaceRuntime) -> WorkspaceService:
    return WorkspaceService(runtime)


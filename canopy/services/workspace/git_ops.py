"""跨仓库 git 操作

- run_git: 在每个 worktree 执行同一 git 子命令，顺序 / 并行可选，不加锁
- switch_branch: 加锁，并行 checkout（fail-fast），持久化新分支名；
  任一仓库失败时已切换的仓库切回原分支，工作空间不会停在分支混杂的状态
- sync: 逐仓 fetch canonical 后快进拉取，结果按仓库归类
- push: 并行推送工作空间分支
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import (
    CanopyError,
    GitOperationFailed,
    OperationCancelled,
    OperationTimeout,
)
from canopy.core.models import RepoTaskResult, SyncResult
from canopy.core.parallel import ParallelExecutor
from canopy.services.repo.git import validate_ref
from canopy.services.workspace.runtime import ok, raise_batch_error

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import Repo, Workspace
    from canopy.core.parallel import BatchResult
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)

# pull --ff-only 无法快进时 stderr 的关键字
_CONFLICT_MARKERS = ("not possible to fast-forward", "diverg", "conflict", "would be overwritten")


class WorkspaceGitOps:
    """工作空间内多仓 git 操作"""

    def __init__(self, runtime: WorkspaceRuntime) -> None:
        self.rt = runtime
        self._git_executor: ParallelExecutor = ParallelExecutor(
            runtime.config.workers, label="git",
        )

    def run_git(
        self,
        workspace_id: str,
        args: list[str],
        *,
        parallel: bool = True,
        continue_on_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> BatchResult:
        """只读工作空间元数据，不持锁；非零退出码按失败处理"""
        ws, _ = self.rt.load(workspace_id)
        token = ensure_token(cancel)

        def run(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            tok.raise_if_cancelled(f"git {repo.name}")
            r = self.rt.git.run_command(self.rt.worktree_path(ws, repo.name), args, cancel=tok)
            return RepoTaskResult(
                repo=repo.name, stdout=r.stdout, stderr=r.stderr, exit_code=r.returncode,
            )

        return self._git_executor.run(
            ws.repos, run, parallel=parallel,
            continue_on_error=continue_on_error, cancel=token,
        )

    def switch_branch(
        self,
        workspace_id: str,
        branch: str,
        *,
        create: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        validate_ref(branch)
        token = ensure_token(cancel)
        with self.rt.locked(workspace_id, token):
            ws, _ = self.rt.load(workspace_id)

            tracker = _CheckoutTracker()

            def checkout(repo: Repo, tok: CancelToken) -> RepoTaskResult:
                tok.raise_if_cancelled(f"checkout {repo.name}")
                tracker.begin(repo.name)
                done = False
                try:
                    self.rt.git.checkout(
                        self.rt.worktree_path(ws, repo.name), branch, create=create,
                    )
                    done = True
                finally:
                    tracker.end(repo.name, done)
                return ok(repo.name)

            batch = self.rt.run_repos(ws.repos, checkout, cancel=token)
            if batch.error is not None:
                self._restore_branches(ws, tracker.close(), batch.error)
            raise_batch_error(batch, "switch_branch", workspace_id)

            ws.branch_name = branch
            self.rt.save(ws)
        logger.info(
            "工作空间已切换分支: %s -> %s", workspace_id, branch,
            extra={"workspace_id": workspace_id},
        )

    def _restore_branches(self, ws: Workspace, repos: list[str], error: Exception) -> None:
        """把已切换的仓库切回 ws.branch_name；失败的仓库名写入原始错误的 rollback_failures"""
        failures: list[str] = []
        for name in repos:
            try:
                self.rt.git.checkout(self.rt.worktree_path(ws, name), ws.branch_name)
            except Exception as e:
                logger.warning(
                    "切回原分支失败: %s -> %s: %s", name, ws.branch_name, e,
                    extra={"workspace_id": ws.id, "repo": name},
                )
                failures.append(name)
        if repos:
            logger.info(
                "已将 %d 个仓库切回 %s", len(repos) - len(failures), ws.branch_name,
                extra={"workspace_id": ws.id},
            )
        if failures and isinstance(error, CanopyError):
            error.with_context(rollback_failures=",".join(failures))

    def sync(self, workspace_id: str, *, cancel: CancelToken | None = None) -> list[SyncResult]:
        """每个仓库的结果互不影响，全部返回"""
        ws, _ = self.rt.load(workspace_id)
        token = ensure_token(cancel)
        outcome: dict[str, SyncResult] = {}

        def sync_one(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            outcome[repo.name] = self._sync_repo(
                repo.name, self.rt.worktree_path(ws, repo.name), tok,
            )
            return ok(repo.name)

        batch = self.rt.run_repos(ws.repos, sync_one, continue_on_error=True, cancel=token)
        results = [
            outcome.get(r.repo) or SyncResult(repo=r.repo, status="error", error=str(r.error or ""))
            for r in batch.results
        ]
        self.rt.invalidate(workspace_id)
        return results

    def _sync_repo(self, name: str, path: str, token: CancelToken) -> SyncResult:
        try:
            self.rt.git.fetch(name, cancel=token)
            behind = self.rt.git.status(path, cancel=token).behind
            if behind == 0:
                return SyncResult(repo=name, status="up-to-date")
            self.rt.git.pull(path, cancel=token)
        except OperationTimeout as e:
            return SyncResult(repo=name, status="timeout", error=str(e))
        except GitOperationFailed as e:
            text = str(e).lower()
            status = "conflict" if any(m in text for m in _CONFLICT_MARKERS) else "error"
            return SyncResult(repo=name, status=status, error=str(e))
        logger.info("仓库已同步: %s (%d 个新提交)", name, behind, extra={"repo": name})
        return SyncResult(repo=name, status="updated", updated=behind)

    def push(self, workspace_id: str, *, cancel: CancelToken | None = None) -> BatchResult:
        ws, _ = self.rt.load(workspace_id)
        token = ensure_token(cancel)

        def push_one(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            tok.raise_if_cancelled(f"push {repo.name}")
            self.rt.git.push(self.rt.worktree_path(ws, repo.name), ws.branch_name, cancel=tok)
            return ok(repo.name)

        batch = self.rt.run_repos(ws.repos, push_one, continue_on_error=True, cancel=token)
        raise_batch_error(batch, "push", workspace_id)
        return batch


class _CheckoutTracker:
    """记录已完成 checkout 的仓库

    close() 之后不再开始新的 checkout，并等待进行中的 checkout 结束，
    返回的列表即需要切回原分支的全部仓库。
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._running = 0
        self._closed = False
        self._done: list[str] = []

    def begin(self, repo: str) -> None:
        with self._cond:
            if self._closed:
                raise OperationCancelled("分支切换已中止", repo=repo)
            self._running += 1

    def end(self, repo: str, succeeded: bool) -> None:
        with self._cond:
            self._running -= 1
            if succeeded:
                self._done.append(repo)
            self._cond.notify_all()

    def close(self) -> list[str]:
        with self._cond:
            self._closed = True
            self._cond.wait_for(lambda: self._running == 0)
            return list(self._done)

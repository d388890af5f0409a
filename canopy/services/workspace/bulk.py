"""按 ID 模式批量操作工作空间

- list_matching: 正则（re.search 语义）匹配工作空间 ID
- close_matching: 逐个关闭，单个失败不影响其余工作空间
- sync_matching: 有界并行同步，各工作空间结果互不影响

每个工作空间的关闭 / 同步各自走单工作空间入口，加锁与回滚语义不变。
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import InvalidArgument
from canopy.core.models import BulkResult, RepoTaskResult
from canopy.core.parallel import ParallelExecutor

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import SyncResult, Workspace
    from canopy.core.parallel import BatchResult
    from canopy.services.workspace.close import WorkspaceCloser
    from canopy.services.workspace.git_ops import WorkspaceGitOps
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


def compile_pattern(pattern: str) -> re.Pattern[str]:
    if not pattern.strip():
        raise InvalidArgument("匹配模式不能为空")
    try:
        return re.compile(pattern)
    except re.error as e:
        raise InvalidArgument(f"匹配模式无效: {pattern}", cause=e) from e


def _workspace_id(ws: Workspace) -> str:
    return ws.id


class WorkspaceBulk:
    """批量关闭 / 同步"""

    def __init__(
        self, runtime: WorkspaceRuntime, closer: WorkspaceCloser, git_ops: WorkspaceGitOps,
    ) -> None:
        self.rt = runtime
        self._closer = closer
        self._git = git_ops
        self._executor: ParallelExecutor = ParallelExecutor(
            runtime.config.workers, label="workspace",
        )

    def list_matching(self, pattern: str) -> list[Workspace]:
        regex = compile_pattern(pattern)
        return [ws for ws in self.rt.storage.list() if regex.search(ws.id)]

    def close_matching(
        self,
        pattern: str,
        *,
        keep: bool = False,
        force: bool = False,
        continue_on_hook_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> list[BulkResult]:
        matched = self.list_matching(pattern)
        token = ensure_token(cancel)

        def close_one(ws: Workspace, tok: CancelToken) -> RepoTaskResult:
            tok.raise_if_cancelled(f"close {ws.id}")
            self._closer.close(
                ws.id, keep=keep, force=force,
                continue_on_hook_error=continue_on_hook_error, cancel=tok,
            )
            return RepoTaskResult(repo=ws.id)

        batch = self._executor.run(
            matched, close_one, parallel=False, continue_on_error=True,
            cancel=token, name_of=_workspace_id,
        )
        results = self._collect(batch)
        logger.info(
            "批量关闭 %r: %d 个匹配, %d 个失败", pattern, len(results),
            sum(1 for r in results if not r.ok),
        )
        return results

    def sync_matching(
        self, pattern: str, *, cancel: CancelToken | None = None,
    ) -> list[BulkResult]:
        matched = self.list_matching(pattern)
        token = ensure_token(cancel)
        outcome: dict[str, list[SyncResult]] = {}

        def sync_one(ws: Workspace, tok: CancelToken) -> RepoTaskResult:
            tok.raise_if_cancelled(f"sync {ws.id}")
            outcome[ws.id] = self._git.sync(ws.id, cancel=tok)
            return RepoTaskResult(repo=ws.id)

        batch = self._executor.run(
            matched, sync_one, continue_on_error=True, cancel=token, name_of=_workspace_id,
        )
        return [
            BulkResult(workspace_id=r.workspace_id, error=r.error, sync=outcome.get(r.workspace_id, []))
            for r in self._collect(batch)
        ]

    @staticmethod
    def _collect(batch: BatchResult) -> list[BulkResult]:
        """continue_on_error 下 batch.error 只可能是取消或超时，直接抛出"""
        batch.raise_for_error()
        return [BulkResult(workspace_id=r.repo, error=r.error) for r in batch.results]

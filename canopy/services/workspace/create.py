"""工作空间创建

流程（全部在工作空间锁内）：
1. 写入初始元数据（补偿：删除整个工作空间目录）
2. 并行确保每个 canonical 仓库存在（clone 经重试策略），fail-fast
3. 并行创建各仓库 worktree；任一失败则移除已创建的 worktree
4. 指定模板时逐条执行模板的 setup 命令，有失败则标记 setup_incomplete（不回滚）
5. 失效缓存，执行 post_create 钩子（钩子失败不回滚已创建的工作空间）

任一仓库失败时整个工作空间目录被删除、不留元数据，调用方看到的是全有或全无。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import (
    CanopyError,
    HookFailed,
    HookTimeout,
    InvalidArgument,
    NoReposConfigured,
    WorkspaceExists,
)
from canopy.core.models import Hook, Workspace
from canopy.core.operation import Operation
from canopy.core.storage import validate_workspace_id
from canopy.services.repo.git import validate_ref
from canopy.services.workspace.runtime import ok, raise_batch_error

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import Repo, RepoTaskResult, Template
    from canopy.services.workspace.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


class WorkspaceCreator:
    """创建工作空间（absent → active）"""

    def __init__(self, runtime: WorkspaceRuntime) -> None:
        self.rt = runtime

    def create(
        self,
        workspace_id: str,
        repo_refs: list[str] | None = None,
        *,
        branch: str = "",
        template: str = "",
        cancel: CancelToken | None = None,
        run_hooks: bool = True,
    ) -> str:
        """创建工作空间，返回工作空间目录"""
        validate_workspace_id(workspace_id)
        tmpl = self.rt.config.template(template) if template else None

        refs = list(repo_refs or [])
        if tmpl is not None:
            refs = tmpl.merge_repos(refs)
            branch = branch or tmpl.default_branch
        elif not refs:
            refs = list(self.rt.config.default_repos)
        if not refs:
            raise NoReposConfigured(
                "未指定代码仓且未配置 default_repos", workspace_id=workspace_id,
            )
        repos = self.rt.resolver.resolve(refs)
        return self.create_from_repos(
            workspace_id, repos, branch=branch, template=tmpl,
            cancel=cancel, run_hooks=run_hooks,
        )

    def create_from_repos(
        self,
        workspace_id: str,
        repos: list[Repo],
        *,
        branch: str = "",
        template: Template | None = None,
        cancel: CancelToken | None = None,
        run_hooks: bool = True,
    ) -> str:
        """以已解析的仓库列表创建（导入等已知地址的场景）"""
        validate_workspace_id(workspace_id)
        branch = branch or workspace_id
        validate_ref(branch)
        if not repos:
            raise NoReposConfigured("仓库列表为空", workspace_id=workspace_id)
        names = [r.name for r in repos]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise InvalidArgument(f"仓库重复: {', '.join(duplicated)}", workspace_id=workspace_id)

        ws = Workspace(id=workspace_id, branch_name=branch, repos=list(repos))
        token = ensure_token(cancel)
        with self.rt.locked(workspace_id, token):
            if self.rt.exists(workspace_id):
                raise WorkspaceExists(workspace_id)
            self.create_locked(ws, token)
            if template is not None and template.setup_commands:
                self.run_setup(ws, template, token)
            if run_hooks:
                self.run_post_create(ws, token)
        return str(self.rt.workspace_dir(ws))

    def create_locked(self, ws: Workspace, token: CancelToken) -> None:
        """调用方已持有锁；失败时工作空间目录与元数据全部回滚"""
        op = Operation(f"create {ws.id}")
        op.add_step(
            "metadata",
            lambda: self._write_metadata(ws),
            rollback=lambda: self._discard(ws.id),
        )
        op.add_step("repos", lambda: self._materialize(ws, token))
        try:
            op.execute()
        finally:
            self.rt.invalidate(ws.id)
        logger.info(
            "工作空间已创建: %s (%d 个仓库, 分支 %s)", ws.id, len(ws.repos), ws.branch_name,
            extra={"workspace_id": ws.id, "operation": "create"},
        )

    def _write_metadata(self, ws: Workspace) -> None:
        ws.dir_name = self.rt.storage.create(ws)
        self.rt.invalidate(ws.id)

    def _discard(self, workspace_id: str) -> None:
        self.rt.storage.delete(workspace_id)
        self.rt.invalidate(workspace_id)

    # ---- 仓库 ----

    def _materialize(self, ws: Workspace, token: CancelToken) -> None:
        """确保 canonical 仓库存在并创建 worktree"""

        def ensure(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            tok.raise_if_cancelled(f"ensure {repo.name}")
            self.rt.git.ensure_canonical(repo.url, repo.name, cancel=tok)
            return ok(repo.name)

        batch = self.rt.run_repos(ws.repos, ensure, cancel=token)
        raise_batch_error(batch, "ensure_canonical", ws.id)

        def add_worktree(repo: Repo, tok: CancelToken) -> RepoTaskResult:
            tok.raise_if_cancelled(f"worktree {repo.name}")
            self.rt.git.create_worktree(
                repo.name, self.rt.worktree_path(ws, repo.name), ws.branch_name,
            )
            return ok(repo.name)

        # 所有 worktree 都跑完再判断，清理时不会与仍在创建中的任务竞争
        batch = self.rt.run_repos(ws.repos, add_worktree, continue_on_error=True, cancel=token)
        if batch.failures:
            created = [r.repo for r in batch.results if r.success]
            self.remove_worktrees(ws, created)
            first = batch.failures[0]
            batch.error = first.error
            raise_batch_error(batch, "create_worktree", ws.id)

    def remove_worktrees(self, ws: Workspace, names: list[str] | None = None) -> list[str]:
        """尽力移除 worktree，返回失败的仓库名"""
        failed: list[str] = []
        for name in names if names is not None else ws.repo_names():
            try:
                self.rt.git.remove_worktree(name, self.rt.worktree_path(ws, name))
            except (CanopyError, OSError) as e:
                failed.append(name)
                logger.warning(
                    "移除 worktree 失败: %s/%s: %s", ws.id, name, e,
                    extra={"workspace_id": ws.id, "repo": name},
                )
        return failed

    # ---- 钩子 ----

    def run_post_create(self, ws: Workspace, token: CancelToken) -> None:
        hooks = self.rt.hook_list("post_create")
        if not hooks:
            return
        try:
            self.rt.hooks.run(hooks, self.rt.hook_context(ws), cancel=token)
        except (HookFailed, HookTimeout) as e:
            logger.error(
                "post_create 钩子失败，工作空间已保留: %s: %s", ws.id, e,
                extra={"workspace_id": ws.id},
            )
            raise e.with_context(workspace_created=True)

    # ---- 模板 setup ----

    def run_setup(self, ws: Workspace, template: Template, token: CancelToken) -> bool:
        """逐条执行模板 setup 命令；任一失败则标记 setup_incomplete 并落盘，工作空间保留"""
        ctx = self.rt.hook_context(ws)
        failed: list[int] = []
        for index, command in enumerate(template.setup_commands, start=1):
            if not command.strip():
                logger.warning("跳过空的 setup 命令 #%d", index, extra={"workspace_id": ws.id})
                continue
            logger.info(
                "执行模板 %s 的 setup 命令 #%d: %s", template.name, index, command,
                extra={"workspace_id": ws.id},
            )
            hook = Hook(command=command, timeout=self.rt.config.setup_timeout)
            try:
                self.rt.hooks.run([hook], ctx, cancel=token)
            except (HookFailed, HookTimeout) as e:
                failed.append(index)
                logger.warning(
                    "setup 命令 #%d 失败: %s", index, e, extra={"workspace_id": ws.id},
                )
        if not failed:
            return True

        ws.setup_incomplete = True
        self.rt.save(ws)
        logger.error(
            "工作空间 %s 的 setup 未完成（失败命令: %s）", ws.id, ", ".join(map(str, failed)),
            extra={"workspace_id": ws.id},
        )
        return False

"""生命周期钩子执行器

职责：
- 按顺序执行 post_create / pre_close 钩子
- 钩子带 repos 过滤时在每个匹配仓库的 worktree 中各执行一次，否则在工作空间根目录执行一次
- 命令经 str.format_map 渲染占位符，并注入 CANOPY_* 环境变量
- 非零退出抛 HookFailed，超时抛 HookTimeout；钩子或调用方设置 continue_on_error 时只记警告

占位符: {workspace_id} {workspace_path} {branch} {repo_name} {repo_path}
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from canopy.core.exceptions import HookFailed, HookTimeout, InvalidArgument, OperationTimeout
from canopy.utils.shell import get_executor

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken
    from canopy.core.models import Hook, HookContext, Repo
    from canopy.utils.shell import CommandExecutor

logger = logging.getLogger(__name__)


class _SafeFormat(dict):
    """未知占位符原样保留，避免命令中的花括号触发 KeyError"""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class HookExecutor:
    """顺序执行生命周期钩子"""

    def __init__(self, executor: CommandExecutor | None = None) -> None:
        self._executor = executor

    @property
    def executor(self) -> CommandExecutor:
        return self._executor or get_executor()

    # ---- 渲染 ----

    @staticmethod
    def _variables(ctx: HookContext, repo: Repo | None) -> dict[str, str]:
        repo_path = str(Path(ctx.workspace_path) / repo.name) if repo else ""
        return {
            "workspace_id": ctx.workspace_id,
            "workspace_path": ctx.workspace_path,
            "branch": ctx.branch,
            "repo_name": repo.name if repo else "",
            "repo_path": repo_path,
        }

    def _targets(self, hook: Hook, ctx: HookContext) -> list[Repo | None]:
        """钩子的执行目标：无过滤为 [None]（工作空间根目录）"""
        if not hook.repos:
            return [None]
        return [r for r in ctx.repos if r.name in hook.repos]

    def render(self, hook: Hook, ctx: HookContext, repo: Repo | None = None) -> str:
        if not hook.command.strip():
            raise InvalidArgument("钩子命令为空")
        return hook.command.format_map(_SafeFormat(self._variables(ctx, repo)))

    def preview(self, hooks: list[Hook], ctx: HookContext) -> list[str]:
        """演练：返回将要执行的命令"""
        commands: list[str] = []
        for hook in hooks:
            for repo in self._targets(hook, ctx):
                cmd = self.render(hook, ctx, repo)
                commands.append(f"[{repo.name}] {cmd}" if repo else cmd)
        return commands

    # ---- 执行 ----

    def run(
        self,
        hooks: list[Hook],
        ctx: HookContext,
        *,
        continue_on_error: bool = False,
        cancel: CancelToken | None = None,
    ) -> None:
        for index, hook in enumerate(hooks, start=1):
            for repo in self._targets(hook, ctx):
                try:
                    self._run_one(index, hook, ctx, repo, cancel)
                except (HookFailed, HookTimeout) as e:
                    if not (hook.continue_on_error or continue_on_error):
                        raise
                    logger.warning(
                        "钩子 #%d 失败，继续执行: %s", index, e,
                        extra={"workspace_id": ctx.workspace_id},
                    )

    def _run_one(
        self,
        index: int,
        hook: Hook,
        ctx: HookContext,
        repo: Repo | None,
        cancel: CancelToken | None,
    ) -> None:
        cmd = self.render(hook, ctx, repo)
        variables = self._variables(ctx, repo)
        env = dict(os.environ)
        env.update({f"CANOPY_{k.upper()}": v for k, v in variables.items()})
        cwd = variables["repo_path"] or ctx.workspace_path
        repo_name = repo.name if repo else ""

        logger.info(
            "执行钩子 #%d: %s (cwd=%s)", index, cmd, cwd,
            extra={"workspace_id": ctx.workspace_id, "repo": repo_name or None},
        )
        try:
            result = self.executor.execute(
                [hook.shell, "-c", cmd], cwd=cwd, env=env,
                timeout=hook.timeout, cancel=cancel,
            )
        except OperationTimeout as e:
            raise HookTimeout(
                f"钩子 #{index} 超时 ({hook.timeout}s): {cmd}",
                cause=e, workspace_id=ctx.workspace_id, repo=repo_name,
            ) from e
        except OSError as e:
            raise HookFailed(
                f"钩子 #{index} 无法启动: {cmd}",
                cause=e, workspace_id=ctx.workspace_id, repo=repo_name,
            ) from e

        if not result.success:
            raise HookFailed(
                f"钩子 #{index} 退出码 {result.returncode}: {cmd}: {result.stderr.strip()[:300]}",
                workspace_id=ctx.workspace_id, repo=repo_name, exit_code=result.returncode,
            )

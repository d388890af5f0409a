"""canopy 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
编排层抛出的 CanopyError 统一在 main group 中转换为 `错误 [CODE]: message` 并以 1 退出。
"""

from __future__ import annotations

import os
from typing import Any

import click

from canopy import __version__
from canopy.core.exceptions import CanopyError
from canopy.services.container import get_container, reset_container
from canopy.utils.logger import setup_logging


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


class CanopyGroup(click.Group):
    """把 CanopyError 转换为带错误码的单行提示"""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except CanopyError as e:
            click.echo(f"错误 [{e.code}]: {e}", err=True)
            ctx.exit(1)


@click.group(cls=CanopyGroup)
@click.version_option(version=__version__)
def main() -> None:
    """canopy - 基于 git worktree 的多仓工作空间管理"""
    setup_logging(
        level=os.getenv("CANOPY_LOG_LEVEL", "WARNING"),
        json_output=os.getenv("CANOPY_LOG_JSON", "") == "1",
    )
    config_path = os.getenv("CANOPY_CONFIG", "")
    if config_path:
        from canopy.core.config import init_config
        init_config(config_path)
        reset_container()


# 注册各领域子命令
from canopy.cli.cmd_workspace import register as _reg_workspace  # noqa: E402
from canopy.cli.cmd_repo import register as _reg_repo  # noqa: E402

_reg_workspace(main)
_reg_repo(main)

"""CLI — canonical 仓库管理命令"""

from __future__ import annotations

import click

from canopy.cli import _svc


def register(group: click.Group) -> None:
    group.add_command(repo_group)


@click.group(name="repo")
def repo_group() -> None:
    """canonical 仓库管理"""


@repo_group.command(name="list")
def repo_list() -> None:
    """列出 canonical 仓库及使用它的工作空间"""
    svc = _svc().workspaces
    names = svc.list_canonical()
    if not names:
        click.echo("没有 canonical 仓库。")
        return
    for name in names:
        users = ",".join(svc.workspaces_using_repo(name)) or "-"
        click.echo(f"  {name:20s} workspaces=[{users}]")


@repo_group.command(name="add")
@click.argument("url")
@click.option("--alias", default="", help="别名（默认取地址最后一段）")
def repo_add(url: str, alias: str) -> None:
    """clone canonical 仓库并登记别名"""
    name = _svc().workspaces.add_canonical(url, alias)
    click.echo(f"仓库已添加: {name}")


@repo_group.command(name="remove")
@click.argument("name")
@click.option("--force", is_flag=True, help="仍有工作空间使用时也删除")
def repo_remove(name: str, force: bool) -> None:
    """删除 canonical 仓库"""
    _svc().workspaces.remove_canonical(name, force=force)
    click.echo(f"仓库已删除: {name}")


@repo_group.command(name="sync")
@click.argument("name")
def repo_sync(name: str) -> None:
    """fetch canonical 仓库"""
    _svc().workspaces.sync_canonical(name)
    click.echo(f"仓库已同步: {name}")

"""CLI — 工作空间命令"""

from __future__ import annotations

import click
import yaml

from canopy.cli import _svc
from canopy.services.workspace.export import read_export, write_export


def register(group: click.Group) -> None:
    group.add_command(workspace_group)


def _human_size(n: int) -> str:
    size = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"


@click.group(name="workspace")
def workspace_group() -> None:
    """工作空间管理"""


# ---- 生命周期 ----

@workspace_group.command(name="new")
@click.argument("workspace_id")
@click.option("--repos", "-r", multiple=True, help="仓库地址 / 别名 / owner/repo（可多次）")
@click.option("--branch", "-b", default="", help="分支名（默认等于工作空间 ID）")
@click.option("--template", "-t", default="", help="使用配置中的模板（仓库、默认分支、setup 命令）")
@click.option("--no-hooks", is_flag=True, help="跳过 post_create 钩子")
def ws_new(
    workspace_id: str, repos: tuple[str, ...], branch: str, template: str, no_hooks: bool,
) -> None:
    """创建工作空间"""
    svc = _svc().workspaces
    path = svc.create(
        workspace_id, list(repos) or None, branch=branch, template=template,
        run_hooks=not no_hooks,
    )
    click.echo(f"工作空间已创建: {workspace_id} -> {path}")
    if template and svc.runtime.load(workspace_id)[0].setup_incomplete:
        click.echo("部分 setup 命令失败，工作空间已标记为 setup 未完成", err=True)


@workspace_group.command(name="close")
@click.argument("workspace_id")
@click.option("--keep", is_flag=True, help="归档元数据，之后可 restore")
@click.option("--force", is_flag=True, help="跳过未提交 / 未推送检查")
@click.option("--continue-on-hook-error", is_flag=True, help="pre_close 钩子失败时继续")
def ws_close(workspace_id: str, keep: bool, force: bool, continue_on_hook_error: bool) -> None:
    """关闭工作空间"""
    entry = _svc().workspaces.close(
        workspace_id, keep=keep, force=force, continue_on_hook_error=continue_on_hook_error,
    )
    if entry is not None:
        click.echo(f"工作空间已归档: {workspace_id} -> {entry.path}")
    else:
        click.echo(f"工作空间已删除: {workspace_id}")


@workspace_group.command(name="preview-close")
@click.argument("workspace_id")
@click.option("--keep", is_flag=True, help="按归档模式演练")
def ws_preview_close(workspace_id: str, keep: bool) -> None:
    """演练 close，不做任何修改"""
    preview = _svc().workspaces.preview_close(workspace_id, keep=keep)
    mode = "归档" if preview.keep else "删除"
    click.echo(f"工作空间 {preview.workspace_id} 将被{mode}")
    for r in preview.repos:
        if r.error:
            state = f"错误: {r.error}"
        elif r.dirty or r.unpushed:
            state = f"dirty={r.dirty} unpushed={r.unpushed}"
        else:
            state = "干净"
        click.echo(f"  {r.name:20s} {state}")
    for cmd in preview.hooks:
        click.echo(f"  钩子: {cmd}")
    if not preview.clean:
        click.echo("存在未提交或未推送的修改，需要 --force")


@workspace_group.command(name="restore")
@click.argument("workspace_id")
@click.option("--force", is_flag=True, help="同名工作空间已存在时先删除")
def ws_restore(workspace_id: str, force: bool) -> None:
    """从归档记录恢复工作空间"""
    path = _svc().workspaces.restore(workspace_id, force=force)
    click.echo(f"工作空间已恢复: {workspace_id} -> {path}")


@workspace_group.command(name="rename")
@click.argument("old_id")
@click.argument("new_id")
@click.option("--force", is_flag=True, help="目标 ID 已存在时先删除")
@click.option("--keep-branch", is_flag=True, help="不重命名分支")
def ws_rename(old_id: str, new_id: str, force: bool, keep_branch: bool) -> None:
    """重命名工作空间"""
    path = _svc().workspaces.rename(
        old_id, new_id, force=force, rename_branch=not keep_branch,
    )
    click.echo(f"工作空间已重命名: {old_id} -> {new_id} ({path})")


# ---- 查询 ----

@workspace_group.command(name="list")
@click.option("--usage", is_flag=True, help="显示磁盘占用")
@click.option("--pattern", "-p", default="", help="只列出 ID 匹配该正则的工作空间")
def ws_list(usage: bool, pattern: str) -> None:
    """列出工作空间"""
    svc = _svc().workspaces
    items = svc.list_workspaces(with_usage=usage)
    if pattern:
        matched = {ws.id for ws in svc.list_matching(pattern)}
        items = [ws for ws in items if ws.id in matched]
    if not items:
        click.echo("没有工作空间。")
        return
    for ws in items:
        lock = " [锁定]" if ws.locked else ""
        if ws.setup_incomplete:
            lock += " [setup 未完成]"
        line = f"  {ws.id:20s} {ws.branch_name:20s} {len(ws.repos)} 个仓库{lock}"
        if usage:
            line += f"  {_human_size(ws.disk_usage)}"
        click.echo(line)


@workspace_group.command(name="closed")
def ws_closed() -> None:
    """列出归档记录（最新在前）"""
    entries = _svc().workspaces.list_closed()
    if not entries:
        click.echo("没有归档记录。")
        return
    for e in entries:
        closed_at = e.closed_at.isoformat() if e.closed_at else "-"
        click.echo(f"  {e.workspace.id:20s} {closed_at}  {e.path}")


@workspace_group.command(name="status")
@click.argument("workspace_id")
def ws_status(workspace_id: str) -> None:
    """查看各仓库状态"""
    st = _svc().workspaces.get_status(workspace_id)
    lock = " [锁定]" if st.locked else ""
    click.echo(f"{st.id} ({st.branch_name}){lock}")
    for r in st.repos:
        if r.error:
            click.echo(f"  {r.name:20s} 错误: {r.error}")
            continue
        flags = []
        if r.dirty:
            flags.append("有修改")
        if r.unpushed:
            flags.append(f"未推送 {r.unpushed}")
        if r.behind:
            flags.append(f"落后 {r.behind}")
        click.echo(f"  {r.name:20s} {r.branch:20s} {', '.join(flags) or '干净'}")


@workspace_group.command(name="path")
@click.argument("workspace_id")
def ws_path(workspace_id: str) -> None:
    """打印工作空间目录"""
    click.echo(_svc().workspaces.workspace_path(workspace_id))


# ---- git ----

@workspace_group.command(name="git", context_settings={"ignore_unknown_options": True})
@click.argument("workspace_id")
@click.argument("args", nargs=-1, required=True, type=click.UNPROCESSED)
@click.option("--sequential", is_flag=True, help="按仓库顺序逐个执行")
@click.option("--continue-on-error", is_flag=True, help="某个仓库失败后继续其余仓库")
def ws_git(
    workspace_id: str, args: tuple[str, ...], sequential: bool, continue_on_error: bool,
) -> None:
    """在每个仓库中执行 git 子命令"""
    batch = _svc().workspaces.run_git(
        workspace_id, list(args), parallel=not sequential,
        continue_on_error=continue_on_error,
    )
    for r in batch.results:
        mark = "OK" if r.success else "FAIL"
        click.echo(f"== {r.repo} [{mark}]")
        if r.stdout.strip():
            click.echo(r.stdout.rstrip())
        if r.stderr.strip():
            click.echo(r.stderr.rstrip(), err=True)
        if r.error is not None:
            click.echo(f"   {r.error}", err=True)
    if not batch.ok:
        raise SystemExit(1)


@workspace_group.command(name="sync")
@click.argument("workspace_id")
def ws_sync(workspace_id: str) -> None:
    """fetch 并快进拉取每个仓库"""
    results = _svc().workspaces.sync(workspace_id)
    for r in results:
        detail = f" ({r.updated} 个新提交)" if r.updated else ""
        error = f"  {r.error}" if r.error else ""
        click.echo(f"  {r.repo:20s} {r.status}{detail}{error}")


@workspace_group.command(name="push")
@click.argument("workspace_id")
def ws_push(workspace_id: str) -> None:
    """推送每个仓库的工作空间分支"""
    batch = _svc().workspaces.push(workspace_id)
    for r in batch.results:
        state = "已推送" if r.success else f"失败: {r.error}"
        click.echo(f"  {r.repo:20s} {state}")
    if not batch.ok:
        raise SystemExit(1)


@workspace_group.command(name="branch")
@click.argument("workspace_id")
@click.argument("branch")
@click.option("--create", "-c", is_flag=True, help="新建分支")
def ws_branch(workspace_id: str, branch: str, create: bool) -> None:
    """所有仓库切换到指定分支"""
    _svc().workspaces.switch_branch(workspace_id, branch, create=create)
    click.echo(f"工作空间 {workspace_id} 已切换到分支 {branch}")


# ---- 仓库 ----

@workspace_group.command(name="add-repo")
@click.argument("workspace_id")
@click.argument("ref")
def ws_add_repo(workspace_id: str, ref: str) -> None:
    """向工作空间添加仓库"""
    repo = _svc().workspaces.add_repo(workspace_id, ref)
    click.echo(f"仓库已添加: {workspace_id}/{repo.name}")


@workspace_group.command(name="remove-repo")
@click.argument("workspace_id")
@click.argument("name")
@click.option("--force", is_flag=True, help="跳过未提交 / 未推送检查")
def ws_remove_repo(workspace_id: str, name: str, force: bool) -> None:
    """从工作空间移除仓库"""
    _svc().workspaces.remove_repo(workspace_id, name, force=force)
    click.echo(f"仓库已移除: {workspace_id}/{name}")


# ---- 批量 ----

def _echo_bulk_failures(results: list) -> None:
    failed = [r for r in results if not r.ok]
    for r in failed:
        click.echo(f"  {r.workspace_id:20s} 失败: {r.error}", err=True)
    if failed:
        raise SystemExit(1)


@workspace_group.command(name="close-matching")
@click.argument("pattern")
@click.option("--keep", is_flag=True, help="归档元数据，之后可 restore")
@click.option("--force", is_flag=True, help="跳过未提交 / 未推送检查")
@click.option("--continue-on-hook-error", is_flag=True, help="pre_close 钩子失败时继续")
@click.option("--yes", "-y", is_flag=True, help="不再确认")
def ws_close_matching(
    pattern: str, keep: bool, force: bool, continue_on_hook_error: bool, yes: bool,
) -> None:
    """关闭 ID 匹配正则的所有工作空间"""
    svc = _svc().workspaces
    matched = svc.list_matching(pattern)
    if not matched:
        click.echo("没有匹配的工作空间。")
        return
    for ws in matched:
        click.echo(f"  {ws.id}")
    if not yes:
        click.confirm(f"关闭以上 {len(matched)} 个工作空间？", abort=True)

    results = svc.close_matching(
        pattern, keep=keep, force=force, continue_on_hook_error=continue_on_hook_error,
    )
    closed = [r.workspace_id for r in results if r.ok]
    click.echo(f"已关闭 {len(closed)}/{len(results)} 个工作空间")
    _echo_bulk_failures(results)


@workspace_group.command(name="sync-matching")
@click.argument("pattern")
def ws_sync_matching(pattern: str) -> None:
    """同步 ID 匹配正则的所有工作空间"""
    results = _svc().workspaces.sync_matching(pattern)
    if not results:
        click.echo("没有匹配的工作空间。")
        return
    for r in results:
        if not r.ok:
            continue
        click.echo(f"{r.workspace_id}:")
        for s in r.sync:
            error = f"  {s.error}" if s.error else ""
            click.echo(f"  {s.repo:20s} {s.status}{error}")
    _echo_bulk_failures(results)


# ---- 维护 ----

@workspace_group.command(name="orphans")
@click.argument("workspace_id", required=False, default="")
def ws_orphans(workspace_id: str) -> None:
    """检测引用已失效的 worktree"""
    orphans = _svc().workspaces.detect_orphans(workspace_id)
    if not orphans:
        click.echo("未发现孤立的 worktree。")
        return
    for o in orphans:
        click.echo(f"  {o.workspace_id}/{o.repo:20s} {o.describe()}  {o.path}")
    raise SystemExit(1)


@workspace_group.command(name="prune")
def ws_prune() -> None:
    """在所有主仓库中执行 git worktree prune"""
    pruned = _svc().workspaces.prune_worktrees()
    click.echo(f"已清理 {len(pruned)} 个主仓库的 worktree 记录")


@workspace_group.command(name="export")
@click.argument("workspace_id")
@click.option("--output", "-o", default="", help="写入文件（默认输出到 stdout）")
def ws_export(workspace_id: str, output: str) -> None:
    """导出工作空间定义"""
    export = _svc().workspaces.export_workspace(workspace_id)
    if output:
        write_export(export, output)
        click.echo(f"工作空间已导出: {workspace_id} -> {output}")
    else:
        click.echo(yaml.safe_dump(export.to_dict(), allow_unicode=True, sort_keys=False), nl=False)


@workspace_group.command(name="import")
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--id", "workspace_id", default="", help="覆盖导出记录中的工作空间 ID")
@click.option("--branch", "-b", default="", help="覆盖导出记录中的分支")
@click.option("--force", is_flag=True, help="同名工作空间已存在时先删除")
def ws_import(file: str, workspace_id: str, branch: str, force: bool) -> None:
    """按导出文件创建工作空间"""
    export = read_export(file)
    path = _svc().workspaces.import_workspace(
        export, workspace_id=workspace_id, branch=branch, force=force,
    )
    click.echo(f"工作空间已导入: {workspace_id or export.id} -> {path}")


@workspace_group.command(name="templates")
def ws_templates() -> None:
    """列出配置中的模板"""
    templates = _svc().config.templates
    if not templates:
        click.echo("没有配置模板。")
        return
    for name in sorted(templates):
        data = templates[name]
        repos = ", ".join(str(r) for r in data.get("repos") or [])
        desc = data.get("description") or ""
        click.echo(f"  {name:20s} {repos}  {desc}".rstrip())

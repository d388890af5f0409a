"""HookExecutor 单元测试"""

from __future__ import annotations

import pytest

from canopy.core.exceptions import HookFailed, HookTimeout, InvalidArgument, OperationTimeout
from canopy.core.hooks import HookExecutor
from canopy.core.models import Hook, HookContext, Repo
from canopy.utils.shell import CommandResult


class _RecordingExecutor:
    def __init__(self, rc: int = 0, raise_timeout: bool = False) -> None:
        self.rc = rc
        self.raise_timeout = raise_timeout
        self.calls: list[dict] = []

    def execute(self, cmd, *, cwd=".", env=None, timeout=None, cancel=None) -> CommandResult:
        self.calls.append({"cmd": cmd, "cwd": cwd, "env": env, "timeout": timeout})
        if self.raise_timeout:
            raise OperationTimeout("命令超时")
        return CommandResult(returncode=self.rc, stderr="bad" if self.rc else "")


@pytest.fixture()
def ctx() -> HookContext:
    return HookContext(
        workspace_id="PROJ-1",
        workspace_path="/ws/PROJ-1",
        branch="PROJ-1",
        repos=[Repo("api", "u1"), Repo("web", "u2")],
    )


class TestRender:
    def test_placeholders(self, ctx: HookContext) -> None:
        hook = Hook(command="echo {workspace_id} {branch} {unknown}")
        assert HookExecutor().render(hook, ctx) == "echo PROJ-1 PROJ-1 {unknown}"

    def test_empty_command(self, ctx: HookContext) -> None:
        with pytest.raises(InvalidArgument):
            HookExecutor().render(Hook(command="  "), ctx)

    def test_preview_per_repo(self, ctx: HookContext) -> None:
        hooks = [Hook(command="make -C {repo_path}", repos=["web"]), Hook(command="ls")]
        assert HookExecutor().preview(hooks, ctx) == ["[web] make -C /ws/PROJ-1/web", "ls"]


class TestRun:
    def test_runs_in_workspace_with_env(self, ctx: HookContext) -> None:
        ex = _RecordingExecutor()
        HookExecutor(ex).run([Hook(command="echo hi", shell="bash", timeout=5)], ctx)
        call = ex.calls[0]
        assert call["cmd"] == ["bash", "-c", "echo hi"]
        assert call["cwd"] == "/ws/PROJ-1"
        assert call["timeout"] == 5
        assert call["env"]["CANOPY_WORKSPACE_ID"] == "PROJ-1"
        assert call["env"]["CANOPY_REPO_NAME"] == ""

    def test_repo_filter(self, ctx: HookContext) -> None:
        ex = _RecordingExecutor()
        HookExecutor(ex).run([Hook(command="npm i", repos=["api", "web"])], ctx)
        assert [c["cwd"] for c in ex.calls] == ["/ws/PROJ-1/api", "/ws/PROJ-1/web"]
        assert ex.calls[1]["env"]["CANOPY_REPO_PATH"] == "/ws/PROJ-1/web"

    def test_nonzero_raises(self, ctx: HookContext) -> None:
        with pytest.raises(HookFailed, match="退出码 2"):
            HookExecutor(_RecordingExecutor(rc=2)).run([Hook(command="false")], ctx)

    def test_timeout_raises(self, ctx: HookContext) -> None:
        with pytest.raises(HookTimeout):
            HookExecutor(_RecordingExecutor(raise_timeout=True)).run([Hook(command="sleep 9")], ctx)

    def test_continue_on_error_from_hook(self, ctx: HookContext) -> None:
        ex = _RecordingExecutor(rc=1)
        hooks = [Hook(command="a", continue_on_error=True), Hook(command="b", continue_on_error=True)]
        HookExecutor(ex).run(hooks, ctx)
        assert len(ex.calls) == 2

    def test_continue_on_error_from_caller(self, ctx: HookContext) -> None:
        ex = _RecordingExecutor(rc=1)
        HookExecutor(ex).run([Hook(command="a"), Hook(command="b")], ctx, continue_on_error=True)
        assert len(ex.calls) == 2

    def test_stops_at_first_failure(self, ctx: HookContext) -> None:
        ex = _RecordingExecutor(rc=1)
        with pytest.raises(HookFailed):
            HookExecutor(ex).run([Hook(command="a"), Hook(command="b")], ctx)
        assert len(ex.calls) == 1

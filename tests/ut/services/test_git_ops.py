"""跨仓库 git 操作单元测试"""

from __future__ import annotations

import pytest

from canopy.core.exceptions import (
    CommandFailed,
    GitOperationFailed,
    OperationTimeout,
    WorkspaceLocked,
)
from canopy.core.models import RepoGitStatus

REPOS = [
    "https://example.com/org/x.git",
    "https://example.com/org/y.git",
    "https://example.com/org/z.git",
]


@pytest.fixture()
def workspace(service) -> str:
    service.create("PROJ-1", REPOS)
    return "PROJ-1"


class TestRunGit:
    def test_results_in_order(self, service, workspace) -> None:
        batch = service.run_git(workspace, ["status", "-s"])
        assert batch.ok
        assert [r.repo for r in batch.results] == ["x", "y", "z"]
        assert batch.results[0].stdout == "x: status -s\n"

    def test_sequential_fail_fast(self, service, fake_git, workspace) -> None:
        fake_git.command_rc["x"] = 1
        batch = service.run_git(workspace, ["pull"], parallel=False)
        assert not batch.ok
        assert isinstance(batch.error, CommandFailed)
        assert batch.results[0].exit_code == 1
        assert fake_git.ops("run_command") == ["x"]
        assert len(batch.results) == 1

    def test_continue_on_error(self, service, fake_git, workspace) -> None:
        fake_git.command_rc["y"] = 128
        batch = service.run_git(workspace, ["pull"], continue_on_error=True)
        assert batch.error is None
        assert not batch.ok
        assert [r.repo for r in batch.failures] == ["y"]
        assert sorted(fake_git.ops("run_command")) == ["x", "y", "z"]

    def test_does_not_take_lock(self, service, runtime, workspace) -> None:
        h = runtime.locks.acquire(workspace)
        try:
            assert service.run_git(workspace, ["log"]).ok
        finally:
            runtime.locks.release(h)


class TestSwitchBranch:
    def test_switch(self, service, runtime, fake_git, workspace) -> None:
        service.switch_branch(workspace, "release/1.0", create=True)
        assert runtime.load(workspace)[0].branch_name == "release/1.0"
        assert sorted(fake_git.ops("checkout")) == ["x", "y", "z"]

    def test_failure_keeps_metadata(self, service, runtime, fake_git, workspace) -> None:
        fake_git.failures[("checkout", "y")] = GitOperationFailed("pathspec 不存在")
        with pytest.raises(GitOperationFailed) as exc:
            service.switch_branch(workspace, "missing")
        assert exc.value.context["repo"] == "y"
        assert runtime.load(workspace)[0].branch_name == workspace

    def test_failure_restores_switched_repos(self, service, runtime, fake_git, workspace) -> None:
        """y 切换失败，已切到新分支的 x、z 切回原分支"""
        fake_git.failures[("checkout", "y")] = GitOperationFailed("pathspec 不存在")
        with pytest.raises(GitOperationFailed):
            service.switch_branch(workspace, "release/1.0")
        ws, _ = runtime.load(workspace)
        branches = {
            name: fake_git.worktrees[runtime.worktree_path(ws, name)]["branch"]
            for name in ("x", "y", "z")
        }
        assert branches == {"x": workspace, "y": workspace, "z": workspace}
        assert runtime.load(workspace)[0].branch_name == workspace

    def test_single_worker_failure_restores_earlier_repos(
        self, service, runtime, fake_git, workspace, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(runtime.executor, "workers", 1)
        fake_git.failures[("checkout", "z")] = GitOperationFailed("pathspec 不存在")
        with pytest.raises(GitOperationFailed):
            service.switch_branch(workspace, "release/1.0")
        ws, _ = runtime.load(workspace)
        assert fake_git.worktrees[runtime.worktree_path(ws, "x")]["branch"] == workspace
        assert fake_git.worktrees[runtime.worktree_path(ws, "y")]["branch"] == workspace
        assert fake_git.ops("checkout") == ["x", "y", "z", "x", "y"]

    def test_restore_failure_recorded(
        self, service, runtime, fake_git, workspace, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setattr(runtime.executor, "workers", 1)
        original = fake_git.checkout

        def checkout(path: str, branch: str, *, create: bool = False) -> None:
            if branch == workspace and path.endswith("x"):
                raise GitOperationFailed("本地修改会被覆盖")
            original(path, branch, create=create)

        monkeypatch.setattr(fake_git, "checkout", checkout)
        fake_git.failures[("checkout", "z")] = GitOperationFailed("pathspec 不存在")
        with pytest.raises(GitOperationFailed) as exc:
            service.switch_branch(workspace, "release/1.0")
        assert exc.value.context["rollback_failures"] == "x"
        assert exc.value.context["repo"] == "z"
        ws, _ = runtime.load(workspace)
        assert ws.branch_name == workspace
        assert fake_git.worktrees[runtime.worktree_path(ws, "y")]["branch"] == workspace

    def test_locked(self, service, runtime, workspace) -> None:
        h = runtime.locks.acquire(workspace)
        try:
            with pytest.raises(WorkspaceLocked):
                service.switch_branch(workspace, "other")
        finally:
            runtime.locks.release(h)


class TestSync:
    def test_statuses(self, service, fake_git, workspace) -> None:
        fake_git.statuses["x"] = RepoGitStatus(behind=2)
        fake_git.statuses["y"] = RepoGitStatus(behind=0)
        fake_git.statuses["z"] = RepoGitStatus(behind=1)
        fake_git.failures[("pull", "z")] = GitOperationFailed(
            "git pull 失败 (rc=128): fatal: Not possible to fast-forward, aborting.",
        )
        results = service.sync(workspace)
        assert [(r.repo, r.status, r.updated) for r in results] == [
            ("x", "updated", 2),
            ("y", "up-to-date", 0),
            ("z", "conflict", 0),
        ]
        assert "fast-forward" in results[2].error

    def test_timeout_and_error(self, service, fake_git, workspace) -> None:
        fake_git.failures[("fetch", "x")] = OperationTimeout("git fetch 超时")
        fake_git.failures[("fetch", "y")] = GitOperationFailed(
            "Could not resolve host", kind="network",
        )
        results = service.sync(workspace)
        assert [r.status for r in results] == ["timeout", "error", "up-to-date"]


class TestPush:
    def test_push_all(self, service, fake_git, workspace) -> None:
        batch = service.push(workspace)
        assert batch.ok
        assert sorted(fake_git.ops("push")) == ["x", "y", "z"]

    def test_partial_failure(self, service, fake_git, workspace) -> None:
        fake_git.failures[("push", "x")] = GitOperationFailed("rejected")
        batch = service.push(workspace)
        assert not batch.ok
        assert [r.repo for r in batch.failures] == ["x"]
        assert sorted(fake_git.ops("push")) == ["x", "y", "z"]

"""工作空间查询单元测试"""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from canopy.core.exceptions import GitOperationFailed, OperationTimeout, WorkspaceNotFound
from canopy.core.models import RepoGitStatus

REPO_X = "https://example.com/org/x.git"
REPO_Y = "https://example.com/org/y.git"
REPO_Z = "https://example.com/org/z.git"


class TestGetStatus:
    def test_status(self, service, fake_git) -> None:
        service.create("PROJ-1", [REPO_X, REPO_Y])
        fake_git.statuses["y"] = RepoGitStatus(dirty=True, unpushed=1, branch="PROJ-1")
        st = service.get_status("PROJ-1")
        assert st.id == "PROJ-1"
        assert st.locked is False
        assert [r.name for r in st.repos] == ["x", "y"]
        assert st.repos[0].branch == "PROJ-1"
        assert st.repos[1].dirty and st.repos[1].unpushed == 1

    def test_per_repo_errors(self, service, fake_git) -> None:
        path = Path(service.create("PROJ-1", [REPO_X, REPO_Y, REPO_Z]))
        fake_git.failures[("status", "x")] = OperationTimeout("git status 超时")
        fake_git.failures[("status", "y")] = GitOperationFailed("not a git repository")
        shutil.rmtree(path / "z")
        st = service.get_status("PROJ-1")
        assert [r.error for r in st.repos] == [
            "timeout", "not a git repository", "worktree 不存在",
        ]

    def test_locked_flag(self, service, runtime) -> None:
        service.create("PROJ-1", [REPO_X])
        h = runtime.locks.acquire("PROJ-1")
        try:
            assert service.get_status("PROJ-1").locked is True
        finally:
            runtime.locks.release(h)

    def test_missing(self, service) -> None:
        with pytest.raises(WorkspaceNotFound):
            service.get_status("nope")


class TestListing:
    def test_list(self, service) -> None:
        service.create("A", [REPO_X])
        service.create("B", [REPO_X, REPO_Y])
        items = sorted(service.list_workspaces(), key=lambda w: w.id)
        assert [(w.id, len(w.repos)) for w in items] == [("A", 1), ("B", 2)]
        assert all(w.disk_usage == 0 for w in items)

    def test_list_with_usage(self, service) -> None:
        service.create("A", [REPO_X])
        (ws,) = service.list_workspaces(with_usage=True)
        assert ws.disk_usage > 0
        assert ws.last_modified is not None

    def test_list_locked(self, service, runtime) -> None:
        service.create("A", [REPO_X])
        h = runtime.locks.acquire("A")
        try:
            assert service.list_workspaces()[0].locked is True
        finally:
            runtime.locks.release(h)

    def test_list_closed(self, service) -> None:
        service.create("A", [REPO_X])
        service.close("A", keep=True)
        assert service.list_workspaces() == []
        assert [e.workspace.id for e in service.list_closed()] == ["A"]

    def test_workspace_path(self, service, config) -> None:
        service.create("A", [REPO_X])
        assert service.workspace_path("A") == str(Path(config.workspaces_root) / "A")

    def test_workspace_path_missing(self, service) -> None:
        with pytest.raises(WorkspaceNotFound):
            service.workspace_path("A")

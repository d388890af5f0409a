"""canonical 仓库管理单元测试"""

from __future__ import annotations

import pytest

from canopy.core.exceptions import (
    GitOperationFailed,
    RepoAlreadyExists,
    RepoInUse,
    RepoNotFound,
)

URL = "https://example.com/org/api.git"


class TestAddCanonical:
    def test_add_url(self, service, runtime, fake_git) -> None:
        assert service.add_canonical(URL) == "api"
        assert service.list_canonical() == ["api"]
        assert runtime.registry.resolve("api") == URL

    def test_add_with_alias(self, service, runtime) -> None:
        assert service.add_canonical(URL, "backend") == "backend"
        assert runtime.registry.resolve("backend") == URL

    def test_add_shorthand(self, service, fake_git) -> None:
        assert service.add_canonical("org/web") == "web"
        assert fake_git.canonical["web"] == "https://github.com/org/web.git"

    def test_clone_failure_registers_nothing(self, service, runtime, fake_git) -> None:
        fake_git.failures[("clone", "api")] = GitOperationFailed("auth", kind="auth")
        with pytest.raises(GitOperationFailed):
            service.add_canonical(URL)
        assert runtime.registry.resolve("api") is None

    def test_alias_conflict_removes_clone(self, service, runtime, fake_git) -> None:
        runtime.registry.register("api", "https://example.com/other/api.git")
        with pytest.raises(RepoAlreadyExists):
            service.add_canonical(URL)
        assert service.list_canonical() == []
        assert fake_git.ops("remove_canonical") == ["api"]
        assert runtime.registry.resolve("api") == "https://example.com/other/api.git"


class TestRemoveCanonical:
    def test_remove(self, service, runtime) -> None:
        service.add_canonical(URL)
        service.remove_canonical("api")
        assert service.list_canonical() == []
        assert runtime.registry.resolve("api") is None

    def test_missing(self, service) -> None:
        with pytest.raises(RepoNotFound):
            service.remove_canonical("api")

    def test_in_use(self, service) -> None:
        service.create("PROJ-1", [URL])
        service.create("PROJ-2", [URL])
        assert sorted(service.workspaces_using_repo("api")) == ["PROJ-1", "PROJ-2"]
        with pytest.raises(RepoInUse) as exc:
            service.remove_canonical("api")
        assert sorted(exc.value.context["workspaces"]) == ["PROJ-1", "PROJ-2"]
        assert service.list_canonical() == ["api"]

    def test_force(self, service) -> None:
        service.create("PROJ-1", [URL])
        service.remove_canonical("api", force=True)
        assert service.list_canonical() == []


class TestSyncCanonical:
    def test_sync(self, service, fake_git) -> None:
        service.add_canonical(URL)
        service.sync_canonical("api")
        assert fake_git.ops("fetch") == ["api"]

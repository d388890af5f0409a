"""仓库引用解析与别名注册表单元测试"""

from __future__ import annotations

from pathlib import Path

import pytest

from canopy.core.exceptions import InvalidArgument, RepoAlreadyExists, RepoNotFound
from canopy.core.models import Repo
from canopy.services.repo.registry import RepoRegistry
from canopy.services.repo.resolver import RepoResolver, is_url, repo_name_from_url


@pytest.fixture()
def registry(tmp_path: Path) -> RepoRegistry:
    return RepoRegistry(str(tmp_path / "repos.yml"))


class TestUrlHelpers:
    @pytest.mark.parametrize("ref", [
        "https://github.com/org/api.git",
        "ssh://git@host/org/api.git",
        "git@github.com:org/api.git",
        "file:///srv/git/api.git",
        "/srv/git/api",
    ])
    def test_is_url(self, ref: str) -> None:
        assert is_url(ref)

    def test_not_url(self) -> None:
        assert not is_url("org/api")
        assert not is_url("api")

    @pytest.mark.parametrize("url,name", [
        ("https://github.com/org/api.git", "api"),
        ("git@github.com:org/web", "web"),
        ("https://e.com/org/tool/", "tool"),
    ])
    def test_repo_name(self, url: str, name: str) -> None:
        assert repo_name_from_url(url) == name


class TestRegistry:
    def test_register_resolve_persist(self, tmp_path: Path, registry: RepoRegistry) -> None:
        registry.register("api", "https://e.com/api.git")
        assert registry.resolve("api") == "https://e.com/api.git"
        reloaded = RepoRegistry(str(tmp_path / "repos.yml"))
        assert reloaded.aliases() == {"api": "https://e.com/api.git"}

    def test_conflict_requires_force(self, registry: RepoRegistry) -> None:
        registry.register("api", "https://e.com/api.git")
        with pytest.raises(RepoAlreadyExists):
            registry.register("api", "https://other.com/api.git")
        registry.register("api", "https://other.com/api.git", force=True)
        assert registry.resolve("api") == "https://other.com/api.git"

    def test_unregister(self, registry: RepoRegistry) -> None:
        registry.register("api", "https://e.com/api.git")
        assert registry.unregister("api") is True
        assert registry.unregister("api") is False
        assert registry.resolve("api") is None

    def test_register_requires_both(self, registry: RepoRegistry) -> None:
        with pytest.raises(InvalidArgument):
            registry.register("", "https://e.com/api.git")


class TestResolver:
    def test_url(self) -> None:
        assert RepoResolver().resolve_one("https://e.com/org/api.git") == Repo(
            "api", "https://e.com/org/api.git",
        )

    def test_alias(self, registry: RepoRegistry) -> None:
        registry.register("api", "https://e.com/api.git")
        assert RepoResolver(registry).resolve_one("api") == Repo("api", "https://e.com/api.git")

    def test_github_shorthand(self) -> None:
        assert RepoResolver().resolve_one("org/web") == Repo(
            "web", "https://github.com/org/web.git",
        )

    def test_unresolvable(self) -> None:
        with pytest.raises(RepoNotFound):
            RepoResolver().resolve_one("just-a-name")

    def test_duplicates_rejected(self) -> None:
        with pytest.raises(InvalidArgument, match="重复"):
            RepoResolver().resolve(["org/api", "https://e.com/api.git"])

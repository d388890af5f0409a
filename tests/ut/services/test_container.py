"""ServiceContainer 单元测试"""

from __future__ import annotations

from pathlib import Path

import pytest

import canopy.core.config as cfgmod
from canopy.services.container import (
    ServiceContainer,
    get_container,
    reset_container,
)


@pytest.fixture(autouse=True)
def _setup_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """确保测试有独立的配置和数据目录"""
    cfg = cfgmod.Config(
        workspaces_root=str(tmp_path / "workspaces"),
        closed_root=str(tmp_path / "closed"),
        projects_root=str(tmp_path / "projects"),
        locks_dir=str(tmp_path / "locks"),
        registry_file=str(tmp_path / "repos.yml"),
        parallel_workers=6,
    )
    monkeypatch.setattr(cfgmod, "_current", cfg)
    reset_container()
    yield
    reset_container()


class TestServiceContainer:
    def test_lazy_loading(self) -> None:
        c = ServiceContainer()
        assert len(c._instances) == 0
        _ = c.cache
        assert list(c._instances) == ["cache"]

    def test_shared_instances(self) -> None:
        c = ServiceContainer()
        assert c.locks is c.locks
        assert c.workspaces is c.workspaces

    def test_runtime_shares_state(self) -> None:
        c = ServiceContainer()
        rt = c.workspaces.runtime
        assert rt is c.runtime
        assert rt.cache is c.cache
        assert rt.usage is c.usage
        assert rt.locks is c.locks
        assert rt.git is c.git
        assert c.resolver._registry is c.registry

    def test_config_applied(self, tmp_path: Path) -> None:
        c = ServiceContainer()
        assert c.executor.workers == 6
        assert c.locks.locks_dir == tmp_path / "locks"
        assert c.git.projects_root == tmp_path / "projects"

    def test_explicit_config(self, tmp_path: Path) -> None:
        cfg = cfgmod.Config(workspaces_root=str(tmp_path / "other"))
        c = ServiceContainer(cfg)
        assert c.config is cfg
        assert c.storage.workspaces_root == tmp_path / "other"


class TestGetContainer:
    def test_singleton(self) -> None:
        c1 = get_container()
        c2 = get_container()
        assert c1 is c2

    def test_reset(self) -> None:
        c1 = get_container()
        reset_container()
        c2 = get_container()
        assert c1 is not c2

"""WorkspaceCache 单元测试"""

from __future__ import annotations

import threading

from canopy.core.cache import WorkspaceCache
from canopy.core.models import Repo, Workspace


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Loader:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.data: dict[str, Workspace] = {}

    def __call__(self, workspace_id: str):
        self.calls.append(workspace_id)
        ws = self.data.get(workspace_id)
        return (ws, workspace_id) if ws is not None else None


def _ws(wid: str = "PROJ-1", branch: str = "main") -> Workspace:
    return Workspace(id=wid, branch_name=branch, repos=[Repo("x", "u")])


class TestWorkspaceCache:
    def test_miss_loads_once_then_hits(self) -> None:
        loader = _Loader()
        loader.data["PROJ-1"] = _ws()
        cache = WorkspaceCache(30, loader=loader)
        assert cache.get("PROJ-1")[0].id == "PROJ-1"
        assert cache.get("PROJ-1")[0].id == "PROJ-1"
        assert loader.calls == ["PROJ-1"]

    def test_invalidate_forces_exactly_one_lookup(self) -> None:
        loader = _Loader()
        loader.data["PROJ-1"] = _ws()
        cache = WorkspaceCache(30, loader=loader)
        cache.get("PROJ-1")
        cache.invalidate("PROJ-1")
        loader.data["PROJ-1"] = _ws(branch="feature")
        assert cache.get("PROJ-1")[0].branch_name == "feature"
        cache.get("PROJ-1")
        assert loader.calls == ["PROJ-1", "PROJ-1"]

    def test_ttl_expiry(self) -> None:
        clock = _Clock()
        loader = _Loader()
        loader.data["PROJ-1"] = _ws()
        cache = WorkspaceCache(30, loader=loader, clock=clock)
        cache.get("PROJ-1")
        clock.now = 29
        assert cache.peek("PROJ-1") is not None
        clock.now = 31
        assert cache.peek("PROJ-1") is None
        assert cache.size() == 0

    def test_missing_not_cached(self) -> None:
        loader = _Loader()
        cache = WorkspaceCache(30, loader=loader)
        assert cache.get("nope") is None
        assert cache.get("nope") is None
        assert loader.calls == ["nope", "nope"]

    def test_returns_copies(self) -> None:
        cache = WorkspaceCache(30)
        ws = _ws()
        cache.set("PROJ-1", ws, "PROJ-1")
        ws.branch_name = "mutated"
        got, _ = cache.get("PROJ-1")
        got.repos.append(Repo("y", "v"))
        again, _ = cache.get("PROJ-1")
        assert again.branch_name == "main"
        assert len(again.repos) == 1

    def test_invalidate_all(self) -> None:
        cache = WorkspaceCache(30)
        cache.set("A", _ws("A"), "A")
        cache.set("B", _ws("B"), "B")
        cache.invalidate_all()
        assert cache.size() == 0

    def test_invalidate_during_load_discards_result(self) -> None:
        """回源期间发生失效，回源结果不得写入缓存"""
        cache = WorkspaceCache(30)
        stale = _ws(branch="old")

        def loader(workspace_id: str):
            cache.invalidate(workspace_id)
            return stale, workspace_id

        cache.set_loader(loader)
        got, _ = cache.get("PROJ-1")
        assert got.branch_name == "old"
        assert cache.peek("PROJ-1") is None

    def test_concurrent_access(self) -> None:
        loader = _Loader()
        for i in range(10):
            loader.data[f"W{i}"] = _ws(f"W{i}")
        cache = WorkspaceCache(30, loader=loader)
        errors: list[Exception] = []

        def worker(n: int) -> None:
            try:
                for i in range(50):
                    wid = f"W{(n + i) % 10}"
                    if i % 7 == 0:
                        cache.invalidate(wid)
                    hit = cache.get(wid)
                    assert hit is not None and hit[0].id == wid
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

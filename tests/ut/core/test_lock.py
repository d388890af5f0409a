"""LockManager 单元测试"""

from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from canopy.core.exceptions import InvalidArgument, WorkspaceLocked
from canopy.core.lock import LockManager


@pytest.fixture()
def locks(tmp_path: Path) -> LockManager:
    return LockManager(str(tmp_path / "locks"), timeout=0.2, stale_threshold=300, heartbeat=False)


class TestAcquireRelease:
    def test_acquire_creates_file(self, locks: LockManager) -> None:
        h = locks.acquire("PROJ-1")
        assert h.path.exists()
        assert locks.is_locked("PROJ-1")
        assert locks.held_ids() == ["PROJ-1"]
        locks.release(h)
        assert not h.path.exists()
        assert not locks.is_locked("PROJ-1")
        assert locks.held_ids() == []

    def test_release_idempotent(self, locks: LockManager) -> None:
        h = locks.acquire("PROJ-1")
        locks.release(h)
        locks.release(h)

    def test_release_after_file_removed(self, locks: LockManager) -> None:
        h = locks.acquire("PROJ-1")
        h.path.unlink()
        locks.release(h)

    def test_second_acquire_times_out(self, locks: LockManager) -> None:
        """已持锁时第二个获取方在超时后得到 WorkspaceLocked"""
        h = locks.acquire("PROJ-1")
        start = time.monotonic()
        with pytest.raises(WorkspaceLocked):
            locks.acquire("PROJ-1", timeout=0.2)
        assert time.monotonic() - start >= 0.2
        locks.release(h)

    def test_independent_ids(self, locks: LockManager) -> None:
        a = locks.acquire("A")
        b = locks.acquire("B")
        locks.release(a)
        locks.release(b)

    def test_hold_releases_on_error(self, locks: LockManager) -> None:
        with pytest.raises(RuntimeError):
            with locks.hold("PROJ-1"):
                raise RuntimeError("boom")
        assert not locks.is_locked("PROJ-1")

    def test_empty_id_rejected(self, locks: LockManager) -> None:
        with pytest.raises(InvalidArgument):
            locks.lock_path("")

    def test_unsafe_chars_sanitized(self, locks: LockManager) -> None:
        assert locks.lock_path("a/b").name == "a_b.lock"


class TestMutualExclusion:
    def test_waiter_gets_lock_after_release(self, tmp_path: Path) -> None:
        """持有 200ms 后释放，等待方在释放之后才拿到锁"""
        locks = LockManager(str(tmp_path / "locks"), timeout=2.0, heartbeat=False)
        h = locks.acquire("PROJ-1")
        released_at: list[float] = []
        acquired_at: list[float] = []

        def waiter() -> None:
            with locks.hold("PROJ-1"):
                acquired_at.append(time.monotonic())

        t = threading.Thread(target=waiter)
        t.start()
        time.sleep(0.2)
        released_at.append(time.monotonic())
        locks.release(h)
        t.join(timeout=5)
        assert acquired_at and acquired_at[0] >= released_at[0]

    def test_concurrent_acquirers_exclusive(self, tmp_path: Path) -> None:
        locks = LockManager(str(tmp_path / "locks"), timeout=5.0, heartbeat=False)
        inside = 0
        overlap: list[int] = []
        guard = threading.Lock()

        def worker() -> None:
            nonlocal inside
            with locks.hold("PROJ-1"):
                with guard:
                    inside += 1
                    overlap.append(inside)
                time.sleep(0.02)
                with guard:
                    inside -= 1

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert overlap and max(overlap) == 1


class TestStale:
    def test_stale_lock_reclaimed(self, tmp_path: Path) -> None:
        locks = LockManager(str(tmp_path / "locks"), timeout=0.5, stale_threshold=60, heartbeat=False)
        path = locks.lock_path("PROJ-1")
        path.parent.mkdir(parents=True)
        path.write_text("")
        old = time.time() - 3600
        os.utime(path, (old, old))
        assert not locks.is_locked("PROJ-1")

        h = locks.acquire("PROJ-1")
        assert locks.is_locked("PROJ-1")
        locks.release(h)

    def test_fresh_lock_not_reclaimed(self, tmp_path: Path) -> None:
        locks = LockManager(str(tmp_path / "locks"), timeout=0.2, stale_threshold=60, heartbeat=False)
        path = locks.lock_path("PROJ-1")
        path.parent.mkdir(parents=True)
        path.write_text("")
        with pytest.raises(WorkspaceLocked):
            locks.acquire("PROJ-1")
        assert path.exists()

    def test_heartbeat_refreshes_mtime(self, tmp_path: Path) -> None:
        locks = LockManager(str(tmp_path / "locks"), stale_threshold=0.2, heartbeat=True)
        h = locks.acquire("PROJ-1")
        old = time.time() - 3600
        os.utime(h.path, (old, old))
        time.sleep(0.3)
        assert time.time() - h.path.stat().st_mtime < 0.3
        locks.release(h)

    def test_invalid_threshold(self, tmp_path: Path) -> None:
        with pytest.raises(InvalidArgument):
            LockManager(str(tmp_path), stale_threshold=0)


class _PausingLockManager(LockManager):
    """第一次判定锁过期后停住，直到 resume 被置位"""

    def __init__(self, *args, judged: threading.Event, resume: threading.Event, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._judged = judged
        self._resume = resume
        self._paused = False

    def _age(self, path: Path) -> float | None:
        age = super()._age(path)
        if not self._paused and age is not None and age > self.stale_threshold:
            self._paused = True
            self._judged.set()
            self._resume.wait(5)
        return age


class TestReclaimRace:
    def _stale_lock(self, locks: LockManager) -> Path:
        path = locks.lock_path("PROJ-1")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("")
        old = time.time() - 3600
        os.utime(path, (old, old))
        return path

    def test_late_reclaimer_keeps_fresh_lock(self, tmp_path: Path) -> None:
        """B 判定过期后被 A 抢先回收并重建，B 不能删掉 A 的新锁"""
        judged = threading.Event()
        resume = threading.Event()
        a = LockManager(str(tmp_path / "locks"), timeout=1.0, stale_threshold=60, heartbeat=False)
        b = _PausingLockManager(
            str(tmp_path / "locks"), timeout=0.3, stale_threshold=60, heartbeat=False,
            judged=judged, resume=resume,
        )
        path = self._stale_lock(a)
        outcome: list[object] = []

        def late() -> None:
            try:
                outcome.append(b.acquire("PROJ-1"))
            except WorkspaceLocked as e:
                outcome.append(e)

        t = threading.Thread(target=late)
        t.start()
        assert judged.wait(5)

        h = a.acquire("PROJ-1")
        resume.set()
        t.join(timeout=5)

        assert len(outcome) == 1 and isinstance(outcome[0], WorkspaceLocked)
        assert path.exists()
        assert a.is_locked("PROJ-1")
        assert a.held_ids() == ["PROJ-1"] and b.held_ids() == []
        a.release(h)

    def test_concurrent_reclaimers_single_holder(self, tmp_path: Path) -> None:
        """多个管理器同时回收同一把过期锁，同一时刻只有一个持有者"""
        managers = [
            LockManager(str(tmp_path / "locks"), timeout=3.0, stale_threshold=60, heartbeat=False)
            for _ in range(4)
        ]
        self._stale_lock(managers[0])
        inside = 0
        overlap: list[int] = []
        guard = threading.Lock()
        start = threading.Barrier(len(managers))

        def worker(locks: LockManager) -> None:
            nonlocal inside
            start.wait()
            with locks.hold("PROJ-1"):
                with guard:
                    inside += 1
                    overlap.append(inside)
                time.sleep(0.05)
                with guard:
                    inside -= 1

        threads = [threading.Thread(target=worker, args=(m,)) for m in managers]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert len(overlap) == len(managers)
        assert max(overlap) == 1

"""工作空间锁管理器

每个工作空间 ID 对应一个锁文件 `<locks_dir>/<id>.lock`：
- 创建锁文件由 filelock.SoftFileLock 完成（O_CREAT | O_EXCL），同一时刻只有一方能创建成功
- 锁文件 mtime 即"最后确认存活时间"，超过 stale_threshold 视为持有者已崩溃，可回收
- 回收在 `<id>.lock.reclaim` 上的 filelock.FileLock（OS 级锁，进程崩溃自动释放）内进行，
  持有回收锁后重新检查年龄再删除；判定过期之后、删除之前已被他方回收并重建的新锁不会被误删
- 持锁期间后台线程每 stale_threshold/2 刷新一次 mtime，长耗时操作不会被误判为过期

进程内的持锁表同样受 threading.Lock 保护，同一进程内的并发调用不会重复持锁。
只读操作（list / status / path）不加锁。
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from filelock import FileLock, SoftFileLock, Timeout

from canopy.core.exceptions import InvalidArgument, IOFailed, WorkspaceLocked

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"
RECLAIM_SUFFIX = ".reclaim"

# 锁被占用时的轮询间隔（秒）
POLL_INTERVAL = 0.1

_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")


@dataclass
class LockHandle:
    """已持有的锁，交给 release() 释放"""

    workspace_id: str
    path: Path
    acquired_at: float
    _file_lock: SoftFileLock = field(repr=False)
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _heartbeat: threading.Thread | None = field(default=None, repr=False)
    released: bool = False


class LockManager:
    """基于锁文件的工作空间咨询锁"""

    def __init__(
        self,
        locks_dir: str,
        *,
        timeout: float = 30.0,
        stale_threshold: float = 300.0,
        heartbeat: bool = True,
    ) -> None:
        if stale_threshold <= 0:
            raise InvalidArgument(f"stale_threshold 必须 > 0: {stale_threshold}")
        self.locks_dir = Path(locks_dir)
        self.timeout = timeout
        self.stale_threshold = stale_threshold
        self._heartbeat_enabled = heartbeat
        self._mutex = threading.Lock()
        self._held: dict[str, LockHandle] = {}

    def lock_path(self, workspace_id: str) -> Path:
        if not workspace_id:
            raise InvalidArgument("工作空间 ID 不能为空")
        safe = _UNSAFE_CHARS_RE.sub("_", workspace_id)
        return self.locks_dir / f"{safe}{LOCK_SUFFIX}"

    # ---- 查询 ----

    def _age(self, path: Path) -> float | None:
        """锁文件年龄（秒），不存在返回 None"""
        try:
            return time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return None

    def is_locked(self, workspace_id: str) -> bool:
        """是否存在未过期的锁"""
        age = self._age(self.lock_path(workspace_id))
        return age is not None and age <= self.stale_threshold

    # ---- 获取 / 释放 ----

    def acquire(self, workspace_id: str, timeout: float | None = None) -> LockHandle:
        """获取锁，超时抛 WorkspaceLocked"""
        path = self.lock_path(workspace_id)
        try:
            self.locks_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailed("无法创建锁目录", cause=e, path=str(self.locks_dir)) from e

        wait = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + wait

        while True:
            handle = self._try_create(workspace_id, path)
            if handle is not None:
                return handle

            age = self._age(path)
            if age is not None and age > self.stale_threshold:
                self._reclaim(workspace_id, path)
                continue

            if time.monotonic() >= deadline:
                raise WorkspaceLocked(workspace_id, timeout=wait)
            time.sleep(min(POLL_INTERVAL, max(0.0, deadline - time.monotonic())))

    def _try_create(self, workspace_id: str, path: Path) -> LockHandle | None:
        """一次原子创建尝试，锁文件已存在返回 None"""
        file_lock = SoftFileLock(str(path), timeout=0, thread_local=False)
        try:
            file_lock.acquire(timeout=0)
        except Timeout:
            return None
        except OSError as e:
            raise IOFailed("创建锁文件失败", cause=e, workspace_id=workspace_id) from e

        handle = LockHandle(
            workspace_id=workspace_id, path=path,
            acquired_at=time.time(), _file_lock=file_lock,
        )
        with self._mutex:
            self._held[workspace_id] = handle
        if self._heartbeat_enabled:
            handle._heartbeat = threading.Thread(
                target=self._beat, args=(handle,),
                name=f"lock-heartbeat-{workspace_id}", daemon=True,
            )
            handle._heartbeat.start()
        logger.info("已获取锁: %s", workspace_id, extra={"workspace_id": workspace_id})
        return handle

    def _reclaim(self, workspace_id: str, path: Path) -> None:
        """在回收锁内复查并删除过期锁文件

        回收锁被占用（他方正在回收）或复查时锁已不再过期，直接返回，由调用方重新尝试创建。
        """
        guard = FileLock(str(path) + RECLAIM_SUFFIX, thread_local=False)
        try:
            guard.acquire(timeout=POLL_INTERVAL)
        except Timeout:
            return
        except OSError as e:
            raise IOFailed("获取回收锁失败", cause=e, workspace_id=workspace_id) from e

        try:
            age = self._age(path)
            if age is None or age <= self.stale_threshold:
                logger.debug("锁已被他方回收: %s", workspace_id)
                return
            logger.warning(
                "回收过期锁: %s (已 %.0fs 未刷新)", workspace_id, age,
                extra={"workspace_id": workspace_id},
            )
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise IOFailed("删除过期锁失败", cause=e, workspace_id=workspace_id) from e
        finally:
            guard.release()

    def _beat(self, handle: LockHandle) -> None:
        interval = self.stale_threshold / 2
        while not handle._stop.wait(interval):
            try:
                os.utime(handle.path)
            except OSError as e:
                logger.warning("刷新锁时间失败: %s: %s", handle.workspace_id, e)
                return

    def release(self, handle: LockHandle) -> None:
        """释放锁（幂等，锁文件已不存在也视为成功）"""
        if handle.released:
            return
        handle.released = True
        handle._stop.set()
        if handle._heartbeat is not None:
            handle._heartbeat.join(timeout=1.0)

        with self._mutex:
            if self._held.get(handle.workspace_id) is handle:
                del self._held[handle.workspace_id]

        # SoftFileLock 释放时删除锁文件，文件已不存在不报错
        handle._file_lock.release(force=True)
        logger.info(
            "已释放锁: %s", handle.workspace_id, extra={"workspace_id": handle.workspace_id},
        )

    @contextmanager
    def hold(self, workspace_id: str, timeout: float | None = None) -> Iterator[LockHandle]:
        """with 语句持锁，成功、异常、取消都会释放"""
        handle = self.acquire(workspace_id, timeout)
        try:
            yield handle
        finally:
            self.release(handle)

    def held_ids(self) -> list[str]:
        """本进程当前持有的锁"""
        with self._mutex:
            return sorted(self._held)

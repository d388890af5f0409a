"""工作空间元数据缓存

职责：
- 以工作空间 ID 为键缓存 (Workspace 快照, 目录名, 写入时间)
- 超过 TTL 的条目不返回，读取时惰性删除
- 未命中时经 loader 回源存储（先按 ID 直查目录，失败再全量扫描），结果回填缓存

缓存只做读加速，存储才是事实来源：任何写操作完成前必须 invalidate 对应 ID，
下一次读取一定回源。读写都返回深拷贝，调用方修改快照不会污染缓存。
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from canopy.core.models import Workspace

logger = logging.getLogger(__name__)

# 回源函数：ID → (工作空间, 目录名)，不存在返回 None
Loader = Callable[[str], "tuple[Workspace, str] | None"]


@dataclass
class CacheEntry:
    workspace: Workspace
    dir_name: str
    stored_at: float


class WorkspaceCache:
    """带 TTL 的工作空间元数据缓存（线程安全）"""

    def __init__(
        self,
        ttl: float = 30.0,
        *,
        loader: Loader | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._loader = loader
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CacheEntry] = {}
        # 每次失效递增；回源期间发生失效则丢弃回源结果，避免旧数据覆盖新写入
        self._generations: dict[str, int] = {}
        self._epoch = 0

    def set_loader(self, loader: Loader) -> None:
        self._loader = loader

    def _fresh(self, workspace_id: str) -> CacheEntry | None:
        """调用方须持有 _lock"""
        entry = self._entries.get(workspace_id)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl:
            del self._entries[workspace_id]
            return None
        return entry

    def peek(self, workspace_id: str) -> tuple[Workspace, str] | None:
        """只查缓存，不回源"""
        with self._lock:
            entry = self._fresh(workspace_id)
            if entry is None:
                return None
            return copy.deepcopy(entry.workspace), entry.dir_name

    def get(self, workspace_id: str) -> tuple[Workspace, str] | None:
        """命中直接返回，未命中经 loader 回源并回填"""
        hit = self.peek(workspace_id)
        if hit is not None or self._loader is None:
            return hit

        with self._lock:
            stamp = (self._epoch, self._generations.get(workspace_id, 0))
        loaded = self._loader(workspace_id)
        if loaded is None:
            return None
        ws, dir_name = loaded
        with self._lock:
            if stamp == (self._epoch, self._generations.get(workspace_id, 0)):
                self._entries[workspace_id] = CacheEntry(
                    workspace=copy.deepcopy(ws), dir_name=dir_name, stored_at=self._clock(),
                )
        return copy.deepcopy(ws), dir_name

    def set(self, workspace_id: str, ws: Workspace, dir_name: str) -> None:
        with self._lock:
            self._entries[workspace_id] = CacheEntry(
                workspace=copy.deepcopy(ws), dir_name=dir_name, stored_at=self._clock(),
            )

    def invalidate(self, workspace_id: str) -> None:
        with self._lock:
            self._generations[workspace_id] = self._generations.get(workspace_id, 0) + 1
            if self._entries.pop(workspace_id, None) is not None:
                logger.debug("缓存失效: %s", workspace_id)

    def invalidate_all(self) -> None:
        with self._lock:
            self._epoch += 1
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

"""磁盘占用缓存

list / status 视图频繁轮询，对每个工作空间目录做递归扫描代价较高，
扫描结果 (字节数, 最新修改时间, 错误) 按根路径缓存，TTL 默认 1 分钟。

扫描跳过 .git 目录与符号链接（worktree 的 .git 指向 canonical 仓库，计入会重复统计）。
扫描出错时错误与零值一起缓存，故障期间重复调用不会每次都全量扫描。
"""

from __future__ import annotations

import logging
import os
import stat
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

SKIP_DIRS = frozenset({".git"})


@dataclass
class DiskUsage:
    """一次扫描的结果"""

    size: int = 0
    latest_mtime: datetime | None = None
    error: Exception | None = None
    scanned_at: float = 0.0


def calculate(root: str | Path) -> tuple[int, datetime | None]:
    """递归统计普通文件字节数与最新修改时间"""
    total = 0
    latest = 0.0
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        dirnames[:] = [
            d for d in dirnames
            if d not in SKIP_DIRS and not os.path.islink(os.path.join(dirpath, d))
        ]
        for name in filenames:
            st = os.lstat(os.path.join(dirpath, name))
            # lstat 下符号链接不是普通文件
            if not stat.S_ISREG(st.st_mode):
                continue
            total += st.st_size
            latest = max(latest, st.st_mtime)
    mtime = datetime.fromtimestamp(latest, tz=timezone.utc) if latest else None
    return total, mtime


def _walk_strict(root: str | Path) -> tuple[int, datetime | None]:
    """os.walk 默认吞掉 listdir 错误，这里先确认根目录可读"""
    p = Path(root)
    if not p.is_dir():
        raise FileNotFoundError(f"目录不存在: {p}")
    os.listdir(p)
    return calculate(p)


class DiskUsageCache:
    """按根路径缓存磁盘占用（线程安全）"""

    def __init__(
        self,
        ttl: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        scanner: Callable[[str | Path], tuple[int, datetime | None]] = _walk_strict,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._scanner = scanner
        self._lock = threading.Lock()
        self._entries: dict[str, DiskUsage] = {}

    def cached_usage(self, root: str | Path) -> DiskUsage:
        """命中直接返回；未命中扫描并缓存，扫描错误放在 DiskUsage.error 中"""
        key = str(root)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._clock() - entry.scanned_at <= self.ttl:
                return entry

        try:
            size, mtime = self._scanner(root)
            entry = DiskUsage(size=size, latest_mtime=mtime, scanned_at=self._clock())
        except OSError as e:
            logger.warning("磁盘占用统计失败: %s: %s", key, e)
            entry = DiskUsage(error=e, scanned_at=self._clock())

        with self._lock:
            self._entries[key] = entry
        return entry

    def invalidate(self, root: str | Path) -> None:
        with self._lock:
            self._entries.pop(str(root), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

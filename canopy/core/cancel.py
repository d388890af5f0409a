"""取消令牌 — 协作式取消与截止时间

基于 threading.Event 实现，贯穿编排入口 → 并行执行器 → 重试退避 → 子进程。
子令牌继承父令牌的取消状态和截止时间：父令牌取消时所有子令牌同时取消，
子令牌取消不影响父令牌（并行执行器 fail-fast 时只取消本批任务）。
父令牌以弱引用登记子令牌，长生命周期令牌反复派生也不会累积已丢弃的子令牌。
"""

from __future__ import annotations

import threading
import time
import weakref

from canopy.core.exceptions import OperationCancelled, OperationTimeout


class CancelToken:
    """可取消、可设截止时间的执行令牌"""

    def __init__(self, timeout: float | None = None, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[CancelToken] = weakref.WeakSet()
        self._parent = parent
        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    # ---- 状态 ----

    def cancel(self) -> None:
        """取消本令牌及全部子令牌"""
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    def remaining(self) -> float | None:
        """距截止时间的剩余秒数，无截止时间返回 None"""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def error(self, operation: str = "") -> OperationCancelled | OperationTimeout | None:
        """取消对应的异常实例，未取消返回 None"""
        if self._event.is_set():
            return OperationCancelled("操作已取消", operation=operation)
        if self.expired:
            return OperationTimeout("操作超时", operation=operation)
        return None

    def raise_if_cancelled(self, operation: str = "") -> None:
        """已取消则抛 OperationCancelled，超时则抛 OperationTimeout"""
        err = self.error(operation)
        if err is not None:
            raise err

    def wait(self, seconds: float) -> bool:
        """等待指定秒数，期间被取消立即返回 True"""
        if seconds <= 0:
            return self.cancelled
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            return True
        return self._event.wait(seconds) or self.expired

    # ---- 派生 ----

    def child(self, timeout: float | None = None) -> CancelToken:
        """派生子令牌，截止时间取自身与父令牌较早者"""
        token = CancelToken(timeout=timeout, parent=self)
        with self._lock:
            self._children.add(token)
        if self._event.is_set():
            token.cancel()
        return token

    def with_default_timeout(self, seconds: float) -> CancelToken:
        """调用方未给截止时间时套用默认超时，否则原样返回"""
        if self.deadline is not None:
            return self
        return self.child(timeout=seconds)


def ensure_token(cancel: CancelToken | None) -> CancelToken:
    """None → 永不取消的新令牌"""
    return cancel if cancel is not None else CancelToken()

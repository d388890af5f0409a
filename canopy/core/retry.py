"""重试策略 — 指数退避 + 抖动

职责：
- 区分瞬时错误（网络超时、连接拒绝、DNS 失败）与永久错误（认证、权限、不存在、非法输入）
- 瞬时错误按 initial * multiplier^(N-2) 退避重试，上限 max_delay，每次独立施加 ±jitter 抖动
- 每次发起前、退避等待中都检查取消令牌，退避中被取消立即返回取消错误

典型用法:
    policy = RetryPolicy(cfg.retry_config())
    policy.execute(lambda: git.clone(url, name), name="git clone")
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, TypeVar

from canopy.core.cancel import ensure_token
from canopy.core.exceptions import (
    CanopyError,
    GitOperationFailed,
    InvalidArgument,
    OperationCancelled,
    OperationTimeout,
)

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 永久错误关键字优先匹配
_PERMANENT_PATTERNS = (
    "authentication", "permission denied", "not found", "invalid",
    "401", "403", "404",
)

_TRANSIENT_PATTERNS = (
    "connection reset", "connection refused", "connection timed out",
    "network is unreachable", "no route to host", "temporary failure",
    "could not resolve host", "dns", "lookup", "i/o timeout", "timed out",
    "deadline exceeded", "eof", "broken pipe", "too many requests",
    "internal server error", "service unavailable", "gateway timeout",
    "bad gateway", "429", "502", "503", "504",
)


@dataclass(frozen=True)
class RetryConfig:
    """重试参数"""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidArgument(f"max_attempts 必须 >= 1: {self.max_attempts}")
        if self.initial_delay < 0 or self.initial_delay > self.max_delay:
            raise InvalidArgument(
                f"initial_delay 必须在 [0, max_delay] 内: {self.initial_delay} / {self.max_delay}",
            )
        if self.multiplier < 1.0:
            raise InvalidArgument(f"multiplier 必须 >= 1.0: {self.multiplier}")
        if not 0.0 <= self.jitter <= 1.0:
            raise InvalidArgument(f"jitter 必须在 [0, 1] 内: {self.jitter}")


def is_retryable(err: BaseException) -> bool:
    """判断错误是否值得重试"""
    if isinstance(err, (OperationCancelled, OperationTimeout)):
        return False
    if isinstance(err, GitOperationFailed) and err.kind != "unknown":
        return err.kind == "network"
    if isinstance(err, (TimeoutError, ConnectionError)):
        return True
    if isinstance(err, CanopyError) and not isinstance(err, GitOperationFailed):
        return False

    text = str(err).lower()
    if any(p in text for p in _PERMANENT_PATTERNS):
        return False
    return any(p in text for p in _TRANSIENT_PATTERNS)


class RetryPolicy:
    """带退避与抖动的重试执行器"""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        rng: random.Random | None = None,
        classifier: Callable[[BaseException], bool] = is_retryable,
    ) -> None:
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()
        self._classifier = classifier

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次尝试（attempt >= 2）之前的等待秒数"""
        cfg = self.config
        base = min(cfg.max_delay, cfg.initial_delay * cfg.multiplier ** (attempt - 2))
        if cfg.jitter > 0:
            base *= 1 + self._rng.uniform(-cfg.jitter, cfg.jitter)
        return max(0.0, min(cfg.max_delay, base))

    def execute(
        self,
        operation: Callable[[], T],
        *,
        name: str = "operation",
        cancel: CancelToken | None = None,
    ) -> T:
        """执行 operation，瞬时失败按策略重试

        永久错误立即抛出；重试耗尽后抛出最后一次错误（context 标注 retries_exhausted）；
        取消或超时抛 OperationCancelled / OperationTimeout。
        """
        token = ensure_token(cancel)
        max_attempts = self.config.max_attempts

        for attempt in range(1, max_attempts + 1):
            token.raise_if_cancelled(name)
            try:
                return operation()
            except Exception as e:  # noqa: BLE001
                if not self._classifier(e):
                    raise
                if attempt >= max_attempts:
                    logger.warning(
                        "%s 重试 %d 次后仍失败: %s", name, attempt, e,
                        extra={"operation": name, "attempt": attempt},
                    )
                    if isinstance(e, CanopyError):
                        e.with_context(retries_exhausted=True, attempts=attempt)
                    raise

                delay = self.delay_for(attempt + 1)
                logger.warning(
                    "%s 第 %d 次失败，将重试: %s", name, attempt, e,
                    extra={"operation": name, "attempt": attempt},
                )
                logger.info(
                    "%s 第 %d/%d 次重试，等待 %.2fs", name, attempt + 1, max_attempts, delay,
                    extra={"operation": name, "attempt": attempt + 1, "delay": round(delay, 3)},
                )
                if token.wait(delay):
                    token.raise_if_cancelled(name)
                    raise OperationCancelled("退避等待期间被取消", operation=name) from e

        raise AssertionError("unreachable")  # pragma: no cover

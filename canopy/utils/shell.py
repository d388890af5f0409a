"""子进程执行工具

通过 CommandExecutor 协议抽象子进程调用，git 适配器和钩子执行器都经由它运行命令，
测试时注入内存实现即可，无需 patch subprocess。

LocalExecutor 支持协作式取消：子进程运行期间轮询 CancelToken，
令牌取消或超时即 kill 子进程，调用方不必等命令自然结束。
输出按 UTF-8 解码，无法解码的字节替换为 U+FFFD，不会因非 UTF-8 输出抛 UnicodeDecodeError。
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from canopy.core.exceptions import OperationTimeout

if TYPE_CHECKING:
    from canopy.core.cancel import CancelToken

logger = logging.getLogger(__name__)

# 等待子进程时检查取消信号的间隔（秒）
POLL_INTERVAL = 0.05


# =========================================================================
# 命令执行结果
# =========================================================================

@dataclass
class CommandResult:
    """命令执行结果（与 subprocess 解耦）"""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


# =========================================================================
# 命令执行器协议
# =========================================================================

class CommandExecutor(Protocol):
    """命令执行器协议

    超时抛 OperationTimeout，取消抛 OperationCancelled，程序无法启动抛 OSError，
    非零退出码不抛异常，由调用方根据 CommandResult 判断。
    """

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        ...


# =========================================================================
# 默认实现: 本地子进程
# =========================================================================

class LocalExecutor:
    """本地子进程执行器（默认实现）"""

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        args = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
        label = " ".join(args[:3])
        deadline = time.monotonic() + timeout if timeout is not None else None
        if cancel is not None:
            cancel.raise_if_cancelled(label)

        proc = subprocess.Popen(
            args, cwd=cwd, env=env, encoding="utf-8", errors="replace",
            stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        )
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    self._kill(proc)
                    cancel.raise_if_cancelled(label)
                if deadline is not None and time.monotonic() >= deadline:
                    self._kill(proc)
                    raise OperationTimeout(
                        f"命令超时 ({timeout}s)", operation=label,
                    ) from None
        return CommandResult(returncode=proc.returncode, stdout=stdout, stderr=stderr)

    @staticmethod
    def _kill(proc: subprocess.Popen[str]) -> None:
        proc.kill()
        proc.communicate()
        logger.info("子进程已终止: pid=%d", proc.pid)


# =========================================================================
# 全局默认执行器（可替换）
# =========================================================================

_default_executor: CommandExecutor = LocalExecutor()


def get_executor() -> CommandExecutor:
    """获取全局默认命令执行器"""
    return _default_executor


def set_executor(executor: CommandExecutor) -> None:
    """替换全局默认命令执行器（测试或远程执行场景）"""
    global _default_executor  # noqa: PLW0603
    _default_executor = executor

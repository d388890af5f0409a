"""并行代码仓执行器

对工作空间内的每个代码仓执行同一任务：
- 顺序模式：按列表顺序逐个执行，每个仓库前检查取消
- 并行模式：ThreadPoolExecutor 有界并发（默认 4，上限 10），结果写入按输入位置预分配的数组，
  返回顺序始终等于输入顺序，与完成顺序无关

continue_on_error=False 时任一任务失败（抛异常或非零退出码）即触发 fail-fast：
本批共享的子令牌被取消，尚未开始的任务记为取消结果，进行中的任务在下一个检查点退出，
调用方立即拿到部分结果与首个错误，不等待慢任务自然结束。
continue_on_error=True 时所有任务跑完，结果全部返回，由调用方检查部分失败。
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Generic, Sequence, TypeVar

from canopy.core.cancel import CancelToken, ensure_token
from canopy.core.config import MAX_PARALLEL_WORKERS, MIN_PARALLEL_WORKERS
from canopy.core.exceptions import CommandFailed, OperationCancelled
from canopy.core.models import RepoTaskResult

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 任务签名：(条目, 本批取消令牌) → 结果；抛异常视为失败
RepoTask = Callable[[T, CancelToken], RepoTaskResult]

# 主线程等待任务完成时检查取消的间隔（秒）
WAIT_SLICE = 0.05


def _default_name(item: object) -> str:
    return str(getattr(item, "name", item))


@dataclass
class BatchResult:
    """一批单仓任务的结果"""

    results: list[RepoTaskResult] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.success for r in self.results)

    @property
    def failures(self) -> list[RepoTaskResult]:
        return [r for r in self.results if not r.success]

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


def _failure_of(result: RepoTaskResult, label: str) -> Exception | None:
    """结果对应的错误；非零退出码转换为 CommandFailed"""
    if result.error is not None:
        return result.error
    if result.exit_code != 0:
        return CommandFailed(
            f"{label} in repo {result.repo}: exit code {result.exit_code}",
            exit_code=result.exit_code, repo=result.repo,
        )
    return None


class ParallelExecutor(Generic[T]):
    """有界并发、结果保序的单仓任务执行器"""

    def __init__(self, workers: int = 4, *, label: str = "task") -> None:
        self.workers = max(MIN_PARALLEL_WORKERS, min(MAX_PARALLEL_WORKERS, workers))
        self.label = label

    def run(
        self,
        items: Sequence[T],
        task: RepoTask,
        *,
        parallel: bool = True,
        continue_on_error: bool = False,
        cancel: CancelToken | None = None,
        name_of: Callable[[T], str] = _default_name,
    ) -> BatchResult:
        token = ensure_token(cancel)
        if not items:
            return BatchResult()
        if not parallel or len(items) == 1:
            return self._run_sequential(items, task, continue_on_error, token, name_of)
        return self._run_parallel(items, task, continue_on_error, token, name_of)

    # ---- 单个任务 ----

    def _invoke(
        self, item: T, task: RepoTask, token: CancelToken, name: str,
    ) -> RepoTaskResult:
        try:
            result = task(item, token)
        except Exception as e:  # noqa: BLE001
            return RepoTaskResult(repo=name, error=e, exit_code=-1)
        if not result.repo:
            result.repo = name
        return result

    # ---- 顺序模式 ----

    def _run_sequential(
        self,
        items: Sequence[T],
        task: RepoTask,
        continue_on_error: bool,
        token: CancelToken,
        name_of: Callable[[T], str],
    ) -> BatchResult:
        results: list[RepoTaskResult] = []
        for item in items:
            name = name_of(item)
            cancelled = token.error(self.label)
            if cancelled is not None:
                return BatchResult(results=results, error=cancelled)

            result = self._invoke(item, task, token, name)
            results.append(result)
            err = _failure_of(result, self.label)
            if err is not None and not continue_on_error:
                return BatchResult(results=results, error=err)
        return BatchResult(results=results)

    # ---- 并行模式 ----

    def _run_parallel(
        self,
        items: Sequence[T],
        task: RepoTask,
        continue_on_error: bool,
        parent: CancelToken,
        name_of: Callable[[T], str],
    ) -> BatchResult:
        names = [name_of(item) for item in items]
        slots: list[RepoTaskResult | None] = [None] * len(items)
        batch = parent.child()
        first_error: list[Exception] = []
        err_lock = threading.Lock()

        def worker(index: int) -> None:
            name = names[index]
            if batch.cancelled:
                slots[index] = RepoTaskResult(
                    repo=name, exit_code=-1,
                    error=OperationCancelled("任务未开始即被取消", repo=name),
                )
                return
            result = self._invoke(items[index], task, batch, name)
            slots[index] = result
            err = _failure_of(result, self.label)
            if err is not None and not continue_on_error:
                with err_lock:
                    if not first_error:
                        first_error.append(err)
                        logger.info("%s 在 %s 失败，取消其余任务", self.label, name)
                batch.cancel()

        pool = ThreadPoolExecutor(
            max_workers=min(self.workers, len(items)), thread_name_prefix="canopy-repo",
        )
        try:
            pending: set[Future[None]] = {pool.submit(worker, i) for i in range(len(items))}
            while pending:
                done, pending = wait(pending, timeout=WAIT_SLICE, return_when=FIRST_COMPLETED)
                for fut in done:
                    fut.result()
                if first_error or parent.cancelled:
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        results = [
            r if r is not None else RepoTaskResult(
                repo=names[i], exit_code=-1,
                error=OperationCancelled("任务被取消", repo=names[i]),
            )
            for i, r in enumerate(slots)
        ]

        if first_error:
            return BatchResult(results=results, error=first_error[0])
        return BatchResult(results=results, error=parent.error(self.label))

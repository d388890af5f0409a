"""事务式操作执行器

多步变更表达为有序的 (动作, 补偿) 列表：
- 动作严格按顺序执行
- 某步失败时，已完成步骤的补偿按逆序执行
- 补偿失败只记 debug 日志，不替换原始错误；失败步骤名写入原始错误的 context["rollback_failures"]

失败的那一步自身的半成品由动作内部清理，这里只回滚已经成功完成的步骤。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from canopy.core.exceptions import CanopyError, InternalError

logger = logging.getLogger(__name__)


@dataclass
class OperationStep:
    """一个步骤：前向动作 + 可选补偿"""

    name: str
    action: Callable[[], None]
    rollback: Callable[[], None] | None = None


@dataclass
class Operation:
    """可回滚的多步操作

    用法:
        op = Operation("create PROJ-1")
        op.add_step("storage", create_meta, rollback=delete_meta)
        op.add_step("repos", create_worktrees)
        op.execute()
    """

    name: str = "operation"
    steps: list[OperationStep] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    rolled_back: list[str] = field(default_factory=list)

    def add_step(
        self,
        name: str,
        action: Callable[[], None],
        rollback: Callable[[], None] | None = None,
    ) -> Operation:
        if action is None:
            raise InternalError(f"步骤 {name} 缺少动作", operation=self.name)
        self.steps.append(OperationStep(name=name, action=action, rollback=rollback))
        return self

    def execute(self) -> None:
        """依次执行，失败时逆序回滚已完成步骤后重新抛出原始错误"""
        self.completed.clear()
        self.rolled_back.clear()
        done: list[OperationStep] = []

        for index, step in enumerate(self.steps, start=1):
            logger.info("[Step %d] %s: %s", index, self.name, step.name)
            try:
                step.action()
            except Exception as e:
                failures = self._rollback(done, e)
                if failures and isinstance(e, CanopyError):
                    e.with_context(rollback_failures=",".join(failures))
                raise
            done.append(step)
            self.completed.append(step.name)

    def _rollback(self, done: list[OperationStep], original: Exception) -> list[str]:
        """逆序执行补偿，返回补偿失败的步骤名"""
        failures: list[str] = []
        for step in reversed(done):
            if step.rollback is None:
                continue
            try:
                step.rollback()
            except Exception as rb_err:  # noqa: BLE001
                failures.append(step.name)
                logger.debug(
                    "回滚失败: %s/%s 原始错误=%s 回滚错误=%s",
                    self.name, step.name, original, rb_err,
                )
                continue
            self.rolled_back.append(step.name)
            logger.debug(
                "已回滚: %s/%s 原始错误=%s", self.name, step.name, original,
            )
        return failures

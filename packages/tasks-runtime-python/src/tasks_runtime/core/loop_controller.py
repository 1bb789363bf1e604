"""
LoopController：Agent Loop 的迭代预算与取消检测（internal）。

目标：
- 把“迭代计数、max_iterations、cancel_checker”收敛到单一对象，Agent Loop 只问两个问题：
  还能不能开始下一轮？是否已被取消？
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional


@dataclass
class LoopController:
    """
    LoopController（internal）。

    字段：
    - max_iterations：最大迭代次数（每次调用 LLM 之前消耗一次）
    - cancel_checker：取消检测回调（返回 True 表示应尽快停止；异常时 fail-open）
    - started_monotonic：起始 monotonic 时间戳（用于耗时统计）
    """

    max_iterations: int
    cancel_checker: Optional[Callable[[], bool]] = None
    started_monotonic: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        """初始化内部计数器。"""

        if int(self.max_iterations) < 1:
            raise ValueError("max_iterations must be >= 1")
        self._iterations = 0

    @property
    def iterations(self) -> int:
        """已经开始的迭代次数。"""

        return self._iterations

    def try_begin_iteration(self) -> bool:
        """
        尝试开始新一轮迭代（消耗一次预算）。

        返回：
        - True：预算充足，且已消耗一次
        - False：预算耗尽，且未消耗（迭代次数因此永不超过 max_iterations）
        """

        if self._iterations >= int(self.max_iterations):
            return False
        self._iterations += 1
        return True

    def is_cancelled(self) -> bool:
        """
        检查是否需要停止本 task。

        约束：
        - 异常时 fail-open：返回 False。
        """

        if self.cancel_checker is None:
            return False
        try:
            return bool(self.cancel_checker())
        except Exception:
            return False

    def elapsed_ms(self) -> int:
        """返回自开始以来的耗时（毫秒）。"""

        return int((time.monotonic() - float(self.started_monotonic)) * 1000)

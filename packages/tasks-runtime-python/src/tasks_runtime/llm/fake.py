"""
Fake LLM client（离线回归夹具）。

用途：
- 在不依赖真实模型/外网的情况下，回归 Agent Loop 的编排逻辑（tool call → 审批 → 执行 → 回注 → 继续）。
"""

from __future__ import annotations

import asyncio
import itertools
from typing import Callable, List, Optional, Sequence, Union

from tasks_runtime.core.errors import ProviderError
from tasks_runtime.llm.protocol import CompletionRequest, LlmResponse, TextReply, ToolCallRequest

FakeStep = Union[TextReply, ToolCallRequest, BaseException, Callable[[CompletionRequest], LlmResponse]]


class FakeLlmClient:
    """
    用脚本化步骤模拟 LLM 答复。

    说明：
    - 每次 `complete(...)` 消费一个步骤；步骤可以是固定答复、异常实例（会被抛出），
      或 `callable(request) -> LlmResponse`（可根据历史动态生成答复）；
    - `repeat_last=True` 时脚本耗尽后重复最后一步，否则抛 `ProviderError`；
    - `requests` 记录每次收到的请求（用于断言历史/工具描述）。
    """

    def __init__(self, steps: Sequence[FakeStep], *, repeat_last: bool = False, delay_sec: float = 0.0) -> None:
        """
        参数：
        - steps：预设步骤序列
        - repeat_last：脚本耗尽后是否重复最后一步
        - delay_sec：每次调用前的等待（模拟慢模型，便于测试取消）
        """

        self._steps = list(steps)
        self._idx = 0
        self._repeat_last = bool(repeat_last)
        self._delay_sec = float(delay_sec)
        self.requests: List[CompletionRequest] = []

    @classmethod
    def always_tool(cls, name: str, arguments: Optional[dict] = None) -> "FakeLlmClient":
        """构造一个永远请求同一个工具的 client（每次生成新的 call_id）。"""

        counter = itertools.count(1)

        def _step(_request: CompletionRequest) -> LlmResponse:
            """生成下一次工具调用请求。"""

            return ToolCallRequest(call_id=f"call_{next(counter)}", name=name, arguments=dict(arguments or {}))

        return cls([_step], repeat_last=True)

    @property
    def calls(self) -> int:
        """已处理的调用次数。"""

        return len(self.requests)

    async def complete(self, request: CompletionRequest) -> LlmResponse:
        """按脚本返回下一步答复。"""

        self.requests.append(request)
        if self._delay_sec > 0:
            await asyncio.sleep(self._delay_sec)

        if self._idx < len(self._steps):
            step = self._steps[self._idx]
            self._idx += 1
        elif self._repeat_last and self._steps:
            step = self._steps[-1]
        else:
            raise ProviderError("FakeLlmClient script exhausted")

        if isinstance(step, BaseException):
            raise step
        if isinstance(step, (TextReply, ToolCallRequest)):
            return step
        return step(request)


def _last_user_text(request: CompletionRequest) -> str:
    """返回请求历史中最后一条 user 消息的内容。"""

    for m in reversed(request.messages):
        if m.role.value == "user":
            return m.content
    return ""


def echo_client() -> FakeLlmClient:
    """构造一个回显 prompt 的 client（`llm.provider=fake` 时使用，便于本地联调协议层）。"""

    def _echo(request: CompletionRequest) -> LlmResponse:
        """回显最后一条 user 消息。"""

        return TextReply(text=f"echo: {_last_user_text(request)}")

    return FakeLlmClient([_echo], repeat_last=True)

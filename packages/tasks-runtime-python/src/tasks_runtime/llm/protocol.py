"""
LLM 协议：CompletionRequest / LlmClient。

设计目标：
- 编排层只依赖“给定历史 + 工具描述 → 文本答复 或 一次工具调用请求”这一能力；
- 具体 wire format 由各 client 实现自行决定（OpenAI-compatible / fake / 其他）。
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from tasks_runtime.core.contracts import Message
from tasks_runtime.tools.protocol import ToolCall, ToolSpec


@dataclass(frozen=True)
class CompletionRequest:
    """
    CompletionRequest：一次 LLM 调用的参数包。

    字段：
    - model：模型名（fake client 可忽略）
    - system_prompt：AgentConfiguration.system_prompt
    - messages：task 的完整消息历史（按追加顺序）
    - tools：当前 runner 可用的工具描述
    - task_id/iteration：用于日志/链路追踪
    - extra：provider 特有扩展字段
    """

    model: str
    system_prompt: str
    messages: List[Message]
    tools: List[ToolSpec] = field(default_factory=list)
    task_id: Optional[str] = None
    iteration: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


class TextReply(BaseModel):
    """最终文本答复（task 将进入 completed）。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    text: str


class ToolCallRequest(BaseModel):
    """
    模型请求执行一次工具调用。

    字段：
    - call_id：调用 id（用于回注 tool 结果）
    - name：工具名
    - arguments：参数 dict
    - text：可选；模型在调用前输出的说明文字
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    call_id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    text: Optional[str] = None

    def to_tool_call(self) -> ToolCall:
        """转换为 ToolRegistry 执行使用的 ToolCall。"""

        return ToolCall(call_id=self.call_id, name=self.name, args=dict(self.arguments))


LlmResponse = Union[TextReply, ToolCallRequest]


@runtime_checkable
class LlmClient(Protocol):
    """LLM 客户端抽象（外部能力，编排层只消费该协议）。"""

    async def complete(self, request: CompletionRequest) -> LlmResponse:
        """
        唯一入口：返回 `TextReply` 或 `ToolCallRequest`。

        异常：
        - `ProviderError`：后端不可达/出错（task 进入 failed）
        """

        ...


def validate_llm_client(client: Any) -> None:
    """
    校验 LlmClient 协议（fail-fast，在构造 AgentConfiguration 时调用）。

    异常：
    - ValueError：缺少 `complete(request)` 或不是协程函数
    """

    fn = getattr(client, "complete", None)
    if not callable(fn):
        raise ValueError("LlmClient protocol mismatch: missing complete(request: CompletionRequest)")
    if not inspect.iscoroutinefunction(fn):
        raise ValueError("LlmClient.complete must be an async function")

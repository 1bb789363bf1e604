"""
AgentConfiguration：一次 Agent Loop 的不可变配置。

说明：
- 每个 task 由 runner 对应的 `AgentConfigurationFactory.build(prompt)` 构造一次；
- Agent Loop 运行期间不会被修改（frozen dataclass）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from tasks_runtime.llm.protocol import LlmClient, validate_llm_client
from tasks_runtime.safety.policy import ApprovalPolicy
from tasks_runtime.tools.protocol import ToolSpec
from tasks_runtime.tools.registry import ToolRegistry


@dataclass(frozen=True)
class AgentConfiguration:
    """
    Agent 配置。

    字段：
    - name：配置名（写入 PendingApproval.agent_id 与 Task.agent_name）
    - system_prompt：系统提示词
    - tools：本 runner 可用的工具注册表
    - llm_provider：LLM client（外部能力）
    - max_iterations：迭代上限（正整数）
    - model：模型名（空字符串表示使用 client 默认）
    - approval_policy：审批策略
    - runner：产生该配置的 runner 名（仅用于诊断）
    """

    name: str
    system_prompt: str
    tools: ToolRegistry
    llm_provider: LlmClient
    max_iterations: int = 10
    model: str = ""
    approval_policy: ApprovalPolicy = field(default_factory=lambda: ApprovalPolicy.preset("default"))
    runner: str = ""

    def __post_init__(self) -> None:
        """
        校验配置（fail-fast）。

        异常：
        - ValueError：name 为空、max_iterations < 1，或 llm_provider 不满足 LlmClient 协议
        """

        if not str(self.name or "").strip():
            raise ValueError("AgentConfiguration.name must be a non-empty string")
        if isinstance(self.max_iterations, bool) or int(self.max_iterations) < 1:
            raise ValueError("AgentConfiguration.max_iterations must be a positive integer")
        validate_llm_client(self.llm_provider)

    def tool_descriptors(self) -> List[ToolSpec]:
        """返回传给 LLM 的工具描述（按注册顺序）。"""

        return self.tools.list_specs()

"""
runner 专属的 AgentConfigurationFactory 实现。

- `CliRunnerFactory`：交互式/命令行风格，全部内置工具（Bash/Write/Edit 按策略审批）
- `ContentAgentFactory`：内容类 agent，只读/搜索 + Write（不允许执行命令）
"""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from tasks_runtime.core.agent_config import AgentConfiguration
from tasks_runtime.llm.protocol import LlmClient
from tasks_runtime.safety.policy import ApprovalPolicy
from tasks_runtime.tools.registry import ToolRegistry

CLI_SYSTEM_PROMPT = (
    "You are a careful software engineering agent working inside an isolated session workspace. "
    "Inspect files before changing them, prefer small verifiable steps, and use the Bash tool only when needed. "
    "Some tool calls require human approval; if a call is denied, adapt your plan instead of retrying it verbatim. "
    "When the task is done, reply with a concise summary of what you did."
)

CONTENT_SYSTEM_PROMPT = (
    "You are a writing assistant working inside an isolated session workspace. "
    "Use the read and search tools to gather material, and write drafts to files when asked. "
    "You cannot run commands. When the task is done, reply with the final text or a short summary of the files you wrote."
)

CONTENT_TOOL_NAMES: Tuple[str, ...] = ("Read", "Glob", "Grep", "Write")


class _RunnerFactory:
    """runner factory 公共实现：固定工具子集 + 提示词 + 预算，按 prompt 生成配置。"""

    runner = ""
    agent_name = ""
    default_system_prompt = ""

    def __init__(
        self,
        *,
        tools: ToolRegistry,
        llm: LlmClient,
        policy: ApprovalPolicy,
        max_iterations: int = 10,
        model: str = "",
        system_prompt: Optional[str] = None,
        tool_names: Optional[Iterable[str]] = None,
    ) -> None:
        """
        参数：
        - tools：全量工具注册表（按 tool_names / 默认集合取子集）
        - llm：LLM client
        - policy：审批策略
        - max_iterations：迭代上限
        - model：模型名
        - system_prompt：可选；覆盖默认系统提示词
        - tool_names：可选；覆盖默认工具集合

        异常：
        - UserError：tool_names 引用了未注册的工具
        """

        names = list(tool_names) if tool_names is not None else self._default_tool_names(tools)
        self._tools = tools.subset(names)
        self._llm = llm
        self._policy = policy
        self._max_iterations = int(max_iterations)
        self._model = model
        self._system_prompt = system_prompt or self.default_system_prompt

    def _default_tool_names(self, tools: ToolRegistry) -> list[str]:
        """默认工具集合（子类覆盖）。"""

        return [s.name for s in tools.list_specs()]

    @property
    def tool_names(self) -> list[str]:
        """本 runner 可用的工具名。"""

        return [s.name for s in self._tools.list_specs()]

    def build(self, prompt: str) -> AgentConfiguration:
        """为一个新 task 构造不可变的 AgentConfiguration。"""

        return AgentConfiguration(
            name=self.agent_name,
            system_prompt=self._system_prompt,
            tools=self._tools,
            llm_provider=self._llm,
            max_iterations=self._max_iterations,
            model=self._model,
            approval_policy=self._policy,
            runner=self.runner,
        )


class CliRunnerFactory(_RunnerFactory):
    """cli runner：注册表中的全部工具。"""

    runner = "cli"
    agent_name = "cli-agent"
    default_system_prompt = CLI_SYSTEM_PROMPT


class ContentAgentFactory(_RunnerFactory):
    """content runner：Read/Glob/Grep/Write（只取注册表中存在的）。"""

    runner = "content"
    agent_name = "content-agent"
    default_system_prompt = CONTENT_SYSTEM_PROMPT

    def _default_tool_names(self, tools: ToolRegistry) -> list[str]:
        """默认只读/搜索 + Write。"""

        return [name for name in CONTENT_TOOL_NAMES if name in tools]

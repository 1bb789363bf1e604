"""
AgentCard：协议层能力发现文档（启动时构造，之后不可变）。
"""

from __future__ import annotations

from typing import List, Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from tasks_runtime.config.loader import TasksRuntimeConfig
from tasks_runtime.core.contracts import WireModel

PROTOCOL_VERSION = "1.0"

_FROZEN = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True, frozen=True)


class AgentCapabilities(WireModel):
    """能力开关。"""

    model_config = _FROZEN

    streaming: bool = True
    push_notifications: bool = False
    state_transition_history: bool = True


class AgentSkill(WireModel):
    """对外声明的一项能力。"""

    model_config = _FROZEN

    id: str
    name: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    examples: List[str] = Field(default_factory=list)


class AgentCard(WireModel):
    """
    能力发现文档。

    字段：
    - name/description/version：基础信息
    - protocol_version：协议版本（固定 "1.0"）
    - url：JSON-RPC 入口
    - capabilities：streaming / pushNotifications / stateTransitionHistory
    - skills：能力列表
    - default_input_modes/default_output_modes：目前只支持 text
    """

    model_config = _FROZEN

    name: str
    description: str
    version: str
    protocol_version: str = PROTOCOL_VERSION
    url: Optional[str] = None
    capabilities: AgentCapabilities = Field(default_factory=AgentCapabilities)
    skills: List[AgentSkill] = Field(default_factory=list)
    default_input_modes: List[str] = Field(default_factory=lambda: ["text"])
    default_output_modes: List[str] = Field(default_factory=lambda: ["text"])


def build_agent_card(config: TasksRuntimeConfig) -> AgentCard:
    """从配置构造 AgentCard（url 缺省为 `http://<host>:<port>/a2a`）。"""

    card = config.agent_card
    url = config.server.public_url or f"http://{config.server.host}:{config.server.port}/a2a"
    return AgentCard(
        name=card.name,
        description=card.description,
        version=card.version,
        url=url,
        capabilities=AgentCapabilities(
            streaming=card.streaming,
            push_notifications=card.push_notifications,
            state_transition_history=card.state_transition_history,
        ),
        skills=[AgentSkill(**s.model_dump()) for s in card.skills],
    )

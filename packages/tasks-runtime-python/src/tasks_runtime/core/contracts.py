"""
核心数据契约（Task / Message / TaskEvent）。

说明：
- 线上（协议层）统一使用 camelCase 字段名：`model_dump(mode="json", by_alias=True)`；
- Python 侧使用 snake_case 字段名（populate_by_name=True，两种写法都可构造）。

约束：
- Task 的 messages 只追加、不删除、不重排；
- 终态（completed/failed/cancelled）不允许再迁移（重试 = 新建 task）。
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tasks_runtime.core.utils import now_rfc3339
from tasks_runtime.tools.protocol import ToolCall


class TaskState(str, Enum):
    """Task 生命周期状态。"""

    SUBMITTED = "submitted"
    WORKING = "working"
    INPUT_REQUIRED = "inputRequired"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """是否为终态。"""

        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED})

_ALLOWED_TRANSITIONS: Dict[TaskState, frozenset[TaskState]] = {
    TaskState.SUBMITTED: frozenset({TaskState.WORKING, TaskState.FAILED, TaskState.CANCELLED}),
    TaskState.WORKING: frozenset(
        {TaskState.INPUT_REQUIRED, TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED}
    ),
    TaskState.INPUT_REQUIRED: frozenset({TaskState.WORKING, TaskState.FAILED, TaskState.CANCELLED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
    TaskState.CANCELLED: frozenset(),
}


def can_transition(src: TaskState, dst: TaskState) -> bool:
    """判断状态迁移 `src -> dst` 是否合法。"""

    return dst in _ALLOWED_TRANSITIONS[src]


class TaskPriority(str, Enum):
    """提交优先级（仅在配置了并发上限时影响准入顺序）。"""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """返回可比较的序号（数值越大越优先）。"""

        return {"low": 0, "normal": 1, "high": 2}[self.value]


class MessageRole(str, Enum):
    """消息角色。"""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class WireModel(BaseModel):
    """协议层模型基类：camelCase alias + 禁止未知字段。"""

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """转换为协议层 JSON dict（camelCase，省略 None）。"""

        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Message(WireModel):
    """
    一条对话消息（追加后不可变）。

    字段：
    - role/content/timestamp：基础字段
    - tool_call：assistant 发起的工具调用（仅 assistant 消息）
    - tool_call_id/tool_name：tool 结果对应的调用（仅 tool 消息）
    - metadata：结构化附加信息（例如 `kind=approval|denial|error`）
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: MessageRole
    content: str
    timestamp: str = Field(default_factory=now_rfc3339)
    tool_call: Optional[ToolCall] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> Optional[str]:
        """返回 metadata.kind（没有则为 None）。"""

        value = self.metadata.get("kind")
        return str(value) if value is not None else None


class Task(WireModel):
    """
    一次提交及其完整执行记录。

    字段：
    - id/prompt/state/session_id/runner：基础字段
    - priority：提交优先级
    - agent_name：构造该 task 的 AgentConfiguration 名称
    - created_at/updated_at/completed_at：RFC3339 时间戳
    - messages：有序消息（append-only）
    - iterations：已经开始的迭代次数（永不超过 max_iterations）
    - pending_approval_id：处于 inputRequired 时等待的审批 id
    - error：failed 时的结构化原因（TaskError payload）
    """

    id: str
    prompt: str
    state: TaskState = TaskState.SUBMITTED
    session_id: str
    runner: str
    priority: TaskPriority = TaskPriority.NORMAL
    agent_name: str = ""
    created_at: str = Field(default_factory=now_rfc3339)
    updated_at: str = Field(default_factory=now_rfc3339)
    completed_at: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    iterations: int = 0
    pending_approval_id: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    def snapshot(self) -> "Task":
        """返回深拷贝快照（调用方修改快照不会影响内部记录）。"""

        return self.model_copy(deep=True)

    @property
    def last_message(self) -> Optional[Message]:
        """最后一条消息（没有则为 None）。"""

        return self.messages[-1] if self.messages else None


class TaskEvent(WireModel):
    """
    Task 事件（订阅接口 / 流式协议的统一单元）。

    字段：
    - type：`message`（消息追加）或 `stateChange`（状态迁移）
    - task_id：所属 task
    - sequence：task 内单调递增序号（从 1 开始）
    - timestamp：事件时间
    - payload：message → `{"message": {...}}`；stateChange → `{"state", "previous", ...}`
    - final：是否为该 task 的最后一个事件（进入终态）
    """

    type: Literal["message", "stateChange"]
    task_id: str
    sequence: int = Field(ge=0)
    timestamp: str = Field(default_factory=now_rfc3339)
    payload: Dict[str, Any] = Field(default_factory=dict)
    final: bool = False

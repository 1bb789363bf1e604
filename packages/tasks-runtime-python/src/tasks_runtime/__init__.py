"""
tasks-runtime（Python）：agent task 编排运行时。

说明：
- Task Manager：task 注册表、每个 task 一个 Agent Loop、事件订阅；
- Agent Loop：LLM → 工具调用 → 审批 → 执行 → 回注，直到终态；
- Approval Manager：human-in-the-loop 审批（恰好一次 resolve、超时策略、批量处理）；
- Task Router：cli / content / auto runner 选择；
- Protocol Server：A2A 风格 JSON-RPC + SSE（`tasks_runtime.server.app.create_app`）。
"""

from __future__ import annotations

from tasks_runtime.bootstrap import RuntimeServices, build_runtime_services, load_runtime_config
from tasks_runtime.core.agent_config import AgentConfiguration
from tasks_runtime.core.contracts import Message, MessageRole, Task, TaskEvent, TaskPriority, TaskState
from tasks_runtime.core.router import RunnerKind, TaskRouter, TaskSubmission
from tasks_runtime.core.task_manager import TaskManager
from tasks_runtime.safety.approval_manager import ApprovalManager

__all__ = [
    "AgentConfiguration",
    "ApprovalManager",
    "Message",
    "MessageRole",
    "RunnerKind",
    "RuntimeServices",
    "Task",
    "TaskEvent",
    "TaskManager",
    "TaskPriority",
    "TaskRouter",
    "TaskState",
    "TaskSubmission",
    "__version__",
    "build_runtime_services",
    "load_runtime_config",
]

__version__ = "0.1.0"

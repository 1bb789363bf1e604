"""
运行时错误分类（异常类型）。

说明：
- 协议误用类错误（NotFound/AlreadyResolved/DuplicateId/UnsupportedRunner）属于 `FrameworkError`，
  必须同步返回给调用方，不得静默吞掉；
- 任务失败类错误（Session/Provider/Tool/IterationLimit）只在 Agent Loop 内部流转，
  最终体现为 task `failed` 状态 + 末尾说明消息，不跨协议边界抛出。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


class TasksRuntimeError(Exception):
    """运行时错误基类（不建议直接抛出）。"""


class FrameworkError(TasksRuntimeError):
    """框架层结构化错误（英文 `code/message/details`）。"""

    def __init__(self, *, code: str, message: str, details: Dict[str, Any] | None = None) -> None:
        """创建框架错误。

        参数：
        - `code`：稳定错误码（英文大写下划线）
        - `message`：英文错误消息
        - `details`：结构化上下文信息
        """

        super().__init__(message)
        self.code = code
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def __str__(self) -> str:
        """返回用于日志的字符串表示。"""

        return f"{self.code}: {self.message}"


class UserError(FrameworkError):
    """用户输入/配置导致的错误。"""

    def __init__(self, message: str, *, code: str = "USER_ERROR", details: Dict[str, Any] | None = None) -> None:
        """创建 `UserError`。

        参数：
        - `message`：可读错误信息
        - `code`：错误码（默认 `USER_ERROR`）
        - `details`：结构化补充信息
        """

        super().__init__(code=code, message=message, details=details or {})


class NotFoundError(FrameworkError):
    """未知的 task/approval id。"""

    def __init__(self, kind: str, ident: str) -> None:
        """
        参数：
        - kind：对象类型（`task` / `approval`）
        - ident：调用方给出的 id
        """

        super().__init__(code="NOT_FOUND", message=f"{kind} not found: {ident}", details={"kind": kind, "id": ident})
        self.kind = kind
        self.ident = ident


class AlreadyResolvedError(FrameworkError):
    """审批已被处理（first caller wins 之后的重复 resolve）。"""

    def __init__(self, approval_id: str) -> None:
        """参数：approval_id：重复 resolve 的审批 id。"""

        super().__init__(
            code="ALREADY_RESOLVED",
            message=f"approval already resolved: {approval_id}",
            details={"approval_id": approval_id},
        )
        self.approval_id = approval_id


class DuplicateIdError(FrameworkError):
    """重复注册同一个 approval id。"""

    def __init__(self, approval_id: str) -> None:
        """参数：approval_id：冲突的审批 id。"""

        super().__init__(
            code="DUPLICATE_ID",
            message=f"approval id already registered: {approval_id}",
            details={"approval_id": approval_id},
        )
        self.approval_id = approval_id


class UnsupportedRunnerError(FrameworkError):
    """Task Router 无法识别/未配置的 runner。"""

    def __init__(self, runner: str, *, supported: Optional[list[str]] = None) -> None:
        """
        参数：
        - runner：调用方声明的 runner 名
        - supported：当前可用的 runner 列表（用于错误提示）
        """

        super().__init__(
            code="UNSUPPORTED_RUNNER",
            message=f"unsupported runner: {runner}",
            details={"runner": runner, "supported": list(supported or [])},
        )
        self.runner = runner


class InvalidTransitionError(FrameworkError):
    """非法状态迁移（例如离开终态）；属于编程错误。"""

    def __init__(self, *, task_id: str, src: str, dst: str) -> None:
        """参数：task_id/src/dst：任务 id 与迁移的起止状态。"""

        super().__init__(
            code="INVALID_TRANSITION",
            message=f"invalid task state transition: {src} -> {dst}",
            details={"task_id": task_id, "from": src, "to": dst},
        )


class SessionCreationError(TasksRuntimeError):
    """Session Provider 无法分配工作区（submit 本身失败，task 不会被创建）。"""


class ProviderError(TasksRuntimeError):
    """LLM 后端不可达/出错（task 进入 failed）。"""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        """
        参数：
        - message：可读错误信息（不得包含 secrets）
        - cause：可选；原始异常（用于稳定分类，例如 httpx.HTTPStatusError）
        """

        super().__init__(message)
        self.cause = cause


class ToolExecutionError(TasksRuntimeError):
    """
    工具执行失败。

    字段：
    - retryable：是否允许按 ToolSpec.max_retries 重试
    - fatal：重试耗尽后是否终止整个 task（否则记录为 tool 消息并继续）
    """

    def __init__(self, message: str, *, retryable: bool = False, fatal: bool = False) -> None:
        """创建工具执行错误。"""

        super().__init__(message)
        self.retryable = bool(retryable)
        self.fatal = bool(fatal)


class IterationLimitExceeded(TasksRuntimeError):
    """Agent Loop 用尽 max_iterations 仍未得到最终答复。"""

    def __init__(self, max_iterations: int) -> None:
        """参数：max_iterations：本次 task 的迭代上限。"""

        super().__init__(f"iteration limit reached without a final answer (max_iterations={max_iterations})")
        self.max_iterations = int(max_iterations)


@dataclass(frozen=True)
class ApprovalTimeout:
    """
    审批超时记录（不是错误状态，只用于日志/元数据）。

    字段：
    - approval_id：超时的审批 id
    - timeout_sec：配置的超时时长
    - applied_decision：按默认策略代为做出的决定
    """

    approval_id: str
    timeout_sec: float
    applied_decision: str

"""
Task 失败错误类型化（TaskErrorKind / TaskError）。

说明：
- task 进入 `failed` 时，`Task.error` 保存 `TaskError.to_payload()`；
- 调用方只通过 task 状态 + 末尾说明消息感知失败，不存在跨协议边界的异常通道。
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from tasks_runtime.core.errors import (
    FrameworkError,
    IterationLimitExceeded,
    ProviderError,
    SessionCreationError,
    ToolExecutionError,
)


class TaskErrorKind(str, Enum):
    """task failed 的稳定错误分类（机器可消费）。"""

    ITERATION_LIMIT = "iteration_limit"
    PROVIDER_ERROR = "provider_error"
    TOOL_ERROR = "tool_error"
    SESSION_ERROR = "session_error"

    AUTH_ERROR = "auth_error"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"

    CONFIG_ERROR = "config_error"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TaskError:
    """
    TaskError：结构化失败原因（用于生成稳定的 failed payload）。

    字段：
    - error_kind：稳定分类
    - message：可读错误消息（必须避免 secrets）
    - retryable：是否建议上层以新 task 重试
    - retry_after_ms：可选；建议的重试等待毫秒数（例如 429 + Retry-After）
    - details：可选；结构化上下文（必须可 JSON 序列化）
    """

    error_kind: TaskErrorKind
    message: str
    retryable: bool = False
    retry_after_ms: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        """转换为 failed payload dict（稳定字段名）。"""

        out: Dict[str, Any] = {
            "error_kind": str(self.error_kind.value),
            "message": str(self.message or ""),
            "retryable": bool(self.retryable),
        }
        if self.retry_after_ms is not None:
            out["retry_after_ms"] = int(self.retry_after_ms)
        if self.details:
            out["details"] = dict(self.details)
        return out


def _classify_http_status(exc: httpx.HTTPStatusError) -> TaskError:
    """把 HTTP 状态码错误映射为 TaskError（OpenAI 风格 error body 会被提取）。"""

    code = int(exc.response.status_code)
    retry_after_ms: Optional[int] = None

    kind = TaskErrorKind.HTTP_ERROR
    retryable = False
    if code in (401, 403):
        kind = TaskErrorKind.AUTH_ERROR
    elif code == 429:
        kind = TaskErrorKind.RATE_LIMITED
        retryable = True
        ra = exc.response.headers.get("Retry-After")
        if ra:
            try:
                sec = int(str(ra).strip())
                if sec > 0:
                    retry_after_ms = sec * 1000
            except (ValueError, TypeError):
                retry_after_ms = None
    elif 500 <= code <= 599:
        kind = TaskErrorKind.SERVER_ERROR
        retryable = True

    msg = f"HTTP {code}"
    try:
        data = exc.response.json()
        # OpenAI 风格：{"error":{"message": "..."}}
        if isinstance(data, dict) and isinstance(data.get("error"), dict):
            em = data["error"].get("message")
            if isinstance(em, str) and em.strip():
                msg = f"HTTP {code}: {em.strip()}"
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        pass
    if len(msg) > 800:
        msg = msg[:800] + "...<truncated>"

    return TaskError(
        error_kind=kind,
        message=msg,
        retryable=retryable,
        retry_after_ms=retry_after_ms,
        details={"status_code": code},
    )


def classify_task_exception(exc: BaseException) -> TaskError:
    """
    将运行时异常映射为结构化 TaskError。

    约束：
    - 不得包含 secrets（例如 API key value）
    - message 必须尽量简洁可读
    """

    if isinstance(exc, IterationLimitExceeded):
        return TaskError(
            error_kind=TaskErrorKind.ITERATION_LIMIT,
            message=str(exc),
            details={"max_iterations": exc.max_iterations},
        )

    if isinstance(exc, ProviderError):
        # 优先按底层 httpx 异常细分（auth/rate_limited/server）
        if exc.cause is not None and isinstance(exc.cause, httpx.HTTPError):
            inner = classify_task_exception(exc.cause)
            if inner.error_kind is not TaskErrorKind.UNKNOWN:
                return inner
        return TaskError(error_kind=TaskErrorKind.PROVIDER_ERROR, message=str(exc), retryable=True)

    if isinstance(exc, ToolExecutionError):
        return TaskError(
            error_kind=TaskErrorKind.TOOL_ERROR,
            message=str(exc),
            retryable=exc.retryable,
            details={"fatal": exc.fatal},
        )

    if isinstance(exc, SessionCreationError):
        return TaskError(error_kind=TaskErrorKind.SESSION_ERROR, message=str(exc), retryable=True)

    if isinstance(exc, httpx.TimeoutException):
        return TaskError(error_kind=TaskErrorKind.PROVIDER_ERROR, message=str(exc), retryable=True, details={"kind": "timeout"})

    if isinstance(exc, httpx.RequestError):
        return TaskError(
            error_kind=TaskErrorKind.PROVIDER_ERROR, message=str(exc), retryable=True, details={"kind": "request_error"}
        )

    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_http_status(exc)

    # 框架结构化错误：通常属于配置/输入问题（fail-fast，不建议重试）
    if isinstance(exc, FrameworkError):
        return TaskError(
            error_kind=TaskErrorKind.CONFIG_ERROR,
            message=str(exc),
            details={"framework_code": exc.code, "framework_details": dict(exc.details)},
        )

    if isinstance(exc, ValueError):
        # 常见：缺少 API key env；或配置加载问题
        return TaskError(error_kind=TaskErrorKind.CONFIG_ERROR, message=str(exc))

    return TaskError(error_kind=TaskErrorKind.UNKNOWN, message=str(exc) or type(exc).__name__)

"""
JSON-RPC 2.0 信封与错误映射。

错误码：
- 标准：-32700 parse / -32600 invalid request / -32601 method not found / -32602 invalid params / -32603 internal
- 扩展：-32001 task not found / -32002 approval not found / -32003 already resolved /
  -32004 unsupported runner / -32005 session creation failed

约束：
- 协议误用类错误一律同步返回，不会被静默丢弃；
- `error.data` 固定为 `{"error_kind": ..., "details": {...}}`。
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tasks_runtime.core.errors import (
    AlreadyResolvedError,
    FrameworkError,
    NotFoundError,
    SessionCreationError,
    UnsupportedRunnerError,
)

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
TASK_NOT_FOUND = -32001
APPROVAL_NOT_FOUND = -32002
ALREADY_RESOLVED = -32003
UNSUPPORTED_RUNNER = -32004
SESSION_CREATION_FAILED = -32005

RequestId = Union[str, int, None]


class JsonRpcRequest(BaseModel):
    """JSON-RPC 2.0 请求（只支持单个请求，不支持 batch）。"""

    model_config = ConfigDict(extra="forbid")

    jsonrpc: Literal["2.0"]
    method: str = Field(min_length=1)
    params: Optional[Dict[str, Any]] = None
    id: RequestId = None


class MethodNotFoundError(Exception):
    """未知方法。"""

    def __init__(self, method: str) -> None:
        """参数：method：请求的方法名。"""

        super().__init__(f"method not found: {method}")
        self.method = method


def rpc_result(request_id: RequestId, result: Any) -> Dict[str, Any]:
    """构造成功响应。"""

    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(
    request_id: RequestId,
    code: int,
    message: str,
    *,
    data: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """构造错误响应。"""

    err: Dict[str, Any] = {"code": int(code), "message": str(message)}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": err}


def format_rpc_error(e: Exception) -> Tuple[int, str, Dict[str, Any]]:
    """
    将异常映射为稳定的 JSON-RPC 错误。

    返回：
    - (code, message, data)
    """

    if isinstance(e, MethodNotFoundError):
        return METHOD_NOT_FOUND, str(e), {"error_kind": "method_not_found", "details": {"method": e.method}}
    if isinstance(e, NotFoundError):
        code = APPROVAL_NOT_FOUND if e.kind == "approval" else TASK_NOT_FOUND
        return code, e.message, {"error_kind": "not_found", "details": dict(e.details)}
    if isinstance(e, AlreadyResolvedError):
        return ALREADY_RESOLVED, e.message, {"error_kind": "already_resolved", "details": dict(e.details)}
    if isinstance(e, UnsupportedRunnerError):
        return UNSUPPORTED_RUNNER, e.message, {"error_kind": "unsupported_runner", "details": dict(e.details)}
    if isinstance(e, SessionCreationError):
        return SESSION_CREATION_FAILED, str(e) or "session creation failed", {"error_kind": "session_error", "details": {}}
    if isinstance(e, ValidationError):
        errors = [{"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in e.errors()]
        return INVALID_PARAMS, "invalid params", {"error_kind": "validation", "details": {"errors": errors}}
    if isinstance(e, FrameworkError):
        return INVALID_PARAMS, e.message, {"error_kind": e.code.lower(), "details": dict(e.details)}
    if isinstance(e, ValueError):
        return INVALID_PARAMS, str(e) or "invalid params", {"error_kind": "validation", "details": {}}
    return INTERNAL_ERROR, "internal error", {"error_kind": "internal", "details": {"type": type(e).__name__}}

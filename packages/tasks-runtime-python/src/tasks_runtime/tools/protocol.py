"""
Tool 协议（RiskLevel / ToolSpec / ToolCall / ToolResult）。

本模块只定义编排层需要的最小协议：
- RiskLevel：工具的静态风险分级（驱动审批策略）
- ToolSpec：注册表条目（OpenAI function calling 兼容 JSON schema + 风险分级 + 重试预算）
- ToolCall：执行输入（call_id/name/args）
- ToolResultPayload：执行输出的统一结构（ToolResult 的 content/details 使用它序列化）
- ToolResult：执行输出（ok/content/error_kind/message/details）
- tool_spec_to_openai_tool：将 ToolSpec 映射为 chat.completions tools[] 形状
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(str, Enum):
    """工具调用的静态风险分级（有序：low < medium < high < critical）。"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """返回可比较的序号（low=0 ... critical=3）。"""

        return _RISK_ORDER.index(self)

    def exceeds(self, other: "RiskLevel") -> bool:
        """判断当前分级是否严格高于 `other`。"""

        return self.rank > RiskLevel(other).rank


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class ToolSpec(BaseModel):
    """
    Tool 注册信息（function calling 兼容）。

    字段：
    - name：工具名（全局唯一，稳定；例如 `Bash` / `Read`）
    - description：工具说明
    - parameters：JSON Schema（必须为 object schema）
    - risk_level：静态风险分级；审批策略据此决定 auto-approve 或 require-approval
    - max_retries：`ToolExecutionError(retryable=True)` 时允许的额外重试次数
    - retry_delay_sec：重试间隔（秒）
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    risk_level: RiskLevel = RiskLevel.LOW
    max_retries: int = Field(default=0, ge=0)
    retry_delay_sec: float = Field(default=0.0, ge=0)


class ToolCall(BaseModel):
    """
    Tool 调用（内部表示）。

    字段：
    - call_id：本次调用的唯一 id（用于关联 tool output 回注）
    - name：工具名
    - args：解析后的参数 dict
    """

    model_config = ConfigDict(extra="forbid")

    call_id: str
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(BaseModel):
    """
    Tool 执行结果 payload（统一输出封装）。

    说明：
    - 作为 JSON 字符串写入 tool message content（稳定、可解析），同时保存在 ToolResult.details。
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: Optional[int] = None
    duration_ms: int = Field(default=0, ge=0)
    truncated: bool = False
    data: Optional[Dict[str, Any]] = None
    error_kind: Optional[str] = None
    retryable: bool = False


class ToolResult(BaseModel):
    """
    Tool 执行结果（统一 envelope）。

    字段：
    - ok：是否成功
    - content：回注给 LLM 的内容（JSON 字符串）
    - error_kind：错误分类（validation/not_found/permission/timeout/tool_error/denied/unknown...）
    - message：面向调用方的一句话说明（避免包含密钥）
    - details：结构化结果
    """

    model_config = ConfigDict(extra="forbid")

    ok: bool
    content: str
    error_kind: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    @classmethod
    def from_payload(cls, payload: ToolResultPayload, *, message: Optional[str] = None) -> "ToolResult":
        """
        从 ToolResultPayload 构造 ToolResult。

        参数：
        - payload：统一结构化结果（会被序列化为 JSON 字符串写入 content）
        - message：可选的一句话说明
        """

        obj = payload.model_dump(exclude_none=True)
        return cls(
            ok=payload.ok,
            content=json.dumps(obj, ensure_ascii=False),
            error_kind=payload.error_kind,
            message=message,
            details=obj,
        )

    @classmethod
    def ok_payload(
        cls,
        *,
        stdout: str = "",
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        truncated: bool = False,
    ) -> "ToolResult":
        """便捷构造：成功结果。"""

        return cls.from_payload(
            ToolResultPayload(ok=True, stdout=stdout, exit_code=0, duration_ms=duration_ms, truncated=truncated, data=data)
        )

    @classmethod
    def error_payload(
        cls,
        *,
        error_kind: str,
        stderr: str,
        data: Optional[Dict[str, Any]] = None,
        duration_ms: int = 0,
        retryable: bool = False,
        exit_code: Optional[int] = None,
    ) -> "ToolResult":
        """便捷构造：失败结果（错误信息放入 stderr）。"""

        return cls.from_payload(
            ToolResultPayload(
                ok=False,
                stderr=stderr,
                exit_code=exit_code,
                duration_ms=duration_ms,
                data=data,
                error_kind=error_kind,
                retryable=retryable,
            ),
            message=stderr,
        )


def tool_spec_to_openai_tool(spec: ToolSpec) -> Dict[str, Any]:
    """
    将 `ToolSpec` 映射为 OpenAI chat.completions 的 tools[] entry。

    返回形状（function calling）：
    {
      "type": "function",
      "function": { "name": "...", "description": "...", "parameters": {...} }
    }
    """

    return {
        "type": "function",
        "function": {
            "name": spec.name,
            "description": spec.description,
            "parameters": spec.parameters or {"type": "object", "properties": {}},
        },
    }

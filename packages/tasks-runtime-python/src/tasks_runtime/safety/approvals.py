"""
审批数据类型（ApprovalDecision / PendingApproval / ApprovalResolution）。

说明：
- PendingApproval 由 Agent Loop 在执行受控工具调用之前创建；
- 每个 PendingApproval 恰好被 resolve 一次（人工 / 批量 / 超时策略 / 取消）。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from tasks_runtime.core.contracts import WireModel
from tasks_runtime.core.utils import now_rfc3339
from tasks_runtime.tools.protocol import RiskLevel


class ApprovalDecision(str, Enum):
    """审批结果。`cancelled` 与 `denied` 不同：它来自 task 取消而非人工拒绝。"""

    APPROVED = "approved"
    DENIED = "denied"
    MODIFIED = "modified"
    CANCELLED = "cancelled"


class ResolvedBy(str, Enum):
    """审批的处理来源。"""

    HUMAN = "human"
    BULK = "bulk"
    TIMEOUT = "timeout"
    CANCEL = "cancel"


def parse_decision(value: str) -> ApprovalDecision:
    """
    解析外部传入的决定（approve/deny/modify 及其过去式）。

    异常：
    - ValueError：无法识别（`cancelled` 只能由 task 取消产生，不接受外部传入）
    """

    v = str(value or "").strip().lower()
    if v in ("approve", "approved"):
        return ApprovalDecision.APPROVED
    if v in ("deny", "denied"):
        return ApprovalDecision.DENIED
    if v in ("modify", "modified"):
        return ApprovalDecision.MODIFIED
    raise ValueError(f"invalid decision: {value!r}")


class PendingApproval(WireModel):
    """
    一次待审批的工具调用。

    字段：
    - id：全局唯一审批 id
    - task_id/agent_id：所属 task 与 AgentConfiguration 名称
    - tool_name/description/parameters：待执行的工具调用
    - risk_level：工具的静态风险分级
    - created_at：创建时间
    - timeout_sec：可选；超时后由 Approval Manager 按默认策略代为处理
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    task_id: str
    agent_id: str
    tool_name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    risk_level: RiskLevel
    created_at: str = Field(default_factory=now_rfc3339)
    timeout_sec: Optional[float] = Field(default=None, gt=0)


@dataclass(frozen=True)
class ApprovalResolution:
    """
    审批处理结果（交给等待中的 Agent Loop）。

    字段：
    - approval_id/decision/resolved_by：基础字段
    - reason：可选；拒绝原因 / 超时说明
    - parameters：仅 `modified` 时存在（编辑后的参数）
    - resolved_at：处理时间
    """

    approval_id: str
    decision: ApprovalDecision
    resolved_by: ResolvedBy = ResolvedBy.HUMAN
    reason: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    resolved_at: str = field(default_factory=now_rfc3339)

    @property
    def allows_execution(self) -> bool:
        """approved / modified 允许执行工具。"""

        return self.decision in (ApprovalDecision.APPROVED, ApprovalDecision.MODIFIED)

    def to_payload(self) -> Dict[str, Any]:
        """转换为协议/消息 metadata 使用的 dict（camelCase）。"""

        out: Dict[str, Any] = {
            "approvalId": self.approval_id,
            "decision": self.decision.value,
            "resolvedBy": self.resolved_by.value,
            "resolvedAt": self.resolved_at,
        }
        if self.reason is not None:
            out["reason"] = self.reason
        if self.parameters is not None:
            out["parameters"] = dict(self.parameters)
        return out

"""
Safety（审批策略 + Approval Manager）。
"""

from __future__ import annotations

from tasks_runtime.safety.approval_manager import ApprovalManager
from tasks_runtime.safety.approvals import (
    ApprovalDecision,
    ApprovalResolution,
    PendingApproval,
    ResolvedBy,
    parse_decision,
)
from tasks_runtime.safety.policy import ApprovalPolicy, ApprovalTrustTracker, PolicyDecision, describe_tool_call

__all__ = [
    "ApprovalDecision",
    "ApprovalManager",
    "ApprovalPolicy",
    "ApprovalResolution",
    "ApprovalTrustTracker",
    "PendingApproval",
    "PolicyDecision",
    "ResolvedBy",
    "describe_tool_call",
    "parse_decision",
]

"""
审批策略（auto-approve / require-approval）。

决策顺序（确定性，先命中者生效）：
1) `tool_rules`：按工具名的显式规则
2) `require_approval_patterns`：命中即需要审批
3) `auto_approve_patterns`：命中即自动放行
4) 信任计数：同一工具在本部署内已被人工批准 `trust_after_count` 次后自动放行
5) 风险兜底：`risk_level > max_auto_approve_risk` 需要审批

pattern 语法：
- `Bash`：只匹配工具名（fnmatch）
- `Bash:git status*`：工具名 + 调用描述（例如命令行）同时匹配
"""

from __future__ import annotations

import fnmatch
import json
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from tasks_runtime.config.loader import TasksRuntimeApprovalsConfig
from tasks_runtime.tools.protocol import RiskLevel, ToolCall

AUTO_APPROVE = "auto_approve"
REQUIRE_APPROVAL = "require_approval"

_READ_ONLY_TOOLS = ("Read", "Glob", "Grep")
_MUTATING_TOOLS = ("Write", "Edit", "Bash")


@dataclass(frozen=True)
class PolicyDecision:
    """
    策略决策输出。

    字段：
    - requires_approval：是否需要人工审批
    - reason：英文摘要（用于日志/审批描述）
    - matched_rule：命中的规则（可选；便于诊断）
    """

    requires_approval: bool
    reason: str
    matched_rule: Optional[str] = None


class ApprovalTrustTracker:
    """按工具名统计人工批准次数（线程安全）。"""

    def __init__(self) -> None:
        """创建空计数器。"""

        self._lock = threading.Lock()
        self._counts: Dict[str, int] = {}

    def record_approval(self, tool_name: str) -> int:
        """记录一次批准并返回累计次数。"""

        with self._lock:
            self._counts[tool_name] = self._counts.get(tool_name, 0) + 1
            return self._counts[tool_name]

    def count(self, tool_name: str) -> int:
        """返回工具的累计批准次数。"""

        with self._lock:
            return self._counts.get(tool_name, 0)

    def reset(self, tool_name: Optional[str] = None) -> None:
        """清空某个工具（或全部）的计数。"""

        with self._lock:
            if tool_name is None:
                self._counts.clear()
            else:
                self._counts.pop(tool_name, None)


def describe_tool_call(call: ToolCall, *, limit: int = 300) -> str:
    """
    生成面向审批人的一行描述。

    规则：
    - 优先使用 `command` / `path` / `pattern` 参数；否则退化为参数 JSON。
    """

    args = call.args or {}
    for key in ("command", "path", "pattern"):
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            text = value.strip()
            break
    else:
        text = json.dumps(args, ensure_ascii=False, sort_keys=True)
    if len(text) > limit:
        text = text[:limit] + "..."
    return text


def _match_pattern(pattern: str, *, tool_name: str, description: str) -> bool:
    """按 `Tool` 或 `Tool:glob` 语法匹配。"""

    p = str(pattern or "").strip()
    if not p:
        return False
    if ":" in p:
        tool_glob, desc_glob = p.split(":", 1)
        return fnmatch.fnmatchcase(tool_name, tool_glob) and fnmatch.fnmatchcase(description, desc_glob)
    return fnmatch.fnmatchcase(tool_name, p)


@dataclass(frozen=True)
class ApprovalPolicy:
    """
    部署级审批策略（不可变；runner 之间可共享）。

    字段：
    - tool_rules：工具名 → `auto_approve|require_approval`
    - auto_approve_patterns/require_approval_patterns：pattern 规则
    - max_auto_approve_risk：风险兜底阈值（不超过该级别自动放行）
    - timeout_sec：审批超时（None = 无限等待）
    - trust_after_count：信任阈值（None = 关闭）
    """

    tool_rules: Mapping[str, str] = field(default_factory=dict)
    auto_approve_patterns: Tuple[str, ...] = ()
    require_approval_patterns: Tuple[str, ...] = ()
    max_auto_approve_risk: RiskLevel = RiskLevel.LOW
    timeout_sec: Optional[float] = 300.0
    trust_after_count: Optional[int] = None

    @classmethod
    def preset(cls, name: str) -> "ApprovalPolicy":
        """
        返回内置 preset。

        - default：读/搜索类自动放行，Write/Edit/Bash 需要审批，超时 300s
        - strict：仅 low 风险自动放行，超时 120s
        - permissive：high 及以下自动放行（critical 仍需审批），超时 600s

        异常：
        - ValueError：未知 preset
        """

        if name == "default":
            rules = {t: AUTO_APPROVE for t in _READ_ONLY_TOOLS}
            rules.update({t: REQUIRE_APPROVAL for t in _MUTATING_TOOLS})
            return cls(tool_rules=rules, max_auto_approve_risk=RiskLevel.LOW, timeout_sec=300.0)
        if name == "strict":
            return cls(
                tool_rules={t: REQUIRE_APPROVAL for t in _MUTATING_TOOLS},
                max_auto_approve_risk=RiskLevel.LOW,
                timeout_sec=120.0,
            )
        if name == "permissive":
            return cls(max_auto_approve_risk=RiskLevel.HIGH, timeout_sec=600.0)
        raise ValueError(f"unknown approval preset: {name}")

    @classmethod
    def from_config(cls, cfg: TasksRuntimeApprovalsConfig) -> "ApprovalPolicy":
        """以 preset 为基线，叠加配置中的覆盖项。"""

        base = cls.preset(cfg.preset)
        rules: Dict[str, str] = dict(base.tool_rules)
        rules.update(cfg.tool_rules)

        timeout: Optional[float] = base.timeout_sec
        if cfg.default_timeout_sec is not None:
            timeout = float(cfg.default_timeout_sec)
        if cfg.wait_indefinitely:
            timeout = None

        return cls(
            tool_rules=rules,
            auto_approve_patterns=tuple(cfg.auto_approve_patterns),
            require_approval_patterns=tuple(cfg.require_approval_patterns),
            max_auto_approve_risk=cfg.max_auto_approve_risk or base.max_auto_approve_risk,
            timeout_sec=timeout,
            trust_after_count=cfg.trust_after_count,
        )

    def evaluate(
        self,
        tool_name: str,
        risk_level: RiskLevel,
        *,
        description: str = "",
        trust: Optional[ApprovalTrustTracker] = None,
    ) -> PolicyDecision:
        """
        计算某次工具调用是否需要审批。

        参数：
        - tool_name/risk_level：工具名与静态风险分级
        - description：调用描述（pattern 匹配使用）
        - trust：可选；信任计数器（trust_after_count 配置时生效）
        """

        rule = self.tool_rules.get(tool_name)
        if rule == REQUIRE_APPROVAL:
            return PolicyDecision(True, f"tool rule requires approval for {tool_name}", matched_rule=f"tool:{tool_name}")
        if rule == AUTO_APPROVE:
            return PolicyDecision(False, f"tool rule auto-approves {tool_name}", matched_rule=f"tool:{tool_name}")

        for p in self.require_approval_patterns:
            if _match_pattern(p, tool_name=tool_name, description=description):
                return PolicyDecision(True, "matched require-approval pattern", matched_rule=p)
        for p in self.auto_approve_patterns:
            if _match_pattern(p, tool_name=tool_name, description=description):
                return PolicyDecision(False, "matched auto-approve pattern", matched_rule=p)

        if self.trust_after_count is not None and trust is not None:
            if trust.count(tool_name) >= self.trust_after_count:
                return PolicyDecision(False, f"{tool_name} trusted after {self.trust_after_count} approvals", matched_rule="trust")

        risk = RiskLevel(risk_level)
        if risk.exceeds(self.max_auto_approve_risk):
            return PolicyDecision(True, f"risk {risk.value} exceeds auto-approve threshold {self.max_auto_approve_risk.value}")
        return PolicyDecision(False, f"risk {risk.value} within auto-approve threshold")

    def requires_approval(
        self,
        tool_name: str,
        risk_level: RiskLevel,
        *,
        description: str = "",
        trust: Optional[ApprovalTrustTracker] = None,
    ) -> bool:
        """`evaluate(...)` 的布尔简写。"""

        return self.evaluate(tool_name, risk_level, description=description, trust=trust).requires_approval


def policy_summary(policy: ApprovalPolicy) -> Dict[str, Any]:
    """返回策略的可序列化摘要（用于 CLI/诊断输出）。"""

    return {
        "tool_rules": dict(policy.tool_rules),
        "auto_approve_patterns": list(policy.auto_approve_patterns),
        "require_approval_patterns": list(policy.require_approval_patterns),
        "max_auto_approve_risk": policy.max_auto_approve_risk.value,
        "timeout_sec": policy.timeout_sec,
        "trust_after_count": policy.trust_after_count,
    }

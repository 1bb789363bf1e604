"""
Approval Manager：待审批集合 + 恰好一次的 resolve + 唤醒等待者。

并发模型：
- 所有 register/resolve 在同一把 `threading.Lock` 下串行化；谁先拿到锁谁生效（first caller wins），
  之后对同一 id 的 resolve 返回 `AlreadyResolvedError`；
- resolve 可以从任意线程调用：结果通过 `loop.call_soon_threadsafe` 投递到等待者所在的事件循环；
- 超时与人工 resolve 走同一条加锁路径，因此两者同时到达时不会重复处理；
- `resolve_all_matching` 在一次加锁内摘除全部匹配项，已被单独处理的 id 不会被二次处理。
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from tasks_runtime.core.errors import AlreadyResolvedError, ApprovalTimeout, DuplicateIdError, NotFoundError
from tasks_runtime.safety.approvals import (
    ApprovalDecision,
    ApprovalResolution,
    PendingApproval,
    ResolvedBy,
    parse_decision,
)

logger = logging.getLogger(__name__)


@dataclass
class _PendingEntry:
    """
    一条待审批记录（内部）。

    字段：
    - approval：审批请求
    - loop/future：等待者所在事件循环与其 Future
    - created_monotonic：注册时间（用于 list 排序与 age 计算）
    - timer：可选；超时回调句柄
    """

    approval: PendingApproval
    loop: asyncio.AbstractEventLoop
    future: "asyncio.Future[ApprovalResolution]"
    created_monotonic: float
    timer: Optional[asyncio.TimerHandle] = None


class ApprovalManager:
    """
    进程内审批中枢（多个 Agent Loop 共享）。

    约束：
    - 进程重启会丢失 pending approvals；
    - approval id 在进程生命周期内全局唯一（已处理的 id 不允许再次注册）。
    """

    def __init__(self, *, timeout_decision: Union[ApprovalDecision, str] = ApprovalDecision.DENIED) -> None:
        """
        参数：
        - timeout_decision：超时后代为做出的决定（approved|denied；默认 denied）
        """

        decision = timeout_decision if isinstance(timeout_decision, ApprovalDecision) else parse_decision(timeout_decision)
        if decision not in (ApprovalDecision.APPROVED, ApprovalDecision.DENIED):
            raise ValueError("timeout_decision must be approved or denied")
        self._timeout_decision = decision
        self._lock = threading.Lock()
        self._pending: Dict[str, _PendingEntry] = {}
        self._resolved: Dict[str, ApprovalResolution] = {}

    @property
    def timeout_decision(self) -> ApprovalDecision:
        """超时默认决定。"""

        return self._timeout_decision

    def register(self, approval: PendingApproval) -> "asyncio.Future[ApprovalResolution]":
        """
        注册一个待审批请求，返回在 resolve 时完成的 Future。

        约束：
        - 必须在等待者所在的事件循环中调用；
        - 配置了 timeout_sec 时同时安排超时回调。

        异常：
        - DuplicateIdError：id 已存在（pending 或已处理）
        """

        loop = asyncio.get_running_loop()
        with self._lock:
            if approval.id in self._pending or approval.id in self._resolved:
                raise DuplicateIdError(approval.id)
            fut: asyncio.Future[ApprovalResolution] = loop.create_future()
            entry = _PendingEntry(approval=approval, loop=loop, future=fut, created_monotonic=time.monotonic())
            if approval.timeout_sec is not None:
                entry.timer = loop.call_later(float(approval.timeout_sec), self._on_timeout, approval.id)
            self._pending[approval.id] = entry

        logger.info(
            "approval %s registered for task %s: tool=%s risk=%s",
            approval.id,
            approval.task_id,
            approval.tool_name,
            approval.risk_level.value,
        )
        return fut

    def resolve(
        self,
        approval_id: str,
        decision: Union[ApprovalDecision, str],
        *,
        reason: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> ApprovalResolution:
        """
        处理一个待审批请求（可从任意线程调用）。

        参数：
        - approval_id：审批 id
        - decision：approve/deny/modify
        - reason：可选；拒绝原因
        - parameters：modify 时必填（编辑后的工具参数）

        异常：
        - NotFoundError：未知 id
        - AlreadyResolvedError：已被处理
        - ValueError：decision 非法或 modify 缺少 parameters
        """

        parsed = decision if isinstance(decision, ApprovalDecision) else parse_decision(decision)
        if parsed is ApprovalDecision.CANCELLED:
            raise ValueError("cancelled is reserved for task cancellation")
        if parsed is ApprovalDecision.MODIFIED and not isinstance(parameters, dict):
            raise ValueError("modified decision requires a parameters mapping")
        return self._resolve_one(
            approval_id,
            decision=parsed,
            reason=reason,
            parameters=dict(parameters) if parsed is ApprovalDecision.MODIFIED and parameters is not None else None,
            resolved_by=ResolvedBy.HUMAN,
        )

    def resolve_all_matching(
        self,
        tool_name: str,
        decision: Union[ApprovalDecision, str],
        *,
        reason: Optional[str] = None,
    ) -> int:
        """
        批量处理所有 tool_name 匹配的待审批请求（“approve all similar”）。

        返回：
        - 实际处理的数量（已处理的 id 被跳过，不报错）

        异常：
        - ValueError：decision 不是 approve/deny
        """

        parsed = decision if isinstance(decision, ApprovalDecision) else parse_decision(decision)
        if parsed not in (ApprovalDecision.APPROVED, ApprovalDecision.DENIED):
            raise ValueError("bulk resolution only supports approve or deny")

        with self._lock:
            ids = [aid for aid, e in self._pending.items() if e.approval.tool_name == tool_name]
            delivered = self._pop_and_record(ids, decision=parsed, reason=reason, resolved_by=ResolvedBy.BULK)

        for entry, resolution in delivered:
            self._deliver(entry, resolution)
        if delivered:
            logger.info("bulk %s applied to %d pending %s approvals", parsed.value, len(delivered), tool_name)
        return len(delivered)

    def cancel_for_task(self, task_id: str, *, reason: str = "task cancelled") -> int:
        """
        将某个 task 的全部待审批请求处理为 `cancelled`（区别于 denied）。

        返回：
        - 被取消的数量
        """

        with self._lock:
            ids = [aid for aid, e in self._pending.items() if e.approval.task_id == task_id]
            delivered = self._pop_and_record(ids, decision=ApprovalDecision.CANCELLED, reason=reason, resolved_by=ResolvedBy.CANCEL)

        for entry, resolution in delivered:
            self._deliver(entry, resolution)
        return len(delivered)

    def list(self, *, task_id: Optional[str] = None) -> List[PendingApproval]:
        """返回当前待审批快照（按注册顺序；可按 task 过滤）。"""

        with self._lock:
            entries = [e for e in self._pending.values() if task_id is None or e.approval.task_id == task_id]
        entries.sort(key=lambda e: e.created_monotonic)
        return [e.approval for e in entries]

    def get(self, approval_id: str) -> Optional[PendingApproval]:
        """返回待审批请求；已处理或不存在返回 None。"""

        with self._lock:
            entry = self._pending.get(approval_id)
        return entry.approval if entry is not None else None

    def get_resolution(self, approval_id: str) -> Optional[ApprovalResolution]:
        """返回已处理的结果；仍在等待或不存在返回 None。"""

        with self._lock:
            return self._resolved.get(approval_id)

    def _resolve_one(
        self,
        approval_id: str,
        *,
        decision: ApprovalDecision,
        reason: Optional[str],
        parameters: Optional[Dict[str, Any]],
        resolved_by: ResolvedBy,
    ) -> ApprovalResolution:
        """加锁摘除并记录一条结果，然后唤醒等待者。"""

        with self._lock:
            entry = self._pending.pop(approval_id, None)
            if entry is None:
                if approval_id in self._resolved:
                    raise AlreadyResolvedError(approval_id)
                raise NotFoundError("approval", approval_id)
            resolution = ApprovalResolution(
                approval_id=approval_id,
                decision=decision,
                resolved_by=resolved_by,
                reason=reason,
                parameters=parameters,
            )
            self._resolved[approval_id] = resolution

        self._deliver(entry, resolution)
        logger.info("approval %s resolved: %s by %s", approval_id, decision.value, resolved_by.value)
        return resolution

    def _pop_and_record(
        self,
        ids: List[str],
        *,
        decision: ApprovalDecision,
        reason: Optional[str],
        resolved_by: ResolvedBy,
    ) -> List[tuple[_PendingEntry, ApprovalResolution]]:
        """批量摘除并记录结果（调用方必须持有锁）。"""

        out: List[tuple[_PendingEntry, ApprovalResolution]] = []
        for aid in ids:
            entry = self._pending.pop(aid)
            resolution = ApprovalResolution(approval_id=aid, decision=decision, resolved_by=resolved_by, reason=reason)
            self._resolved[aid] = resolution
            out.append((entry, resolution))
        return out

    def _deliver(self, entry: _PendingEntry, resolution: ApprovalResolution) -> None:
        """把结果投递到等待者的事件循环（线程安全）。"""

        def _wake() -> None:
            """在等待者的事件循环中取消超时回调并完成 Future。"""

            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_result(resolution)

        try:
            entry.loop.call_soon_threadsafe(_wake)
        except RuntimeError:
            # 事件循环已关闭：等待者已不存在，结果只保留在 _resolved 中
            logger.warning("event loop closed; resolution of approval %s not delivered", resolution.approval_id)

    def _on_timeout(self, approval_id: str) -> None:
        """超时回调：按默认策略代为处理（与人工 resolve 竞争同一把锁）。"""

        with self._lock:
            entry = self._pending.get(approval_id)
        if entry is None:
            return
        try:
            self._resolve_one(
                approval_id,
                decision=self._timeout_decision,
                reason="timeout",
                parameters=None,
                resolved_by=ResolvedBy.TIMEOUT,
            )
        except (AlreadyResolvedError, NotFoundError):
            return
        record = ApprovalTimeout(
            approval_id=approval_id,
            timeout_sec=float(entry.approval.timeout_sec or 0),
            applied_decision=self._timeout_decision.value,
        )
        logger.warning(
            "ApprovalTimeout: approval %s (task %s, tool %s) unresolved after %.1fs; applied %s",
            record.approval_id,
            entry.approval.task_id,
            entry.approval.tool_name,
            record.timeout_sec,
            record.applied_decision,
        )

"""
Agent Loop：单个 task 的 reason → act 循环。

状态机：
- `submitted → working → {inputRequired ⇄ working} → {completed | failed | cancelled}`

每轮迭代（最多 `max_iterations` 轮）：
1) 组装消息历史 + system prompt + 工具描述，调用 LLM；
2) 文本答复：追加 assistant 消息 → completed；
3) 工具调用：按审批策略决定是否创建 PendingApproval 并挂起（inputRequired），
   approved/modified → 执行；denied → 追加拒绝说明并继续；cancelled → task 取消；
4) 追加工具结果消息，进入下一轮。

挂起点（cooperative）：
- 等待 LLM 答复；
- 等待审批结果。
两处都与取消信号竞争；已经开始执行的工具调用不会被强行中断。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from tasks_runtime.core.agent_config import AgentConfiguration
from tasks_runtime.core.contracts import Message, MessageRole, TaskState
from tasks_runtime.core.errors import IterationLimitExceeded
from tasks_runtime.core.loop_controller import LoopController
from tasks_runtime.core.run_errors import TaskErrorKind, classify_task_exception
from tasks_runtime.core.utils import new_id
from tasks_runtime.llm.protocol import CompletionRequest, LlmResponse, TextReply, ToolCallRequest
from tasks_runtime.safety.approval_manager import ApprovalManager
from tasks_runtime.safety.approvals import ApprovalDecision, ApprovalResolution, PendingApproval, ResolvedBy
from tasks_runtime.safety.policy import ApprovalTrustTracker, PolicyDecision, describe_tool_call
from tasks_runtime.sessions import SessionHandle
from tasks_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec
from tasks_runtime.tools.registry import ToolExecutionContext

logger = logging.getLogger(__name__)

# 只有人工（含批量）批准计入信任；超时代批不算
_TRUSTED_RESOLVERS = frozenset({ResolvedBy.HUMAN, ResolvedBy.BULK})


class TaskRecorder(Protocol):
    """
    Agent Loop 向 Task Manager 回写状态的接口。

    说明：
    - Agent Loop 只通过该接口修改 task 记录（append-only 消息 + 状态迁移）；
    - 每次调用都会产生一个对订阅者可见的 TaskEvent。
    """

    def append_message(self, message: Message) -> None:
        """追加一条消息。"""

        ...

    def transition(
        self,
        state: TaskState,
        *,
        pending_approval_id: Optional[str] = None,
        error: Optional[Dict[str, Any]] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        """状态迁移（非法迁移抛 InvalidTransitionError）。"""

        ...

    def record_iteration(self, iterations: int) -> None:
        """记录已开始的迭代次数。"""

        ...


class AgentLoop:
    """单个 task 的执行循环（一个 task 恰好一个实例）。"""

    def __init__(
        self,
        *,
        task_id: str,
        config: AgentConfiguration,
        session: SessionHandle,
        approvals: ApprovalManager,
        recorder: TaskRecorder,
        history: Sequence[Message],
        cancel_event: asyncio.Event,
        trust: Optional[ApprovalTrustTracker] = None,
        tool_timeout_ms: int = 60_000,
        max_file_bytes: int = 256 * 1024,
    ) -> None:
        """
        参数：
        - task_id：所属 task
        - config：AgentConfiguration（运行期间不可变）
        - session：task 独占的工作区
        - approvals：共享的 Approval Manager
        - recorder：回写 task 记录的接口
        - history：初始消息历史（通常只有 user prompt）
        - cancel_event：取消信号（由 Task Manager 设置）
        - trust：可选；部署级信任计数器
        - tool_timeout_ms/max_file_bytes：工具执行上下文默认值
        """

        self._task_id = task_id
        self._config = config
        self._session = session
        self._approvals = approvals
        self._recorder = recorder
        self._history: List[Message] = list(history)
        self._cancel_event = cancel_event
        self._trust = trust
        self._controller = LoopController(max_iterations=config.max_iterations, cancel_checker=cancel_event.is_set)
        self._ctx = ToolExecutionContext(
            workspace_root=session.root(),
            task_id=task_id,
            cancel_checker=cancel_event.is_set,
            default_timeout_ms=int(tool_timeout_ms),
            max_file_bytes=int(max_file_bytes),
        )

    @property
    def iterations(self) -> int:
        """已经开始的迭代次数。"""

        return self._controller.iterations

    async def run(self) -> TaskState:
        """
        驱动 task 到终态并返回该终态。

        说明：
        - 任务失败类错误（ProviderError / IterationLimitExceeded / fatal ToolExecutionError ...）
          在此收敛为 `failed` + 末尾说明消息，不向调用方抛出；
        - `asyncio.CancelledError`（运行时关闭）会把 task 标记为 cancelled 后继续向上传播。
        """

        try:
            if self._controller.is_cancelled():
                return self._finish_cancelled("cancelled before start")
            self._recorder.transition(TaskState.WORKING)
            logger.info("task %s started (agent=%s, max_iterations=%d)", self._task_id, self._config.name, self._config.max_iterations)

            while True:
                if self._controller.is_cancelled():
                    return self._finish_cancelled("cancelled by request")
                if not self._controller.try_begin_iteration():
                    raise IterationLimitExceeded(self._config.max_iterations)
                self._recorder.record_iteration(self._controller.iterations)

                response = await self._complete()
                if response is None:
                    return self._finish_cancelled("cancelled by request")

                if isinstance(response, TextReply):
                    self._append(Message(role=MessageRole.ASSISTANT, content=response.text))
                    self._recorder.transition(TaskState.COMPLETED)
                    logger.info(
                        "task %s completed after %d iterations (%d ms)",
                        self._task_id,
                        self._controller.iterations,
                        self._controller.elapsed_ms(),
                    )
                    return TaskState.COMPLETED

                outcome = await self._handle_tool_call(response)
                if outcome is not None:
                    return outcome
        except asyncio.CancelledError:
            self._finish_cancelled("runtime shutting down")
            raise
        except Exception as e:
            return self._finish_failed(e)
        finally:
            # 终态之后不允许残留 pending approval
            self._approvals.cancel_for_task(self._task_id)

    async def _complete(self) -> Optional[LlmResponse]:
        """调用 LLM（与取消信号竞争）；被取消时返回 None。"""

        request = CompletionRequest(
            model=self._config.model,
            system_prompt=self._config.system_prompt,
            messages=list(self._history),
            tools=self._config.tool_descriptors(),
            task_id=self._task_id,
            iteration=self._controller.iterations,
        )
        llm_call = asyncio.ensure_future(self._config.llm_provider.complete(request))
        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({llm_call, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (llm_call, cancel_wait):
                if not fut.done():
                    fut.cancel()

        if cancel_wait in done:
            if llm_call.done() and not llm_call.cancelled():
                # 取消优先；消费掉结果/异常，避免 "exception was never retrieved"
                llm_call.exception()
            return None
        return llm_call.result()

    async def _handle_tool_call(self, response: ToolCallRequest) -> Optional[TaskState]:
        """
        处理一次工具调用请求。

        返回：
        - None：本轮结束，继续下一轮
        - TaskState：task 已进入终态（目前只有 cancelled）
        """

        call = response.to_tool_call()
        self._append(Message(role=MessageRole.ASSISTANT, content=response.text or "", tool_call=call))

        spec = self._config.tools.find_spec(call.name)
        if spec is None:
            # 未知工具：作为可恢复错误回注给模型
            result = ToolResult.error_payload(
                error_kind="not_found",
                stderr=f"unknown tool: {call.name}",
                data={"tool": call.name},
            )
            self._append_tool_result(call, result)
            return None

        description = describe_tool_call(call)
        decision = self._config.approval_policy.evaluate(
            spec.name,
            spec.risk_level,
            description=description,
            trust=self._trust,
        )
        if decision.requires_approval:
            resolution = await self._await_approval(call, spec, description, decision)
            if resolution.decision is ApprovalDecision.CANCELLED:
                return self._finish_cancelled("cancelled while awaiting approval")
            self._recorder.transition(TaskState.WORKING)
            if resolution.decision is ApprovalDecision.DENIED:
                self._append_denial(call, resolution)
                return None
            if resolution.decision is ApprovalDecision.MODIFIED:
                call = call.model_copy(update={"args": dict(resolution.parameters or {})})
            elif self._trust is not None and resolution.resolved_by in _TRUSTED_RESOLVERS:
                self._trust.record_approval(spec.name)

        if self._controller.is_cancelled():
            return self._finish_cancelled("cancelled before tool execution")

        result = await self._config.tools.execute(call, ctx=self._ctx)
        self._append_tool_result(call, result)
        return None

    async def _await_approval(
        self,
        call: ToolCall,
        spec: ToolSpec,
        description: str,
        decision: PolicyDecision,
    ) -> ApprovalResolution:
        """注册 PendingApproval，进入 inputRequired 并等待处理结果（取消会把审批处理为 cancelled）。"""

        approval = PendingApproval(
            id=new_id("apr"),
            task_id=self._task_id,
            agent_id=self._config.name,
            tool_name=spec.name,
            description=description,
            parameters=dict(call.args),
            risk_level=spec.risk_level,
            timeout_sec=self._config.approval_policy.timeout_sec,
        )
        future = self._approvals.register(approval)
        self._recorder.transition(
            TaskState.INPUT_REQUIRED,
            pending_approval_id=approval.id,
            detail={"approval": approval.to_wire(), "policy": decision.reason},
        )

        cancel_wait = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({future, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if future not in done:
                self._approvals.cancel_for_task(self._task_id)
            resolution = await future
        finally:
            cancel_wait.cancel()

        content = f"Approval {resolution.decision.value} for {spec.name} ({resolution.resolved_by.value})"
        if resolution.reason:
            content += f": {resolution.reason}"
        self._append(
            Message(
                role=MessageRole.TOOL,
                content=content,
                tool_name=spec.name,
                metadata={"kind": "approval", "toolName": spec.name, **resolution.to_payload()},
            )
        )
        return resolution

    def _append(self, message: Message) -> None:
        """追加消息（本地历史 + task 记录）。"""

        self._history.append(message)
        self._recorder.append_message(message)

    def _append_tool_result(self, call: ToolCall, result: ToolResult) -> None:
        """把工具结果作为 tool 消息回注。"""

        metadata: Dict[str, Any] = {"kind": "tool_result", "ok": result.ok}
        if result.error_kind:
            metadata["errorKind"] = result.error_kind
        self._append(
            Message(
                role=MessageRole.TOOL,
                content=result.content,
                tool_call_id=call.call_id,
                tool_name=call.name,
                metadata=metadata,
            )
        )

    def _append_denial(self, call: ToolCall, resolution: ApprovalResolution) -> None:
        """合成“审批被拒绝”的 tool 结果（工具不会被执行）。"""

        reason = resolution.reason or "no reason given"
        result = ToolResult.error_payload(
            error_kind="denied",
            stderr=f"tool call denied by approver: {reason}",
            data={"approval_id": resolution.approval_id, "resolved_by": resolution.resolved_by.value},
        )
        self._append(
            Message(
                role=MessageRole.TOOL,
                content=result.content,
                tool_call_id=call.call_id,
                tool_name=call.name,
                metadata={"kind": "denial", "approvalId": resolution.approval_id, "reason": reason},
            )
        )

    def _finish_cancelled(self, reason: str) -> TaskState:
        """追加说明消息并进入 cancelled。"""

        self._append(Message(role=MessageRole.ASSISTANT, content=f"Task cancelled: {reason}", metadata={"kind": "cancelled"}))
        self._recorder.transition(TaskState.CANCELLED)
        logger.info("task %s cancelled: %s", self._task_id, reason)
        return TaskState.CANCELLED

    def _finish_failed(self, exc: BaseException) -> TaskState:
        """把异常分类为 TaskError，追加说明消息并进入 failed。"""

        error = classify_task_exception(exc)
        if error.error_kind is TaskErrorKind.UNKNOWN:
            logger.exception("task %s failed with unexpected error", self._task_id)
        else:
            logger.warning("task %s failed (%s): %s", self._task_id, error.error_kind.value, error.message)

        payload = error.to_payload()
        self._append(
            Message(
                role=MessageRole.ASSISTANT,
                content=f"Task failed ({error.error_kind.value}): {error.message}",
                metadata={"kind": "error", "error": payload},
            )
        )
        self._recorder.transition(TaskState.FAILED, error=payload)
        return TaskState.FAILED

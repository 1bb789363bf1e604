"""
JSON-RPC 方法实现（只依赖 Task Router / Task Manager / Approval Manager）。

方法：
- task：submitTask / getTask / listTasks / cancelTask / streamTaskUpdates（见 app.py，SSE）
- discovery：getAgentCard
- approvals（out-of-band）：listApprovals / approveRequest / denyRequest / modifyRequest / resolveAllMatching

说明：
- 参数使用 camelCase（与协议层一致），由 pydantic 校验；校验失败映射为 -32602；
- 业务逻辑全部委托给核心服务，本模块只做参数解析与结果整形。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

from pydantic import Field

from tasks_runtime.core.contracts import Task, TaskPriority, TaskState, WireModel
from tasks_runtime.core.router import TaskSubmission
from tasks_runtime.safety.approvals import ApprovalDecision, parse_decision
from tasks_runtime.server.jsonrpc import MethodNotFoundError

if TYPE_CHECKING:
    from tasks_runtime.bootstrap import RuntimeServices

STREAM_METHOD = "streamTaskUpdates"


class SubmitTaskParams(WireModel):
    """submitTask 参数。"""

    prompt: str = Field(min_length=1)
    runner: str = "auto"
    priority: TaskPriority = TaskPriority.NORMAL


class TaskIdParams(WireModel):
    """只包含 taskId 的参数。"""

    task_id: str = Field(min_length=1)


class ListTasksParams(WireModel):
    """listTasks 参数。"""

    state: Optional[TaskState] = None


class StreamTaskParams(WireModel):
    """streamTaskUpdates 参数（includeHistory 缺省时跟随 stateTransitionHistory 能力）。"""

    task_id: str = Field(min_length=1)
    include_history: Optional[bool] = None


class ListApprovalsParams(WireModel):
    """listApprovals 参数。"""

    task_id: Optional[str] = None


class ApproveParams(WireModel):
    """approveRequest 参数。"""

    approval_id: str = Field(min_length=1)


class DenyParams(WireModel):
    """denyRequest 参数。"""

    approval_id: str = Field(min_length=1)
    reason: Optional[str] = None


class ModifyParams(WireModel):
    """modifyRequest 参数（parameters 为编辑后的工具参数）。"""

    approval_id: str = Field(min_length=1)
    parameters: Dict[str, Any]
    reason: Optional[str] = None


class ResolveAllParams(WireModel):
    """resolveAllMatching 参数（decision：approve|deny）。"""

    tool_name: str = Field(min_length=1)
    decision: str
    reason: Optional[str] = None


def task_summary(task: Task) -> Dict[str, Any]:
    """listTasks 使用的摘要（不含消息正文）。"""

    out = task.to_wire()
    out.pop("messages", None)
    out["messageCount"] = len(task.messages)
    return out


class RpcMethods:
    """JSON-RPC 方法表（streamTaskUpdates 之外的全部方法）。"""

    def __init__(self, services: "RuntimeServices") -> None:
        """参数：services：显式装配的服务集合。"""

        self._services = services

    async def dispatch(self, method: str, params: Dict[str, Any]) -> Any:
        """
        路由 RPC 方法到对应 handler。

        异常：
        - MethodNotFoundError：未知方法
        - 其余异常由 `format_rpc_error` 映射
        """

        if method == "submitTask":
            return await self._submit_task(params)
        if method == "getTask":
            return self._get_task(params)
        if method == "listTasks":
            return self._list_tasks(params)
        if method == "cancelTask":
            return self._cancel_task(params)
        if method == "getAgentCard":
            return self._services.agent_card.to_wire()

        if method == "listApprovals":
            return self._list_approvals(params)
        if method == "approveRequest":
            return self._approve(params)
        if method == "denyRequest":
            return self._deny(params)
        if method == "modifyRequest":
            return self._modify(params)
        if method == "resolveAllMatching":
            return self._resolve_all(params)

        raise MethodNotFoundError(method)

    async def _submit_task(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """submitTask：路由并提交，立即返回 taskId。"""

        p = SubmitTaskParams.model_validate(params)
        task = await self._services.router.route(TaskSubmission(prompt=p.prompt, runner=p.runner, priority=p.priority))
        return {"taskId": task.id, "state": task.state.value, "runner": task.runner, "sessionId": task.session_id}

    def _get_task(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """getTask：完整快照（含消息）。"""

        p = TaskIdParams.model_validate(params)
        return self._services.task_manager.require(p.task_id).to_wire()

    def _list_tasks(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """listTasks：摘要列表。"""

        p = ListTasksParams.model_validate(params)
        return {"tasks": [task_summary(t) for t in self._services.task_manager.list(state=p.state)]}

    def _cancel_task(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """cancelTask：ok=true；cancelled 表示本次是否真的发出了取消（终态 task 为 no-op）。"""

        p = TaskIdParams.model_validate(params)
        changed = self._services.task_manager.cancel(p.task_id)
        return {"ok": True, "cancelled": changed}

    def _list_approvals(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """listApprovals：当前待审批快照。"""

        p = ListApprovalsParams.model_validate(params)
        return {"approvals": [a.to_wire() for a in self._services.approvals.list(task_id=p.task_id)]}

    def _approve(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """approveRequest。"""

        p = ApproveParams.model_validate(params)
        resolution = self._services.approvals.resolve(p.approval_id, ApprovalDecision.APPROVED)
        return {"ok": True, "resolution": resolution.to_payload()}

    def _deny(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """denyRequest。"""

        p = DenyParams.model_validate(params)
        resolution = self._services.approvals.resolve(p.approval_id, ApprovalDecision.DENIED, reason=p.reason)
        return {"ok": True, "resolution": resolution.to_payload()}

    def _modify(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """modifyRequest：以编辑后的参数批准。"""

        p = ModifyParams.model_validate(params)
        resolution = self._services.approvals.resolve(
            p.approval_id,
            ApprovalDecision.MODIFIED,
            reason=p.reason,
            parameters=p.parameters,
        )
        return {"ok": True, "resolution": resolution.to_payload()}

    def _resolve_all(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """resolveAllMatching：批量处理同名工具的全部待审批请求。"""

        p = ResolveAllParams.model_validate(params)
        count = self._services.approvals.resolve_all_matching(p.tool_name, parse_decision(p.decision), reason=p.reason)
        return {"count": count}

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from tasks_runtime.core.agent_config import AgentConfiguration
from tasks_runtime.core.contracts import MessageRole, Task, TaskState
from tasks_runtime.core.errors import ProviderError, ToolExecutionError
from tasks_runtime.core.task_manager import TaskManager
from tasks_runtime.llm.fake import FakeLlmClient
from tasks_runtime.llm.protocol import CompletionRequest, TextReply, ToolCallRequest
from tasks_runtime.safety.approval_manager import ApprovalManager
from tasks_runtime.safety.approvals import ApprovalDecision
from tasks_runtime.safety.policy import ApprovalPolicy, ApprovalTrustTracker
from tasks_runtime.sessions import WorkspaceSessionProvider
from tasks_runtime.tools.builtin import register_builtin_tools
from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolSpec
from tasks_runtime.tools.registry import ToolExecutionContext, ToolRegistry


class _Factory:
    def __init__(
        self,
        llm: FakeLlmClient,
        tools: ToolRegistry,
        *,
        policy: Optional[ApprovalPolicy] = None,
        max_iterations: int = 10,
    ) -> None:
        self._llm = llm
        self._tools = tools
        self._policy = policy or ApprovalPolicy.preset("default")
        self._max_iterations = max_iterations

    def build(self, prompt: str) -> AgentConfiguration:
        return AgentConfiguration(
            name="test-agent",
            system_prompt="You are a test agent.",
            tools=self._tools,
            llm_provider=self._llm,
            max_iterations=self._max_iterations,
            approval_policy=self._policy,
        )


class _SpyBash:
    """记录调用参数的高风险工具（替代真实 Bash）。"""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        self.calls.append(dict(call.args))
        return ToolResult.ok_payload(stdout=f"ran: {call.args.get('command')}")


def _builtin_tools() -> ToolRegistry:
    reg = ToolRegistry()
    register_builtin_tools(reg)
    return reg


def _spy_tools() -> Tuple[ToolRegistry, _SpyBash]:
    spy = _SpyBash()
    reg = ToolRegistry()
    reg.register(ToolSpec(name="Bash", description="spy shell", risk_level=RiskLevel.HIGH), spy)
    return reg, spy


def _manager(tmp_path: Path, **kw: Any) -> TaskManager:
    return TaskManager(
        session_provider=WorkspaceSessionProvider(base_dir=tmp_path / "state"),
        approvals=kw.pop("approvals", None) or ApprovalManager(),
        **kw,
    )


async def _wait_for_state(tm: TaskManager, task_id: str, state: TaskState, *, timeout: float = 5.0) -> Task:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        task = tm.require(task_id)
        if task.state is state:
            return task
        if task.state.is_terminal or asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"task {task_id} is {task.state.value}, expected {state.value}")
        await asyncio.sleep(0.01)


def _last_tool_stdout(request: CompletionRequest) -> str:
    for m in reversed(request.messages):
        if m.role is MessageRole.TOOL and m.tool_call_id:
            return json.loads(m.content).get("stdout", "")
    return ""


def _kinds(task: Task) -> List[Optional[str]]:
    return [m.kind for m in task.messages]


# ----------------------------
# auto-approved read-only tool
# ----------------------------


def test_auto_approved_glob_completes_without_approvals(tmp_path: Path) -> None:
    data = tmp_path / "listing"
    data.mkdir()
    for name in ("alpha.txt", "beta.txt"):
        (data / name).write_text(name, encoding="utf-8")

    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Glob", arguments={"pattern": "*", "path": str(data)}),
            lambda req: TextReply(text=f"Files:\n{_last_tool_stdout(req)}"),
        ]
    )
    approvals = ApprovalManager()

    async def _go():
        tm = _manager(tmp_path, approvals=approvals)
        created = await tm.submit("list files in the listing dir", "cli", factory=_Factory(llm, _builtin_tools()))
        assert created.state is TaskState.SUBMITTED
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.COMPLETED
    assert task.completed_at is not None
    assert task.iterations == 2
    assert task.last_message.role is MessageRole.ASSISTANT
    assert "alpha.txt" in task.last_message.content and "beta.txt" in task.last_message.content
    assert [m.role for m in task.messages] == [
        MessageRole.USER,
        MessageRole.ASSISTANT,
        MessageRole.TOOL,
        MessageRole.ASSISTANT,
    ]
    assert "approval" not in _kinds(task)
    assert approvals.list() == []
    # 工具描述随请求传给模型
    assert [s.name for s in llm.requests[0].tools] == ["Read", "Glob", "Grep", "Write", "Edit", "Bash"]


# ----------------------------
# approval round trips
# ----------------------------


def test_bash_requires_approval_then_completes(tmp_path: Path) -> None:
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": "echo hello"}),
            lambda req: TextReply(text=f"output: {_last_tool_stdout(req).strip()}"),
        ]
    )
    approvals = ApprovalManager()

    async def _go():
        tm = _manager(tmp_path, approvals=approvals)
        created = await tm.submit("say hello in the shell", "cli", factory=_Factory(llm, _builtin_tools()))
        waiting = await _wait_for_state(tm, created.id, TaskState.INPUT_REQUIRED)
        pending = approvals.list(task_id=created.id)
        assert len(pending) == 1
        assert waiting.pending_approval_id == pending[0].id
        assert pending[0].tool_name == "Bash"
        assert pending[0].risk_level is RiskLevel.HIGH
        assert pending[0].parameters == {"command": "echo hello"}
        assert pending[0].agent_id == "test-agent"

        approvals.resolve(pending[0].id, "approve")
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.COMPLETED
    assert task.pending_approval_id is None
    assert task.last_message.content == "output: hello"
    archived = [m for m in task.messages if m.kind == "approval"]
    assert len(archived) == 1
    assert archived[0].metadata["decision"] == "approved"
    assert archived[0].metadata["resolvedBy"] == "human"
    assert archived[0].metadata["toolName"] == "Bash"


def test_denied_tool_is_never_executed(tmp_path: Path) -> None:
    tools, spy = _spy_tools()
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": "rm -rf /"}),
            TextReply(text="Understood, I will not run that."),
        ]
    )
    approvals = ApprovalManager()

    async def _go():
        tm = _manager(tmp_path, approvals=approvals)
        created = await tm.submit("clean up", "cli", factory=_Factory(llm, tools))
        await _wait_for_state(tm, created.id, TaskState.INPUT_REQUIRED)
        (pending,) = approvals.list()
        approvals.resolve(pending.id, "deny", reason="not safe")
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert spy.calls == []
    assert task.state is TaskState.COMPLETED
    denial = next(m for m in task.messages if m.kind == "denial")
    assert denial.role is MessageRole.TOOL
    assert denial.tool_call_id == "call_1"
    assert "not safe" in denial.content
    assert denial.metadata["reason"] == "not safe"
    # 模型在下一轮看到拒绝说明
    assert any(m.kind == "denial" for m in llm.requests[1].messages)


def test_modified_parameters_replace_original_arguments(tmp_path: Path) -> None:
    tools, spy = _spy_tools()
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": "rm -rf build"}),
            TextReply(text="done"),
        ]
    )
    approvals = ApprovalManager()

    async def _go():
        tm = _manager(tmp_path, approvals=approvals)
        created = await tm.submit("clean the build", "cli", factory=_Factory(llm, tools))
        await _wait_for_state(tm, created.id, TaskState.INPUT_REQUIRED)
        (pending,) = approvals.list()
        approvals.resolve(pending.id, "modify", parameters={"command": "rm -rf build/tmp"})
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.COMPLETED
    assert spy.calls == [{"command": "rm -rf build/tmp"}]
    archived = next(m for m in task.messages if m.kind == "approval")
    assert archived.metadata["decision"] == "modified"
    assert archived.metadata["parameters"] == {"command": "rm -rf build/tmp"}


def test_approval_timeout_applies_default_deny(tmp_path: Path) -> None:
    tools, spy = _spy_tools()
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": "make deploy"}),
            TextReply(text="gave up"),
        ]
    )
    policy = ApprovalPolicy(tool_rules={"Bash": "require_approval"}, timeout_sec=0.05)

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("deploy", "cli", factory=_Factory(llm, tools, policy=policy))
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert spy.calls == []
    assert task.state is TaskState.COMPLETED
    archived = next(m for m in task.messages if m.kind == "approval")
    assert archived.metadata["decision"] == "denied"
    assert archived.metadata["resolvedBy"] == "timeout"


def test_trust_threshold_skips_repeat_approvals(tmp_path: Path) -> None:
    tools, spy = _spy_tools()
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": "ls"}),
            ToolCallRequest(call_id="call_2", name="Bash", arguments={"command": "pwd"}),
            TextReply(text="done"),
        ]
    )
    policy = ApprovalPolicy(max_auto_approve_risk=RiskLevel.LOW, trust_after_count=1)
    approvals = ApprovalManager()
    trust = ApprovalTrustTracker()

    async def _go():
        tm = _manager(tmp_path, approvals=approvals, trust=trust)
        created = await tm.submit("look around", "cli", factory=_Factory(llm, tools, policy=policy))
        await _wait_for_state(tm, created.id, TaskState.INPUT_REQUIRED)
        (pending,) = approvals.list()
        approvals.resolve(pending.id, "approve")
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.COMPLETED
    assert spy.calls == [{"command": "ls"}, {"command": "pwd"}]
    assert _kinds(task).count("approval") == 1
    assert trust.count("Bash") == 1


def test_timeout_approvals_do_not_build_trust(tmp_path: Path) -> None:
    tools, spy = _spy_tools()
    policy = ApprovalPolicy(max_auto_approve_risk=RiskLevel.LOW, timeout_sec=0.05, trust_after_count=1)
    approvals = ApprovalManager(timeout_decision="approve")
    trust = ApprovalTrustTracker()

    def _script(command: str) -> FakeLlmClient:
        return FakeLlmClient(
            [
                ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": command}),
                TextReply(text="done"),
            ]
        )

    async def _go():
        tm = _manager(tmp_path, approvals=approvals, trust=trust)
        tasks = []
        for command in ("ls", "pwd"):
            created = await tm.submit(command, "cli", factory=_Factory(_script(command), tools, policy=policy))
            tasks.append(await tm.wait_for_terminal(created.id, timeout=5))
        return tasks

    first, second = asyncio.run(_go())
    assert spy.calls == [{"command": "ls"}, {"command": "pwd"}]
    assert trust.count("Bash") == 0
    for task in (first, second):
        assert task.state is TaskState.COMPLETED
        archived = next(m for m in task.messages if m.kind == "approval")
        assert archived.metadata["decision"] == "approved"
        assert archived.metadata["resolvedBy"] == "timeout"


# ----------------------------
# failure paths
# ----------------------------


def test_iteration_limit_fails_task(tmp_path: Path) -> None:
    llm = FakeLlmClient.always_tool("Glob", {"pattern": "*"})

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("loop forever", "cli", factory=_Factory(llm, _builtin_tools(), max_iterations=3))
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.FAILED
    assert task.iterations == 3
    assert llm.calls == 3
    assert task.error["error_kind"] == "iteration_limit"
    assert task.last_message.kind == "error"
    assert "iteration_limit" in task.last_message.content


def test_provider_error_fails_task(tmp_path: Path) -> None:
    llm = FakeLlmClient([ProviderError("backend unreachable")])

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("hello", "content", factory=_Factory(llm, _builtin_tools()))
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.FAILED
    assert task.error["error_kind"] == "provider_error"
    assert task.last_message.content.startswith("Task failed (provider_error)")


def test_fatal_tool_error_fails_task(tmp_path: Path) -> None:
    def _fatal(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise ToolExecutionError("storage offline", fatal=True)

    tools = ToolRegistry()
    tools.register(ToolSpec(name="Lookup", description="lookup", risk_level=RiskLevel.LOW), _fatal)
    llm = FakeLlmClient([ToolCallRequest(call_id="call_1", name="Lookup"), TextReply(text="unreachable")])

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("look it up", "cli", factory=_Factory(llm, tools))
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.FAILED
    assert task.error["error_kind"] == "tool_error"
    assert llm.calls == 1


def test_unknown_tool_is_reported_back_to_model(tmp_path: Path) -> None:
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Teleport", arguments={}),
            TextReply(text="that tool does not exist"),
        ]
    )

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("teleport", "cli", factory=_Factory(llm, _builtin_tools()))
        return await tm.wait_for_terminal(created.id, timeout=5)

    task = asyncio.run(_go())
    assert task.state is TaskState.COMPLETED
    tool_msg = next(m for m in task.messages if m.role is MessageRole.TOOL)
    assert tool_msg.metadata["errorKind"] == "not_found"
    assert tool_msg.tool_call_id == "call_1"


# ----------------------------
# cancellation
# ----------------------------


def test_cancel_while_waiting_for_llm(tmp_path: Path) -> None:
    llm = FakeLlmClient([TextReply(text="too late")], delay_sec=10)

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("slow", "cli", factory=_Factory(llm, _builtin_tools()))
        await _wait_for_state(tm, created.id, TaskState.WORKING)
        await asyncio.sleep(0.05)
        assert tm.cancel(created.id) is True
        return await tm.wait_for_terminal(created.id, timeout=2)

    task = asyncio.run(_go())
    assert task.state is TaskState.CANCELLED
    assert task.last_message.kind == "cancelled"
    assert not any(m.content == "too late" for m in task.messages)


def test_cancel_while_awaiting_approval(tmp_path: Path) -> None:
    tools, spy = _spy_tools()
    llm = FakeLlmClient([ToolCallRequest(call_id="call_1", name="Bash", arguments={"command": "ls"})])
    approvals = ApprovalManager()

    async def _go():
        tm = _manager(tmp_path, approvals=approvals)
        created = await tm.submit("ls", "cli", factory=_Factory(llm, tools))
        waiting = await _wait_for_state(tm, created.id, TaskState.INPUT_REQUIRED)
        assert tm.cancel(created.id) is True
        task = await tm.wait_for_terminal(created.id, timeout=2)
        # 终态 task 的取消是 no-op
        assert tm.cancel(created.id) is False
        return task, waiting.pending_approval_id

    task, approval_id = asyncio.run(_go())
    assert task.state is TaskState.CANCELLED
    assert spy.calls == []
    assert approvals.list() == []
    assert approvals.get_resolution(approval_id).decision is ApprovalDecision.CANCELLED
    archived = next(m for m in task.messages if m.kind == "approval")
    assert archived.metadata["decision"] == "cancelled"


def test_cancel_while_tool_in_flight(tmp_path: Path) -> None:
    started = []

    async def _slow(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        started.append(call.call_id)
        await asyncio.sleep(0.2)
        return ToolResult.ok_payload(stdout="slow result")

    tools = ToolRegistry()
    tools.register(ToolSpec(name="Slow", description="slow lookup", risk_level=RiskLevel.LOW), _slow)
    llm = FakeLlmClient([ToolCallRequest(call_id="call_1", name="Slow"), TextReply(text="never asked")])

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("slow lookup", "cli", factory=_Factory(llm, tools))
        while not started:
            await asyncio.sleep(0.01)
        assert tm.cancel(created.id) is True
        return await tm.wait_for_terminal(created.id, timeout=2)

    task = asyncio.run(_go())
    assert task.state is TaskState.CANCELLED
    assert llm.calls == 1
    tool_msg = next(m for m in task.messages if m.role is MessageRole.TOOL)
    assert tool_msg.tool_call_id == "call_1"
    assert "slow result" in tool_msg.content
    assert task.last_message.kind == "cancelled"
    assert not any(m.content == "never asked" for m in task.messages)


def test_messages_are_append_only_across_snapshots(tmp_path: Path) -> None:
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="call_1", name="Glob", arguments={"pattern": "*"}),
            TextReply(text="done"),
        ]
    )
    snapshots: List[Task] = []

    async def _go():
        tm = _manager(tmp_path)
        created = await tm.submit("list", "cli", factory=_Factory(llm, _builtin_tools()))

        def _listener(event) -> None:
            snapshots.append(tm.require(created.id))

        tm.add_listener(_listener)
        return await tm.wait_for_terminal(created.id, timeout=5)

    final = asyncio.run(_go())
    for snap in snapshots:
        n = len(snap.messages)
        assert [m.to_wire() for m in final.messages[:n]] == [m.to_wire() for m in snap.messages]

from __future__ import annotations

import httpx
import pytest
from pydantic import ValidationError

from tasks_runtime.core.contracts import (
    TERMINAL_STATES,
    Message,
    MessageRole,
    Task,
    TaskEvent,
    TaskPriority,
    TaskState,
    can_transition,
)
from tasks_runtime.core.errors import (
    IterationLimitExceeded,
    NotFoundError,
    ProviderError,
    SessionCreationError,
    ToolExecutionError,
    UserError,
)
from tasks_runtime.core.loop_controller import LoopController
from tasks_runtime.core.run_errors import TaskErrorKind, classify_task_exception
from tasks_runtime.tools.protocol import RiskLevel, ToolCall


def test_state_machine_transitions() -> None:
    assert can_transition(TaskState.SUBMITTED, TaskState.WORKING)
    assert can_transition(TaskState.WORKING, TaskState.INPUT_REQUIRED)
    assert can_transition(TaskState.INPUT_REQUIRED, TaskState.WORKING)
    assert can_transition(TaskState.INPUT_REQUIRED, TaskState.CANCELLED)
    assert not can_transition(TaskState.SUBMITTED, TaskState.INPUT_REQUIRED)
    assert not can_transition(TaskState.SUBMITTED, TaskState.COMPLETED)
    for terminal in TERMINAL_STATES:
        assert terminal.is_terminal
        assert not any(can_transition(terminal, s) for s in TaskState)


def test_priority_and_risk_ordering() -> None:
    assert TaskPriority.HIGH.rank > TaskPriority.NORMAL.rank > TaskPriority.LOW.rank
    assert RiskLevel.CRITICAL.exceeds(RiskLevel.HIGH)
    assert not RiskLevel.MEDIUM.exceeds(RiskLevel.MEDIUM)


def test_wire_format_is_camel_case() -> None:
    call = ToolCall(call_id="call_1", name="Bash", args={"command": "ls"})
    msg = Message(role=MessageRole.ASSISTANT, content="", tool_call=call)
    task = Task(id="task_1", prompt="p", session_id="sess_1", runner="cli", messages=[msg])

    wire = task.to_wire()
    assert wire["sessionId"] == "sess_1"
    assert wire["state"] == "submitted"
    assert "completedAt" not in wire
    assert wire["messages"][0]["toolCall"] == {"call_id": "call_1", "name": "Bash", "args": {"command": "ls"}}
    assert Task.model_validate(wire).to_wire() == wire


def test_messages_are_frozen() -> None:
    msg = Message(role=MessageRole.USER, content="hi")
    with pytest.raises(ValidationError):
        msg.content = "changed"


def test_event_model_rejects_unknown_types() -> None:
    with pytest.raises(ValidationError):
        TaskEvent(type="other", task_id="t", sequence=1)
    ev = TaskEvent(type="stateChange", task_id="t", sequence=1, payload={"state": "working"}, final=False)
    assert ev.to_wire()["taskId"] == "t"


def test_loop_controller_budget() -> None:
    lc = LoopController(max_iterations=2)
    assert lc.try_begin_iteration()
    assert lc.try_begin_iteration()
    assert not lc.try_begin_iteration()
    assert lc.iterations == 2

    def _boom() -> bool:
        raise RuntimeError("checker bug")

    assert LoopController(max_iterations=1, cancel_checker=_boom).is_cancelled() is False
    with pytest.raises(ValueError):
        LoopController(max_iterations=0)


# ----------------------------
# classify_task_exception
# ----------------------------


def _status_error(code: int, *, headers=None, body=None) -> httpx.HTTPStatusError:
    req = httpx.Request("POST", "http://llm.test/v1/chat/completions")
    resp = httpx.Response(code, request=req, headers=headers or {}, json=body or {})
    return httpx.HTTPStatusError(f"HTTP {code}", request=req, response=resp)


def test_classify_iteration_limit() -> None:
    err = classify_task_exception(IterationLimitExceeded(3))
    assert err.error_kind is TaskErrorKind.ITERATION_LIMIT
    assert err.details == {"max_iterations": 3}
    assert err.to_payload()["error_kind"] == "iteration_limit"


def test_classify_provider_errors() -> None:
    plain = classify_task_exception(ProviderError("down"))
    assert plain.error_kind is TaskErrorKind.PROVIDER_ERROR
    assert plain.retryable

    limited = classify_task_exception(ProviderError("x", cause=_status_error(429, headers={"Retry-After": "2"})))
    assert limited.error_kind is TaskErrorKind.RATE_LIMITED
    assert limited.retry_after_ms == 2000
    assert limited.to_payload()["retry_after_ms"] == 2000

    timeout = classify_task_exception(ProviderError("x", cause=httpx.ReadTimeout("slow")))
    assert timeout.error_kind is TaskErrorKind.PROVIDER_ERROR
    assert timeout.details == {"kind": "timeout"}


def test_classify_tool_session_and_config_errors() -> None:
    tool = classify_task_exception(ToolExecutionError("bad", retryable=True, fatal=True))
    assert tool.error_kind is TaskErrorKind.TOOL_ERROR
    assert tool.details == {"fatal": True}

    assert classify_task_exception(SessionCreationError("x")).error_kind is TaskErrorKind.SESSION_ERROR
    assert classify_task_exception(UserError("bad config")).error_kind is TaskErrorKind.CONFIG_ERROR
    assert classify_task_exception(ValueError("missing key")).error_kind is TaskErrorKind.CONFIG_ERROR
    assert classify_task_exception(RuntimeError()).message == "RuntimeError"


def test_not_found_error_carries_kind() -> None:
    err = NotFoundError("task", "task_x")
    assert err.kind == "task"
    assert err.details == {"kind": "task", "id": "task_x"}
    assert str(err) == "NOT_FOUND: task not found: task_x"

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List

import pytest

from tasks_runtime.core.errors import ToolExecutionError, UserError
from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolSpec, tool_spec_to_openai_tool
from tasks_runtime.tools.registry import ToolExecutionContext, ToolRegistry


def _ctx(tmp_path: Path) -> ToolExecutionContext:
    return ToolExecutionContext(workspace_root=tmp_path, task_id="task_test")


def _spec(name: str, **kw) -> ToolSpec:
    return ToolSpec(name=name, description=f"{name} tool", **kw)


def test_register_rejects_duplicates_unless_override() -> None:
    reg = ToolRegistry()
    reg.register(_spec("Echo"), lambda call, ctx: ToolResult.ok_payload(stdout="a"))
    with pytest.raises(UserError):
        reg.register(_spec("Echo"), lambda call, ctx: ToolResult.ok_payload(stdout="b"))
    reg.register(_spec("Echo", risk_level=RiskLevel.HIGH), lambda call, ctx: ToolResult.ok_payload(stdout="b"), override=True)

    assert "Echo" in reg
    assert reg.get_spec("Echo").risk_level is RiskLevel.HIGH
    assert reg.find_spec("Missing") is None
    with pytest.raises(UserError):
        reg.get_spec("Missing")


def test_execute_unknown_tool_returns_not_found(tmp_path: Path) -> None:
    reg = ToolRegistry()
    result = asyncio.run(reg.execute(ToolCall(call_id="c1", name="Nope"), ctx=_ctx(tmp_path)))
    assert not result.ok
    assert result.error_kind == "not_found"
    assert json.loads(result.content)["ok"] is False


def test_execute_supports_sync_and_async_handlers(tmp_path: Path) -> None:
    reg = ToolRegistry()

    def _sync(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        return ToolResult.ok_payload(stdout=f"sync:{call.args['x']}")

    async def _async(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        await asyncio.sleep(0)
        return ToolResult.ok_payload(stdout=f"async:{ctx.task_id}")

    reg.register(_spec("Sync"), _sync)
    reg.register(_spec("Async"), _async)

    async def _go():
        a = await reg.execute(ToolCall(call_id="c1", name="Sync", args={"x": 1}), ctx=_ctx(tmp_path))
        b = await reg.execute(ToolCall(call_id="c2", name="Async"), ctx=_ctx(tmp_path))
        return a, b

    a, b = asyncio.run(_go())
    assert a.ok and a.details["stdout"] == "sync:1"
    assert b.ok and b.details["stdout"] == "async:task_test"


def test_retryable_errors_are_retried_within_budget(tmp_path: Path) -> None:
    attempts: List[int] = []

    def _flaky(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        attempts.append(1)
        if len(attempts) < 3:
            raise ToolExecutionError("temporary", retryable=True)
        return ToolResult.ok_payload(stdout="ok")

    reg = ToolRegistry()
    reg.register(_spec("Flaky", max_retries=2), _flaky)
    result = asyncio.run(reg.execute(ToolCall(call_id="c1", name="Flaky"), ctx=_ctx(tmp_path)))

    assert result.ok
    assert len(attempts) == 3


def test_retry_budget_exhausted_returns_tool_error(tmp_path: Path) -> None:
    attempts: List[int] = []

    def _always(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        attempts.append(1)
        raise ToolExecutionError("still down", retryable=True)

    reg = ToolRegistry()
    reg.register(_spec("Down", max_retries=1), _always)
    result = asyncio.run(reg.execute(ToolCall(call_id="c1", name="Down"), ctx=_ctx(tmp_path)))

    assert not result.ok
    assert result.error_kind == "tool_error"
    assert result.details["data"] == {"attempts": 2}
    assert len(attempts) == 2


def test_fatal_error_propagates(tmp_path: Path) -> None:
    def _fatal(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise ToolExecutionError("disk gone", fatal=True)

    reg = ToolRegistry()
    reg.register(_spec("Fatal"), _fatal)
    with pytest.raises(ToolExecutionError):
        asyncio.run(reg.execute(ToolCall(call_id="c1", name="Fatal"), ctx=_ctx(tmp_path)))


def test_unexpected_exceptions_become_failed_results(tmp_path: Path) -> None:
    def _boom(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise RuntimeError("boom")

    def _bad_input(call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        raise UserError("bad input")

    reg = ToolRegistry()
    reg.register(_spec("Boom"), _boom)
    reg.register(_spec("Bad"), _bad_input)

    async def _go():
        a = await reg.execute(ToolCall(call_id="c1", name="Boom"), ctx=_ctx(tmp_path))
        b = await reg.execute(ToolCall(call_id="c2", name="Bad"), ctx=_ctx(tmp_path))
        return a, b

    a, b = asyncio.run(_go())
    assert a.error_kind == "unknown" and "boom" in a.message
    assert b.error_kind == "validation" and b.message == "bad input"


def test_subset_keeps_registration_order_and_rejects_unknown() -> None:
    reg = ToolRegistry()
    for name in ("A", "B", "C"):
        reg.register(_spec(name), lambda call, ctx: ToolResult.ok_payload())

    sub = reg.subset(["C", "A"])
    assert [s.name for s in sub.list_specs()] == ["C", "A"]
    assert "B" not in sub
    with pytest.raises(UserError):
        reg.subset(["A", "Z"])


def test_resolve_path_confines_writes_to_workspace(tmp_path: Path) -> None:
    ctx = _ctx(tmp_path)
    assert ctx.resolve_path("sub/file.txt") == (tmp_path / "sub" / "file.txt").resolve()
    with pytest.raises(UserError):
        ctx.resolve_path("../escape.txt")
    assert ctx.resolve_path("/etc", allow_outside=True) == Path("/etc").resolve()


def test_tool_spec_to_openai_tool_shape() -> None:
    spec = _spec("Echo", parameters={"type": "object", "properties": {"x": {"type": "string"}}})
    tool = tool_spec_to_openai_tool(spec)
    assert tool["type"] == "function"
    assert tool["function"]["name"] == "Echo"
    assert tool["function"]["parameters"]["properties"]["x"]["type"] == "string"

    empty = tool_spec_to_openai_tool(_spec("Bare"))
    assert empty["function"]["parameters"] == {"type": "object", "properties": {}}

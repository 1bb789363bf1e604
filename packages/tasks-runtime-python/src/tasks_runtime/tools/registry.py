"""
ToolRegistry：工具注册表与执行派发。

本模块提供：
- 注册：`register/get_spec/find_spec/list_specs/subset`
- 执行：`execute(ToolCall, ctx=...) -> ToolResult`（含 tool 自定义重试）

约束：
- 未注册的 tool 不抛异常，返回 `error_kind=not_found` 的 ToolResult（由 Agent Loop 回注给模型）；
- `ToolExecutionError(fatal=True)` 在重试耗尽后向上抛出，由 Agent Loop 终止 task；
- 其他异常一律收敛为失败结果（不影响 loop 继续）。
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, Optional, Union

from tasks_runtime.core.errors import ToolExecutionError, UserError
from tasks_runtime.tools.protocol import ToolCall, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

ToolHandler = Callable[[ToolCall, "ToolExecutionContext"], Union[ToolResult, Awaitable[ToolResult]]]


@dataclass
class ToolExecutionContext:
    """
    Tool 执行上下文（Agent Loop 按 task 注入）。

    字段：
    - workspace_root：session 工作区根目录（相对路径解析基准）
    - task_id：所属 task（用于日志关联）
    - cancel_checker：可选；长耗时工具可据此提前结束
    - default_timeout_ms：tool 未提供 timeout_ms 时的默认值（Bash）
    - max_file_bytes：Read 默认最大读取字节数
    """

    workspace_root: Path
    task_id: str
    cancel_checker: Optional[Callable[[], bool]] = None
    default_timeout_ms: int = 60_000
    max_file_bytes: int = 256 * 1024

    def resolve_path(self, path: str, *, allow_outside: bool = False) -> Path:
        """
        将用户提供的 path 解析为绝对路径。

        参数：
        - path：相对（相对 workspace_root）或绝对路径
        - allow_outside：是否允许落在 workspace_root 之外（只读类工具使用）

        异常：
        - `UserError`：当路径逃逸 workspace_root 且不允许时抛出
        """

        root = Path(self.workspace_root).resolve()
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = root / p
        p = p.resolve()
        if not allow_outside and not p.is_relative_to(root):
            raise UserError(f"path escapes session workspace: {p}")
        return p

    def is_cancelled(self) -> bool:
        """检查所属 task 是否已被取消（异常时 fail-open 返回 False）。"""

        if self.cancel_checker is None:
            return False
        try:
            return bool(self.cancel_checker())
        except Exception:
            return False


class ToolRegistry:
    """工具注册表（名称 → spec + handler）。"""

    def __init__(self) -> None:
        """创建空注册表。"""

        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, ToolHandler] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler, *, override: bool = False) -> None:
        """
        注册工具。

        参数：
        - spec：工具规格
        - handler：工具执行函数（同步函数会在线程中执行；协程函数直接 await）
        - override：是否允许覆盖同名工具；默认 False（重复注册抛 UserError）
        """

        name = spec.name
        if name in self._specs and not override:
            raise UserError(f"tool already registered: {name}")
        self._specs[name] = spec
        self._handlers[name] = handler

    def __contains__(self, name: object) -> bool:
        """判断工具是否已注册。"""

        return name in self._specs

    def get_spec(self, name: str) -> ToolSpec:
        """获取工具规格；不存在则抛 `UserError`。"""

        try:
            return self._specs[name]
        except KeyError as e:
            raise UserError(f"unknown tool: {name}") from e

    def find_spec(self, name: str) -> Optional[ToolSpec]:
        """获取工具规格；不存在返回 None。"""

        return self._specs.get(name)

    def list_specs(self) -> list[ToolSpec]:
        """按注册顺序返回所有工具规格。"""

        return list(self._specs.values())

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """
        构造只包含指定工具的新注册表（runner 级工具集合）。

        异常：
        - `UserError`：names 中包含未注册的工具
        """

        out = ToolRegistry()
        for name in names:
            out.register(self.get_spec(name), self._handlers[name])
        return out

    async def execute(self, call: ToolCall, *, ctx: ToolExecutionContext) -> ToolResult:
        """
        执行一个 ToolCall（含 tool 自定义重试）。

        参数：
        - call：工具调用（已解析 arguments）
        - ctx：task 级执行上下文

        返回：
        - ToolResult（失败同样以 ToolResult 返回）

        异常：
        - `ToolExecutionError`：仅当 fatal=True 且重试耗尽时抛出
        """

        handler = self._handlers.get(call.name)
        if handler is None:
            return ToolResult.error_payload(
                error_kind="not_found",
                stderr=f"unknown tool: {call.name}",
                data={"tool": call.name},
            )

        spec = self._specs[call.name]
        attempt = 0
        while True:
            try:
                return await self._invoke(handler, call, ctx)
            except ToolExecutionError as e:
                if e.retryable and attempt < spec.max_retries:
                    attempt += 1
                    logger.info(
                        "tool %s failed for task %s (retry %d/%d): %s",
                        call.name,
                        ctx.task_id,
                        attempt,
                        spec.max_retries,
                        e,
                    )
                    if spec.retry_delay_sec > 0:
                        await asyncio.sleep(spec.retry_delay_sec)
                    continue
                if e.fatal:
                    raise
                return ToolResult.error_payload(
                    error_kind="tool_error",
                    stderr=str(e),
                    retryable=e.retryable,
                    data={"attempts": attempt + 1},
                )
            except UserError as e:
                return ToolResult.error_payload(error_kind="validation", stderr=e.message)
            except Exception as e:
                logger.warning("tool %s raised for task %s", call.name, ctx.task_id, exc_info=True)
                return ToolResult.error_payload(error_kind="unknown", stderr=str(e) or type(e).__name__)

    async def _invoke(self, handler: ToolHandler, call: ToolCall, ctx: ToolExecutionContext) -> ToolResult:
        """调用 handler：协程函数直接 await，同步函数放到线程中执行（避免阻塞事件循环）。"""

        if inspect.iscoroutinefunction(handler):
            result = await handler(call, ctx)
        else:
            result = await asyncio.to_thread(handler, call, ctx)
        if not isinstance(result, ToolResult):
            raise TypeError(f"tool handler must return ToolResult, got {type(result).__name__}")
        return result

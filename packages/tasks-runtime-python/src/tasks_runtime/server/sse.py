"""
SSE 编码：把 TaskEvent 流转换为 `text/event-stream`。

格式：
- `event: <message|stateChange>`
- `data: <JSON-RPC response>`（result 为 TaskEvent 的 camelCase JSON）
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

from fastapi import Request

from tasks_runtime.core.contracts import TaskEvent
from tasks_runtime.server.jsonrpc import RequestId, rpc_result

logger = logging.getLogger(__name__)


def _format_sse_event(*, event: str, data_json: str) -> str:
    """
    格式化一条 SSE 消息。

    约束：
    - event：事件名（字符串）
    - data：单行 JSON 字符串
    """

    return f"event: {event}\n" f"data: {data_json}\n\n"


def stream_task_events_as_sse(
    *,
    request: Request,
    events: AsyncIterator[TaskEvent],
    request_id: RequestId,
) -> AsyncIterator[bytes]:
    """
    将 TaskEvent 流编码为 SSE 字节流。

    终止条件：
    - 事件流结束（task 进入终态）
    - 或客户端断开连接
    """

    async def _gen() -> AsyncIterator[bytes]:
        """逐个编码事件；结束时关闭底层事件流（释放订阅）。"""

        try:
            async for ev in events:
                data = json.dumps(rpc_result(request_id, ev.to_wire()), ensure_ascii=False)
                yield _format_sse_event(event=ev.type, data_json=data).encode("utf-8")
                if ev.final:
                    return
                try:
                    if await request.is_disconnected():
                        logger.debug("SSE client disconnected from task %s", ev.task_id)
                        return
                except Exception:
                    # fail-open：断连检测异常不阻断
                    pass
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

    return _gen()

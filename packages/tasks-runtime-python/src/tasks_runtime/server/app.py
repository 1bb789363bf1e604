"""
FastAPI app：A2A 风格的 Protocol Server。

端点：
- `POST /a2a`：JSON-RPC 2.0（单请求）；`streamTaskUpdates` 以 SSE 应答
- `POST /a2a/stream`：同上（为只支持单独流式入口的客户端保留）
- `GET /.well-known/agent.json`：AgentCard
- `GET /health`：存活检查（不含业务逻辑）
- `GET /`：服务信息

约束：
- 所有 handler 都是 async：Agent Loop 与 handler 运行在同一个事件循环上；
- JSON-RPC 错误以 HTTP 200 + error 对象返回。
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from tasks_runtime.server.jsonrpc import (
    INVALID_REQUEST,
    PARSE_ERROR,
    JsonRpcRequest,
    format_rpc_error,
    rpc_error,
    rpc_result,
)
from tasks_runtime.server.methods import STREAM_METHOD, RpcMethods, StreamTaskParams
from tasks_runtime.server.sse import stream_task_events_as_sse

if TYPE_CHECKING:
    from tasks_runtime.bootstrap import RuntimeServices

logger = logging.getLogger(__name__)


def create_app(services: "RuntimeServices") -> FastAPI:
    """
    构造 FastAPI app。

    参数：
    - services：显式装配的服务集合（app 关闭时调用 `services.aclose()`）
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        """生命周期：关闭时取消运行中的 task。"""

        yield
        await services.aclose()

    from tasks_runtime import __version__

    app = FastAPI(title="tasks-runtime", version=__version__, lifespan=lifespan)
    app.state.services = services
    methods = RpcMethods(services)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """存活检查。"""

        return {"status": "ok"}

    @app.get("/")
    async def index() -> Dict[str, Any]:
        """服务信息。"""

        return {
            "name": services.agent_card.name,
            "version": __version__,
            "rpc": "/a2a",
            "agentCard": "/.well-known/agent.json",
            "runners": services.router.runners,
        }

    @app.get("/.well-known/agent.json")
    async def agent_card() -> Dict[str, Any]:
        """AgentCard。"""

        return services.agent_card.to_wire()

    async def _handle_rpc(request: Request) -> Any:
        """解析 JSON-RPC 请求并分派（streamTaskUpdates → SSE）。"""

        try:
            body = json.loads(await request.body())
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(rpc_error(None, PARSE_ERROR, "parse error"))

        request_id = body.get("id") if isinstance(body, dict) else None
        try:
            rpc = JsonRpcRequest.model_validate(body)
        except ValidationError:
            return JSONResponse(rpc_error(request_id, INVALID_REQUEST, "invalid request"))

        params = rpc.params or {}
        try:
            if rpc.method == STREAM_METHOD:
                p = StreamTaskParams.model_validate(params)
                events = services.task_manager.stream_events(p.task_id, include_history=p.include_history)
                body_iter = stream_task_events_as_sse(request=request, events=events, request_id=rpc.id)
                return StreamingResponse(body_iter, media_type="text/event-stream")
            result = await methods.dispatch(rpc.method, params)
        except Exception as e:
            code, message, data = format_rpc_error(e)
            if data.get("error_kind") == "internal":
                logger.exception("rpc %s raised unexpectedly", rpc.method)
            else:
                logger.info("rpc %s failed: %s", rpc.method, message)
            return JSONResponse(rpc_error(rpc.id, code, message, data=data))
        return JSONResponse(rpc_result(rpc.id, result))

    @app.post("/a2a")
    async def a2a(request: Request) -> Any:
        """JSON-RPC 入口。"""

        return await _handle_rpc(request)

    @app.post("/a2a/stream")
    async def a2a_stream(request: Request) -> Any:
        """JSON-RPC 流式入口（与 /a2a 等价）。"""

        return await _handle_rpc(request)

    return app

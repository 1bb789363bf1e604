"""
Protocol Server（A2A 风格 JSON-RPC over HTTP + SSE）。

说明：
- app 入口：`tasks_runtime.server.app.create_app(services)`；
- 本包 `__init__` 不导入 app，避免与 `tasks_runtime.bootstrap` 形成循环导入。
"""

from __future__ import annotations

from tasks_runtime.server.agent_card import AgentCard, build_agent_card

__all__ = ["AgentCard", "build_agent_card"]

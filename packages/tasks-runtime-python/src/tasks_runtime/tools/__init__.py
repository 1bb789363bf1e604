"""
Tools（协议 + 注册表 + 内置工具）。
"""

from __future__ import annotations

from tasks_runtime.tools.protocol import RiskLevel, ToolCall, ToolResult, ToolResultPayload, ToolSpec, tool_spec_to_openai_tool
from tasks_runtime.tools.registry import ToolExecutionContext, ToolHandler, ToolRegistry

__all__ = [
    "RiskLevel",
    "ToolCall",
    "ToolExecutionContext",
    "ToolHandler",
    "ToolRegistry",
    "ToolResult",
    "ToolResultPayload",
    "ToolSpec",
    "tool_spec_to_openai_tool",
]

"""
LLM client（协议 + fake + OpenAI-compatible chat.completions）。
"""

from __future__ import annotations

from tasks_runtime.llm.fake import FakeLlmClient
from tasks_runtime.llm.openai_chat import OpenAIChatClient
from tasks_runtime.llm.protocol import (
    CompletionRequest,
    LlmClient,
    LlmResponse,
    TextReply,
    ToolCallRequest,
    validate_llm_client,
)

__all__ = [
    "CompletionRequest",
    "FakeLlmClient",
    "LlmClient",
    "LlmResponse",
    "OpenAIChatClient",
    "TextReply",
    "ToolCallRequest",
    "validate_llm_client",
]

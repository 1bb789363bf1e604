"""
OpenAI-compatible `/chat/completions` client（非 streaming）。

说明：
- 只取第一条 tool_call（每个 task 内工具调用严格串行；多余的调用会被忽略并记录日志）；
- 429/5xx 按指数退避重试（上限 `llm.max_retries`）；其余 HTTP 错误直接抛 `ProviderError`。
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import random
from typing import Any, Dict, List, Optional

import httpx

from tasks_runtime.config.loader import TasksRuntimeLlmConfig
from tasks_runtime.core.contracts import Message, MessageRole
from tasks_runtime.core.errors import ProviderError
from tasks_runtime.core.utils import new_id
from tasks_runtime.llm.protocol import CompletionRequest, LlmResponse, TextReply, ToolCallRequest
from tasks_runtime.tools.protocol import tool_spec_to_openai_tool

logger = logging.getLogger(__name__)


def messages_to_openai(system_prompt: str, messages: List[Message]) -> List[Dict[str, Any]]:
    """
    将 task 消息历史映射为 chat.completions messages[]。

    规则：
    - assistant 的 tool_call 映射为 `tool_calls[]`；
    - tool 消息需要 tool_call_id；没有 tool_call_id 的 tool 消息（审批归档）不发送给模型。
    """

    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for m in messages:
        if m.role is MessageRole.USER:
            out.append({"role": "user", "content": m.content})
        elif m.role is MessageRole.ASSISTANT:
            item: Dict[str, Any] = {"role": "assistant", "content": m.content or None}
            if m.tool_call is not None:
                item["tool_calls"] = [
                    {
                        "id": m.tool_call.call_id,
                        "type": "function",
                        "function": {
                            "name": m.tool_call.name,
                            "arguments": json.dumps(m.tool_call.args, ensure_ascii=False),
                        },
                    }
                ]
            out.append(item)
        elif m.tool_call_id:
            out.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content})
    return out


def _parse_completion(data: Dict[str, Any]) -> LlmResponse:
    """
    解析 chat.completions 响应体。

    异常：
    - ProviderError：响应缺少 choices/message（协议不匹配）
    """

    try:
        message = data["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise ProviderError("malformed chat.completions response: missing choices[0].message") from e

    text = message.get("content") or ""
    tool_calls = message.get("tool_calls") or []
    if not tool_calls:
        return TextReply(text=str(text))

    if len(tool_calls) > 1:
        logger.info("model returned %d tool calls; executing only the first", len(tool_calls))
    call = tool_calls[0]
    fn = call.get("function") or {}
    raw_args = fn.get("arguments") or "{}"
    try:
        args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
    except json.JSONDecodeError:
        # 交给工具参数校验失败（可恢复），而不是让整个 task 失败
        args = {"_raw_arguments": raw_args}
    if not isinstance(args, dict):
        args = {"_raw_arguments": raw_args}
    return ToolCallRequest(
        call_id=str(call.get("id") or new_id("call")),
        name=str(fn.get("name") or ""),
        arguments=args,
        text=str(text) or None,
    )


class OpenAIChatClient:
    """OpenAI-compatible chat.completions 实现（httpx）。"""

    def __init__(
        self,
        cfg: TasksRuntimeLlmConfig,
        *,
        api_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        参数：
        - cfg：LLM 配置（base_url、api_key_env、timeout、重试）
        - api_key：可选的 API key 覆盖（仅内存；优先于环境变量）
        - transport：可选；测试注入 `httpx.MockTransport`
        """

        self._cfg = cfg
        self._api_key_override = api_key
        self._transport = transport

    def _endpoint(self) -> str:
        """返回 `/chat/completions` 的完整 URL。"""

        return f"{self._cfg.base_url.rstrip('/')}/chat/completions"

    def _auth_header(self) -> Dict[str, str]:
        """
        构造 Authorization header。

        异常：
        - ValueError：缺少 API key（override 与 env 均为空），由上层分类为 config_error
        """

        key = self._api_key_override or os.environ.get(self._cfg.api_key_env, "")
        if not key:
            raise ValueError(f"missing API key env var: {self._cfg.api_key_env}")
        return {"Authorization": f"Bearer {key}"}

    def _backoff_sec(self, attempt: int, response: Optional[httpx.Response]) -> float:
        """计算第 attempt 次重试的等待时间（优先 Retry-After，其次指数退避 + 抖动）。"""

        if response is not None:
            ra = response.headers.get("Retry-After")
            if ra:
                try:
                    sec = float(str(ra).strip())
                    if sec > 0:
                        return min(sec, 30.0)
                except ValueError:
                    pass
        base = self._cfg.retry_base_delay_sec * (2**attempt)
        return min(8.0, base) * (1.0 + random.uniform(0, 0.1))

    async def complete(self, request: CompletionRequest) -> LlmResponse:
        """发起一次 chat.completions 请求并解析为 TextReply / ToolCallRequest。"""

        payload: Dict[str, Any] = {
            "model": request.model or self._cfg.model,
            "messages": messages_to_openai(request.system_prompt, request.messages),
        }
        if request.tools:
            payload["tools"] = [tool_spec_to_openai_tool(s) for s in request.tools]
        if self._cfg.temperature is not None:
            payload["temperature"] = self._cfg.temperature
        headers = self._auth_header()

        attempt = 0
        async with httpx.AsyncClient(timeout=self._cfg.timeout_sec, transport=self._transport) as client:
            while True:
                try:
                    resp = await client.post(self._endpoint(), json=payload, headers=headers)
                    resp.raise_for_status()
                    return _parse_completion(resp.json())
                except httpx.HTTPStatusError as e:
                    code = e.response.status_code
                    if (code == 429 or 500 <= code <= 599) and attempt < self._cfg.max_retries:
                        delay = self._backoff_sec(attempt, e.response)
                        attempt += 1
                        logger.warning("LLM HTTP %d for task %s; retry %d in %.2fs", code, request.task_id, attempt, delay)
                        await asyncio.sleep(delay)
                        continue
                    raise ProviderError(f"LLM request failed: HTTP {code}", cause=e) from e
                except httpx.RequestError as e:
                    if attempt < self._cfg.max_retries:
                        delay = self._backoff_sec(attempt, None)
                        attempt += 1
                        logger.warning("LLM request error for task %s; retry %d in %.2fs: %s", request.task_id, attempt, delay, e)
                        await asyncio.sleep(delay)
                        continue
                    raise ProviderError(f"LLM request failed: {e}", cause=e) from e
                except json.JSONDecodeError as e:
                    raise ProviderError("LLM response is not valid JSON") from e

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

import tasks_runtime.llm.openai_chat as openai_mod
from tasks_runtime.config.loader import TasksRuntimeLlmConfig
from tasks_runtime.core.contracts import Message, MessageRole
from tasks_runtime.core.errors import ProviderError
from tasks_runtime.core.run_errors import TaskErrorKind, classify_task_exception
from tasks_runtime.llm.fake import FakeLlmClient, echo_client
from tasks_runtime.llm.openai_chat import OpenAIChatClient, messages_to_openai
from tasks_runtime.llm.protocol import CompletionRequest, TextReply, ToolCallRequest, validate_llm_client
from tasks_runtime.tools.builtin.bash import BASH_SPEC
from tasks_runtime.tools.protocol import ToolCall


def _request(text: str = "hello", **kw: Any) -> CompletionRequest:
    return CompletionRequest(
        model=kw.pop("model", ""),
        system_prompt=kw.pop("system_prompt", "sys"),
        messages=kw.pop("messages", [Message(role=MessageRole.USER, content=text)]),
        **kw,
    )


# ----------------------------
# FakeLlmClient
# ----------------------------


def test_fake_client_consumes_script_in_order() -> None:
    llm = FakeLlmClient(
        [
            ToolCallRequest(call_id="c1", name="Glob", arguments={"pattern": "*"}),
            lambda req: TextReply(text=f"seen {len(req.messages)} messages"),
        ]
    )

    async def _go():
        first = await llm.complete(_request())
        second = await llm.complete(_request(messages=[Message(role=MessageRole.USER, content="a")] * 3))
        with pytest.raises(ProviderError):
            await llm.complete(_request())
        return first, second

    first, second = asyncio.run(_go())
    assert isinstance(first, ToolCallRequest) and first.name == "Glob"
    assert second == TextReply(text="seen 3 messages")
    assert llm.calls == 3


def test_fake_client_raises_scripted_exceptions() -> None:
    llm = FakeLlmClient([ProviderError("backend down")])
    with pytest.raises(ProviderError):
        asyncio.run(llm.complete(_request()))


def test_always_tool_generates_fresh_call_ids() -> None:
    llm = FakeLlmClient.always_tool("Glob", {"pattern": "*"})

    async def _go():
        return [await llm.complete(_request()) for _ in range(3)]

    calls = asyncio.run(_go())
    assert [c.call_id for c in calls] == ["call_1", "call_2", "call_3"]
    assert all(c.name == "Glob" for c in calls)


def test_echo_client_replies_with_last_user_message() -> None:
    reply = asyncio.run(echo_client().complete(_request("ping")))
    assert reply == TextReply(text="echo: ping")


def test_validate_llm_client_requires_async_complete() -> None:
    class _Sync:
        def complete(self, request):
            return TextReply(text="x")

    with pytest.raises(ValueError):
        validate_llm_client(object())
    with pytest.raises(ValueError):
        validate_llm_client(_Sync())
    validate_llm_client(echo_client())


# ----------------------------
# OpenAIChatClient
# ----------------------------


def _cfg(**kw: Any) -> TasksRuntimeLlmConfig:
    base = {"base_url": "http://llm.test/v1", "model": "m-test", "max_retries": 2, "retry_base_delay_sec": 0.0}
    base.update(kw)
    return TasksRuntimeLlmConfig(**base)


def _completion(message: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": "cmpl_1", "choices": [{"index": 0, "message": message, "finish_reason": "stop"}]}


def test_messages_to_openai_maps_tool_calls_and_skips_archive_messages() -> None:
    call = ToolCall(call_id="call_1", name="Bash", args={"command": "ls"})
    history = [
        Message(role=MessageRole.USER, content="list files"),
        Message(role=MessageRole.ASSISTANT, content="", tool_call=call),
        Message(role=MessageRole.TOOL, content="Approval approved for Bash (human)", metadata={"kind": "approval"}),
        Message(role=MessageRole.TOOL, content='{"ok": true}', tool_call_id="call_1", tool_name="Bash"),
    ]
    out = messages_to_openai("sys", history)

    assert [m["role"] for m in out] == ["system", "user", "assistant", "tool"]
    assert out[2]["content"] is None
    assert out[2]["tool_calls"][0]["function"] == {"name": "Bash", "arguments": '{"command": "ls"}'}
    assert out[3] == {"role": "tool", "tool_call_id": "call_1", "content": '{"ok": true}'}


def test_openai_client_parses_text_reply_and_sends_tools() -> None:
    seen: List[Dict[str, Any]] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append({"url": str(request.url), "auth": request.headers.get("Authorization"), "body": json.loads(request.content)})
        return httpx.Response(200, json=_completion({"role": "assistant", "content": "all done"}))

    client = OpenAIChatClient(_cfg(), api_key="sk-test", transport=httpx.MockTransport(_handler))
    reply = asyncio.run(client.complete(_request(tools=[BASH_SPEC])))

    assert reply == TextReply(text="all done")
    assert seen[0]["url"] == "http://llm.test/v1/chat/completions"
    assert seen[0]["auth"] == "Bearer sk-test"
    body = seen[0]["body"]
    assert body["model"] == "m-test"
    assert body["messages"][0] == {"role": "system", "content": "sys"}
    assert body["tools"][0]["function"]["name"] == "Bash"


def test_openai_client_uses_first_tool_call_only() -> None:
    message = {
        "role": "assistant",
        "content": None,
        "tool_calls": [
            {"id": "call_a", "type": "function", "function": {"name": "Glob", "arguments": '{"pattern": "*.py"}'}},
            {"id": "call_b", "type": "function", "function": {"name": "Bash", "arguments": '{"command": "ls"}'}},
        ],
    }

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion(message))

    client = OpenAIChatClient(_cfg(), api_key="sk-test", transport=httpx.MockTransport(_handler))
    reply = asyncio.run(client.complete(_request()))

    assert isinstance(reply, ToolCallRequest)
    assert reply.call_id == "call_a"
    assert reply.name == "Glob"
    assert reply.arguments == {"pattern": "*.py"}


def test_openai_client_keeps_malformed_arguments_for_tool_validation() -> None:
    message = {
        "role": "assistant",
        "tool_calls": [{"id": "call_a", "type": "function", "function": {"name": "Glob", "arguments": "{not json"}}],
    }

    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion(message))

    client = OpenAIChatClient(_cfg(), api_key="sk-test", transport=httpx.MockTransport(_handler))
    reply = asyncio.run(client.complete(_request()))
    assert isinstance(reply, ToolCallRequest)
    assert reply.arguments == {"_raw_arguments": "{not json"}


def test_openai_client_retries_429_then_succeeds(monkeypatch: pytest.MonkeyPatch) -> None:
    sleeps: List[float] = []

    async def _fake_sleep(sec: float) -> None:
        sleeps.append(sec)

    monkeypatch.setattr(openai_mod.asyncio, "sleep", _fake_sleep)

    responses = [
        httpx.Response(429, json={"error": {"message": "slow down"}}, headers={"Retry-After": "1"}),
        httpx.Response(200, json=_completion({"role": "assistant", "content": "ok"})),
    ]

    def _handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    client = OpenAIChatClient(_cfg(), api_key="sk-test", transport=httpx.MockTransport(_handler))
    reply = asyncio.run(client.complete(_request()))

    assert reply == TextReply(text="ok")
    assert sleeps == [1.0]


def test_openai_client_gives_up_after_max_retries(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _fake_sleep(sec: float) -> None:
        return None

    monkeypatch.setattr(openai_mod.asyncio, "sleep", _fake_sleep)
    calls: List[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503, json={"error": {"message": "overloaded"}})

    client = OpenAIChatClient(_cfg(max_retries=1), api_key="sk-test", transport=httpx.MockTransport(_handler))
    with pytest.raises(ProviderError) as ei:
        asyncio.run(client.complete(_request()))

    assert len(calls) == 2
    err = classify_task_exception(ei.value)
    assert err.error_kind is TaskErrorKind.SERVER_ERROR
    assert err.message == "HTTP 503: overloaded"
    assert err.retryable is True


def test_openai_client_auth_error_is_not_retried() -> None:
    calls: List[int] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(401, json={"error": {"message": "bad key"}})

    client = OpenAIChatClient(_cfg(), api_key="sk-test", transport=httpx.MockTransport(_handler))
    with pytest.raises(ProviderError) as ei:
        asyncio.run(client.complete(_request()))

    assert len(calls) == 1
    assert classify_task_exception(ei.value).error_kind is TaskErrorKind.AUTH_ERROR


def test_openai_client_requires_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TASKS_RUNTIME_TEST_KEY", raising=False)
    client = OpenAIChatClient(_cfg(api_key_env="TASKS_RUNTIME_TEST_KEY"))
    with pytest.raises(ValueError):
        asyncio.run(client.complete(_request()))

    monkeypatch.setenv("TASKS_RUNTIME_TEST_KEY", "sk-env")
    seen: List[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.headers["Authorization"])
        return httpx.Response(200, json=_completion({"role": "assistant", "content": "ok"}))

    client = OpenAIChatClient(_cfg(api_key_env="TASKS_RUNTIME_TEST_KEY"), transport=httpx.MockTransport(_handler))
    asyncio.run(client.complete(_request()))
    assert seen == ["Bearer sk-env"]


def test_openai_client_malformed_body_is_provider_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    client = OpenAIChatClient(_cfg(), api_key="sk-test", transport=httpx.MockTransport(_handler))
    with pytest.raises(ProviderError):
        asyncio.run(client.complete(_request()))

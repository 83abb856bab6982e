import asyncio
import json
import os
import sys

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from agentcore.config import EngineConfig
from agentcore.errors import ConfigError
from agentcore.messages import ConversationMessage, text_block, tool_result_block, tool_use_block
from agentcore.providers import (
    AiProxyAdapter,
    DifyAdapter,
    ProviderClient,
    QwenAdapter,
    QWEN_DEFAULT_URL,
    create_adapter,
    to_openai_messages,
)
from agentcore.stream_events import StreamError, TextDelta, Usage


def run(coro):
    return asyncio.run(coro)


async def _collect(client, messages, **kwargs):
    events = []
    async for event in client.create_message("sys", messages, **kwargs):
        events.append(event)
    await client.aclose()
    return events


def _sse_body(*payloads) -> bytes:
    out = []
    for p in payloads:
        out.append("data: " + (p if isinstance(p, str) else json.dumps(p)) + "\n\n")
    return "".join(out).encode()


def test_to_openai_messages_maps_tool_blocks():
    messages = [
        ConversationMessage(role="user", content=[text_block("<task>\nhi\n</task>")]),
        ConversationMessage(role="assistant", content=[
            text_block("Reading."),
            tool_use_block("call_1", "read_file", {"path": "a.py"}),
        ]),
        ConversationMessage(role="user", content=[
            tool_result_block("call_1", [text_block("[read_file for 'a.py'] Result:"), text_block("1 | x")]),
        ]),
    ]
    out = to_openai_messages("system text", messages)

    assert out[0] == {"role": "system", "content": "system text"}
    assert out[1]["role"] == "user"
    assert out[2]["role"] == "assistant"
    assert out[2]["tool_calls"][0]["id"] == "call_1"
    assert json.loads(out[2]["tool_calls"][0]["function"]["arguments"]) == {"path": "a.py"}
    assert out[3]["role"] == "tool"
    assert out[3]["tool_call_id"] == "call_1"
    assert "1 | x" in out[3]["content"]


def test_to_openai_messages_plain_strings():
    out = to_openai_messages("", [ConversationMessage(role="user", content="hello")])
    assert out == [{"role": "user", "content": "hello"}]


def test_create_adapter_unknown_provider():
    with pytest.raises(ConfigError):
        create_adapter(EngineConfig(provider="nope"))


def test_qwen_default_url():
    adapter = QwenAdapter(EngineConfig(provider="qwen"))
    assert adapter.endpoint() == f"{QWEN_DEFAULT_URL}/chat/completions"


def test_dify_endpoint_and_conversation_id():
    config = EngineConfig(provider="dify", api_url="http://dify/v1")
    state = {"conversation_id": "conv-9"}
    adapter = DifyAdapter(config, state)
    assert adapter.endpoint() == "http://dify/v1/chat-messages"
    body = adapter.build_body("sys", [
        ConversationMessage(role="user", content="first"),
        ConversationMessage(role="assistant", content="ok"),
        ConversationMessage(role="user", content="second"),
    ])
    assert body["query"] == "second"
    assert body["conversation_id"] == "conv-9"
    assert body["response_mode"] == "streaming"


def test_aiproxy_body_and_endpoint():
    config = EngineConfig(provider="aiproxy", api_url="http://proxy/", model="qwen-max",
                          aiproxy_username="u", aiproxy_password="p")
    adapter = AiProxyAdapter(config)
    assert adapter.endpoint() == "http://proxy/ai/proxy/stream/chat/completions"
    body = adapter.build_body("sys", [ConversationMessage(role="user", content="hi")], tools=[{"type": "function"}])
    assert body["username"] == "u"
    assert body["password"] == "p"
    assert body["requestId"] == adapter.request_id
    assert body["requestId"].startswith("req_")
    assert body["toolChoice"] == "auto"
    assert body["messages"][0]["role"] == "system"


# ============================================================
# ProviderClient against a mock transport
# ============================================================

class TestProviderClient:

    def test_streams_text_and_usage(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=_sse_body(
                {"choices": [{"delta": {"content": "Hello"}}]},
                {"choices": [{"delta": {"content": " world"}}]},
                {"choices": [], "usage": {"prompt_tokens": 20, "completion_tokens": 3}},
                "[DONE]",
            ))

        config = EngineConfig(api_url="http://llm/v1", api_key="k", model="gpt-4o")
        client = ProviderClient(config, transport=httpx.MockTransport(handler))
        events = run(_collect(client, [ConversationMessage(role="user", content="hi")]))

        assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "Hello world"
        assert [e.input_tokens for e in events if isinstance(e, Usage)] == [20]
        assert seen["url"] == "http://llm/v1/chat/completions"
        assert seen["auth"] == "Bearer k"
        assert seen["body"]["stream"] is True
        assert seen["body"]["model"] == "gpt-4o"

    def test_non_2xx_yields_single_error(self):
        def handler(request):
            return httpx.Response(429, text="rate limited")

        client = ProviderClient(EngineConfig(api_url="http://llm", api_key="k"),
                                transport=httpx.MockTransport(handler))
        events = run(_collect(client, [ConversationMessage(role="user", content="hi")]))
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert events[0].status_code == 429
        assert "rate limited" in events[0].message

    def test_transport_failure_without_retries(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = ProviderClient(EngineConfig(api_url="http://llm", api_key="k", max_retries=0),
                                transport=httpx.MockTransport(handler))
        events = run(_collect(client, [ConversationMessage(role="user", content="hi")]))
        assert len(events) == 1
        assert isinstance(events[0], StreamError)
        assert "ConnectError" in events[0].message

    def test_dify_conversation_id_carried_to_next_request(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, content=_sse_body(
                {"event": "message", "answer": "ok"},
                {"event": "message_end", "conversation_id": "conv-7"},
            ))

        config = EngineConfig(provider="dify", api_url="http://dify/v1", api_key="k")
        client = ProviderClient(config, transport=httpx.MockTransport(handler))

        async def two_calls():
            msgs = [ConversationMessage(role="user", content="q")]
            async for _ in client.create_message("sys", msgs):
                pass
            async for _ in client.create_message("sys", msgs):
                pass
            await client.aclose()

        run(two_calls())
        assert "conversation_id" not in bodies[0]
        assert bodies[1]["conversation_id"] == "conv-7"

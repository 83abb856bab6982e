"""Backend adapters and the streaming HTTP client.

Every backend speaks some flavour of ``data: {json}`` over HTTP. The
byte handling is shared (stream_normalizer.py); each ProviderAdapter only
knows its endpoint, headers, request body and how to read one payload.
"""

import asyncio
import json
import time
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .config import EngineConfig
from .errors import ConfigError
from .interrupt import CancellationToken
from .logger import get_logger, truncate
from .messages import ConversationMessage, content_to_text
from .stream_events import StreamError, StreamEvent, TextDelta, Usage
from .stream_normalizer import StreamNormalizer, ToolCallAccumulator, normalize_usage

_log = get_logger("providers")

# How often the read loop wakes up to look at the cancellation token.
POLL_INTERVAL = 0.3

QWEN_DEFAULT_URL = "https://dashscope.aliyuncs.com/compatible-mode/v1"


def to_openai_messages(system_prompt: str, messages: List[ConversationMessage]) -> List[Dict[str, Any]]:
    """Convert engine history to OpenAI chat format.

    tool_result blocks become ``role: tool`` messages keyed by
    tool_call_id, assistant tool_use blocks become ``tool_calls``.
    """
    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        content = msg.content
        if isinstance(content, str):
            role = "user" if msg.role == "tool" else msg.role
            out.append({"role": role, "content": content})
            continue

        tool_results = [b for b in content if b.get("type") == "tool_result"]
        texts = [b.get("text", "") for b in content if b.get("type") == "text"]
        tool_uses = [b for b in content if b.get("type") == "tool_use"]

        if msg.role in ("user", "tool") and tool_results:
            for block in tool_results:
                out.append({
                    "role": "tool",
                    "tool_call_id": block.get("tool_use_id", ""),
                    "content": content_to_text(block.get("content", "")),
                })
            joined = "\n".join(t for t in texts if t)
            if joined:
                out.append({"role": "user", "content": joined})
            continue

        entry: Dict[str, Any] = {"role": "user" if msg.role == "tool" else msg.role}
        joined = "\n".join(t for t in texts if t)
        if joined or not tool_uses:
            entry["content"] = joined
        if tool_uses:
            entry["tool_calls"] = [
                {
                    "id": b.get("id", ""),
                    "type": "function",
                    "function": {
                        "name": b.get("name", ""),
                        "arguments": json.dumps(b.get("input", {}), ensure_ascii=False),
                    },
                }
                for b in tool_uses
            ]
        out.append(entry)
    return out


# ── Adapters ─────────────────────────────────────────────────────

class ProviderAdapter:
    """One backend protocol. A fresh instance is created for every request."""

    name = "base"

    def __init__(self, config: EngineConfig, state: Optional[Dict[str, Any]] = None):
        self.config = config
        # survives across requests of the same client (e.g. Dify conversation ids)
        self.state = state if state is not None else {}

    @property
    def base_url(self) -> str:
        return (self.config.api_url or "").rstrip("/")

    def endpoint(self) -> str:
        raise NotImplementedError

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def build_body(
        self,
        system_prompt: str,
        messages: List[ConversationMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def parse_payload(self, data: Dict[str, Any]) -> List[StreamEvent]:
        raise NotImplementedError

    def finish(self) -> List[StreamEvent]:
        """Events still owed when the byte stream ends."""
        return []

    async def stop_request(self, client: httpx.AsyncClient) -> None:
        """Ask the backend to stop generating. Best effort."""
        return None


class OpenAICompatibleAdapter(ProviderAdapter):
    """``/chat/completions`` with ``choices[0].delta`` chunks."""

    name = "openai"

    def __init__(self, config: EngineConfig, state: Optional[Dict[str, Any]] = None):
        super().__init__(config, state)
        self._tools = ToolCallAccumulator()
        self.reasoning_chars = 0

    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def build_body(self, system_prompt, messages, tools=None):
        body: Dict[str, Any] = {
            "model": self.config.model,
            "messages": to_openai_messages(system_prompt, messages),
            "temperature": self.config.temperature,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if self.config.max_tokens:
            body["max_tokens"] = self.config.max_tokens
        if tools:
            body["tools"] = tools
        return body

    def parse_payload(self, data: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []

        error = data.get("error")
        if error:
            if isinstance(error, dict):
                message = error.get("message") or json.dumps(error, ensure_ascii=False)
            else:
                message = str(error)
            events.append(StreamError(f"{self.name} stream error: {message}"))
            return events

        choices = data.get("choices") or []
        if choices:
            choice = choices[0] or {}
            delta = choice.get("delta") or {}

            content = delta.get("content")
            if isinstance(content, list):
                # some gateways send content parts instead of a string
                content = "".join(
                    p.get("text", "") for p in content if isinstance(p, dict) and isinstance(p.get("text"), str)
                )
            if content:
                events.append(TextDelta(content))

            reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
            if isinstance(reasoning, str):
                self.reasoning_chars += len(reasoning)

            for fragment in delta.get("tool_calls") or []:
                if isinstance(fragment, dict):
                    events.append(self._tools.add(fragment))

            if choice.get("finish_reason") == "tool_calls":
                events.extend(self._tools.flush())

        usage = normalize_usage(data.get("usage"))
        if usage is not None:
            events.append(usage)
        return events

    def finish(self) -> List[StreamEvent]:
        if self._tools.pending:
            _log.info("%s: stream ended with unflushed tool calls, flushing", self.name)
            return list(self._tools.flush())
        return []


class QwenAdapter(OpenAICompatibleAdapter):
    """DashScope compatible mode."""

    name = "qwen"

    @property
    def base_url(self) -> str:
        return (self.config.api_url or QWEN_DEFAULT_URL).rstrip("/")


class AiProxyAdapter(OpenAICompatibleAdapter):
    """Pass-through gateway with per-request ids and a stop endpoint."""

    name = "aiproxy"

    def __init__(self, config: EngineConfig, state: Optional[Dict[str, Any]] = None):
        super().__init__(config, state)
        self.request_id = f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"

    def endpoint(self) -> str:
        return f"{self.base_url}/ai/proxy/stream/chat/completions"

    def headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "text/event-stream"}

    def build_body(self, system_prompt, messages, tools=None):
        body: Dict[str, Any] = {
            "username": self.config.aiproxy_username,
            "password": self.config.aiproxy_password,
            "requestId": self.request_id,
            "provider": self.config.aiproxy_provider or "qwen",
            "model": self.config.model,
            "messages": to_openai_messages(system_prompt, messages),
            "stream": True,
            "apiType": "chat",
        }
        if tools:
            body["tools"] = tools
            body["toolChoice"] = "auto"
        return body

    async def stop_request(self, client: httpx.AsyncClient) -> None:
        url = f"{self.base_url}/ai/proxy/stop/{self.request_id}"
        try:
            resp = await client.post(url, headers={"Content-Type": "application/json"})
            _log.info("aiproxy stop %s -> %d", self.request_id, resp.status_code)
        except httpx.HTTPError as e:
            _log.warning("aiproxy stop %s failed: %s", self.request_id, e)


class DifyAdapter(ProviderAdapter):
    """Dify chat-messages API: event-typed payloads, server-side history."""

    name = "dify"

    def endpoint(self) -> str:
        base = self.base_url
        if base.endswith("/chat-messages"):
            return base
        return f"{base}/chat-messages"

    def build_body(self, system_prompt, messages, tools=None):
        query = ""
        for msg in reversed(messages):
            if msg.role in ("user", "tool"):
                query = msg.text
                break
        body: Dict[str, Any] = {
            "inputs": {},
            "query": query,
            "response_mode": "streaming",
            "user": self.config.dify_user or "agentcore",
        }
        conversation_id = self.state.get("conversation_id")
        if conversation_id:
            body["conversation_id"] = conversation_id
        return body

    def parse_payload(self, data: Dict[str, Any]) -> List[StreamEvent]:
        event = data.get("event")
        if data.get("task_id"):
            self.state["task_id"] = data["task_id"]

        if event in ("message", "agent_message"):
            answer = data.get("answer") or ""
            return [TextDelta(answer)] if answer else []
        if event == "message_end":
            if data.get("conversation_id"):
                self.state["conversation_id"] = data["conversation_id"]
            usage = normalize_usage((data.get("metadata") or {}).get("usage"))
            return [usage] if usage is not None else []
        if event == "error":
            return [StreamError(f"Dify error: {data.get('message', '')} ({data.get('code', '')})")]
        return []

    async def stop_request(self, client: httpx.AsyncClient) -> None:
        task_id = self.state.get("task_id")
        if not task_id:
            return
        url = f"{self.base_url}/chat-messages/{task_id}/stop"
        try:
            resp = await client.post(url, headers=self.headers(), json={"user": self.config.dify_user})
            _log.info("dify stop %s -> %d", task_id, resp.status_code)
        except httpx.HTTPError as e:
            _log.warning("dify stop %s failed: %s", task_id, e)


ADAPTERS = {
    "openai": OpenAICompatibleAdapter,
    "qwen": QwenAdapter,
    "aiproxy": AiProxyAdapter,
    "dify": DifyAdapter,
}


def create_adapter(config: EngineConfig, state: Optional[Dict[str, Any]] = None) -> ProviderAdapter:
    try:
        cls = ADAPTERS[config.provider]
    except KeyError:
        raise ConfigError(f"Unknown provider '{config.provider}'")
    return cls(config, state)


# ── Client ───────────────────────────────────────────────────────

class ProviderClient:
    """Streams one backend call at a time as canonical StreamEvents."""

    def __init__(self, config: EngineConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._state: Dict[str, Any] = {}
        self.last_adapter: Optional[ProviderAdapter] = None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.request_timeout, connect=self.config.connect_timeout),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
        self._client = None

    async def create_message(
        self,
        system_prompt: str,
        messages: List[ConversationMessage],
        tools: Optional[List[Dict[str, Any]]] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Send one request and yield its events until the stream ends.

        A non-2xx answer yields a single StreamError and stops. Transport
        failures before any byte arrived are retried with backoff.
        """
        adapter = create_adapter(self.config, self._state)
        self.last_adapter = adapter
        client = self._ensure_client()
        url = adapter.endpoint()
        body = adapter.build_body(system_prompt, messages, tools)
        max_retries = max(0, self.config.max_retries)
        _log.info("create_message: provider=%s url=%s model=%s msgs=%d tools=%d",
                  adapter.name, url, self.config.model, len(messages), len(tools or []))
        t0 = time.time()

        for attempt in range(max_retries + 1):
            normalizer = StreamNormalizer(adapter)
            received_any = False
            try:
                async with client.stream("POST", url, headers=adapter.headers(), json=body) as response:
                    if not 200 <= response.status_code < 300:
                        raw = await response.aread()
                        text = raw.decode("utf-8", errors="replace")
                        _log.warning("%s HTTP %d: %s", adapter.name, response.status_code, truncate(text, 300))
                        yield StreamError(
                            f"{adapter.name} API error {response.status_code}: {text}",
                            status_code=response.status_code,
                        )
                        return

                    # Poll instead of 'async for' so a cancel is noticed
                    # even while the server is silent.
                    aiter = response.aiter_bytes().__aiter__()
                    pending_read = None
                    while True:
                        if cancel is not None and cancel.cancelled:
                            if pending_read is not None and not pending_read.done():
                                pending_read.cancel()
                                try:
                                    await pending_read
                                except (asyncio.CancelledError, StopAsyncIteration):
                                    pass
                            _log.info("%s stream cancelled after %.1fs", adapter.name, time.time() - t0)
                            await adapter.stop_request(client)
                            return

                        if pending_read is None:
                            pending_read = asyncio.ensure_future(aiter.__anext__())

                        done, _ = await asyncio.wait({pending_read}, timeout=POLL_INTERVAL)
                        if not done:
                            continue

                        try:
                            chunk = pending_read.result()
                        except StopAsyncIteration:
                            break
                        pending_read = None
                        received_any = True

                        for event in normalizer.feed(chunk):
                            yield event

                    for event in normalizer.finish():
                        yield event

                _log.info("create_message complete: provider=%s elapsed=%.1fs skipped_lines=%d",
                          adapter.name, time.time() - t0, normalizer.skipped_lines)
                return

            except httpx.TransportError as e:
                _log.warning("%s transport error on attempt %d/%d: %s: %s",
                             adapter.name, attempt + 1, max_retries + 1, type(e).__name__, e)
                if received_any or attempt >= max_retries:
                    yield StreamError(f"{adapter.name} request failed: {type(e).__name__}: {e}")
                    return
                wait = min(2 ** (attempt + 1), 60)
                _log.info("Retrying in %ds (attempt %d/%d)", wait, attempt + 1, max_retries)
                remaining = float(wait)
                while remaining > 0:
                    await asyncio.sleep(min(POLL_INTERVAL, remaining))
                    remaining -= POLL_INTERVAL
                    if cancel is not None and cancel.cancelled:
                        return

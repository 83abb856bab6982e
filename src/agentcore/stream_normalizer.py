"""Turns raw Server-Sent-Event bytes into canonical stream events.

The byte-level work (line buffering across network chunks, ``data:``
framing, ``[DONE]`` sentinels, malformed JSON) is the same for every
backend, so it lives here once. What a decoded payload *means* is the
provider adapter's business (see providers.py).
"""

import codecs
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .logger import get_logger, truncate
from .stream_events import StreamEvent, ToolCallDelta, Usage

_log = get_logger("streaming")

DONE_SENTINEL = "[DONE]"


def parse_sse_data(line: str) -> Optional[str]:
    """Return the payload of a ``data:`` line, or None for anything else.

    Accepts both ``data: {...}`` and ``data:{...}``.
    """
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def normalize_usage(usage: Dict[str, Any]) -> Optional[Usage]:
    """Map prompt/completion/total counts (or input/output) into a Usage event."""
    if not isinstance(usage, dict):
        return None

    def _int(*keys: str) -> Optional[int]:
        for k in keys:
            v = usage.get(k)
            if v is not None:
                try:
                    return int(v)
                except (TypeError, ValueError):
                    continue
        return None

    prompt = _int("prompt_tokens", "input_tokens")
    completion = _int("completion_tokens", "output_tokens")
    total = _int("total_tokens")
    if prompt is None and completion is None and total is None:
        return None
    prompt = prompt or 0
    completion = completion or 0
    if total is None:
        total = prompt + completion
    return Usage(input_tokens=prompt, output_tokens=completion, total_tokens=total)


@dataclass
class _PendingCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Collects native tool-call fragments by their ``index`` field.

    Continuation fragments often carry an empty id, so the id and name
    from the first fragment that has them are kept for the whole call.
    """

    def __init__(self):
        self._calls: Dict[int, _PendingCall] = {}

    def add(self, fragment: Dict[str, Any]) -> ToolCallDelta:
        try:
            index = int(fragment.get("index", 0) or 0)
        except (TypeError, ValueError):
            index = 0
        fn = fragment.get("function") or {}
        frag_id = fragment.get("id") or ""
        frag_name = fn.get("name") or ""
        frag_args = fn.get("arguments") or ""

        call = self._calls.setdefault(index, _PendingCall())
        if frag_id and not call.id:
            call.id = frag_id
        if frag_name and not call.name:
            call.name = frag_name
        call.arguments += frag_args
        return ToolCallDelta(index=index, id=call.id, name=call.name, arguments=frag_args)

    def flush(self) -> List[ToolCallDelta]:
        """Emit every accumulated call as complete and clear state."""
        out = [
            ToolCallDelta(index=i, id=c.id, name=c.name, arguments=c.arguments, complete=True)
            for i, c in sorted(self._calls.items())
        ]
        self._calls.clear()
        return out

    @property
    def pending(self) -> bool:
        return bool(self._calls)


class StreamNormalizer:
    """Per-request decoder: feed it network chunks, get StreamEvents back.

    Lines are only interpreted once complete, so the output does not
    depend on where the network happened to split the payload.
    """

    def __init__(self, adapter):
        self.adapter = adapter
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.done = False
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        self._buffer += self._decoder.decode(chunk)
        events: List[StreamEvent] = []
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            events.extend(self._handle_line(line))
        return events

    def finish(self) -> List[StreamEvent]:
        """Process any unterminated last line and let the adapter flush."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        events: List[StreamEvent] = []
        if tail.strip():
            events.extend(self._handle_line(tail))
        events.extend(self.adapter.finish())
        return events

    def _handle_line(self, line: str) -> List[StreamEvent]:
        line = line.strip()
        if not line:
            return []
        data_str = parse_sse_data(line)
        if data_str is None:
            # event:, id:, retry: and comment lines carry nothing we need
            return []
        if data_str.strip() == DONE_SENTINEL:
            self.done = True
            return []
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError as e:
            self.skipped_lines += 1
            _log.warning("skipping malformed stream line (%s): %s", e, truncate(data_str, 200))
            return []
        if not isinstance(data, dict):
            return []
        return self.adapter.parse_payload(data)

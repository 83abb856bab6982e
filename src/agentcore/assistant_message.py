"""Incremental parsing of assistant output into text and tool-use blocks.

Tool calls arrive inline in the XML style the system prompt teaches:

    Let me look.
    <read_file>
    <path>src/app.py</path>
    </read_file>

The parser is a pure function of the text received so far, so it can be
re-run after every delta and always yields a prefix-consistent result.
Native function calls (ToolCallDelta) are appended as extra blocks.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .logger import get_logger
from .stream_events import ToolCallDelta
from .tool_registry import TOOL_PARAM_NAMES, get_tool_names

log = get_logger("parser")

# Params whose value may legitimately contain its own closing tag
# (file bodies, diffs); resolved against the last closing tag once the
# tool block closes.
GREEDY_PARAMS = {
    "write_to_file": "content",
    "insert_content": "content",
    "apply_diff": "diff",
    "edit_file": "diff",
}

_PARTIAL_TAG_RE = re.compile(r"<\/?[a-zA-Z_]*$")


@dataclass
class TextContent:
    content: str
    partial: bool = True
    type: str = "text"


@dataclass
class ToolUse:
    name: str
    params: Dict[str, str] = field(default_factory=dict)
    partial: bool = True
    tool_use_id: str = ""
    type: str = "tool_use"


ContentBlock = Union[TextContent, ToolUse]


def trim_partial_tag(text: str) -> str:
    """Drop a trailing ``<``, ``</`` or ``<name`` that has no ``>`` yet."""
    return _PARTIAL_TAG_RE.sub("", text)


def _trim_partial_close(value: str, close_tag: str) -> str:
    """Remove a trailing prefix of ``close_tag`` from a still-open value."""
    for n in range(len(close_tag) - 1, 0, -1):
        if value.endswith(close_tag[:n]):
            return value[:-n]
    return value


def parse_assistant_message(message: str, complete: bool = False) -> List[ContentBlock]:
    """Split ``message`` into ordered content blocks.

    With ``complete=False`` the last block is partial and a dangling tag
    fragment at the very end is hidden. With ``complete=True`` everything
    is marked final and unterminated trailing text is kept as-is.
    """
    tool_tags = {f"<{name}>": name for name in get_tool_names()}
    param_tags = {f"<{name}>": name for name in TOOL_PARAM_NAMES}

    blocks: List[ContentBlock] = []
    text_start = 0
    tool: Optional[ToolUse] = None
    tool_body_start = 0
    param: Optional[str] = None
    param_start = 0

    for i in range(len(message)):
        end = i + 1
        if message[i] != ">":
            continue

        if tool is not None and param is not None:
            close = f"</{param}>"
            if message.endswith(close, 0, end):
                tool.params[param] = message[param_start:end - len(close)].strip()
                param = None
            continue

        if tool is not None:
            close = f"</{tool.name}>"
            if message.endswith(close, 0, end):
                greedy = GREEDY_PARAMS.get(tool.name)
                if greedy:
                    body = message[tool_body_start:end - len(close)]
                    open_g, close_g = f"<{greedy}>", f"</{greedy}>"
                    first, last = body.find(open_g), body.rfind(close_g)
                    if first != -1 and last > first:
                        tool.params[greedy] = body[first + len(open_g):last].strip()
                tool.partial = False
                blocks.append(tool)
                tool = None
                text_start = end
                continue
            for tag, name in param_tags.items():
                if message.endswith(tag, 0, end):
                    param = name
                    param_start = end
                    break
            continue

        for tag, name in tool_tags.items():
            if message.endswith(tag, 0, end):
                text = message[text_start:end - len(tag)].strip()
                if text:
                    blocks.append(TextContent(text, partial=False))
                tool = ToolUse(name=name, partial=True)
                tool_body_start = end
                break

    if tool is not None:
        if param is not None:
            value = message[param_start:]
            if not complete:
                value = _trim_partial_close(value, f"</{param}>")
            tool.params[param] = value.strip()
        tool.partial = not complete
        blocks.append(tool)
    else:
        text = message[text_start:]
        if not complete:
            text = trim_partial_tag(text)
        text = text.strip()
        if text:
            blocks.append(TextContent(text, partial=not complete))

    return blocks


def tool_use_from_native_call(call: ToolCallDelta) -> ToolUse:
    """Build a ToolUse block from an accumulated native function call.

    Arguments that are not a JSON object are passed through untouched
    under ``arguments``; the tool reports what is missing.
    """
    params: Dict[str, str] = {}
    raw = call.arguments or ""
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        for key, value in parsed.items():
            params[str(key)] = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    else:
        log.warning("native tool call %s (%s) has non-object arguments", call.name, call.id)
        params["arguments"] = raw
    return ToolUse(name=call.name, params=params, partial=False, tool_use_id=call.id)


class AssistantMessageParser:
    """Holds the text of one assistant turn and its current block list."""

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self._text = ""
        self._complete = False
        self._text_blocks: List[ContentBlock] = []
        self._native_blocks: List[ToolUse] = []

    @property
    def text(self) -> str:
        return self._text

    def process_chunk(self, chunk: str) -> List[ContentBlock]:
        self._text += chunk
        self._text_blocks = parse_assistant_message(self._text, complete=self._complete)
        return self.get_content_blocks()

    def add_native_tool_call(self, call: ToolCallDelta) -> ToolUse:
        block = tool_use_from_native_call(call)
        self._native_blocks.append(block)
        return block

    def finalize_content_blocks(self) -> None:
        """Mark the stream as finished; nothing stays partial afterwards."""
        self._complete = True
        self._text_blocks = parse_assistant_message(self._text, complete=True)

    def get_content_blocks(self) -> List[ContentBlock]:
        return list(self._text_blocks) + list(self._native_blocks)

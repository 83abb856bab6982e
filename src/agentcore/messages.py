"""Conversation messages and the content-block dicts stored inside them.

History content follows the block shapes the backends already speak:
``{"type": "text", "text": ...}``, ``{"type": "tool_use", "id", "name",
"input"}`` and ``{"type": "tool_result", "tool_use_id", "content"}``.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

Content = Union[str, List[Dict[str, Any]]]


def text_block(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def tool_use_block(tool_use_id: str, name: str, params: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "tool_use", "id": tool_use_id, "name": name, "input": dict(params)}


def tool_result_block(tool_use_id: str, content: List[Dict[str, Any]], is_error: bool = False) -> Dict[str, Any]:
    block = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        block["is_error"] = True
    return block


def content_to_text(content: Content) -> str:
    """Flatten message content into plain text (used for estimates and Dify)."""
    if isinstance(content, str):
        return content
    parts: List[str] = []
    for block in content or []:
        if not isinstance(block, dict):
            continue
        btype = block.get("type")
        if btype == "text":
            parts.append(block.get("text", ""))
        elif btype == "tool_use":
            parts.append(f"[{block.get('name', '')}] {block.get('input', {})}")
        elif btype == "tool_result":
            parts.append(content_to_text(block.get("content", "")))
    return "\n".join(p for p in parts if p)


@dataclass
class ConversationMessage:
    role: str  # system | user | assistant | tool
    content: Content
    is_summary: bool = False
    ts: float = field(default_factory=time.time)

    @property
    def text(self) -> str:
        return content_to_text(self.content)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.is_summary:
            out["is_summary"] = True
        return out

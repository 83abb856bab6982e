"""Canonical stream events every provider stream is translated into."""

from dataclasses import dataclass
from typing import Union


@dataclass
class TextDelta:
    text: str
    type: str = "text"


@dataclass
class ToolCallDelta:
    """A native function-call fragment, keyed by ``index``.

    While streaming, ``arguments`` holds only the fragment that arrived.
    When the backend finishes the round the accumulated call is emitted
    once more with ``complete=True`` and the full argument string.
    """
    index: int
    id: str = ""
    name: str = ""
    arguments: str = ""
    complete: bool = False
    type: str = "tool_call"


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    type: str = "usage"


@dataclass
class StreamError:
    message: str
    status_code: int = 0
    type: str = "error"


StreamEvent = Union[TextDelta, ToolCallDelta, Usage, StreamError]

"""
Parsing utilities for streamed chat-completion responses.

The wire format is server-sent-event style: one ``data: <json>`` line per
chunk, terminated by ``data: [DONE]``. Anything else on the wire (comments,
keep-alives, blank separators) is ignored.
"""

import json
from dataclasses import dataclass, field
from typing import Optional, Tuple


DATA_PREFIX = "data: "
DONE_PAYLOAD = "[DONE]"

THINK_START = "<think>"
THINK_END = "</think>"

REASONING_MARKER = "> **Reasoning:**"


@dataclass
class ToolCallFragment:
    """Part of a tool call as it arrives in one delta."""
    index: int
    name: str = ""
    arguments: str = ""


@dataclass
class StreamChunk:
    """The useful part of one ``data:`` line."""
    content: str = ""
    tool_calls: list[ToolCallFragment] = field(default_factory=list)
    done: bool = False


DONE = StreamChunk(done=True)


def parse_stream_line(line: str, include_tool_calls: bool = True) -> Optional[StreamChunk]:
    """
    Parse one line of a streamed response.

    Returns DONE for the terminator, None for lines that carry nothing
    (non-data lines, malformed JSON, unexpected shapes, chunks without
    choices), else a StreamChunk with the delta's content and tool-call fragments.

    Examples:
        >>> parse_stream_line('data: {"choices":[{"delta":{"content":"Hi"}}]}').content
        'Hi'
        >>> parse_stream_line("data: [DONE]").done
        True
        >>> parse_stream_line("data: keep-alive") is None
        True
    """
    if not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX):].strip()
    if payload == DONE_PAYLOAD:
        return DONE
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    choices = data.get("choices") or []
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        return None

    chunk = StreamChunk()
    content = delta.get("content")
    if isinstance(content, str):
        chunk.content = content

    tool_calls = delta.get("tool_calls") if include_tool_calls else None
    if isinstance(tool_calls, list):
        for position, tc in enumerate(tool_calls):
            if not isinstance(tc, dict):
                continue
            func = tc.get("function")
            if not isinstance(func, dict):
                func = {}
            index = tc.get("index", position)
            chunk.tool_calls.append(ToolCallFragment(
                index=index if isinstance(index, int) else position,
                name=_as_text(func.get("name")),
                arguments=_as_text(func.get("arguments")),
            ))

    if not chunk.content and not chunk.tool_calls:
        return None
    return chunk


def _as_text(value) -> str:
    return value if isinstance(value, str) else ""


def format_reasoning_step(name: str, arguments: str) -> str:
    """Render a tool call as a reasoning annotation line."""
    if arguments:
        return f"{REASONING_MARKER} `{name}` `{arguments}`"
    return f"{REASONING_MARKER} `{name}`"


def split_thinking(
    content: str,
    start_marker: str = THINK_START,
    end_marker: str = THINK_END,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a reasoning model's output into (thinking, answer).

    No start marker: (None, content). Start marker but no end marker yet:
    (thinking so far, None). Both: (thinking, answer or None if empty).
    """
    start = content.find(start_marker)
    if start == -1:
        return None, content.strip()
    body_start = start + len(start_marker)
    end = content.find(end_marker, body_start)
    if end == -1:
        return content[body_start:].strip(), None
    thinking = content[body_start:end].strip()
    answer = content[end + len(end_marker):].strip()
    return thinking, answer or None

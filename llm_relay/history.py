"""
Prompt history assembly.

Turns a conversation thread plus a system prompt into OpenAI-format
messages that every backend accepts.
"""

from typing import Iterable, Union

from llm_relay.config import Message, Role, Thread


def build_history(thread: Union[Thread, Iterable[Message]], system_prompt: str) -> list[dict]:
    """
    Build the ordered message list for a generation request.

    The system entry always comes first and exactly once, even when the
    prompt is empty (some backends require a system-role entry). Thread
    messages follow in ascending timestamp order; system-role messages
    stored in the thread are dropped in favour of system_prompt.

    The caller must pass a snapshot; the thread is not locked while reading.
    """
    messages = thread.messages if isinstance(thread, Thread) else list(thread)
    history = [{"role": Role.SYSTEM.value, "content": system_prompt or ""}]
    history.extend(
        m.to_wire()
        for m in sorted(messages, key=lambda m: m.timestamp)
        if m.role is not Role.SYSTEM
    )
    return history


def last_user_message(messages: list[dict]) -> str:
    """Return the content of the most recent user entry, or ""."""
    for message in reversed(messages):
        if message.get("role") == Role.USER.value:
            return message.get("content") or ""
    return ""

"""Message identity keys and tool-call pairing checks."""

import json
from collections.abc import Iterable, Sequence
from typing import Any, TypeVar

from spirits.conversation.models.enums import Role
from spirits.conversation.models.message import Message

M = TypeVar("M", bound=Message)


def message_key(message: Message) -> str:
    """Identity key used to detect true duplicates.

    The role is always part of the key. Tool responses are scoped by their
    ``tool_call_id`` (falling back to the message id) so identical output for
    different calls never collides.
    """
    if message.role == Role.TOOL.value:
        call_id = message.tool_call_id or message.id or ""
        return f"tool::{call_id}::{message.content or ''}"

    if message.tool_calls:
        serialized = json.dumps(message.tool_calls, sort_keys=True, separators=(",", ":"), default=str)
        return f"assistant::tool_calls::{serialized}"

    return f"{message.role}::{message.content}"


def dedupe_messages(messages: Iterable[M]) -> tuple[list[M], list[M]]:
    """Split ``messages`` into first occurrences and repeats, keeping order."""
    seen: set[str] = set()
    survivors: list[M] = []
    dropped: list[M] = []
    for message in messages:
        key = message_key(message)
        if key in seen:
            dropped.append(message)
            continue
        seen.add(key)
        survivors.append(message)
    return survivors, dropped


def missing_tool_responses(messages: Sequence[Message]) -> list[str]:
    """Ids of ``tool_calls`` entries with no tool message answering them."""
    answered = {
        m.tool_call_id for m in messages if m.role == Role.TOOL.value and m.tool_call_id
    }
    missing: list[str] = []
    for message in messages:
        for call in message.tool_calls or ():
            call_id = _call_id(call)
            if call_id and call_id not in answered and call_id not in missing:
                missing.append(call_id)
    return missing


def _call_id(call: Any) -> str | None:
    if isinstance(call, dict):
        return call.get("id")
    return getattr(call, "id", None)

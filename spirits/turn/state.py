"""Mutable state for a single turn.

Every change to messages, conversation or context goes through
:class:`TurnState`, which applies it and emits the matching state callback
and progress event. A listener folding the emits therefore ends up with the
same state the orchestrator returns.
"""

import copy
from typing import Any

from spirits.config.loader import deep_merge
from spirits.conversation.dedup import message_key
from spirits.conversation.models import (
    Conversation,
    Message,
    ProgressLevel,
    ProgressType,
    Role,
)
from spirits.conversation.timing import enforce_monotonic_in_place, push_message
from spirits.observability.logging import get_logger
from spirits.turn.callbacks import ProgressReporter, StateEmitters

logger = get_logger(__name__)


class TurnState:
    """Messages (indexed by id), conversation and context for one turn."""

    def __init__(
        self,
        conversation: Conversation,
        messages: list[Message],
        context: dict[str, Any],
        emitters: StateEmitters,
        progress: ProgressReporter,
        min_step_seconds: float = 1,
    ) -> None:
        self.conversation = conversation
        self.messages = messages
        self.context = context
        self.emitters = emitters
        self._progress = progress
        self.min_step_seconds = min_step_seconds
        self._by_id: dict[str, Message] = {m.id: m for m in messages}

    # --- reporting ---------------------------------------------------------

    def progress(
        self,
        message: str,
        level: ProgressLevel = ProgressLevel.INFO,
        type: ProgressType | None = None,
        payload: Any = None,
    ) -> None:
        try:
            self._progress(message, level.value, type.value if type else None, payload)
        except Exception as e:
            logger.error("progress_callback_failed", error=str(e))

    # --- messages ----------------------------------------------------------

    def get(self, message_id: str) -> Message | None:
        return self._by_id.get(message_id)

    def contains(self, message_id: str) -> bool:
        return message_id in self._by_id

    def find_by_key(self, message: Message) -> Message | None:
        key = message_key(message)
        return next((m for m in self.messages if message_key(m) == key), None)

    def has_content(self, content: str) -> bool:
        return any(m.content == content for m in self.messages)

    def last_of_role(self, role: Role) -> Message | None:
        return next((m for m in reversed(self.messages) if m.role == role.value), None)

    def of_role(self, role: Role) -> list[Message]:
        return [m for m in self.messages if m.role == role.value]

    def add_message(self, message: Message, label: str = "Added message") -> Message:
        """Append a copy of ``message`` with a monotonic time and emit it."""
        added = push_message(self.messages, message, self.min_step_seconds)
        self._by_id[added.id] = added
        payload = added.payload()
        self.emitters.emit("on_add_message", payload)
        self.progress(label, type=ProgressType.ADD_MESSAGE, payload=payload)
        return added

    def patch_message(self, message: Message, label: str = "Updated message", **changes: Any) -> None:
        patch = message.apply(**changes)
        self.emitters.emit("on_update_message", patch)
        self.progress(label, type=ProgressType.UPDATE_MESSAGE, payload=patch)

    def remove_message(self, message_id: str) -> bool:
        message = self._by_id.pop(message_id, None)
        if message is None:
            return False
        index = next(i for i, m in enumerate(self.messages) if m is message)
        del self.messages[index]
        self.emitters.emit("on_delete_message", message_id)
        self.progress("Removed instruction", type=ProgressType.REMOVE_MESSAGE, payload=message_id)
        return True

    def normalize_times(self) -> None:
        """Make stored times strictly increasing and emit the rewritten ones."""
        for index in enforce_monotonic_in_place(self.messages, self.min_step_seconds):
            message = self.messages[index]
            if message.id:
                self.emitters.emit("on_update_message", {"id": message.id, "time": message.time})

    def chunk(self, message: Message, source: str) -> None:
        self.emitters.emit(
            "on_chunk_message",
            {
                "text": message.content or "",
                "conversationId": self.conversation.id,
                "messageId": message.id,
                "mode": "full",
                "source": source,
            },
        )

    # --- conversation ------------------------------------------------------

    def set_conversation(self) -> None:
        self.emitters.emit("on_set_conversation", self.conversation.payload())

    def conversation_changed(self, patch: dict[str, Any] | None, label: str = "Update conversation") -> None:
        if not patch:
            return
        self.emitters.emit("on_update_conversation", patch)
        self.progress(label, type=ProgressType.UPDATE_CONVERSATION, payload=patch)

    def update_conversation(self, label: str = "Update conversation", **changes: Any) -> None:
        self.conversation_changed(self.conversation.apply(**changes), label)

    # --- context -----------------------------------------------------------

    def set_context(self) -> None:
        self.emitters.emit("on_set_context", copy.deepcopy(self.context))

    def merge_context(self, upsert: dict[str, Any] | None, label: str = "Update context") -> int:
        """Deep-merge ``upsert`` into the context; return how many keys were added."""
        if not upsert:
            return 0
        before = len(self.context)
        merged = deep_merge(self.context, upsert)
        self.context.clear()
        self.context.update(merged)

        patch = {key: copy.deepcopy(self.context[key]) for key in upsert}
        self.emitters.emit("on_update_context", patch)
        self.progress(label, type=ProgressType.UPDATE_CONTEXT, payload=patch)
        return len(self.context) - before

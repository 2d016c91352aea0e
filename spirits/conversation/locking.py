"""Lock-attempt state machine for conversations.

A conversation is either unlocked with a count of stagnant turns, or locked
with a reason. Every transition returns the wire-keyed patch of what changed
so the caller can emit it.
"""

from typing import Any

from spirits.conversation.models.conversation import Conversation

DEFAULT_MAX_LOCK_ATTEMPTS = 3


def max_attempts_reason(attempts: int, maximum: int) -> str:
    return f"Max lock attempts exceeded ({attempts} > {maximum})"


class LockStateMachine:
    """Drive ``lock_attempts``/``locked``/``locked_reason`` for one turn.

    ``baseline`` is the attempt count captured before workflow slots are
    applied; repeated instructions only count once per turn relative to it.
    """

    def __init__(
        self,
        conversation: Conversation,
        max_lock_attempts: int | None = None,
        unknown_reason: str = "Unknown",
    ) -> None:
        self.conversation = conversation
        self.max_lock_attempts = (
            max_lock_attempts if max_lock_attempts else DEFAULT_MAX_LOCK_ATTEMPTS
        )
        self.unknown_reason = unknown_reason
        self.baseline = conversation.lock_attempts

    def capture_baseline(self) -> int:
        self.baseline = self.conversation.lock_attempts
        return self.baseline

    def increment(self) -> dict[str, Any]:
        """Count a stagnant turn, locking once the ceiling is exceeded."""
        attempts = self.conversation.lock_attempts + 1
        changes: dict[str, Any] = {"lock_attempts": attempts}
        if attempts > self.max_lock_attempts:
            changes["locked"] = True
            changes["locked_reason"] = max_attempts_reason(attempts, self.max_lock_attempts)
        return self.conversation.apply(**changes)

    def repeated_instruction(self) -> dict[str, Any] | None:
        """Count a repeated instruction unless this turn already counted one."""
        if self.conversation.lock_attempts != self.baseline:
            return None
        return self.increment()

    def reset(self) -> dict[str, Any]:
        """Clear the lock and the attempt counter.

        A forward is cleared along with the lock, since a forwarded
        conversation is always locked.
        """
        return self.conversation.apply(
            lock_attempts=0, locked=False, locked_reason="", **self._unforward()
        )

    def _unforward(self) -> dict[str, Any]:
        if self.conversation.forwarded is None and self.conversation.forward_note is None:
            return {}
        return {"forwarded": None, "forward_note": None}

    def lock(self, reason: str | None = None) -> dict[str, Any]:
        """Lock the conversation, keeping any reason already recorded."""
        return self.conversation.apply(
            locked=True,
            locked_reason=self.conversation.locked_reason or reason or self.unknown_reason,
        )

    def forward(self, target: str, note: str | None = None) -> dict[str, Any]:
        """Lock for a forward and record its target."""
        changes: dict[str, Any] = {
            "locked": True,
            "locked_reason": self.conversation.locked_reason or "App instructed forward",
            "forwarded": target,
        }
        if note:
            changes["forward_note"] = note
        return self.conversation.apply(**changes)

    def reset_intent(self) -> dict[str, Any]:
        """Forget the conversation intent and clear the lock with it."""
        return self.conversation.apply(
            intent=None,
            intent_score=None,
            locked=False,
            locked_reason="",
            lock_attempts=0,
            **self._unforward(),
        )

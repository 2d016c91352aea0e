"""Conversation and customer models."""

from typing import Any

from pydantic import Field, field_validator

from spirits.conversation.models.base import WireModel


class Conversation(WireModel):
    """Conversation-level state carried across turns.

    A forwarded conversation is always locked; ``lock_attempts`` counts
    consecutive turns that made no progress.
    """

    id: str | None = None
    agent: str | None = Field(default=None, alias="$agent", description="Assigned persona id")
    customer: str | None = Field(default=None, alias="$customer", description="Customer id")
    environment: str | None = None
    locked: bool = False
    locked_reason: str = Field(default="", alias="lockedReason")
    lock_attempts: int = Field(default=0, ge=0, alias="lockAttempts")
    forwarded: str | None = None
    forward_note: str | None = Field(default=None, alias="forwardNote")
    intent: str | None = None
    intent_score: float | None = Field(default=None, alias="intentScore")

    # Anticipation written by the workflow for the next turn
    type: str | None = None
    slots: dict[str, Any] | None = None
    map: list[dict[str, Any]] | None = None
    did: str | None = None

    @field_validator("locked", mode="before")
    @classmethod
    def _locked_default(cls, value: Any) -> Any:
        return False if value is None else value

    @field_validator("locked_reason", mode="before")
    @classmethod
    def _reason_default(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("lock_attempts", mode="before")
    @classmethod
    def _attempts_default(cls, value: Any) -> Any:
        return 0 if value is None else value


class Customer(WireModel):
    """The customer on the other end of the conversation."""

    id: str | None = None
    name: str | None = None

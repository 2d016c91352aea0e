"""Turn result models.

Contains the ConversationEvent change record and per-stage timings.
"""

from datetime import datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from spirits.conversation.models import Conversation, Message
from spirits.conversation.models.enums import Stage
from spirits.turn.slots import EntityContextUpsert, Followup

T = TypeVar("T")


class StageTiming(BaseModel):
    """Timing information for a single pipeline stage."""

    stage: Stage
    started_at: datetime
    ended_at: datetime
    duration_ms: float = Field(ge=0)
    skipped: bool = False
    skip_reason: str | None = None


class Change(BaseModel, Generic[T]):
    """Before/after snapshots of one piece of state."""

    before: T
    after: T


class ConversationChange(Change[Conversation]):
    model_config = ConfigDict(populate_by_name=True)

    forward: bool | str | dict[str, Any] | None = None
    forward_note: str = Field(default="", alias="forwardNote")


class ConversationEvent(BaseModel):
    """Everything a customer turn changed.

    Returned by :meth:`spirits.turn.orchestrator.Spirits.customer`; the
    caller persists it (or relies on the state emitters instead).
    """

    model_config = ConfigDict(populate_by_name=True)

    conversation: ConversationChange
    messages: Change[list[Message]]
    message: Change[Message]
    context: Change[dict[str, Any]]
    followup: list[Followup] = Field(default_factory=list)
    entity_context_upsert: list[EntityContextUpsert] = Field(
        default_factory=list, alias="entityContextUpsert"
    )
    timings: list[StageTiming] = Field(default_factory=list)

    @property
    def locked(self) -> bool:
        return self.conversation.after.locked

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

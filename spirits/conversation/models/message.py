"""Message model for the conversation domain."""

from typing import Any

from pydantic import Field, field_validator

from spirits.conversation.models.base import WireModel
from spirits.conversation.models.enums import Role
from spirits.conversation.timing import normalize_time

VALID_ROLES: frozenset[str] = frozenset(role.value for role in Role)


class Message(WireModel):
    """A single message in a conversation transcript.

    ``role`` is kept as a plain string so that invalid roles survive
    construction and are reported by turn validation instead.
    """

    id: str = Field(default="", description="Unique message identifier")
    role: str = Field(default=Role.CUSTOMER.value, description="Message author")
    content: str | None = Field(default=None, description="Message text")
    time: str | None = Field(default=None, description="ISO-8601 UTC timestamp")
    name: str | None = None
    intent: str | None = Field(default=None, description="Detected intent")
    intent_score: float | None = Field(default=None, alias="intentScore")
    context: dict[str, Any] | None = Field(
        default=None, description="Context parsed from this message"
    )
    entities: list[Any] | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None
    content_generated: str | None = Field(default=None, alias="contentGenerated")
    content_transformed: str | None = Field(default=None, alias="contentTransformed")
    scheduled: str | None = Field(default=None, description="ISO time a delivery is scheduled")
    delay_in_seconds: float | None = Field(default=None, alias="delayInSeconds")
    ignore_transform: bool | None = Field(default=None, alias="ignoreTransform")

    @field_validator("time", "scheduled", mode="before")
    @classmethod
    def _normalize_time(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return normalize_time(value)

    @field_validator("role", mode="before")
    @classmethod
    def _role_value(cls, value: Any) -> Any:
        return value.value if isinstance(value, Role) else value

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def is_agent_text(self) -> bool:
        """Agent message carrying text rather than tool calls."""
        return self.role == Role.AGENT.value and not self.has_tool_calls

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def apply(self, **changes: Any) -> dict[str, Any]:
        """Set attributes and return an ``{id, ...}`` patch of the changes."""
        for name, value in changes.items():
            setattr(self, name, value)
        patch = self.model_dump(
            mode="json", by_alias=True, exclude_none=True, include=set(changes)
        )
        return {"id": self.id, **patch}

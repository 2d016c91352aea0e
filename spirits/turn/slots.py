"""Workflow response slots.

A workflow returns one slot or a list of them. Each slot is validated here,
including the ``anticipate`` payload, which is turned into an explicit
tagged union so malformed shapes fail at validation time.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from spirits.conversation.models.enums import ForwardMode
from spirits.conversation.timing import to_iso, utc_now


class SlotModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ForwardTarget(SlotModel):
    """Object form of ``forward``."""

    to: str | None = None
    mode: ForwardMode | None = None
    note: str | None = None


class Instruction(SlotModel):
    """System instruction; ``id`` lets a later slot remove it."""

    id: str | None = None
    content: str


InstructionsInput = str | Instruction | list[str | Instruction]


def iter_instructions(value: InstructionsInput | None) -> list[Instruction]:
    """Flatten every accepted instruction shape into Instruction objects."""
    if value is None:
        return []
    items = value if isinstance(value, list) else [value]
    return [
        item if isinstance(item, Instruction) else Instruction(content=item)
        for item in items
    ]


class Followup(SlotModel):
    """Scheduled follow-up with the customer."""

    scheduled: float
    cancel_if: dict[str, Any] | None = Field(default=None, alias="cancelIf")
    override_lock: bool | None = Field(default=None, alias="overrideLock")
    message: str | None = None
    instructions: InstructionsInput | None = None

    @model_validator(mode="after")
    def _message_or_instructions(self) -> "Followup":
        if self.message is None and self.instructions is None:
            raise ValueError("followup requires either 'message' or 'instructions'")
        return self


class DeleteEntityContext(SlotModel):
    entity_type: str = Field(alias="entityType")
    entity_record_id: str = Field(alias="entityRecordId")
    method: Literal["delete"]


class MutateEntityContext(SlotModel):
    entity_type: str = Field(alias="entityType")
    entity_record_id: str = Field(alias="entityRecordId")
    method: Literal["mutate"]
    fields: dict[str, str | int | float | bool | None]


EntityContextUpsert = Annotated[
    DeleteEntityContext | MutateEntityContext,
    Field(discriminator="method"),
]


class WorkflowSlotBase(SlotModel):
    """Slot fields that may also appear inside an anticipation branch."""

    context_upsert: dict[str, Any] | None = Field(default=None, alias="contextUpsert")
    followup: Followup | None = None
    forward: bool | str | ForwardTarget | None = None
    forward_note: str | None = Field(default=None, alias="forwardNote")
    instructions: InstructionsInput | None = None
    message: str | dict[str, Any] | None = None
    remove_instructions: list[str] | None = Field(default=None, alias="removeInstructions")
    reset_intent: bool | None = Field(default=None, alias="resetIntent")
    seconds_delay: float | None = Field(default=None, alias="secondsDelay")
    scheduled: float | None = None

    @property
    def instruction_items(self) -> list[Instruction]:
        return iter_instructions(self.instructions)

    def draft_fields(self, now: datetime | None = None) -> dict[str, Any] | None:
        """Message fields for the slot's custom agent message, if any."""
        if self.message is None or self.message == "":
            return None

        if isinstance(self.message, str):
            fields: dict[str, Any] = {"content": self.message}
        else:
            fields = {k: v for k, v in self.message.items() if k not in ("id", "role", "time")}

        if not fields.get("tool_calls") and fields.get("content") is not None:
            fields.setdefault("contentGenerated", fields["content"])

        now = now or utc_now()
        if self.scheduled:
            at = to_iso(datetime.fromtimestamp(self.scheduled, tz=UTC))
            fields["time"] = at
            fields["scheduled"] = at
        elif self.seconds_delay:
            fields["time"] = to_iso(now + timedelta(seconds=self.seconds_delay))
            fields["delayInSeconds"] = self.seconds_delay
        return fields


class KeywordRoute(SlotModel):
    slot: str
    keywords: list[str]


class LiteralAnticipation(SlotModel):
    """Next-turn branches chosen by keyword match."""

    kind: Literal["literal"] = "literal"
    slots: dict[str, WorkflowSlotBase]
    map: list[KeywordRoute]


class DecisionAnticipation(SlotModel):
    """Next-turn yes/no branches decided by the ``did`` prompt."""

    kind: Literal["did"] = "did"
    did: str
    yes: WorkflowSlotBase
    no: WorkflowSlotBase


Anticipation = LiteralAnticipation | DecisionAnticipation


def parse_anticipate(raw: Any) -> Anticipation | None:
    """Build the anticipation variant matching ``raw``'s shape.

    Raises:
        ValueError: If ``raw`` is neither a keyword list nor a did/yes/no object
    """
    if raw is None or isinstance(raw, LiteralAnticipation | DecisionAnticipation):
        return raw

    if isinstance(raw, list):
        slots: dict[str, WorkflowSlotBase] = {}
        routes: list[KeywordRoute] = []
        for index, entry in enumerate(raw):
            if not isinstance(entry, dict) or not entry.get("keywords"):
                raise ValueError(f"anticipate[{index}] must be a slot with 'keywords'")
            keywords = entry["keywords"]
            if not isinstance(keywords, list) or not 1 <= len(keywords) <= 20:
                raise ValueError(f"anticipate[{index}].keywords must hold 1 to 20 strings")
            branch = {k: v for k, v in entry.items() if k != "keywords"}
            slots[str(index)] = WorkflowSlotBase.model_validate(branch)
            routes.append(KeywordRoute(slot=str(index), keywords=keywords))
        return LiteralAnticipation(slots=slots, map=routes)

    if isinstance(raw, dict) and {"did", "yes", "no"} <= raw.keys():
        return DecisionAnticipation(did=raw["did"], yes=raw["yes"], no=raw["no"])

    raise ValueError(
        "anticipate must be a list of keyword slots or an object with 'did', 'yes' and 'no'"
    )


def anticipation_fields(anticipation: Anticipation) -> dict[str, Any]:
    """Conversation fields recording an anticipation."""
    if isinstance(anticipation, LiteralAnticipation):
        return {
            "type": "literal",
            "slots": {key: slot.payload() for key, slot in anticipation.slots.items()},
            "map": [route.payload() for route in anticipation.map],
            "did": None,
        }
    return {
        "type": "did",
        "slots": {"yes": anticipation.yes.payload(), "no": anticipation.no.payload()},
        "map": None,
        "did": anticipation.did,
    }


class WorkflowSlot(WorkflowSlotBase):
    """One instruction set returned by the workflow."""

    anticipate: Anticipation | None = None
    entity_context_upsert: list[EntityContextUpsert] | None = Field(
        default=None, alias="entityContextUpsert"
    )
    tasks: list[str] | None = None

    @field_validator("anticipate", mode="before")
    @classmethod
    def _tag_anticipate(cls, value: Any) -> Any:
        return parse_anticipate(value)


def _expand(item: Any) -> Any:
    if isinstance(item, WorkflowSlot):
        return item
    if isinstance(item, BaseModel):
        return item.model_dump(by_alias=True, exclude_none=True)
    to_json = getattr(item, "to_json", None)
    if callable(to_json):
        item = to_json()
        if isinstance(item, str):
            item = json.loads(item)
    return item if item is not None else {}


def normalize_slots(result: Any) -> list[WorkflowSlot]:
    """Validate a workflow result into an ordered list of slots."""
    items = result if isinstance(result, list | tuple) else [result]
    return [WorkflowSlot.model_validate(_expand(item)) for item in items]


def resolve_forward(
    forward: bool | str | ForwardTarget | None,
    default_target: str | None,
) -> tuple[str, ForwardMode | None, str | None] | None:
    """Resolve a slot forward into ``(target, mode, note)``, or None."""
    if forward is None or forward is False or forward == "":
        return None
    if forward is True:
        return default_target or "", None, None
    if isinstance(forward, str):
        return forward, None, None
    return forward.to or default_target or "", forward.mode, forward.note


def forward_message(target: str, mode: ForwardMode | None) -> str:
    text = f'forwarded to "{target}"'
    if mode:
        text += f" ({mode.value})"
    return text

"""Project configuration supplied with each turn."""

from typing import Any, ClassVar

from pydantic import Field

from spirits.conversation.models.base import WireModel

# Training material carried on a persona that is never handed to workflows.
LORE_FIELDS: frozenset[str] = frozenset({"transcripts", "audios"})


class Persona(WireModel):
    """AI identity a conversation is assigned to."""

    id: str
    name: str | None = None
    context: str | None = None
    transcripts: list[Any] | None = None
    audios: list[Any] | None = None

    def without_lore(self) -> dict[str, Any]:
        data = self.payload()
        for key in LORE_FIELDS:
            data.pop(key, None)
        return data


class ProjectConfig(WireModel):
    """Generation settings and personas for a project."""

    renamed_keys: ClassVar[dict[str, str]] = {"personas": "agents"}

    agents: list[Persona] = Field(default_factory=list)
    llm: dict[str, Any] | None = None
    pmt: dict[str, Any] | None = None
    max_lock_attempts: int | None = Field(default=None, alias="maxLockAttempts")

    def find_persona(self, persona_id: str | None) -> Persona | None:
        if not persona_id:
            return None
        return next((p for p in self.agents if p.id == persona_id), None)

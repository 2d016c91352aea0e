"""Callback contracts consumed by the turn orchestrator.

Stage callbacks do the actual language work (parsing, workflow logic,
generation, tone transformation); the orchestrator only sequences them.
Each may be a plain function or a coroutine function.
"""

import inspect
from uuid import uuid4
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from spirits.conversation.models import Conversation, Customer, Message, Persona
from spirits.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def resolve(value: T | Awaitable[T]) -> T:
    """Await ``value`` if the callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


class CallbackModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", arbitrary_types_allowed=True)


# --- Stage results -----------------------------------------------------------


class ParseResult(CallbackModel):
    """Output of the parser stage."""

    intent: str | None = None
    intent_score: float | None = Field(default=None, alias="intentScore")
    context: dict[str, Any] = Field(default_factory=dict)
    entities: list[Any] = Field(default_factory=list)
    context_messages: list[str | dict[str, Any]] = Field(
        default_factory=list, alias="contextMessages"
    )

    @field_validator("context", "entities", "context_messages", mode="before")
    @classmethod
    def _empty_when_null(cls, value: Any, info: Any) -> Any:
        if value is None:
            return {} if info.field_name == "context" else []
        return value


class GenerateResult(CallbackModel):
    """Output of the generator stage."""

    send: bool = False
    messages: list[dict[str, Any] | Message] = Field(default_factory=list)
    forward: bool | str | dict[str, Any] | None = None
    forward_note: str | None = Field(default=None, alias="forwardNote")
    errors: list[Any] | None = None
    error: str | None = None

    @field_validator("messages", mode="before")
    @classmethod
    def _messages_list(cls, value: Any) -> Any:
        return [] if value is None else value

    def failure_reason(self) -> str:
        """Why the generator declined to send."""
        if self.errors:
            return "; ".join(str(e) for e in self.errors)
        return self.error or self.forward_note or "Unknown Reason"


class TransformResult(CallbackModel):
    """Output of the transformer stage: a message list or one bare text."""

    messages: list[dict[str, Any] | Message] | None = None
    message: str | None = None

    def as_messages(self) -> list[dict[str, Any] | Message]:
        if self.messages is not None:
            return list(self.messages)
        if self.message is not None:
            return [{"role": "agent", "content": self.message}]
        return []


# --- Stage requests ----------------------------------------------------------


class IntentFlow(CallbackModel):
    current: str | None = None
    flow: list[str] = Field(default_factory=list)
    initial: str | None = None


class ContextualizeRequest(CallbackModel):
    messages: list[Message]
    conversation: Conversation


class WorkflowEvent(CallbackModel):
    """Everything a workflow needs to decide this turn's slots."""

    messages: list[Message]
    conversation: Conversation
    context: dict[str, Any]
    message: Message
    agent: dict[str, Any] = Field(description="Persona without lore fields")
    customer: Customer
    intent: IntentFlow
    stagnation_count: int = Field(default=0, alias="stagnationCount")


class GenerateRequest(CallbackModel):
    messages: list[Message]
    persona: Persona
    context: dict[str, Any]
    llm: dict[str, Any] | None = None
    pmt: dict[str, Any] | None = None
    tasks: list[str] | None = None


class TransformRequest(CallbackModel):
    added_messages: list[Message] = Field(alias="addedMessages")
    persona: Persona
    customer: str | None = None
    messages: list[Message]
    context: dict[str, Any]


# --- Callable protocols ------------------------------------------------------


class Parser(Protocol):
    def __call__(self, content: str, language: str | None = None) -> Any: ...


class Contextualizer(Protocol):
    def __call__(self, request: ContextualizeRequest) -> Any: ...


class Workflow(Protocol):
    def __call__(self, event: WorkflowEvent) -> Any: ...


class Generator(Protocol):
    def __call__(self, request: GenerateRequest) -> Any: ...


class Transformer(Protocol):
    def __call__(self, request: TransformRequest) -> Any: ...


class IdGenerator(Protocol):
    def __call__(self, prefix: str) -> str: ...


class ProgressReporter(Protocol):
    def __call__(
        self,
        message: str,
        level: str = "info",
        type: str | None = None,
        payload: Any = None,
    ) -> None: ...


def _no_progress(message: str, level: str = "info", type: str | None = None, payload: Any = None) -> None:
    return None


def default_id_generator(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


async def _no_context(request: ContextualizeRequest) -> list[Message]:
    return []


@dataclass
class StageCallbacks:
    """The injected stage functions for a turn."""

    parser: Parser
    workflow: Workflow
    generator: Generator
    id_generator: IdGenerator = default_id_generator
    contextualizer: Contextualizer = _no_context
    transformer: Transformer | None = None
    progress: ProgressReporter = _no_progress


@dataclass
class StateEmitters:
    """Optional persistence hooks, invoked synchronously as state changes.

    A failing hook is logged and ignored; it never aborts the turn.
    """

    on_set_context: Callable[[dict[str, Any]], Any] | None = None
    on_update_context: Callable[[dict[str, Any]], Any] | None = None
    on_set_conversation: Callable[[dict[str, Any]], Any] | None = None
    on_update_conversation: Callable[[dict[str, Any]], Any] | None = None
    on_chunk_message: Callable[[dict[str, Any]], Any] | None = None
    on_add_message: Callable[[dict[str, Any]], Any] | None = None
    on_update_message: Callable[[dict[str, Any]], Any] | None = None
    on_delete_message: Callable[[str], Any] | None = None

    def emit(self, name: str, payload: Any) -> None:
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            callback(payload)
        except Exception as e:
            logger.error("emit_callback_failed", callback=name, error=str(e))

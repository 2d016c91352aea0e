"""Conversation-turn orchestrator.

Drives one inbound customer message through the pipeline:

1. Normalize - Make stored message times monotonic, add the inbound message
2. Parse - Intent, entities and context for the message
3. Contextualize - Extra system messages for the transcript
4. Workflow - Application logic returning instruction slots
5. Lock transition - Count stagnant turns, lock past the ceiling
6. Slot effects - Forwards, instructions, context upserts, anticipation
7. Generate - Draft agent replies (skipped for locked conversations)
8. Transform - Rewrite drafts in the persona's voice
9. Finalize - Re-check ordering, report diagnostics, build the change record

Parse, contextualize and workflow failures abort the turn. Generate and
transform failures lock the conversation and the turn still completes.
"""

import copy
import time
from collections import Counter
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from spirits.config import Settings, get_settings
from spirits.config.models.orchestrator import OrchestratorConfig
from spirits.conversation.dedup import dedupe_messages, missing_tool_responses
from spirits.conversation.locking import LockStateMachine
from spirits.conversation.models import (
    VALID_ROLES,
    Conversation,
    Customer,
    Message,
    Persona,
    ProgressLevel,
    ProgressType,
    ProjectConfig,
    Role,
    Stage,
)
from spirits.conversation.timing import (
    enforce_monotonic_in_place,
    next_monotonic_iso,
    normalize_time,
    to_iso,
    utc_now,
)
from spirits.exceptions import FATAL_STAGES, StageError, TurnValidationError
from spirits.observability.logging import (
    bind_turn_context,
    clear_turn_context,
    get_logger,
    setup_logging_from_config,
)
from spirits.observability.metrics import (
    CONVERSATION_LOCKS,
    DUPLICATES_REMOVED,
    STAGE_ERRORS,
    STAGE_LATENCY,
    TURNS,
    lock_kind,
)
from spirits.turn.callbacks import (
    ContextualizeRequest,
    GenerateRequest,
    GenerateResult,
    IntentFlow,
    ParseResult,
    StageCallbacks,
    StateEmitters,
    TransformRequest,
    TransformResult,
    WorkflowEvent,
    resolve,
)
from spirits.turn.result import Change, ConversationChange, ConversationEvent, StageTiming
from spirits.turn.slots import (
    EntityContextUpsert,
    Followup,
    ForwardTarget,
    Instruction,
    WorkflowSlot,
    anticipation_fields,
    forward_message,
    normalize_slots,
    resolve_forward,
)
from spirits.turn.state import TurnState

logger = get_logger(__name__)

ErrorSink = Callable[[StageError], Any]


@dataclass
class ConversationData:
    """Conversation state supplied by the caller for one turn.

    Plain mappings are accepted for every field and converted to models.
    ``messages`` and ``context`` are used by reference and mutated in place;
    a ``messages`` list holding plain mappings is converted into a new list
    and the caller's list is left untouched.
    """

    config: ProjectConfig
    conversation: Conversation
    messages: list[Message]
    message: Message
    customer: Customer = field(default_factory=Customer)
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.config, ProjectConfig):
            self.config = ProjectConfig.model_validate(self.config or {})
        if not isinstance(self.conversation, Conversation):
            self.conversation = Conversation.model_validate(self.conversation)
        if not isinstance(self.message, Message):
            self.message = Message.model_validate(self.message)
        if not isinstance(self.customer, Customer):
            self.customer = Customer.model_validate(self.customer or {})
        if self.context is None:
            self.context = {}
        if not all(isinstance(m, Message) for m in self.messages):
            self.messages = [
                m if isinstance(m, Message) else Message.model_validate(m) for m in self.messages
            ]


def _context_message(entry: str | Mapping[str, Any]) -> Message | None:
    """System message for a parser context entry, or None when it has no text."""
    fields = {"content": entry} if isinstance(entry, str) else dict(entry)
    content = fields.get("content")
    if not isinstance(content, str) or not content.strip():
        return None
    return Message.model_validate({**fields, "role": Role.SYSTEM.value})


@dataclass
class _Turn:
    """Scratch state accumulated while one turn runs."""

    data: ConversationData
    state: TurnState
    lock: LockStateMachine
    persona: Persona
    on_error: ErrorSink | None
    message: Message
    started_locked: bool
    forward: Any = None
    forward_note: str = ""
    followup: list[Followup] = field(default_factory=list)
    entity_context_upsert: list[EntityContextUpsert] = field(default_factory=list)
    tasks: list[str] = field(default_factory=list)
    drafts: list[Message] = field(default_factory=list)
    timings: list[StageTiming] = field(default_factory=list)
    new_context_keys: int = 0
    instructions_added: bool = False


class Spirits:
    """Run customer turns through the injected pipeline stages.

    One instance can serve many conversations, but turns for the same
    conversation must not overlap: state is mutated by reference without
    locking.
    """

    def __init__(
        self,
        callbacks: StageCallbacks,
        emitters: StateEmitters | None = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            callbacks: Stage functions (parser, workflow, generator, ...)
            emitters: Optional persistence hooks fired as state changes
            config: Orchestrator defaults (time step, lock ceiling, language)
        """
        self._callbacks = callbacks
        self._emitters = emitters or StateEmitters()
        self._config = config or OrchestratorConfig()

    @classmethod
    def from_settings(
        cls,
        callbacks: StageCallbacks,
        emitters: StateEmitters | None = None,
        settings: Settings | None = None,
    ) -> "Spirits":
        """Build an orchestrator from application settings and set up logging."""
        settings = settings or get_settings()
        setup_logging_from_config(settings.observability.logging)
        return cls(callbacks, emitters, config=settings.orchestrator)

    async def customer(
        self,
        data: ConversationData | Mapping[str, Any],
        on_error: ErrorSink | None = None,
    ) -> ConversationEvent:
        """Process one inbound customer message.

        Args:
            data: Project config, conversation, messages, inbound message,
                customer and context
            on_error: Receives generate/transform failures, which degrade the
                turn instead of aborting it

        Returns:
            ConversationEvent with before/after snapshots

        Raises:
            TurnValidationError: If the input violates a precondition
            StageError: If the parse, contextualize or workflow stage fails
        """
        if not isinstance(data, ConversationData):
            try:
                data = ConversationData(**data)
            except (TypeError, ValidationError) as e:
                raise TurnValidationError(f"Invalid conversation data: {e}") from e

        persona = self._validate(data)
        turn_id = uuid4().hex
        bind_turn_context(conversation_id=data.conversation.id, turn_id=turn_id)
        try:
            event = await self._customer_impl(data, persona, on_error)
        except StageError:
            TURNS.labels(outcome="failed").inc()
            raise
        finally:
            clear_turn_context("conversation_id", "turn_id")

        TURNS.labels(outcome="locked" if event.locked else "completed").inc()
        return event

    # --- validation --------------------------------------------------------

    def _validate(self, data: ConversationData) -> Persona:
        conversation = data.conversation
        if not conversation.agent:
            raise TurnValidationError(
                'No agent found in conversation, must define "$agent" in the conversation'
            )

        persona = data.config.find_persona(conversation.agent)
        if persona is None:
            raise TurnValidationError(
                f'No persona found ("{conversation.agent}") in provided config'
            )

        if not all(m.id and m.id.strip() for m in data.messages):
            raise TurnValidationError(
                "Every message must have an id, assign ids to all messages before running"
            )

        counts = Counter(m.id for m in data.messages)
        duplicates = sorted(message_id for message_id, count in counts.items() if count > 1)
        if duplicates:
            raise TurnValidationError(f"Duplicate message ids: {', '.join(duplicates)}")

        invalid = [m.role for m in data.messages if m.role not in VALID_ROLES]
        if invalid:
            raise TurnValidationError(
                'Every message must have a role of "customer", "agent", "system" or "tool". '
                f"Got invalid roles: {', '.join(map(str, invalid))}"
            )

        return persona

    # --- pipeline ----------------------------------------------------------

    async def _customer_impl(
        self,
        data: ConversationData,
        persona: Persona,
        on_error: ErrorSink | None,
    ) -> ConversationEvent:
        conversation_before = data.conversation.model_copy(deep=True)
        messages_before = [m.model_copy(deep=True) for m in data.messages]
        message_before = data.message.model_copy(deep=True)
        context_before = copy.deepcopy(data.context)

        state = TurnState(
            conversation=data.conversation,
            messages=data.messages,
            context=data.context,
            emitters=self._emitters,
            progress=self._callbacks.progress,
            min_step_seconds=self._config.min_step_seconds,
        )
        lock = LockStateMachine(
            data.conversation,
            max_lock_attempts=data.config.max_lock_attempts or self._config.max_lock_attempts,
            unknown_reason=self._config.unknown_lock_reason,
        )

        logger.info(
            "processing_turn",
            message_count=len(data.messages),
            locked=data.conversation.locked,
            lock_attempts=data.conversation.lock_attempts,
        )

        # Step 1: Normalize stored times and make sure the inbound message is present
        state.normalize_times()
        state.set_conversation()
        state.set_context()
        if not data.message.id:
            data.message.id = self._callbacks.id_generator(Role.CUSTOMER.value)
        message = state.get(data.message.id) or state.add_message(data.message, "Added customer message")

        turn = _Turn(
            data=data,
            state=state,
            lock=lock,
            persona=persona,
            on_error=on_error,
            message=message,
            started_locked=data.conversation.locked,
        )

        # Step 2-4: Parse, contextualize, workflow
        await self._parse(turn)
        await self._contextualize(turn)
        slots = await self._workflow(turn)

        # Step 5: Lock-attempt transition
        has_instructions = any(slot.instruction_items for slot in slots)
        if not has_instructions and turn.new_context_keys == 0:
            self._conversation_changed(turn, lock.increment(), "Incremented lock attempt")
        else:
            state.conversation_changed(lock.reset(), "Reset lock")
        locked_after_transition = data.conversation.locked
        lock.capture_baseline()

        # Step 6-7: Slot effects
        self._apply_slots(turn, slots)

        # Step 8: Generate
        has_custom_message = any(slot.message for slot in slots)
        if turn.started_locked:
            self._skip(turn, Stage.GENERATE, "conversation locked at turn start")
        elif has_custom_message:
            self._skip(turn, Stage.GENERATE, "workflow supplied a message")
        elif locked_after_transition and not turn.instructions_added:
            self._skip(turn, Stage.GENERATE, "conversation locked")
        else:
            await self._generate(turn)

        # Step 9: Transform
        await self._transform(turn)

        # Step 10: Final ordering and diagnostics
        self._finalize(turn)

        state.progress("Turn complete", type=ProgressType.SET_PROCESSING, payload=None)
        logger.info(
            "turn_processed",
            message_count=len(state.messages),
            locked=data.conversation.locked,
            lock_attempts=data.conversation.lock_attempts,
            forwarded=data.conversation.forwarded,
        )

        # Step 11: Change record
        return ConversationEvent(
            conversation=ConversationChange(
                before=conversation_before,
                after=data.conversation,
                forward=turn.forward,
                forward_note=turn.forward_note,
            ),
            messages=Change[list[Message]](before=messages_before, after=state.messages),
            message=Change[Message](before=message_before, after=turn.message),
            context=Change[dict[str, Any]](before=context_before, after=state.context),
            followup=turn.followup,
            entity_context_upsert=turn.entity_context_upsert,
            timings=turn.timings,
        )

    @contextmanager
    def _stage(self, turn: _Turn, stage: Stage) -> Iterator[None]:
        """Time a stage and tag any failure with it."""
        started_at = utc_now()
        start = time.perf_counter()
        try:
            yield
        except StageError:
            raise
        except Exception as e:
            fatal = stage in FATAL_STAGES
            logger.error("stage_failed", stage=stage.value, fatal=fatal, error=str(e))
            STAGE_ERRORS.labels(stage=stage.value, fatal=str(fatal).lower()).inc()
            raise StageError(stage, str(e) or type(e).__name__, e) from e
        finally:
            elapsed = time.perf_counter() - start
            STAGE_LATENCY.labels(stage=stage.value).observe(elapsed)
            turn.timings.append(
                StageTiming(
                    stage=stage,
                    started_at=started_at,
                    ended_at=utc_now(),
                    duration_ms=elapsed * 1000,
                )
            )

    def _skip(self, turn: _Turn, stage: Stage, reason: str) -> None:
        now = utc_now()
        logger.debug("stage_skipped", stage=stage.value, reason=reason)
        turn.timings.append(
            StageTiming(
                stage=stage,
                started_at=now,
                ended_at=now,
                duration_ms=0,
                skipped=True,
                skip_reason=reason,
            )
        )

    def _new_id(self, role: str) -> str:
        return self._callbacks.id_generator(role)

    def _conversation_changed(self, turn: _Turn, patch: dict[str, Any] | None, label: str) -> None:
        turn.state.conversation_changed(patch, label)
        if patch and patch.get("locked"):
            logger.warning("conversation_locked", reason=turn.state.conversation.locked_reason)

    def _lock(self, turn: _Turn, reason: str) -> None:
        self._conversation_changed(turn, turn.lock.lock(reason), "Locked conversation")

    async def _degrade(self, turn: _Turn, error: StageError) -> None:
        """Lock the conversation for a failed generate/transform stage."""
        cause = error.cause
        detail = (str(cause) or type(cause).__name__) if cause else error.message
        logger.warning("stage_degraded", stage=error.stage.value, error=detail)
        turn.state.progress(
            f"Locking conversation, {error.stage.value} failed: {detail}",
            ProgressLevel.ERROR,
        )
        self._lock(turn, f"API: {detail}")
        if turn.on_error is not None:
            try:
                await resolve(turn.on_error(error))
            except Exception as e:
                logger.error("on_error_callback_failed", error=str(e))

    # --- stages ------------------------------------------------------------

    async def _parse(self, turn: _Turn) -> None:
        state = turn.state
        conversation = state.conversation
        message = turn.message

        state.progress("Parsing message", type=ProgressType.SET_PROCESSING, payload=Role.CUSTOMER.value)
        with self._stage(turn, Stage.PARSE):
            raw = await resolve(
                self._callbacks.parser(message.content or "", self._config.default_language)
            )
            parsed = ParseResult.model_validate(raw or {})
            context_messages = [
                m for m in map(_context_message, parsed.context_messages) if m is not None
            ]

        changes: dict[str, Any] = {"context": parsed.context, "entities": parsed.entities}
        if parsed.intent:
            changes["intent"] = parsed.intent
        if parsed.intent_score is not None:
            changes["intent_score"] = parsed.intent_score

        target = state.get(message.id) or state.find_by_key(message)
        if target is None:
            target = state.add_message(
                Message(
                    id=self._new_id(Role.CUSTOMER.value),
                    role=Role.CUSTOMER.value,
                    content=message.content,
                    **changes,
                ),
                "Added message",
            )
        else:
            state.patch_message(target, "Parsed message", **changes)
        turn.message = target

        previous = [
            m for m in state.of_role(Role.CUSTOMER) if m.content != target.content
        ]
        if not conversation.intent or (not previous and parsed.intent):
            state.update_conversation(
                "Updated conversation intent",
                intent=parsed.intent,
                intent_score=parsed.intent_score or 0,
            )

        turn.new_context_keys = state.merge_context(parsed.context, "Merged parsed context")
        if not conversation.locked and turn.new_context_keys > 0:
            state.conversation_changed(turn.lock.reset(), "Reset lock")

        for context_message in context_messages:
            if state.has_content(context_message.content):
                continue
            if not context_message.id or state.contains(context_message.id):
                context_message.id = self._new_id("sys")
            state.add_message(context_message, "Added context message")

    async def _contextualize(self, turn: _Turn) -> None:
        state = turn.state
        request = ContextualizeRequest(messages=state.messages, conversation=state.conversation)
        with self._stage(turn, Stage.CONTEXTUALIZE):
            raw = await resolve(self._callbacks.contextualizer(request))
            candidates = [
                c if isinstance(c, Message) else Message.model_validate({"role": Role.SYSTEM.value, **c})
                for c in raw or []
            ]

        for candidate in candidates:
            if not (candidate.content or "").strip():
                logger.warning("contextual_message_rejected", reason="empty content")
                state.progress(
                    "Rejected empty contextual message",
                    ProgressLevel.WARN,
                    ProgressType.INPUT_ERROR,
                    candidate.payload(),
                )
                continue
            if state.find_by_key(candidate) is not None:
                logger.debug("contextual_message_skipped", reason="already present")
                continue
            if not candidate.id or state.contains(candidate.id):
                candidate = candidate.model_copy(update={"id": self._new_id("sys")})
            state.add_message(candidate, "Added contextual message")

    async def _workflow(self, turn: _Turn) -> list[WorkflowSlot]:
        state = turn.state
        conversation = state.conversation
        last_customer = state.last_of_role(Role.CUSTOMER)

        event = WorkflowEvent(
            messages=state.messages,
            conversation=conversation,
            context=state.context,
            message=turn.message,
            agent=turn.persona.without_lore(),
            customer=turn.data.customer,
            intent=IntentFlow(
                current=last_customer.intent if last_customer else None,
                flow=[m.intent for m in state.messages if m.intent],
                initial=conversation.intent,
            ),
            stagnation_count=conversation.lock_attempts,
        )

        state.progress("Running workflow", type=ProgressType.SET_PROCESSING, payload=Role.SYSTEM.value)
        with self._stage(turn, Stage.WORKFLOW):
            slots = normalize_slots(await resolve(self._callbacks.workflow(event)))

            for slot in slots:
                fields = slot.draft_fields()
                if fields is None:
                    continue
                if not fields.get("content") and not fields.get("tool_calls"):
                    logger.error("slot_message_rejected", reason="message needs content or tool_calls")
                    state.progress(
                        "Workflow message has neither content nor tool_calls",
                        ProgressLevel.ERROR,
                        ProgressType.INPUT_ERROR,
                        fields,
                    )
                    continue
                turn.drafts.append(
                    Message.model_validate(
                        {**fields, "id": self._new_id(Role.AGENT.value), "role": Role.AGENT.value}
                    )
                )
        enforce_monotonic_in_place(turn.drafts, state.min_step_seconds)
        return slots

    def _apply_slots(self, turn: _Turn, slots: list[WorkflowSlot]) -> None:
        state = turn.state
        reset_intent = False

        for slot in slots:
            if slot.anticipate is not None:
                state.update_conversation("Set anticipation", **anticipation_fields(slot.anticipate))
            if slot.tasks:
                turn.tasks.extend(slot.tasks)
            if slot.followup is not None:
                turn.followup.append(slot.followup)
            if slot.entity_context_upsert:
                turn.entity_context_upsert.extend(slot.entity_context_upsert)

            if slot.forward is not None:
                self._forward(turn, slot)

            for instruction in slot.instruction_items:
                self._add_instruction(turn, instruction)

            for instruction_id in slot.remove_instructions or ():
                if not state.remove_message(instruction_id):
                    logger.info("instruction_not_found", instruction_id=instruction_id)

            if slot.context_upsert:
                state.merge_context(slot.context_upsert, "Upserted context")

            if slot.reset_intent:
                reset_intent = True

        if reset_intent and turn.forward is None:
            state.conversation_changed(turn.lock.reset_intent(), "Reset conversation intent")

    def _forward(self, turn: _Turn, slot: WorkflowSlot) -> None:
        state = turn.state
        resolved = resolve_forward(slot.forward, state.conversation.agent)
        if resolved is None:
            return
        target, mode, note = resolved
        note = note or slot.forward_note

        if turn.forward is not None:
            logger.info("forward_ignored", target=target, forwarded=state.conversation.forwarded)
            return

        turn.forward = slot.forward.payload() if isinstance(slot.forward, ForwardTarget) else slot.forward
        turn.forward_note = note or ""
        self._conversation_changed(turn, turn.lock.forward(target, note), f'Forwarded to "{target}"')
        state.add_message(
            Message(
                id=self._new_id("sys"),
                role=Role.SYSTEM.value,
                content=forward_message(target, mode),
            ),
            f'Forwarded to "{target}"',
        )

    def _add_instruction(self, turn: _Turn, instruction: Instruction) -> None:
        state = turn.state
        last_system = state.last_of_role(Role.SYSTEM)

        if last_system is not None and last_system.content == instruction.content:
            self._conversation_changed(turn, turn.lock.repeated_instruction(), "Repeated instruction")
            return

        message_id = instruction.id
        if not message_id or state.contains(message_id):
            message_id = self._new_id("sys")
        state.add_message(
            Message(id=message_id, role=Role.SYSTEM.value, content=instruction.content),
            "Added instruction",
        )
        turn.instructions_added = True

    async def _generate(self, turn: _Turn) -> None:
        state = turn.state
        config = turn.data.config
        step = state.min_step_seconds

        request = GenerateRequest(
            messages=state.messages,
            persona=turn.persona,
            context=state.context,
            llm=config.llm,
            pmt=config.pmt,
            tasks=turn.tasks or None,
        )
        state.progress("Generating response", type=ProgressType.SET_PROCESSING, payload=Role.SYSTEM.value)
        try:
            with self._stage(turn, Stage.GENERATE):
                result = GenerateResult.model_validate(
                    await resolve(self._callbacks.generator(request)) or {}
                )
                generated = (
                    [self._generated_message(turn, raw) for raw in result.messages]
                    if result.send
                    else []
                )
        except StageError as error:
            await self._degrade(turn, error)
            return

        if not result.send:
            reason = result.failure_reason()
            logger.error("generator_declined", reason=reason)
            state.progress("Generated response", ProgressLevel.ERROR, payload={"error": reason})
            self._lock(turn, f"API: {reason}")
            return

        state.progress("Generated response", ProgressLevel.SUCCESS)
        survivors, dropped = dedupe_messages(generated)
        for duplicate in dropped:
            DUPLICATES_REMOVED.inc()
            logger.error("duplicate_message_removed", role=duplicate.role, content=duplicate.content)
            state.progress(
                "Duplicate message removed",
                ProgressLevel.WARN,
                ProgressType.DUPLICATE_MESSAGE_REMOVED,
                duplicate.payload(),
            )
        enforce_monotonic_in_place(survivors, step)
        self._check_tool_pairing(turn, [*state.messages, *turn.drafts, *survivors], "post-dedupe")

        last_agent = state.last_of_role(Role.AGENT)
        if last_agent is not None and last_agent.content and any(
            m.content == last_agent.content for m in survivors
        ):
            self._lock(turn, "Duplicate message")
        else:
            turn.drafts.extend(survivors)
            enforce_monotonic_in_place(turn.drafts, step)

        if result.forward:
            note = result.forward_note
            self._lock(turn, f"API: {note or 'Forwarded by API'}")
            if turn.forward is None:
                forward = result.forward
                if isinstance(forward, dict):
                    forward = ForwardTarget.model_validate(forward)
                resolved = resolve_forward(forward, state.conversation.agent)
                turn.forward = result.forward
                turn.forward_note = note or ""
                if resolved is not None:
                    state.update_conversation(
                        "Forwarded by generator",
                        forwarded=resolved[0],
                        forward_note=note or resolved[2],
                    )

    def _generated_message(self, turn: _Turn, raw: Message | dict[str, Any]) -> Message:
        state = turn.state
        fields = raw.payload() if isinstance(raw, Message) else dict(raw)
        role = fields.get("role") or Role.AGENT.value
        base = {
            "id": self._new_id(role),
            "role": role,
            "time": next_monotonic_iso(
                state.messages, normalize_time(fields.get("time")), state.min_step_seconds
            ),
        }
        extra = {k: v for k, v in fields.items() if v is not None and k not in base}
        message = Message.model_validate({**extra, **base})
        if message.is_agent_text and message.content_generated is None:
            message.content_generated = message.content
        return message

    def _transformed_message(self, raw: Message | dict[str, Any]) -> Message:
        fields = raw.payload() if isinstance(raw, Message) else dict(raw)
        role = fields.get("role") or Role.AGENT.value
        base = {"id": self._new_id(role), "role": role, "time": to_iso(utc_now())}
        return Message.model_validate(
            {**base, **{k: v for k, v in fields.items() if v is not None}}
        )

    async def _transform(self, turn: _Turn) -> None:
        state = turn.state
        if not turn.drafts:
            self._skip(turn, Stage.TRANSFORM, "no messages to transform")
            return

        if self._callbacks.transformer is None:
            self._skip(turn, Stage.TRANSFORM, "no transformer configured")
            for draft in turn.drafts:
                added = state.add_message(draft, "Added agent message")
                if added.is_agent_text:
                    state.chunk(added, "generator")
            return

        request = TransformRequest(
            added_messages=turn.drafts,
            persona=turn.persona,
            customer=turn.data.customer.id,
            messages=state.messages,
            context=state.context,
        )
        state.progress("Transforming response", type=ProgressType.SET_PROCESSING, payload=Role.AGENT.value)
        try:
            with self._stage(turn, Stage.TRANSFORM):
                result = TransformResult.model_validate(
                    await resolve(self._callbacks.transformer(request)) or {}
                )
                transformed = [self._transformed_message(raw) for raw in result.as_messages()]
        except StageError as error:
            await self._degrade(turn, error)
            return

        drafts_by_id = {draft.id: draft for draft in turn.drafts}
        for message in transformed:
            if state.contains(message.id):
                message.id = self._new_id(message.role)

            if message.is_agent_text and not message.ignore_transform:
                draft = drafts_by_id.get(message.id)
                if draft is not None:
                    message.content_generated = draft.content_generated or draft.content
                if message.content_transformed is None:
                    logger.warning("content_transformed_missing", message_id=message.id)
                    state.progress(
                        "Transformer did not set contentTransformed, using content",
                        ProgressLevel.WARN,
                        payload={"id": message.id},
                    )
                    message.content_transformed = message.content

            added = state.add_message(message, "Added transformed message")
            if added.is_agent_text:
                state.chunk(added, "transformer")

    def _finalize(self, turn: _Turn) -> None:
        state = turn.state
        state.normalize_times()

        empty = [m.id for m in state.of_role(Role.SYSTEM) if not (m.content or "").strip()]
        if empty:
            logger.error("empty_system_messages", message_ids=empty)
            state.progress(
                "Empty system messages found",
                ProgressLevel.ERROR,
                ProgressType.EMPTY_SYSTEM_MESSAGE,
                {"ids": empty},
            )

        self._check_tool_pairing(turn, state.messages, "final")

        if state.conversation.locked and not turn.started_locked:
            CONVERSATION_LOCKS.labels(kind=lock_kind(state.conversation.locked_reason)).inc()

    def _check_tool_pairing(self, turn: _Turn, messages: list[Message], label: str) -> None:
        missing = missing_tool_responses(messages)
        if not missing:
            return
        logger.error("tool_pairing_missing_tool", stage=label, missing=missing)
        turn.state.progress(
            f"Missing tool responses ({label})",
            ProgressLevel.WARN,
            ProgressType.TOOL_PAIRING_MISSING_TOOL,
            {"stage": label, "missingToolResponses": missing},
        )

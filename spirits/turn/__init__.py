"""Turn orchestration.

Sequences the parse, contextualize, workflow, generate and transform stages
for one customer message and records what changed.
"""

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
    default_id_generator,
)
from spirits.turn.orchestrator import ConversationData, Spirits
from spirits.turn.result import Change, ConversationChange, ConversationEvent, StageTiming
from spirits.turn.slots import (
    DecisionAnticipation,
    Followup,
    ForwardTarget,
    Instruction,
    LiteralAnticipation,
    WorkflowSlot,
)

__all__ = [
    "Spirits",
    "ConversationData",
    "StageCallbacks",
    "StateEmitters",
    "default_id_generator",
    # Stage contracts
    "ParseResult",
    "ContextualizeRequest",
    "IntentFlow",
    "WorkflowEvent",
    "GenerateRequest",
    "GenerateResult",
    "TransformRequest",
    "TransformResult",
    # Slots
    "WorkflowSlot",
    "ForwardTarget",
    "Instruction",
    "Followup",
    "LiteralAnticipation",
    "DecisionAnticipation",
    # Results
    "Change",
    "ConversationChange",
    "ConversationEvent",
    "StageTiming",
]

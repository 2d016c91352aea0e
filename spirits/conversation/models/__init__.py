"""Conversation domain models.

- Messages with typed fields plus a pass-through side-channel
- Conversations with lock/forward/intent state
- Project configuration and personas
"""

from spirits.conversation.models.base import WireModel
from spirits.conversation.models.conversation import Conversation, Customer
from spirits.conversation.models.enums import (
    ForwardMode,
    ProgressLevel,
    ProgressType,
    Role,
    Stage,
)
from spirits.conversation.models.message import VALID_ROLES, Message
from spirits.conversation.models.project import LORE_FIELDS, Persona, ProjectConfig

__all__ = [
    "WireModel",
    "Conversation",
    "Customer",
    "Message",
    "VALID_ROLES",
    "Persona",
    "ProjectConfig",
    "LORE_FIELDS",
    # Enums
    "ForwardMode",
    "ProgressLevel",
    "ProgressType",
    "Role",
    "Stage",
]

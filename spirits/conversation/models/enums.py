"""Enums for the conversation domain."""

from enum import Enum


class Role(str, Enum):
    """Author of a message."""

    CUSTOMER = "customer"
    AGENT = "agent"
    SYSTEM = "system"
    TOOL = "tool"


class Stage(str, Enum):
    """Pipeline stages that call out to injected callbacks."""

    PARSE = "parse"
    CONTEXTUALIZE = "contextualize"
    WORKFLOW = "workflow"
    GENERATE = "generate"
    TRANSFORM = "transform"


class ProgressLevel(str, Enum):
    """Severity passed to the progress reporter."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class ProgressType(str, Enum):
    """Event types passed to the progress reporter."""

    SET_PROCESSING = "SET_PROCESSING"
    UPDATE_CONVERSATION = "UPDATE_CONVERSATION"
    UPDATE_CONTEXT = "UPDATE_CONTEXT"
    ADD_MESSAGE = "ADD_MESSAGE"
    UPDATE_MESSAGE = "UPDATE_MESSAGE"
    REMOVE_MESSAGE = "REMOVE_MESSAGE"
    TOOL_PAIRING_MISSING_TOOL = "TOOL_PAIRING_MISSING_TOOL"
    DUPLICATE_MESSAGE_REMOVED = "DUPLICATE_MESSAGE_REMOVED"
    EMPTY_SYSTEM_MESSAGE = "EMPTY_SYSTEM_MESSAGE"
    INPUT_ERROR = "INPUT_ERROR"


class ForwardMode(str, Enum):
    """When a forward takes effect."""

    AFTER_REPLY = "after-reply"
    IMMEDIATELY = "immediately"

"""Agent runtime client and event types."""

from opencode_claw.runtime.base import AgentRuntime, AgentRuntimeError, EventSubscription
from opencode_claw.runtime.events import (
    AgentEvent,
    QuestionAsked,
    QuestionInfo,
    QuestionOption,
    RemoteSession,
    SessionError,
    SessionIdle,
    TextUpdate,
    TodoItem,
    TodoUpdated,
    ToolActivity,
    parse_event,
)
from opencode_claw.runtime.opencode import OpencodeClient
from opencode_claw.runtime.server import OpencodeServer

__all__ = [
    "AgentEvent",
    "AgentRuntime",
    "AgentRuntimeError",
    "EventSubscription",
    "OpencodeClient",
    "OpencodeServer",
    "QuestionAsked",
    "QuestionInfo",
    "QuestionOption",
    "RemoteSession",
    "SessionError",
    "SessionIdle",
    "TextUpdate",
    "TodoItem",
    "TodoUpdated",
    "ToolActivity",
    "parse_event",
]

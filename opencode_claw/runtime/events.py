"""Typed agent events decoded from the OpenCode event bus."""

from dataclasses import dataclass, field
from typing import Any

ABORTED_ERROR_NAME = "MessageAbortedError"


@dataclass(frozen=True)
class ToolActivity:
    session_id: str
    call_id: str
    tool: str
    status: str  # pending | running | completed | error
    title: str | None = None


@dataclass(frozen=True)
class TextUpdate:
    """Text for one message part; `delta` marks an increment rather than a snapshot."""
    session_id: str
    part_id: str
    text: str
    delta: bool = False


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True)
class QuestionInfo:
    question: str
    header: str = ""
    options: tuple[QuestionOption, ...] = ()
    multiple: bool = False


@dataclass(frozen=True)
class QuestionAsked:
    session_id: str
    question_id: str
    questions: tuple[QuestionInfo, ...] = ()


@dataclass(frozen=True)
class TodoItem:
    content: str
    status: str = "pending"
    priority: str = "medium"


@dataclass(frozen=True)
class TodoUpdated:
    session_id: str
    todos: tuple[TodoItem, ...] = ()


@dataclass(frozen=True)
class SessionIdle:
    session_id: str


@dataclass(frozen=True)
class SessionError:
    session_id: str | None
    name: str = ""
    message: str = "unknown session error"

    @property
    def aborted(self) -> bool:
        return self.name == ABORTED_ERROR_NAME


AgentEvent = ToolActivity | TextUpdate | QuestionAsked | TodoUpdated | SessionIdle | SessionError


@dataclass
class RemoteSession:
    """A session as reported by the agent runtime."""
    id: str
    title: str = ""
    created_at: float | None = None  # epoch milliseconds
    extra: dict[str, Any] = field(default_factory=dict)


def _str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _parse_questions(raw: Any) -> tuple[QuestionInfo, ...]:
    questions: list[QuestionInfo] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict):
            continue
        options = tuple(
            QuestionOption(label=_str(opt.get("label")), description=_str(opt.get("description")))
            for opt in item.get("options") or []
            if isinstance(opt, dict) and _str(opt.get("label"))
        )
        questions.append(
            QuestionInfo(
                question=_str(item.get("question")),
                header=_str(item.get("header")),
                options=options,
                multiple=bool(item.get("multiple")),
            )
        )
    return tuple(questions)


def _parse_todos(raw: Any) -> tuple[TodoItem, ...]:
    return tuple(
        TodoItem(
            content=_str(item.get("content")),
            status=_str(item.get("status")) or "pending",
            priority=_str(item.get("priority")) or "medium",
        )
        for item in (raw if isinstance(raw, list) else [])
        if isinstance(item, dict)
    )


def parse_event(raw: Any) -> AgentEvent | None:
    """
    Decode one bus payload of the form {"type": ..., "properties": {...}}.

    Returns None for event types the gateway does not consume and for
    payloads missing required fields.
    """
    if not isinstance(raw, dict):
        return None
    event_type = raw.get("type")
    props = raw.get("properties")
    if not isinstance(props, dict):
        return None

    if event_type == "message.part.updated":
        part = props.get("part")
        if not isinstance(part, dict):
            return None
        session_id = _str(part.get("sessionID"))
        if not session_id:
            return None
        part_type = part.get("type")
        if part_type == "text":
            part_id = _str(part.get("id"))
            if not part_id:
                return None
            return TextUpdate(session_id=session_id, part_id=part_id, text=_str(part.get("text")))
        if part_type == "tool":
            state = part.get("state") if isinstance(part.get("state"), dict) else {}
            call_id = _str(part.get("callID")) or _str(part.get("id"))
            if not call_id:
                return None
            return ToolActivity(
                session_id=session_id,
                call_id=call_id,
                tool=_str(part.get("tool")),
                status=_str(state.get("status")),
                title=_str(state.get("title")) or None,
            )
        return None

    if event_type == "message.part.delta":
        session_id = _str(props.get("sessionID"))
        part_id = _str(props.get("partID"))
        if not session_id or not part_id:
            return None
        return TextUpdate(session_id=session_id, part_id=part_id, text=_str(props.get("delta")), delta=True)

    if event_type == "question.asked":
        session_id = _str(props.get("sessionID"))
        question_id = _str(props.get("id"))
        if not session_id or not question_id:
            return None
        return QuestionAsked(
            session_id=session_id,
            question_id=question_id,
            questions=_parse_questions(props.get("questions")),
        )

    if event_type == "todo.updated":
        session_id = _str(props.get("sessionID"))
        if not session_id:
            return None
        return TodoUpdated(session_id=session_id, todos=_parse_todos(props.get("todos")))

    if event_type == "session.idle":
        session_id = _str(props.get("sessionID"))
        return SessionIdle(session_id=session_id) if session_id else None

    if event_type == "session.error":
        error = props.get("error") if isinstance(props.get("error"), dict) else {}
        data = error.get("data") if isinstance(error.get("data"), dict) else {}
        return SessionError(
            session_id=_str(props.get("sessionID")) or None,
            name=_str(error.get("name")),
            message=_str(data.get("message")) or "unknown session error",
        )

    return None

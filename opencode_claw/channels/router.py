"""Routes inbound chat messages to agent turns and commands."""

import re
from typing import Any, Awaitable

from loguru import logger

from opencode_claw.agent.prompt import ProgressOptions, PromptAborted, PromptTimeout, prompt_streaming
from opencode_claw.channels.base import BaseChannel
from opencode_claw.channels.commands import CommandInterpreter, parse_command
from opencode_claw.channels.events import InboundMessage, OutboundMessage
from opencode_claw.channels.state import ActiveTurn, TurnState
from opencode_claw.config.schema import Config
from opencode_claw.runtime.base import AgentRuntime
from opencode_claw.runtime.events import QuestionAsked, QuestionInfo, TodoItem
from opencode_claw.session.manager import SessionManager, build_session_key

REJECTION_TEXT = "This assistant is private."
TIMEOUT_TEXT = "⏱️ Request timed out. The agent took too long to respond."
GENERIC_FAILURE_TEXT = "An internal error occurred. Please try again."
EMPTY_RESPONSE_TEXT = "(empty response)"
BUSY_TEXT = "⏳ Still working on your previous message. Use /status to check progress or /cancel to stop it."
HEARTBEAT_TEXT = "⏳ Still working..."

TODO_ICONS = {
    "completed": "✅",
    "in_progress": "🔄",
    "pending": "⬜",
    "cancelled": "❌",
}


def is_allowed(allow_from: list[str] | None, msg: InboundMessage) -> bool:
    """
    Check a message against a channel allowlist.

    None allows everyone; an empty list allows no one. Sender ids of the form
    "id|username" match on either part.
    """
    if allow_from is None:
        return True
    allowed = {str(entry) for entry in allow_from}
    for candidate in (msg.sender_id, msg.peer_id):
        if not candidate:
            continue
        if candidate in allowed:
            return True
        if "|" in candidate and any(part and part in allowed for part in candidate.split("|")):
            return True
    return False


def format_todos(todos: tuple[TodoItem, ...] | list[TodoItem]) -> str:
    if not todos:
        return "📋 Todo list cleared."
    lines = ["📋 Todo list:"]
    for todo in todos:
        icon = TODO_ICONS.get(todo.status, "•")
        lines.append(f"{icon} [{todo.priority}] {todo.content}")
    return "\n".join(lines)


def format_question(event: QuestionAsked) -> str:
    blocks: list[str] = []
    total = len(event.questions)
    for index, question in enumerate(event.questions, start=1):
        lines: list[str] = []
        heading = question.header or question.question
        if total > 1:
            heading = f"({index}/{total}) {heading}"
        lines.append(f"❓ {heading}")
        if question.header and question.question:
            lines.append(question.question)
        for number, option in enumerate(question.options, start=1):
            line = f"{number}. {option.label}"
            if option.description:
                line += f" — {option.description}"
            lines.append(line)
        if question.multiple and question.options:
            lines.append("(Multiple choices allowed: separate numbers with commas.)")
        blocks.append("\n".join(lines))
    if total > 1:
        blocks.append("Reply with one line per question, or a single answer for all of them.")
    else:
        blocks.append("Reply with a number or type your answer.")
    return "\n\n".join(blocks)


def _answer_for(question: QuestionInfo, reply: str) -> list[str]:
    options = question.options
    if options:
        tokens = [t for t in re.split(r"[,\s]+", reply) if t] if question.multiple else [reply]
        if tokens and all(t.isdigit() and 1 <= int(t) <= len(options) for t in tokens):
            picked: list[str] = []
            for token in tokens:
                label = options[int(token) - 1].label
                if label not in picked:
                    picked.append(label)
            return picked
        for option in options:
            if option.label.lower() == reply.lower():
                return [option.label]
    return [reply]


def parse_answers(questions: tuple[QuestionInfo, ...], text: str) -> list[list[str]]:
    """
    Turn a raw chat reply into one answer list per question.

    Numbers pick option labels; anything else is a free-form answer. With
    several questions, a reply of exactly one line per question answers them
    in order, otherwise the whole reply answers each.
    """
    reply = (text or "").strip()
    if not questions:
        return [[reply]]
    lines = [line.strip() for line in reply.splitlines() if line.strip()]
    if len(questions) > 1 and len(lines) == len(questions):
        replies = lines
    else:
        replies = [reply] * len(questions)
    return [_answer_for(question, answer) for question, answer in zip(questions, replies)]


class Router:
    """
    Inbound message router.

    Owns per-peer turn tracking: at most one turn runs per peer, and while
    the agent waits on a question the peer's next message is its answer.
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        sessions: SessionManager,
        channels: dict[str, BaseChannel],
        config: Config,
        state: TurnState | None = None,
    ):
        self.runtime = runtime
        self.sessions = sessions
        self.channels = channels
        self.config = config
        self.state = state or TurnState()
        self.commands = CommandInterpreter(sessions, runtime, self.state)

    async def handle_inbound(self, msg: InboundMessage) -> None:
        """Entry point for every inbound message; never raises."""
        try:
            await self._route(msg)
        except Exception as e:
            logger.exception(f"Unhandled error routing message from {msg.peer_key}: {e}")
            channel = self.channels.get(msg.channel)
            if channel is not None:
                await self._best_effort(
                    channel.send(msg.peer_id, OutboundMessage(GENERIC_FAILURE_TEXT, thread_id=msg.thread_id)),
                    "error reply",
                )

    def _channel_setting(self, channel: str, name: str, default: Any) -> Any:
        channel_config = self.config.channel_config(channel)
        if channel_config is None:
            return default
        return getattr(channel_config, name, default)

    def session_key_for(self, msg: InboundMessage) -> str:
        thread_id = msg.thread_id if self._channel_setting(msg.channel, "thread_sessions", True) else None
        return build_session_key(msg.channel, msg.peer_id, thread_id)

    @staticmethod
    def _reply(msg: InboundMessage, text: str) -> OutboundMessage:
        return OutboundMessage(text=text, thread_id=msg.thread_id, reply_to_id=msg.reply_to_id)

    async def _route(self, msg: InboundMessage) -> None:
        channel = self.channels.get(msg.channel)
        if channel is None:
            logger.warning(f"No channel registered for {msg.channel}, dropping message")
            return

        peer_key = msg.peer_key
        if self.state.resolve_question(peer_key, msg.text):
            logger.debug(f"Message from {peer_key} answered a pending question")
            return

        if not is_allowed(self._channel_setting(msg.channel, "allow_from", None), msg):
            logger.debug(f"Message from {peer_key} dropped (not in allowlist)")
            if self._channel_setting(msg.channel, "rejection_behavior", "ignore") == "reject":
                await channel.send(msg.peer_id, OutboundMessage(REJECTION_TEXT, thread_id=msg.thread_id))
            return

        session_key = self.session_key_for(msg)
        command = parse_command(msg.text)
        if command is not None:
            reply = await self.commands.execute(command, session_key, peer_key)
            await channel.send(msg.peer_id, self._reply(msg, reply))
            return

        if self.state.is_busy(peer_key):
            await channel.send(msg.peer_id, self._reply(msg, BUSY_TEXT))
            return

        title = self.sessions.render_title(msg.channel, msg.peer_id, session_key)
        session_id = await self.sessions.resolve_session(session_key, title)

        turn = self.state.start_turn(peer_key, session_id)
        if turn is None:
            # Another message for this peer started a turn while we resolved the session
            await channel.send(msg.peer_id, self._reply(msg, BUSY_TEXT))
            return

        try:
            await self._run_turn(channel, msg, turn)
        finally:
            self.state.end_turn(peer_key, turn)
            self.state.discard_question(peer_key)
            await self._best_effort(channel.stop_typing(msg.peer_id), "stop typing")

    async def _run_turn(self, channel: BaseChannel, msg: InboundMessage, turn: ActiveTurn) -> None:
        await self._best_effort(channel.send_typing(msg.peer_id), "typing")
        timeout_ms = self.config.router.timeout_ms
        logger.debug(f"Prompting session {turn.session_id} for {msg.peer_key}")
        try:
            text = await prompt_streaming(
                self.runtime,
                turn.session_id,
                msg.text,
                timeout_ms,
                self._build_progress(channel, msg, turn),
            )
        except PromptTimeout:
            await channel.send(msg.peer_id, self._reply(msg, TIMEOUT_TEXT))
            return
        except PromptAborted:
            logger.info(f"Turn for {msg.peer_key} on session {turn.session_id} was aborted")
            return

        if not text.strip():
            logger.warning(f"Empty response from session {turn.session_id}")
            text = EMPTY_RESPONSE_TEXT
        await channel.send(msg.peer_id, self._reply(msg, text))

    def _build_progress(self, channel: BaseChannel, msg: InboundMessage, turn: ActiveTurn) -> ProgressOptions:
        settings = self.config.router.progress

        def record_tool(tool: str) -> None:
            turn.last_tool = tool

        if not settings.enabled:
            # Still track the running tool for /status, without messages
            return ProgressOptions(on_tool_seen=record_tool)

        peer_id = msg.peer_id
        thread_id = msg.thread_id

        async def on_tool_running(tool: str, title: str) -> None:
            await channel.send(peer_id, OutboundMessage(f"🔧 {title}...", thread_id=thread_id))

        async def on_heartbeat() -> None:
            await self._best_effort(channel.send_typing(peer_id), "typing")
            await channel.send(peer_id, OutboundMessage(HEARTBEAT_TEXT, thread_id=thread_id))

        async def on_todo_updated(todos: tuple[TodoItem, ...]) -> None:
            await channel.send(peer_id, OutboundMessage(format_todos(todos), thread_id=thread_id))

        async def on_question(event: QuestionAsked) -> list[list[str]]:
            answer = self.state.open_question(msg.peer_key, self.config.router.timeout_ms / 1000)
            try:
                await channel.send(peer_id, OutboundMessage(format_question(event), thread_id=thread_id))
            except Exception:
                self.state.discard_question(msg.peer_key)
                raise
            text = await answer
            return parse_answers(event.questions, text)

        return ProgressOptions(
            on_tool_running=on_tool_running,
            on_tool_seen=record_tool,
            on_heartbeat=on_heartbeat,
            on_question=on_question,
            on_todo_updated=on_todo_updated,
            tool_throttle_ms=settings.tool_throttle_ms,
            heartbeat_ms=settings.heartbeat_ms,
        )

    @staticmethod
    async def _best_effort(action: Awaitable[None], what: str) -> None:
        try:
            await action
        except Exception as e:
            logger.debug(f"{what} failed: {e}")

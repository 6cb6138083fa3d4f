"""Slash commands for session management and turn control."""

import math
import re
from dataclasses import dataclass

from opencode_claw.channels.state import TurnState
from opencode_claw.runtime.base import AgentRuntime
from opencode_claw.session.manager import SessionInfo, SessionManager

SESSIONS_PAGE_SIZE = 10

HELP_TEXT = """Available commands:
/new [title] — Create a new session
/switch <id> — Switch to an existing session
/sessions [page] — List sessions
/current — Show current session
/fork — Fork current session into a new one
/cancel — Stop the running agent
/status — Show whether the agent is running
/help — Show this help"""

NOTHING_RUNNING = "No agent is currently running."


@dataclass(frozen=True)
class Command:
    name: str  # lower-case, without the leading slash
    args: str = ""


def parse_command(text: str | None) -> Command | None:
    """Parse `/name [args]`. A trailing `@botname` on the name is dropped."""
    raw = (text or "").strip()
    if not raw.startswith("/"):
        return None
    parts = raw.split(maxsplit=1)
    name = parts[0][1:].split("@", 1)[0].lower()
    if not name:
        return None
    args = parts[1].strip() if len(parts) > 1 else ""
    return Command(name=name, args=args)


def format_elapsed(seconds: float) -> str:
    total = int(max(0, seconds))
    minutes, secs = divmod(total, 60)
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_tool_label(tool: str) -> str:
    """websearch_web_search_exa -> Websearch Web Search Exa"""
    words = [w for w in re.split(r"[_\-\s.]+", tool or "") if w]
    return " ".join(w[:1].upper() + w[1:].lower() for w in words)


def format_session_page(sessions: list[SessionInfo], page_arg: str = "") -> str:
    if not sessions:
        return "No sessions found."

    total_pages = max(1, math.ceil(len(sessions) / SESSIONS_PAGE_SIZE))
    page = 1
    if re.fullmatch(r"[0-9]+", page_arg):
        try:
            page = int(page_arg)
        except ValueError:
            # Longer than the int conversion limit
            page = total_pages
    page = min(max(page, 1), total_pages)

    start = (page - 1) * SESSIONS_PAGE_SIZE
    lines = [
        f"• {s.id} — {s.title or '(untitled)'}{' (active)' if s.active else ''}"
        for s in sessions[start:start + SESSIONS_PAGE_SIZE]
    ]
    text = "\n".join(lines)
    if total_pages > 1:
        footer = f"Page {page}/{total_pages}"
        if page < total_pages:
            footer += f" (use /sessions {page + 1} for next)"
        text = f"{text}\n\n{footer}"
    return text


class CommandInterpreter:
    """
    Executes parsed commands.

    Session commands act on the conversation key; /cancel and /status act on
    the peer's running turn, whatever thread it was started from.
    """

    def __init__(self, sessions: SessionManager, runtime: AgentRuntime, turns: TurnState):
        self.sessions = sessions
        self.runtime = runtime
        self.turns = turns

    async def execute(self, command: Command, session_key: str, peer_key: str) -> str:
        handler = getattr(self, f"_cmd_{command.name}", None)
        if handler is None:
            return f"Unknown command: /{command.name}\n\n{HELP_TEXT}"
        return await handler(command.args, session_key, peer_key)

    async def _cmd_new(self, args: str, session_key: str, peer_key: str) -> str:
        session_id = await self.sessions.new_session(session_key, args or None)
        return f"Created new session: {session_id}"

    async def _cmd_switch(self, args: str, session_key: str, peer_key: str) -> str:
        if not args:
            return "Usage: /switch <session-id>"
        await self.sessions.switch_session(session_key, args)
        return f"Switched to session: {args}"

    async def _cmd_sessions(self, args: str, session_key: str, peer_key: str) -> str:
        sessions = await self.sessions.list_sessions(session_key, peer_key)
        return format_session_page(sessions, args)

    async def _cmd_current(self, args: str, session_key: str, peer_key: str) -> str:
        session_id = self.sessions.current_session(session_key)
        if not session_id:
            return "No active session. Send a message to create one."
        return f"Current session: {session_id}"

    async def _cmd_fork(self, args: str, session_key: str, peer_key: str) -> str:
        forked = await self.sessions.fork_session(session_key)
        if not forked:
            return "No active session to fork."
        return f"Forked into new session: {forked}"

    async def _cmd_cancel(self, args: str, session_key: str, peer_key: str) -> str:
        turn = self.turns.get_turn(peer_key)
        if turn is None:
            return NOTHING_RUNNING
        if await self.runtime.abort(turn.session_id):
            return "🛑 Cancelled the running agent."
        return "Could not cancel the running agent (abort was not acknowledged)."

    async def _cmd_status(self, args: str, session_key: str, peer_key: str) -> str:
        turn = self.turns.get_turn(peer_key)
        if turn is None:
            return NOTHING_RUNNING
        details = f"{format_elapsed(turn.elapsed_s())} elapsed"
        if turn.last_tool:
            details += f", last tool: {format_tool_label(turn.last_tool)}"
        return f"⏳ Agent is running ({details})"

    async def _cmd_help(self, args: str, session_key: str, peer_key: str) -> str:
        return HELP_TEXT

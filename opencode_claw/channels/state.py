"""In-flight turn and pending-question bookkeeping owned by the router."""

import asyncio
import time
from dataclasses import dataclass, field

from loguru import logger


class QuestionTimeout(Exception):
    """Nobody answered the agent's question in time."""


@dataclass
class ActiveTurn:
    session_id: str
    started_at: float = field(default_factory=time.monotonic)
    last_tool: str | None = None

    def elapsed_s(self) -> float:
        return max(0.0, time.monotonic() - self.started_at)


@dataclass
class PendingQuestion:
    future: asyncio.Future
    timeout_handle: asyncio.TimerHandle | None = None


class TurnState:
    """
    Active turns and pending questions, both keyed by peer key.

    Every check-then-set runs without awaiting, so concurrent inbound
    messages on the event loop never observe a half-updated entry.
    """

    def __init__(self) -> None:
        self.turns: dict[str, ActiveTurn] = {}
        self.questions: dict[str, PendingQuestion] = {}

    def start_turn(self, peer_key: str, session_id: str) -> ActiveTurn | None:
        """Register a turn, or return None when the peer already has one."""
        if peer_key in self.turns:
            return None
        turn = ActiveTurn(session_id=session_id)
        self.turns[peer_key] = turn
        return turn

    def get_turn(self, peer_key: str) -> ActiveTurn | None:
        return self.turns.get(peer_key)

    def is_busy(self, peer_key: str) -> bool:
        return peer_key in self.turns

    def end_turn(self, peer_key: str, turn: ActiveTurn) -> None:
        if self.turns.get(peer_key) is turn:
            del self.turns[peer_key]

    def has_question(self, peer_key: str) -> bool:
        return peer_key in self.questions

    def open_question(self, peer_key: str, timeout_s: float) -> asyncio.Future:
        """
        Create the pending record for a question and return the future that
        the peer's next message resolves. It fails with QuestionTimeout when
        timeout_s passes first.
        """
        self.discard_question(peer_key)
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        pending = PendingQuestion(future=future)
        pending.timeout_handle = loop.call_later(timeout_s, self._expire_question, peer_key, pending)
        self.questions[peer_key] = pending
        return future

    def resolve_question(self, peer_key: str, text: str) -> bool:
        """Answer the pending question with raw text. False if there is none."""
        pending = self.questions.pop(peer_key, None)
        if pending is None:
            return False
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if not pending.future.done():
            pending.future.set_result(text)
        return True

    def discard_question(self, peer_key: str) -> None:
        pending = self.questions.pop(peer_key, None)
        if pending is None:
            return
        if pending.timeout_handle is not None:
            pending.timeout_handle.cancel()
        if not pending.future.done():
            pending.future.cancel()

    def _expire_question(self, peer_key: str, pending: PendingQuestion) -> None:
        if self.questions.get(peer_key) is pending:
            del self.questions[peer_key]
        if not pending.future.done():
            logger.info(f"Question for {peer_key} timed out")
            pending.future.set_exception(QuestionTimeout(f"no answer from {peer_key}"))

"""Agent runtime interface consumed by the gateway."""

from abc import ABC, abstractmethod
from typing import AsyncIterator

from opencode_claw.runtime.events import AgentEvent, RemoteSession


class AgentRuntimeError(Exception):
    """A call into the agent runtime failed."""


class EventSubscription(ABC):
    """
    One open handle on the runtime's global event stream.

    Events for every session arrive here; consumers filter by session id.
    """

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[AgentEvent]:
        ...

    @abstractmethod
    async def aclose(self) -> None:
        """Close the stream. Safe to call more than once."""

    async def __aenter__(self) -> "EventSubscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


class AgentRuntime(ABC):
    """
    Abstract agent runtime.

    Implementations talk to a long-running agent server that owns sessions,
    executes prompts and publishes events on a shared stream.
    """

    @abstractmethod
    async def create_session(self, title: str | None = None) -> str:
        """Create a session and return its id."""

    @abstractmethod
    async def fork_session(self, session_id: str) -> str:
        """Fork a session and return the new session's id."""

    @abstractmethod
    async def list_sessions(self) -> list[RemoteSession]:
        """Return every session the runtime knows about."""

    @abstractmethod
    async def prompt_async(self, session_id: str, text: str) -> None:
        """Start a turn without waiting for it to finish."""

    @abstractmethod
    async def subscribe_events(self) -> EventSubscription:
        """Open a subscription. The stream is live once this returns."""

    @abstractmethod
    async def abort(self, session_id: str) -> bool:
        """Abort the running turn. Returns whether the runtime acknowledged it."""

    @abstractmethod
    async def reply_question(self, question_id: str, answers: list[list[str]]) -> None:
        """Answer a pending question; one answer list per question."""

    @abstractmethod
    async def reject_question(self, question_id: str) -> None:
        """Decline a pending question."""

    async def close(self) -> None:
        """Release client resources."""

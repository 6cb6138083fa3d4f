"""Streaming prompt engine: one agent turn reduced from the shared event stream."""

import asyncio
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from opencode_claw.runtime.base import AgentRuntime, EventSubscription
from opencode_claw.runtime.events import (
    QuestionAsked,
    SessionError,
    SessionIdle,
    TextUpdate,
    TodoItem,
    TodoUpdated,
    ToolActivity,
)

ToolRunningCallback = Callable[[str, str], Awaitable[None]]
ToolSeenCallback = Callable[[str], None]
HeartbeatCallback = Callable[[], Awaitable[None]]
QuestionCallback = Callable[[QuestionAsked], Awaitable[list[list[str]]]]
TodoUpdatedCallback = Callable[[tuple[TodoItem, ...]], Awaitable[None]]


class PromptFailure(Exception):
    """Base class for turns that ended without a final answer."""


class PromptTimeout(PromptFailure):
    """The turn did not go idle before its deadline."""


class PromptAborted(PromptFailure):
    """The turn was aborted by the user."""


class PromptError(PromptFailure):
    """The runtime reported a session error."""


@dataclass
class ProgressOptions:
    """Callbacks that surface a running turn to the user."""
    on_tool_running: ToolRunningCallback | None = None
    on_tool_seen: ToolSeenCallback | None = None  # Every running tool, before dedupe and throttle
    on_heartbeat: HeartbeatCallback | None = None
    on_question: QuestionCallback | None = None
    on_todo_updated: TodoUpdatedCallback | None = None
    tool_throttle_ms: int = 5000
    heartbeat_ms: int = 60000


class _PromptRun:
    """Per-invocation state. Never shared between turns."""

    def __init__(self, runtime: AgentRuntime, session_id: str, progress: ProgressOptions | None):
        self.runtime = runtime
        self.session_id = session_id
        self.progress = progress or ProgressOptions()
        self.text_parts: dict[str, str] = {}
        self.notified_calls: set[str] = set()
        self.last_tool_notify: float | None = None
        self.last_activity = time.monotonic()

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def final_text(self) -> str:
        return "\n\n".join(text for text in self.text_parts.values() if text.strip())

    async def execute(self, subscription: EventSubscription, prompt_text: str) -> str:
        await self.runtime.prompt_async(self.session_id, prompt_text)
        async for event in subscription:
            if event.session_id is not None and event.session_id != self.session_id:
                continue
            if isinstance(event, SessionIdle):
                return self.final_text()
            if isinstance(event, SessionError):
                if event.aborted:
                    raise PromptAborted(f"session {self.session_id} aborted")
                raise PromptError(event.message)
            if isinstance(event, TextUpdate):
                self._on_text(event)
            elif isinstance(event, ToolActivity):
                await self._on_tool(event)
            elif isinstance(event, QuestionAsked):
                await self._on_question(event)
            elif isinstance(event, TodoUpdated):
                await self._on_todos(event)
        raise PromptError("event stream closed before the session went idle")

    def _on_text(self, event: TextUpdate) -> None:
        if event.delta:
            self.text_parts[event.part_id] = self.text_parts.get(event.part_id, "") + event.text
        elif event.text:
            self.text_parts[event.part_id] = event.text

    async def _on_tool(self, event: ToolActivity) -> None:
        if event.status == "running" and self.progress.on_tool_seen is not None:
            try:
                self.progress.on_tool_seen(event.tool)
            except Exception as e:
                logger.debug(f"Tool tracking callback failed: {e}")
        callback = self.progress.on_tool_running
        if callback is None or event.status != "running" or event.call_id in self.notified_calls:
            return
        now = time.monotonic()
        throttle_s = self.progress.tool_throttle_ms / 1000
        if self.last_tool_notify is not None and now - self.last_tool_notify < throttle_s:
            return
        self.notified_calls.add(event.call_id)
        self.last_tool_notify = now
        try:
            await callback(event.tool, event.title or event.tool)
        except Exception as e:
            logger.debug(f"Tool progress callback failed: {e}")
        self.touch()

    async def _on_question(self, event: QuestionAsked) -> None:
        callback = self.progress.on_question
        if callback is None:
            await self.runtime.reject_question(event.question_id)
            return
        # Asking the user counts as activity
        self.touch()
        try:
            answers = await callback(event)
            await self.runtime.reply_question(event.question_id, answers)
            self.touch()
        except asyncio.CancelledError:
            # Turn ended while waiting on the user
            try:
                await self.runtime.reject_question(event.question_id)
            except Exception as e:
                logger.debug(f"Rejecting question {event.question_id} failed: {e}")
            raise
        except Exception as e:
            logger.info(f"Rejecting question {event.question_id}: {e!r}")
            await self.runtime.reject_question(event.question_id)

    async def _on_todos(self, event: TodoUpdated) -> None:
        callback = self.progress.on_todo_updated
        if callback is None:
            return
        try:
            await callback(event.todos)
        except Exception as e:
            logger.debug(f"Todo callback failed: {e}")
        self.touch()

    async def heartbeat_loop(self) -> None:
        callback = self.progress.on_heartbeat
        interval_s = self.progress.heartbeat_ms / 1000
        while True:
            await asyncio.sleep(interval_s)
            if time.monotonic() - self.last_activity < interval_s:
                continue
            try:
                await callback()
            except Exception as e:
                logger.debug(f"Heartbeat callback failed: {e}")
            self.touch()


async def prompt_streaming(
    runtime: AgentRuntime,
    session_id: str,
    prompt_text: str,
    timeout_ms: int,
    progress: ProgressOptions | None = None,
) -> str:
    """
    Run one turn and return the agent's final text.

    The event subscription is opened before the prompt is fired so no event
    of the turn is missed. Events of other sessions are discarded.

    Raises:
        PromptTimeout: The session did not go idle within timeout_ms. Partial
            text is discarded.
        PromptAborted: The turn was aborted through the runtime.
        PromptError: The runtime reported any other session error.
        AgentRuntimeError: A runtime call failed.
    """
    run = _PromptRun(runtime, session_id, progress)
    subscription = await runtime.subscribe_events()
    heartbeat: asyncio.Task[None] | None = None
    try:
        if run.progress.on_heartbeat is not None and run.progress.heartbeat_ms > 0:
            heartbeat = asyncio.create_task(run.heartbeat_loop())
        try:
            return await asyncio.wait_for(run.execute(subscription, prompt_text), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            logger.warning(f"Session {session_id} timed out after {timeout_ms}ms")
            raise PromptTimeout(f"session {session_id} timed out after {timeout_ms}ms") from e
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            with suppress(asyncio.CancelledError):
                await heartbeat
        await subscription.aclose()

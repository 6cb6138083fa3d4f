"""Base channel interface for chat platforms."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from loguru import logger

from opencode_claw.channels.events import ChannelStatus, InboundMessage, OutboundMessage

InboundHandler = Callable[[InboundMessage], Awaitable[None]]


class BaseChannel(ABC):
    """
    Abstract base class for chat channel implementations.

    Each channel (Telegram, WhatsApp) normalizes inbound platform messages
    into InboundMessage and delivers OutboundMessage back to a peer.
    """

    name: str = "base"

    def __init__(self, config: Any):
        """
        Initialize the channel.

        Args:
            config: Channel-specific configuration.
        """
        self.config = config
        self._handler: InboundHandler | None = None
        self._status: ChannelStatus = "disconnected"
        self._tasks: set[asyncio.Task[None]] = set()
        self._running = False

    @abstractmethod
    async def start(self, handler: InboundHandler) -> None:
        """
        Start the channel and begin listening for messages.

        This should be a long-running async task that connects to the chat
        platform and passes each inbound message to `handler` through
        _handle_message().
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send(self, peer_id: str, msg: OutboundMessage) -> None:
        """
        Send a message to a peer.

        Args:
            peer_id: Chat identifier.
            msg: The message to send.
        """
        pass

    async def send_typing(self, peer_id: str) -> None:
        """Show a typing indicator. Channels without one ignore this."""

    async def stop_typing(self, peer_id: str) -> None:
        """Clear the typing indicator."""

    def status(self) -> ChannelStatus:
        return self._status

    async def _handle_message(self, msg: InboundMessage) -> None:
        """
        Hand an inbound message to the router.

        The handler runs as its own task so a long agent turn never blocks
        the platform's receive loop.
        """
        if self._handler is None:
            logger.warning(f"{self.name}: dropping message, no handler registered")
            return

        task = asyncio.create_task(self._dispatch(msg))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, msg: InboundMessage) -> None:
        try:
            await self._handler(msg)
        except Exception as e:
            logger.exception(f"{self.name}: inbound handler failed for {msg.peer_id}: {e}")

    async def _cancel_pending(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def is_running(self) -> bool:
        """Check if the channel is running."""
        return self._running

"""Message types exchanged between channels and the router."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from opencode_claw.session.manager import build_peer_key

ChannelStatus = Literal["connected", "connecting", "disconnected", "error"]


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # telegram, whatsapp
    peer_id: str  # Chat identifier replies go to
    text: str
    sender_id: str | None = None  # User identifier, "id|username" on Telegram
    peer_name: str | None = None
    group_id: str | None = None
    thread_id: str | None = None  # Forum topic / thread
    reply_to_id: str | None = None  # Platform message id to reply to
    timestamp: datetime = field(default_factory=datetime.now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def peer_key(self) -> str:
        """Key for turn and question tracking; one running turn per peer."""
        return build_peer_key(self.channel, self.peer_id)


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    text: str
    thread_id: str | None = None
    reply_to_id: str | None = None

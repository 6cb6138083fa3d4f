"""Chat channels and inbound routing."""

from opencode_claw.channels.base import BaseChannel
from opencode_claw.channels.events import InboundMessage, OutboundMessage
from opencode_claw.channels.router import Router

__all__ = ["BaseChannel", "InboundMessage", "OutboundMessage", "Router"]

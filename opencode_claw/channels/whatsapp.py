"""WhatsApp channel implementation using a Node.js bridge."""

import asyncio
import json
import random

import websockets
from loguru import logger

from opencode_claw.channels.base import BaseChannel, InboundHandler
from opencode_claw.channels.events import InboundMessage, OutboundMessage
from opencode_claw.config.schema import WhatsAppConfig

MAX_RECONNECT_DELAY_S = 30.0


def reconnect_delay(attempt: int, base_s: float, cap_s: float = MAX_RECONNECT_DELAY_S) -> float:
    """Exponential backoff with up to one base interval of jitter."""
    return min(base_s * 2 ** max(0, attempt) + random.random() * base_s, cap_s)


class WhatsAppChannel(BaseChannel):
    """
    WhatsApp channel that connects to a Node.js bridge.

    The bridge speaks the WhatsApp Web protocol; this side exchanges JSON
    frames with it over a WebSocket.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig):
        super().__init__(config)
        self.config: WhatsAppConfig = config
        self._ws = None

    async def start(self, handler: InboundHandler) -> None:
        """Connect to the bridge and keep reconnecting until stopped."""
        self._handler = handler
        auth_token = str(self.config.bridge_auth_token or "").strip()
        if not auth_token:
            self._status = "error"
            raise RuntimeError("channels.whatsapp.bridgeAuthToken is required for bridge authentication.")
        headers = {"x-bridge-token": auth_token}

        logger.info(f"Connecting to WhatsApp bridge at {self.config.bridge_url}...")
        self._running = True
        attempt = 0

        while self._running:
            self._status = "connecting"
            try:
                async with websockets.connect(self.config.bridge_url, additional_headers=headers) as ws:
                    self._ws = ws
                    attempt = 0
                    self._status = "connected"
                    logger.info("Connected to WhatsApp bridge")

                    async for message in ws:
                        try:
                            await self._handle_bridge_message(message)
                        except Exception as e:
                            logger.error(f"Error handling bridge message: {e}")
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"WhatsApp bridge connection error: {e}")
                self._status = "error"
            finally:
                self._ws = None

            if self._running:
                delay = reconnect_delay(attempt, self.config.reconnect_delay_s)
                attempt += 1
                logger.info(f"Reconnecting to WhatsApp bridge in {delay:.1f}s (attempt {attempt})")
                await asyncio.sleep(delay)

        self._status = "disconnected"

    async def stop(self) -> None:
        """Stop the WhatsApp channel."""
        self._running = False
        self._status = "disconnected"
        await self._cancel_pending()

        if self._ws:
            await self._ws.close()
            self._ws = None

    async def send(self, peer_id: str, msg: OutboundMessage) -> None:
        """Send a message through the bridge."""
        payload = {"type": "send", "to": peer_id, "text": msg.text}
        if msg.reply_to_id:
            payload["replyTo"] = str(msg.reply_to_id)
        await self._send_frame(payload)

    async def send_typing(self, peer_id: str) -> None:
        await self._send_frame({"type": "presence", "to": peer_id, "state": "composing"})

    async def stop_typing(self, peer_id: str) -> None:
        await self._send_frame({"type": "presence", "to": peer_id, "state": "paused"})

    async def _send_frame(self, payload: dict) -> None:
        if not self._ws or self._status != "connected":
            raise RuntimeError("WhatsApp bridge not connected")
        await self._ws.send(json.dumps(payload))

    async def _handle_bridge_message(self, raw: str) -> None:
        """Handle a frame from the bridge."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge: {raw[:100]}")
            return

        msg_type = data.get("type")

        if msg_type == "message":
            # pn is the legacy <phone>@s.whatsapp.net id, sender the LID
            pn = data.get("pn", "")
            sender = data.get("sender", "")
            content = data.get("content", "")
            if not sender or not str(content).strip():
                return

            user_id = pn or sender
            sender_id = user_id.split("@")[0] if "@" in user_id else user_id
            is_group = bool(data.get("isGroup", False))

            await self._handle_message(
                InboundMessage(
                    channel=self.name,
                    peer_id=sender,  # Full LID for replies
                    text=content,
                    sender_id=sender_id,
                    peer_name=data.get("pushName"),
                    group_id=sender if is_group else None,
                    reply_to_id=data.get("id"),
                    metadata={
                        "quoted_id": data.get("quotedId"),
                        "timestamp": data.get("timestamp"),
                        "is_group": is_group,
                    },
                )
            )

        elif msg_type == "status":
            status = data.get("status")
            logger.info(f"WhatsApp status: {status}")
            if status == "connected":
                self._status = "connected"
            elif status == "disconnected":
                self._status = "disconnected"

        elif msg_type == "qr":
            logger.info("Scan QR code in the bridge terminal to connect WhatsApp")

        elif msg_type == "error":
            logger.error(f"WhatsApp bridge error: {data.get('error')}")
            self._status = "error"

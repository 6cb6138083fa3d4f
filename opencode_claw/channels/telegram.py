"""Telegram channel implementation using python-telegram-bot."""

import asyncio
import re

from loguru import logger
from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from opencode_claw.channels.base import BaseChannel, InboundHandler
from opencode_claw.channels.events import InboundMessage, OutboundMessage
from opencode_claw.channels.split import split_message
from opencode_claw.config.schema import TelegramConfig

MAX_TELEGRAM_LENGTH = 4096


def _markdown_to_telegram_html(text: str) -> str:
    """
    Convert markdown to Telegram-safe HTML.
    """
    if not text:
        return ""

    # Code blocks and inline code are swapped for placeholders so later
    # substitutions leave their content alone
    code_blocks: list[str] = []

    def save_code_block(m: re.Match) -> str:
        code_blocks.append(m.group(1))
        return f"\x00CB{len(code_blocks) - 1}\x00"

    text = re.sub(r'```[\w]*\n?([\s\S]*?)```', save_code_block, text)

    inline_codes: list[str] = []

    def save_inline_code(m: re.Match) -> str:
        inline_codes.append(m.group(1))
        return f"\x00IC{len(inline_codes) - 1}\x00"

    text = re.sub(r'`([^`]+)`', save_inline_code, text)

    text = re.sub(r'^#{1,6}\s+(.+)$', r'\1', text, flags=re.MULTILINE)
    text = re.sub(r'^>\s*(.*)$', r'\1', text, flags=re.MULTILINE)
    text = _escape_html(text)

    # Links first so bold/italic inside link text still converts
    text = re.sub(r'\[([^\]]+)\]\(([^)]+)\)', r'<a href="\2">\1</a>', text)
    text = re.sub(r'\*\*(.+?)\*\*', r'<b>\1</b>', text)
    text = re.sub(r'__(.+?)__', r'<b>\1</b>', text)
    text = re.sub(r'(?<![a-zA-Z0-9])_([^_]+)_(?![a-zA-Z0-9])', r'<i>\1</i>', text)
    text = re.sub(r'~~(.+?)~~', r'<s>\1</s>', text)
    text = re.sub(r'^[-*]\s+', '• ', text, flags=re.MULTILINE)

    for i, code in enumerate(inline_codes):
        text = text.replace(f"\x00IC{i}\x00", f"<code>{_escape_html(code)}</code>")
    for i, code in enumerate(code_blocks):
        text = text.replace(f"\x00CB{i}\x00", f"<pre><code>{_escape_html(code)}</code></pre>")

    return text


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _parse_int(value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(str(value))
    except ValueError:
        return None


class TelegramChannel(BaseChannel):
    """
    Telegram channel using long polling.

    Peers are chats; forum topics arrive as thread ids.
    """

    name = "telegram"

    def __init__(self, config: TelegramConfig):
        super().__init__(config)
        self.config: TelegramConfig = config
        self._app: Application | None = None
        self._typing_tasks: dict[int, asyncio.Task[None]] = {}
        self._typing_interval_s: float = 4.0

    async def start(self, handler: InboundHandler) -> None:
        """Start the Telegram bot with long polling."""
        self._handler = handler
        if not self.config.token:
            logger.error("Telegram bot token not configured")
            self._status = "error"
            return

        self._running = True
        self._status = "connecting"

        builder = Application.builder().token(self.config.token)
        if self.config.proxy:
            builder = builder.proxy(self.config.proxy).get_updates_proxy(self.config.proxy)
        self._app = builder.build()
        self._app.add_handler(MessageHandler(filters.TEXT | filters.CAPTION, self._on_message))
        self._app.add_error_handler(self._on_error)

        logger.info("Starting Telegram bot (polling mode)...")
        try:
            await self._app.initialize()
            await self._app.start()
            bot_info = await self._app.bot.get_me()
            await self._app.updater.start_polling(
                allowed_updates=["message"],
                drop_pending_updates=True,
            )
        except Exception:
            self._status = "error"
            self._running = False
            raise

        self._status = "connected"
        logger.info(f"Telegram bot @{bot_info.username} connected")

        while self._running:
            await asyncio.sleep(1)

    async def stop(self) -> None:
        """Stop the Telegram bot."""
        self._running = False
        self._status = "disconnected"
        for chat_id in list(self._typing_tasks.keys()):
            self._cancel_typing(chat_id)
        await self._cancel_pending()

        if self._app:
            logger.info("Stopping Telegram bot...")
            if self._app.updater and self._app.updater.running:
                await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None

    async def send(self, peer_id: str, msg: OutboundMessage) -> None:
        """Send a message, split to Telegram's length limit, as HTML with a plain-text fallback."""
        if not self._app:
            raise RuntimeError("Telegram bot not running")

        chat_id = int(peer_id)
        thread_id = _parse_int(msg.thread_id)
        reply_to = _parse_int(msg.reply_to_id)

        for index, chunk in enumerate(split_message(msg.text, MAX_TELEGRAM_LENGTH)):
            kwargs = {
                "chat_id": chat_id,
                "message_thread_id": thread_id,
                "reply_to_message_id": reply_to if index == 0 else None,
                "allow_sending_without_reply": True,
            }
            html = _markdown_to_telegram_html(chunk)
            try:
                if len(html) > MAX_TELEGRAM_LENGTH:
                    raise ValueError("converted HTML exceeds the message limit")
                await self._app.bot.send_message(text=html, parse_mode="HTML", **kwargs)
            except Exception as e:
                logger.warning(f"HTML send failed, falling back to plain text: {e}")
                await self._app.bot.send_message(text=chunk, **kwargs)
            if index:
                await asyncio.sleep(0.3)

    async def send_typing(self, peer_id: str) -> None:
        chat_id = _parse_int(peer_id)
        if chat_id is None or not self._app or chat_id in self._typing_tasks:
            return

        async def _loop() -> None:
            while self._running and self._app:
                try:
                    await self._app.bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
                except Exception as e:
                    logger.debug(f"Telegram typing action failed: {e}")
                    return
                await asyncio.sleep(self._typing_interval_s)

        self._typing_tasks[chat_id] = asyncio.create_task(_loop())

    async def stop_typing(self, peer_id: str) -> None:
        chat_id = _parse_int(peer_id)
        if chat_id is not None:
            self._cancel_typing(chat_id)

    def _cancel_typing(self, chat_id: int) -> None:
        task = self._typing_tasks.pop(chat_id, None)
        if task and not task.done():
            task.cancel()

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Normalize a Telegram message and pass it to the router."""
        message = update.message
        user = update.effective_user
        if not message or not user:
            return

        text = message.text or message.caption or ""
        if not text.strip():
            return

        # Stable numeric id, username kept for allowlists
        sender_id = str(user.id)
        if user.username:
            sender_id = f"{sender_id}|{user.username}"

        is_group = message.chat.type != "private"
        thread_id = message.message_thread_id if message.is_topic_message else None

        logger.debug(f"Telegram message from {sender_id}: {text[:50]}...")
        await self._handle_message(
            InboundMessage(
                channel=self.name,
                peer_id=str(message.chat_id),
                text=text,
                sender_id=sender_id,
                peer_name=user.first_name,
                group_id=str(message.chat_id) if is_group else None,
                thread_id=str(thread_id) if thread_id else None,
                reply_to_id=str(message.message_id),
                metadata={
                    "user_id": user.id,
                    "username": user.username,
                    "is_group": is_group,
                },
            )
        )

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error(f"Telegram bot error: {context.error}")

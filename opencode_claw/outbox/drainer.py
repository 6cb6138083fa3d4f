"""Periodic delivery of queued outbox entries."""

import asyncio
import json
from pathlib import Path

from loguru import logger

from opencode_claw.channels.base import BaseChannel
from opencode_claw.channels.events import OutboundMessage
from opencode_claw.outbox.writer import DEAD_DIR, OutboxEntry, safe_component, write_entry


class OutboxDrainer:
    """
    Polls the outbox directory and delivers entries through their channel.

    Entries wait while their channel is not connected. A failed delivery
    bumps the attempt count; at max_attempts the file moves under dead/.
    """

    def __init__(
        self,
        directory: Path | str,
        channels: dict[str, BaseChannel],
        poll_interval_ms: int = 500,
        max_attempts: int = 3,
    ):
        self.directory = Path(directory).expanduser()
        self.channels = channels
        self.poll_interval_s = poll_interval_ms / 1000
        self.max_attempts = max_attempts
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Outbox drainer started (every {self.poll_interval_s}s)")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Outbox drainer stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval_s)
                await self.drain()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Outbox drain error: {e}")

    def pending_files(self) -> list[Path]:
        if not self.directory.is_dir():
            return []
        files = [p for p in self.directory.glob("*/*/*.json") if p.parts[-3] != DEAD_DIR]
        return sorted(files, key=lambda p: p.name)

    async def drain(self) -> int:
        """Deliver what can be delivered now. Returns the number delivered."""
        delivered = 0
        for path in self.pending_files():
            try:
                entry = OutboxEntry.from_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError) as e:
                logger.warning(f"Outbox: unreadable entry {path}: {e}")
                continue

            channel = self.channels.get(entry.channel)
            if channel is None or channel.status() != "connected":
                continue

            try:
                await channel.send(entry.peer_id, OutboundMessage(text=entry.text, thread_id=entry.thread_id))
            except Exception as e:
                self._record_failure(path, entry, e)
                continue

            path.unlink(missing_ok=True)
            delivered += 1
            logger.debug(f"Outbox: delivered {entry.id} to {entry.channel}:{entry.peer_id}")
        return delivered

    def _record_failure(self, path: Path, entry: OutboxEntry, error: Exception) -> None:
        entry.attempts += 1
        if entry.attempts < self.max_attempts:
            write_entry(path, entry)
            logger.warning(f"Outbox: delivery of {entry.id} failed (attempt {entry.attempts}), will retry: {error}")
            return

        dead_dir = self.directory / DEAD_DIR / safe_component(entry.channel) / safe_component(entry.peer_id)
        dead_dir.mkdir(parents=True, exist_ok=True)
        write_entry(path, entry)
        path.replace(dead_dir / path.name)
        logger.warning(f"Outbox: {entry.id} moved to dead letter after {entry.attempts} attempts: {error}")

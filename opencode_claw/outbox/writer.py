"""File-backed outbox: one JSON file per queued message."""

import json
import os
import re
import secrets
import tempfile
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

DEAD_DIR = "dead"


@dataclass
class OutboxEntry:
    id: str
    channel: str
    peer_id: str
    text: str
    enqueued_at: str
    thread_id: str | None = None
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OutboxEntry":
        return cls(
            id=str(data.get("id") or ""),
            channel=str(data.get("channel") or ""),
            peer_id=str(data.get("peer_id") or ""),
            text=str(data.get("text") or ""),
            enqueued_at=str(data.get("enqueued_at") or ""),
            thread_id=str(data["thread_id"]) if data.get("thread_id") is not None else None,
            attempts=int(data.get("attempts") or 0),
        )


def safe_component(value: str) -> str:
    """Make a channel or peer id usable as a single path component."""
    cleaned = re.sub(r"[^A-Za-z0-9@._+\-]", "_", value).strip(".")
    return cleaned or "_"


def generate_entry_id() -> str:
    # Nanosecond prefix keeps directory listings in enqueue order
    return f"{time.time_ns():020d}-{secrets.token_hex(3)}"


def write_entry(path: Path, entry: OutboxEntry) -> None:
    """Write an entry atomically so the drainer never reads a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=str(path.parent),
        prefix=f".{path.stem}.",
        suffix=".tmp",
        delete=False,
    ) as tmp:
        json.dump(entry.to_dict(), tmp, indent=2)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_path = Path(tmp.name)
    tmp_path.replace(path)


class OutboxWriter:
    """Queues messages for later delivery by OutboxDrainer."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory).expanduser()

    def enqueue(self, channel: str, peer_id: str, text: str, thread_id: str | None = None) -> OutboxEntry:
        entry = OutboxEntry(
            id=generate_entry_id(),
            channel=channel,
            peer_id=peer_id,
            text=text,
            thread_id=thread_id,
            enqueued_at=datetime.now(timezone.utc).isoformat(),
        )
        path = self.directory / safe_component(channel) / safe_component(peer_id) / f"{entry.id}.json"
        write_entry(path, entry)
        logger.debug(f"Outbox: queued {entry.id} for {channel}:{peer_id}")
        return entry


def count_entries(directory: Path | str) -> dict[str, int]:
    """Pending and dead-lettered entry counts."""
    root = Path(directory).expanduser()
    counts = {"pending": 0, "dead": 0}
    if not root.is_dir():
        return counts
    for path in root.glob("*/*/*.json"):
        if path.parts[-3] != DEAD_DIR:
            counts["pending"] += 1
    dead_root = root / DEAD_DIR
    if dead_root.is_dir():
        counts["dead"] = sum(1 for _ in dead_root.glob("*/*/*.json"))
    return counts

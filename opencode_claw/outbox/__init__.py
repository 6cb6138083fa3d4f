"""Outbox module: queued delivery to chat channels."""

from opencode_claw.outbox.drainer import OutboxDrainer
from opencode_claw.outbox.writer import OutboxEntry, OutboxWriter, count_entries

__all__ = ["OutboxDrainer", "OutboxEntry", "OutboxWriter", "count_entries"]

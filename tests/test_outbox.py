import json
from pathlib import Path

from fakes import FakeChannel
from opencode_claw.outbox import OutboxDrainer, OutboxWriter, count_entries


def test_enqueue_writes_one_file_per_message(tmp_path: Path) -> None:
    writer = OutboxWriter(tmp_path)

    entry = writer.enqueue("whatsapp", "123@s.whatsapp.net", "Report ready", thread_id=None)

    path = tmp_path / "whatsapp" / "123@s.whatsapp.net" / f"{entry.id}.json"
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["text"] == "Report ready"
    assert data["attempts"] == 0
    assert count_entries(tmp_path) == {"pending": 1, "dead": 0}


def test_peer_ids_are_made_path_safe(tmp_path: Path) -> None:
    writer = OutboxWriter(tmp_path)

    writer.enqueue("telegram", "../../etc", "x")

    files = list(tmp_path.rglob("*.json"))
    assert len(files) == 1
    assert tmp_path in files[0].parents
    assert files[0].parent.name == "_.._etc"


async def test_drain_delivers_when_connected(tmp_path: Path) -> None:
    writer = OutboxWriter(tmp_path)
    writer.enqueue("telegram", "42", "first", thread_id="7")
    writer.enqueue("telegram", "42", "second")
    channel = FakeChannel("telegram")
    drainer = OutboxDrainer(tmp_path, {"telegram": channel})

    assert await drainer.drain() == 2

    assert channel.texts == ["first", "second"]
    assert channel.sent[0][1].thread_id == "7"
    assert count_entries(tmp_path) == {"pending": 0, "dead": 0}


async def test_drain_waits_for_channel(tmp_path: Path) -> None:
    OutboxWriter(tmp_path).enqueue("telegram", "42", "queued")
    channel = FakeChannel("telegram", status="disconnected")
    drainer = OutboxDrainer(tmp_path, {"telegram": channel})

    assert await drainer.drain() == 0
    assert channel.sent == []

    channel._status = "connected"
    assert await drainer.drain() == 1


async def test_failed_delivery_retries_then_dead_letters(tmp_path: Path) -> None:
    entry = OutboxWriter(tmp_path).enqueue("telegram", "42", "flaky")
    channel = FakeChannel("telegram")
    channel.fail_send = True
    drainer = OutboxDrainer(tmp_path, {"telegram": channel}, max_attempts=2)
    path = tmp_path / "telegram" / "42" / f"{entry.id}.json"

    assert await drainer.drain() == 0
    assert json.loads(path.read_text(encoding="utf-8"))["attempts"] == 1

    assert await drainer.drain() == 0
    assert not path.exists()
    dead = tmp_path / "dead" / "telegram" / "42" / f"{entry.id}.json"
    assert json.loads(dead.read_text(encoding="utf-8"))["attempts"] == 2
    assert count_entries(tmp_path) == {"pending": 0, "dead": 1}

    assert await drainer.drain() == 0


async def test_unreadable_entry_is_skipped(tmp_path: Path) -> None:
    broken = tmp_path / "telegram" / "42" / "0000000000001-aaaaaa.json"
    broken.parent.mkdir(parents=True)
    broken.write_text("{", encoding="utf-8")
    OutboxWriter(tmp_path).enqueue("telegram", "42", "fine")
    channel = FakeChannel("telegram")

    assert await OutboxDrainer(tmp_path, {"telegram": channel}).drain() == 1
    assert broken.exists()

import asyncio
import json
from pathlib import Path

from fakes import FakeRuntime
from opencode_claw.runtime.events import RemoteSession
from opencode_claw.session.manager import SessionManager, build_peer_key, build_session_key


def test_session_keys() -> None:
    assert build_session_key("telegram", "42") == "telegram:42"
    assert build_session_key("telegram", "42", "7") == "telegram:42:thread:7"
    assert build_session_key("telegram", "42", "") == "telegram:42"
    assert build_session_key("telegram", "42", "7") == build_session_key("telegram", "42", "7")
    assert build_session_key("telegram", "42") != build_session_key("whatsapp", "42")
    assert build_session_key("telegram", "42", "7") != build_session_key("telegram", "42", "8")
    assert build_peer_key("telegram", "42") == "telegram:42"


async def test_resolve_creates_once(tmp_path: Path) -> None:
    runtime = FakeRuntime()
    manager = SessionManager(runtime, tmp_path / "sessions.json")

    first = await manager.resolve_session("telegram:42", "telegram:42")
    second = await manager.resolve_session("telegram:42", "ignored")

    assert first == second == "ses-1"
    assert runtime.created == [("ses-1", "telegram:42")]


async def test_concurrent_resolve_creates_one_session() -> None:
    runtime = FakeRuntime()
    manager = SessionManager(runtime)

    results = await asyncio.gather(*(manager.resolve_session("telegram:42") for _ in range(5)))

    assert set(results) == {"ses-1"}
    assert len(runtime.created) == 1


async def test_bindings_persist_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "state" / "sessions.json"
    runtime = FakeRuntime()
    manager = SessionManager(runtime, path)
    await manager.resolve_session("telegram:42")
    await manager.switch_session("whatsapp:1@s.whatsapp.net", "ses-x")

    assert json.loads(path.read_text(encoding="utf-8")) == {
        "telegram:42": "ses-1",
        "whatsapp:1@s.whatsapp.net": "ses-x",
    }

    reloaded = SessionManager(FakeRuntime(), path)
    assert reloaded.current_session("telegram:42") == "ses-1"
    assert await reloaded.resolve_session("telegram:42") == "ses-1"


async def test_load_recovers_from_backup(tmp_path: Path) -> None:
    path = tmp_path / "sessions.json"
    manager = SessionManager(FakeRuntime(), path)
    await manager.switch_session("telegram:1", "ses-a")
    await manager.switch_session("telegram:2", "ses-b")
    path.write_text("{broken", encoding="utf-8")

    reloaded = SessionManager(FakeRuntime(), path)

    assert reloaded.bindings == {"telegram:1": "ses-a"}


async def test_new_and_fork_rebind(tmp_path: Path) -> None:
    runtime = FakeRuntime()
    manager = SessionManager(runtime, tmp_path / "sessions.json")
    await manager.resolve_session("telegram:42")

    new_id = await manager.new_session("telegram:42", "Fresh start")
    assert new_id == "ses-2"
    assert manager.current_session("telegram:42") == "ses-2"

    forked = await manager.fork_session("telegram:42")
    assert forked == "ses-2-fork"
    assert runtime.forked == ["ses-2"]
    assert await manager.fork_session("telegram:99") is None


async def test_list_sessions_is_scoped_to_peer() -> None:
    runtime = FakeRuntime()
    runtime.sessions = [
        RemoteSession("ses-1", "mine", created_at=1.0),
        RemoteSession("ses-2", "other chat"),
        RemoteSession("ses-3", "from the TUI"),
        RemoteSession("ses-4", "topic"),
    ]
    manager = SessionManager(runtime)
    await manager.switch_session("telegram:42", "ses-1")
    await manager.switch_session("telegram:43", "ses-2")
    await manager.switch_session("telegram:4", "ses-2")
    await manager.switch_session("telegram:42:thread:7", "ses-4")
    await manager.switch_session("telegram:42:thread:8", "ses-gone")

    infos = await manager.list_sessions("telegram:42:thread:7", "telegram:42")

    assert [(i.id, i.key, i.title, i.active) for i in infos] == [
        ("ses-1", "telegram:42", "mine", False),
        ("ses-4", "telegram:42:thread:7", "topic", True),
        ("ses-gone", "telegram:42:thread:8", "(deleted)", False),
    ]
    assert infos[0].created_at == 1.0
    assert infos[2].created_at is None

    assert await manager.list_sessions("telegram:99", "telegram:99") == []


def test_render_title() -> None:
    manager = SessionManager(FakeRuntime(), title_template="chat {channel}/{peer_id}")
    assert manager.render_title("telegram", "42", "telegram:42") == "chat telegram/42"

    broken = SessionManager(FakeRuntime(), title_template="{nope}")
    assert broken.render_title("telegram", "42", "telegram:42") == "telegram:42"

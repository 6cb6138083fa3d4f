import asyncio
import re

from fakes import FakeChannel, FakeRuntime, make_msg, wait_until
from opencode_claw.channels.events import OutboundMessage
from opencode_claw.channels.router import (
    BUSY_TEXT,
    EMPTY_RESPONSE_TEXT,
    GENERIC_FAILURE_TEXT,
    HEARTBEAT_TEXT,
    REJECTION_TEXT,
    TIMEOUT_TEXT,
    Router,
    format_question,
    format_todos,
    is_allowed,
    parse_answers,
)
from opencode_claw.config.schema import Config
from opencode_claw.runtime.base import AgentRuntimeError
from opencode_claw.runtime.events import (
    QuestionAsked,
    QuestionInfo,
    QuestionOption,
    RemoteSession,
    SessionIdle,
    TextUpdate,
    TodoItem,
    TodoUpdated,
    ToolActivity,
)
from opencode_claw.session.manager import SessionManager


def _make_router(config: Config | None = None):
    runtime = FakeRuntime()
    sessions = SessionManager(runtime)
    telegram = FakeChannel("telegram")
    whatsapp = FakeChannel("whatsapp")
    router = Router(runtime, sessions, {"telegram": telegram, "whatsapp": whatsapp}, config or Config())
    return router, runtime, telegram, whatsapp


def _answer(text: str):
    return lambda sid, prompt: [TextUpdate(sid, "p1", text), SessionIdle(sid)]


async def test_turn_sends_one_final_reply_in_thread() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = _answer("Hello there")

    await router.handle_inbound(make_msg("hi", thread_id="7", reply_to_id="100"))

    assert telegram.sent == [("42", OutboundMessage("Hello there", thread_id="7", reply_to_id="100"))]
    assert telegram.typing == ["42"]
    assert telegram.stopped_typing == ["42"]
    assert runtime.prompts == [("ses-1", "hi")]
    assert not router.state.is_busy("telegram:42")


async def test_session_is_created_once_per_conversation() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = _answer("ok")

    await router.handle_inbound(make_msg("one"))
    await router.handle_inbound(make_msg("two"))
    await router.handle_inbound(make_msg("three", peer_id="43"))

    assert runtime.created == [("ses-1", "telegram:42"), ("ses-2", "telegram:43")]
    assert [sid for sid, _ in runtime.prompts] == ["ses-1", "ses-1", "ses-2"]


async def test_thread_scoping_follows_channel_setting() -> None:
    router, runtime, _, _ = _make_router()
    runtime.on_prompt = _answer("ok")

    await router.handle_inbound(make_msg("a", thread_id="7"))
    await router.handle_inbound(make_msg("b", thread_id="8"))
    await router.handle_inbound(make_msg("c", channel="whatsapp", peer_id="123@s.whatsapp.net", thread_id="7"))

    bindings = router.sessions.bindings
    assert set(bindings) == {"telegram:42:thread:7", "telegram:42:thread:8", "whatsapp:123@s.whatsapp.net"}


async def test_empty_reply_is_replaced() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = lambda sid, prompt: [SessionIdle(sid)]

    await router.handle_inbound(make_msg("hi"))

    assert telegram.texts == [EMPTY_RESPONSE_TEXT]


async def test_timeout_sends_only_timeout_text() -> None:
    router, runtime, telegram, _ = _make_router()
    router.config.router.timeout_ms = 50
    runtime.on_prompt = lambda sid, prompt: [TextUpdate(sid, "p1", "partial")]

    await router.handle_inbound(make_msg("hi"))

    assert telegram.texts == [TIMEOUT_TEXT]
    assert not router.state.is_busy("telegram:42")


async def test_runtime_failure_sends_generic_error() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.prompt_error = AgentRuntimeError("connection refused")

    await router.handle_inbound(make_msg("hi"))

    assert telegram.texts == [GENERIC_FAILURE_TEXT]
    assert not router.state.is_busy("telegram:42")
    assert telegram.stopped_typing == ["42"]


async def test_unknown_channel_is_dropped() -> None:
    router, runtime, telegram, _ = _make_router()

    await router.handle_inbound(make_msg("hi", channel="slack"))

    assert runtime.prompts == []
    assert telegram.sent == []


async def test_busy_peer_gets_busy_reply_and_status() -> None:
    router, runtime, telegram, _ = _make_router()
    task = asyncio.create_task(router.handle_inbound(make_msg("long job")))
    await wait_until(lambda: router.state.is_busy("telegram:42"))

    await router.handle_inbound(make_msg("another"))
    await router.handle_inbound(make_msg("/status"))

    assert telegram.texts[0] == BUSY_TEXT
    assert re.fullmatch(r"⏳ Agent is running \(\d+s elapsed\)", telegram.texts[1])
    assert len(runtime.prompts) == 1

    runtime.emit(ToolActivity("ses-1", "call-1", "websearch_web_search_exa", "running", "Searching"))
    await wait_until(lambda: len(telegram.sent) == 3)
    assert telegram.texts[2] == "🔧 Searching..."

    await router.handle_inbound(make_msg("/status"))
    assert "last tool: Websearch Web Search Exa" in telegram.texts[3]

    runtime.emit(TextUpdate("ses-1", "p1", "finished"))
    runtime.emit(SessionIdle("ses-1"))
    await task
    assert telegram.texts[-1] == "finished"


async def test_other_peer_is_not_blocked() -> None:
    router, runtime, telegram, _ = _make_router()
    task = asyncio.create_task(router.handle_inbound(make_msg("long job")))
    await wait_until(lambda: router.state.is_busy("telegram:42"))

    runtime.on_prompt = _answer("quick")
    await router.handle_inbound(make_msg("hello", peer_id="43"))

    assert telegram.sent == [("43", OutboundMessage("quick"))]

    runtime.emit(SessionIdle("ses-1"))
    await task


async def test_cancel_aborts_without_final_reply() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = lambda sid, prompt: [TextUpdate(sid, "p1", "half an answer")]
    task = asyncio.create_task(router.handle_inbound(make_msg("long job")))
    await wait_until(lambda: router.state.is_busy("telegram:42"))

    await router.handle_inbound(make_msg("/cancel"))
    await task

    assert runtime.aborts == ["ses-1"]
    assert telegram.texts == ["🛑 Cancelled the running agent."]
    assert not router.state.is_busy("telegram:42")

    await router.handle_inbound(make_msg("/cancel"))
    assert telegram.texts[-1] == "No agent is currently running."


async def test_cancel_not_acknowledged() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.abort_result = False
    task = asyncio.create_task(router.handle_inbound(make_msg("long job")))
    await wait_until(lambda: router.state.is_busy("telegram:42"))

    await router.handle_inbound(make_msg("/cancel"))
    assert telegram.texts == ["Could not cancel the running agent (abort was not acknowledged)."]

    runtime.emit(SessionIdle("ses-1"))
    await task


async def test_question_reply_is_routed_to_agent() -> None:
    router, runtime, telegram, _ = _make_router()
    question = QuestionInfo(
        question="Which database?",
        options=(QuestionOption("Postgres", "relational"), QuestionOption("Redis")),
    )
    runtime.on_prompt = lambda sid, prompt: [QuestionAsked(sid, "q-1", (question,))]
    task = asyncio.create_task(router.handle_inbound(make_msg("set up storage")))
    await wait_until(lambda: len(telegram.sent) == 1)

    assert "1. Postgres — relational" in telegram.texts[0]
    assert "2. Redis" in telegram.texts[0]

    await router.handle_inbound(make_msg("2"))
    await wait_until(lambda: runtime.replies)
    assert runtime.replies == [("q-1", [["Redis"]])]

    runtime.emit(TextUpdate("ses-1", "p1", "Using Redis"))
    runtime.emit(SessionIdle("ses-1"))
    await task
    assert telegram.texts == [telegram.texts[0], "Using Redis"]
    assert len(runtime.prompts) == 1


async def test_command_text_during_question_is_an_answer() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = lambda sid, prompt: [QuestionAsked(sid, "q-1", (QuestionInfo("Name?"),))]
    task = asyncio.create_task(router.handle_inbound(make_msg("start")))
    await wait_until(lambda: len(telegram.sent) == 1)

    await router.handle_inbound(make_msg("/new"))
    await wait_until(lambda: runtime.replies)

    assert runtime.replies == [("q-1", [["/new"]])]
    assert len(runtime.created) == 1

    runtime.emit(SessionIdle("ses-1"))
    await task


async def test_unanswered_question_is_rejected_after_timeout() -> None:
    config = Config()
    router, runtime, telegram, _ = _make_router(config)
    config.router.timeout_ms = 300
    runtime.on_prompt = lambda sid, prompt: [QuestionAsked(sid, "q-1", (QuestionInfo("Name?"),))]

    await router.handle_inbound(make_msg("start"))

    assert runtime.rejections == ["q-1"]
    assert telegram.texts[-1] == TIMEOUT_TEXT
    assert not router.state.has_question("telegram:42")


async def test_allowlist_ignore_and_reject() -> None:
    config = Config()
    config.channels.telegram.allow_from = ["7"]
    router, runtime, telegram, _ = _make_router(config)

    await router.handle_inbound(make_msg("hi"))
    assert telegram.sent == []
    assert runtime.prompts == []

    config.channels.telegram.rejection_behavior = "reject"
    await router.handle_inbound(make_msg("/help"))
    assert telegram.texts == [REJECTION_TEXT]
    assert runtime.created == []


def test_is_allowed_rules() -> None:
    msg = make_msg("hi", peer_id="-100", sender_id="99|alice")

    assert is_allowed(None, msg)
    assert not is_allowed([], msg)
    assert is_allowed(["alice"], msg)
    assert is_allowed(["99"], msg)
    assert is_allowed(["-100"], msg)
    assert not is_allowed(["bob", "98"], msg)


async def test_todo_updates_follow_progress_setting() -> None:
    todos = (TodoItem("Read code", "completed", "high"), TodoItem("Write fix", "in_progress"))
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = lambda sid, prompt: [TodoUpdated(sid, todos), TextUpdate(sid, "p1", "done"), SessionIdle(sid)]

    await router.handle_inbound(make_msg("fix it"))
    assert telegram.texts == [format_todos(todos), "done"]

    router.config.router.progress.enabled = False
    telegram.sent.clear()
    await router.handle_inbound(make_msg("again"))
    assert telegram.texts == ["done"]


async def test_progress_disabled_still_records_last_tool() -> None:
    router, runtime, telegram, _ = _make_router()
    router.config.router.progress.enabled = False
    task = asyncio.create_task(router.handle_inbound(make_msg("go")))
    await wait_until(lambda: router.state.is_busy("telegram:42"))

    runtime.emit(ToolActivity("ses-1", "call-1", "bash", "running"))
    await wait_until(lambda: router.state.get_turn("telegram:42").last_tool == "bash")
    assert telegram.sent == []

    runtime.emit(SessionIdle("ses-1"))
    await task


async def test_status_reports_tool_hidden_by_throttle() -> None:
    router, runtime, telegram, _ = _make_router()
    task = asyncio.create_task(router.handle_inbound(make_msg("go")))
    await wait_until(lambda: router.state.is_busy("telegram:42"))

    runtime.emit(ToolActivity("ses-1", "call-1", "bash", "running"))
    await wait_until(lambda: "🔧 bash..." in telegram.texts)
    runtime.emit(ToolActivity("ses-1", "call-2", "read_file", "running"))
    await wait_until(lambda: router.state.get_turn("telegram:42").last_tool == "read_file")

    await router.handle_inbound(make_msg("/status"))
    assert "last tool: Read File" in telegram.texts[-1]
    assert len([text for text in telegram.texts if text.startswith("🔧")]) == 1

    runtime.emit(SessionIdle("ses-1"))
    await task


async def test_sessions_command_hides_other_peers() -> None:
    router, runtime, telegram, _ = _make_router()
    runtime.on_prompt = _answer("ok")
    await router.handle_inbound(make_msg("hi", peer_id="1"))
    await router.handle_inbound(make_msg("hi", peer_id="2"))
    runtime.sessions = [RemoteSession("ses-1", "alice chat"), RemoteSession("ses-2", "bob chat")]

    await router.handle_inbound(make_msg("/sessions", peer_id="2"))
    await router.handle_inbound(make_msg("/sessions ²", peer_id="1"))

    assert telegram.sent[-2] == ("2", OutboundMessage("• ses-2 — bob chat (active)"))
    assert telegram.sent[-1] == ("1", OutboundMessage("• ses-1 — alice chat (active)"))


async def test_heartbeat_message_during_silence() -> None:
    router, runtime, telegram, _ = _make_router()
    router.config.router.progress.heartbeat_ms = 30
    task = asyncio.create_task(router.handle_inbound(make_msg("go")))
    await wait_until(lambda: HEARTBEAT_TEXT in telegram.texts)

    runtime.emit(TextUpdate("ses-1", "p1", "done"))
    runtime.emit(SessionIdle("ses-1"))
    await task

    assert telegram.texts[-1] == "done"
    assert len(telegram.typing) >= 2


def test_format_todos() -> None:
    assert format_todos(()) == "📋 Todo list cleared."
    text = format_todos((TodoItem("Ship", "pending", "low"), TodoItem("Test", "completed", "high")))
    assert text.splitlines() == ["📋 Todo list:", "⬜ [low] Ship", "✅ [high] Test"]


def test_format_question_multiple() -> None:
    event = QuestionAsked(
        "ses-1",
        "q-1",
        (
            QuestionInfo("Pick colors", header="Colors", options=(QuestionOption("Red"), QuestionOption("Blue")), multiple=True),
            QuestionInfo("Any notes?"),
        ),
    )
    text = format_question(event)

    assert "❓ (1/2) Colors" in text
    assert "Pick colors" in text
    assert "(Multiple choices allowed" in text
    assert "❓ (2/2) Any notes?" in text
    assert text.endswith("Reply with one line per question, or a single answer for all of them.")


def test_parse_answers() -> None:
    single = (QuestionInfo("Pick", options=(QuestionOption("Alpha"), QuestionOption("Beta"))),)
    multi = (QuestionInfo("Pick", options=(QuestionOption("A"), QuestionOption("B"), QuestionOption("C")), multiple=True),)
    free = (QuestionInfo("Name?"),)

    assert parse_answers(single, " 1 ") == [["Alpha"]]
    assert parse_answers(single, "beta") == [["Beta"]]
    assert parse_answers(single, "7") == [["7"]]
    assert parse_answers(single, "something else") == [["something else"]]
    assert parse_answers(multi, "1, 3 3") == [["A", "C"]]
    assert parse_answers(free, "Ada") == [["Ada"]]
    assert parse_answers((), "hi") == [["hi"]]
    assert parse_answers(single + free, "2\nAda") == [["Beta"], ["Ada"]]
    assert parse_answers(single + free, "2") == [["Beta"], ["2"]]

import asyncio
import re
import time

import pytest
from fakes import FakeClock, FakeLLM, FakeSearch, core_types, wait_for

from research_terminal.context import AppContext
from research_terminal.errors import PromptReplaced, TransportClosed
from research_terminal.session import SessionController
from research_terminal.telemetry import TelemetryRegistry
from research_terminal.transport import MemoryTransport


def _controller(config, clock=None, prompt_timeout_sec=5.0, llm=None, search=None):
    llm = llm or FakeLLM()
    search = search or FakeSearch()
    ctx = AppContext(
        config,
        search_factory=lambda _key: search,
        llm_factory=lambda _key, _model, _character: llm,
        telemetry=TelemetryRegistry(status_throttle_ms=0),
        clock=clock or time.monotonic,
    )
    return SessionController(ctx, prompt_timeout_sec=prompt_timeout_sec, status_refresh_interval_sec=0)


async def _login(controller, session, username="alice", password="pw1"):
    await controller.ctx.users.create_user(username, password)
    await controller.handle_message(
        session, {"type": "command", "command": "login", "args": [username], "password": password}
    )


def _errors(transport):
    return [e["error"] for e in transport.of_type("error")]


def _outputs(transport):
    return [e["data"] for e in transport.of_type("output")]


def test_connect_sends_bootstrap_sequence(config):
    controller = _controller(config)
    transport = MemoryTransport()

    session = asyncio.run(controller.connect(transport))

    assert core_types(transport) == [
        "connection",
        "login_success",
        "output",
        "mode_change",
        "csrf_token",
        "log-snapshot",
        "github-activity:snapshot",
        "research-status",
        "enable_input",
        "status-summary",
    ]
    assert transport.of_type("connection")[0]["sessionId"] == session.id
    assert transport.of_type("login_success")[0]["role"] == "public"
    assert transport.of_type("csrf_token")[0]["value"] == session.csrf_token
    assert transport.of_type("research-status")[0]["data"]["stage"] == "connected"
    assert transport.of_type("status-summary")[0]["reason"] == "initial"
    assert all("serverMessageId" in e for e in transport.sent)


def test_ping_and_malformed_messages(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        controller.receive(session, "{not json")
        controller.receive(session, {"type": "teleport"})
        controller.receive(session, '{"type": "ping"}')

    asyncio.run(scenario())
    assert _errors(transport) == [
        "Malformed message: expected a JSON object.",
        "Unsupported or invalid message of type 'teleport'.",
    ]
    assert core_types(transport)[-1] == "pong"


def test_input_without_prompt_is_rejected(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await controller.handle_message(session, {"type": "input", "value": "hello"})

    asyncio.run(scenario())
    assert _errors(transport) == ["Received unexpected input. No prompt was active."]
    assert core_types(transport)[-2:] == ["error", "enable_input"]


def test_public_user_is_gated(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await controller.handle_message(session, {"type": "command", "command": "research", "args": ["stoicism"]})
        await controller.handle_message(session, {"type": "command", "command": "frobnicate"})
        await controller.handle_message(session, {"type": "command", "command": "help"})

    asyncio.run(scenario())
    assert _errors(transport) == [
        "Login required for /research. Use /login <username>.",
        "Unknown command: /frobnicate. Type /help for available commands.",
    ]
    help_lines = _outputs(transport)
    assert "  /login <username>" in help_lines
    assert not any(line.startswith("  /research") for line in help_lines)


def test_login_through_prompts(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        await controller.ctx.users.create_user("alice", "pw1")
        session = await controller.connect(transport)
        task = asyncio.create_task(controller.handle_message(session, {"type": "command", "command": "login"}))
        first = await wait_for(transport, "prompt")
        controller.receive(session, {"type": "input", "value": "alice"})
        second = await wait_for(transport, "prompt", count=2)
        controller.receive(session, {"type": "input", "value": "pw1"})
        await task
        return session, first, second

    session, first, second = asyncio.run(scenario())
    assert first["data"] == "Username:"
    assert first["isPassword"] is False
    assert second["data"] == "Password:"
    assert second["isPassword"] is True
    login = transport.of_type("login_success")[-1]
    assert (login["username"], login["role"]) == ("alice", "client")
    assert "Logged in as alice (client)." in _outputs(transport)
    assert session.user.username == "alice"
    assert session.mode == "command"


def test_wrong_password_reports_auth_error(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await controller.ctx.users.create_user("alice", "pw1")
        await controller.handle_message(
            session, {"type": "command", "command": "login", "args": ["alice"], "password": "nope"}
        )
        return session

    session = asyncio.run(scenario())
    assert _errors(transport) == ["Invalid password."]
    assert session.user.role == "public"
    assert session.password is None


def test_prompt_timeout_reports_error_then_enables_input(config):
    controller = _controller(config, prompt_timeout_sec=0.05)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(session, {"type": "command", "command": "research"})
        return session

    session = asyncio.run(scenario())
    prompt = transport.of_type("prompt")[-1]
    assert prompt["data"] == "Enter query:"
    assert prompt["isPassword"] is False
    assert core_types(transport)[-5:] == ["disable_input", "prompt", "enable_input", "error", "enable_input"]
    assert _errors(transport)[-1] == "Prompt timed out."
    assert session.pending_prompt is None
    assert session.mode == "command"


def test_new_prompt_replaces_pending_one(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        first = asyncio.create_task(controller.prompt(session, "First?"))
        await asyncio.sleep(0)
        second = asyncio.create_task(controller.prompt(session, "Second?"))
        await asyncio.sleep(0)
        controller.handle_input(session, "answer")
        with pytest.raises(PromptReplaced):
            await first
        return session, await second

    session, answer = asyncio.run(scenario())
    assert answer == "answer"
    assert session.mode == "command"


def test_disconnect_rejects_pending_prompt_and_persists(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        pending = asyncio.create_task(controller.prompt(session, "Still there?"))
        await asyncio.sleep(0)
        await controller.disconnect(session, reason="client left")
        with pytest.raises(TransportClosed):
            await pending
        return session

    session = asyncio.run(scenario())
    assert transport.close_code == 1000
    assert session.closed
    assert controller.sessions == {}
    assert config.session_file.exists()
    assert not controller.ctx.telemetry.get("operator").has_sender


def _enable_env_keys(config):
    config.brave_api_key = "env-brave"
    config.venice_api_key = "env-venice"


async def _research(controller, session, transport, action):
    task = asyncio.create_task(
        controller.handle_message(
            session,
            {"type": "command", "command": "research", "args": ["the history of stoicism", "--depth=1", "--breadth=2"]},
        )
    )
    prompt = await wait_for(transport, "prompt")
    controller.receive(session, {"type": "input", "value": action})
    await task
    return prompt


def test_research_then_download(config):
    _enable_env_keys(config)
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        prompt = await _research(controller, session, transport, "Download")
        return session, prompt

    session, prompt = asyncio.run(scenario())
    assert prompt["context"] == "post_research_action"
    assert re.match(r'Choose action for "research-the-history-of-stoicism-\d{14}\.md"', prompt["data"])
    download = transport.of_type("download_file")[-1]
    assert download["filename"].startswith("research-the-history-of-stoicism-")
    assert download["content"].startswith("# Research Results")
    assert "Research complete! 4 learnings from 4 sources." in _outputs(transport)
    complete = transport.of_type("research-complete")[-1]["data"]
    assert complete["success"] is True
    assert session.current_research_result is None


def test_research_without_keys_reports_missing_key(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(session, {"type": "command", "command": "research", "args": ["stoicism"]})

    asyncio.run(scenario())
    assert _errors(transport) == ["Missing brave API key. Use /keys set brave <key>."]


def test_failed_research_is_reported(config):
    _enable_env_keys(config)
    controller = _controller(config, llm=FakeLLM(fail_stages=("plan",)))
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(session, {"type": "command", "command": "research", "args": ["stoicism"]})

    asyncio.run(scenario())
    assert _errors(transport)[-1].startswith("Research failed: Query planning failed")
    assert transport.of_type("research-complete")[-1]["data"]["success"] is False


def test_reconnect_replays_buffered_telemetry(config):
    _enable_env_keys(config)
    controller = _controller(config)
    first = MemoryTransport()
    second = MemoryTransport()

    async def scenario():
        session = await controller.connect(first)
        await _login(controller, session)
        await _research(controller, session, first, "keep")
        await controller.disconnect(session, reason="client left")
        await controller.connect(second)

    asyncio.run(scenario())
    types = core_types(second)
    status_at = types.index("research-status")
    assert types[:status_at] == [
        "connection",
        "login_success",
        "output",
        "output",
        "mode_change",
        "csrf_token",
        "log-snapshot",
        "github-activity:snapshot",
    ]
    telemetry_events = [e for e in second.sent if e["type"].startswith("research-")]
    assert telemetry_events[0]["data"]["stage"] == "reconnected"
    history = controller.ctx.telemetry.get("operator").get_history()[:-1]
    replayed = telemetry_events[1:]
    assert [e["data"]["eventId"] for e in replayed] == [h["id"] for h in history]
    assert replayed[0]["data"]["stage"] == "preparing"
    assert replayed[-1]["type"] == "research-complete"
    assert types[-2:] == ["enable_input", "status-summary"]
    assert len(second.of_type("log-snapshot")[0]["logs"]) <= 120


def test_sweep_expires_only_inactive_sessions(config):
    clock = FakeClock()
    controller = _controller(config, clock=clock)
    stale = MemoryTransport()
    fresh = MemoryTransport()

    async def scenario():
        await controller.connect(stale)
        clock.advance(3000)
        await controller.connect(fresh)
        clock.advance(700)
        return await controller.sweep()

    assert asyncio.run(scenario()) == 1
    assert "session-expired" in stale.types()
    assert stale.close_code == 1000
    assert fresh.close_code is None
    assert len(controller.sessions) == 1
    assert config.session_file.exists()


def test_csrf_token_is_checked_for_mutating_commands(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(
            session, {"type": "command", "command": "keys", "args": ["check"], "csrfToken": "bogus"}
        )
        await controller.handle_message(
            session, {"type": "command", "command": "keys", "args": ["check"], "csrfToken": session.csrf_token}
        )
        controller.ctx.config.csrf_required = True
        await controller.handle_message(session, {"type": "command", "command": "keys", "args": ["check"]})

    asyncio.run(scenario())
    assert _errors(transport) == ["Invalid CSRF token.", "Invalid CSRF token."]
    assert "brave: not configured" in _outputs(transport)


def test_keys_set_prompts_for_value(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        task = asyncio.create_task(
            controller.handle_message(session, {"type": "command", "command": "keys", "args": ["set", "brave"]})
        )
        prompt = await wait_for(transport, "prompt")
        controller.receive(session, {"type": "input", "value": "B-123"})
        await task
        stored = await controller.ctx.users.get_api_key("alice", "pw1", "brave")
        return prompt, stored

    prompt, stored = asyncio.run(scenario())
    assert prompt["isPassword"] is True
    assert stored == "B-123"
    assert "brave API key stored." in _outputs(transport)


def test_chat_round_trip(config):
    _enable_env_keys(config)
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(session, {"type": "command", "command": "chat"})
        mode_in_chat = session.mode
        await controller.handle_message(session, {"type": "chat-message", "message": "Tell me about Zeno"})
        await controller.handle_message(session, {"type": "command", "command": "keys", "args": ["check"]})
        await controller.handle_message(session, {"type": "chat-message", "message": "/exit"})
        return session, mode_in_chat

    session, mode_in_chat = asyncio.run(scenario())
    assert mode_in_chat == "chat"
    ready = transport.of_type("chat-ready")[0]
    assert ready["model"] == "qwen3-235b"
    assert ready["character"] == "bitcore"
    assert transport.of_type("chat-response")[0]["message"] == "Hello from the fake model."
    assert _errors(transport) == ["Cannot run top-level commands while in chat mode. Use /exit first."]
    assert transport.of_type("chat-exit")
    assert transport.of_type("mode_change")[-1]["mode"] == "command"
    assert session.mode == "command"
    assert session.chat_history == []


def test_activity_and_status_requests(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        controller.ctx.activity.record("upload", "Uploaded notes.md")
        await controller.handle_message(session, {"type": "github-activity:command", "command": "stats"})
        await controller.handle_message(session, {"type": "github-activity:command", "command": "rewind"})
        await controller.handle_message(session, {"type": "status-refresh"})

    asyncio.run(scenario())
    assert transport.of_type("github-activity:event")[0]["data"]["entry"]["message"] == "Uploaded notes.md"
    assert transport.of_type("github-activity:stats")[0]["data"]["stats"]["total"] == 1
    assert transport.of_type("github-activity:error")[0]["data"]["error"] == "Unsupported command 'rewind'."
    assert transport.of_type("status-summary")[-1]["reason"] == "request"


def test_logout_returns_to_public(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(session, {"type": "command", "command": "logout"})
        return session

    session = asyncio.run(scenario())
    assert transport.of_type("logout_success")[0]["message"] == "Logged out alice."
    assert session.user.role == "public"
    assert session.password is None


class _ClosingAwareTransport(MemoryTransport):
    def __init__(self):
        super().__init__()
        self.sent_after_close = []

    def send(self, envelope):
        if self.ready_state != "open":
            self.sent_after_close.append(envelope)
        return super().send(envelope)


async def _start_blocked_research(controller, session, search):
    task = controller.receive(
        session,
        {"type": "command", "command": "research", "args": ["stoicism", "--depth=1", "--breadth=2"]},
    )
    while not search.queries:
        await asyncio.sleep(0.005)
    return task


@pytest.mark.parametrize("command", ["exit", "cancel"])
def test_operator_can_cancel_running_research(config, command):
    _enable_env_keys(config)
    transport = MemoryTransport()

    async def scenario():
        llm = FakeLLM()
        search = FakeSearch(block=asyncio.Event())
        controller = _controller(config, llm=llm, search=search)
        session = await controller.connect(transport)
        await _login(controller, session)
        task = await _start_blocked_research(controller, session, search)
        assert controller.receive(session, {"type": "command", "command": command}) is None
        await asyncio.wait_for(task, timeout=2)
        return session, llm

    session, llm = asyncio.run(scenario())
    complete = transport.of_type("research-complete")[-1]["data"]
    assert complete["success"] is False
    assert complete["error"] == "cancelled"
    outputs = _outputs(transport)
    assert outputs.index("Cancelling research...") < outputs.index("Research cancelled.")
    assert "Not in chat mode." not in _errors(transport)
    assert llm.stages() == ["plan"]
    assert session.cancel_token is None
    assert core_types(transport)[-1] == "enable_input"


def test_cancel_without_running_research_is_reported(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.handle_message(session, {"type": "command", "command": "cancel"})

    asyncio.run(scenario())
    assert _outputs(transport)[-1] == "No research is running."


def test_disconnect_mid_research_cancels_quietly(config):
    _enable_env_keys(config)
    transport = _ClosingAwareTransport()

    async def scenario():
        llm = FakeLLM()
        search = FakeSearch(block=asyncio.Event())
        controller = _controller(config, llm=llm, search=search)
        session = await controller.connect(transport)
        await _login(controller, session)
        task = await _start_blocked_research(controller, session, search)
        calls_at_disconnect = len(llm.calls)
        await controller.disconnect(session, reason="client left")
        await asyncio.wait_for(task, timeout=2)
        return controller, llm, calls_at_disconnect

    controller, llm, calls_at_disconnect = asyncio.run(scenario())
    assert len(llm.calls) == calls_at_disconnect
    history = controller.ctx.telemetry.get("operator").get_history()
    assert history[-1]["type"] == "research-complete"
    assert history[-1]["data"]["success"] is False
    assert history[-1]["data"]["error"] == "cancelled"
    assert transport.sent_after_close == []
    assert transport.types()[-1] != "research-complete"


def test_disconnect_drops_cached_result_after_persisting(config):
    controller = _controller(config)
    transport = MemoryTransport()

    async def scenario():
        session = await controller.connect(transport)
        session.current_research_result = "# Research Results\n"
        await controller.disconnect(session, reason="client left")
        return session

    session = asyncio.run(scenario())
    assert session.current_research_result is None
    assert controller.ctx.session_store.state.current_research_result == "# Research Results\n"


def test_memory_seeds_research_and_records_the_run(config):
    _enable_env_keys(config)
    transport = MemoryTransport()

    async def scenario():
        llm = FakeLLM()
        search = FakeSearch()
        controller = _controller(config, llm=llm, search=search)
        session = await controller.connect(transport)
        await _login(controller, session)
        await controller.ctx.memory.record("alice", "stoic ethics", ["Virtue is the only good."])
        await controller.handle_message(session, {"type": "command", "command": "memory", "args": ["on", "--depth=2"]})
        task = asyncio.create_task(
            controller.handle_message(
                session,
                {"type": "command", "command": "research", "args": ["stoicism ethics today", "--depth=1", "--breadth=2"]},
            )
        )
        await wait_for(transport, "prompt")
        controller.receive(session, {"type": "input", "value": "keep"})
        await task
        return controller, session, llm, search, await controller.ctx.memory.records("alice")

    controller, session, llm, search, records = asyncio.run(scenario())
    assert session.memory_enabled is True
    assert session.memory_depth == 2

    events = [(e["type"], e["data"].get("stage")) for e in transport.sent if e["type"].startswith("research-")]
    start = events.index(("research-status", "preparing"))
    assert events[start : start + 7] == [
        ("research-status", "preparing"),
        ("research-status", "memory"),
        ("research-memory", None),
        ("research-thought", "memory"),
        ("research-status", "memory-prioritization"),
        ("research-suggestions", None),
        ("research-status", "planning"),
    ]
    memory = transport.of_type("research-memory")[-1]["data"]
    assert memory["stats"]["stored"] == 1
    assert memory["records"][0]["preview"] == "Virtue is the only good."
    suggestion = transport.of_type("research-suggestions")[-1]["data"]["suggestions"][0]
    assert suggestion["prompt"].startswith('How does "stoic ethics" impact')

    assert search.queries[0].startswith('How does "stoic ethics" impact')
    plan_prompt = next(c for c in llm.calls if c["stage"] == "plan")["messages"][-1]["content"]
    assert "Generate 1 specific research questions" in plan_prompt
    assert [r["query"] for r in records] == ["stoic ethics", "stoicism ethics today"]

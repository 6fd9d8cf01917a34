import asyncio
import json
from types import SimpleNamespace

from research_terminal.session_store import SessionStateStore


def _ref(**overrides):
    values = {
        "current_research_result": None,
        "current_research_filename": None,
        "current_research_summary": None,
        "current_research_query": None,
        "session_model": None,
        "session_character": None,
        "memory_enabled": False,
        "memory_depth": None,
        "memory_github_enabled": False,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def test_missing_file_loads_defaults(tmp_path):
    state = asyncio.run(SessionStateStore(tmp_path / "session.json").load())
    assert state.current_research_result is None
    assert state.memory_enabled is False
    assert state.version == 1


def test_persist_and_reload_from_disk(tmp_path):
    path = tmp_path / "sessions" / "session.json"
    ref = _ref(
        current_research_result="# Research Results\n",
        current_research_filename="research-stoicism-20240101000000.md",
        session_model="qwen3-235b",
        memory_enabled=1,
    )

    async def scenario():
        await SessionStateStore(path).persist_from_ref(ref)
        return await SessionStateStore(path).load()

    state = asyncio.run(scenario())
    assert state.current_research_result == "# Research Results\n"
    assert state.session_model == "qwen3-235b"
    assert state.memory_enabled is True
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["currentResearchFilename"] == "research-stoicism-20240101000000.md"
    assert on_disk["updatedAt"]


def test_blank_strings_become_none(tmp_path):
    store = SessionStateStore(tmp_path / "session.json")
    state = asyncio.run(store.save({"current_research_query": "", "session_character": "archon"}))
    assert state.current_research_query is None
    assert state.session_character == "archon"


def test_apply_then_snapshot_round_trips(tmp_path):
    store = SessionStateStore(tmp_path / "session.json")
    asyncio.run(store.save({"current_research_summary": "Summary", "memory_depth": 3}))
    ref = store.apply_state_to_ref(_ref())
    assert ref.current_research_summary == "Summary"
    assert ref.memory_depth == 3
    snapshot = store.snapshot_from_ref(ref)
    assert snapshot.current_research_summary == "Summary"
    assert snapshot.memory_depth == 3


def test_corrupt_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")
    state = asyncio.run(SessionStateStore(path).load())
    assert state.current_research_result is None


def test_clear_resets_state(tmp_path):
    store = SessionStateStore(tmp_path / "session.json")

    async def scenario():
        await store.save({"current_research_result": "content"})
        await store.clear()
        return await store.load(force=True)

    assert asyncio.run(scenario()).current_research_result is None


def test_concurrent_saves_leave_a_valid_file(tmp_path):
    path = tmp_path / "session.json"
    store = SessionStateStore(path)

    async def scenario():
        await asyncio.gather(*(store.save({"memory_depth": i}) for i in range(1, 6)))

    asyncio.run(scenario())
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["memoryDepth"] in range(1, 6)
    assert store.state.memory_depth == 5

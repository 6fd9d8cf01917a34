from types import SimpleNamespace

import pytest

from research_terminal.commands import (
    COMMANDS,
    CommandRequest,
    apply_model_flags,
    parse_command_args,
    parse_command_message,
)


def test_parse_command_args_splits_flags_and_quotes():
    parsed = parse_command_args('/research "the history of stoicism" --depth=3 --classify')
    assert parsed == {
        "command_name": "research",
        "positional_args": ["the history of stoicism"],
        "flags": {"depth": "3", "classify": True},
    }


def test_parse_command_args_handles_unbalanced_quotes_and_blank_input():
    assert parse_command_args('/storage get "notes.md')["positional_args"] == ["get", '"notes.md']
    assert parse_command_args("   ") == {"command_name": "", "positional_args": [], "flags": {}}


def test_parse_command_message_merges_args():
    parsed = parse_command_message("Research", ["stoic", "ethics", "--breadth=2", "--M=qwen"])
    assert parsed["command_name"] == "research"
    assert parsed["positional_args"] == ["stoic", "ethics"]
    assert parsed["flags"] == {"breadth": "2", "m": "qwen"}


def test_command_table_roles():
    public = {name for name, cmd in COMMANDS.items() if cmd.public}
    mutating = {name for name, cmd in COMMANDS.items() if cmd.mutating}
    assert public == {"status", "help", "login"}
    assert mutating == {"storage", "keys", "password-change", "github-config", "memory"}


class _Controller:
    def __init__(self):
        self.lines = []
        self.log = SimpleNamespace(info=lambda *_a, **_k: None)

    def output(self, _session, text):
        self.lines.append(text)


def _request(flags, **session_fields):
    session = SimpleNamespace(session_model=None, session_character=None, **session_fields)
    return CommandRequest(controller=_Controller(), session=session, name="chat", flags=flags)


def test_model_flags_apply_only_on_first_use():
    req = _request({"m": "qwen3-4b", "c": "None"})
    assert apply_model_flags(req, "chat") == ("qwen3-4b", None)
    assert req.session.session_model == "qwen3-4b"

    again = CommandRequest(controller=req.controller, session=req.session, name="chat", flags={"m": "other"})
    assert apply_model_flags(again, "chat") == ("qwen3-4b", None)
    assert any("ignored" in line for line in req.controller.lines)


def test_defaults_are_used_without_flags_and_not_persisted():
    req = _request({})
    model, character = apply_model_flags(req, "research")
    assert model == "llama-3.3-70b"
    assert character == "archon"
    assert req.session.session_model is None


@pytest.mark.parametrize("flag_value, expected", [(True, None), ("main", "main"), (None, None)])
def test_flag_str(flag_value, expected):
    req = _request({"branch": flag_value} if flag_value is not None else {})
    assert req.flag_str("branch") == expected

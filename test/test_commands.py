"""Dispatcher, tokenizer, option scoping and help registry tests."""

from __future__ import annotations

import io
import json
from typing import Any

import pytest
from commands import (
    COMMAND_LOOKUP,
    COMMANDS,
    HELP_TEXT,
    TOP_LEVEL_HELP,
    CommandDispatcher,
    find_and_remove_one,
    parse_uint,
    print_help,
    scoped_options,
    split_tokens,
)
from conftest import make_dispatcher
from container import BytecodeModule
from disassembler import BytecodeDisassembler, DisassemblyOptions

Dispatch = tuple[CommandDispatcher, io.StringIO]


def run(d: Dispatch, line: str) -> tuple[bool, str]:
    dispatcher, out = d
    out.seek(0)
    out.truncate()
    terminate = dispatcher.dispatch(line)
    return terminate, out.getvalue()


# --- tokenizer / integers ---
def test_split_tokens() -> None:
    assert split_tokens("") == []
    assert split_tokens("dis 1 -offsets") == ["dis", "1", "-offsets"]
    # consecutive spaces keep their empty tokens
    assert split_tokens("dis  1") == ["dis", "", "1"]
    assert split_tokens(" ") == ["", ""]


def test_find_and_remove_one() -> None:
    tokens = ["-used", "1", "-used"]
    assert find_and_remove_one(tokens, "-used")
    assert tokens == ["1", "-used"]
    assert not find_and_remove_one(tokens, "-offsets")
    assert tokens == ["1", "-used"]


@pytest.mark.parametrize(
    ("token", "value"),
    [
        ("0", 0),
        ("42", 42),
        ("0x2A", 42),
        ("0X2a", 42),
        ("0b101", 5),
        ("0o17", 15),
        ("017", 15),
        ("4294967295", 0xFFFFFFFF),
    ],
)
def test_parse_uint_accepts(token: str, value: int) -> None:
    assert parse_uint(token) == value


@pytest.mark.parametrize("token", ["", "abc", "-1", "+1", "1_000", "08", "0x", "0b2", "4294967296", " 1", "1.0"])
def test_parse_uint_rejects(token: str) -> None:
    assert parse_uint(token) is None


# --- dispatch basics ---
def test_empty_line_is_noop(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "") == (False, "")


def test_blank_command_lists_every_command(dispatcher: Dispatch) -> None:
    terminate, text = run(dispatcher, " ")
    assert not terminate
    assert text == run(dispatcher, "help")[1]
    assert text.startswith(TOP_LEVEL_HELP)


def test_unknown_command(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "frobnicate 1") == (False, "Invalid command: frobnicate\n")


def test_commands_are_case_sensitive(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "QUIT") == (False, "Invalid command: QUIT\n")


def test_quit_terminates_silently(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "quit") == (True, "")


def test_quit_with_argument_is_usage(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "quit now") == (False, HELP_TEXT["quit"])


def test_rendered_command_ends_with_blank_line(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "str 0") == (False, "hello\n\n")
    assert run(dispatcher, "filename 0") == (False, "main.js\n\n")


@pytest.mark.parametrize(
    ("line", "command"),
    [
        ("function 1 2", "function"),
        ("fun 1 2", "function"),
        ("instruction 1", "instruction"),
        ("inst x", "instruction"),
        ("disassemble 1 2", "disassemble"),
        ("string", "string"),
        ("str 1 2", "string"),
        ("filename", "filename"),
        ("function-info 1 2", "function-info"),
        ("io 1", "io"),
        ("summary 1", "summary"),
        ("sum 1", "summary"),
        ("block 3", "block"),
        ("at-virtual", "at-virtual"),
        ("at_virtual 1 2", "at-virtual"),
        ("epilogue 1", "epilogue"),
        ("epi 1", "epilogue"),
        ("quit 1", "quit"),
    ],
)
def test_arity_violation_renders_usage_only(dispatcher: Dispatch, line: str, command: str) -> None:
    terminate, text = run(dispatcher, line)
    assert not terminate
    assert text == HELP_TEXT[command]
    assert not text.endswith("\n\n")


@pytest.mark.parametrize(
    ("line", "what"),
    [
        ("function x", "func_id"),
        ("disassemble -1", "func_id"),
        ("string abc", "string_id"),
        ("filename 0x", "filename_id"),
        ("function-info 1e3", "func_id"),
        ("at-virtual zz", "virtualOffset"),
    ],
)
def test_non_numeric_argument(profiled_dispatcher: Dispatch, line: str, what: str) -> None:
    assert run(profiled_dispatcher, line) == (False, f"Error: cannot parse {what} as integer.\n")


def test_disassemble_out_of_range(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "disassemble 999") == (False, "Error: no function with id: 999 exists.\n")
    assert run(dispatcher, "dis 3") == (False, "Error: no function with id: 3 exists.\n")


def test_at_virtual_before_any_function(dispatcher: Dispatch, monkeypatch: Any) -> None:
    d, _ = dispatcher
    calls: list[int] = []
    monkeypatch.setattr(d.analyzer, "dump_function_info", lambda fid, json_out: calls.append(fid))
    assert run(dispatcher, "at-virtual 0") == (False, "Virtual offset 0 is invalid.\n\n")
    assert run(dispatcher, "at-virtual 320") == (False, "Virtual offset 320 is invalid.\n\n")
    assert calls == []
    run(dispatcher, "at-virtual 319")
    assert calls == [2]


def test_at_virtual_spellings_agree(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "at-virtual 250")[1] == run(dispatcher, "at_virtual 250")[1]


# --- aliases and flags ---
@pytest.mark.parametrize(
    ("alias", "canonical"),
    [
        ("fun 2", "function 2"),
        ("fun", "function"),
        ("fun -used", "function -used"),
        ("inst", "instruction"),
        ("dis 1", "disassemble 1"),
        ("str 3", "string 3"),
        ("sum", "summary"),
        ("epi", "epilogue"),
        ("h dis", "help disassemble"),
    ],
)
def test_alias_equivalence(profiled_dispatcher: Dispatch, alias: str, canonical: str) -> None:
    assert run(profiled_dispatcher, alias) == run(profiled_dispatcher, canonical)


def test_flag_order_independence(dispatcher: Dispatch) -> None:
    after = run(dispatcher, "disassemble 2 -offsets")
    before = run(dispatcher, "disassemble -offsets 2")
    assert after == before
    assert "[@ 272] " in after[1]


def test_flag_counts_once(dispatcher: Dispatch) -> None:
    # the second -offsets is left as a positional argument
    assert run(dispatcher, "dis -offsets -offsets") == (False, "Error: cannot parse func_id as integer.\n")


def test_used_flag_wins(profiled_dispatcher: Dispatch) -> None:
    assert run(profiled_dispatcher, "function 1 -used") == (False, "0\n1\n2\n\n")
    assert run(profiled_dispatcher, "function -used 1 2")[1] == HELP_TEXT["function"]


def test_flags_only_apply_to_their_command(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "summary -offsets")[1] == HELP_TEXT["summary"]


# --- option scoping ---
def test_scoped_options_restores_on_exception(sample_module: BytecodeModule) -> None:
    dis = BytecodeDisassembler(sample_module, DisassemblyOptions.PRETTY)
    with pytest.raises(RuntimeError):
        with scoped_options(dis, DisassemblyOptions.PRETTY | DisassemblyOptions.INCLUDE_VIRTUAL_OFFSETS) as opts:
            assert dis.options == opts
            raise RuntimeError("boom")
    assert dis.options == DisassemblyOptions.PRETTY


@pytest.mark.parametrize(
    "line",
    ["dis 1 -offsets", "dis -offsets", "dis 999 -offsets", "dis -offsets bad", "dis -offsets 1 2", "summary"],
)
def test_options_unchanged_after_any_command(dispatcher: Dispatch, line: str) -> None:
    d, _ = dispatcher
    before = d.disassembler.options
    run(dispatcher, line)
    assert d.disassembler.options == before
    # the next listing carries no offsets
    assert "[@ " not in run(dispatcher, "dis 1")[1]


def test_options_restored_when_stream_fails(sample_module: BytecodeModule) -> None:
    class FailingStream(io.StringIO):
        def write(self, s: str) -> int:
            raise OSError("disk full")

    d, _ = make_dispatcher(sample_module)
    d.out = FailingStream()
    before = d.disassembler.options
    with pytest.raises(OSError):
        d.dispatch("dis 1 -offsets")
    assert d.disassembler.options == before


# --- help registry ---
def test_help_registry_is_read_only() -> None:
    with pytest.raises(TypeError):
        HELP_TEXT["quit"] = "nope"  # type: ignore[index]


def test_every_command_has_help() -> None:
    assert set(HELP_TEXT) == {c.name for c in COMMANDS}
    for command in COMMANDS:
        for alias in (command.name, *command.aliases):
            assert COMMAND_LOOKUP[alias] is command


def test_help_lists_every_command_once(dispatcher: Dispatch) -> None:
    terminate, text = run(dispatcher, "help")
    assert not terminate
    assert text.startswith(TOP_LEVEL_HELP)
    names = text[len(TOP_LEVEL_HELP) :].splitlines()
    assert names == sorted(HELP_TEXT)
    assert len(names) == len(set(names))


def test_help_unknown_command(dispatcher: Dispatch) -> None:
    text = run(dispatcher, "help nosuchcommand")[1]
    assert text == "Invalid command: nosuchcommand\n"
    assert "summary" not in text


def test_help_resolves_aliases() -> None:
    out = io.StringIO()
    print_help(out, "at_virtual")
    assert out.getvalue() == HELP_TEXT["at-virtual"]


def test_help_with_empty_name_lists_all(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "help ") == run(dispatcher, "help")
    out = io.StringIO()
    print_help(out, "")
    assert out.getvalue().startswith(TOP_LEVEL_HELP)
    assert "Invalid command" not in out.getvalue()


def test_help_with_several_arguments_lists_all(dispatcher: Dispatch) -> None:
    assert run(dispatcher, "help dis fun")[1].startswith(TOP_LEVEL_HELP)


# --- profile-backed commands ---
def test_function_stats(profiled_dispatcher: Dispatch) -> None:
    text = run(profiled_dispatcher, "function")[1]
    lines = text.splitlines()
    assert lines[0].split() == ["Function", "Instructions", "Percent"]
    assert lines[1].split()[0] == "loop#2"
    assert lines[1].split()[-2:] == ["36", "80.00%"]
    assert text.endswith("Total instructions executed: 45\n\n")


def test_instruction_stats(profiled_dispatcher: Dispatch) -> None:
    lines = run(profiled_dispatcher, "inst")[1].splitlines()
    # LESS, JMP_FALSE and JMP run eleven times each
    assert [line.split()[:2] for line in lines[1:4]] == [["JMP", "11"], ["JMP_FALSE", "11"], ["LESS", "11"]]


def test_block_stats(profiled_dispatcher: Dispatch) -> None:
    lines = run(profiled_dispatcher, "block")[1].splitlines()
    assert lines[1].split() == ["11", "loop#2", "@", "[288,", "312)"]
    assert len(lines) == 1 + 5 + 1  # header, blocks, trailing blank


def test_function_info_all(profiled_dispatcher: Dispatch) -> None:
    text = run(profiled_dispatcher, "function-info")[1]
    doc = json.loads(text)
    assert [f["functionNumber"] for f in doc] == [0, 1, 2]
    assert [f["executedInstructions"] for f in doc] == [5, 4, 36]
    assert "location" not in doc[2]
    assert text.endswith("]\n\n")

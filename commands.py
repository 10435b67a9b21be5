"""Command interpreter: tokenizer, help registry, command table and dispatcher.

A line is split on single spaces. The first token selects a `Command` by
canonical name or alias, the command's flags are stripped from the remaining
tokens, the argument count is checked against the command's arities and the
handler runs exactly one engine query. Every rendered command is followed by
one blank line; usage text and argument errors are not.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO

from config import DEFAULTS
from disassembler import BytecodeDisassembler, DisassemblyOptions
from json_emitter import JSONEmitter
from profile_analyzer import ProfileAnalyzer

UINT32_MAX = 0xFFFFFFFF

TOP_LEVEL_HELP = (
    "These commands are defined internally. Type `help' to see this list.\n"
    "Type `help name' to find out more about the function `name'.\n\n"
)

HELP_TEXT = MappingProxyType(
    {
        "function": (
            "'function': Compute the runtime instruction frequency for each function "
            "and display in descending order. "
            "Each function name is displayed together with its source code line number.\n\n"
            "'function <FUNC_ID>': Dump basic block stats for function with id <FUNC_ID>.\n\n"
            "'function -used': List all invoked function IDs, one per line.\n\n"
            "USAGE: function [<FUNC_ID> | -used]\n"
            "       fun [<FUNC_ID> | -used]\n"
        ),
        "instruction": (
            "Computes the runtime instruction frequency for each instruction "
            "and displays it in descending order.\n\n"
            "USAGE: instruction\n"
            "       inst\n"
        ),
        "disassemble": (
            "'disassemble': Display bytecode disassembled output of whole binary.\n"
            "'disassemble <FUNC_ID>': Display bytecode disassembled output of function with id <FUNC_ID>.\n"
            "Add the '-offsets' flag to show virtual offsets for all instructions.\n\n"
            "USAGE: disassemble <FUNC_ID> [-offsets]\n"
            "       dis <FUNC_ID> [-offsets]\n"
        ),
        "summary": (
            "Display overall summary information.\n\n"
            "USAGE: summary\n"
            "       sum\n"
        ),
        "io": (
            "Visualize function page I/O access working set in basic block profile trace.\n\n"
            "USAGE: io\n"
        ),
        "block": (
            "Display top hot basic blocks in sorted order.\n\n"
            "USAGE: block\n"
        ),
        "at-virtual": (
            "Display information about the function at a given virtual offset.\n\n"
            "USAGE: at-virtual <OFFSET>\n"
            "       at_virtual <OFFSET>\n"
        ),
        "help": (
            "Help instructions for hbcdump tool commands.\n\n"
            "USAGE: help <COMMAND>\n"
            "       h <COMMAND>\n"
        ),
        "function-info": (
            "Display info about a specific function, or all functions\n\n"
            "USAGE: function-info [<FUNC_ID>]\n"
            "NOTE: Virtual offset is the offset from the beginning of the segment\n"
        ),
        "string": (
            "Display string for ID\n\n"
            "USAGE: string <STRING_ID>\n"
            "       str <STRING_ID>\n"
        ),
        "filename": (
            "Display file name for ID\n\n"
            "USAGE: filename <FILENAME_ID>\n"
        ),
        "epilogue": (
            "Dump the epilogue.\n\n"
            "USAGE: epilogue\n"
            "       epi\n"
        ),
        "quit": (
            "Leave the interactive session.\n\n"
            "USAGE: quit\n"
        ),
    }
)

_DIGITS = {
    2: re.compile(r"[01]+"),
    8: re.compile(r"[0-7]+"),
    10: re.compile(r"[0-9]+"),
    16: re.compile(r"[0-9a-fA-F]+"),
}


class Outcome(Enum):
    RENDERED = "rendered"  # output written, trailing blank line follows
    REPORTED = "reported"  # usage text or argument error, nothing follows
    TERMINATE = "terminate"


def split_tokens(line: str) -> list[str]:
    """Split on the space character; an empty line has no tokens."""
    if not line:
        return []
    return line.split(" ")


def find_and_remove_one(tokens: list[str], needle: str) -> bool:
    """Remove the first occurrence of `needle`; return whether one was found."""
    try:
        tokens.remove(needle)
    except ValueError:
        return False
    return True


def parse_uint(token: str) -> int | None:
    """Parse an unsigned 32-bit integer, detecting the radix from its prefix.

    `0x` hex, `0b` binary, `0o` or a bare leading `0` octal, decimal
    otherwise. Returns None if the token is not such a number.
    """
    prefix = token[:2].lower()
    if prefix == "0x":
        radix, digits = 16, token[2:]
    elif prefix == "0b":
        radix, digits = 2, token[2:]
    elif prefix == "0o":
        radix, digits = 8, token[2:]
    elif len(token) > 1 and token.startswith("0"):
        radix, digits = 8, token[1:]
    else:
        radix, digits = 10, token
    if not _DIGITS[radix].fullmatch(digits):
        return None
    value = int(digits, radix)
    if value > UINT32_MAX:
        return None
    return value


def print_help(out: TextIO, name: str | None = None) -> None:
    """Write usage text for one command, or list every command."""
    if name:
        command = COMMAND_LOOKUP.get(name)
        text = HELP_TEXT.get(command.name) if command is not None else None
        if text is None:
            out.write(f"Invalid command: {name}\n")
            return
        out.write(text)
        return
    out.write(TOP_LEVEL_HELP)
    for command_name in sorted(HELP_TEXT):
        out.write(command_name + "\n")


@contextmanager
def scoped_options(disassembler: BytecodeDisassembler, options: DisassemblyOptions) -> Iterator[DisassemblyOptions]:
    """Install `options` on the disassembler until the block exits, however it exits."""
    saved = disassembler.options
    disassembler.options = options
    try:
        yield options
    finally:
        disassembler.options = saved


Handler = Callable[["CommandDispatcher", list[str], frozenset[str]], Outcome]


@dataclass(frozen=True)
class Command:
    name: str
    aliases: tuple[str, ...]
    arities: frozenset[int] | None  # accepted argument counts after flags, None = any
    handler: Handler
    flags: tuple[str, ...] = ()


class CommandDispatcher:
    """Turn one input line into one query against the loaded module."""

    def __init__(
        self,
        out: TextIO,
        analyzer: ProfileAnalyzer,
        disassembler: BytecodeDisassembler,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.out = out
        self.analyzer = analyzer
        self.disassembler = disassembler
        self.config = config if config is not None else dict(DEFAULTS)

    def dispatch(self, line: str) -> bool:
        """Execute one command line. Returns True when the session should end."""
        tokens = split_tokens(line)
        if not tokens:
            return False

        name, args = tokens[0], tokens[1:]
        command = COMMAND_LOOKUP.get(name)
        if command is None:
            logging.debug("Unknown command %r", name)
            print_help(self.out, name)
            return False

        flags: set[str] = set()
        for flag in command.flags:
            if find_and_remove_one(args, flag):
                flags.add(flag)

        if command.arities is not None and len(args) not in command.arities:
            logging.debug("%s: %d argument(s) not accepted", command.name, len(args))
            print_help(self.out, command.name)
            return False

        logging.debug("Dispatch %s args=%r flags=%r", command.name, args, sorted(flags))
        outcome = command.handler(self, args, frozenset(flags))
        if outcome is Outcome.TERMINATE:
            return True
        if outcome is Outcome.RENDERED:
            self.out.write("\n")
        return False

    def _parse_id(self, token: str, what: str) -> int | None:
        value = parse_uint(token)
        if value is None:
            self.out.write(f"Error: cannot parse {what} as integer.\n")
        return value

    def _json(self) -> JSONEmitter:
        return JSONEmitter(self.out, pretty=True, indent=self.config["json_indent"])

    # --- handlers ---
    def _cmd_function(self, args: list[str], flags: frozenset[str]) -> Outcome:
        if "-used" in flags:
            self.analyzer.dump_used_function_ids()
            return Outcome.RENDERED
        if not args:
            self.analyzer.dump_function_stats()
            return Outcome.RENDERED
        func_id = self._parse_id(args[0], "func_id")
        if func_id is None:
            return Outcome.REPORTED
        self.analyzer.dump_function_basic_block_stat(func_id)
        return Outcome.RENDERED

    def _cmd_instruction(self, args: list[str], flags: frozenset[str]) -> Outcome:
        self.analyzer.dump_instruction_stats()
        return Outcome.RENDERED

    def _cmd_disassemble(self, args: list[str], flags: frozenset[str]) -> Outcome:
        local = DisassemblyOptions.INCLUDE_VIRTUAL_OFFSETS if "-offsets" in flags else DisassemblyOptions.NONE
        with scoped_options(self.disassembler, self.disassembler.options | local):
            if not args:
                self.disassembler.disassemble(self.out)
                return Outcome.RENDERED
            func_id = self._parse_id(args[0], "func_id")
            if func_id is None:
                return Outcome.REPORTED
            if func_id >= self.disassembler.function_count:
                self.out.write(f"Error: no function with id: {func_id} exists.\n")
                return Outcome.REPORTED
            self.disassembler.disassemble_function(func_id, self.out)
        return Outcome.RENDERED

    def _cmd_string(self, args: list[str], flags: frozenset[str]) -> Outcome:
        string_id = self._parse_id(args[0], "string_id")
        if string_id is None:
            return Outcome.REPORTED
        self.analyzer.dump_string(string_id)
        return Outcome.RENDERED

    def _cmd_filename(self, args: list[str], flags: frozenset[str]) -> Outcome:
        filename_id = self._parse_id(args[0], "filename_id")
        if filename_id is None:
            return Outcome.REPORTED
        self.analyzer.dump_file_name(filename_id)
        return Outcome.RENDERED

    def _cmd_function_info(self, args: list[str], flags: frozenset[str]) -> Outcome:
        if not args:
            self.analyzer.dump_all_function_info(self._json())
            return Outcome.RENDERED
        func_id = self._parse_id(args[0], "func_id")
        if func_id is None:
            return Outcome.REPORTED
        self.analyzer.dump_function_info(func_id, self._json())
        return Outcome.RENDERED

    def _cmd_io(self, args: list[str], flags: frozenset[str]) -> Outcome:
        self.analyzer.dump_io()
        return Outcome.RENDERED

    def _cmd_summary(self, args: list[str], flags: frozenset[str]) -> Outcome:
        self.analyzer.dump_summary()
        return Outcome.RENDERED

    def _cmd_block(self, args: list[str], flags: frozenset[str]) -> Outcome:
        self.analyzer.dump_basic_block_stats()
        return Outcome.RENDERED

    def _cmd_at_virtual(self, args: list[str], flags: frozenset[str]) -> Outcome:
        virtual_offset = self._parse_id(args[0], "virtualOffset")
        if virtual_offset is None:
            return Outcome.REPORTED
        func_id = self.analyzer.get_function_from_virtual_offset(virtual_offset)
        if func_id is None:
            self.out.write(f"Virtual offset {virtual_offset} is invalid.\n")
        else:
            self.analyzer.dump_function_info(func_id, self._json())
        return Outcome.RENDERED

    def _cmd_epilogue(self, args: list[str], flags: frozenset[str]) -> Outcome:
        self.analyzer.dump_epilogue()
        return Outcome.RENDERED

    def _cmd_help(self, args: list[str], flags: frozenset[str]) -> Outcome:
        print_help(self.out, args[0] if len(args) == 1 else None)
        return Outcome.REPORTED

    def _cmd_quit(self, args: list[str], flags: frozenset[str]) -> Outcome:
        return Outcome.TERMINATE


_NONE = frozenset({0})
_ONE = frozenset({1})
_OPTIONAL = frozenset({0, 1})

COMMANDS: tuple[Command, ...] = (
    Command("function", ("fun",), _OPTIONAL, CommandDispatcher._cmd_function, flags=("-used",)),
    Command("instruction", ("inst",), _NONE, CommandDispatcher._cmd_instruction),
    Command("disassemble", ("dis",), _OPTIONAL, CommandDispatcher._cmd_disassemble, flags=("-offsets",)),
    Command("string", ("str",), _ONE, CommandDispatcher._cmd_string),
    Command("filename", (), _ONE, CommandDispatcher._cmd_filename),
    Command("function-info", (), _OPTIONAL, CommandDispatcher._cmd_function_info),
    Command("io", (), _NONE, CommandDispatcher._cmd_io),
    Command("summary", ("sum",), _NONE, CommandDispatcher._cmd_summary),
    Command("block", (), _NONE, CommandDispatcher._cmd_block),
    Command("at-virtual", ("at_virtual",), _ONE, CommandDispatcher._cmd_at_virtual),
    Command("epilogue", ("epi",), _NONE, CommandDispatcher._cmd_epilogue),
    Command("help", ("h",), None, CommandDispatcher._cmd_help),
    Command("quit", (), _NONE, CommandDispatcher._cmd_quit),
)

COMMAND_LOOKUP = MappingProxyType({alias: cmd for cmd in COMMANDS for alias in (cmd.name, *cmd.aliases)})

"""Interactive session: startup commands, prompt loop and wiring.

The session owns nothing but the dispatcher; the module, analyzer and
disassembler live for the whole session and are created by
`enter_command_loop`.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, TextIO

from commands import CommandDispatcher
from config import DEFAULTS
from container import BytecodeModule
from disassembler import BytecodeDisassembler, DisassemblyOptions
from profile_analyzer import ProfileAnalyzer, ProfileData
from source_map import SourceMap

PROMPT = "hbcdump> "


@dataclass
class SessionState:
    module: BytecodeModule
    out: TextIO
    options: DisassemblyOptions = DisassemblyOptions.PRETTY
    profile: ProfileData | None = None
    source_map: SourceMap | None = None
    config: dict[str, Any] = field(default_factory=lambda: dict(DEFAULTS))


def parse_startup_commands(text: str) -> list[str]:
    """Split a `;`-separated command list; one trailing `;` is allowed."""
    if not text:
        return []
    commands = text.split(";")
    if commands[-1] == "":
        commands.pop()
    return commands


def read_line(stream: TextIO) -> str | None:
    """Read one line without its terminator, or None at end of input."""
    while True:
        try:
            line = stream.readline()
        except InterruptedError:
            logging.debug("Read interrupted, retrying")
            continue
        break
    if not line:
        return None
    if line.endswith("\n"):
        line = line[:-1]
    if line.endswith("\r"):
        line = line[:-1]
    return line


class InteractiveSession:
    def __init__(self, dispatcher: CommandDispatcher, out: TextIO, stdin: TextIO) -> None:
        self.dispatcher = dispatcher
        self.out = out
        self.stdin = stdin

    def run(self, startup_commands: list[str]) -> None:
        """Run the startup commands, then prompt until `quit` or end of input."""
        for command in startup_commands:
            if self.dispatcher.dispatch(command):
                logging.debug("Terminated by startup command %r", command)
                return

        while True:
            self.out.write(PROMPT)
            self.out.flush()
            line = read_line(self.stdin)
            if line is None:
                logging.debug("End of input")
                return
            if self.dispatcher.dispatch(line):
                return


def enter_command_loop(state: SessionState, startup_commands: list[str], stdin: TextIO | None = None) -> None:
    disassembler = BytecodeDisassembler(state.module, state.options)
    analyzer = ProfileAnalyzer(state.out, state.module, state.profile, state.source_map, state.config)
    dispatcher = CommandDispatcher(state.out, analyzer, disassembler, state.config)
    session = InteractiveSession(dispatcher, state.out, stdin if stdin is not None else sys.stdin)
    session.run(startup_commands)
